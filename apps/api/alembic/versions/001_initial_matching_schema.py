"""initial matching schema

Revision ID: 001
Revises:
Create Date: 2026-09-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id():
    return sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True)


def _created_at():
    return sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False)


def upgrade() -> None:
    # Create event table (active plan FK added after match_plan exists)
    op.create_table(
        'event',
        _id(),
        _created_at(),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('event_date', sa.Date(), nullable=False),
        sa.Column('status', sa.Text(), server_default='draft', nullable=False),
        sa.Column('starter_time', sa.Time(), nullable=True),
        sa.Column('main_time', sa.Time(), nullable=True),
        sa.Column('dessert_time', sa.Time(), nullable=True),
        sa.Column('afterparty_time', sa.Time(), nullable=True),
        sa.Column('time_offset_minutes', sa.Integer(), server_default='0', nullable=False),
        sa.Column('timezone', sa.Text(), nullable=True),
        sa.Column('course_timing_offsets', postgresql.JSONB(), nullable=True),
        sa.Column('afterparty_location', sa.Text(), nullable=True),
        sa.Column('afterparty_door_code', sa.Text(), nullable=True),
        sa.Column('afterparty_latitude', sa.Float(), nullable=True),
        sa.Column('afterparty_longitude', sa.Float(), nullable=True),
        sa.Column('active_match_plan_id', postgresql.UUID(as_uuid=True), nullable=True),
    )

    op.create_table(
        'event_timing',
        _id(),
        sa.Column('event_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('teasing_minutes_before', sa.Integer(), server_default='360', nullable=False),
        sa.Column('clue_1_minutes_before', sa.Integer(), server_default='120', nullable=False),
        sa.Column('clue_2_minutes_before', sa.Integer(), server_default='30', nullable=False),
        sa.Column('street_minutes_before', sa.Integer(), server_default='15', nullable=False),
        sa.Column('number_minutes_before', sa.Integer(), server_default='5', nullable=False),
        sa.Column('during_meal_clue_interval_minutes', sa.Integer(), server_default='15', nullable=False),
        sa.Column('distance_adjustment_enabled', sa.Boolean(), server_default='true', nullable=False),
        _created_at(),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['event_id'], ['event.id'], ),
        sa.UniqueConstraint('event_id'),
    )

    op.create_table(
        'couple',
        _id(),
        sa.Column('event_id', postgresql.UUID(as_uuid=True), nullable=False),
        _created_at(),
        sa.Column('invited_name', sa.Text(), nullable=False),
        sa.Column('invited_email', sa.Text(), nullable=True),
        sa.Column('invited_birth_year', sa.Integer(), nullable=True),
        sa.Column('invited_fun_facts', postgresql.JSONB(), nullable=True),
        sa.Column('invited_allergies', postgresql.JSONB(), nullable=True),
        sa.Column('partner_name', sa.Text(), nullable=True),
        sa.Column('partner_email', sa.Text(), nullable=True),
        sa.Column('partner_birth_year', sa.Integer(), nullable=True),
        sa.Column('partner_fun_facts', postgresql.JSONB(), nullable=True),
        sa.Column('partner_allergies', postgresql.JSONB(), nullable=True),
        sa.Column('person_count', sa.Integer(), server_default='2', nullable=False),
        sa.Column('address', sa.Text(), nullable=True),
        sa.Column('address_notes', sa.Text(), nullable=True),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('course_preference', sa.Text(), nullable=True),
        sa.Column('max_guests', sa.Integer(), nullable=True),
        sa.Column('cancelled', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('split_from_couple_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.ForeignKeyConstraint(['event_id'], ['event.id'], ),
        sa.ForeignKeyConstraint(['split_from_couple_id'], ['couple.id'], ),
        sa.CheckConstraint('person_count IN (1, 2)', name='ck_couple_person_count'),
    )
    op.create_index('ix_couple_event_id', 'couple', ['event_id'])
    op.create_index('ix_couple_cancelled', 'couple', ['cancelled'])

    op.create_table(
        'assignment',
        _id(),
        sa.Column('event_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('couple_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('course', sa.Text(), nullable=False),
        sa.Column('is_host', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('max_guests', sa.Integer(), server_default='0', nullable=False),
        sa.Column('is_flex_host', sa.Boolean(), server_default='false', nullable=False),
        sa.Column('flex_extra_capacity', sa.Integer(), server_default='0', nullable=False),
        sa.Column('is_emergency_host', sa.Boolean(), server_default='false', nullable=False),
        _created_at(),
        sa.Column('notified_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['event_id'], ['event.id'], ),
        sa.ForeignKeyConstraint(['couple_id'], ['couple.id'], ),
        sa.UniqueConstraint('event_id', 'couple_id', 'course', name='uq_assignment_event_couple_course'),
        sa.CheckConstraint("course IN ('starter', 'main', 'dessert')", name='ck_assignment_course'),
    )
    op.create_index('ix_assignment_event_id', 'assignment', ['event_id'])
    op.create_index('ix_assignment_couple_id', 'assignment', ['couple_id'])

    op.create_table(
        'match_plan',
        _id(),
        sa.Column('event_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('status', sa.Text(), server_default='draft', nullable=False),
        sa.Column('stats', postgresql.JSONB(), server_default='{}', nullable=False),
        sa.Column('mutation_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('lock_version', sa.Integer(), nullable=False),
        _created_at(),
        sa.Column('committed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['event_id'], ['event.id'], ),
        sa.UniqueConstraint('event_id', 'version', name='uq_match_plan_event_version'),
        sa.CheckConstraint("status IN ('draft', 'active', 'superseded')", name='ck_match_plan_status'),
    )
    op.create_index('ix_match_plan_event_id', 'match_plan', ['event_id'])

    op.create_foreign_key(
        'fk_event_active_match_plan', 'event', 'match_plan', ['active_match_plan_id'], ['id']
    )

    op.create_table(
        'course_pairing',
        _id(),
        sa.Column('match_plan_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('course', sa.Text(), nullable=False),
        sa.Column('host_couple_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('guest_couple_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('forced', sa.Boolean(), server_default='false', nullable=False),
        _created_at(),
        sa.ForeignKeyConstraint(['match_plan_id'], ['match_plan.id'], ),
        sa.ForeignKeyConstraint(['host_couple_id'], ['couple.id'], ),
        sa.ForeignKeyConstraint(['guest_couple_id'], ['couple.id'], ),
        sa.UniqueConstraint('match_plan_id', 'course', 'guest_couple_id', name='uq_pairing_plan_course_guest'),
        sa.CheckConstraint('host_couple_id <> guest_couple_id', name='ck_pairing_not_self'),
    )
    op.create_index('ix_course_pairing_match_plan_id', 'course_pairing', ['match_plan_id'])
    op.create_index('ix_course_pairing_host_couple_id', 'course_pairing', ['host_couple_id'])
    op.create_index('ix_course_pairing_guest_couple_id', 'course_pairing', ['guest_couple_id'])

    op.create_table(
        'envelope',
        _id(),
        sa.Column('match_plan_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('couple_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('course', sa.Text(), nullable=False),
        sa.Column('host_couple_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('destination_address', sa.Text(), nullable=True),
        sa.Column('destination_notes', sa.Text(), nullable=True),
        sa.Column('cycling_distance_km', sa.Float(), nullable=True),
        sa.Column('cycling_minutes', sa.Float(), nullable=True),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('teasing_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('clue_1_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('clue_2_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('street_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('number_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('opened_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('activated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_state', sa.Text(), server_default='LOCKED', nullable=False),
        sa.Column('cancelled', sa.Boolean(), server_default='false', nullable=False),
        _created_at(),
        sa.ForeignKeyConstraint(['match_plan_id'], ['match_plan.id'], ),
        sa.ForeignKeyConstraint(['couple_id'], ['couple.id'], ),
        sa.ForeignKeyConstraint(['host_couple_id'], ['couple.id'], ),
    )
    op.create_index('ix_envelope_match_plan_id', 'envelope', ['match_plan_id'])
    op.create_index('ix_envelope_couple_id', 'envelope', ['couple_id'])
    op.create_index('ix_envelope_host_couple_id', 'envelope', ['host_couple_id'])
    op.create_index('ix_envelope_plan_host', 'envelope', ['match_plan_id', 'host_couple_id'])
    # At most one live envelope per couple and course
    op.create_index(
        'uq_envelope_active_plan_couple_course',
        'envelope',
        ['match_plan_id', 'couple_id', 'course'],
        unique=True,
        postgresql_where=sa.text('cancelled = false'),
    )

    op.create_table(
        'blocked_pair',
        _id(),
        sa.Column('event_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('couple_a_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('couple_b_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(['event_id'], ['event.id'], ),
        sa.ForeignKeyConstraint(['couple_a_id'], ['couple.id'], ),
        sa.ForeignKeyConstraint(['couple_b_id'], ['couple.id'], ),
        sa.UniqueConstraint('event_id', 'couple_a_id', 'couple_b_id', name='uq_blocked_pair'),
    )
    op.create_index('ix_blocked_pair_event_id', 'blocked_pair', ['event_id'])

    op.create_table(
        'course_clues',
        _id(),
        sa.Column('couple_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('course_type', sa.Text(), nullable=False),
        sa.Column('clue_indices', postgresql.JSONB(), server_default='[]', nullable=False),
        sa.Column('allocated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['couple_id'], ['couple.id'], ),
        sa.UniqueConstraint('couple_id', 'course_type', name='uq_course_clues_couple_course'),
    )
    op.create_index('ix_course_clues_couple_id', 'course_clues', ['couple_id'])

    op.create_table(
        'street_info',
        _id(),
        sa.Column('couple_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('street_name', sa.Text(), nullable=True),
        sa.Column('street_number', sa.Integer(), nullable=True),
        sa.Column('apartment', sa.Text(), nullable=True),
        sa.Column('postal_code', sa.Text(), nullable=True),
        sa.Column('city', sa.Text(), nullable=True),
        sa.Column('number_range_low', sa.Integer(), nullable=True),
        sa.Column('number_range_high', sa.Integer(), nullable=True),
        sa.Column('door_code', sa.Text(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(['couple_id'], ['couple.id'], ),
        sa.UniqueConstraint('couple_id'),
    )

    op.create_table(
        'match_audit_event',
        _id(),
        _created_at(),
        sa.Column('event_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('match_plan_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('action', sa.Text(), nullable=False),
        sa.Column('actor', sa.Text(), nullable=True),
        sa.Column('affected_couple_ids', postgresql.JSONB(), server_default='[]', nullable=False),
        sa.Column('warnings', postgresql.JSONB(), server_default='[]', nullable=False),
        sa.Column('payload', postgresql.JSONB(), server_default='{}', nullable=False),
        sa.ForeignKeyConstraint(['event_id'], ['event.id'], ),
        sa.ForeignKeyConstraint(['match_plan_id'], ['match_plan.id'], ),
    )
    op.create_index('ix_match_audit_event_created_at', 'match_audit_event', ['created_at'])
    op.create_index('ix_match_audit_event_event_id', 'match_audit_event', ['event_id'])
    op.create_index('ix_match_audit_event_match_plan_id', 'match_audit_event', ['match_plan_id'])
    op.create_index('ix_match_audit_event_action', 'match_audit_event', ['action'])


def downgrade() -> None:
    op.drop_table('match_audit_event')
    op.drop_table('street_info')
    op.drop_table('course_clues')
    op.drop_table('blocked_pair')
    op.drop_index('uq_envelope_active_plan_couple_course', table_name='envelope')
    op.drop_table('envelope')
    op.drop_table('course_pairing')
    op.drop_constraint('fk_event_active_match_plan', 'event', type_='foreignkey')
    op.drop_table('match_plan')
    op.drop_table('assignment')
    op.drop_table('couple')
    op.drop_table('event_timing')
    op.drop_table('event')
