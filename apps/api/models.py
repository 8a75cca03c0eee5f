from sqlalchemy import Column, Integer, Boolean, CheckConstraint, Float, Date, DateTime, ForeignKey, Text, Time, Index, UniqueConstraint, JSON, Uuid, text
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from core.database import Base
import uuid
from typing import Optional


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Event(Base):
    """
    One progressive dinner evening.

    `active_match_plan_id` is the only pointer to the plan in force; it is
    moved exclusively by committing a new match run.
    """

    __tablename__ = "event"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    name = Column(Text, nullable=False)
    event_date = Column(Date, nullable=False)
    status = Column(Text, default="draft", nullable=False)  # draft | open | matched | locked | in_progress | completed

    # Wall-clock course start times in the event's timezone
    starter_time = Column(Time, nullable=True)
    main_time = Column(Time, nullable=True)
    dessert_time = Column(Time, nullable=True)
    afterparty_time = Column(Time, nullable=True)
    # Cumulative delay applied by organizers
    time_offset_minutes = Column(Integer, default=0, nullable=False)
    timezone = Column(Text, nullable=True)  # IANA name; falls back to settings.EVENT_TIMEZONE
    # {"main": {"street_minutes_before": 20}, ...}
    course_timing_offsets = Column(JSONType, nullable=True)

    afterparty_location = Column(Text, nullable=True)
    afterparty_door_code = Column(Text, nullable=True)
    afterparty_latitude = Column(Float, nullable=True)
    afterparty_longitude = Column(Float, nullable=True)

    # use_alter: match_plan references event as well
    active_match_plan_id = Column(
        Uuid,
        ForeignKey("match_plan.id", use_alter=True, name="fk_event_active_match_plan"),
        nullable=True,
    )

    couples = relationship("Couple", back_populates="event", foreign_keys="Couple.event_id")
    timing = relationship("EventTiming", uselist=False, back_populates="event")


class EventTiming(Base):
    """Reveal offsets (minutes before course start). Defaults apply when absent."""

    __tablename__ = "event_timing"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id = Column(Uuid, ForeignKey("event.id"), nullable=False, unique=True)
    teasing_minutes_before = Column(Integer, default=360, nullable=False)
    clue_1_minutes_before = Column(Integer, default=120, nullable=False)
    clue_2_minutes_before = Column(Integer, default=30, nullable=False)
    street_minutes_before = Column(Integer, default=15, nullable=False)
    number_minutes_before = Column(Integer, default=5, nullable=False)
    during_meal_clue_interval_minutes = Column(Integer, default=15, nullable=False)
    distance_adjustment_enabled = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    event = relationship("Event", back_populates="timing")


class Couple(Base):
    """
    A participating unit of one or two people.

    Soft-deleted through `cancelled`; rows stay while pairings reference them.
    """

    __tablename__ = "couple"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id = Column(Uuid, ForeignKey("event.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    invited_name = Column(Text, nullable=False)
    invited_email = Column(Text, nullable=True)
    invited_birth_year = Column(Integer, nullable=True)
    invited_fun_facts = Column(JSONType, nullable=True)  # list[str]
    invited_allergies = Column(JSONType, nullable=True)  # list[str]

    partner_name = Column(Text, nullable=True)
    partner_email = Column(Text, nullable=True)
    partner_birth_year = Column(Integer, nullable=True)
    partner_fun_facts = Column(JSONType, nullable=True)
    partner_allergies = Column(JSONType, nullable=True)

    person_count = Column(Integer, default=2, nullable=False)

    address = Column(Text, nullable=True)
    address_notes = Column(Text, nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    course_preference = Column(Text, nullable=True)  # starter | main | dessert | NULL
    max_guests = Column(Integer, nullable=True)  # host capacity override (persons)

    cancelled = Column(Boolean, default=False, nullable=False, index=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    split_from_couple_id = Column(Uuid, ForeignKey("couple.id"), nullable=True)

    event = relationship("Event", back_populates="couples", foreign_keys=[event_id])

    __table_args__ = (
        CheckConstraint("person_count IN (1, 2)", name="ck_couple_person_count"),
    )

    @property
    def display_name(self) -> str:
        if self.partner_name:
            return f"{self.invited_name} & {self.partner_name}"
        return self.invited_name

    @property
    def coordinates(self) -> Optional[tuple]:
        if self.latitude is None or self.longitude is None:
            return None
        return (self.latitude, self.longitude)


class Assignment(Base):
    """
    Role of a couple for one course: host (with capacity) or guest.

    Owned by the event, not by a match plan; re-matching reuses these rows.
    """

    __tablename__ = "assignment"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id = Column(Uuid, ForeignKey("event.id"), nullable=False, index=True)
    couple_id = Column(Uuid, ForeignKey("couple.id"), nullable=False, index=True)
    course = Column(Text, nullable=False)
    is_host = Column(Boolean, default=False, nullable=False)
    max_guests = Column(Integer, default=0, nullable=False)  # persons
    is_flex_host = Column(Boolean, default=False, nullable=False)
    flex_extra_capacity = Column(Integer, default=0, nullable=False)
    is_emergency_host = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    notified_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("event_id", "couple_id", "course", name="uq_assignment_event_couple_course"),
        CheckConstraint("course IN ('starter', 'main', 'dessert')", name="ck_assignment_course"),
    )


class MatchPlan(Base):
    """
    One versioned matching result for an event.

    `lock_version` is the optimistic-concurrency column: two writers that
    both loaded the same version cannot both flush.
    """

    __tablename__ = "match_plan"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id = Column(Uuid, ForeignKey("event.id"), nullable=False, index=True)
    version = Column(Integer, nullable=False)
    status = Column(Text, default="draft", nullable=False)  # draft | active | superseded
    stats = Column(JSONType, nullable=False, default=dict)
    mutation_count = Column(Integer, default=0, nullable=False)
    lock_version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    committed_at = Column(DateTime(timezone=True), nullable=True)

    pairings = relationship("CoursePairing", back_populates="match_plan")
    envelopes = relationship("Envelope", back_populates="match_plan")

    __mapper_args__ = {"version_id_col": lock_version}

    __table_args__ = (
        UniqueConstraint("event_id", "version", name="uq_match_plan_event_version"),
        CheckConstraint("status IN ('draft', 'active', 'superseded')", name="ck_match_plan_status"),
    )


class CoursePairing(Base):
    """Guest couple seated at a host couple for one course of a plan."""

    __tablename__ = "course_pairing"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    match_plan_id = Column(Uuid, ForeignKey("match_plan.id"), nullable=False, index=True)
    course = Column(Text, nullable=False)
    host_couple_id = Column(Uuid, ForeignKey("couple.id"), nullable=False, index=True)
    guest_couple_id = Column(Uuid, ForeignKey("couple.id"), nullable=False, index=True)
    # Pairing violates a blocked pair; kept visible for organizers.
    forced = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    match_plan = relationship("MatchPlan", back_populates="pairings")

    __table_args__ = (
        UniqueConstraint("match_plan_id", "course", "guest_couple_id", name="uq_pairing_plan_course_guest"),
        CheckConstraint("host_couple_id <> guest_couple_id", name="ck_pairing_not_self"),
    )


class Envelope(Base):
    """
    Destination info for one couple and course, revealed progressively.

    Hosts hold a self-hosted envelope for their own course. Afterparty
    envelopes have no host.
    """

    __tablename__ = "envelope"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    match_plan_id = Column(Uuid, ForeignKey("match_plan.id"), nullable=False, index=True)
    couple_id = Column(Uuid, ForeignKey("couple.id"), nullable=False, index=True)
    course = Column(Text, nullable=False)
    host_couple_id = Column(Uuid, ForeignKey("couple.id"), nullable=True, index=True)

    destination_address = Column(Text, nullable=True)
    destination_notes = Column(Text, nullable=True)
    cycling_distance_km = Column(Float, nullable=True)
    cycling_minutes = Column(Float, nullable=True)

    scheduled_at = Column(DateTime(timezone=True), nullable=True)
    teasing_at = Column(DateTime(timezone=True), nullable=True)
    clue_1_at = Column(DateTime(timezone=True), nullable=True)
    clue_2_at = Column(DateTime(timezone=True), nullable=True)
    street_at = Column(DateTime(timezone=True), nullable=True)
    number_at = Column(DateTime(timezone=True), nullable=True)
    opened_at = Column(DateTime(timezone=True), nullable=True)
    activated_at = Column(DateTime(timezone=True), nullable=True)  # first shown to the guest

    current_state = Column(Text, default="LOCKED", nullable=False)
    cancelled = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    match_plan = relationship("MatchPlan", back_populates="envelopes")

    __table_args__ = (
        # At most one live envelope per couple and course; cancelled rows are history.
        Index(
            "uq_envelope_active_plan_couple_course",
            "match_plan_id",
            "couple_id",
            "course",
            unique=True,
            postgresql_where=text("cancelled = false"),
            sqlite_where=text("cancelled = 0"),
        ),
        Index("ix_envelope_plan_host", "match_plan_id", "host_couple_id"),
    )


class BlockedPair(Base):
    """Two couples that must never share a table as host and guest."""

    __tablename__ = "blocked_pair"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id = Column(Uuid, ForeignKey("event.id"), nullable=False, index=True)
    couple_a_id = Column(Uuid, ForeignKey("couple.id"), nullable=False)
    couple_b_id = Column(Uuid, ForeignKey("couple.id"), nullable=False)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("event_id", "couple_a_id", "couple_b_id", name="uq_blocked_pair"),
    )


class CourseClues(Base):
    """Which of a host's facts are revealed to guests of one course."""

    __tablename__ = "course_clues"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    couple_id = Column(Uuid, ForeignKey("couple.id"), nullable=False, index=True)
    course_type = Column(Text, nullable=False)
    clue_indices = Column(JSONType, nullable=False, default=list)
    allocated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("couple_id", "course_type", name="uq_course_clues_couple_course"),
    )


class StreetInfo(Base):
    """Host address split into revealable fragments."""

    __tablename__ = "street_info"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    couple_id = Column(Uuid, ForeignKey("couple.id"), nullable=False, unique=True)
    street_name = Column(Text, nullable=True)
    street_number = Column(Integer, nullable=True)
    apartment = Column(Text, nullable=True)
    postal_code = Column(Text, nullable=True)
    city = Column(Text, nullable=True)
    number_range_low = Column(Integer, nullable=True)
    number_range_high = Column(Integer, nullable=True)
    door_code = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class MatchAuditEvent(Base):
    """
    Append-only log of matching runs and cascade mutations.

    Non-negotiable invariants:
    - write-only from the application (no update/delete in code paths)
    - never read back by the matching core
    """

    __tablename__ = "match_audit_event"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
    event_id = Column(Uuid, ForeignKey("event.id"), nullable=False, index=True)
    match_plan_id = Column(Uuid, ForeignKey("match_plan.id"), nullable=True, index=True)
    action = Column(Text, nullable=False, index=True)  # e.g. match_plan_created | cascade.host_dropout | manual_placement
    actor = Column(Text, nullable=True)
    affected_couple_ids = Column(JSONType, nullable=False, default=list)
    warnings = Column(JSONType, nullable=False, default=list)
    payload = Column(JSONType, nullable=False, default=dict)
