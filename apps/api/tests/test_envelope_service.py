"""
Tests for envelope persistence and schedule maintenance.
"""
from datetime import datetime, timedelta, timezone

import pytest

from core.events import EVENT_ENVELOPES_RESCHEDULED, subscribe, unsubscribe
from core.exceptions import MatchingInputError
from models import Envelope, MatchAuditEvent
from services import envelope_service
from services.envelope_service import _utc


def _live(db, plan):
    return (
        db.query(Envelope)
        .filter(Envelope.match_plan_id == plan.id, Envelope.cancelled.is_(False))
        .order_by(Envelope.couple_id, Envelope.course)
        .all()
    )


def _opened(db, plan):
    return {(e.couple_id, e.course): _utc(e.opened_at) for e in _live(db, plan)}


class TestDelay:
    def test_shifts_every_unactivated_envelope(self, db_session, matched_event):
        m = matched_event
        before = _opened(db_session, m.plan)

        shifted = envelope_service.delay_envelopes(db_session, m.event, 15)

        assert shifted == len(before)
        after = _opened(db_session, m.plan)
        assert all(after[k] - before[k] == timedelta(minutes=15) for k in before)
        assert m.event.time_offset_minutes == 15

    def test_activated_envelopes_stay_put(self, db_session, matched_event):
        m = matched_event
        seen = _live(db_session, m.plan)[0]
        seen.activated_at = datetime(2026, 10, 24, 12, 0, tzinfo=timezone.utc)
        db_session.flush()
        opened = _utc(seen.opened_at)

        shifted = envelope_service.delay_envelopes(db_session, m.event, 30)

        assert shifted == len(_live(db_session, m.plan)) - 1
        assert _utc(seen.opened_at) == opened

    def test_delays_accumulate(self, db_session, matched_event):
        m = matched_event
        envelope_service.delay_envelopes(db_session, m.event, 10)
        envelope_service.delay_envelopes(db_session, m.event, 5)
        assert m.event.time_offset_minutes == 15

    def test_without_plan_is_a_no_op(self, db_session, event):
        assert envelope_service.delay_envelopes(db_session, event, 10) == 0
        assert not event.time_offset_minutes

    def test_emits_reschedule_event(self, db_session, matched_event):
        seen = []

        def handler(**kwargs):
            seen.append(kwargs)

        subscribe(EVENT_ENVELOPES_RESCHEDULED, handler)
        try:
            envelope_service.delay_envelopes(db_session, matched_event.event, 20)
        finally:
            unsubscribe(EVENT_ENVELOPES_RESCHEDULED, handler)

        assert seen[0]["delay_minutes"] == 20


class TestRecalculate:
    def test_keeps_an_earlier_delay(self, db_session, matched_event):
        m = matched_event
        envelope_service.delay_envelopes(db_session, m.event, 15)
        delayed = _opened(db_session, m.plan)

        count = envelope_service.recalculate_envelope_times(db_session, m.event)

        assert count == len(delayed)
        assert _opened(db_session, m.plan) == delayed

    def test_routed_minutes_move_the_street_reveal(self, db_session, matched_event):
        m = matched_event
        guest_env = next(e for e in _live(db_session, m.plan) if e.couple_id != e.host_couple_id)
        street_before = _utc(guest_env.street_at)

        envelope_service.recalculate_envelope_times(db_session, m.event, {guest_env.id: 45.0})

        assert guest_env.cycling_minutes == 45.0
        assert _utc(guest_env.street_at) < street_before
        assert _utc(guest_env.opened_at) - _utc(guest_env.street_at) >= timedelta(minutes=45)

    def test_self_envelopes_ignore_distance(self, db_session, matched_event):
        m = matched_event
        own = next(e for e in _live(db_session, m.plan) if e.couple_id == e.host_couple_id)
        before = (_utc(own.street_at), _utc(own.number_at))

        envelope_service.recalculate_envelope_times(db_session, m.event, {own.id: 60.0})

        assert (_utc(own.street_at), _utc(own.number_at)) == before


class TestStateSync:
    def test_all_locked_well_before_the_event(self, db_session, matched_event):
        m = matched_event
        changed = envelope_service.sync_envelope_states(
            db_session, m.plan.id, now=datetime(2026, 10, 1, tzinfo=timezone.utc)
        )
        assert changed == 0
        assert {e.current_state for e in _live(db_session, m.plan)} == {"LOCKED"}

    def test_all_open_after_the_event(self, db_session, matched_event):
        m = matched_event
        total = len(_live(db_session, m.plan))

        changed = envelope_service.sync_envelope_states(
            db_session, m.plan.id, now=datetime(2026, 10, 25, tzinfo=timezone.utc)
        )

        assert changed == total
        assert {e.current_state for e in _live(db_session, m.plan)} == {"OPEN"}
        assert envelope_service.sync_envelope_states(
            db_session, m.plan.id, now=datetime(2026, 10, 25, tzinfo=timezone.utc)
        ) == 0


class TestAfterparty:
    def test_one_envelope_per_couple_and_idempotent(self, db_session, matched_event):
        m = matched_event
        m.event.afterparty_location = "Bar Centrum"
        ids = [c.id for c in m.couples]

        first = envelope_service.create_afterparty_envelopes(db_session, m.event, m.plan.id, ids)
        again = envelope_service.create_afterparty_envelopes(db_session, m.event, m.plan.id, ids)

        assert len(first) == len(ids)
        assert again == []
        assert all(e.host_couple_id is None for e in first)

    def test_no_venue_no_envelopes(self, db_session, matched_event):
        m = matched_event
        assert envelope_service.create_afterparty_envelopes(db_session, m.event, m.plan.id, [m.couples[0].id]) == []


class TestActivateCourse:
    NOW = datetime(2026, 10, 24, 16, 0, tzinfo=timezone.utc)

    def test_compresses_reveals_to_thirty_second_steps(self, db_session, matched_event):
        m = matched_event
        starter = [e for e in _live(db_session, m.plan) if e.course == "starter"]

        activated = envelope_service.activate_course(db_session, m.event, "starter", now=self.NOW)

        assert activated == len(starter)
        for env in starter:
            assert _utc(env.activated_at) == self.NOW
            assert _utc(env.teasing_at) == self.NOW
            assert self.NOW < _utc(env.opened_at) <= self.NOW + timedelta(seconds=150)
            assert _utc(env.scheduled_at) == _utc(env.opened_at)
        assert (m.plan.stats or {})["activated_courses"] == ["starter"]

    def test_is_idempotent_and_audited(self, db_session, matched_event):
        m = matched_event
        envelope_service.activate_course(db_session, m.event, "main", actor="organizer", now=self.NOW)

        assert envelope_service.activate_course(db_session, m.event, "main", now=self.NOW) == 0
        audit = db_session.query(MatchAuditEvent).filter(MatchAuditEvent.action == "course_activated").all()
        assert len(audit) == 2
        assert sorted(a.payload["activated_envelopes"] for a in audit) == [0, 6]
        assert any(a.actor == "organizer" and a.payload["course"] == "main" for a in audit)

    def test_delay_leaves_activated_course_alone(self, db_session, matched_event):
        m = matched_event
        total = len(_live(db_session, m.plan))
        activated = envelope_service.activate_course(db_session, m.event, "dessert", now=self.NOW)

        assert envelope_service.delay_envelopes(db_session, m.event, 10) == total - activated

    def test_afterparty_is_not_frozen(self, db_session, matched_event):
        m = matched_event
        m.event.afterparty_location = "Bar Centrum"
        envelope_service.create_afterparty_envelopes(db_session, m.event, m.plan.id, [c.id for c in m.couples])

        assert envelope_service.activate_course(db_session, m.event, "afterparty", now=self.NOW) == len(m.couples)
        assert "activated_courses" not in (m.plan.stats or {})

    def test_unknown_course_or_missing_plan(self, db_session, matched_event):
        with pytest.raises(MatchingInputError, match="Unknown course"):
            envelope_service.activate_course(db_session, matched_event.event, "brunch")
        matched_event.event.active_match_plan_id = None
        with pytest.raises(MatchingInputError, match="no active match plan"):
            envelope_service.activate_course(db_session, matched_event.event, "starter")
