"""
Tests for full matching runs against the database.
"""
from datetime import datetime, timezone

import pytest

from core.events import EVENT_MATCH_COMMITTED, subscribe, unsubscribe
from core.exceptions import MatchingInputError
from models import (
    Assignment,
    CourseClues,
    CoursePairing,
    Envelope,
    MatchAuditEvent,
    MatchPlan,
    StreetInfo,
)
from services import envelope_service
from services.matching.constants import SELF_HOST_NOTE, WarningType
from services.matching_service import detect_frozen_courses, get_active_plan, run_matching


def _plan_envelopes(db, plan, course=None):
    q = db.query(Envelope).filter(Envelope.match_plan_id == plan.id, Envelope.cancelled.is_(False))
    if course:
        q = q.filter(Envelope.course == course)
    return q.all()


class TestFirstRun:
    def test_commits_version_one(self, db_session, event, make_couples):
        make_couples(event, 6)

        result = run_matching(db_session, event, seed=3)

        plan = result.match_plan
        assert result.success
        assert plan.version == 1
        assert plan.status == "active"
        assert event.active_match_plan_id == plan.id
        assert event.status == "matched"
        assert get_active_plan(db_session, event) is plan

    def test_role_assignment_runs_once(self, db_session, event, make_couples):
        couples = make_couples(event, 6)
        run_matching(db_session, event, seed=3)

        hosts = db_session.query(Assignment).filter(Assignment.is_host.is_(True)).all()
        assert len(hosts) == len(couples)
        assert {a.course for a in hosts} == {"starter", "main", "dessert"}
        assert db_session.query(Assignment).count() == 3 * len(couples)

    def test_every_couple_gets_an_envelope_per_course(self, db_session, event, make_couples):
        couples = make_couples(event, 6)
        result = run_matching(db_session, event, seed=3)

        envelopes = _plan_envelopes(db_session, result.match_plan)
        assert len(envelopes) == 3 * len(couples)
        for couple in couples:
            assert sorted(e.course for e in envelopes if e.couple_id == couple.id) == ["dessert", "main", "starter"]

    def test_hosts_receive_a_self_envelope(self, db_session, event, make_couples):
        make_couples(event, 6)
        result = run_matching(db_session, event, seed=3)

        own = [e for e in _plan_envelopes(db_session, result.match_plan) if e.couple_id == e.host_couple_id]
        assert len(own) == 6
        assert all(e.destination_notes == SELF_HOST_NOTE for e in own)
        assert all(e.cycling_minutes == 0.0 for e in own)

    def test_envelopes_are_timed(self, db_session, event, make_couples):
        make_couples(event, 6)
        result = run_matching(db_session, event, seed=3)

        for env in _plan_envelopes(db_session, result.match_plan):
            assert env.current_state == "LOCKED"
            assert env.teasing_at <= env.clue_1_at <= env.clue_2_at <= env.street_at <= env.number_at <= env.opened_at
            assert env.scheduled_at == env.opened_at

    def test_reveal_data_for_hosts(self, db_session, event, make_couples):
        couples = make_couples(event, 6)
        run_matching(db_session, event, seed=3)

        assert db_session.query(CourseClues).count() == len(couples)
        assert db_session.query(StreetInfo).count() == len(couples)
        info = db_session.query(StreetInfo).filter(StreetInfo.couple_id == couples[0].id).one()
        assert info.street_name == "Storgatan"
        assert info.street_number == 1

    def test_afterparty_envelopes_when_venue_set(self, db_session, make_event, make_couples):
        event = make_event(afterparty_location="Bar Centrum", afterparty_door_code="1234")
        couples = make_couples(event, 6)

        result = run_matching(db_session, event, seed=3)

        party = _plan_envelopes(db_session, result.match_plan, course="afterparty")
        assert len(party) == len(couples)
        assert all(e.host_couple_id is None for e in party)
        assert all(e.destination_address == "Bar Centrum" for e in party)
        assert result.stats["envelopes_created"] == 4 * len(couples)

    def test_stats_and_audit(self, db_session, event, make_couples):
        make_couples(event, 6)
        result = run_matching(db_session, event, seed=3, actor="organizer@example.com")

        for key in ("pairings_created", "envelopes_created", "preference_satisfaction", "warnings", "unplaced", "seed"):
            assert key in result.stats
        assert result.stats["seed"] == 3
        assert result.stats["unplaced"] == 0
        audit = db_session.query(MatchAuditEvent).filter(MatchAuditEvent.action == "match_plan_created").one()
        assert audit.actor == "organizer@example.com"
        assert audit.payload["version"] == 1

    def test_commit_event_is_emitted(self, db_session, event, make_couples):
        make_couples(event, 6)
        seen = []

        def handler(**kwargs):
            seen.append(kwargs)

        subscribe(EVENT_MATCH_COMMITTED, handler)
        try:
            result = run_matching(db_session, event, seed=3)
        finally:
            unsubscribe(EVENT_MATCH_COMMITTED, handler)

        assert seen == [{"event_id": str(event.id), "match_plan_id": str(result.match_plan.id), "version": 1}]

    def test_low_preference_satisfaction_warns(self, db_session, event, make_couples):
        make_couples(event, 6, course_preference="main")

        result = run_matching(db_session, event, seed=3)

        assert WarningType.PREFERENCE in [w.type for w in result.warnings]


class TestInputValidation:
    def test_too_few_couples(self, db_session, event, make_couples):
        make_couples(event, 2)
        with pytest.raises(MatchingInputError, match="At least 3 couples"):
            run_matching(db_session, event)
        assert db_session.query(MatchPlan).count() == 0
        assert db_session.query(Assignment).count() == 0

    def test_cancelled_couples_do_not_count(self, db_session, event, make_couples):
        make_couples(event, 2)
        make_couples(event, 2, cancelled=True)
        with pytest.raises(MatchingInputError):
            run_matching(db_session, event)

    def test_unknown_frozen_course(self, db_session, event, make_couples):
        make_couples(event, 6)
        with pytest.raises(MatchingInputError, match="brunch"):
            run_matching(db_session, event, frozen_courses=["brunch"])
        assert db_session.query(MatchPlan).count() == 0

    def test_insufficient_capacity_writes_nothing(self, db_session, event, make_couples):
        make_couples(event, 3, person_count=2, max_guests=1)
        with pytest.raises(MatchingInputError):
            run_matching(db_session, event)
        assert db_session.query(Assignment).count() == 0


class TestRerun:
    def test_supersedes_previous_plan(self, db_session, event, make_couples):
        make_couples(event, 6)
        first = run_matching(db_session, event, seed=3).match_plan
        second = run_matching(db_session, event, seed=4).match_plan

        assert second.version == 2
        assert first.status == "superseded"
        assert second.status == "active"
        assert event.active_match_plan_id == second.id
        assert db_session.query(MatchPlan).filter(MatchPlan.status == "active").count() == 1

    def test_reuses_role_assignments(self, db_session, event, make_couples):
        make_couples(event, 6)
        run_matching(db_session, event, seed=3)
        before = {(a.couple_id, a.course, a.is_host) for a in db_session.query(Assignment)}

        run_matching(db_session, event, seed=4)

        assert {(a.couple_id, a.course, a.is_host) for a in db_session.query(Assignment)} == before

    def test_late_registration_gets_guest_rows(self, db_session, event, make_couples, make_couple):
        make_couples(event, 6)
        run_matching(db_session, event, seed=3)
        late = make_couple(event)

        result = run_matching(db_session, event, seed=4)

        rows = db_session.query(Assignment).filter(Assignment.couple_id == late.id).all()
        assert len(rows) == 3 and not any(r.is_host for r in rows)
        assert len([e for e in _plan_envelopes(db_session, result.match_plan) if e.couple_id == late.id]) == 3

    def test_activated_course_is_frozen(self, db_session, event, make_couples):
        make_couples(event, 6)
        first = run_matching(db_session, event, seed=3).match_plan
        for env in _plan_envelopes(db_session, first, course="starter"):
            env.activated_at = datetime(2026, 10, 24, 14, 0, tzinfo=timezone.utc)
        db_session.flush()
        assert detect_frozen_courses(db_session, first.id) == {"starter"}

        result = run_matching(db_session, event, seed=99)

        def starter_pairs(plan):
            return {
                (p.host_couple_id, p.guest_couple_id)
                for p in db_session.query(CoursePairing).filter(
                    CoursePairing.match_plan_id == plan.id, CoursePairing.course == "starter"
                )
            }

        assert result.frozen_courses == ["starter"]
        assert starter_pairs(result.match_plan) == starter_pairs(first)
        carried = _plan_envelopes(db_session, result.match_plan, course="starter")
        assert len(carried) == 6
        assert all(e.activated_at is not None for e in carried)

    def test_organizer_activation_freezes_the_course(self, db_session, event, make_couples):
        make_couples(event, 6)
        first = run_matching(db_session, event, seed=3).match_plan
        main_before = {
            (p.host_couple_id, p.guest_couple_id)
            for p in db_session.query(CoursePairing).filter(
                CoursePairing.match_plan_id == first.id, CoursePairing.course == "main"
            )
        }

        envelope_service.activate_course(db_session, event, "main")
        result = run_matching(db_session, event, seed=42)

        assert result.frozen_courses == ["main"]
        main_after = {
            (p.host_couple_id, p.guest_couple_id)
            for p in db_session.query(CoursePairing).filter(
                CoursePairing.match_plan_id == result.match_plan.id, CoursePairing.course == "main"
            )
        }
        assert main_after == main_before

    def test_requested_freeze_without_active_plan_is_ignored(self, db_session, event, make_couples):
        make_couples(event, 6)
        result = run_matching(db_session, event, frozen_courses=["main"], seed=3)
        assert result.frozen_courses == []
