"""
Tests for organizer placement workflows on top of cascade repair.
"""
from datetime import datetime, timezone

import pytest

from core.exceptions import MatchingInputError, PlacementConflictError
from models import Assignment, Couple, CourseClues, CoursePairing, Envelope, MatchAuditEvent, StreetInfo
from services import placement_service
from services.envelope.clues import combine_facts
from services.matching.cascade_repair import Reassign, apply_cascade
from services.matching.constants import SELF_HOST_NOTE, WarningType
from services.placement_service import Placement


def _ids(rows):
    return {r["couple_id"] for r in rows}


def _live(db, plan_id, couple_id, course):
    return (
        db.query(Envelope)
        .filter(
            Envelope.match_plan_id == plan_id,
            Envelope.couple_id == couple_id,
            Envelope.course == course,
            Envelope.cancelled.is_(False),
        )
        .all()
    )


@pytest.fixture
def dessert_host_gone(db_session, matched_event):
    """The only dessert host has dropped out; five couples need a dessert table."""
    m = matched_event
    result = placement_service.drop_out(db_session, m.event, m.couples[4].id)
    m.dropout = result
    return m


class TestListUnplaced:
    def test_nothing_unplaced_after_matching(self, db_session, matched_event):
        listing = placement_service.list_unplaced(db_session, matched_event.event)

        assert listing["match_plan_id"] == matched_event.plan.id
        assert all(rows == [] for rows in listing["unplaced"].values())

    def test_lists_guests_of_a_dropped_host(self, db_session, dessert_host_gone):
        m = dessert_host_gone
        listing = placement_service.list_unplaced(db_session, m.event)

        expected = {c.id for i, c in enumerate(m.couples) if i != 4}
        assert _ids(listing["unplaced"]["dessert"]) == expected
        assert listing["hosts"]["dessert"] == []
        assert listing["unplaced"]["starter"] == []

    def test_hosts_sorted_by_free_capacity(self, db_session, matched_event):
        listing = placement_service.list_unplaced(db_session, matched_event.event)

        free = [h["free_capacity"] for h in listing["hosts"]["starter"]]
        assert free == sorted(free, reverse=True)
        assert all(h["max_guests"] == 6 for h in listing["hosts"]["starter"])

    def test_requires_an_active_plan(self, db_session, event):
        with pytest.raises(MatchingInputError, match="no active match plan"):
            placement_service.list_unplaced(db_session, event)


class TestPromoteAndPlace:
    def test_promote_pair_with_guests(self, db_session, dessert_host_gone):
        m = dessert_host_gone
        new_host, first, second = m.couples[5], m.couples[0], m.couples[1]

        result, outcome = placement_service.promote_to_host(
            db_session, m.event, new_host.id, "dessert", guest_ids=[first.id, second.id], actor="organizer"
        )

        row = (
            db_session.query(Assignment)
            .filter(Assignment.couple_id == new_host.id, Assignment.course == "dessert")
            .one()
        )
        assert row.is_host is True
        assert row.max_guests == 8
        assert result.envelopes_created == 1
        (own,) = _live(db_session, m.plan.id, new_host.id, "dessert")
        assert own.host_couple_id == new_host.id
        assert own.destination_notes == SELF_HOST_NOTE

        assert len(outcome.placed) == 2
        for guest in (first, second):
            (env,) = _live(db_session, m.plan.id, guest.id, "dessert")
            assert env.host_couple_id == new_host.id
            assert env.destination_address == new_host.address

        assert db_session.query(CourseClues).filter(
            CourseClues.couple_id == new_host.id, CourseClues.course_type == "dessert"
        ).count() == 1

        listing = placement_service.list_unplaced(db_session, m.event)
        assert _ids(listing["unplaced"]["dessert"]) == {m.couples[2].id, m.couples[3].id}
        (host_load,) = listing["hosts"]["dessert"]
        assert host_load["guest_persons"] == 4
        assert host_load["free_capacity"] == 4

    def test_promote_single_gets_smaller_table(self, db_session, dessert_host_gone):
        m = dessert_host_gone
        placement_service.split_couple(db_session, m.event, m.couples[5].id)

        placement_service.promote_to_host(db_session, m.event, m.couples[5].id, "dessert")

        row = (
            db_session.query(Assignment)
            .filter(Assignment.couple_id == m.couples[5].id, Assignment.course == "dessert")
            .one()
        )
        assert row.max_guests == 6

    def test_promote_existing_host_conflicts(self, db_session, matched_event):
        m = matched_event
        with pytest.raises(PlacementConflictError):
            placement_service.promote_to_host(db_session, m.event, m.couples[0].id, "starter")

    def test_place_writes_audit_entry(self, db_session, dessert_host_gone):
        m = dessert_host_gone
        placement_service.promote_to_host(db_session, m.event, m.couples[5].id, "dessert")

        placement_service.place_guests(
            db_session, m.event, [Placement(m.couples[2].id, "dessert", m.couples[5].id)], actor="organizer"
        )

        pairing = (
            db_session.query(CoursePairing)
            .filter(CoursePairing.guest_couple_id == m.couples[2].id, CoursePairing.course == "dessert")
            .one()
        )
        assert pairing.host_couple_id == m.couples[5].id
        assert db_session.query(MatchAuditEvent).filter(MatchAuditEvent.action == "manual_placement").count() == 1

    def test_already_placed_guest_conflicts(self, db_session, matched_event):
        m = matched_event
        seated_at = (
            db_session.query(CoursePairing)
            .filter(CoursePairing.guest_couple_id == m.couples[5].id, CoursePairing.course == "starter")
            .one()
            .host_couple_id
        )
        other = m.couples[1].id if seated_at == m.couples[0].id else m.couples[0].id

        with pytest.raises(PlacementConflictError):
            placement_service.place_guests(db_session, m.event, [Placement(m.couples[5].id, "starter", other)])

    def test_empty_request_rejected(self, db_session, matched_event):
        with pytest.raises(MatchingInputError, match="No placements"):
            placement_service.place_guests(db_session, matched_event.event, [])

    def test_batch_is_validated_before_any_write(self, db_session, dessert_host_gone):
        m = dessert_host_gone
        placement_service.promote_to_host(db_session, m.event, m.couples[5].id, "dessert")
        placements = [
            Placement(m.couples[2].id, "dessert", m.couples[5].id),
            Placement(m.couples[3].id, "dessert", m.couples[0].id),  # couple 0 hosts the starter
        ]

        with pytest.raises(MatchingInputError, match="does not host dessert"):
            placement_service.place_guests(db_session, m.event, placements)

        assert db_session.query(CoursePairing).filter(
            CoursePairing.guest_couple_id == m.couples[2].id, CoursePairing.course == "dessert"
        ).count() == 0

    def test_duplicate_guest_in_batch_rejected(self, db_session, dessert_host_gone):
        m = dessert_host_gone
        placement_service.promote_to_host(db_session, m.event, m.couples[5].id, "dessert")
        twice = Placement(m.couples[2].id, "dessert", m.couples[5].id)

        with pytest.raises(MatchingInputError, match="listed twice"):
            placement_service.place_guests(db_session, m.event, [twice, twice])


class TestDropOut:
    def test_host_uses_host_dropout(self, db_session, dessert_host_gone):
        assert dessert_host_gone.dropout.mutation == "host_dropout"
        assert len(dessert_host_gone.dropout.unplaced_guests) == 5

    def test_host_without_guests_uses_host_dropout(self, db_session, matched_event):
        m = matched_event
        empty, other = m.couples[0], m.couples[1]
        seated = db_session.query(CoursePairing).filter(
            CoursePairing.match_plan_id == m.plan.id, CoursePairing.host_couple_id == empty.id
        ).all()
        for p in seated:
            apply_cascade(
                db_session, m.event.id, m.plan.id, p.guest_couple_id,
                Reassign(course="starter", new_host_couple_id=other.id),
            )

        result = placement_service.drop_out(db_session, m.event, empty.id)

        assert result.mutation == "host_dropout"
        assert result.unplaced_guests == []
        assert db_session.query(Assignment).filter(Assignment.couple_id == empty.id).count() == 0
        assert _live(db_session, m.plan.id, empty.id, "starter") == []

    def test_guest_uses_guest_dropout(self, db_session, matched_event):
        result = placement_service.drop_out(db_session, matched_event.event, matched_event.couples[5].id)
        assert result.mutation == "guest_dropout"

    def test_reveal_data_discarded(self, db_session, dessert_host_gone):
        gone = dessert_host_gone.couples[4].id
        assert db_session.query(CourseClues).filter(CourseClues.couple_id == gone).count() == 0
        assert db_session.query(StreetInfo).filter(StreetInfo.couple_id == gone).count() == 0

    def test_before_matching_only_cancels(self, db_session, event, make_couple):
        couple = make_couple(event)

        assert placement_service.drop_out(db_session, event, couple.id) is None
        assert couple.cancelled is True
        assert couple.cancelled_at is not None

    def test_unknown_couple(self, db_session, event, make_event, make_couple):
        stranger = make_couple(make_event(name="Other"))
        with pytest.raises(MatchingInputError, match="not found"):
            placement_service.drop_out(db_session, event, stranger.id)


class TestChangeAddress:
    def test_host_envelopes_follow_the_new_address(self, db_session, matched_event):
        m = matched_event
        host = m.couples[2]

        result, warnings = placement_service.change_address(
            db_session, m.event, host.id, "Lilla gatan 22, 413 02 Göteborg", "Back door"
        )

        assert warnings == []
        assert result.envelopes_updated > 0
        assert host.latitude is None and host.longitude is None
        envs = db_session.query(Envelope).filter(
            Envelope.host_couple_id == host.id, Envelope.cancelled.is_(False)
        ).all()
        assert all(e.destination_address == "Lilla gatan 22, 413 02 Göteborg" for e in envs)
        info = db_session.query(StreetInfo).filter(StreetInfo.couple_id == host.id).one()
        assert info.street_name == "Lilla gatan"
        assert info.street_number == 22

    def test_duplicate_address_warns(self, db_session, matched_event):
        m = matched_event
        _, warnings = placement_service.change_address(db_session, m.event, m.couples[5].id, m.couples[0].address)

        assert [w.type for w in warnings] == [WarningType.DUPLICATE_ADDRESS]

    def test_activated_envelope_warns(self, db_session, matched_event):
        m = matched_event
        host = m.couples[0]
        env = (
            db_session.query(Envelope)
            .filter(Envelope.host_couple_id == host.id, Envelope.couple_id != host.id)
            .first()
        )
        env.activated_at = datetime(2026, 10, 24, 12, 0, tzinfo=timezone.utc)
        db_session.flush()

        result, warnings = placement_service.change_address(db_session, m.event, host.id, "Ny väg 1")

        assert WarningType.REVEAL_FREEZE in [w.type for w in warnings]
        assert WarningType.REVEAL_FREEZE in [w.type for w in result.warnings]

    def test_blank_address_rejected(self, db_session, matched_event):
        with pytest.raises(MatchingInputError):
            placement_service.change_address(db_session, matched_event.event, matched_event.couples[0].id, " ")


class TestSplitResignTransfer:
    def test_split_creates_a_solo_couple(self, db_session, matched_event):
        m = matched_event
        original = m.couples[5]
        partner = original.partner_name

        solo, result = placement_service.split_couple(db_session, m.event, original.id)

        assert solo.invited_name == partner
        assert solo.person_count == 1
        assert solo.split_from_couple_id == original.id
        assert original.person_count == 1
        assert original.partner_name is None
        assert result.unplaced_by_course == {c: [solo.id] for c in ("starter", "main", "dessert")}

    def test_split_requires_a_partner(self, db_session, matched_event):
        m = matched_event
        placement_service.split_couple(db_session, m.event, m.couples[5].id)
        with pytest.raises(MatchingInputError, match="no partner"):
            placement_service.split_couple(db_session, m.event, m.couples[5].id)

    def test_resign_discards_reveal_data(self, db_session, matched_event):
        m = matched_event
        host = m.couples[2]

        result = placement_service.resign_host(db_session, m.event, host.id)

        assert host.id in result.unplaced_by_course["main"]
        assert db_session.query(CourseClues).filter(CourseClues.couple_id == host.id).count() == 0

    def test_transfer_moves_reveal_data(self, db_session, matched_event):
        m = matched_event
        source, target = m.couples[0], m.couples[5]

        placement_service.transfer_host(db_session, m.event, source.id, target.id, ["starter"])

        assert db_session.query(CourseClues).filter(CourseClues.couple_id == source.id).count() == 0
        (clues,) = db_session.query(CourseClues).filter(CourseClues.couple_id == target.id).all()
        assert clues.course_type == "starter"


class TestHostProfile:
    def test_profile_edit_reallocates_clues(self, db_session, matched_event):
        m = matched_event
        host = m.couples[0]

        couple = placement_service.update_host_profile(
            db_session, m.event, host.id, invited_fun_facts=["Keeps bees"], partner_fun_facts=[]
        )

        total = len(combine_facts(couple))
        assert total == 2  # one fact plus the birth decade
        (clues,) = db_session.query(CourseClues).filter(CourseClues.couple_id == host.id).all()
        assert clues.clue_indices
        assert all(0 <= i < total for i in clues.clue_indices)

    def test_guest_profile_has_no_clues(self, db_session, matched_event):
        m = matched_event
        placement_service.update_host_profile(db_session, m.event, m.couples[5].id, invited_birth_year=1975)

        assert db_session.get(Couple, m.couples[5].id).invited_birth_year == 1975
        assert db_session.query(CourseClues).filter(CourseClues.couple_id == m.couples[5].id).count() == 0
