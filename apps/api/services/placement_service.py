"""
Placement Service

Organizer workflows layered on cascade repair: listing unplaced guests,
manual placement, promotion to host, dropouts, address edits, splits,
resignations and host transfers.

Each workflow validates first, then calls apply_cascade, then refreshes
envelopes and reveal data for the couples it touched. Nothing commits.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from core.events import EVENT_GUESTS_PLACED, emit
from core.exceptions import MatchingInputError, PlacementConflictError
from models import Assignment, Couple, CoursePairing, Event
from services import envelope_service
from services.match_audit import record_match_audit_event
from services.matching.cascade_repair import (
    AddressChange,
    CascadeResult,
    GuestDropout,
    HostDropout,
    PromoteHost,
    Reassign,
    ResignHost,
    Split,
    TransferHost,
    apply_cascade,
)
from services.matching.constants import (
    MEAL_COURSES,
    PROMOTED_HOST_CAPACITY_PAIR,
    PROMOTED_HOST_CAPACITY_SINGLE,
)
from services.matching.pairing_engine import MatchingWarning
from services.matching.policy import check_duplicate_address, check_reveal_freeze, guest_persons_at

logger = logging.getLogger(__name__)


@dataclass
class Placement:
    guest_couple_id: Any
    course: str
    host_couple_id: Any


@dataclass
class PlacementOutcome:
    placed: List[Placement] = field(default_factory=list)
    envelopes_created: int = 0
    warnings: List[MatchingWarning] = field(default_factory=list)


def require_active_plan_id(event: Event) -> Any:
    if not event.active_match_plan_id:
        raise MatchingInputError("Event has no active match plan")
    return event.active_match_plan_id


def _require_couple(db: Session, event: Event, couple_id: Any) -> Couple:
    couple = db.get(Couple, couple_id)
    if couple is None or couple.event_id != event.id:
        raise MatchingInputError(f"Couple {couple_id} not found in event")
    return couple


def _upsert_assignment(db: Session, event_id: Any, couple_id: Any, course: str, **fields) -> Assignment:
    row = (
        db.query(Assignment)
        .filter(Assignment.event_id == event_id, Assignment.couple_id == couple_id, Assignment.course == course)
        .first()
    )
    if row is None:
        row = Assignment(event_id=event_id, couple_id=couple_id, course=course)
        db.add(row)
    for key, value in fields.items():
        setattr(row, key, value)
    db.flush()
    return row


def _hosted_courses(db: Session, event_id: Any, couple_id: Any) -> List[str]:
    rows = (
        db.query(Assignment.course)
        .filter(Assignment.event_id == event_id, Assignment.couple_id == couple_id, Assignment.is_host.is_(True))
        .all()
    )
    return [r[0] for r in rows]


def refresh_host_reveal_data(db: Session, event: Event, couple: Couple) -> None:
    """Re-run clue allocation and street parsing, or discard both for non-hosts."""
    courses = _hosted_courses(db, event.id, couple.id)
    if courses and not couple.cancelled:
        envelope_service.allocate_host_clues(db, couple, courses)
        envelope_service.refresh_street_info(db, couple)
    else:
        envelope_service.discard_reveal_data(db, couple.id)


# ---------------------------------------------------------------------------
# Unplaced listing
# ---------------------------------------------------------------------------


def list_unplaced(db: Session, event: Event) -> Dict[str, Any]:
    """
    Guests without a seat per course, plus each host's load for that course.

    Hosts are sorted by free capacity, most room first.
    """
    plan_id = require_active_plan_id(event)
    couples = (
        db.query(Couple)
        .filter(Couple.event_id == event.id, Couple.cancelled.is_(False))
        .all()
    )
    by_id = {c.id: c for c in couples}
    host_rows = (
        db.query(Assignment)
        .filter(Assignment.event_id == event.id, Assignment.is_host.is_(True))
        .all()
    )
    seated = {
        (p.guest_couple_id, p.course)
        for p in db.query(CoursePairing).filter(CoursePairing.match_plan_id == plan_id)
    }

    unplaced: Dict[str, List[Dict[str, Any]]] = {}
    hosts: Dict[str, List[Dict[str, Any]]] = {}
    for course in MEAL_COURSES:
        hosting = {a.couple_id for a in host_rows if a.course == course and a.couple_id in by_id}
        unplaced[course] = [
            {"couple_id": c.id, "name": c.display_name, "person_count": c.person_count}
            for c in couples
            if c.id not in hosting and (c.id, course) not in seated
        ]
        loads = []
        for a in host_rows:
            if a.course != course or a.couple_id not in by_id:
                continue
            persons = guest_persons_at(db, plan_id, a.couple_id, course)
            loads.append({
                "couple_id": a.couple_id,
                "name": by_id[a.couple_id].display_name,
                "guest_persons": persons,
                "max_guests": a.max_guests,
                "free_capacity": a.max_guests - persons,
            })
        hosts[course] = sorted(loads, key=lambda h: h["free_capacity"], reverse=True)

    return {"match_plan_id": plan_id, "unplaced": unplaced, "hosts": hosts}


# ---------------------------------------------------------------------------
# Manual placement
# ---------------------------------------------------------------------------


def _validate_placements(db: Session, event: Event, plan_id: Any, placements: List[Placement]) -> None:
    seen: set = set()
    for pl in placements:
        if pl.course not in MEAL_COURSES:
            raise MatchingInputError(f"Unknown course: {pl.course}")
        key = (pl.guest_couple_id, pl.course)
        if key in seen:
            raise MatchingInputError(f"Guest {pl.guest_couple_id} listed twice for {pl.course}")
        seen.add(key)

        guest = _require_couple(db, event, pl.guest_couple_id)
        if guest.cancelled:
            raise MatchingInputError(f"Guest {pl.guest_couple_id} is cancelled")
        host = _require_couple(db, event, pl.host_couple_id)
        if host.cancelled:
            raise MatchingInputError(f"Host {pl.host_couple_id} is cancelled")
        if pl.course not in _hosted_courses(db, event.id, pl.host_couple_id):
            raise MatchingInputError(f"Couple {pl.host_couple_id} does not host {pl.course}")
        if pl.course in _hosted_courses(db, event.id, pl.guest_couple_id):
            raise MatchingInputError(f"Guest {pl.guest_couple_id} hosts {pl.course} itself")

        existing = (
            db.query(CoursePairing)
            .filter(
                CoursePairing.match_plan_id == plan_id,
                CoursePairing.guest_couple_id == pl.guest_couple_id,
                CoursePairing.course == pl.course,
            )
            .first()
        )
        if existing is not None:
            raise PlacementConflictError(
                f"Guest {pl.guest_couple_id} is already placed for {pl.course}"
            )


def place_guests(db: Session, event: Event, placements: List[Placement], actor: Optional[str] = None) -> PlacementOutcome:
    """
    Seat unplaced guests with hosts.

    All placements are validated before the first one is applied.
    """
    if not placements:
        raise MatchingInputError("No placements given")
    plan_id = require_active_plan_id(event)
    _validate_placements(db, event, plan_id, placements)

    outcome = PlacementOutcome()
    for pl in placements:
        result = apply_cascade(
            db, event.id, plan_id, pl.guest_couple_id,
            Reassign(course=pl.course, new_host_couple_id=pl.host_couple_id),
            actor=actor,
        )
        outcome.warnings.extend(result.warnings)

        guest = db.get(Couple, pl.guest_couple_id)
        host = db.get(Couple, pl.host_couple_id)
        envelope_service.create_guest_envelope(db, event, plan_id, guest, host, pl.course)
        outcome.envelopes_created += 1
        _upsert_assignment(db, event.id, guest.id, pl.course, is_host=False, max_guests=0)
        outcome.envelopes_created += len(
            envelope_service.create_afterparty_envelopes(db, event, plan_id, [guest.id])
        )
        outcome.placed.append(pl)

    record_match_audit_event(
        db,
        event_id=event.id,
        match_plan_id=plan_id,
        action="manual_placement",
        affected_couple_ids=[p.guest_couple_id for p in placements] + [p.host_couple_id for p in placements],
        warnings=outcome.warnings,
        payload={"placements": [
            {"guest": str(p.guest_couple_id), "course": p.course, "host": str(p.host_couple_id)}
            for p in placements
        ]},
        actor=actor,
    )
    emit(EVENT_GUESTS_PLACED, event_id=str(event.id), match_plan_id=str(plan_id), count=len(placements))
    return outcome


# ---------------------------------------------------------------------------
# Promotion, dropout, address, split, resign, transfer
# ---------------------------------------------------------------------------


def promote_to_host(
    db: Session,
    event: Event,
    couple_id: Any,
    course: str,
    guest_ids: Optional[List[Any]] = None,
    actor: Optional[str] = None,
) -> Tuple[CascadeResult, PlacementOutcome]:
    if course not in MEAL_COURSES:
        raise MatchingInputError(f"Unknown course: {course}")
    plan_id = require_active_plan_id(event)
    couple = _require_couple(db, event, couple_id)
    if couple.cancelled:
        raise MatchingInputError(f"Couple {couple_id} is cancelled")
    if course in _hosted_courses(db, event.id, couple_id):
        raise PlacementConflictError(f"Couple {couple_id} already hosts {course}")

    capacity = PROMOTED_HOST_CAPACITY_PAIR if couple.person_count >= 2 else PROMOTED_HOST_CAPACITY_SINGLE
    _upsert_assignment(
        db, event.id, couple_id, course,
        is_host=True, max_guests=capacity, is_flex_host=False, flex_extra_capacity=0, is_emergency_host=False,
    )
    result = apply_cascade(db, event.id, plan_id, couple_id, PromoteHost(course=course), actor=actor)
    envelope_service.create_self_envelope(db, event, plan_id, couple, course)
    result.envelopes_created += 1
    refresh_host_reveal_data(db, event, couple)

    outcome = PlacementOutcome()
    if guest_ids:
        outcome = place_guests(
            db, event, [Placement(g, course, couple_id) for g in guest_ids], actor=actor
        )
    return result, outcome


def drop_out(db: Session, event: Event, couple_id: Any, actor: Optional[str] = None) -> Optional[CascadeResult]:
    """
    Cancel a couple and repair the active plan around it.

    Returns None when the event has not been matched yet.
    """
    couple = _require_couple(db, event, couple_id)
    if not event.active_match_plan_id:
        couple.cancelled = True
        couple.cancelled_at = datetime.now(timezone.utc)
        envelope_service.discard_reveal_data(db, couple_id)
        return None

    plan_id = event.active_match_plan_id
    hosts = bool(_hosted_courses(db, event.id, couple_id)) or (
        db.query(CoursePairing.id)
        .filter(CoursePairing.match_plan_id == plan_id, CoursePairing.host_couple_id == couple_id)
        .first()
        is not None
    )
    details = HostDropout() if hosts else GuestDropout()
    result = apply_cascade(db, event.id, plan_id, couple_id, details, actor=actor)
    envelope_service.discard_reveal_data(db, couple_id)
    return result


def change_address(
    db: Session,
    event: Event,
    couple_id: Any,
    address: str,
    address_notes: Optional[str] = None,
    actor: Optional[str] = None,
) -> Tuple[Optional[CascadeResult], List[MatchingWarning]]:
    if not address or not address.strip():
        raise MatchingInputError("Address is required")
    couple = _require_couple(db, event, couple_id)

    warnings: List[MatchingWarning] = []
    duplicate = check_duplicate_address(db, event.id, address, couple_id)
    if duplicate:
        warnings.append(duplicate)

    couple.address = address
    couple.address_notes = address_notes
    # Stale coordinates would skew distances until re-geocoded
    couple.latitude = None
    couple.longitude = None
    db.flush()

    result = None
    if event.active_match_plan_id:
        freeze = check_reveal_freeze(db, event.active_match_plan_id, couple_id)
        if freeze:
            warnings.append(freeze)
        result = apply_cascade(
            db, event.id, event.active_match_plan_id, couple_id,
            AddressChange(new_address=address, new_address_notes=address_notes),
            actor=actor,
        )
        result.warnings.extend(warnings)
    refresh_host_reveal_data(db, event, couple)
    return result, warnings


def split_couple(db: Session, event: Event, couple_id: Any, actor: Optional[str] = None) -> Tuple[Couple, Optional[CascadeResult]]:
    couple = _require_couple(db, event, couple_id)
    if not couple.partner_name:
        raise MatchingInputError("Couple has no partner to split")

    solo = Couple(
        event_id=event.id,
        invited_name=couple.partner_name,
        invited_email=couple.partner_email,
        invited_birth_year=couple.partner_birth_year,
        invited_fun_facts=couple.partner_fun_facts,
        invited_allergies=couple.partner_allergies,
        person_count=1,
        address=couple.address,
        address_notes=couple.address_notes,
        latitude=couple.latitude,
        longitude=couple.longitude,
        split_from_couple_id=couple.id,
    )
    db.add(solo)
    couple.partner_name = None
    couple.partner_email = None
    couple.partner_birth_year = None
    couple.partner_fun_facts = None
    couple.partner_allergies = None
    couple.person_count = 1
    db.flush()

    result = None
    if event.active_match_plan_id:
        result = apply_cascade(
            db, event.id, event.active_match_plan_id, couple_id, Split(new_couple_id=solo.id), actor=actor
        )
    refresh_host_reveal_data(db, event, couple)
    return solo, result


def resign_host(db: Session, event: Event, couple_id: Any, actor: Optional[str] = None) -> CascadeResult:
    plan_id = require_active_plan_id(event)
    couple = _require_couple(db, event, couple_id)
    result = apply_cascade(db, event.id, plan_id, couple_id, ResignHost(), actor=actor)
    refresh_host_reveal_data(db, event, couple)
    return result


def transfer_host(
    db: Session,
    event: Event,
    from_couple_id: Any,
    to_couple_id: Any,
    courses: List[str],
    actor: Optional[str] = None,
) -> CascadeResult:
    plan_id = require_active_plan_id(event)
    result = apply_cascade(
        db, event.id, plan_id, from_couple_id,
        TransferHost(to_couple_id=to_couple_id, courses=tuple(courses)),
        actor=actor,
    )
    for cid in (from_couple_id, to_couple_id):
        refresh_host_reveal_data(db, event, db.get(Couple, cid))
    return result


def update_host_profile(
    db: Session,
    event: Event,
    couple_id: Any,
    invited_fun_facts: Optional[List[str]] = None,
    partner_fun_facts: Optional[List[str]] = None,
    invited_birth_year: Optional[int] = None,
    partner_birth_year: Optional[int] = None,
) -> Couple:
    """Store profile edits and re-run clue allocation for a hosting couple."""
    couple = _require_couple(db, event, couple_id)
    if invited_fun_facts is not None:
        couple.invited_fun_facts = invited_fun_facts
    if partner_fun_facts is not None:
        couple.partner_fun_facts = partner_fun_facts
    if invited_birth_year is not None:
        couple.invited_birth_year = invited_birth_year
    if partner_birth_year is not None:
        couple.partner_birth_year = partner_birth_year
    db.flush()
    refresh_host_reveal_data(db, event, couple)
    return couple
