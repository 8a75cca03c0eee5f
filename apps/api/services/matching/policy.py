"""
Organizer-facing policy checks.

Each check returns a MatchingWarning or None; none of them block a
mutation. Callers attach the warnings to their response and audit entry.
"""

from typing import Any, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from models import Assignment, BlockedPair, Couple, CoursePairing, Envelope

from .constants import WarningType
from .pairing_engine import MatchingWarning


def check_reveal_freeze(db: Session, match_plan_id: Any, host_couple_id: Any) -> Optional[MatchingWarning]:
    """Envelopes pointing at this host were already shown to guests."""
    activated = (
        db.query(Envelope)
        .filter(
            Envelope.match_plan_id == match_plan_id,
            Envelope.host_couple_id == host_couple_id,
            Envelope.activated_at.isnot(None),
            Envelope.cancelled.is_(False),
        )
        .count()
    )
    if not activated:
        return None
    return MatchingWarning(
        type=WarningType.REVEAL_FREEZE,
        message=f"{activated} envelope(s) already activated; guests may have seen the old address",
        couple_ids=[host_couple_id],
    )


def guest_persons_at(db: Session, match_plan_id: Any, host_couple_id: Any, course: str) -> int:
    rows = (
        db.query(Couple.person_count)
        .join(CoursePairing, CoursePairing.guest_couple_id == Couple.id)
        .filter(
            CoursePairing.match_plan_id == match_plan_id,
            CoursePairing.host_couple_id == host_couple_id,
            CoursePairing.course == course,
        )
        .all()
    )
    return sum(r[0] or 0 for r in rows)


def check_capacity(
    db: Session,
    event_id: Any,
    match_plan_id: Any,
    host_couple_id: Any,
    course: str,
    guest_couple_id: Any,
) -> Optional[MatchingWarning]:
    """Seating this guest (if not already seated) would overfill the host."""
    host_assignment = (
        db.query(Assignment)
        .filter(
            Assignment.event_id == event_id,
            Assignment.couple_id == host_couple_id,
            Assignment.course == course,
            Assignment.is_host.is_(True),
        )
        .first()
    )
    if host_assignment is None:
        return None

    seated = guest_persons_at(db, match_plan_id, host_couple_id, course)
    already = (
        db.query(CoursePairing)
        .filter(
            CoursePairing.match_plan_id == match_plan_id,
            CoursePairing.host_couple_id == host_couple_id,
            CoursePairing.guest_couple_id == guest_couple_id,
            CoursePairing.course == course,
        )
        .first()
    )
    if already is None:
        guest = db.get(Couple, guest_couple_id)
        seated += guest.person_count if guest else 0

    limit = host_assignment.max_guests or 0
    if seated <= limit:
        return None
    flex_limit = limit
    if host_assignment.is_flex_host:
        flex_limit += host_assignment.flex_extra_capacity or 0
    over = "flex capacity in use" if seated <= flex_limit else "capacity exceeded"
    return MatchingWarning(
        type=WarningType.CAPACITY,
        message=f"Host {over} at {course} ({seated}/{limit})",
        couple_ids=[host_couple_id, guest_couple_id],
        course=course,
    )


def is_blocked(db: Session, event_id: Any, couple_a_id: Any, couple_b_id: Any) -> bool:
    return (
        db.query(BlockedPair)
        .filter(
            BlockedPair.event_id == event_id,
            or_(
                (BlockedPair.couple_a_id == couple_a_id) & (BlockedPair.couple_b_id == couple_b_id),
                (BlockedPair.couple_a_id == couple_b_id) & (BlockedPair.couple_b_id == couple_a_id),
            ),
        )
        .first()
        is not None
    )


def check_duplicate_address(
    db: Session,
    event_id: Any,
    address: Optional[str],
    couple_id: Any = None,
) -> Optional[MatchingWarning]:
    if not address:
        return None
    query = db.query(Couple.id).filter(
        Couple.event_id == event_id,
        Couple.address == address,
        Couple.cancelled.is_(False),
    )
    if couple_id is not None:
        query = query.filter(Couple.id != couple_id)
    duplicates: List[Any] = [r[0] for r in query.all()]
    if not duplicates:
        return None
    return MatchingWarning(
        type=WarningType.DUPLICATE_ADDRESS,
        message=f"{len(duplicates)} other couple(s) registered at the same address",
        couple_ids=duplicates,
    )
