"""
Cascade Repair

Keeps the active match plan consistent after a structural change without
re-running the matcher. Every mutation:

1. locks the plan row (FOR UPDATE where supported, plus the optimistic
   lock_version),
2. validates all inputs and raises CascadeError before writing anything,
3. applies selects/updates/deletes/inserts scoped to one plan,
4. is idempotent: replaying the same input leaves the same state.

Couples left without a host are reported in `unplaced_guests`; re-placement
is a separate step (placement_service).

Usage:
    result = apply_cascade(db, event_id, plan_id, couple_id, HostDropout())
"""

import logging
import typing
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from core.events import EVENT_CASCADE_APPLIED, emit
from core.exceptions import CascadeError, ConcurrentMutationError
from models import Assignment, Couple, CoursePairing, Envelope, MatchPlan
from services.match_audit import record_match_audit_event

from .constants import MEAL_COURSES, SELF_HOST_NOTE, MatchPlanStatus, WarningType
from .pairing_engine import MatchingWarning
from .policy import check_capacity, is_blocked

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Mutation payloads (one shape per mutation type)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GuestDropout:
    type: str = field(default="guest_dropout", init=False)


@dataclass(frozen=True)
class HostDropout:
    type: str = field(default="host_dropout", init=False)


@dataclass(frozen=True)
class AddressChange:
    new_address: str
    new_address_notes: Optional[str] = None
    type: str = field(default="address_change", init=False)


@dataclass(frozen=True)
class Reassign:
    course: str
    new_host_couple_id: Any
    type: str = field(default="reassign", init=False)


@dataclass(frozen=True)
class ResignHost:
    type: str = field(default="resign_host", init=False)


@dataclass(frozen=True)
class Split:
    new_couple_id: Any
    type: str = field(default="split", init=False)


@dataclass(frozen=True)
class TransferHost:
    to_couple_id: Any
    courses: tuple
    type: str = field(default="transfer_host", init=False)


@dataclass(frozen=True)
class PromoteHost:
    course: str
    type: str = field(default="promote_host", init=False)


CascadeDetails = Union[
    GuestDropout,
    HostDropout,
    AddressChange,
    Reassign,
    ResignHost,
    Split,
    TransferHost,
    PromoteHost,
]


@dataclass
class CascadeResult:
    mutation: str
    envelopes_cancelled: int = 0
    envelopes_created: int = 0
    envelopes_updated: int = 0
    pairings_removed: int = 0
    pairings_created: int = 0
    assignments_removed: int = 0
    assignments_created: int = 0
    unplaced_guests: List[Any] = field(default_factory=list)
    # course -> couple ids needing a host for that course
    unplaced_by_course: Dict[str, List[Any]] = field(default_factory=dict)
    warnings: List[MatchingWarning] = field(default_factory=list)

    def mark_unplaced(self, couple_id: Any, course: str) -> None:
        if couple_id not in self.unplaced_guests:
            self.unplaced_guests.append(couple_id)
        bucket = self.unplaced_by_course.setdefault(course, [])
        if couple_id not in bucket:
            bucket.append(couple_id)

    def counts(self) -> Dict[str, int]:
        data = asdict(self)
        return {k: v for k, v in data.items() if isinstance(v, int)}


# ---------------------------------------------------------------------------
# Row helpers
# ---------------------------------------------------------------------------


def _live_envelopes(db: Session, plan_id: Any):
    return db.query(Envelope).filter(
        Envelope.match_plan_id == plan_id,
        Envelope.cancelled.is_(False),
    )


def _pairings(db: Session, plan_id: Any):
    return db.query(CoursePairing).filter(CoursePairing.match_plan_id == plan_id)


def _cancel(envelopes) -> int:
    n = 0
    for env in envelopes:
        if not env.cancelled:
            env.cancelled = True
            n += 1
    return n


def _delete(db: Session, rows) -> int:
    n = 0
    for row in rows:
        db.delete(row)
        n += 1
    return n


def _host_assignment(db: Session, event_id: Any, couple_id: Any, course: str) -> Optional[Assignment]:
    return (
        db.query(Assignment)
        .filter(
            Assignment.event_id == event_id,
            Assignment.couple_id == couple_id,
            Assignment.course == course,
            Assignment.is_host.is_(True),
        )
        .first()
    )


def _require_couple(db: Session, event_id: Any, couple_id: Any, label: str = "Couple") -> Couple:
    couple = db.get(Couple, couple_id)
    if couple is None or couple.event_id != event_id:
        raise CascadeError(f"{label} {couple_id} does not belong to event {event_id}")
    return couple


def _require_course(course: str) -> None:
    if course not in MEAL_COURSES:
        raise CascadeError(f"Unknown course: {course}")


def _mark_cancelled(couple: Couple) -> None:
    if not couple.cancelled:
        couple.cancelled = True
        couple.cancelled_at = datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


class CascadeRepair:
    """Applies one mutation to one active match plan."""

    def __init__(self, db: Session, event_id: Any, plan: MatchPlan):
        self.db = db
        self.event_id = event_id
        self.plan = plan

    def guest_dropout(self, couple_id: Any, details: GuestDropout) -> CascadeResult:
        db, plan_id = self.db, self.plan.id
        result = CascadeResult(details.type)
        couple = _require_couple(db, self.event_id, couple_id)

        seated_guests = _pairings(db, plan_id).filter(CoursePairing.host_couple_id == couple_id).count()
        hosted = [
            a.course for a in db.query(Assignment).filter(
                Assignment.event_id == self.event_id,
                Assignment.couple_id == couple_id,
                Assignment.is_host.is_(True),
            )
        ]
        if seated_guests or hosted:
            raise CascadeError(
                f"Couple {couple_id} hosts {', '.join(hosted) or 'guests'} "
                f"({seated_guests} guest pairing(s)); use host_dropout"
            )

        _mark_cancelled(couple)
        result.envelopes_cancelled = _cancel(
            _live_envelopes(db, plan_id).filter(Envelope.couple_id == couple_id).all()
        )
        result.pairings_removed = _delete(
            db, _pairings(db, plan_id).filter(CoursePairing.guest_couple_id == couple_id).all()
        )
        return result

    def host_dropout(self, couple_id: Any, details: HostDropout) -> CascadeResult:
        db, plan_id = self.db, self.plan.id
        result = CascadeResult(details.type)
        couple = _require_couple(db, self.event_id, couple_id)

        host_pairings = _pairings(db, plan_id).filter(CoursePairing.host_couple_id == couple_id).all()
        for p in host_pairings:
            if p.guest_couple_id != couple_id:
                result.mark_unplaced(p.guest_couple_id, p.course)

        _mark_cancelled(couple)
        result.envelopes_cancelled += _cancel(
            _live_envelopes(db, plan_id).filter(Envelope.host_couple_id == couple_id).all()
        )
        result.envelopes_cancelled += _cancel(
            _live_envelopes(db, plan_id).filter(Envelope.couple_id == couple_id).all()
        )
        result.pairings_removed = _delete(db, host_pairings)
        result.pairings_removed += _delete(
            db, _pairings(db, plan_id).filter(CoursePairing.guest_couple_id == couple_id).all()
        )
        result.assignments_removed = _delete(
            db,
            db.query(Assignment)
            .filter(Assignment.event_id == self.event_id, Assignment.couple_id == couple_id)
            .all(),
        )
        return result

    def address_change(self, couple_id: Any, details: AddressChange) -> CascadeResult:
        db, plan_id = self.db, self.plan.id
        result = CascadeResult(details.type)
        _require_couple(db, self.event_id, couple_id)
        if not details.new_address or not details.new_address.strip():
            raise CascadeError("new_address is required for address_change")

        for env in _live_envelopes(db, plan_id).filter(Envelope.host_couple_id == couple_id).all():
            env.destination_address = details.new_address
            if env.couple_id != couple_id:
                env.destination_notes = details.new_address_notes
            result.envelopes_updated += 1
        return result

    def reassign(self, couple_id: Any, details: Reassign) -> CascadeResult:
        db, plan_id = self.db, self.plan.id
        result = CascadeResult(details.type)
        course, new_host_id = details.course, details.new_host_couple_id

        _require_course(course)
        guest = _require_couple(db, self.event_id, couple_id, "Guest")
        host = _require_couple(db, self.event_id, new_host_id, "Host")
        if guest.cancelled:
            raise CascadeError(f"Guest {couple_id} is cancelled")
        if host.cancelled:
            raise CascadeError(f"Host {new_host_id} is cancelled")
        if couple_id == new_host_id:
            raise CascadeError("A couple cannot be its own guest")
        if _host_assignment(db, self.event_id, new_host_id, course) is None:
            raise CascadeError(f"Couple {new_host_id} is not a host for {course}")
        if _host_assignment(db, self.event_id, couple_id, course) is not None:
            raise CascadeError(f"Couple {couple_id} hosts {course} and cannot be seated as a guest")

        capacity_warning = check_capacity(db, self.event_id, plan_id, new_host_id, course, couple_id)
        blocked = is_blocked(db, self.event_id, couple_id, new_host_id)

        # Identity is (couple, course); the old envelope's host does not matter.
        stale = _live_envelopes(db, plan_id).filter(
            Envelope.couple_id == couple_id,
            Envelope.course == course,
            Envelope.host_couple_id != new_host_id,
        ).all()
        result.envelopes_cancelled = _cancel(stale)

        existing = _pairings(db, plan_id).filter(
            CoursePairing.guest_couple_id == couple_id,
            CoursePairing.course == course,
        ).all()
        if len(existing) == 1 and existing[0].host_couple_id == new_host_id:
            return result

        result.pairings_removed = _delete(db, existing)
        db.flush()
        db.add(CoursePairing(
            match_plan_id=plan_id,
            course=course,
            host_couple_id=new_host_id,
            guest_couple_id=couple_id,
            forced=blocked,
        ))
        result.pairings_created = 1

        if capacity_warning:
            result.warnings.append(capacity_warning)
        if blocked:
            result.warnings.append(MatchingWarning(
                type=WarningType.BLOCK,
                message=f"Blocked pair forced by manual reassignment at {course}",
                couple_ids=[couple_id, new_host_id],
                course=course,
            ))
        return result

    def resign_host(self, couple_id: Any, details: ResignHost) -> CascadeResult:
        db, plan_id = self.db, self.plan.id
        result = CascadeResult(details.type)
        _require_couple(db, self.event_id, couple_id)

        host_pairings = _pairings(db, plan_id).filter(CoursePairing.host_couple_id == couple_id).all()
        for p in host_pairings:
            result.mark_unplaced(p.guest_couple_id, p.course)

        host_assignments = (
            db.query(Assignment)
            .filter(
                Assignment.event_id == self.event_id,
                Assignment.couple_id == couple_id,
                Assignment.is_host.is_(True),
            )
            .all()
        )
        for a in host_assignments:
            result.mark_unplaced(couple_id, a.course)

        result.envelopes_cancelled = _cancel(
            _live_envelopes(db, plan_id).filter(Envelope.host_couple_id == couple_id).all()
        )
        result.pairings_removed = _delete(db, host_pairings)
        result.assignments_removed = _delete(db, host_assignments)
        return result

    def split(self, couple_id: Any, details: Split) -> CascadeResult:
        result = CascadeResult(details.type)
        _require_couple(self.db, self.event_id, couple_id)
        new_couple = _require_couple(self.db, self.event_id, details.new_couple_id, "New couple")
        if new_couple.id == couple_id:
            raise CascadeError("Split must produce a different couple")
        if not new_couple.cancelled:
            for course in MEAL_COURSES:
                has_pairing = _pairings(self.db, self.plan.id).filter(
                    CoursePairing.guest_couple_id == new_couple.id,
                    CoursePairing.course == course,
                ).first()
                if has_pairing is None and _host_assignment(self.db, self.event_id, new_couple.id, course) is None:
                    result.mark_unplaced(new_couple.id, course)
        return result

    def transfer_host(self, couple_id: Any, details: TransferHost) -> CascadeResult:
        db, plan_id = self.db, self.plan.id
        result = CascadeResult(details.type)
        to_id = details.to_couple_id

        if not details.courses:
            raise CascadeError("courses is required for transfer_host")
        for course in details.courses:
            _require_course(course)
        _require_couple(db, self.event_id, couple_id)
        target = _require_couple(db, self.event_id, to_id, "Target couple")
        if to_id == couple_id:
            raise CascadeError("Cannot transfer hosting to the same couple")
        if target.cancelled:
            raise CascadeError(f"Target couple {to_id} is cancelled")

        plan_courses = []
        for course in details.courses:
            source = _host_assignment(db, self.event_id, couple_id, course)
            already = _host_assignment(db, self.event_id, to_id, course)
            if source is None and already is not None:
                continue  # transferred by an earlier call
            if source is None:
                raise CascadeError(f"Couple {couple_id} does not host {course}")
            if already is not None:
                raise CascadeError(f"Couple {to_id} already hosts {course}")
            plan_courses.append((course, source))

        for course, source in plan_courses:
            capacity = dict(
                max_guests=source.max_guests,
                is_flex_host=source.is_flex_host,
                flex_extra_capacity=source.flex_extra_capacity,
                is_emergency_host=source.is_emergency_host,
            )
            db.delete(source)
            result.assignments_removed += 1

            target_row = (
                db.query(Assignment)
                .filter(
                    Assignment.event_id == self.event_id,
                    Assignment.couple_id == to_id,
                    Assignment.course == course,
                )
                .first()
            )
            if target_row is None:
                db.add(Assignment(event_id=self.event_id, couple_id=to_id, course=course, is_host=True, **capacity))
            else:
                target_row.is_host = True
                for key, value in capacity.items():
                    setattr(target_row, key, value)
            result.assignments_created += 1

            # The new host no longer sits at anyone's table for this course.
            result.pairings_removed += _delete(
                db,
                _pairings(db, plan_id).filter(
                    CoursePairing.guest_couple_id == to_id,
                    CoursePairing.course == course,
                ).all(),
            )
            db.flush()
            for p in _pairings(db, plan_id).filter(
                CoursePairing.host_couple_id == couple_id,
                CoursePairing.course == course,
            ).all():
                p.host_couple_id = to_id
                result.pairings_created += 1

            old_self = None
            for env in _live_envelopes(db, plan_id).filter(
                Envelope.host_couple_id == couple_id,
                Envelope.course == course,
            ).all():
                if env.couple_id == couple_id:
                    old_self = env
                    continue
                env.host_couple_id = to_id
                env.destination_address = target.address
                env.destination_notes = target.address_notes
                result.envelopes_updated += 1

            own = _live_envelopes(db, plan_id).filter(
                Envelope.couple_id == to_id,
                Envelope.course == course,
            ).first()
            if own is not None:
                own.host_couple_id = to_id
                own.destination_address = target.address
                own.destination_notes = SELF_HOST_NOTE
                own.cycling_distance_km = 0.0
                own.cycling_minutes = 0.0
                result.envelopes_updated += 1
            elif old_self is not None:
                db.add(Envelope(
                    match_plan_id=plan_id,
                    couple_id=to_id,
                    course=course,
                    host_couple_id=to_id,
                    destination_address=target.address,
                    destination_notes=SELF_HOST_NOTE,
                    cycling_distance_km=0.0,
                    cycling_minutes=0.0,
                    scheduled_at=old_self.scheduled_at,
                    teasing_at=old_self.teasing_at,
                    clue_1_at=old_self.clue_1_at,
                    clue_2_at=old_self.clue_2_at,
                    street_at=old_self.street_at,
                    number_at=old_self.number_at,
                    opened_at=old_self.opened_at,
                ))
                result.envelopes_created += 1

            if old_self is not None:
                result.envelopes_cancelled += _cancel([old_self])
            result.mark_unplaced(couple_id, course)

        return result

    def promote_host(self, couple_id: Any, details: PromoteHost) -> CascadeResult:
        db, plan_id = self.db, self.plan.id
        result = CascadeResult(details.type)
        _require_course(details.course)
        couple = _require_couple(db, self.event_id, couple_id)
        if couple.cancelled:
            raise CascadeError(f"Couple {couple_id} is cancelled")

        result.pairings_removed = _delete(
            db,
            _pairings(db, plan_id).filter(
                CoursePairing.guest_couple_id == couple_id,
                CoursePairing.course == details.course,
            ).all(),
        )
        result.envelopes_cancelled = _cancel(
            _live_envelopes(db, plan_id).filter(
                Envelope.couple_id == couple_id,
                Envelope.course == details.course,
                Envelope.host_couple_id != couple_id,
            ).all()
        )
        return result


_HANDLERS: Dict[type, Callable[[CascadeRepair, Any, Any], CascadeResult]] = {
    GuestDropout: CascadeRepair.guest_dropout,
    HostDropout: CascadeRepair.host_dropout,
    AddressChange: CascadeRepair.address_change,
    Reassign: CascadeRepair.reassign,
    ResignHost: CascadeRepair.resign_host,
    Split: CascadeRepair.split,
    TransferHost: CascadeRepair.transfer_host,
    PromoteHost: CascadeRepair.promote_host,
}

_unhandled = set(typing.get_args(CascadeDetails)) - set(_HANDLERS)
if _unhandled:
    raise RuntimeError(f"Cascade payloads without a handler: {sorted(t.__name__ for t in _unhandled)}")


def lock_active_plan(db: Session, event_id: Any, match_plan_id: Any) -> MatchPlan:
    """Load the plan row for update and check it is the event's active plan."""
    plan = (
        db.query(MatchPlan)
        .filter(MatchPlan.id == match_plan_id)
        .with_for_update()
        .one_or_none()
    )
    if plan is None or plan.event_id != event_id:
        raise CascadeError(f"Match plan {match_plan_id} does not belong to event {event_id}")
    if plan.status != MatchPlanStatus.ACTIVE.value:
        raise CascadeError(f"Match plan {match_plan_id} is {plan.status}, not active")
    return plan


def bump_mutation(db: Session, plan: MatchPlan) -> None:
    """Count the mutation; a concurrent writer fails the version check here."""
    plan.mutation_count = (plan.mutation_count or 0) + 1
    try:
        db.flush()
    except StaleDataError as e:
        raise ConcurrentMutationError(
            f"Match plan {plan.id} was modified concurrently; retry the operation"
        ) from e


def apply_cascade(
    db: Session,
    event_id: Any,
    match_plan_id: Any,
    couple_id: Any,
    details: CascadeDetails,
    actor: Optional[str] = None,
) -> CascadeResult:
    """
    Apply one cascade mutation to the active plan.

    Does not commit. On CascadeError nothing has been written.
    """
    handler = _HANDLERS.get(type(details))
    if handler is None:
        raise CascadeError(f"Unknown cascade type: {type(details).__name__}")

    plan = lock_active_plan(db, event_id, match_plan_id)
    result = handler(CascadeRepair(db, event_id, plan), couple_id, details)
    bump_mutation(db, plan)

    affected = [couple_id] + [c for c in result.unplaced_guests if c != couple_id]
    record_match_audit_event(
        db,
        event_id=event_id,
        match_plan_id=plan.id,
        action=f"cascade.{details.type}",
        affected_couple_ids=affected,
        warnings=result.warnings,
        payload={
            "details": {k: str(v) if not isinstance(v, (list, tuple)) else [str(x) for x in v]
                        for k, v in asdict(details).items()},
            "counts": result.counts(),
        },
        actor=actor,
    )

    logger.info(
        f"Cascade {details.type} applied",
        extra={"extra_fields": {
            "event_id": str(event_id),
            "match_plan_id": str(plan.id),
            "couple_id": str(couple_id),
            "unplaced": len(result.unplaced_guests),
            **result.counts(),
        }},
    )
    for w in result.warnings:
        logger.warning(f"Cascade warning: {w.message}", extra={"extra_fields": {"warning_type": w.type.value}})

    emit(
        EVENT_CASCADE_APPLIED,
        event_id=str(event_id),
        match_plan_id=str(plan.id),
        mutation=details.type,
        couple_id=str(couple_id),
        unplaced_guests=[str(c) for c in result.unplaced_guests],
    )
    return result
