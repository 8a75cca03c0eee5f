"""
Matching Service

Runs a full matching pass for an event and commits it as the new active
match plan:

    roles (Step A, first run only) -> pairings (Step B) -> envelopes with
    timing -> clue/street allocation -> afterparty -> commit

Courses whose envelopes guests have already opened are frozen: their
pairings and envelopes are carried over from the previous plan unchanged.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy import func
from sqlalchemy.orm import Session

from core.config import settings
from core.events import EVENT_MATCH_COMMITTED, emit
from core.exceptions import MatchingInputError
from models import Assignment, BlockedPair, Couple, CoursePairing, Envelope, Event, MatchPlan
from services import envelope_service
from services.match_audit import record_match_audit_event
from services.matching.constants import MEAL_COURSES, EventStatus, MatchPlanStatus, WarningType
from services.matching.pairing_engine import MatchingWarning, PairingEngine
from services.matching.role_assignment import RoleAssignmentEngine

logger = logging.getLogger(__name__)

_ENVELOPE_COPY_FIELDS = (
    "couple_id", "course", "host_couple_id", "destination_address", "destination_notes",
    "cycling_distance_km", "cycling_minutes", "scheduled_at", "teasing_at", "clue_1_at",
    "clue_2_at", "street_at", "number_at", "opened_at", "activated_at", "current_state",
)


@dataclass
class MatchingRunResult:
    match_plan: MatchPlan
    warnings: List[MatchingWarning] = field(default_factory=list)
    stats: Dict[str, Any] = field(default_factory=dict)
    frozen_courses: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.match_plan.status == MatchPlanStatus.ACTIVE.value


def active_couples(db: Session, event_id: Any) -> List[Couple]:
    return (
        db.query(Couple)
        .filter(Couple.event_id == event_id, Couple.cancelled.is_(False))
        .order_by(Couple.created_at, Couple.id)
        .all()
    )


def preference_satisfaction(couples: Iterable[Couple], host_course: Dict[Any, str]) -> float:
    with_pref = [c for c in couples if c.course_preference in MEAL_COURSES]
    if not with_pref:
        return 1.0
    satisfied = sum(1 for c in with_pref if host_course.get(c.id) == c.course_preference)
    return round(satisfied / len(with_pref), 2)


def ensure_assignments(db: Session, event: Event, couples: List[Couple]) -> Dict[str, Any]:
    """
    Run Step A on first match; afterwards only fill in missing guest rows.

    Returns a dict with the assignments and, when Step A ran, its result.
    """
    existing = db.query(Assignment).filter(Assignment.event_id == event.id).all()
    role_result = None

    if not existing:
        role_result = RoleAssignmentEngine().assign(couples)
        for draft in role_result.assignments:
            db.add(Assignment(event_id=event.id, **draft.__dict__))
        db.flush()
        existing = db.query(Assignment).filter(Assignment.event_id == event.id).all()
    else:
        have = {(a.couple_id, a.course) for a in existing}
        added = 0
        for couple in couples:
            for course in MEAL_COURSES:
                if (couple.id, course) not in have:
                    db.add(Assignment(event_id=event.id, couple_id=couple.id, course=course, is_host=False))
                    added += 1
        if added:
            db.flush()
            existing = db.query(Assignment).filter(Assignment.event_id == event.id).all()
            logger.info(f"Added {added} guest assignment(s) for late registrations")

    return {"assignments": existing, "role_result": role_result}


def detect_frozen_courses(db: Session, match_plan_id: Any) -> Set[str]:
    """Courses activated on the plan or with an envelope a guest has already seen."""
    rows = (
        db.query(Envelope.course)
        .filter(
            Envelope.match_plan_id == match_plan_id,
            Envelope.activated_at.isnot(None),
            Envelope.cancelled.is_(False),
        )
        .distinct()
        .all()
    )
    frozen = {r[0] for r in rows}
    plan = db.get(MatchPlan, match_plan_id)
    if plan is not None:
        frozen.update((plan.stats or {}).get("activated_courses", []))
    return {c for c in frozen if c in MEAL_COURSES}


def next_plan_version(db: Session, event_id: Any) -> int:
    current = db.query(func.max(MatchPlan.version)).filter(MatchPlan.event_id == event_id).scalar()
    return (current or 0) + 1


def _carry_over_frozen(db: Session, previous_plan_id: Any, plan: MatchPlan, frozen: Set[str]) -> Dict[str, int]:
    pairings = (
        db.query(CoursePairing)
        .filter(CoursePairing.match_plan_id == previous_plan_id, CoursePairing.course.in_(frozen))
        .all()
    )
    for p in pairings:
        db.add(CoursePairing(
            match_plan_id=plan.id,
            course=p.course,
            host_couple_id=p.host_couple_id,
            guest_couple_id=p.guest_couple_id,
            forced=p.forced,
        ))
    envelopes = (
        db.query(Envelope)
        .filter(
            Envelope.match_plan_id == previous_plan_id,
            Envelope.course.in_(frozen),
            Envelope.cancelled.is_(False),
        )
        .all()
    )
    for env in envelopes:
        db.add(Envelope(match_plan_id=plan.id, cancelled=False, **{k: getattr(env, k) for k in _ENVELOPE_COPY_FIELDS}))
    db.flush()
    return {"pairings": len(pairings), "envelopes": len(envelopes)}


def commit_match_plan(db: Session, event: Event, plan: MatchPlan) -> None:
    """Make `plan` the one active plan of the event."""
    previous = (
        db.query(MatchPlan)
        .filter(
            MatchPlan.event_id == event.id,
            MatchPlan.status == MatchPlanStatus.ACTIVE.value,
            MatchPlan.id != plan.id,
        )
        .all()
    )
    for old in previous:
        old.status = MatchPlanStatus.SUPERSEDED.value
    plan.status = MatchPlanStatus.ACTIVE.value
    plan.committed_at = datetime.now(timezone.utc)
    event.active_match_plan_id = plan.id
    event.status = EventStatus.MATCHED.value
    db.flush()


def run_matching(
    db: Session,
    event: Event,
    frozen_courses: Optional[Iterable[str]] = None,
    seed: Optional[int] = None,
    actor: Optional[str] = None,
) -> MatchingRunResult:
    """
    Build and commit a new match plan version.

    Raises:
        MatchingInputError: too few couples, unknown course names or
            insufficient host capacity. Nothing is written in that case.
    """
    requested = set(frozen_courses or [])
    unknown = requested - set(MEAL_COURSES)
    if unknown:
        raise MatchingInputError(f"Unknown course(s): {', '.join(sorted(unknown))}")

    couples = active_couples(db, event.id)
    if len(couples) < settings.MIN_COUPLES_FOR_MATCHING:
        raise MatchingInputError(
            f"At least {settings.MIN_COUPLES_FOR_MATCHING} couples are required to run matching (got {len(couples)})"
        )

    # Validate Step A before anything is written
    has_assignments = db.query(Assignment.id).filter(Assignment.event_id == event.id).first() is not None
    if not has_assignments:
        RoleAssignmentEngine().assign(couples)

    previous_plan_id = event.active_match_plan_id
    frozen: Set[str] = set()
    if previous_plan_id:
        frozen = requested | detect_frozen_courses(db, previous_plan_id)
    elif requested:
        logger.warning("Frozen courses requested but the event has no active plan; ignoring")

    prepared = ensure_assignments(db, event, couples)
    assignments = prepared["assignments"]
    role_result = prepared["role_result"]

    plan = MatchPlan(
        event_id=event.id,
        version=next_plan_version(db, event.id),
        status=MatchPlanStatus.DRAFT.value,
        stats={},
    )
    db.add(plan)
    db.flush()

    blocked = [(b.couple_a_id, b.couple_b_id) for b in db.query(BlockedPair).filter(BlockedPair.event_id == event.id)]
    existing_pairings = []
    if frozen:
        existing_pairings = (
            db.query(CoursePairing)
            .filter(CoursePairing.match_plan_id == previous_plan_id, CoursePairing.course.in_(frozen))
            .all()
        )

    result = PairingEngine(seed=seed).run(
        couples,
        assignments,
        blocked_pairs=blocked,
        frozen_courses=frozen,
        existing_pairings=existing_pairings,
    )

    carried = {"pairings": 0, "envelopes": 0}
    if frozen:
        carried = _carry_over_frozen(db, previous_plan_id, plan, frozen)

    for p in result.pairings:
        db.add(CoursePairing(
            match_plan_id=plan.id,
            course=p.course,
            host_couple_id=p.host_couple_id,
            guest_couple_id=p.guest_couple_id,
            forced=p.forced,
        ))
    db.flush()
    envelopes = envelope_service.persist_envelope_drafts(db, event, plan.id, result.envelopes)

    # Reveal data for every host
    active_ids = {c.id for c in couples}
    served: Dict[Any, List[str]] = {}
    for a in assignments:
        if a.is_host and a.couple_id in active_ids:
            served.setdefault(a.couple_id, []).append(a.course)
    couple_by_id = {c.id: c for c in couples}
    for host_id, courses in served.items():
        envelope_service.allocate_host_clues(db, couple_by_id[host_id], courses)
        envelope_service.refresh_street_info(db, couple_by_id[host_id])
    for couple in couples:
        if couple.id not in served:
            envelope_service.discard_reveal_data(db, couple.id)

    placed = {e.couple_id for e in envelopes}
    afterparty = envelope_service.create_afterparty_envelopes(db, event, plan.id, [c.id for c in couples if c.id in placed])

    host_course = {a.couple_id: a.course for a in assignments if a.is_host}
    satisfaction = role_result.preference_satisfaction if role_result else preference_satisfaction(couples, host_course)

    warnings = list(result.warnings)
    if satisfaction < settings.PREFERENCE_SATISFACTION_WARNING:
        warnings.append(MatchingWarning(
            type=WarningType.PREFERENCE,
            message=f"Only {int(satisfaction * 100)}% of course preferences could be honoured",
        ))

    stats = dict(result.stats)
    stats.update({
        "preference_satisfaction": satisfaction,
        "envelopes_created": len(envelopes) + len(afterparty) + carried["envelopes"],
        "pairings_created": stats["pairings_created"] + carried["pairings"],
        "warnings": len(warnings),
        "warning_details": [w.to_dict() for w in warnings],
        "unplaced": sum(len(v) for v in result.unplaced.values()),
        "frozen_courses": sorted(frozen),
        "seed": seed,
    })
    plan.stats = stats
    commit_match_plan(db, event, plan)

    record_match_audit_event(
        db,
        event_id=event.id,
        match_plan_id=plan.id,
        action="match_plan_created",
        affected_couple_ids=[c.id for c in couples],
        warnings=warnings,
        payload={"version": plan.version, "stats": {k: v for k, v in stats.items() if k != "warning_details"}},
        actor=actor,
    )
    logger.info(
        "Match plan committed",
        extra={"extra_fields": {
            "event_id": str(event.id),
            "match_plan_id": str(plan.id),
            "version": plan.version,
            "pairings": stats["pairings_created"],
            "warnings": len(warnings),
        }},
    )
    emit(EVENT_MATCH_COMMITTED, event_id=str(event.id), match_plan_id=str(plan.id), version=plan.version)

    return MatchingRunResult(match_plan=plan, warnings=warnings, stats=stats, frozen_courses=sorted(frozen))


def get_active_plan(db: Session, event: Event) -> Optional[MatchPlan]:
    if not event.active_match_plan_id:
        return None
    return db.get(MatchPlan, event.active_match_plan_id)
