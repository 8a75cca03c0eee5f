"""
Envelope Service

Persists envelopes with their reveal schedule and keeps the derived reveal
data (CourseClues, StreetInfo) in step with host profiles.

All functions take a Session and flush; the caller owns the transaction.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from core.config import settings
from core.events import EVENT_ENVELOPES_RESCHEDULED, emit
from core.exceptions import MatchingInputError
from models import Couple, CourseClues, Envelope, Event, EventTiming, StreetInfo
from services.envelope.clues import allocate_clue_indices, combine_facts, parse_address
from services.envelope.timing import (
    EnvelopeTimes,
    calculate_afterparty_times,
    calculate_envelope_times,
    course_schedules_for_event,
    envelope_state_at,
)
from services.match_audit import record_match_audit_event
from services.matching.cascade_repair import bump_mutation, lock_active_plan
from services.matching.constants import ALL_COURSES, MEAL_COURSES, SELF_HOST_NOTE, Course
from services.matching.geo import estimate_cycling_minutes, straight_line_km

logger = logging.getLogger(__name__)

_TIME_FIELDS = ("teasing_at", "clue_1_at", "clue_2_at", "street_at", "number_at", "opened_at", "scheduled_at")
_REVEAL_SEQUENCE = _TIME_FIELDS[:-1]
ACTIVATION_STEP = timedelta(seconds=30)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _apply_times(envelope: Envelope, times: EnvelopeTimes) -> None:
    for key, value in times.as_dict().items():
        setattr(envelope, key, _utc(value))
    envelope.scheduled_at = _utc(times.opened_at)


def load_timing(db: Session, event_id: Any) -> Optional[EventTiming]:
    return db.query(EventTiming).filter(EventTiming.event_id == event_id).first()


def course_offsets(event: Event, course: str) -> Optional[Dict[str, Any]]:
    overrides = event.course_timing_offsets or {}
    return overrides.get(course)


class EnvelopeScheduler:
    """
    Per-event timing context.

    Resolves course start times and the timing row once, then stamps any
    number of envelopes.
    """

    def __init__(self, db: Session, event: Event):
        self.event = event
        self.timing = load_timing(db, event.id)
        self.schedules = course_schedules_for_event(event)

    def times_for(
        self,
        course: str,
        cycling_minutes: Optional[float] = None,
        cycling_distance_km: Optional[float] = None,
    ) -> EnvelopeTimes:
        if course == Course.AFTERPARTY.value:
            return calculate_afterparty_times(self.schedules[course])
        return calculate_envelope_times(
            self.schedules[course],
            timing=self.timing,
            cycling_minutes=cycling_minutes,
            course_offsets=course_offsets(self.event, course),
            cycling_distance_km=cycling_distance_km,
        )

    def stamp(self, envelope: Envelope) -> None:
        is_self = envelope.host_couple_id is not None and envelope.host_couple_id == envelope.couple_id
        minutes = 0.0 if is_self else envelope.cycling_minutes
        _apply_times(envelope, self.times_for(envelope.course, minutes, envelope.cycling_distance_km))


def build_envelope(
    scheduler: EnvelopeScheduler,
    match_plan_id: Any,
    couple_id: Any,
    course: str,
    host_couple_id: Any,
    destination_address: Optional[str],
    destination_notes: Optional[str],
    cycling_distance_km: Optional[float] = None,
    cycling_minutes: Optional[float] = None,
) -> Envelope:
    if cycling_minutes is None:
        cycling_minutes = estimate_cycling_minutes(cycling_distance_km, settings.CYCLING_SPEED_KMH)
    envelope = Envelope(
        match_plan_id=match_plan_id,
        couple_id=couple_id,
        course=course,
        host_couple_id=host_couple_id,
        destination_address=destination_address,
        destination_notes=destination_notes,
        cycling_distance_km=cycling_distance_km,
        cycling_minutes=cycling_minutes,
        current_state="LOCKED",
        cancelled=False,
    )
    scheduler.stamp(envelope)
    return envelope


def persist_envelope_drafts(db: Session, event: Event, match_plan_id: Any, drafts: Iterable[Any]) -> List[Envelope]:
    """Turn pairing-engine drafts into timed Envelope rows."""
    scheduler = EnvelopeScheduler(db, event)
    rows = []
    for d in drafts:
        env = build_envelope(
            scheduler,
            match_plan_id,
            d.couple_id,
            d.course,
            d.host_couple_id,
            d.destination_address,
            d.destination_notes,
            cycling_distance_km=d.cycling_distance_km,
            cycling_minutes=0.0 if d.couple_id == d.host_couple_id else None,
        )
        db.add(env)
        rows.append(env)
    db.flush()
    return rows


def create_guest_envelope(db: Session, event: Event, match_plan_id: Any, guest: Couple, host: Couple, course: str) -> Envelope:
    env = build_envelope(
        EnvelopeScheduler(db, event),
        match_plan_id,
        guest.id,
        course,
        host.id,
        host.address,
        host.address_notes,
        cycling_distance_km=straight_line_km(guest.coordinates, host.coordinates),
    )
    db.add(env)
    db.flush()
    return env


def create_self_envelope(db: Session, event: Event, match_plan_id: Any, host: Couple, course: str) -> Envelope:
    existing = (
        db.query(Envelope)
        .filter(
            Envelope.match_plan_id == match_plan_id,
            Envelope.couple_id == host.id,
            Envelope.course == course,
            Envelope.cancelled.is_(False),
        )
        .first()
    )
    if existing is not None and existing.host_couple_id == host.id:
        return existing
    env = build_envelope(
        EnvelopeScheduler(db, event),
        match_plan_id,
        host.id,
        course,
        host.id,
        host.address,
        SELF_HOST_NOTE,
        cycling_distance_km=0.0,
        cycling_minutes=0.0,
    )
    db.add(env)
    db.flush()
    return env


def create_afterparty_envelopes(db: Session, event: Event, match_plan_id: Any, couple_ids: Iterable[Any]) -> List[Envelope]:
    """One hostless envelope per couple pointing at the afterparty venue."""
    if not event.afterparty_location:
        return []
    scheduler = EnvelopeScheduler(db, event)
    venue = (event.afterparty_latitude, event.afterparty_longitude) if event.afterparty_latitude is not None else None
    existing = {
        row[0]
        for row in db.query(Envelope.couple_id).filter(
            Envelope.match_plan_id == match_plan_id,
            Envelope.course == Course.AFTERPARTY.value,
            Envelope.cancelled.is_(False),
        )
    }
    rows = []
    for couple_id in couple_ids:
        if couple_id in existing:
            continue
        couple = db.get(Couple, couple_id)
        env = build_envelope(
            scheduler,
            match_plan_id,
            couple_id,
            Course.AFTERPARTY.value,
            None,
            event.afterparty_location,
            event.afterparty_door_code,
            cycling_distance_km=straight_line_km(couple.coordinates if couple else None, venue),
        )
        db.add(env)
        rows.append(env)
    db.flush()
    return rows


def allocate_host_clues(db: Session, host: Couple, courses: Iterable[str]) -> List[CourseClues]:
    """Upsert CourseClues for every course the host serves; drop the rest."""
    served = [c for c in MEAL_COURSES if c in set(courses)]
    allocation = allocate_clue_indices(len(combine_facts(host)), served) if served else {}

    current = {row.course_type: row for row in db.query(CourseClues).filter(CourseClues.couple_id == host.id)}
    rows = []
    for course, indices in allocation.items():
        row = current.pop(course, None)
        if row is None:
            row = CourseClues(couple_id=host.id, course_type=course)
            db.add(row)
        row.clue_indices = indices
        row.allocated_at = datetime.now(timezone.utc)
        rows.append(row)
    for stale in current.values():
        db.delete(stale)
    db.flush()
    return rows


def refresh_street_info(db: Session, host: Couple) -> StreetInfo:
    parsed = parse_address(host.address)
    info = db.query(StreetInfo).filter(StreetInfo.couple_id == host.id).first()
    if info is None:
        info = StreetInfo(couple_id=host.id)
        db.add(info)
    for key, value in parsed.as_fields().items():
        setattr(info, key, value)
    db.flush()
    return info


def discard_reveal_data(db: Session, couple_id: Any) -> int:
    """Remove clue and street allocations of a couple that no longer hosts."""
    removed = db.query(CourseClues).filter(CourseClues.couple_id == couple_id).delete(synchronize_session=False)
    removed += db.query(StreetInfo).filter(StreetInfo.couple_id == couple_id).delete(synchronize_session=False)
    db.flush()
    return removed


def _live(db: Session, match_plan_id: Any):
    return db.query(Envelope).filter(
        Envelope.match_plan_id == match_plan_id,
        Envelope.cancelled.is_(False),
    )


def delay_envelopes(db: Session, event: Event, minutes: int) -> int:
    """
    Shift every not-yet-activated envelope of the active plan.

    The cumulative delay is kept on the event so later recalculations
    land on the same times.
    """
    if not event.active_match_plan_id:
        return 0
    delta = timedelta(minutes=minutes)
    shifted = 0
    for env in _live(db, event.active_match_plan_id).filter(Envelope.activated_at.is_(None)).all():
        for key in _TIME_FIELDS:
            value = getattr(env, key)
            if value is not None:
                setattr(env, key, _utc(value) + delta)
        shifted += 1
    event.time_offset_minutes = (event.time_offset_minutes or 0) + minutes
    db.flush()

    logger.info(
        "Envelopes delayed",
        extra={"extra_fields": {"event_id": str(event.id), "minutes": minutes, "envelopes": shifted}},
    )
    emit(EVENT_ENVELOPES_RESCHEDULED, event_id=str(event.id), envelopes=shifted, delay_minutes=minutes)
    return shifted


def recalculate_envelope_times(
    db: Session,
    event: Event,
    cycling_minutes: Optional[Dict[Any, float]] = None,
) -> int:
    """
    Recompute the schedule of every live envelope in the active plan.

    Args:
        cycling_minutes: Optional envelope_id -> minutes from the routing
            provider; stored on the envelope before stamping

    Returns:
        Number of envelopes recalculated
    """
    if not event.active_match_plan_id:
        return 0
    scheduler = EnvelopeScheduler(db, event)
    count = 0
    for env in _live(db, event.active_match_plan_id).all():
        if cycling_minutes and env.id in cycling_minutes:
            env.cycling_minutes = cycling_minutes[env.id]
        scheduler.stamp(env)
        count += 1
    db.flush()
    emit(EVENT_ENVELOPES_RESCHEDULED, event_id=str(event.id), envelopes=count, delay_minutes=0)
    return count


def sync_envelope_states(db: Session, match_plan_id: Any, now: Optional[datetime] = None) -> int:
    """Store the state each live envelope has reached at `now`. Returns changes."""
    now = now or datetime.now(timezone.utc)
    changed = 0
    for env in _live(db, match_plan_id).all():
        state = envelope_state_at(env, now).value
        if env.current_state != state:
            env.current_state = state
            changed += 1
    db.flush()
    return changed


def activate_course(
    db: Session,
    event: Event,
    course: str,
    actor: Optional[str] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Open a course's envelopes on the organizer's signal instead of the clock.

    Every live, not-yet-activated envelope of the course is stamped as
    activated and its remaining reveals are compressed to 30-second steps
    starting now. Activating a meal course also records it on the plan,
    so the next matching run keeps that course frozen.

    Returns:
        Number of envelopes activated
    """
    if course not in ALL_COURSES:
        raise MatchingInputError(f"Unknown course: {course}")
    if not event.active_match_plan_id:
        raise MatchingInputError(f"Event {event.id} has no active match plan")

    plan = lock_active_plan(db, event.id, event.active_match_plan_id)
    now = _utc(now) or datetime.now(timezone.utc)

    envelopes = _live(db, plan.id).filter(Envelope.course == course, Envelope.activated_at.is_(None)).all()
    for env in envelopes:
        env.activated_at = now
        step = 0
        for key in _REVEAL_SEQUENCE:
            if getattr(env, key) is not None:
                setattr(env, key, now + step * ACTIVATION_STEP)
                step += 1
        env.scheduled_at = env.opened_at
        env.current_state = envelope_state_at(env, now).value

    if course in MEAL_COURSES:
        stats = dict(plan.stats or {})
        stats["activated_courses"] = sorted(set(stats.get("activated_courses", [])) | {course})
        plan.stats = stats
    bump_mutation(db, plan)

    record_match_audit_event(
        db,
        event_id=event.id,
        action="course_activated",
        match_plan_id=plan.id,
        affected_couple_ids=sorted({e.couple_id for e in envelopes}, key=str),
        payload={"course": course, "activated_envelopes": len(envelopes), "manual_activation": True},
        actor=actor,
    )
    logger.info(
        f"Course {course} activated",
        extra={"extra_fields": {"event_id": str(event.id), "match_plan_id": str(plan.id), "envelopes": len(envelopes)}},
    )
    emit(EVENT_ENVELOPES_RESCHEDULED, event_id=str(event.id), envelopes=len(envelopes), delay_minutes=0)
    return len(envelopes)
