"""
Envelope Timing Calculator

Computes when each reveal stage of an envelope unlocks.

Offsets are "minutes before course start" and merge in this order:
module defaults -> event timing -> per-course override. When distance
adjustment is enabled and the cycling time is known, street and number
are revealed earlier for longer rides.

Everything here is pure: distances arrive pre-fetched.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, Mapping, Optional, Union
from zoneinfo import ZoneInfo

from core.config import settings
from services.matching.constants import (
    AFTERPARTY_OFFSETS,
    DEFAULT_COURSE_TIMES,
    DEFAULT_TIMING,
    OFFSET_FIELDS,
    Course,
    EnvelopeState,
)
from services.matching.geo import estimate_cycling_minutes

logger = logging.getLogger(__name__)

# Ride length thresholds (minutes) for pulling street/number reveals earlier.
FAR_RIDE_MINUTES = 15
MEDIUM_RIDE_MINUTES = 8

# State unlock order; each state is entered at the matching timestamp.
_STATE_TIMESTAMPS = (
    (EnvelopeState.OPEN, "opened_at"),
    (EnvelopeState.NUMBER, "number_at"),
    (EnvelopeState.STREET, "street_at"),
    (EnvelopeState.CLUE_2, "clue_2_at"),
    (EnvelopeState.CLUE_1, "clue_1_at"),
    (EnvelopeState.TEASING, "teasing_at"),
)


@dataclass
class EnvelopeTimes:
    teasing_at: datetime
    clue_1_at: Optional[datetime]
    clue_2_at: Optional[datetime]
    street_at: datetime
    number_at: datetime
    opened_at: datetime

    def as_dict(self) -> Dict[str, Optional[datetime]]:
        return asdict(self)


def resolve_timing(
    event_timing: Any = None,
    course_offsets: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Merge defaults, the event's EventTiming row (or a dict) and a course override.

    Unknown keys in the override are ignored; None values never override.
    """
    merged: Dict[str, Any] = dict(DEFAULT_TIMING)
    if event_timing is not None:
        for key in DEFAULT_TIMING:
            value = event_timing.get(key) if isinstance(event_timing, Mapping) else getattr(event_timing, key, None)
            if value is not None:
                merged[key] = value
    if course_offsets:
        for key in OFFSET_FIELDS:
            if course_offsets.get(key) is not None:
                merged[key] = course_offsets[key]
    return merged


def adjust_for_distance(street_minutes: float, number_minutes: float, cycling_minutes: Optional[float]):
    """Pull street/number earlier for longer rides. Short rides keep configured offsets."""
    if not cycling_minutes:
        return street_minutes, number_minutes
    if cycling_minutes > FAR_RIDE_MINUTES:
        return max(street_minutes, cycling_minutes + 10), max(number_minutes, cycling_minutes)
    if cycling_minutes > MEDIUM_RIDE_MINUTES:
        return max(street_minutes, cycling_minutes + 5), max(number_minutes, cycling_minutes - 3)
    return street_minutes, number_minutes


def clamp_offsets(offsets: Dict[str, float]) -> Dict[str, float]:
    """
    Force offsets non-negative and monotone: each earlier stage is at least
    as far before the start as the next one. Inversions collapse onto the
    later stage's value.
    """
    ordered = list(OFFSET_FIELDS)
    result = dict(offsets)
    following = 0.0
    for key in reversed(ordered):
        value = max(0.0, float(result.get(key) or 0))
        value = max(value, following)
        result[key] = value
        following = value
    return result


def calculate_envelope_times(
    course_start: datetime,
    timing: Any = None,
    cycling_minutes: Optional[float] = None,
    course_offsets: Optional[Mapping[str, Any]] = None,
    cycling_distance_km: Optional[float] = None,
) -> EnvelopeTimes:
    """
    Compute reveal timestamps for one envelope.

    Args:
        course_start: Aware datetime of the course start (offset already applied)
        timing: EventTiming row or dict; defaults when None
        cycling_minutes: Travel time for the guest's leg, if known
        course_offsets: Per-course override of the offset fields
        cycling_distance_km: Used to estimate minutes when no duration is known

    Returns:
        EnvelopeTimes with teasing_at <= clue_1_at <= clue_2_at <= street_at
        <= number_at <= opened_at
    """
    t = resolve_timing(timing, course_offsets)

    if cycling_minutes is None and cycling_distance_km is not None:
        cycling_minutes = estimate_cycling_minutes(cycling_distance_km, settings.CYCLING_SPEED_KMH)

    street, number = t["street_minutes_before"], t["number_minutes_before"]
    if t["distance_adjustment_enabled"]:
        street, number = adjust_for_distance(street, number, cycling_minutes)

    offsets = clamp_offsets({
        "teasing_minutes_before": t["teasing_minutes_before"],
        "clue_1_minutes_before": t["clue_1_minutes_before"],
        "clue_2_minutes_before": t["clue_2_minutes_before"],
        "street_minutes_before": street,
        "number_minutes_before": number,
    })

    def before(key: str) -> datetime:
        return course_start - timedelta(minutes=offsets[key])

    return EnvelopeTimes(
        teasing_at=before("teasing_minutes_before"),
        clue_1_at=before("clue_1_minutes_before"),
        clue_2_at=before("clue_2_minutes_before"),
        street_at=before("street_minutes_before"),
        number_at=before("number_minutes_before"),
        opened_at=course_start,
    )


def calculate_afterparty_times(start: datetime) -> EnvelopeTimes:
    """Afterparty envelopes skip both clue stages."""
    return EnvelopeTimes(
        teasing_at=start - timedelta(minutes=AFTERPARTY_OFFSETS["teasing_minutes_before"]),
        clue_1_at=None,
        clue_2_at=None,
        street_at=start - timedelta(minutes=AFTERPARTY_OFFSETS["street_minutes_before"]),
        number_at=start - timedelta(minutes=AFTERPARTY_OFFSETS["number_minutes_before"]),
        opened_at=start,
    )


def _parse_wall_time(value: Union[str, time, None], fallback: str) -> time:
    if isinstance(value, time):
        return value
    raw = value or fallback
    hours, minutes = raw.split(":")[:2]
    return time(int(hours), int(minutes))


def parse_course_schedules(
    event_date: date,
    course_times: Mapping[str, Union[str, time, None]],
    time_offset_minutes: int = 0,
    tz_name: Optional[str] = None,
    afterparty_time: Union[str, time, None] = None,
) -> Dict[str, datetime]:
    """
    Turn wall-clock course times into aware datetimes.

    The cumulative delay is added after localisation, so a delay past
    midnight rolls into the next day.
    """
    tz = ZoneInfo(tz_name or settings.EVENT_TIMEZONE)
    delay = timedelta(minutes=time_offset_minutes or 0)
    schedules: Dict[str, datetime] = {}
    for course, default in DEFAULT_COURSE_TIMES.items():
        wall = _parse_wall_time(course_times.get(course), default)
        schedules[course] = datetime.combine(event_date, wall, tzinfo=tz) + delay
    wall = _parse_wall_time(afterparty_time, settings.DEFAULT_AFTERPARTY_TIME)
    schedules[Course.AFTERPARTY.value] = datetime.combine(event_date, wall, tzinfo=tz) + delay
    return schedules


def course_schedules_for_event(event) -> Dict[str, datetime]:
    return parse_course_schedules(
        event.event_date,
        {
            Course.STARTER.value: event.starter_time,
            Course.MAIN.value: event.main_time,
            Course.DESSERT.value: event.dessert_time,
        },
        time_offset_minutes=event.time_offset_minutes or 0,
        tz_name=event.timezone,
        afterparty_time=event.afterparty_time,
    )


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; they are stored as UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=ZoneInfo("UTC"))
    return value


def envelope_state_at(envelope, now: datetime) -> EnvelopeState:
    """Most advanced state whose timestamp has passed."""
    now = _aware(now)
    for state, attr in _STATE_TIMESTAMPS:
        at = _aware(getattr(envelope, attr, None))
        if at is not None and now >= at:
            return state
    return EnvelopeState.LOCKED


def next_reveal(envelope, now: datetime) -> Optional[Dict[str, Any]]:
    """Next state and when it unlocks, or None once the envelope is open."""
    now = _aware(now)
    for state, attr in reversed(_STATE_TIMESTAMPS):
        at = _aware(getattr(envelope, attr, None))
        if at is not None and at > now:
            return {"state": state.value, "at": at}
    return None
