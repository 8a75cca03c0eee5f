"""
Constants for matching and envelope reveal.

These are DEFAULTS that can be overridden by config or database.
They exist here for type safety and documentation.
"""

from enum import Enum
from typing import Dict, List, Tuple


class Course(str, Enum):
    """Evening stages. Afterparty has an envelope but no hosting role."""
    STARTER = "starter"
    MAIN = "main"
    DESSERT = "dessert"
    AFTERPARTY = "afterparty"


# Courses that carry a host/guest role, in serving order.
MEAL_COURSES: Tuple[str, ...] = (
    Course.STARTER.value,
    Course.MAIN.value,
    Course.DESSERT.value,
)

ALL_COURSES: Tuple[str, ...] = MEAL_COURSES + (Course.AFTERPARTY.value,)


class MatchPlanStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    SUPERSEDED = "superseded"


class EventStatus(str, Enum):
    DRAFT = "draft"
    OPEN = "open"
    MATCHED = "matched"
    LOCKED = "locked"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class EnvelopeState(str, Enum):
    """Progressive disclosure stages, in reveal order."""
    LOCKED = "LOCKED"
    TEASING = "TEASING"
    CLUE_1 = "CLUE_1"
    CLUE_2 = "CLUE_2"
    STREET = "STREET"
    NUMBER = "NUMBER"
    OPEN = "OPEN"


class WarningType(str, Enum):
    """Non-fatal constraint relaxations and organizer alerts."""
    CAPACITY = "capacity"
    PREFERENCE = "preference"
    BLOCK = "block"
    UNIQUE_MEETING = "unique_meeting"
    REVEAL_FREEZE = "reveal_freeze"
    DUPLICATE_ADDRESS = "duplicate_address"


# Default reveal offsets, minutes before course start.
DEFAULT_TIMING: Dict[str, object] = {
    "teasing_minutes_before": 360,  # 6h
    "clue_1_minutes_before": 120,   # 2h
    "clue_2_minutes_before": 30,
    "street_minutes_before": 15,
    "number_minutes_before": 5,
    "during_meal_clue_interval_minutes": 15,
    "distance_adjustment_enabled": True,
}

# Offsets that a per-course override may replace.
OFFSET_FIELDS: List[str] = [
    "teasing_minutes_before",
    "clue_1_minutes_before",
    "clue_2_minutes_before",
    "street_minutes_before",
    "number_minutes_before",
]

# Afterparty envelopes skip the clue stages.
AFTERPARTY_OFFSETS: Dict[str, int] = {
    "teasing_minutes_before": 45,
    "street_minutes_before": 15,
    "number_minutes_before": 5,
}

DEFAULT_COURSE_TIMES: Dict[str, str] = {
    Course.STARTER.value: "17:30",
    Course.MAIN.value: "19:00",
    Course.DESSERT.value: "20:30",
}

# Capacity granted on manual promotion to host.
PROMOTED_HOST_CAPACITY_PAIR = 8
PROMOTED_HOST_CAPACITY_SINGLE = 6

SELF_HOST_NOTE = "You are hosting! Your guests come to you."
