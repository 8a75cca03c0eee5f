"""
Role Assignment (Step A)

Gives every active couple one host course and the guest role for the other
two. Runs once per event; re-matching reuses the stored assignments.

Policy:
- Host counts are balanced across courses (ceil(n/3) at most per course).
- A stated course preference is honoured when it does not starve another
  course of hosts.
- Everyone else goes to the least-filled course.
- Aggregate host capacity per course must cover that course's guests.

Usage:
    engine = RoleAssignmentEngine(default_max_guests=6)
    result = engine.assign(couples)
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from core.config import settings
from core.exceptions import MatchingInputError

from .constants import MEAL_COURSES

logger = logging.getLogger(__name__)


@dataclass
class AssignmentDraft:
    """One (couple, course) role, before persistence."""
    couple_id: Any
    course: str
    is_host: bool
    max_guests: int = 0
    is_flex_host: bool = False
    flex_extra_capacity: int = 0
    is_emergency_host: bool = False


@dataclass
class RoleAssignmentResult:
    assignments: List[AssignmentDraft]
    host_course: Dict[Any, str]  # couple_id -> course it hosts
    preference_satisfaction: float
    capacity_per_course: Dict[str, int] = field(default_factory=dict)
    guest_persons_per_course: Dict[str, int] = field(default_factory=dict)

    def hosts_for(self, course: str) -> List[Any]:
        return [cid for cid, c in self.host_course.items() if c == course]


class RoleAssignmentEngine:
    """
    Assign host courses.

    Couples are any objects exposing `id`, `person_count`,
    `course_preference`, `max_guests` and `cancelled` (ORM rows qualify).
    """

    def __init__(
        self,
        default_max_guests: Optional[int] = None,
        flex_extra_capacity: Optional[int] = None,
        min_couples: Optional[int] = None,
    ):
        self.default_max_guests = default_max_guests or settings.DEFAULT_MAX_GUESTS
        self.flex_extra_capacity = (
            flex_extra_capacity if flex_extra_capacity is not None else settings.DEFAULT_FLEX_EXTRA_CAPACITY
        )
        self.min_couples = min_couples or settings.MIN_COUPLES_FOR_MATCHING

    def capacity_of(self, couple) -> int:
        return couple.max_guests or self.default_max_guests

    def assign(self, couples: Iterable[Any]) -> RoleAssignmentResult:
        active = [c for c in couples if not getattr(c, "cancelled", False)]
        n = len(active)
        if n < self.min_couples:
            raise MatchingInputError(
                f"At least {self.min_couples} couples are required to run matching (got {n})"
            )

        floor_target = n // len(MEAL_COURSES)
        ceil_target = math.ceil(n / len(MEAL_COURSES))
        counts: Dict[str, int] = {c: 0 for c in MEAL_COURSES}
        host_course: Dict[Any, str] = {}

        with_preference = [c for c in active if c.course_preference in MEAL_COURSES]
        without_preference = [c for c in active if c.course_preference not in MEAL_COURSES]

        # Phase 1: preferences, while they leave enough couples for the other courses
        satisfied = 0
        overflow = []
        for couple in with_preference:
            preferred = couple.course_preference
            if self._can_take(preferred, counts, floor_target, ceil_target, n - len(host_course)):
                counts[preferred] += 1
                host_course[couple.id] = preferred
                satisfied += 1
            else:
                overflow.append(couple)

        # Phase 2: balance the rest
        for couple in overflow + without_preference:
            course = min(MEAL_COURSES, key=lambda c: (counts[c], MEAL_COURSES.index(c)))
            counts[course] += 1
            host_course[couple.id] = course

        capacity: Dict[str, int] = {c: 0 for c in MEAL_COURSES}
        guest_persons: Dict[str, int] = {c: 0 for c in MEAL_COURSES}
        for couple in active:
            hosted = host_course[couple.id]
            capacity[hosted] += self.capacity_of(couple)
            for course in MEAL_COURSES:
                if course != hosted:
                    guest_persons[course] += couple.person_count

        for course in MEAL_COURSES:
            if capacity[course] < guest_persons[course]:
                raise MatchingInputError(
                    f"Insufficient capacity for {course}: "
                    f"{capacity[course]} seats < {guest_persons[course]} guests",
                    errors=[{"course": course, "capacity": capacity[course], "guests": guest_persons[course]}],
                )

        assignments: List[AssignmentDraft] = []
        for couple in active:
            hosted = host_course[couple.id]
            for course in MEAL_COURSES:
                if course == hosted:
                    assignments.append(AssignmentDraft(
                        couple_id=couple.id,
                        course=course,
                        is_host=True,
                        max_guests=self.capacity_of(couple),
                        flex_extra_capacity=self.flex_extra_capacity,
                    ))
                else:
                    assignments.append(AssignmentDraft(couple_id=couple.id, course=course, is_host=False))

        satisfaction = satisfied / len(with_preference) if with_preference else 1.0

        logger.info(
            "Role assignment complete",
            extra={"extra_fields": {
                "couples": n,
                "hosts_per_course": counts,
                "preference_satisfaction": round(satisfaction, 2),
            }},
        )

        return RoleAssignmentResult(
            assignments=assignments,
            host_course=host_course,
            preference_satisfaction=round(satisfaction, 2),
            capacity_per_course=capacity,
            guest_persons_per_course=guest_persons,
        )

    @staticmethod
    def _can_take(course: str, counts: Dict[str, int], floor_target: int, ceil_target: int, unassigned: int) -> bool:
        if counts[course] >= ceil_target:
            return False
        # After taking this couple, the others still need at least floor_target hosts each.
        remaining = unassigned - 1
        shortfall = sum(
            max(0, floor_target - (counts[c] + (1 if c == course else 0)))
            for c in MEAL_COURSES
        )
        return shortfall <= remaining
