"""
Pairing Engine (Step B)

Seats every guest couple at exactly one host per course.

Each guest is placed at the first level of RELAXATION_POLICY that yields a
feasible host. Levels are ordered from strictest to loosest; a level that
relaxes a rule records a warning, and so does any seat that takes a host
past its max_guests, flex capacity included. Among feasible hosts the
ranking is: fewest earlier table meetings, lowest fill ratio, shortest
straight-line distance.

Usage:
    engine = PairingEngine(seed=42)
    result = engine.run(couples, assignments, blocked_pairs, frozen_courses=["starter"])
"""

import logging
import random
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from core.config import settings

from .constants import MEAL_COURSES, SELF_HOST_NOTE, WarningType
from .geo import straight_line_km

logger = logging.getLogger(__name__)


@dataclass
class MatchingWarning:
    """Non-fatal relaxation, kept on the plan stats and the audit log."""
    type: WarningType
    message: str
    couple_ids: List[Any] = field(default_factory=list)
    course: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "message": self.message,
            "couple_ids": [str(c) for c in self.couple_ids],
            "course": self.course,
        }


@dataclass
class PairingDraft:
    course: str
    host_couple_id: Any
    guest_couple_id: Any
    forced: bool = False


@dataclass
class EnvelopeDraft:
    """Envelope without timing; the timing calculator fills that in."""
    couple_id: Any
    course: str
    host_couple_id: Any
    destination_address: Optional[str]
    destination_notes: Optional[str]
    cycling_distance_km: Optional[float] = None


@dataclass(frozen=True)
class RelaxationLevel:
    """
    One rung of the relaxation ladder.

    capacity: "base" (max_guests), "flex" (max_guests + flex extra for flex
    hosts) or "unbounded".
    """
    name: str
    capacity: str
    include_emergency: bool
    enforce_unique_meeting: bool
    enforce_block: bool
    warning: Optional[WarningType] = None


# Policy choice: a repeat meeting is accepted before a host is overfilled.
# Swapping the two relaxation rungs below reverses that trade-off.
RELAXATION_POLICY: Tuple[RelaxationLevel, ...] = (
    RelaxationLevel("base", "base", False, True, True),
    RelaxationLevel("flex", "flex", False, True, True),
    RelaxationLevel("emergency", "flex", True, True, True),
    RelaxationLevel("unique_meeting", "flex", True, False, True, WarningType.UNIQUE_MEETING),
    RelaxationLevel("capacity", "unbounded", True, False, True, WarningType.CAPACITY),
    RelaxationLevel("block", "unbounded", True, False, False, WarningType.BLOCK),
)


@dataclass
class HostSlot:
    couple_id: Any
    address: Optional[str]
    address_notes: Optional[str]
    coordinates: Optional[Tuple[float, float]]
    max_guests: int
    flex_extra_capacity: int = 0
    is_flex_host: bool = False
    is_emergency_host: bool = False
    guests: List[Any] = field(default_factory=list)
    persons: int = 0

    def capacity(self, mode: str) -> Optional[int]:
        if mode == "base":
            return self.max_guests
        if mode == "flex":
            return self.max_guests + (self.flex_extra_capacity if self.is_flex_host else 0)
        return None

    def fits(self, person_count: int, mode: str) -> bool:
        limit = self.capacity(mode)
        return limit is None or self.persons + person_count <= limit

    @property
    def fill_ratio(self) -> float:
        if self.max_guests <= 0:
            return float(self.persons) if self.persons else 1.0
        return self.persons / self.max_guests


@dataclass
class PairingResult:
    pairings: List[PairingDraft]
    envelopes: List[EnvelopeDraft]
    warnings: List[MatchingWarning]
    unplaced: Dict[str, List[Any]]  # course -> guest couple ids left without a host
    stats: Dict[str, Any]


def _pair_key(a: Any, b: Any) -> FrozenSet:
    return frozenset((a, b))


class PairingEngine:
    """Greedy per-course pairing with a declared relaxation order."""

    def __init__(
        self,
        seed: Optional[int] = None,
        distance_aware: Optional[bool] = None,
        policy: Tuple[RelaxationLevel, ...] = RELAXATION_POLICY,
    ):
        self.rng = random.Random(seed)
        self.distance_aware = settings.PAIRING_DISTANCE_AWARE if distance_aware is None else distance_aware
        self.policy = policy

    def run(
        self,
        couples: Iterable[Any],
        assignments: Iterable[Any],
        blocked_pairs: Iterable[Tuple[Any, Any]] = (),
        frozen_courses: Iterable[str] = (),
        existing_pairings: Iterable[Any] = (),
    ) -> PairingResult:
        """
        Pair guests to hosts for every non-frozen meal course.

        Args:
            couples: Couple rows (cancelled ones are ignored)
            assignments: Assignment rows for the event
            blocked_pairs: (couple_a_id, couple_b_id) tuples
            frozen_courses: Courses whose existing pairings are kept as-is
            existing_pairings: Pairings of frozen courses; they seed meeting history

        Returns:
            PairingResult with pairings, envelope drafts (guests and hosts),
            warnings and stats
        """
        couple_map = {c.id: c for c in couples if not c.cancelled}
        assignments = [a for a in assignments if a.couple_id in couple_map]
        frozen = {c for c in frozen_courses if c in MEAL_COURSES}
        blocked: Set[FrozenSet] = {_pair_key(a, b) for a, b in blocked_pairs}

        # Unordered host/guest pairs already seated together; the relaxable rule.
        paired: Set[FrozenSet] = set()
        # Unordered pairs sharing any table, counted; soft ranking only.
        table_meetings: Dict[FrozenSet, int] = {}

        warnings: List[MatchingWarning] = []
        pairings: List[PairingDraft] = []
        envelopes: List[EnvelopeDraft] = []
        unplaced: Dict[str, List[Any]] = {}

        # Seed meeting history from frozen courses
        frozen_tables: Dict[Tuple[str, Any], List[Any]] = {}
        for p in existing_pairings:
            if p.course not in frozen:
                continue
            paired.add(_pair_key(p.host_couple_id, p.guest_couple_id))
            frozen_tables.setdefault((p.course, p.host_couple_id), []).append(p.guest_couple_id)
        for (_, host_id), guest_ids in frozen_tables.items():
            self._record_table(table_meetings, [host_id] + guest_ids)

        for course in MEAL_COURSES:
            if course in frozen:
                logger.info(f"Course {course} is frozen; keeping existing pairings")
                continue

            host_assignments = [a for a in assignments if a.course == course and a.is_host]
            host_ids = {a.couple_id for a in host_assignments}
            slots = [self._slot(a, couple_map[a.couple_id]) for a in host_assignments]

            guest_ids = [cid for cid in couple_map if cid not in host_ids]
            self.rng.shuffle(guest_ids)
            guest_ids.sort(key=lambda cid: couple_map[cid].person_count, reverse=True)

            for guest_id in guest_ids:
                guest = couple_map[guest_id]
                chosen, level = self._choose_host(guest, slots, paired, blocked, table_meetings)
                if chosen is None:
                    unplaced.setdefault(course, []).append(guest_id)
                    warnings.append(MatchingWarning(
                        type=WarningType.CAPACITY,
                        message=f"No host available for {guest.invited_name} ({course})",
                        couple_ids=[guest_id],
                        course=course,
                    ))
                    continue

                relaxed = []
                if level.warning is not None or not chosen.fits(guest.person_count, "base"):
                    relaxed = self._violations(guest, chosen, paired, blocked, couple_map, course)
                    warnings.extend(relaxed)
                forced = any(w.type == WarningType.BLOCK for w in relaxed)

                self._record_table(table_meetings, [chosen.couple_id] + chosen.guests, guest_id)
                chosen.guests.append(guest_id)
                chosen.persons += guest.person_count
                paired.add(_pair_key(chosen.couple_id, guest_id))
                pairings.append(PairingDraft(course, chosen.couple_id, guest_id, forced=forced))

            for slot in slots:
                host = couple_map[slot.couple_id]
                for guest_id in slot.guests:
                    guest = couple_map[guest_id]
                    envelopes.append(EnvelopeDraft(
                        couple_id=guest_id,
                        course=course,
                        host_couple_id=slot.couple_id,
                        destination_address=slot.address,
                        destination_notes=slot.address_notes,
                        cycling_distance_km=straight_line_km(guest.coordinates, host.coordinates),
                    ))
                # Hosts with no takers still get their own envelope.
                envelopes.append(EnvelopeDraft(
                    couple_id=slot.couple_id,
                    course=course,
                    host_couple_id=slot.couple_id,
                    destination_address=slot.address,
                    destination_notes=SELF_HOST_NOTE,
                    cycling_distance_km=0.0,
                ))

        stats = self._stats(couple_map, assignments, pairings, frozen)
        for w in warnings:
            logger.warning(
                f"Pairing relaxation: {w.message}",
                extra={"extra_fields": {"warning_type": w.type.value, "course": w.course}},
            )
        return PairingResult(
            pairings=pairings,
            envelopes=envelopes,
            warnings=warnings,
            unplaced=unplaced,
            stats=stats,
        )

    def _slot(self, assignment, couple) -> HostSlot:
        return HostSlot(
            couple_id=assignment.couple_id,
            address=couple.address,
            address_notes=couple.address_notes,
            coordinates=couple.coordinates,
            max_guests=assignment.max_guests or 0,
            flex_extra_capacity=assignment.flex_extra_capacity or 0,
            is_flex_host=bool(assignment.is_flex_host),
            is_emergency_host=bool(assignment.is_emergency_host),
        )

    def _choose_host(
        self,
        guest,
        slots: List[HostSlot],
        paired: Set[FrozenSet],
        blocked: Set[FrozenSet],
        table_meetings: Dict[FrozenSet, int],
    ) -> Tuple[Optional[HostSlot], Optional[RelaxationLevel]]:
        for level in self.policy:
            candidates = [
                slot for slot in slots
                if self._feasible(slot, guest, level, paired, blocked)
            ]
            if candidates:
                best = min(candidates, key=lambda s: self._rank(s, guest, table_meetings))
                return best, level
        return None, None

    @staticmethod
    def _feasible(slot: HostSlot, guest, level: RelaxationLevel, paired, blocked) -> bool:
        if slot.couple_id == guest.id:
            return False
        if slot.is_emergency_host and not level.include_emergency:
            return False
        if not slot.fits(guest.person_count, level.capacity):
            return False
        if level.enforce_unique_meeting and _pair_key(slot.couple_id, guest.id) in paired:
            return False
        if level.enforce_block:
            if _pair_key(slot.couple_id, guest.id) in blocked:
                return False
            if any(_pair_key(g, guest.id) in blocked for g in slot.guests):
                return False
        return True

    def _rank(self, slot: HostSlot, guest, table_meetings: Dict[FrozenSet, int]) -> Tuple:
        repeats = sum(
            table_meetings.get(_pair_key(other, guest.id), 0)
            for other in [slot.couple_id] + slot.guests
        )
        distance = 0.0
        if self.distance_aware:
            km = straight_line_km(guest.coordinates, slot.coordinates)
            distance = km if km is not None else 0.0
        return (repeats, slot.fill_ratio, distance)

    @staticmethod
    def _record_table(table_meetings: Dict[FrozenSet, int], seated: List[Any], newcomer: Any = None) -> None:
        if newcomer is None:
            for i, a in enumerate(seated):
                for b in seated[i + 1:]:
                    key = _pair_key(a, b)
                    table_meetings[key] = table_meetings.get(key, 0) + 1
            return
        for other in seated:
            key = _pair_key(other, newcomer)
            table_meetings[key] = table_meetings.get(key, 0) + 1

    @staticmethod
    def _violations(guest, slot: HostSlot, paired, blocked, couple_map, course: str) -> List[MatchingWarning]:
        """Every rule the chosen seat breaks, one warning each."""
        host_name = couple_map[slot.couple_id].invited_name
        ids = [guest.id, slot.couple_id]
        found = []
        if _pair_key(slot.couple_id, guest.id) in paired:
            found.append(MatchingWarning(
                WarningType.UNIQUE_MEETING,
                f"{guest.invited_name} and {host_name} meet again at {course}",
                ids, course,
            ))
        if not slot.fits(guest.person_count, "base"):
            over = "flex capacity" if slot.fits(guest.person_count, "flex") else "capacity"
            found.append(MatchingWarning(
                WarningType.CAPACITY,
                f"{host_name} is over {over} at {course} after seating {guest.invited_name}",
                ids, course,
            ))
        clashes = [g for g in [slot.couple_id] + slot.guests if _pair_key(g, guest.id) in blocked]
        if clashes:
            found.append(MatchingWarning(
                WarningType.BLOCK,
                f"Blocked pair forced: {guest.invited_name} seated with {host_name} at {course}",
                [guest.id] + clashes, course,
            ))
        return found

    @staticmethod
    def _stats(couple_map, assignments, pairings: List[PairingDraft], frozen: Set[str]) -> Dict[str, Any]:
        matched = {p.host_couple_id for p in pairings} | {p.guest_couple_id for p in pairings}
        total_capacity = sum(
            a.max_guests or 0 for a in assignments if a.is_host and a.course not in frozen
        )
        total_assigned = sum(couple_map[p.guest_couple_id].person_count for p in pairings)
        return {
            "couples_matched": len(matched),
            "capacity_utilization": round(total_assigned / total_capacity, 2) if total_capacity else 0,
            "pairings_created": len(pairings),
            "forced_pairings": sum(1 for p in pairings if p.forced),
        }
