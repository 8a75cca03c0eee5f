"""
Clue Allocation

Spreads a host's fun facts across courses so a guest never hears the same
clue twice over the evening. Also splits a host address into the fragments
revealed at the STREET and NUMBER stages.

Allocation:
- facts >= courses * slots: each course gets its own block, no repeats
- fewer facts: round-robin reuse
- no facts: empty, fallback clues fill in at read time
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

from core.config import settings
from services.matching.constants import MEAL_COURSES

STREET_RE = re.compile(r"^(.+?)\s+(\d+[A-Za-z]?)\s*(lgh\s*.+)?$", re.IGNORECASE)
POSTAL_RE = re.compile(r"^(\d{3}\s?\d{2})\s*(.+)?$")
APARTMENT_RE = re.compile(r"lgh\s*(.+)", re.IGNORECASE)


def birth_decade(birth_years: Iterable[Optional[int]]) -> Optional[int]:
    years = [y for y in birth_years if y]
    if not years:
        return None
    avg = round(sum(years) / len(years))
    return (avg // 10) * 10


def combine_facts(couple) -> List[str]:
    """
    All revealable facts for a couple, in a stable order.

    Invited facts, then partner facts, then the birth decade when known.
    Stored clue indices point into this list.
    """
    facts: List[str] = []
    for raw in (couple.invited_fun_facts, couple.partner_fun_facts):
        if isinstance(raw, list):
            facts.extend(str(f).strip() for f in raw if f and str(f).strip())
    decade = birth_decade([couple.invited_birth_year, couple.partner_birth_year])
    if decade is not None:
        facts.append(f"The hosts were born in the {decade}s")
    return facts


def allocate_clue_indices(
    total_facts: int,
    courses: Sequence[str] = MEAL_COURSES,
    slots_per_course: Optional[int] = None,
) -> Dict[str, List[int]]:
    slots = slots_per_course or settings.CLUES_PER_COURSE
    if total_facts <= 0:
        return {course: [] for course in courses}

    allocation: Dict[str, List[int]] = {}
    if total_facts >= slots * len(courses):
        for i, course in enumerate(courses):
            allocation[course] = list(range(i * slots, (i + 1) * slots))
        return allocation

    cursor = 0
    for course in courses:
        picked: List[int] = []
        for _ in range(slots):
            idx = cursor % total_facts
            cursor += 1
            if idx not in picked:
                picked.append(idx)
        allocation[course] = picked
    return allocation


def fallback_clues(
    host_names: Sequence[Optional[str]],
    cycling_minutes: Optional[float] = None,
    birth_years: Iterable[Optional[int]] = (),
) -> List[str]:
    clues: List[str] = []

    decade = birth_decade(birth_years)
    if decade is not None:
        clues.append(f"The hosts were born in the {decade}s")

    if cycling_minutes:
        if cycling_minutes < 5:
            clues.append("You live close to each other, under 5 minutes by bike")
        elif cycling_minutes < 10:
            clues.append("A short ride away, under 10 minutes by bike")
        else:
            clues.append(f"{round(cycling_minutes)} minutes by bike")

    initials = " & ".join(n[0].upper() for n in host_names if n)
    if initials:
        clues.append(f"The hosts have the initials {initials}")

    clues.append("The hosts love good food")
    clues.append("You will enjoy your evening with them")
    return clues


def clues_for_course(
    facts: Sequence[str],
    indices: Sequence[int],
    fallback: Optional[List[str]] = None,
    slots: Optional[int] = None,
) -> List[str]:
    """Resolve stored indices to text, topping up from fallback clues."""
    wanted = slots or settings.CLUES_PER_COURSE
    clues = [facts[i] for i in indices if 0 <= i < len(facts)]
    for extra in fallback or []:
        if len(clues) >= wanted:
            break
        if extra not in clues:
            clues.append(extra)
    return clues


@dataclass
class FunFactValidation:
    is_valid: bool
    total_facts: int
    missing_count: int
    message: str


def validate_fun_facts(couple, minimum: Optional[int] = None) -> FunFactValidation:
    required = settings.MIN_FUN_FACTS if minimum is None else minimum
    total = 0
    for raw in (couple.invited_fun_facts, couple.partner_fun_facts):
        if isinstance(raw, list):
            total += sum(1 for f in raw if f and str(f).strip())
    if total >= required:
        return FunFactValidation(True, total, 0, f"{total} fun facts registered")
    missing = required - total
    return FunFactValidation(False, total, missing, f"{missing} more fun facts needed for unique clues")


@dataclass
class ParsedAddress:
    street_name: Optional[str] = None
    street_number: Optional[int] = None
    apartment: Optional[str] = None
    postal_code: Optional[str] = None
    city: Optional[str] = None
    number_range_low: Optional[int] = None
    number_range_high: Optional[int] = None

    def as_fields(self) -> Dict[str, Any]:
        return dict(self.__dict__)


def parse_address(address: Optional[str]) -> ParsedAddress:
    """
    Split "Storgatan 14 lgh 1102, 941 33 Pitea" style addresses.

    The number range brackets the street number to the enclosing ten so the
    STREET stage hints at the block without giving the door away.
    """
    result = ParsedAddress()
    if not address or not address.strip():
        return result

    parts = [p.strip() for p in address.split(",")]
    street_part = parts[0]

    m = STREET_RE.match(street_part)
    if m:
        result.street_name = m.group(1).strip()
        result.street_number = int(re.match(r"\d+", m.group(2)).group(0))
        if m.group(3):
            result.apartment = m.group(3).strip()
        if result.street_number:
            base = (result.street_number // 10) * 10
            result.number_range_low = max(1, base)
            result.number_range_high = base + 10
    else:
        result.street_name = street_part

    if len(parts) > 1:
        pm = POSTAL_RE.match(parts[1])
        if pm:
            result.postal_code = re.sub(r"\s", "", pm.group(1))
            result.city = pm.group(2).strip() if pm.group(2) else None
        else:
            result.city = parts[1]

    for part in parts[1:]:
        am = APARTMENT_RE.search(part)
        if am and not result.apartment:
            result.apartment = f"lgh {am.group(1).strip()}"

    return result
