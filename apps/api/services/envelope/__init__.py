# Envelope reveal: timing schedule and clue allocation (pure functions).

from .timing import (
    EnvelopeTimes,
    calculate_envelope_times,
    calculate_afterparty_times,
    parse_course_schedules,
    envelope_state_at,
)
from .clues import (
    allocate_clue_indices,
    combine_facts,
    fallback_clues,
    parse_address,
    validate_fun_facts,
)

__all__ = [
    'EnvelopeTimes',
    'calculate_envelope_times',
    'calculate_afterparty_times',
    'parse_course_schedules',
    'envelope_state_at',
    'allocate_clue_indices',
    'combine_facts',
    'fallback_clues',
    'parse_address',
    'validate_fun_facts',
]
