# Matching Core
#
# Role assignment, guest/host pairing and cascade repair for one event.
#
# Flow:
# - RoleAssignmentEngine (Step A) gives each couple its host course
# - PairingEngine (Step B) seats guests under the relaxation policy
# - apply_cascade repairs the active plan after structural changes
#
# The engines are pure; cascade_repair and policy read and write through
# a SQLAlchemy Session owned by the caller.

from .constants import Course, EnvelopeState, MatchPlanStatus, WarningType, MEAL_COURSES
from .role_assignment import RoleAssignmentEngine, RoleAssignmentResult, AssignmentDraft
from .pairing_engine import (
    PairingEngine,
    PairingResult,
    MatchingWarning,
    RELAXATION_POLICY,
)
from .cascade_repair import (
    apply_cascade,
    CascadeResult,
    CascadeDetails,
    GuestDropout,
    HostDropout,
    AddressChange,
    Reassign,
    ResignHost,
    Split,
    TransferHost,
    PromoteHost,
)

__all__ = [
    # Constants
    'Course',
    'EnvelopeState',
    'MatchPlanStatus',
    'WarningType',
    'MEAL_COURSES',

    # Step A / Step B
    'RoleAssignmentEngine',
    'RoleAssignmentResult',
    'AssignmentDraft',
    'PairingEngine',
    'PairingResult',
    'MatchingWarning',
    'RELAXATION_POLICY',

    # Cascade repair
    'apply_cascade',
    'CascadeResult',
    'CascadeDetails',
    'GuestDropout',
    'HostDropout',
    'AddressChange',
    'Reassign',
    'ResignHost',
    'Split',
    'TransferHost',
    'PromoteHost',
]
