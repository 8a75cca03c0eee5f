from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from uuid import UUID
from typing import Any, Annotated, Dict, List, Literal, Optional, Union

from services.matching.cascade_repair import (
    AddressChange,
    GuestDropout,
    HostDropout,
    PromoteHost,
    Reassign,
    ResignHost,
    Split,
    TransferHost,
)

CourseName = Literal["starter", "main", "dessert"]


class MatchingWarningResponse(BaseModel):
    type: str
    message: str
    couple_ids: List[str] = []
    course: Optional[str] = None


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


class RunMatchingRequest(BaseModel):
    """Options for a matching run. Frozen courses keep their pairings."""
    frozen_courses: List[CourseName] = []
    seed: Optional[int] = None


class MatchPlanResponse(BaseModel):
    id: UUID
    event_id: UUID
    version: int
    status: str
    stats: Optional[Dict[str, Any]] = None
    mutation_count: int = 0
    committed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class RunMatchingResponse(BaseModel):
    success: bool
    match_plan: MatchPlanResponse
    warnings: List[MatchingWarningResponse]
    stats: Dict[str, Any]
    frozen_courses: List[str]


# ---------------------------------------------------------------------------
# Cascade payloads (discriminated on `type`)
# ---------------------------------------------------------------------------


class GuestDropoutBody(BaseModel):
    type: Literal["guest_dropout"]

    def to_details(self):
        return GuestDropout()


class HostDropoutBody(BaseModel):
    type: Literal["host_dropout"]

    def to_details(self):
        return HostDropout()


class AddressChangeBody(BaseModel):
    type: Literal["address_change"]
    new_address: str = Field(..., min_length=1)
    new_address_notes: Optional[str] = None

    def to_details(self):
        return AddressChange(new_address=self.new_address, new_address_notes=self.new_address_notes)


class ReassignBody(BaseModel):
    type: Literal["reassign"]
    course: CourseName
    new_host_couple_id: UUID

    def to_details(self):
        return Reassign(course=self.course, new_host_couple_id=self.new_host_couple_id)


class ResignHostBody(BaseModel):
    type: Literal["resign_host"]

    def to_details(self):
        return ResignHost()


class SplitBody(BaseModel):
    type: Literal["split"]
    new_couple_id: UUID

    def to_details(self):
        return Split(new_couple_id=self.new_couple_id)


class TransferHostBody(BaseModel):
    type: Literal["transfer_host"]
    to_couple_id: UUID
    courses: List[CourseName] = Field(..., min_length=1)

    def to_details(self):
        return TransferHost(to_couple_id=self.to_couple_id, courses=tuple(self.courses))


class PromoteHostBody(BaseModel):
    type: Literal["promote_host"]
    course: CourseName

    def to_details(self):
        return PromoteHost(course=self.course)


CascadeBody = Annotated[
    Union[
        GuestDropoutBody,
        HostDropoutBody,
        AddressChangeBody,
        ReassignBody,
        ResignHostBody,
        SplitBody,
        TransferHostBody,
        PromoteHostBody,
    ],
    Field(discriminator="type"),
]


class CascadeRequest(BaseModel):
    match_plan_id: UUID
    couple_id: UUID
    details: CascadeBody


class CascadeResponse(BaseModel):
    mutation: str
    envelopes_cancelled: int = 0
    envelopes_created: int = 0
    envelopes_updated: int = 0
    pairings_removed: int = 0
    pairings_created: int = 0
    assignments_removed: int = 0
    assignments_created: int = 0
    unplaced_guests: List[str] = []
    unplaced_by_course: Dict[str, List[str]] = {}
    warnings: List[MatchingWarningResponse] = []


# ---------------------------------------------------------------------------
# Placement workflows
# ---------------------------------------------------------------------------


class PlacementItem(BaseModel):
    guest_couple_id: UUID
    course: CourseName
    host_couple_id: UUID


class PlaceGuestsRequest(BaseModel):
    placements: List[PlacementItem] = Field(..., min_length=1)


class PlaceGuestsResponse(BaseModel):
    placed: int
    envelopes_created: int
    warnings: List[MatchingWarningResponse] = []


class PromoteHostRequest(BaseModel):
    couple_id: UUID
    course: CourseName
    guest_ids: List[UUID] = []


class PromoteHostResponse(BaseModel):
    cascade: CascadeResponse
    placed: int = 0
    warnings: List[MatchingWarningResponse] = []


class AddressChangeRequest(BaseModel):
    address: str = Field(..., min_length=1)
    address_notes: Optional[str] = None


class AddressChangeResponse(BaseModel):
    cascade: Optional[CascadeResponse] = None
    warnings: List[MatchingWarningResponse] = []


class DropoutResponse(BaseModel):
    couple_id: UUID
    cancelled: bool
    cascade: Optional[CascadeResponse] = None


class SplitResponse(BaseModel):
    new_couple_id: UUID
    cascade: Optional[CascadeResponse] = None


class TransferHostRequest(BaseModel):
    from_couple_id: UUID
    to_couple_id: UUID
    courses: List[CourseName] = Field(..., min_length=1)


class HostProfileUpdate(BaseModel):
    """Profile fields that feed the clue allocator."""
    invited_fun_facts: Optional[List[str]] = None
    partner_fun_facts: Optional[List[str]] = None
    invited_birth_year: Optional[int] = Field(None, ge=1900, le=2100)
    partner_birth_year: Optional[int] = Field(None, ge=1900, le=2100)


class HostProfileResponse(BaseModel):
    couple_id: UUID
    fun_facts_total: int
    fun_facts_sufficient: bool
    fun_facts_missing: int


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class DelayEnvelopesRequest(BaseModel):
    minutes: int = Field(..., ge=1, le=240)


class EnvelopeBatchResponse(BaseModel):
    envelopes: int
    time_offset_minutes: int = 0


class ActivateCourseRequest(BaseModel):
    course: Literal["starter", "main", "dessert", "afterparty"]


class ActivateCourseResponse(BaseModel):
    course: str
    activated: int
    frozen: bool
