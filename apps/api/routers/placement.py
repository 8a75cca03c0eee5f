"""
Placement API Router

Organizer workflows on a matched event: unplaced guests, manual
placement, promotion to host, dropouts, address edits, splits,
resignations, host transfers and host profile edits.
"""
from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session
from uuid import UUID
from typing import Optional
from core.database import get_db
from core.exceptions import MatchingError, to_api_exception
from schemas import (
    AddressChangeRequest,
    AddressChangeResponse,
    CascadeResponse,
    DropoutResponse,
    HostProfileResponse,
    HostProfileUpdate,
    PlaceGuestsRequest,
    PlaceGuestsResponse,
    PromoteHostRequest,
    PromoteHostResponse,
    SplitResponse,
    TransferHostRequest,
)
from routers.matching import cascade_response, get_event_or_404
from services import placement_service
from services.envelope.clues import validate_fun_facts
from services.placement_service import Placement

router = APIRouter(prefix="/v1/events/{event_id}", tags=["placement"])


def _jsonable(value):
    """UUID keys and values to strings, recursively."""
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    if isinstance(value, UUID):
        return str(value)
    return value


@router.get("/unplaced")
def get_unplaced_endpoint(event_id: UUID, db: Session = Depends(get_db)):
    """
    List guests without a seat per course, and every host's current load.

    Hosts come sorted by free capacity so the organizer sees the best
    candidates first.
    """
    event = get_event_or_404(event_id, db)
    try:
        data = placement_service.list_unplaced(db, event)
    except MatchingError as e:
        raise to_api_exception(e)
    return _jsonable(data)


@router.post("/place", response_model=PlaceGuestsResponse)
def place_guests_endpoint(
    event_id: UUID,
    request: PlaceGuestsRequest,
    actor: Optional[str] = Header(None, alias="X-Actor"),
    db: Session = Depends(get_db),
):
    """
    Seat unplaced guests with hosts.

    Every placement is validated before any is applied. Capacity overruns
    and blocked pairs are applied and returned as warnings.
    """
    event = get_event_or_404(event_id, db)
    placements = [Placement(p.guest_couple_id, p.course, p.host_couple_id) for p in request.placements]
    try:
        outcome = placement_service.place_guests(db, event, placements, actor=actor)
    except MatchingError as e:
        raise to_api_exception(e)
    return PlaceGuestsResponse(
        placed=len(outcome.placed),
        envelopes_created=outcome.envelopes_created,
        warnings=[w.to_dict() for w in outcome.warnings],
    )


@router.post("/promote-host", response_model=PromoteHostResponse)
def promote_host_endpoint(
    event_id: UUID,
    request: PromoteHostRequest,
    actor: Optional[str] = Header(None, alias="X-Actor"),
    db: Session = Depends(get_db),
):
    """Make a couple an additional host for a course, optionally seating guests."""
    event = get_event_or_404(event_id, db)
    try:
        result, outcome = placement_service.promote_to_host(
            db, event, request.couple_id, request.course, guest_ids=request.guest_ids, actor=actor
        )
    except MatchingError as e:
        raise to_api_exception(e)
    return PromoteHostResponse(
        cascade=cascade_response(result),
        placed=len(outcome.placed),
        warnings=[w.to_dict() for w in outcome.warnings],
    )


@router.post("/couples/{couple_id}/dropout", response_model=DropoutResponse)
def dropout_endpoint(
    event_id: UUID,
    couple_id: UUID,
    actor: Optional[str] = Header(None, alias="X-Actor"),
    db: Session = Depends(get_db),
):
    """Cancel a couple. Guests it was hosting are reported as unplaced."""
    event = get_event_or_404(event_id, db)
    try:
        result = placement_service.drop_out(db, event, couple_id, actor=actor)
    except MatchingError as e:
        raise to_api_exception(e)
    return DropoutResponse(
        couple_id=couple_id,
        cancelled=True,
        cascade=cascade_response(result) if result else None,
    )


@router.put("/couples/{couple_id}/address", response_model=AddressChangeResponse)
def change_address_endpoint(
    event_id: UUID,
    couple_id: UUID,
    request: AddressChangeRequest,
    actor: Optional[str] = Header(None, alias="X-Actor"),
    db: Session = Depends(get_db),
):
    """
    Change a couple's address.

    Envelopes pointing at the couple are updated in place. A
    `reveal_freeze` warning means some guest has already seen the old one.
    """
    event = get_event_or_404(event_id, db)
    try:
        result, warnings = placement_service.change_address(
            db, event, couple_id, request.address, request.address_notes, actor=actor
        )
    except MatchingError as e:
        raise to_api_exception(e)
    return AddressChangeResponse(
        cascade=cascade_response(result) if result else None,
        warnings=[w.to_dict() for w in warnings],
    )


@router.post("/couples/{couple_id}/split", response_model=SplitResponse)
def split_endpoint(
    event_id: UUID,
    couple_id: UUID,
    actor: Optional[str] = Header(None, alias="X-Actor"),
    db: Session = Depends(get_db),
):
    """Split the partner off into a new single-person couple."""
    event = get_event_or_404(event_id, db)
    try:
        solo, result = placement_service.split_couple(db, event, couple_id, actor=actor)
    except MatchingError as e:
        raise to_api_exception(e)
    return SplitResponse(new_couple_id=solo.id, cascade=cascade_response(result) if result else None)


@router.post("/couples/{couple_id}/resign-host", response_model=CascadeResponse)
def resign_host_endpoint(
    event_id: UUID,
    couple_id: UUID,
    actor: Optional[str] = Header(None, alias="X-Actor"),
    db: Session = Depends(get_db),
):
    """Withdraw a couple from hosting while it keeps attending as a guest."""
    event = get_event_or_404(event_id, db)
    try:
        result = placement_service.resign_host(db, event, couple_id, actor=actor)
    except MatchingError as e:
        raise to_api_exception(e)
    return cascade_response(result)


@router.post("/transfer-host", response_model=CascadeResponse)
def transfer_host_endpoint(
    event_id: UUID,
    request: TransferHostRequest,
    actor: Optional[str] = Header(None, alias="X-Actor"),
    db: Session = Depends(get_db),
):
    """Move hosting duty for the listed courses from one couple to another."""
    event = get_event_or_404(event_id, db)
    try:
        result = placement_service.transfer_host(
            db, event, request.from_couple_id, request.to_couple_id, request.courses, actor=actor
        )
    except MatchingError as e:
        raise to_api_exception(e)
    return cascade_response(result)


@router.post("/couples/{couple_id}/profile", response_model=HostProfileResponse)
def update_profile_endpoint(
    event_id: UUID,
    couple_id: UUID,
    request: HostProfileUpdate,
    db: Session = Depends(get_db),
):
    """Store fun facts and birth years, then re-allocate the host's clues."""
    event = get_event_or_404(event_id, db)
    try:
        couple = placement_service.update_host_profile(db, event, couple_id, **request.model_dump(exclude_unset=True))
    except MatchingError as e:
        raise to_api_exception(e)
    check = validate_fun_facts(couple)
    return HostProfileResponse(
        couple_id=couple.id,
        fun_facts_total=check.total_facts,
        fun_facts_sufficient=check.is_valid,
        fun_facts_missing=check.missing_count,
    )
