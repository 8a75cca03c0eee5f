"""
Matching API Router

Runs matching for an event, exposes the active plan and accepts raw
cascade mutations against it.
"""
from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session
from uuid import UUID
from typing import Optional
from core.database import get_db
from core.exceptions import MatchingError, NotFoundError, to_api_exception
from models import Event
from schemas import (
    CascadeRequest,
    CascadeResponse,
    MatchPlanResponse,
    RunMatchingRequest,
    RunMatchingResponse,
)
from services.matching.cascade_repair import CascadeResult, apply_cascade
from services.matching_service import get_active_plan, run_matching

router = APIRouter(prefix="/v1/events/{event_id}", tags=["matching"])


def get_event_or_404(event_id: UUID, db: Session) -> Event:
    event = db.get(Event, event_id)
    if not event:
        raise NotFoundError("Event", str(event_id))
    return event


def cascade_response(result: CascadeResult) -> CascadeResponse:
    return CascadeResponse(
        **result.counts(),
        mutation=result.mutation,
        unplaced_guests=[str(c) for c in result.unplaced_guests],
        unplaced_by_course={k: [str(c) for c in v] for k, v in result.unplaced_by_course.items()},
        warnings=[w.to_dict() for w in result.warnings],
    )


@router.post("/matching", response_model=RunMatchingResponse)
def run_matching_endpoint(
    event_id: UUID,
    request: Optional[RunMatchingRequest] = None,
    actor: Optional[str] = Header(None, alias="X-Actor"),
    db: Session = Depends(get_db),
):
    """
    Build and commit a new match plan version.

    Succeeds with warnings when constraints had to be relaxed; inspect
    `warnings` before notifying guests.
    """
    event = get_event_or_404(event_id, db)
    request = request or RunMatchingRequest()
    try:
        result = run_matching(db, event, frozen_courses=request.frozen_courses, seed=request.seed, actor=actor)
    except MatchingError as e:
        raise to_api_exception(e)

    return RunMatchingResponse(
        success=result.success,
        match_plan=MatchPlanResponse.model_validate(result.match_plan),
        warnings=[w.to_dict() for w in result.warnings],
        stats=result.stats,
        frozen_courses=result.frozen_courses,
    )


@router.get("/matching/active", response_model=MatchPlanResponse)
def get_active_plan_endpoint(event_id: UUID, db: Session = Depends(get_db)):
    """Get the event's active match plan."""
    event = get_event_or_404(event_id, db)
    plan = get_active_plan(db, event)
    if not plan:
        raise NotFoundError("Active match plan", str(event_id))
    return plan


@router.post("/cascade", response_model=CascadeResponse)
def apply_cascade_endpoint(
    event_id: UUID,
    request: CascadeRequest,
    actor: Optional[str] = Header(None, alias="X-Actor"),
    db: Session = Depends(get_db),
):
    """
    Apply one cascade mutation to the active plan.

    Nothing is written when the mutation is rejected.
    """
    get_event_or_404(event_id, db)
    try:
        result = apply_cascade(
            db, event_id, request.match_plan_id, request.couple_id, request.details.to_details(), actor=actor
        )
    except MatchingError as e:
        raise to_api_exception(e)
    return cascade_response(result)
