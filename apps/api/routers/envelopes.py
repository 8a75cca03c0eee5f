"""
Envelopes API Router

Schedule-level operations on the active plan's envelopes.
"""
import logging
from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session
from typing import Optional
from uuid import UUID
from core.database import get_db
from core.exceptions import MatchingError, to_api_exception
from schemas import ActivateCourseRequest, ActivateCourseResponse, DelayEnvelopesRequest, EnvelopeBatchResponse
from routers.matching import get_event_or_404
from services import envelope_service
from services.matching.constants import MEAL_COURSES

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/events/{event_id}/envelopes", tags=["envelopes"])


@router.post("/delay", response_model=EnvelopeBatchResponse)
def delay_envelopes_endpoint(
    event_id: UUID,
    request: DelayEnvelopesRequest,
    db: Session = Depends(get_db),
):
    """
    Push every envelope no guest has activated yet back by N minutes.

    The delay accumulates on the event, so a later recalculation keeps it.
    """
    event = get_event_or_404(event_id, db)
    shifted = envelope_service.delay_envelopes(db, event, request.minutes)
    return EnvelopeBatchResponse(envelopes=shifted, time_offset_minutes=event.time_offset_minutes or 0)


@router.post("/recalculate", response_model=EnvelopeBatchResponse)
def recalculate_envelopes_endpoint(event_id: UUID, db: Session = Depends(get_db)):
    """Recompute reveal times from the current timing settings and distances."""
    event = get_event_or_404(event_id, db)
    count = envelope_service.recalculate_envelope_times(db, event)
    return EnvelopeBatchResponse(envelopes=count, time_offset_minutes=event.time_offset_minutes or 0)


@router.post("/activate", response_model=ActivateCourseResponse)
def activate_course_endpoint(
    event_id: UUID,
    request: ActivateCourseRequest,
    db: Session = Depends(get_db),
    actor: Optional[str] = Header(None, alias="X-Actor"),
):
    """
    Make a course's envelopes openable now, ahead of their schedule.

    An activated meal course stays frozen when matching is re-run.
    """
    event = get_event_or_404(event_id, db)
    try:
        activated = envelope_service.activate_course(db, event, request.course, actor=actor)
    except MatchingError as e:
        raise to_api_exception(e)
    return ActivateCourseResponse(
        course=request.course,
        activated=activated,
        frozen=request.course in MEAL_COURSES,
    )


@router.post("/refine-distances")
def refine_distances_endpoint(event_id: UUID, db: Session = Depends(get_db)):
    """
    Queue routed cycling times for the active plan.

    Returns the task id; envelopes keep their straight-line estimate until
    the worker finishes.
    """
    event = get_event_or_404(event_id, db)
    if not event.active_match_plan_id:
        raise HTTPException(status_code=400, detail="Event has no active match plan")

    try:
        from tasks.envelope_tasks import refine_envelope_distances_task

        task = refine_envelope_distances_task.delay(str(event.id))
    except Exception as e:
        logger.error(f"Error queuing distance refinement: {e}")
        raise HTTPException(status_code=500, detail=f"Error queuing distance refinement: {str(e)}")
    return {
        "status": "queued",
        "event_id": str(event.id),
        "task_id": task.id,
        "message": "Distance refinement queued",
    }
