"""
Celery tasks for envelope timing.

Routing lookups are slow and can fail, so they run here instead of in the
request that created the envelopes. The straight-line estimate written at
match time stays in place until a task replaces it.
"""
import logging
from datetime import datetime, timezone
from typing import Dict
from uuid import UUID

from celery import Task

from core.database import get_db_sync
from core.exceptions import CascadeError, ConcurrentMutationError
from models import Couple, Envelope, Event, MatchPlan
from services import envelope_service
from services.distance_service import get_cycling_distances
from services.matching.cascade_repair import bump_mutation, lock_active_plan
from services.matching.constants import MatchPlanStatus
from tasks import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="tasks.refine_envelope_distances", bind=True)
def refine_envelope_distances_task(self: Task, event_id: str) -> Dict:
    """
    Replace estimated cycling times of the active plan with routed ones
    and recompute the reveal schedule.

    The plan is locked again before writing; envelopes that were
    cancelled or repointed to another host while the provider was
    answering keep their times and are counted as skipped.

    Args:
        event_id: UUID string of the event

    Returns:
        Dictionary with refinement results
    """
    db = get_db_sync()
    try:
        event = db.get(Event, UUID(event_id))
        if not event:
            return {"status": "error", "error": f"Event {event_id} not found"}
        if not event.active_match_plan_id:
            return {"status": "skipped", "reason": "no active match plan"}

        plan_id = event.active_match_plan_id
        envelopes = (
            db.query(Envelope)
            .filter(
                Envelope.match_plan_id == plan_id,
                Envelope.cancelled.is_(False),
                Envelope.host_couple_id.isnot(None),
                Envelope.host_couple_id != Envelope.couple_id,
            )
            .all()
        )
        couples = {c.id: c for c in db.query(Couple).filter(Couple.event_id == event.id)}

        # envelope id -> (host at fetch time, leg)
        legs = {}
        for env in envelopes:
            origin = couples.get(env.couple_id)
            destination = couples.get(env.host_couple_id)
            if origin and destination and origin.coordinates and destination.coordinates:
                legs[env.id] = (env.host_couple_id, (origin.coordinates, destination.coordinates))

        # Release the connection while the provider is called
        db.rollback()
        distances = get_cycling_distances([leg for _, leg in legs.values()])

        plan = lock_active_plan(db, event.id, plan_id)
        current = db.query(Envelope).filter(Envelope.id.in_(list(legs))).all() if legs else []
        minutes = {}
        skipped = 0
        for env in current:
            host_id, leg = legs[env.id]
            if env.cancelled or env.host_couple_id != host_id:
                skipped += 1
                continue
            if leg in distances:
                minutes[env.id] = distances[leg].duration_min
                env.cycling_distance_km = distances[leg].distance_km
        skipped += len(legs) - len(current)
        recalculated = envelope_service.recalculate_envelope_times(db, event, minutes)
        bump_mutation(db, plan)
        db.commit()

        logger.info(
            "Envelope distances refined",
            extra={"extra_fields": {
                "event_id": event_id,
                "task_id": str(self.request.id),
                "legs": len(legs),
                "skipped": skipped,
                "recalculated": recalculated,
            }},
        )
        return {
            "status": "success",
            "event_id": event_id,
            "legs": len(legs),
            "skipped": skipped,
            "recalculated": recalculated,
        }
    except (CascadeError, ConcurrentMutationError) as e:
        db.rollback()
        logger.warning(f"Distance refinement for event {event_id} lost to a plan change: {e.message}")
        return {"status": "conflict", "error": e.message}
    except Exception as e:
        db.rollback()
        logger.exception(f"Distance refinement failed for event {event_id}")
        return {"status": "error", "error": str(e)}
    finally:
        db.close()


@celery_app.task(name="tasks.advance_envelope_states")
def advance_envelope_states_task() -> Dict:
    """Store the reached reveal state on every live envelope of active plans."""
    db = get_db_sync()
    try:
        now = datetime.now(timezone.utc)
        plans = db.query(MatchPlan.id).filter(MatchPlan.status == MatchPlanStatus.ACTIVE.value).all()
        changed = 0
        for (plan_id,) in plans:
            changed += envelope_service.sync_envelope_states(db, plan_id, now)
        db.commit()
        if changed:
            logger.info(f"Advanced {changed} envelope state(s) across {len(plans)} plan(s)")
        return {"status": "success", "plans": len(plans), "changed": changed}
    except Exception as e:
        db.rollback()
        logger.exception("Envelope state sync failed")
        return {"status": "error", "error": str(e)}
    finally:
        db.close()
