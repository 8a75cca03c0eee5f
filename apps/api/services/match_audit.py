from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

import logging
from sqlalchemy.orm import Session

from models import MatchAuditEvent

logger = logging.getLogger(__name__)


def record_match_audit_event(
    db: Session,
    *,
    event_id: Any,
    action: str,
    match_plan_id: Any = None,
    affected_couple_ids: Optional[Iterable[Any]] = None,
    warnings: Optional[Iterable[Any]] = None,
    payload: Optional[Dict[str, Any]] = None,
    actor: Optional[str] = None,
) -> None:
    """
    Best-effort append-only audit logging for matching runs and cascades.

    Safety:
    - Never throws (does not block the primary operation).
    - Warnings may be MatchingWarning objects or plain dicts.
    """
    try:
        ev = MatchAuditEvent(
            event_id=event_id,
            match_plan_id=match_plan_id,
            action=action,
            actor=actor,
            affected_couple_ids=[str(c) for c in (affected_couple_ids or [])],
            warnings=[w.to_dict() if hasattr(w, "to_dict") else w for w in (warnings or [])],
            payload=payload or {},
        )
        db.add(ev)
        db.flush()
    except Exception as e:
        # Never block matching operations on audit logging, but do emit a server log.
        logger.exception("Match audit logging failed: %s", str(e))
