"""
In-process hooks fired after matching state changes.

Services emit after their flush so subscribers (notification scheduling,
organizer dashboards) see the new plan. A failing subscriber is logged
and never rolls back the change that triggered it.
"""
import logging
from collections import defaultdict
from typing import Callable, DefaultDict, List

logger = logging.getLogger(__name__)

EVENT_MATCH_COMMITTED = "match.committed"
EVENT_CASCADE_APPLIED = "cascade.applied"
EVENT_ENVELOPES_RESCHEDULED = "envelopes.rescheduled"
EVENT_GUESTS_PLACED = "guests.placed"

_subscribers: DefaultDict[str, List[Callable]] = defaultdict(list)


def subscribe(event_name: str, handler: Callable) -> None:
    _subscribers[event_name].append(handler)


def unsubscribe(event_name: str, handler: Callable) -> None:
    if handler in _subscribers.get(event_name, ()):
        _subscribers[event_name].remove(handler)


def emit(event_name: str, **payload) -> None:
    """
    Call every subscriber of ``event_name`` with ``payload``.

    Example:
        emit(EVENT_CASCADE_APPLIED, event_id=str(event.id), mutation="host_dropout")
    """
    for handler in list(_subscribers.get(event_name, ())):
        try:
            handler(**payload)
        except Exception:
            logger.exception(
                f"Subscriber {getattr(handler, '__name__', handler)!r} failed for {event_name}",
                extra={"extra_fields": {"event_name": event_name}},
            )
