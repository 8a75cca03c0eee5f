"""
Periodic jobs for the Celery beat scheduler.
"""
from celery.schedules import crontab

beat_schedule = {
    # Reveal timestamps are minute-granular; persist current_state so
    # readers need not recompute it.
    "advance-envelope-states": {
        "task": "tasks.advance_envelope_states",
        "schedule": crontab(minute="*"),
        "options": {"expires": 55},
    },
}
