"""
Pytest configuration and fixtures

Tests run against an in-memory SQLite database. The schema is created
from the models before each test and dropped afterwards, so nothing
leaks between tests.
"""
import os
import sys
from datetime import date, time
from types import SimpleNamespace

import pytest

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Must be set before core.config is imported anywhere
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("LOG_FORMAT", "text")

from core.database import Base, SessionLocal, engine  # noqa: E402
from models import Assignment, BlockedPair, Couple, Event, EventTiming  # noqa: E402


@pytest.fixture(autouse=True)
def _schema():
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture(autouse=True)
def _no_redis(monkeypatch):
    """Routing cache is optional; tests run without Redis."""
    import core.cache

    monkeypatch.setattr(core.cache, "get_redis_client", lambda: None)


@pytest.fixture
def db_session():
    """
    Session in the same configuration the API uses.

    Services only flush, so most tests never commit; the schema is
    dropped after the test either way.
    """
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def make_event(db_session):
    def _make(**overrides):
        fields = dict(
            name="Autumn Dinner",
            event_date=date(2026, 10, 24),
            starter_time=time(17, 30),
            main_time=time(19, 0),
            dessert_time=time(20, 30),
            afterparty_time=time(22, 0),
            timezone="Europe/Stockholm",
            status="open",
        )
        fields.update(overrides)
        event = Event(**fields)
        db_session.add(event)
        db_session.flush()
        return event

    return _make


@pytest.fixture
def event(make_event):
    return make_event()


@pytest.fixture
def make_couple(db_session):
    counter = {"n": 0}

    def _make(event, **overrides):
        counter["n"] += 1
        n = counter["n"]
        fields = dict(
            event_id=event.id,
            invited_name=f"Anna {n}",
            invited_email=f"anna{n}@example.com",
            partner_name=f"Bo {n}",
            partner_email=f"bo{n}@example.com",
            person_count=2,
            address=f"Storgatan {n}, 411 0{n % 10} Göteborg",
            latitude=57.70 + n * 0.002,
            longitude=11.97 + n * 0.002,
            invited_fun_facts=[f"fact {n}-{i}" for i in range(3)],
            partner_fun_facts=[f"partner fact {n}-{i}" for i in range(3)],
            invited_birth_year=1988,
            partner_birth_year=1990,
        )
        fields.update(overrides)
        couple = Couple(**fields)
        db_session.add(couple)
        db_session.flush()
        return couple

    return _make


@pytest.fixture
def make_couples(make_couple):
    def _make(event, count, **overrides):
        return [make_couple(event, **overrides) for _ in range(count)]

    return _make


@pytest.fixture
def block(db_session):
    def _block(event, a, b, reason="organizer request"):
        row = BlockedPair(event_id=event.id, couple_a_id=a.id, couple_b_id=b.id, reason=reason)
        db_session.add(row)
        db_session.flush()
        return row

    return _block


@pytest.fixture
def assign(db_session):
    """Write explicit host/guest rows, bypassing Step A."""

    def _assign(event, couple, host_course, max_guests=6, **flags):
        rows = []
        for course in ("starter", "main", "dessert"):
            is_host = course == host_course
            row = Assignment(
                event_id=event.id,
                couple_id=couple.id,
                course=course,
                is_host=is_host,
                max_guests=max_guests if is_host else 0,
                **(flags if is_host else {}),
            )
            db_session.add(row)
            rows.append(row)
        db_session.flush()
        return rows

    return _assign


@pytest.fixture
def event_timing(db_session, event):
    timing = EventTiming(event_id=event.id)
    db_session.add(timing)
    db_session.flush()
    return timing


@pytest.fixture
def matched_event(db_session, event, make_couples, assign):
    """
    Six couples with a committed plan.

    Couples 0 and 1 host the starter, 2 and 3 the main course, 4 the
    dessert (ten seats); couple 5 is a guest for every course.
    """
    from services.matching_service import run_matching

    couples = make_couples(event, 6)
    assign(event, couples[0], "starter")
    assign(event, couples[1], "starter")
    assign(event, couples[2], "main")
    assign(event, couples[3], "main")
    assign(event, couples[4], "dessert", max_guests=10)
    assign(event, couples[5], None)

    result = run_matching(db_session, event, seed=11)
    return SimpleNamespace(event=event, couples=couples, plan=result.match_plan, result=result)
