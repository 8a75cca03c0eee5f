"""
Tests for the envelope timing calculator

Reveal stages must always be ordered, distance pulls street/number
earlier, and wall-clock course times localise in the event timezone.
"""
import pytest
from datetime import date, datetime, time, timedelta, timezone
from types import SimpleNamespace
from zoneinfo import ZoneInfo

from services.matching.constants import EnvelopeState
from services.envelope.timing import (
    adjust_for_distance,
    calculate_afterparty_times,
    calculate_envelope_times,
    clamp_offsets,
    envelope_state_at,
    next_reveal,
    parse_course_schedules,
    resolve_timing,
)

TZ = ZoneInfo("Europe/Stockholm")
MAIN_START = datetime(2026, 10, 24, 19, 0, tzinfo=TZ)


def _ordered(times):
    stages = [times.teasing_at, times.clue_1_at, times.clue_2_at, times.street_at, times.number_at, times.opened_at]
    stages = [s for s in stages if s is not None]
    return all(a <= b for a, b in zip(stages, stages[1:]))


class TestDefaultSchedule:
    """Default offsets: 6h, 2h, 30, 15 and 5 minutes before the start"""

    def test_default_offsets(self):
        t = calculate_envelope_times(MAIN_START)

        assert t.teasing_at == MAIN_START - timedelta(hours=6)
        assert t.clue_1_at == MAIN_START - timedelta(hours=2)
        assert t.clue_2_at == MAIN_START - timedelta(minutes=30)
        assert t.street_at == MAIN_START - timedelta(minutes=15)
        assert t.number_at == MAIN_START - timedelta(minutes=5)
        assert t.opened_at == MAIN_START

    def test_event_timing_row_overrides_defaults(self):
        timing = SimpleNamespace(
            teasing_minutes_before=240,
            clue_1_minutes_before=None,
            clue_2_minutes_before=None,
            street_minutes_before=20,
            number_minutes_before=None,
            during_meal_clue_interval_minutes=None,
            distance_adjustment_enabled=None,
        )
        t = calculate_envelope_times(MAIN_START, timing=timing)

        assert t.teasing_at == MAIN_START - timedelta(hours=4)
        assert t.street_at == MAIN_START - timedelta(minutes=20)
        assert t.clue_1_at == MAIN_START - timedelta(hours=2)

    def test_course_override_wins_over_event_timing(self):
        merged = resolve_timing({"street_minutes_before": 20}, {"street_minutes_before": 25, "bogus": 1})

        assert merged["street_minutes_before"] == 25
        assert "bogus" not in merged


class TestOrdering:
    """teasing <= clue_1 <= clue_2 <= street <= number <= opened, always"""

    @pytest.mark.parametrize("overrides", [
        {},
        {"teasing_minutes_before": 5, "number_minutes_before": 60},
        {"clue_1_minutes_before": 10, "clue_2_minutes_before": 90},
        {"street_minutes_before": -10, "number_minutes_before": -5},
        {"teasing_minutes_before": 0, "clue_1_minutes_before": 0, "clue_2_minutes_before": 0},
    ])
    @pytest.mark.parametrize("cycling_minutes", [None, 0, 4, 12, 45])
    def test_stages_are_monotone(self, overrides, cycling_minutes):
        t = calculate_envelope_times(MAIN_START, course_offsets=overrides, cycling_minutes=cycling_minutes)

        assert _ordered(t)
        assert t.number_at <= MAIN_START

    def test_inversions_collapse_onto_later_stage(self):
        clamped = clamp_offsets({
            "teasing_minutes_before": 5,
            "clue_1_minutes_before": 120,
            "clue_2_minutes_before": 30,
            "street_minutes_before": 15,
            "number_minutes_before": 60,
        })

        assert clamped["number_minutes_before"] == 60
        assert clamped["street_minutes_before"] == 60
        assert clamped["clue_2_minutes_before"] == 60
        assert clamped["teasing_minutes_before"] == 120


class TestDistanceAdjustment:
    """Longer rides reveal street and number earlier"""

    def test_short_ride_keeps_offsets(self):
        assert adjust_for_distance(15, 5, 6) == (15, 5)

    def test_medium_ride(self):
        assert adjust_for_distance(15, 5, 10) == (15, 7)

    def test_far_ride(self):
        assert adjust_for_distance(15, 5, 20) == (30, 20)

    def test_far_ride_applied_to_schedule(self):
        t = calculate_envelope_times(MAIN_START, cycling_minutes=20)

        assert t.street_at == MAIN_START - timedelta(minutes=30)
        assert t.number_at == MAIN_START - timedelta(minutes=20)

    def test_distance_estimates_minutes_when_duration_unknown(self):
        # 5 km at 15 km/h = 20 minutes
        t = calculate_envelope_times(MAIN_START, cycling_distance_km=5.0)

        assert t.number_at == MAIN_START - timedelta(minutes=20)

    def test_adjustment_can_be_disabled(self):
        t = calculate_envelope_times(
            MAIN_START, timing={"distance_adjustment_enabled": False}, cycling_minutes=40
        )

        assert t.street_at == MAIN_START - timedelta(minutes=15)
        assert t.number_at == MAIN_START - timedelta(minutes=5)


class TestAfterparty:
    """Afterparty envelopes skip the clue stages"""

    def test_afterparty_offsets(self):
        start = datetime(2026, 10, 24, 22, 0, tzinfo=TZ)
        t = calculate_afterparty_times(start)

        assert t.clue_1_at is None and t.clue_2_at is None
        assert t.teasing_at == start - timedelta(minutes=45)
        assert t.street_at == start - timedelta(minutes=15)
        assert t.number_at == start - timedelta(minutes=5)
        assert _ordered(t)


class TestCourseSchedules:
    """Wall-clock times become aware datetimes in the event timezone"""

    def test_localised_in_event_timezone(self):
        schedules = parse_course_schedules(
            date(2026, 10, 24), {"starter": "17:30", "main": time(19, 0), "dessert": None}, tz_name="Europe/Stockholm"
        )

        assert schedules["starter"].utcoffset() == timedelta(hours=2)
        assert schedules["starter"].astimezone(timezone.utc).hour == 15
        # Missing dessert time falls back to the default
        assert (schedules["dessert"].hour, schedules["dessert"].minute) == (20, 30)
        assert (schedules["afterparty"].hour, schedules["afterparty"].minute) == (22, 0)

    def test_delay_is_added(self):
        schedules = parse_course_schedules(
            date(2026, 10, 24), {"main": "19:00"}, time_offset_minutes=30, tz_name="Europe/Stockholm"
        )

        assert (schedules["main"].hour, schedules["main"].minute) == (19, 30)

    def test_delay_past_midnight_rolls_into_next_day(self):
        schedules = parse_course_schedules(
            date(2026, 10, 24), {"dessert": "23:30"}, time_offset_minutes=60, tz_name="Europe/Stockholm"
        )

        assert schedules["dessert"].date() == date(2026, 10, 25)
        assert (schedules["dessert"].hour, schedules["dessert"].minute) == (0, 30)


class TestEnvelopeState:
    """State is the most advanced stage whose timestamp has passed"""

    def _envelope(self):
        t = calculate_envelope_times(MAIN_START)
        return SimpleNamespace(**t.as_dict())

    @pytest.mark.parametrize("minutes_before,expected", [
        (400, EnvelopeState.LOCKED),
        (300, EnvelopeState.TEASING),
        (60, EnvelopeState.CLUE_1),
        (20, EnvelopeState.CLUE_2),
        (10, EnvelopeState.STREET),
        (1, EnvelopeState.NUMBER),
        (0, EnvelopeState.OPEN),
        (-30, EnvelopeState.OPEN),
    ])
    def test_state_at(self, minutes_before, expected):
        now = MAIN_START - timedelta(minutes=minutes_before)
        assert envelope_state_at(self._envelope(), now) == expected

    def test_afterparty_goes_from_teasing_to_street(self):
        start = datetime(2026, 10, 24, 22, 0, tzinfo=TZ)
        env = SimpleNamespace(**calculate_afterparty_times(start).as_dict())

        assert envelope_state_at(env, start - timedelta(minutes=30)) == EnvelopeState.TEASING
        assert envelope_state_at(env, start - timedelta(minutes=10)) == EnvelopeState.STREET

    def test_naive_timestamps_are_read_as_utc(self):
        opened = datetime(2026, 10, 24, 17, 0)
        env = SimpleNamespace(
            teasing_at=None, clue_1_at=None, clue_2_at=None, street_at=None, number_at=None, opened_at=opened
        )

        assert envelope_state_at(env, datetime(2026, 10, 24, 17, 1, tzinfo=timezone.utc)) == EnvelopeState.OPEN

    def test_next_reveal(self):
        env = self._envelope()
        upcoming = next_reveal(env, MAIN_START - timedelta(minutes=20))

        assert upcoming["state"] == "STREET"
        assert upcoming["at"] == MAIN_START - timedelta(minutes=15)
        assert next_reveal(env, MAIN_START + timedelta(minutes=1)) is None
