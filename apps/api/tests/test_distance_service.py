"""
Tests for cycling distance lookups and their straight-line fallback.
"""
from unittest.mock import MagicMock

import pytest
import requests

from core.config import settings
from services import distance_service

HOME = (57.7089, 11.9746)
HOST = (57.6970, 11.9860)


def _response(status_code=200, payload=None):
    r = MagicMock()
    r.status_code = status_code
    r.json.return_value = payload if payload is not None else {}
    return r


@pytest.fixture
def routing_key(monkeypatch):
    monkeypatch.setattr(settings, "OPENROUTESERVICE_API_KEY", "test-key")


class TestStraightLine:
    def test_no_key_skips_the_provider(self, monkeypatch):
        monkeypatch.setattr(settings, "OPENROUTESERVICE_API_KEY", None)
        post = MagicMock()
        monkeypatch.setattr(requests, "post", post)

        d = distance_service.get_cycling_distance(HOME, HOST)

        post.assert_not_called()
        assert d.source == "haversine"
        assert 1.0 < d.distance_km < 2.0
        assert d.duration_min == pytest.approx(d.distance_km / settings.CYCLING_SPEED_KMH * 60, abs=0.5)

    def test_same_point(self):
        d = distance_service.straight_line_estimate(HOME, HOME)
        assert d.distance_km == 0.0
        assert d.duration_min == 0.0


class TestRoutedLookup:
    def test_uses_route_summary(self, monkeypatch, routing_key):
        post = MagicMock(return_value=_response(payload={
            "routes": [{"summary": {"distance": 2345.0, "duration": 540.0}}],
        }))
        monkeypatch.setattr(requests, "post", post)

        d = distance_service.get_cycling_distance(HOME, HOST)

        assert d.source == "cycling"
        assert d.distance_km == 2.3
        assert d.duration_min == 9.0
        # Provider expects [lon, lat]
        sent = post.call_args.kwargs["json"]["coordinates"]
        assert sent == [[HOME[1], HOME[0]], [HOST[1], HOST[0]]]
        assert post.call_args.kwargs["headers"]["Authorization"] == "test-key"

    @pytest.mark.parametrize("response", [
        _response(status_code=500),
        _response(payload={"routes": []}),
        _response(payload={"routes": [{"summary": {"distance": "n/a"}}]}),
    ])
    def test_bad_responses_fall_back(self, monkeypatch, routing_key, response):
        monkeypatch.setattr(requests, "post", MagicMock(return_value=response))

        d = distance_service.get_cycling_distance(HOME, HOST)

        assert d.source == "haversine"

    def test_network_error_falls_back(self, monkeypatch, routing_key):
        monkeypatch.setattr(requests, "post", MagicMock(side_effect=requests.ConnectionError("down")))

        d = distance_service.get_cycling_distance(HOME, HOST)

        assert d.source == "haversine"

    def test_cached_route_skips_the_provider(self, monkeypatch, routing_key):
        post = MagicMock()
        monkeypatch.setattr(requests, "post", post)
        monkeypatch.setattr(
            distance_service, "get_cache",
            lambda key: {"distance_km": 3.1, "duration_min": 12.0, "source": "cycling"},
        )

        d = distance_service.get_cycling_distance(HOME, HOST)

        post.assert_not_called()
        assert d.distance_km == 3.1


class TestBatch:
    def test_duplicate_legs_resolved_once(self, monkeypatch, routing_key):
        post = MagicMock(return_value=_response(payload={
            "routes": [{"summary": {"distance": 1000.0, "duration": 240.0}}],
        }))
        monkeypatch.setattr(requests, "post", post)
        legs = [(HOME, HOST), (HOME, HOST), (HOST, HOME)]

        results = distance_service.get_cycling_distances(legs, max_workers=2)

        assert set(results) == {(HOME, HOST), (HOST, HOME)}
        assert post.call_count == 2
        assert all(d.duration_min == 4.0 for d in results.values())

    def test_empty(self):
        assert distance_service.get_cycling_distances([]) == {}
