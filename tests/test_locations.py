from datetime import datetime, timedelta

import pytest

from errors import Internal, NotFound, ValidationError
from locations import LOCATION_HISTORY, LocationFreshnessTracker, LocationService
from notifier import LOCATION_UPDATE, PRIORITY_HIGH
from schemas import Driver, GeoPoint

from conftest import FIXED_NOW, PICKUP_LAT, PICKUP_LNG, RecordingNotifier, add_driver


@pytest.fixture
def locations(repo, notifier, clock):
    return LocationService(repo, notifier, clock)


def driver(**kwargs):
    fields = dict(id="d1", vehicle_type="car", is_available=True)
    fields.update(kwargs)
    return Driver(**fields)


class TestFreshness:
    def setup_method(self):
        self.tracker = LocationFreshnessTracker(window_minutes=15, clock=lambda: FIXED_NOW)
        self.here = GeoPoint(lat=PICKUP_LAT, lng=PICKUP_LNG)
        self.home = GeoPoint(lat=PICKUP_LAT + 0.5, lng=PICKUP_LNG)

    def test_recent_fix_is_fresh(self):
        d = driver(last_known_location=self.here, is_location_fresh=True,
                   last_location_timestamp=FIXED_NOW - timedelta(minutes=5))
        resolved = self.tracker.resolve(d)
        assert resolved.is_fresh
        assert resolved.point == self.here

    def test_old_fix_falls_back(self):
        d = driver(last_known_location=self.here, is_location_fresh=True,
                   last_location_timestamp=FIXED_NOW - timedelta(minutes=20),
                   fallback_location=self.home)
        resolved = self.tracker.resolve(d)
        assert not resolved.is_fresh
        assert resolved.point == self.home
        assert resolved.source == "fallback"

    def test_cleared_flag_is_stale(self):
        d = driver(last_known_location=self.here, is_location_fresh=False,
                   last_location_timestamp=FIXED_NOW)
        assert not self.tracker.is_fresh(d)

    def test_naive_timestamp_is_treated_as_utc(self):
        naive = datetime(2025, 3, 1, 11, 58)
        d = driver(last_known_location=self.here, is_location_fresh=True, last_location_timestamp=naive)
        assert self.tracker.is_fresh(d)

    def test_nothing_known(self):
        assert self.tracker.resolve(driver()).point is None


def test_first_update_is_significant(repo, locations):
    driver_id = repo.insert("drivers", {"first_name": "New", "vehicle_type": "car", "is_available": True})
    result = locations.update_location(driver_id, PICKUP_LAT, PICKUP_LNG)
    assert result["isSignificantUpdate"]
    assert result["freshUntil"] == FIXED_NOW + timedelta(minutes=10)

    doc = repo.get("drivers", driver_id)
    assert doc["is_location_fresh"]
    assert doc["pending_location_update"] is False
    assert doc["last_known_location"] == {"lat": PICKUP_LAT, "lng": PICKUP_LNG}
    history = repo.find(LOCATION_HISTORY, {"driver_id": driver_id})
    assert len(history) == 1
    assert history[0]["is_available"] is True


def test_small_move_is_not_recorded(repo, locations):
    driver_id = add_driver(repo, "Ade", north_km=0)
    start = repo.get("drivers", driver_id)["last_known_location"]
    result = locations.update_location(driver_id, start["lat"] + 0.0001, start["lng"])
    assert not result["isSignificantUpdate"]
    assert repo.find(LOCATION_HISTORY) == []


def test_immediate_update_is_always_recorded(repo, locations):
    driver_id = add_driver(repo, "Ade", north_km=0)
    start = repo.get("drivers", driver_id)["last_known_location"]
    locations.update_location(driver_id, start["lat"], start["lng"], immediate=True)
    assert len(repo.find(LOCATION_HISTORY)) == 1


def test_unavailable_driver_needs_bigger_move(repo, locations):
    driver_id = add_driver(repo, "Ade", north_km=0, available=False)
    start = repo.get("drivers", driver_id)["last_known_location"]
    # about 0.1 km
    result = locations.update_location(driver_id, start["lat"] + 0.0009, start["lng"])
    assert not result["isSignificantUpdate"]
    assert result["freshUntil"] == FIXED_NOW + timedelta(minutes=30)


def test_client_timestamp_is_kept(repo, locations):
    driver_id = add_driver(repo, "Ade")
    stamp = FIXED_NOW - timedelta(minutes=2)
    result = locations.update_location(driver_id, PICKUP_LAT, PICKUP_LNG, timestamp=stamp)
    assert repo.get("drivers", driver_id)["last_location_timestamp"] == stamp
    assert result["freshUntil"] == stamp + timedelta(minutes=10)


def test_update_rejects_bad_input(repo, locations):
    driver_id = add_driver(repo, "Ade")
    with pytest.raises(ValidationError):
        locations.update_location(driver_id, 95.0, PICKUP_LNG)
    with pytest.raises(NotFound):
        locations.update_location("ffffffffffffffffffffffff", PICKUP_LAT, PICKUP_LNG)


@pytest.mark.asyncio
async def test_request_location_notifies_driver(repo, notifier, locations):
    driver_id = add_driver(repo, "Ade")
    result = await locations.request_location(driver_id)
    assert result["message"] == "Location update requested"

    [(address, payload, priority)] = notifier.of_type(LOCATION_UPDATE)
    assert address == "token-Ade"
    assert priority == PRIORITY_HIGH
    assert payload["data"]["immediate"] == "true"
    assert repo.get("drivers", driver_id)["pending_location_update"] is True


@pytest.mark.asyncio
async def test_request_location_unknown_or_unreachable_driver(repo, locations):
    with pytest.raises(NotFound):
        await locations.request_location("ffffffffffffffffffffffff")
    silent = add_driver(repo, "Silent", push_token=None)
    with pytest.raises(NotFound):
        await locations.request_location(silent)


@pytest.mark.asyncio
async def test_request_location_delivery_failure_is_reported(repo, clock):
    driver_id = add_driver(repo, "Ade")
    service = LocationService(repo, RecordingNotifier(failing={"token-Ade"}), clock)
    with pytest.raises(Internal):
        await service.request_location(driver_id)
