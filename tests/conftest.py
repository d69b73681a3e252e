from datetime import datetime, timedelta, timezone

import pytest

from config import DispatchSettings
from database import MemoryRepository
from notifier import NotificationError, PRIORITY_NORMAL

FIXED_NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

# Pickup point used across tests; 0.01 degree of latitude is about 1.11 km
PICKUP_LAT = 9.0
PICKUP_LNG = 7.0

ALL_CAPABILITIES = {
    "has_uterotonics": True, "has_blood": True, "has_anticonvulsants": True,
    "has_antihypertensives": True, "has_adrenaline": True, "has_delivery_room": True,
    "has_incubator": True, "has_power": True, "has_water": True, "has_mva_kit": True,
    "has_antibiotics": True, "has_iv_fluids": True, "has_theater": True,
    "has_ultrasound": True, "has_doctor": True, "has_midwife_or_nurse": True,
    "has_referral_transport": True, "has_monitoring": True, "staff_24_7": True,
}


class RecordingNotifier:
    """Keeps every delivery; addresses listed in `failing` raise instead."""

    def __init__(self, failing=()):
        self.sent = []
        self.failing = set(failing)

    async def send(self, address, payload, priority=PRIORITY_NORMAL):
        if address in self.failing:
            raise NotificationError(f"unreachable: {address}")
        self.sent.append((address, payload, priority))

    def of_type(self, kind):
        return [s for s in self.sent if s[1]["type"] == kind]

    def addresses(self, kind):
        return {address for address, _, _ in self.of_type(kind)}


def add_driver(repo, name, vehicle="car", north_km=1.0, fresh=True, age_minutes=1,
               available=True, push_token="default", fallback_north_km=None):
    """Insert a driver positioned `north_km` north of the pickup point."""
    doc = {
        "first_name": name,
        "last_name": "Driver",
        "phone_number": "+2348000000000",
        "vehicle_type": vehicle,
        "is_available": available,
        "last_known_location": {"lat": PICKUP_LAT + north_km / 111.2, "lng": PICKUP_LNG},
        "last_location_timestamp": FIXED_NOW - timedelta(minutes=age_minutes),
        "is_location_fresh": fresh,
        "location_source": "mobile_app",
        "push_token": f"token-{name}" if push_token == "default" else push_token,
    }
    if fallback_north_km is not None:
        doc["fallback_location"] = {"lat": PICKUP_LAT + fallback_north_km / 111.2, "lng": PICKUP_LNG}
    return repo.insert("drivers", doc)


def add_hospital(repo, name, north_km=5.0, capabilities=None):
    return repo.insert("hospitals", {
        "name": name,
        "lat": PICKUP_LAT + north_km / 111.2,
        "lng": PICKUP_LNG,
        "facility_type": "General Hospital",
        "capabilities": ALL_CAPABILITIES if capabilities is None else capabilities,
    })


def add_agent(repo, push_token="token-agent"):
    return repo.insert("chips_agents", {
        "first_name": "Amina",
        "last_name": "Agent",
        "push_token": push_token,
    })


@pytest.fixture
def repo():
    return MemoryRepository()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def settings():
    return DispatchSettings(refresh_wait_seconds=0)


@pytest.fixture
def services(repo, notifier, settings, clock):
    from main import build_services
    return build_services(repo=repo, notifier=notifier, settings=settings, clock=clock)
