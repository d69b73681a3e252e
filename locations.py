"""
Driver location freshness and updates.

A reported position is trusted only while the driver's freshness flag is
set and the fix is recent. Otherwise the driver is placed at the midpoint
of their catchment areas (fallback_location), computed at registration.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from database import DocumentRepository
from errors import Internal, NotFound, ValidationError
from geo import haversine_distance
from notifier import LOCATION_UPDATE, PRIORITY_HIGH, Notifier, build_payload
from schemas import Driver, GeoPoint

logger = logging.getLogger(__name__)

DRIVERS = "drivers"
LOCATION_HISTORY = "location_history"

# Movement needed before an update is worth keeping in history, in km
SIGNIFICANT_MOVE_AVAILABLE_KM = 0.05
SIGNIFICANT_MOVE_UNAVAILABLE_KM = 0.2

# How long a reported fix is advertised as fresh to the client
FRESH_FOR_AVAILABLE = timedelta(minutes=10)
FRESH_FOR_UNAVAILABLE = timedelta(minutes=30)

FALLBACK_SOURCE = "fallback"

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(ts: datetime) -> datetime:
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class ResolvedLocation:
    point: Optional[GeoPoint]
    is_fresh: bool
    source: str


class LocationFreshnessTracker:
    def __init__(self, window_minutes: float = 15, clock: Clock = utcnow):
        self.window = timedelta(minutes=window_minutes)
        self.clock = clock

    def is_fresh(self, driver: Driver) -> bool:
        if not driver.is_location_fresh or driver.last_known_location is None:
            return False
        if driver.last_location_timestamp is None:
            return False
        return _aware(driver.last_location_timestamp) > self.clock() - self.window

    def resolve(self, driver: Driver) -> ResolvedLocation:
        """Position to use for matching; point is None when nothing usable is known."""
        if self.is_fresh(driver):
            return ResolvedLocation(driver.last_known_location, True, driver.location_source or "mobile_app")
        return ResolvedLocation(driver.fallback_location, False, FALLBACK_SOURCE)


class LocationService:
    """Driver-facing location operations: report a position, or be asked for one."""

    def __init__(self, repo: DocumentRepository, notifier: Notifier, clock: Clock = utcnow):
        self.repo = repo
        self.notifier = notifier
        self.clock = clock

    def _driver(self, driver_id: str) -> Driver:
        doc = self.repo.get(DRIVERS, driver_id)
        if not doc:
            raise NotFound("Driver not found")
        return Driver.model_validate(doc)

    def update_location(
        self,
        driver_id: str,
        lat: float,
        lng: float,
        source: str = "mobile_app",
        accuracy: str = "medium",
        immediate: bool = False,
        timestamp: Optional[datetime] = None,
    ) -> Dict:
        if not driver_id or lat is None or lng is None:
            raise ValidationError("Missing driverId, lat, or lng")
        if not (-90 <= lat <= 90 and -180 <= lng <= 180):
            raise ValidationError("Coordinates out of range")

        driver = self._driver(driver_id)
        now = self.clock()
        fix_time = _aware(timestamp) if timestamp else now

        is_significant = True
        prev = driver.last_known_location
        if prev is not None:
            threshold = SIGNIFICANT_MOVE_AVAILABLE_KM if driver.is_available else SIGNIFICANT_MOVE_UNAVAILABLE_KM
            is_significant = haversine_distance(prev.lat, prev.lng, lat, lng) >= threshold

        fresh_for = FRESH_FOR_AVAILABLE if driver.is_available else FRESH_FOR_UNAVAILABLE
        fresh_until = fix_time + fresh_for

        self.repo.update(DRIVERS, driver_id, {
            "last_known_location": {"lat": lat, "lng": lng},
            "last_location_timestamp": fix_time,
            "location_source": source,
            "location_accuracy": accuracy,
            "is_location_fresh": True,
            "location_expires_at": fresh_until,
            "pending_location_update": False,
        })

        if is_significant or immediate:
            self.repo.insert(LOCATION_HISTORY, {
                "driver_id": driver_id,
                "lat": lat,
                "lng": lng,
                "timestamp": fix_time,
                "source": source,
                "accuracy": accuracy,
                "is_available": driver.is_available,
            })

        logger.info(f"Driver {driver_id} location updated (significant={is_significant}, immediate={immediate})")
        return {"isSignificantUpdate": is_significant, "freshUntil": fresh_until}

    def mark_pending(self, driver_id: str) -> None:
        self.repo.update(DRIVERS, driver_id, {
            "pending_location_update": True,
            "location_update_requested_at": self.clock(),
        })

    async def ask_for_location(self, driver: Driver) -> None:
        """Flag the driver as awaiting a fix and push a wake-up request. Raises on delivery failure."""
        self.mark_pending(driver.id)
        payload = build_payload(LOCATION_UPDATE, {"immediate": "true"}, emergency=True)
        await self.notifier.send(driver.push_token, payload, PRIORITY_HIGH)

    async def request_location(self, driver_id: str) -> Dict:
        if not driver_id:
            raise ValidationError("Missing driverId")
        driver = self._driver(driver_id)
        if not driver.push_token:
            raise NotFound("Driver has no registered push token")
        try:
            await self.ask_for_location(driver)
        except Exception as e:
            logger.error(f"Error requesting location from driver {driver_id}: {e}")
            raise Internal("Could not deliver location request") from e
        return {"message": "Location update requested", "requestTime": self.clock().isoformat()}
