"""
Two-tier driver candidate selection.

Tier 1 takes the nearest available drivers whose vehicle suits the
condition. For emergent conditions, drivers in that set with stale positions
are asked for a fresh fix and the selector waits a fixed window for updates
to land. The same drivers are then re-read and ranked for the final offer
list.
"""

import asyncio
import logging
from dataclasses import dataclass
from functools import cmp_to_key
from typing import Awaitable, Callable, Iterable, List, Set

from conditions import CareRequirementCatalog, VehicleRequirement
from database import DocumentRepository
from config import DispatchSettings
from errors import NoAvailableDriver
from geo import haversine_distance, speed_for, travel_minutes
from locations import DRIVERS, LocationFreshnessTracker, LocationService, ResolvedLocation
from schemas import Driver, GeoPoint

logger = logging.getLogger(__name__)


@dataclass
class DriverCandidate:
    driver: Driver
    location: ResolvedLocation
    distance_km: float
    speed_kmh: float
    is_preferable: bool

    @property
    def minutes_to_pickup(self) -> float:
        return travel_minutes(self.distance_km, self.speed_kmh)


@dataclass
class CandidateSelection:
    candidates: List[DriverCandidate]
    emergent: bool
    tier1_count: int
    refresh_requested: int = 0

    @property
    def top(self) -> DriverCandidate:
        return self.candidates[0]


def emergent_order(tie_window_minutes: float):
    """Fastest pickup first; within the tie window the preferred vehicle wins."""
    def compare(a: DriverCandidate, b: DriverCandidate) -> int:
        ta, tb = a.minutes_to_pickup, b.minutes_to_pickup
        if abs(ta - tb) < tie_window_minutes and a.is_preferable != b.is_preferable:
            return -1 if a.is_preferable else 1
        return (ta > tb) - (ta < tb)
    return cmp_to_key(compare)


def routine_order(c: DriverCandidate):
    return (not c.is_preferable, c.distance_km)


class DriverCandidateSelector:
    def __init__(
        self,
        repo: DocumentRepository,
        tracker: LocationFreshnessTracker,
        locations: LocationService,
        settings: DispatchSettings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.repo = repo
        self.tracker = tracker
        self.locations = locations
        self.settings = settings
        self.sleep = sleep
        self._asks: Set[asyncio.Task] = set()

    def evaluate(self, docs: Iterable[dict], pickup: GeoPoint,
                 vehicles: VehicleRequirement) -> List[DriverCandidate]:
        """Turn driver documents into candidates, dropping anyone who can't be dispatched."""
        out = []
        for doc in docs:
            try:
                driver = Driver.model_validate(doc)
            except ValueError as e:
                logger.warning(f"Skipping malformed driver {doc.get('id')}: {e}")
                continue
            if not driver.is_available or driver.vehicle_type not in vehicles.allowed:
                continue
            location = self.tracker.resolve(driver)
            if location.point is None:
                continue
            distance = haversine_distance(location.point.lat, location.point.lng, pickup.lat, pickup.lng)
            out.append(DriverCandidate(
                driver=driver,
                location=location,
                distance_km=distance,
                speed_kmh=speed_for(driver.vehicle_type),
                is_preferable=driver.vehicle_type == vehicles.preferred,
            ))
        return out

    def tier1(self, pickup: GeoPoint, vehicles: VehicleRequirement) -> List[DriverCandidate]:
        docs = self.repo.find(DRIVERS, {"is_available": True})
        logger.info(f"Found {len(docs)} available drivers")
        nearest = sorted(self.evaluate(docs, pickup, vehicles), key=lambda c: c.distance_km)
        return nearest[:self.settings.tier1_limit]

    async def _ask(self, candidate: DriverCandidate) -> bool:
        try:
            await self.locations.ask_for_location(candidate.driver)
            return True
        except Exception as e:
            logger.warning(f"Error requesting location update for driver {candidate.driver.id}: {e}")
            return False

    async def refresh(self, candidates: List[DriverCandidate]) -> int:
        """Ask stale drivers for a fix, then wait out the refresh window.

        The window is a ceiling. Asks still in flight when it closes keep
        running in the background and are not counted.
        """
        stale = [c for c in candidates if c.driver.push_token and not c.location.is_fresh]
        if stale:
            logger.info(f"Emergent case: requesting fresh locations from {len(stale)} drivers")
        asks = [asyncio.create_task(self._ask(c)) for c in stale]
        for task in asks:
            self._asks.add(task)
            task.add_done_callback(self._asks.discard)

        await self.sleep(self.settings.refresh_wait_seconds)

        finished = [t for t in asks if t.done() and not t.cancelled()]
        if len(finished) < len(asks):
            logger.warning(f"{len(asks) - len(finished)} location requests still in flight "
                           f"after {self.settings.refresh_wait_seconds}s")
        return sum(1 for t in finished if t.result())

    @property
    def outstanding_asks(self) -> int:
        return len(self._asks)

    async def drain(self) -> None:
        """Wait for location requests that outlived their refresh window."""
        if self._asks:
            await asyncio.gather(*list(self._asks), return_exceptions=True)

    def rank(self, candidates: List[DriverCandidate], emergent: bool) -> List[DriverCandidate]:
        if emergent:
            return sorted(candidates, key=emergent_order(self.settings.tie_window_minutes))
        return sorted(candidates, key=routine_order)

    async def select(self, pickup: GeoPoint, condition: str,
                     catalog: CareRequirementCatalog) -> CandidateSelection:
        vehicles = catalog.vehicles_for(condition)
        emergent = catalog.is_emergent(condition)

        initial = self.tier1(pickup, vehicles)
        logger.info(f"Selected {len(initial)} initial driver candidates")
        if not initial:
            raise NoAvailableDriver("No available drivers found")

        requested = 0
        if emergent:
            requested = await self.refresh(initial)

        refreshed = self.evaluate(
            self.repo.get_many(DRIVERS, [c.driver.id for c in initial]), pickup, vehicles,
        )
        final = self.rank(refreshed, emergent)[:self.settings.final_limit]
        logger.info(f"Final selection: {len(final)} drivers")
        if not final:
            raise NoAvailableDriver("No suitable ETS driver available")

        return CandidateSelection(final, emergent, len(initial), requested)
