"""
Ride dispatch and lifecycle.

RideDispatcher turns a field report into a pending ride: classify, pick
drivers, pick a hospital, persist, then offer the ride to every candidate in
the background.

RideStateMachine resolves candidate responses and later status changes.
Every status change is a compare-and-set on the ride's current status, so
of two simultaneous accepts exactly one wins and the other gets a Conflict.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Set

from conditions import CareRequirementCatalog, ConditionClassifier
from database import DESCENDING, DocumentRepository
from drivers import CandidateSelection, DriverCandidate, DriverCandidateSelector
from errors import Conflict, NoSuitableHospital, NotFound, Unauthorized, ValidationError
from hospitals import HospitalMatcher
from locations import DRIVERS, Clock, utcnow
from notifier import (
    PRIORITY_HIGH, PRIORITY_NORMAL, RIDE_ACCEPTED, RIDE_REQUEST,
    Delivery, Notifier, build_payload, fan_out,
)
from schemas import (
    CandidateDriver, ChipsAgent, Driver, DriverSnapshot, EmergencyLevel, GeoPoint, RideRequest, RideStatus,
)

logger = logging.getLogger(__name__)

RIDES = "ride_requests"
AGENTS = "chips_agents"

ACTIVE_STATUSES = [
    RideStatus.PENDING.value,
    RideStatus.ACCEPTED.value,
    RideStatus.EN_ROUTE_TO_PICKUP.value,
    RideStatus.ARRIVED_AT_PICKUP.value,
    RideStatus.EN_ROUTE_TO_HOSPITAL.value,
    RideStatus.ARRIVED_AT_HOSPITAL.value,
]
TERMINAL_STATUSES = {RideStatus.COMPLETED.value, RideStatus.CANCELLED.value}

# Forward lifecycle after acceptance; pending -> accepted only happens via accept()
NEXT_STATUS = {
    RideStatus.ACCEPTED.value: RideStatus.EN_ROUTE_TO_PICKUP.value,
    RideStatus.EN_ROUTE_TO_PICKUP.value: RideStatus.ARRIVED_AT_PICKUP.value,
    RideStatus.ARRIVED_AT_PICKUP.value: RideStatus.EN_ROUTE_TO_HOSPITAL.value,
    RideStatus.EN_ROUTE_TO_HOSPITAL.value: RideStatus.ARRIVED_AT_HOSPITAL.value,
    RideStatus.ARRIVED_AT_HOSPITAL.value: RideStatus.COMPLETED.value,
}

ACCEPT = "accept"
DECLINE = "decline"


def _freshness(candidate: DriverCandidate) -> str:
    return "current" if candidate.location.is_fresh else "estimated"


def driver_snapshot(candidate: DriverCandidate) -> DriverSnapshot:
    d = candidate.driver
    return DriverSnapshot(
        id=d.id,
        name=d.name,
        phone_number=d.phone_number,
        vehicle_type=d.vehicle_type,
        distance_to_pickup_km=round(candidate.distance_km, 3),
        estimated_pickup_minutes=round(candidate.minutes_to_pickup, 2),
        location_freshness=_freshness(candidate),
    )


class RideDispatcher:
    def __init__(
        self,
        repo: DocumentRepository,
        notifier: Notifier,
        classifier: ConditionClassifier,
        catalog: CareRequirementCatalog,
        selector: DriverCandidateSelector,
        matcher: HospitalMatcher,
        clock: Clock = utcnow,
    ):
        self.repo = repo
        self.notifier = notifier
        self.classifier = classifier
        self.catalog = catalog
        self.selector = selector
        self.matcher = matcher
        self.clock = clock
        self._broadcasts: Set[asyncio.Task] = set()

    async def request_ride(
        self,
        chips_agent_id: str,
        symptoms: List[str],
        pickup_lat: float,
        pickup_lng: float,
        is_pregnant: bool = False,
        is_postpartum: bool = False,
        is_urgent: bool = False,
    ) -> Dict:
        if not chips_agent_id or not symptoms or pickup_lat is None or pickup_lng is None:
            raise ValidationError("Missing required fields")
        if not (-90 <= pickup_lat <= 90 and -180 <= pickup_lng <= 180):
            raise ValidationError("Pickup coordinates out of range")
        if not self.repo.get(AGENTS, chips_agent_id):
            raise NotFound("CHIPS agent not found")

        pickup = GeoPoint(lat=pickup_lat, lng=pickup_lng)
        classification = self.classifier.classify(
            symptoms, is_pregnant=is_pregnant, is_postpartum=is_postpartum, is_urgent=is_urgent,
        )
        condition = classification.condition
        logger.info(f"Identified condition {condition} (confidence {classification.confidence:.2f})")

        care = self.catalog.care_for(condition)
        if care is None:
            raise ValidationError("Could not determine appropriate care requirements")

        selection = await self.selector.select(pickup, condition, self.catalog)
        top = selection.top
        logger.info(f"Selected top driver {top.driver.id} ({top.driver.vehicle_type}, "
                    f"{top.distance_km:.2f} km, fresh={top.location.is_fresh})")

        hospitals = self.matcher.load(self.repo)
        if not hospitals:
            raise NoSuitableHospital("No hospitals found")
        best = self.matcher.match(hospitals, pickup, top.distance_km, top.speed_kmh, care)

        level = EmergencyLevel.HIGH if selection.emergent else EmergencyLevel.MEDIUM
        condition_name = self.catalog.name_of(condition)
        ride = RideRequest(
            chips_agent_id=chips_agent_id,
            symptoms=list(symptoms),
            condition_id=condition,
            condition_name=condition_name,
            condition_confidence=classification.confidence,
            pickup_location=pickup,
            driver_assigned=driver_snapshot(top),
            hospital_assigned=best.snapshot(),
            total_trip_minutes=round(best.total_trip_minutes, 2),
            emergency_level=level,
            candidate_drivers=[
                CandidateDriver(
                    id=c.driver.id,
                    push_token=c.driver.push_token,
                    distance_to_pickup_km=round(c.distance_km, 3),
                    estimated_pickup_minutes=round(c.minutes_to_pickup, 2),
                    location_freshness=_freshness(c),
                )
                for c in selection.candidates
            ],
            created_at=self.clock(),
        )
        doc = ride.model_dump(exclude={"id"})
        doc["requires_highest_care"] = classification.requires_highest_care
        doc["classification_reasoning"] = classification.reasoning
        ride_id = self.repo.insert(RIDES, doc)
        logger.info(f"Ride request {ride_id} created for agent {chips_agent_id} "
                    f"with {len(selection.candidates)} candidates")

        self._schedule_offers(ride_id, ride, selection)

        return {
            "message": "Ride request created",
            "requestId": ride_id,
            "condition": {
                "id": condition,
                "name": condition_name,
                "confidence": classification.confidence,
            },
            "hospital": ride.hospital_assigned.model_dump(),
            "driver": {
                "id": top.driver.id,
                "name": top.driver.name,
                "estimatedPickupTime": round(top.minutes_to_pickup),
            },
            "candidateCount": len(selection.candidates),
            "emergencyLevel": ride.emergency_level,
        }

    def _offer(self, ride_id: str, ride: RideRequest, candidate: DriverCandidate) -> Delivery:
        urgent = ride.emergency_level == EmergencyLevel.HIGH.value
        pickup = ride.pickup_location
        payload = build_payload(
            RIDE_REQUEST,
            {
                "rideId": ride_id,
                "emergencyLevel": ride.emergency_level,
                "patientLocation": f"{pickup.lat:.6f},{pickup.lng:.6f}",
                "condition": ride.condition_id,
            },
            title="URGENT: Emergency Ride Request" if urgent else "New Ride Request",
            body=f"Pickup {candidate.distance_km:.1f}km away. Condition: {ride.condition_name}",
            emergency=urgent,
        )
        return Delivery(
            address=candidate.driver.push_token,
            payload=payload,
            priority=PRIORITY_HIGH if urgent else PRIORITY_NORMAL,
            label=f"driver {candidate.driver.id}",
        )

    def _schedule_offers(self, ride_id: str, ride: RideRequest, selection: CandidateSelection) -> None:
        deliveries = [self._offer(ride_id, ride, c) for c in selection.candidates if c.driver.push_token]
        task = asyncio.create_task(self._broadcast(ride_id, deliveries))
        self._broadcasts.add(task)
        task.add_done_callback(self._broadcasts.discard)

    async def _broadcast(self, ride_id: str, deliveries: List[Delivery]) -> int:
        sent = await fan_out(self.notifier, deliveries)
        logger.info(f"Sent {sent}/{len(deliveries)} driver notifications for ride {ride_id}")
        return sent

    async def drain(self) -> None:
        """Wait for in-flight ride offers and late location requests to finish."""
        if self._broadcasts:
            await asyncio.gather(*list(self._broadcasts), return_exceptions=True)
        await self.selector.drain()


class RideStateMachine:
    def __init__(self, repo: DocumentRepository, notifier: Notifier, clock: Clock = utcnow):
        self.repo = repo
        self.notifier = notifier
        self.clock = clock

    def _ride(self, ride_id: str) -> RideRequest:
        doc = self.repo.get(RIDES, ride_id)
        if not doc:
            raise NotFound("Ride request not found")
        return RideRequest.model_validate(doc)

    def _lost(self, ride_id: str) -> Conflict:
        doc = self.repo.get(RIDES, ride_id) or {}
        return Conflict(f"Ride is already {doc.get('status', 'gone')}")

    async def respond(self, ride_id: str, driver_id: str, response: str) -> Dict:
        if not driver_id or not ride_id or not response:
            raise ValidationError("Missing required fields")
        if response not in (ACCEPT, DECLINE):
            raise ValidationError('Invalid response. Must be "accept" or "decline"')

        ride = self._ride(ride_id)
        if ride.candidate(driver_id) is None:
            raise Unauthorized("Driver is not a candidate for this ride")
        if ride.status != RideStatus.PENDING.value:
            raise Conflict(f"Ride is already {ride.status}")

        if response == ACCEPT:
            return await self.accept(ride_id, ride, driver_id)
        return self.decline(ride_id, ride, driver_id)

    def decline(self, ride_id: str, ride: RideRequest, driver_id: str) -> Dict:
        declined = {"message": "Ride request declined", "rideId": ride_id}
        if ride.has_declined(driver_id):
            return declined
        # An earlier decline by this driver fails the match
        updated = self.repo.compare_and_set(
            RIDES, ride_id,
            expected={
                "status": RideStatus.PENDING.value,
                "declined_drivers.driver_id": {"$ne": driver_id},
            },
            push_fields={"declined_drivers": {"driver_id": driver_id, "declined_at": self.clock()}},
        )
        if updated is None:
            doc = self.repo.get(RIDES, ride_id) or {}
            if doc.get("status") == RideStatus.PENDING.value:
                logger.info(f"Driver {driver_id} already declined ride {ride_id}")
                return declined
            raise self._lost(ride_id)
        logger.info(f"Driver {driver_id} declined ride {ride_id}")
        return declined

    async def accept(self, ride_id: str, ride: RideRequest, driver_id: str) -> Dict:
        now = self.clock()
        fields = {
            "status": RideStatus.ACCEPTED.value,
            "accepted_by": driver_id,
            "accepted_at": now,
            "status_updated_at": now,
        }
        if driver_id != ride.driver_assigned.id:
            fields["driver_assigned"] = self._override_snapshot(ride, driver_id).model_dump()

        updated = self.repo.compare_and_set(
            RIDES, ride_id, expected={"status": RideStatus.PENDING.value}, set_fields=fields,
        )
        if updated is None:
            logger.info(f"Driver {driver_id} lost the race to accept ride {ride_id}")
            raise self._lost(ride_id)

        self.repo.update(DRIVERS, driver_id, {"current_ride_id": ride_id, "last_ride_update_time": now})
        logger.info(f"Driver {driver_id} accepted ride {ride_id}")
        await self._notify_agent(ride, ride_id, driver_id)

        return {
            "message": "Ride request accepted",
            "rideId": ride_id,
            "nextStatus": RideStatus.EN_ROUTE_TO_PICKUP.value,
        }

    def _override_snapshot(self, ride: RideRequest, driver_id: str) -> DriverSnapshot:
        candidate = ride.candidate(driver_id)
        doc = self.repo.get(DRIVERS, driver_id)
        if not doc:
            raise NotFound("Driver not found")
        driver = Driver.model_validate(doc)
        return DriverSnapshot(
            id=driver.id,
            name=driver.name,
            phone_number=driver.phone_number,
            vehicle_type=driver.vehicle_type,
            distance_to_pickup_km=candidate.distance_to_pickup_km,
            estimated_pickup_minutes=candidate.estimated_pickup_minutes,
            location_freshness=candidate.location_freshness,
            overridden=True,
        )

    async def _notify_agent(self, ride: RideRequest, ride_id: str, driver_id: str) -> None:
        doc = self.repo.get(AGENTS, ride.chips_agent_id)
        if not doc:
            return
        agent = ChipsAgent.model_validate(doc)
        if not agent.push_token:
            return
        payload = build_payload(
            RIDE_ACCEPTED,
            {"rideId": ride_id, "driverId": driver_id},
            title="Driver Accepted Your Request",
            body="A driver has accepted your emergency transport request",
        )
        await fan_out(self.notifier, [
            Delivery(agent.push_token, payload, PRIORITY_HIGH, f"agent {agent.id}"),
        ])

    def advance(self, ride_id: str, driver_id: str, target: str) -> Dict:
        """Move an accepted ride one step forward. Only the accepting driver may do this."""
        try:
            target = RideStatus(target).value
        except ValueError:
            raise ValidationError(f"Unknown ride status: {target}")
        ride = self._ride(ride_id)
        if ride.accepted_by != driver_id:
            raise Unauthorized("Only the accepting driver can update this ride")
        if NEXT_STATUS.get(ride.status) != target:
            raise Conflict(f"Cannot move ride from {ride.status} to {target}")

        updated = self.repo.compare_and_set(
            RIDES, ride_id,
            expected={"status": ride.status},
            set_fields={"status": target, "status_updated_at": self.clock()},
        )
        if updated is None:
            raise self._lost(ride_id)

        if target == RideStatus.COMPLETED.value:
            self.repo.update(DRIVERS, driver_id, {"current_ride_id": None})
        logger.info(f"Ride {ride_id}: {ride.status} -> {target}")
        return {"message": "Ride status updated", "rideId": ride_id, "status": target}

    def cancel(self, ride_id: str) -> Dict:
        ride = self._ride(ride_id)
        if ride.status in TERMINAL_STATUSES:
            raise Conflict(f"Ride is already {ride.status}")
        now = self.clock()
        updated = self.repo.compare_and_set(
            RIDES, ride_id,
            expected={"status": ride.status},
            set_fields={"status": RideStatus.CANCELLED.value, "status_updated_at": now, "cancelled_at": now},
        )
        if updated is None:
            raise self._lost(ride_id)
        if ride.accepted_by:
            self.repo.update(DRIVERS, ride.accepted_by, {"current_ride_id": None})
        logger.info(f"Ride {ride_id} cancelled from {ride.status}")
        return {"message": "Ride request cancelled", "rideId": ride_id}


# =============================================================================
# READS
# =============================================================================

def get_ride(repo, ride_id: str) -> Dict:
    doc = repo.get(RIDES, ride_id)
    if not doc:
        raise NotFound("Ride request not found")
    return doc


def _require_driver(repo, driver_id: str) -> None:
    if not repo.get(DRIVERS, driver_id):
        raise NotFound("Driver not found")


def _latest(repo, filter_dict: Dict) -> Optional[Dict]:
    docs = repo.find(RIDES, filter_dict, sort=[("created_at", DESCENDING)], limit=1)
    return docs[0] if docs else None


def _with_agent_details(repo, ride: Dict) -> Dict:
    """Attach the requesting agent's name and phone so the driver can reach them."""
    doc = repo.get(AGENTS, ride.get("chips_agent_id", ""))
    if doc:
        agent = ChipsAgent.model_validate(doc)
        ride["chipsAgentDetails"] = {"name": agent.name, "phoneNumber": agent.phone_number}
    else:
        ride["chipsAgentDetails"] = None
    return ride


def driver_active_ride(repo, driver_id: str) -> Optional[Dict]:
    _require_driver(repo, driver_id)
    ride = _latest(repo, {"driver_assigned.id": driver_id, "status": {"$in": ACTIVE_STATUSES}})
    return _with_agent_details(repo, ride) if ride else None


def driver_ride_history(repo, driver_id: str) -> List[Dict]:
    """Every ride assigned to the driver, newest first."""
    _require_driver(repo, driver_id)
    rides = repo.find(RIDES, {"driver_assigned.id": driver_id}, sort=[("created_at", DESCENDING)])
    return [_with_agent_details(repo, ride) for ride in rides]


def agent_active_ride(repo, agent_id: str) -> Optional[Dict]:
    return _latest(repo, {"chips_agent_id": agent_id, "status": {"$in": ACTIVE_STATUSES}})


def pending_requests(repo, driver_id: str, limit: int = 10) -> List[Dict]:
    """Pending rides offered to this driver that they have not declined, newest first."""
    _require_driver(repo, driver_id)
    return repo.find(
        RIDES,
        {
            "status": RideStatus.PENDING.value,
            "candidate_drivers.id": driver_id,
            "declined_drivers.driver_id": {"$ne": driver_id},
        },
        sort=[("created_at", DESCENDING)],
        limit=limit,
    )


def agent_ride_history(repo, agent_id: str) -> List[Dict]:
    return repo.find(RIDES, {"chips_agent_id": agent_id}, sort=[("created_at", DESCENDING)])
