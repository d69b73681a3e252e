"""
Database Schemas for ETS Dispatch

Each Pydantic model describes a document in one of the collections:

- Driver -> drivers
- Hospital -> hospitals
- ChipsAgent -> chips_agents
- RideRequest -> ride_requests

Request bodies for the HTTP surface live at the bottom and keep the
camelCase field names the mobile clients send.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class GeoPoint(BaseModel):
    lat: float = Field(..., ge=-90, le=90, description="Latitude")
    lng: float = Field(..., ge=-180, le=180, description="Longitude")


class VehicleType(str, Enum):
    MOTORCYCLE = "motorcycle"
    CAR = "car"


class RideStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    EN_ROUTE_TO_PICKUP = "en_route_to_pickup"
    ARRIVED_AT_PICKUP = "arrived_at_pickup"
    EN_ROUTE_TO_HOSPITAL = "en_route_to_hospital"
    ARRIVED_AT_HOSPITAL = "arrived_at_hospital"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class EmergencyLevel(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"


class Driver(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    first_name: str = ""
    last_name: str = ""
    phone_number: Optional[str] = None
    # Left as a plain string: unrecognised types still get a default speed
    vehicle_type: str
    is_available: bool = False
    last_known_location: Optional[GeoPoint] = None
    last_location_timestamp: Optional[datetime] = None
    is_location_fresh: bool = False
    location_source: Optional[str] = None
    fallback_location: Optional[GeoPoint] = None
    push_token: Optional[str] = None
    current_ride_id: Optional[str] = None
    pending_location_update: bool = False

    @field_validator("is_available", "is_location_fresh", "pending_location_update", mode="before")
    @classmethod
    def _none_is_false(cls, v):
        return bool(v) if v is not None else False

    @property
    def name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Capabilities(BaseModel):
    """Hospital capability flags. Missing or null flags mean the resource is absent."""
    model_config = ConfigDict(extra="ignore")

    has_uterotonics: bool = False
    has_blood: bool = False
    has_anticonvulsants: bool = False
    has_antihypertensives: bool = False
    has_adrenaline: bool = False
    has_delivery_room: bool = False
    has_incubator: bool = False
    has_power: bool = False
    has_water: bool = False
    has_mva_kit: bool = False
    has_antibiotics: bool = False
    has_iv_fluids: bool = False
    has_theater: bool = False
    has_ultrasound: bool = False
    has_doctor: bool = False
    has_midwife_or_nurse: bool = False
    has_referral_transport: bool = False
    has_monitoring: bool = False
    staff_24_7: bool = False

    @field_validator("*", mode="before")
    @classmethod
    def _none_is_false(cls, v):
        return bool(v) if v is not None else False

    def has_all(self, flags) -> bool:
        return all(getattr(self, flag, False) for flag in flags)


class Hospital(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    facility_type: Optional[str] = None
    ward: Optional[str] = None
    lga: Optional[str] = None
    capabilities: Capabilities = Field(default_factory=Capabilities)

    @field_validator("capabilities", mode="before")
    @classmethod
    def _missing_capabilities(cls, v):
        return v if v is not None else {}


class ChipsAgent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    first_name: str = ""
    last_name: str = ""
    phone_number: Optional[str] = None
    push_token: Optional[str] = None

    @property
    def name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class DriverSnapshot(BaseModel):
    id: str
    name: str
    phone_number: Optional[str] = None
    vehicle_type: str
    distance_to_pickup_km: float
    estimated_pickup_minutes: float
    location_freshness: str = Field(..., description="current|estimated")
    overridden: bool = False


class HospitalSnapshot(BaseModel):
    id: str
    name: str
    location: GeoPoint
    meets_ideal: bool
    meets_acceptable: bool
    score: int
    time_to_hospital_minutes: float
    total_trip_minutes: float


class CandidateDriver(BaseModel):
    id: str
    push_token: Optional[str] = None
    distance_to_pickup_km: float
    estimated_pickup_minutes: float
    location_freshness: str = "estimated"


class Decline(BaseModel):
    driver_id: str
    declined_at: datetime


class RideRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True, validate_default=True)

    id: Optional[str] = None
    chips_agent_id: str
    symptoms: List[str]
    condition_id: str
    condition_name: str
    condition_confidence: float = 0.0
    pickup_location: GeoPoint
    driver_assigned: DriverSnapshot
    hospital_assigned: HospitalSnapshot
    total_trip_minutes: float
    status: RideStatus = RideStatus.PENDING
    emergency_level: EmergencyLevel
    candidate_drivers: List[CandidateDriver]
    declined_drivers: List[Decline] = Field(default_factory=list)
    created_at: datetime
    accepted_by: Optional[str] = None
    accepted_at: Optional[datetime] = None
    status_updated_at: Optional[datetime] = None

    def candidate(self, driver_id: str) -> Optional[CandidateDriver]:
        for c in self.candidate_drivers:
            if c.id == driver_id:
                return c
        return None

    def has_declined(self, driver_id: str) -> bool:
        return any(d.driver_id == driver_id for d in self.declined_drivers)


# Request bodies

class _CamelBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RideRequestIn(_CamelBody):
    chips_agent_id: str = Field(..., alias="chipsAgentId", min_length=1)
    symptoms: List[str] = Field(..., min_length=1)
    pickup_lat: float = Field(..., alias="pickupLat", ge=-90, le=90)
    pickup_lng: float = Field(..., alias="pickupLng", ge=-180, le=180)
    is_pregnant: bool = Field(False, alias="isPregnant")
    is_postpartum: bool = Field(False, alias="isPostpartum")
    is_urgent: bool = Field(False, alias="isUrgent")


class RideResponseIn(_CamelBody):
    driver_id: str = Field(..., alias="driverId", min_length=1)
    ride_id: str = Field(..., alias="rideId", min_length=1)
    response: str = Field(..., description="accept|decline")


class LocationUpdateIn(_CamelBody):
    driver_id: str = Field(..., alias="driverId", min_length=1)
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    source: str = "mobile_app"
    accuracy: str = "medium"
    immediate: bool = False
    timestamp: Optional[datetime] = None


class LocationRequestIn(_CamelBody):
    driver_id: str = Field(..., alias="driverId", min_length=1)


class RideStatusUpdateIn(_CamelBody):
    driver_id: str = Field(..., alias="driverId", min_length=1)
    status: RideStatus
