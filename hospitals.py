"""
Hospital matching by capability and trip time.

Score tiers (first match wins):
- ideal capabilities, trip within window        -> 100
- acceptable capabilities, trip within window   -> 75
- ideal capabilities, within window + grace     -> 60
- acceptable capabilities, within window + grace -> 40
Anything else is excluded.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from conditions import CareRequirement
from errors import NoSuitableHospital
from geo import haversine_distance, travel_minutes
from schemas import GeoPoint, Hospital, HospitalSnapshot

logger = logging.getLogger(__name__)

HOSPITALS = "hospitals"


@dataclass
class HospitalCandidate:
    hospital: Hospital
    meets_ideal: bool
    meets_acceptable: bool
    distance_km: float
    time_to_hospital_minutes: float
    total_trip_minutes: float
    score: int

    def snapshot(self) -> HospitalSnapshot:
        return HospitalSnapshot(
            id=self.hospital.id,
            name=self.hospital.name,
            location=GeoPoint(lat=self.hospital.lat, lng=self.hospital.lng),
            meets_ideal=self.meets_ideal,
            meets_acceptable=self.meets_acceptable,
            score=self.score,
            time_to_hospital_minutes=round(self.time_to_hospital_minutes, 2),
            total_trip_minutes=round(self.total_trip_minutes, 2),
        )


def tier_score(meets_ideal: bool, meets_acceptable: bool, total_minutes: float,
               window: float, grace: float) -> Optional[int]:
    if meets_ideal and total_minutes <= window:
        return 100
    if meets_acceptable and total_minutes <= window:
        return 75
    if meets_ideal and total_minutes <= window + grace:
        return 60
    if meets_acceptable and total_minutes <= window + grace:
        return 40
    return None


class HospitalMatcher:
    def __init__(self, grace_minutes: float = 30):
        self.grace_minutes = grace_minutes

    def score_all(
        self,
        hospitals: Iterable[Hospital],
        pickup: GeoPoint,
        driver_distance_km: float,
        driver_speed_kmh: float,
        care: CareRequirement,
    ) -> List[HospitalCandidate]:
        """Every qualifying hospital, best first. Equal scores go to the shorter trip."""
        to_pickup = travel_minutes(driver_distance_km, driver_speed_kmh)
        scored = []
        for hospital in hospitals:
            caps = hospital.capabilities
            meets_ideal = caps.has_all(care.ideal)
            meets_acceptable = caps.has_all(care.acceptable)
            if not meets_ideal and not meets_acceptable:
                continue

            distance = haversine_distance(pickup.lat, pickup.lng, hospital.lat, hospital.lng)
            to_hospital = travel_minutes(distance, driver_speed_kmh)
            total = to_pickup + to_hospital
            score = tier_score(meets_ideal, meets_acceptable, total,
                               care.time_window_minutes, self.grace_minutes)
            if score is None:
                continue
            scored.append(HospitalCandidate(
                hospital, meets_ideal, meets_acceptable, distance, to_hospital, total, score,
            ))

        scored.sort(key=lambda c: (-c.score, c.total_trip_minutes))
        return scored

    def match(self, hospitals, pickup, driver_distance_km, driver_speed_kmh, care) -> HospitalCandidate:
        ranked = self.score_all(hospitals, pickup, driver_distance_km, driver_speed_kmh, care)
        logger.info(f"Found {len(ranked)} suitable hospitals")
        if not ranked:
            raise NoSuitableHospital("No suitable hospital found")
        best = ranked[0]
        logger.info(f"Selected hospital {best.hospital.id} ({best.hospital.name}), "
                    f"score {best.score}, trip {best.total_trip_minutes:.1f} min")
        return best

    @staticmethod
    def load(repo) -> List[Hospital]:
        hospitals = []
        for doc in repo.find(HOSPITALS):
            try:
                hospitals.append(Hospital.model_validate(doc))
            except ValueError as e:
                logger.warning(f"Skipping malformed hospital {doc.get('id')}: {e}")
        return hospitals
