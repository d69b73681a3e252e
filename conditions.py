"""
Obstetric condition classification and care requirements.

A rules table maps reported symptoms to the most likely obstetric emergency.
A second table says what a receiving facility must have for each condition,
how long the patient can safely travel, and which vehicles may carry her.

Both tables are immutable and built once; the classifier and catalog take
them as constructor arguments so tests and deployments can swap them.
"""

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, Mapping, Optional

from schemas import VehicleType

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"
CRITICAL_EMERGENCY = "critical_emergency"

PSEUDO_CONDITION_NAMES = MappingProxyType({
    UNKNOWN: "Unknown Condition",
    CRITICAL_EMERGENCY: "Critical Emergency",
})


@dataclass(frozen=True)
class ConditionSpec:
    condition: str
    name: str
    required: FrozenSet[str]
    optional: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class CareRequirement:
    ideal: FrozenSet[str]
    acceptable: FrozenSet[str]
    time_window_minutes: float
    emergent: bool = False


@dataclass(frozen=True)
class VehicleRequirement:
    allowed: FrozenSet[str]
    preferred: str


@dataclass(frozen=True)
class Classification:
    """
    Result of symptom classification.

    Attributes:
        condition: Condition id (or "unknown" / "critical_emergency")
        name: Human-readable condition name
        confidence: 0.0-1.0
        reasoning: Short explanation of how the condition was chosen
        requires_highest_care: Escalate to the best-equipped facility
    """
    condition: str
    name: str
    confidence: float
    reasoning: str
    requires_highest_care: bool = False


def _spec(condition, name, required, optional=()):
    return ConditionSpec(condition, name, frozenset(required), frozenset(optional))


# =============================================================================
# RULES TABLES
# =============================================================================

CONDITION_SPECS = (
    _spec("postpartum_hemorrhage", "Postpartum Hemorrhage",
          ["bleeding_after_delivery"],
          ["dizziness", "fainting", "rapid_heartbeat", "pale_skin", "weakness"]),
    _spec("eclampsia", "Eclampsia / Severe Pre-eclampsia",
          ["severe_headache", "high_blood_pressure"],
          ["blurry_vision", "swelling_face_hands", "upper_abdominal_pain", "nausea_vomiting"]),
    _spec("obstructed_labor", "Obstructed Labor",
          ["prolonged_labor"],
          ["severe_abdominal_pain", "exhaustion", "abnormal_fetal_position", "fever"]),
    _spec("preterm_labor", "Preterm Labor",
          ["contractions_before_37_weeks"],
          ["lower_back_pain", "pelvic_pressure", "water_broke", "vaginal_bleeding"]),
    _spec("normal_delivery", "Normal Delivery",
          ["regular_contractions", "water_broke"],
          ["bloody_show", "urge_to_push"]),
    _spec("miscarriage", "Miscarriage Complications",
          ["vaginal_bleeding", "abdominal_cramps"],
          ["passing_tissue", "lower_back_pain", "dizziness"]),
    _spec("sepsis", "Maternal Sepsis",
          ["fever", "foul_smelling_discharge"],
          ["chills", "rapid_heartbeat", "abdominal_pain", "confusion"]),
)

# Any one of these is life-threatening on its own
CRITICAL_SYMPTOMS = frozenset({
    "convulsions",
    "unconsciousness",
    "heavy_bleeding_after_delivery",
    "baby_not_coming",
    "no_fetal_movement",
})

CRITICAL_COMBINATIONS = (
    frozenset({"severe_headache", "blurry_vision"}),
    frozenset({"fever", "weakness"}),
)

CRITICAL_SYMPTOM_COUNT = 7

POSTPARTUM_CONDITIONS = frozenset({"postpartum_hemorrhage"})
PREGNANCY_CONDITIONS = frozenset({"preterm_labor", "eclampsia", "obstructed_labor"})
PREGNANCY_ONLY_CONDITIONS = frozenset({"preterm_labor", "normal_delivery"})

POSTPARTUM_BOOST = 1.5
PREGNANCY_BOOST = 1.2

FULL_REQUIRED_SCORE = 100
PARTIAL_REQUIRED_SCORE = 50
OPTIONAL_SYMPTOM_SCORE = 10
MIN_MATCH_SCORE = 20
CONFIDENCE_SCALE = 150
MAX_CONFIDENCE = 0.95
CRITICAL_CONFIDENCE = 0.9
UNCERTAIN_CONFIDENCE = 0.7
UNCERTAIN_SYMPTOM_COUNT = 3


def _care(ideal, acceptable, window, emergent=False):
    return CareRequirement(frozenset(ideal), frozenset(acceptable), window, emergent)


CARE_REQUIREMENTS = MappingProxyType({
    "postpartum_hemorrhage": _care(
        ["has_midwife_or_nurse", "has_power", "has_water", "has_uterotonics", "has_blood"],
        ["has_midwife_or_nurse", "has_power", "has_water", "has_uterotonics"],
        60, emergent=True),
    "eclampsia": _care(
        ["has_anticonvulsants", "has_antihypertensives", "has_monitoring", "has_ultrasound",
         "has_doctor", "has_delivery_room", "has_power"],
        ["has_anticonvulsants", "has_monitoring"],
        90, emergent=True),
    "obstructed_labor": _care(
        ["has_theater", "has_power", "staff_24_7", "has_doctor", "has_ultrasound"],
        ["has_theater", "has_power", "staff_24_7"],
        120, emergent=True),
    "normal_delivery": _care(
        ["has_delivery_room", "has_midwife_or_nurse", "has_power", "has_water"],
        ["has_delivery_room", "has_midwife_or_nurse"],
        180),
    "preterm_labor": _care(
        ["has_incubator", "has_ultrasound", "has_doctor"],
        ["has_incubator", "has_midwife_or_nurse"],
        90),
    "miscarriage": _care(
        ["has_mva_kit", "has_antibiotics", "has_iv_fluids", "has_ultrasound"],
        ["has_mva_kit"],
        120),
    "sepsis": _care(
        ["has_antibiotics", "has_iv_fluids", "has_monitoring"],
        ["has_antibiotics", "has_iv_fluids"],
        60),
    CRITICAL_EMERGENCY: _care(
        ["has_doctor", "has_theater", "has_blood", "has_power", "staff_24_7", "has_monitoring"],
        ["has_doctor", "has_blood", "has_power"],
        60),
    UNKNOWN: _care([], [], 60),
})

_CAR = VehicleType.CAR.value
_MOTORCYCLE = VehicleType.MOTORCYCLE.value

_CAR_ONLY = VehicleRequirement(frozenset({_CAR}), _CAR)
_ANY_PREFER_CAR = VehicleRequirement(frozenset({_MOTORCYCLE, _CAR}), _CAR)

VEHICLE_REQUIREMENTS = MappingProxyType({
    "postpartum_hemorrhage": _CAR_ONLY,
    "eclampsia": _CAR_ONLY,
    "obstructed_labor": _CAR_ONLY,
    CRITICAL_EMERGENCY: _CAR_ONLY,
    "normal_delivery": _ANY_PREFER_CAR,
    "preterm_labor": _ANY_PREFER_CAR,
    "miscarriage": _ANY_PREFER_CAR,
    "sepsis": _ANY_PREFER_CAR,
    UNKNOWN: _ANY_PREFER_CAR,
})

DEFAULT_VEHICLE_REQUIREMENT = _CAR_ONLY


# =============================================================================
# CATALOG
# =============================================================================

class CareRequirementCatalog:
    """Read-only lookup of care and vehicle requirements per condition."""

    def __init__(
        self,
        care: Mapping[str, CareRequirement] = CARE_REQUIREMENTS,
        vehicles: Mapping[str, VehicleRequirement] = VEHICLE_REQUIREMENTS,
        names: Optional[Mapping[str, str]] = None,
    ):
        self._care = MappingProxyType(dict(care))
        self._vehicles = MappingProxyType(dict(vehicles))
        if names is None:
            names = {**{s.condition: s.name for s in CONDITION_SPECS}, **PSEUDO_CONDITION_NAMES}
        self._names = MappingProxyType(dict(names))

    def care_for(self, condition: str) -> Optional[CareRequirement]:
        return self._care.get(condition)

    def vehicles_for(self, condition: str) -> VehicleRequirement:
        return self._vehicles.get(condition, DEFAULT_VEHICLE_REQUIREMENT)

    def is_emergent(self, condition: str) -> bool:
        care = self._care.get(condition)
        return bool(care and care.emergent)

    def name_of(self, condition: str) -> str:
        return self._names.get(condition, "Unknown Emergency")


# =============================================================================
# CLASSIFIER
# =============================================================================

class ConditionClassifier:
    """
    Rule-based symptom classifier.

    Logic:
    1. No symptoms -> unknown, confidence 0
    2. Life-threatening override -> critical_emergency, confidence 0.9
    3. Score each condition: +100 if all required symptoms present, else
       +50 x fraction of required matched; +10 per optional symptom
    4. Reweight for postpartum / pregnant patients
    5. Best score under 20 -> unknown
    6. confidence = min(score / 150, 0.95); below 0.7 with 3+ symptoms
       escalates to highest care

    The result depends only on the set of symptoms, not their order.
    """

    def __init__(self, specs: Iterable[ConditionSpec] = CONDITION_SPECS):
        self._specs = tuple(specs)

    @staticmethod
    def is_life_threatening(symptoms: FrozenSet[str]) -> bool:
        if symptoms & CRITICAL_SYMPTOMS:
            return True
        return any(combo <= symptoms for combo in CRITICAL_COMBINATIONS)

    def score(self, symptoms: FrozenSet[str]) -> Dict[str, float]:
        scores = {}
        for spec in self._specs:
            score = 0.0
            if spec.required:
                matched = len(spec.required & symptoms)
                if matched == len(spec.required):
                    score += FULL_REQUIRED_SCORE
                else:
                    score += PARTIAL_REQUIRED_SCORE * matched / len(spec.required)
            score += OPTIONAL_SYMPTOM_SCORE * len(spec.optional & symptoms)
            scores[spec.condition] = score
        return scores

    @staticmethod
    def reweight(scores: Dict[str, float], is_pregnant: bool, is_postpartum: bool) -> Dict[str, float]:
        adjusted = dict(scores)
        if is_postpartum:
            for condition in POSTPARTUM_CONDITIONS & adjusted.keys():
                adjusted[condition] *= POSTPARTUM_BOOST
            for condition in PREGNANCY_ONLY_CONDITIONS & adjusted.keys():
                adjusted[condition] = 0.0
        elif is_pregnant:
            for condition in PREGNANCY_CONDITIONS & adjusted.keys():
                adjusted[condition] *= PREGNANCY_BOOST
            for condition in POSTPARTUM_CONDITIONS & adjusted.keys():
                adjusted[condition] = 0.0
        return adjusted

    def classify(
        self,
        symptoms: Iterable[str],
        is_pregnant: bool = False,
        is_postpartum: bool = False,
        is_urgent: bool = False,
    ) -> Classification:
        sym = frozenset(s for s in symptoms if s)

        if not sym:
            return Classification(UNKNOWN, PSEUDO_CONDITION_NAMES[UNKNOWN], 0.0, "No symptoms provided")

        if is_urgent or self.is_life_threatening(sym) or len(sym) >= CRITICAL_SYMPTOM_COUNT:
            return Classification(
                CRITICAL_EMERGENCY,
                PSEUDO_CONDITION_NAMES[CRITICAL_EMERGENCY],
                CRITICAL_CONFIDENCE,
                "Multiple severe symptoms or explicitly marked urgent",
                requires_highest_care=True,
            )

        scores = self.reweight(self.score(sym), is_pregnant, is_postpartum)

        # Ties go to the condition listed first in the table
        best_spec, best_score = None, 0.0
        for spec in self._specs:
            if scores[spec.condition] > best_score:
                best_spec, best_score = spec, scores[spec.condition]

        if best_spec is None or best_score < MIN_MATCH_SCORE:
            return Classification(
                UNKNOWN, PSEUDO_CONDITION_NAMES[UNKNOWN], 0.0,
                "Symptoms don't clearly match any known condition",
            )

        confidence = min(best_score / CONFIDENCE_SCALE, MAX_CONFIDENCE)
        reasoning = self._reasoning(best_spec, sym)
        requires_highest_care = False
        if confidence < UNCERTAIN_CONFIDENCE and len(sym) >= UNCERTAIN_SYMPTOM_COUNT:
            requires_highest_care = True
            reasoning += " Due to uncertainty with multiple symptoms, recommending highest level of care."

        logger.info(f"Classified {sorted(sym)} as {best_spec.condition} (score {best_score:.1f})")
        return Classification(
            best_spec.condition, best_spec.name, round(confidence, 4), reasoning, requires_highest_care,
        )

    @staticmethod
    def _reasoning(spec: ConditionSpec, symptoms: FrozenSet[str]) -> str:
        required = len(spec.required & symptoms)
        optional = len(spec.optional & symptoms)
        text = f"Matched {required} of {len(spec.required)} required symptoms"
        if optional:
            return f"{text} and {optional} of {len(spec.optional)} optional symptoms for {spec.name}."
        return f"{text} for {spec.name}."
