import pytest

from conditions import (
    CARE_REQUIREMENTS, CRITICAL_EMERGENCY, UNKNOWN, VEHICLE_REQUIREMENTS,
    CareRequirementCatalog, ConditionClassifier,
)


@pytest.fixture
def classifier():
    return ConditionClassifier()


@pytest.fixture
def catalog():
    return CareRequirementCatalog()


def test_no_symptoms_is_unknown(classifier):
    result = classifier.classify([])
    assert result.condition == UNKNOWN
    assert result.confidence == 0.0


def test_unmatched_symptoms_are_unknown(classifier):
    result = classifier.classify(["mild_headache"])
    assert result.condition == UNKNOWN
    assert result.confidence == 0.0


def test_convulsions_override_everything(classifier):
    result = classifier.classify(["convulsions", "severe_headache"])
    assert result.condition == CRITICAL_EMERGENCY
    assert result.confidence == pytest.approx(0.9)
    assert result.requires_highest_care


def test_dangerous_combination_is_critical(classifier):
    result = classifier.classify(["severe_headache", "blurry_vision"])
    assert result.condition == CRITICAL_EMERGENCY


def test_heavy_bleeding_after_delivery_is_critical(classifier):
    result = classifier.classify(["heavy_bleeding_after_delivery"], is_postpartum=True)
    assert result.condition == CRITICAL_EMERGENCY
    assert result.confidence >= 0.6
    # the critical facility list covers what a haemorrhage needs
    assert "has_blood" in CARE_REQUIREMENTS[CRITICAL_EMERGENCY].ideal


def test_urgent_flag_is_critical(classifier):
    assert classifier.classify(["fever"], is_urgent=True).condition == CRITICAL_EMERGENCY


def test_many_symptoms_are_critical(classifier):
    symptoms = ["a", "b", "c", "d", "e", "f", "g"]
    assert classifier.classify(symptoms).condition == CRITICAL_EMERGENCY


def test_postpartum_bleeding_is_hemorrhage(classifier):
    result = classifier.classify(["bleeding_after_delivery"], is_postpartum=True)
    assert result.condition == "postpartum_hemorrhage"
    assert result.confidence == pytest.approx(0.95)


def test_pregnant_patient_cannot_have_postpartum_hemorrhage(classifier):
    result = classifier.classify(["bleeding_after_delivery"], is_pregnant=True)
    assert result.condition == UNKNOWN


def test_postpartum_patient_cannot_be_in_preterm_labor(classifier):
    symptoms = ["contractions_before_37_weeks", "lower_back_pain"]
    assert classifier.classify(symptoms).condition == "preterm_labor"
    assert classifier.classify(symptoms, is_postpartum=True).condition == UNKNOWN


def test_pregnancy_boosts_eclampsia(classifier):
    symptoms = ["severe_headache", "high_blood_pressure", "nausea_vomiting"]
    plain = classifier.classify(symptoms)
    boosted = classifier.classify(symptoms, is_pregnant=True)
    assert plain.condition == boosted.condition == "eclampsia"
    assert plain.confidence == pytest.approx(110 / 150, abs=1e-4)
    assert boosted.confidence == pytest.approx(132 / 150, abs=1e-4)
    assert not plain.requires_highest_care


def test_order_of_symptoms_does_not_matter(classifier):
    symptoms = ["fever", "foul_smelling_discharge", "chills", "rapid_heartbeat"]
    forward = classifier.classify(symptoms)
    backward = classifier.classify(list(reversed(symptoms)))
    assert forward == backward
    assert forward.condition == "sepsis"


def test_reasoning_names_matches(classifier):
    result = classifier.classify(["fever", "foul_smelling_discharge", "chills"])
    assert result.reasoning == (
        "Matched 2 of 2 required symptoms and 1 of 4 optional symptoms for Maternal Sepsis."
    )


def test_uncertain_match_with_several_symptoms_escalates(classifier):
    result = classifier.classify(["fever", "chills", "confusion"])
    assert result.condition == "sepsis"
    assert result.confidence == pytest.approx(0.3)
    assert result.requires_highest_care
    assert result.reasoning.endswith("recommending highest level of care.")


def test_catalog_lookups(catalog):
    assert catalog.is_emergent("postpartum_hemorrhage")
    assert not catalog.is_emergent(CRITICAL_EMERGENCY)
    assert not catalog.is_emergent("sepsis")
    assert catalog.vehicles_for("eclampsia").allowed == frozenset({"car"})
    assert "motorcycle" in catalog.vehicles_for("normal_delivery").allowed
    assert catalog.care_for("made_up") is None
    assert catalog.name_of("miscarriage") == "Miscarriage Complications"
    assert catalog.name_of("made_up") == "Unknown Emergency"


def test_every_condition_has_care_and_vehicle_rules(catalog):
    for condition in set(CARE_REQUIREMENTS) | set(VEHICLE_REQUIREMENTS):
        assert catalog.care_for(condition) is not None
        assert condition in VEHICLE_REQUIREMENTS
