"""Tests for consent filtering of the shared emergency profile."""

from __future__ import annotations

import itertools
from datetime import date

import pytest

from lifeline.models.session import SOSSettings
from lifeline.models.user_profile import MedicalInfo, UserProfile
from lifeline.services.consent import build_shared_profile

# settings flag -> SharedProfile attribute
_FLAG_FIELDS = {
    "share_blood_type": "blood_type",
    "share_allergies": "allergies",
    "share_medical_conditions": "medical_conditions",
    "share_medications": "medications",
    "share_notes": "notes",
    "share_age": "age",
}

_ALL_COMBINATIONS = [
    dict(zip(_FLAG_FIELDS, values, strict=True))
    for values in itertools.product([True, False], repeat=len(_FLAG_FIELDS))
]


class TestBuildSharedProfile:
    @pytest.mark.parametrize("flags", _ALL_COMBINATIONS)
    def test_field_present_iff_flag_on(self, profile: UserProfile, flags: dict[str, bool], today: date) -> None:
        shared = build_shared_profile(profile, SOSSettings(**flags), today=today)

        assert shared.name == "Maya Okafor", "name is always shared"
        for flag, attribute in _FLAG_FIELDS.items():
            value = getattr(shared, attribute)
            if flags[flag]:
                assert value is not None, f"{attribute} should be shared when {flag} is on"
            else:
                assert value is None, f"{attribute} must not be shared when {flag} is off"

    def test_all_on_values(self, profile: UserProfile, today: date) -> None:
        shared = build_shared_profile(profile, SOSSettings(share_notes=True), today=today)
        assert shared.blood_type == "O+"
        assert shared.allergies == ["penicillin", "peanuts"]
        assert shared.medical_conditions == ["asthma"]
        assert shared.medications == ["albuterol"]
        assert shared.notes == "Inhaler in left jacket pocket"
        assert shared.age == 36

    def test_defaults_keep_notes_private(self, profile: UserProfile, today: date) -> None:
        shared = build_shared_profile(profile, SOSSettings(), today=today)
        assert shared.notes is None, "notes are opt-in"
        assert shared.blood_type == "O+"

    def test_empty_values_omitted_even_when_allowed(self, today: date) -> None:
        bare = UserProfile(user_id="u", first_name="Ana", medical_info=MedicalInfo(blood_type=""))
        shared = build_shared_profile(bare, SOSSettings(share_notes=True), today=today)
        assert shared.model_dump(exclude_none=True) == {"name": "Ana"}

    def test_age_before_birthday_this_year(self, today: date) -> None:
        person = UserProfile(user_id="u", first_name="Ana", birthday=date(2000, 12, 25))
        assert build_shared_profile(person, SOSSettings(), today=today).age == 25

    def test_age_on_birthday(self, today: date) -> None:
        person = UserProfile(user_id="u", first_name="Ana", birthday=date(2000, 10, 19))
        assert build_shared_profile(person, SOSSettings(), today=today).age == 26

    def test_document_omits_unshared_fields(self, profile: UserProfile, today: date) -> None:
        shared = build_shared_profile(profile, SOSSettings(share_blood_type=False, share_age=False), today=today)
        doc = shared.to_document()
        assert "bloodType" not in doc
        assert "age" not in doc
        assert doc["medicalConditions"] == ["asthma"], "documents use camelCase keys"
