"""Consent filtering: from a full profile to the minimal shareable payload.

The user's :class:`SOSSettings` decide which medical fields leave the
device.  The name is always shared; every other field is included only
when its flag is on AND the profile actually has a value for it.  The
result is computed once per session and never recomputed, so toggling a
setting mid-session does not alter a share already in flight.
"""

from __future__ import annotations

from datetime import date

from lifeline.models.session import SharedProfile, SOSSettings
from lifeline.models.user_profile import UserProfile


def build_shared_profile(
    profile: UserProfile,
    settings: SOSSettings,
    *,
    today: date | None = None,
) -> SharedProfile:
    """Reduce *profile* to the fields *settings* allow.

    Parameters
    ----------
    profile:
        The user's full profile.
    settings:
        The user's current sharing flags.
    today:
        Reference date for the age calculation; defaults to today.

    Returns
    -------
    SharedProfile
        Absent or disallowed fields are left as ``None`` (omitted when
        the profile is written as a document).
    """
    medical = profile.medical_info
    fields: dict[str, object] = {"name": profile.display_name}

    if settings.share_blood_type and medical.blood_type:
        fields["blood_type"] = medical.blood_type
    if settings.share_allergies and medical.allergies:
        fields["allergies"] = list(medical.allergies)
    if settings.share_medical_conditions and medical.conditions:
        fields["medical_conditions"] = list(medical.conditions)
    if settings.share_medications and medical.medications:
        fields["medications"] = list(medical.medications)
    if settings.share_notes and medical.notes:
        fields["notes"] = medical.notes
    if settings.share_age:
        age = profile.age_on(today or date.today())
        if age is not None:
            fields["age"] = age

    return SharedProfile(**fields)
