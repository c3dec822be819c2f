"""User profile models consumed by the SOS subsystem.

Only the parts of the profile the emergency flow reads are modelled
here: the display name, the birthday (age is derived at share time, never
stored), the medical block, and the list of emergency contacts.  Editing
these records is handled elsewhere in the application.
"""

from __future__ import annotations

from datetime import date

from pydantic import BaseModel, Field


class MedicalInfo(BaseModel):
    """Medical details a user may choose to share during an emergency."""

    blood_type: str | None = None
    allergies: list[str] = Field(default_factory=list)
    conditions: list[str] = Field(default_factory=list)
    medications: list[str] = Field(default_factory=list)
    notes: str | None = None


class EmergencyContact(BaseModel):
    """A person to alert when the user starts an SOS session.

    ``contact_id`` is the key used to look up a registered push token for
    the contact.  When not given, the phone number doubles as the id.
    """

    name: str
    phone_number: str
    contact_id: str | None = None
    relationship: str | None = None

    @property
    def directory_key(self) -> str:
        return self.contact_id or self.phone_number


class UserProfile(BaseModel):
    """The slice of a user profile the emergency flow depends on."""

    user_id: str
    first_name: str = ""
    last_name: str = ""
    birthday: date | None = None
    medical_info: MedicalInfo = Field(default_factory=MedicalInfo)
    emergency_contacts: list[EmergencyContact] = Field(default_factory=list)

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def age_on(self, today: date) -> int | None:
        """Whole years between ``birthday`` and *today*, or None."""
        if self.birthday is None:
            return None
        age = today.year - self.birthday.year
        if (today.month, today.day) < (self.birthday.month, self.birthday.day):
            age -= 1
        return age
