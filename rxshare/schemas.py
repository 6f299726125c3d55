"""Request models for the HTTP API."""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from rxshare.errors import InvalidRequestError
from rxshare.identity import normalise_contact


def _contact(value: str) -> str:
    try:
        return normalise_contact(value)
    except InvalidRequestError as exc:
        raise ValueError(exc.message) from exc


class PatientInfo(BaseModel):
    name: str = Field(min_length=1)
    age: str = ""
    gender: Literal["Male", "Female", "Other"] = "Other"
    contact: str = Field(alias="mobile")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("contact")
    @classmethod
    def _normalise_contact(cls, value: str) -> str:
        return _contact(value)


class Medication(BaseModel):
    id: Optional[str] = None
    name: str = Field(min_length=1)
    dosage: str = Field(min_length=1)
    timing: Literal["before-meals", "after-meals", "with-meals"] = "after-meals"
    duration: str = ""
    days: Optional[List[str]] = None

    model_config = ConfigDict(extra="ignore")


class ClinicalInfo(BaseModel):
    diagnosis: str = Field(min_length=1)
    notes: str = ""
    follow_up_date: Optional[str] = Field(default=None, alias="followUpDate")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class DoctorInfo(BaseModel):
    name: str = ""
    qualification: str = ""
    registration: str = ""

    model_config = ConfigDict(extra="ignore")


class PrescriptionCreate(BaseModel):
    """Clinical payload submitted by the issuing clinician."""

    patient_info: PatientInfo = Field(alias="patientInfo")
    medications: List[Medication] = Field(min_length=1)
    clinical_info: ClinicalInfo = Field(alias="clinicalInfo")
    doctor_info: Optional[DoctorInfo] = Field(default=None, alias="doctorInfo")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RegisterRequest(BaseModel):
    name: str = Field(min_length=1)
    contact: str = Field(alias="mobile")
    password: str = Field(min_length=6)
    role: Literal["patient", "clinician"] = "patient"
    email: Optional[str] = None
    qualification: Optional[str] = None
    registration: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("contact")
    @classmethod
    def _normalise_contact(cls, value: str) -> str:
        return _contact(value)


class LoginRequest(BaseModel):
    contact: str = Field(alias="mobile")
    password: str
    role: Literal["patient", "clinician"] = "patient"

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("contact")
    @classmethod
    def _normalise_contact(cls, value: str) -> str:
        return _contact(value)


class GuestIdentityModel(BaseModel):
    kind: Literal["guest"] = "guest"
    name: str = ""
    contact: str = Field(alias="mobile")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("contact")
    @classmethod
    def _normalise_contact(cls, value: str) -> str:
        return _contact(value)


class LinkRequest(BaseModel):
    """Body of ``POST /api/share/{token}/link``.

    Account callers authenticate with a bearer token and send no identity;
    guests describe themselves here.
    """

    identity: Optional[GuestIdentityModel] = None


__all__ = [
    "ClinicalInfo",
    "DoctorInfo",
    "GuestIdentityModel",
    "LinkRequest",
    "LoginRequest",
    "Medication",
    "PatientInfo",
    "PrescriptionCreate",
    "RegisterRequest",
]
