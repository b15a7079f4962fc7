"""Pydantic schemas for OTP access requests and permissions."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

# ----- OTP handshake -----


class OtpRequestCreate(BaseModel):
    """Doctor asks for a code to be emailed to a patient."""

    subject_id: int = Field(..., ge=1, description="Patient to request access to")


class OtpIssuedResponse(BaseModel):
    """Confirms delivery. The code itself is never returned to the requester."""

    subject_id: int
    purpose: str
    expires_at: datetime
    message: str = "OTP has been sent to the patient's email"


class OtpVerifyRequest(BaseModel):
    subject_id: int = Field(..., ge=1)
    code: str = Field(..., max_length=32, description="Code the patient relayed")


class CodeSubmission(BaseModel):
    code: str = Field(..., max_length=32, description="Code the patient relayed")


# ----- Permissions -----


class AccessPermissionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    subject_id: int
    granted_to_id: int
    scope: str
    granted_at: datetime
    expires_at: datetime | None = None
    active: bool
    revoked_at: datetime | None = None
    notes: str | None = None


class PermissionListItem(AccessPermissionResponse):
    """Permission with the other party's name, for dashboards."""

    counterpart_name: str | None = None
    counterpart_email: str | None = None
    currently_authorized: bool


class PatientSearchResult(BaseModel):
    subject_id: int
    full_name: str
    patient_code: str
    currently_authorized: bool
