"""Pydantic schemas for documents and deletion requests."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class DocumentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: int
    file_name: str
    file_type: str
    document_type: str
    hospital_name: str | None = None
    description: str | None = None
    document_date: datetime | None = None
    is_active: bool
    is_trashed: bool
    trashed_at: datetime | None = None


class DeletionRequestCreate(BaseModel):
    reason: str | None = Field(None, max_length=2000, description="Optional reason")


class DeletionRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    document_id: int
    requested_by_id: int
    reason: str | None = None
    status: str
    requested_at: datetime
    processed_at: datetime | None = None
    processed_by_id: int | None = None


class DeletionQueueItem(DeletionRequestResponse):
    """Admin queue row enriched with document and patient details."""

    file_name: str | None = None
    document_type: str | None = None
    patient_name: str | None = None
    patient_email: str | None = None
    patient_code: str | None = None
