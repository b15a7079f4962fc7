"""Doctor-facing patient lookup and the authorized document read path."""

from fastapi import APIRouter, Depends, Query

from medivault.api.deps import (
    get_access_request_service,
    get_document_read_service,
    require_doctor,
    to_http_exception,
)
from medivault.models import User
from medivault.schemas.access import PatientSearchResult
from medivault.schemas.document import DocumentResponse
from medivault.services.access import AccessRequestService
from medivault.services.documents import DocumentReadService
from medivault.services.errors import AccessProtocolError

router = APIRouter(prefix="/patients", tags=["Patients"])


@router.get("/search", response_model=PatientSearchResult)
async def search_patient(
    patient_code: str = Query(
        ..., pattern=r"^\s*[Pp][Aa][Tt]-\d{8}\s*$", description="Patient ID, e.g. PAT-12345678"
    ),
    service: AccessRequestService = Depends(get_access_request_service),
    current_user: User = Depends(require_doctor),
):
    try:
        patient, authorized = await service.lookup_patient(current_user, patient_code)
    except AccessProtocolError as exc:
        raise to_http_exception(exc) from exc
    return PatientSearchResult(
        subject_id=patient.id,
        full_name=patient.full_name,
        patient_code=patient.patient_code,
        currently_authorized=authorized,
    )


@router.get("/{subject_id}/documents", response_model=list[DocumentResponse])
async def list_patient_documents(
    subject_id: int,
    service: DocumentReadService = Depends(get_document_read_service),
    current_user: User = Depends(require_doctor),
):
    """Active documents of a patient who granted the current doctor access."""
    try:
        documents = await service.list_for_grantee(current_user.id, subject_id)
    except AccessProtocolError as exc:
        raise to_http_exception(exc) from exc
    return [DocumentResponse.model_validate(doc) for doc in documents]


@router.get("/{subject_id}/documents/{document_id}", response_model=DocumentResponse)
async def get_patient_document(
    subject_id: int,
    document_id: int,
    service: DocumentReadService = Depends(get_document_read_service),
    current_user: User = Depends(require_doctor),
):
    try:
        document = await service.get_for_grantee(current_user.id, subject_id, document_id)
    except AccessProtocolError as exc:
        raise to_http_exception(exc) from exc
    return DocumentResponse.model_validate(document)
