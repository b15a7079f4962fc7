"""Hospital admin processing of document deletion requests."""

from fastapi import APIRouter, Depends, Query

from medivault.api.deps import get_deletion_service, require_hospital_admin, to_http_exception
from medivault.models import DeletionStatus, User
from medivault.schemas.access import CodeSubmission, OtpIssuedResponse
from medivault.schemas.document import DeletionQueueItem, DeletionRequestResponse
from medivault.services.deletion import DeletionService
from medivault.services.errors import AccessProtocolError

router = APIRouter(prefix="/admin/deletion-requests", tags=["Admin"])


@router.get("", response_model=list[DeletionQueueItem])
async def list_deletion_requests(
    status_filter: DeletionStatus | None = Query(
        DeletionStatus.pending, alias="status", description="pending, approved, rejected"
    ),
    service: DeletionService = Depends(get_deletion_service),
    _admin: User = Depends(require_hospital_admin),
):
    entries = await service.list_requests(status_filter)
    return [
        DeletionQueueItem(
            **DeletionRequestResponse.model_validate(entry.request).model_dump(),
            file_name=entry.document.file_name if entry.document else None,
            document_type=entry.document.document_type if entry.document else None,
            patient_name=entry.patient.full_name if entry.patient else None,
            patient_email=entry.patient.email if entry.patient else None,
            patient_code=entry.patient.patient_code if entry.patient else None,
        )
        for entry in entries
    ]


@router.post("/{request_id}/otp", response_model=OtpIssuedResponse, status_code=201)
async def send_deletion_otp(
    request_id: int,
    service: DeletionService = Depends(get_deletion_service),
    current_user: User = Depends(require_hospital_admin),
):
    """Email the requesting patient a code confirming the deletion."""
    try:
        issued = await service.issue_approval_otp(current_user, request_id)
    except AccessProtocolError as exc:
        raise to_http_exception(exc) from exc
    return OtpIssuedResponse(
        subject_id=issued.subject_id,
        purpose=issued.purpose.value,
        expires_at=issued.expires_at,
    )


@router.post("/{request_id}/verify", response_model=DeletionRequestResponse)
async def approve_deletion(
    request_id: int,
    data: CodeSubmission,
    service: DeletionService = Depends(get_deletion_service),
    current_user: User = Depends(require_hospital_admin),
):
    """Verify the patient's code; on success the document moves to their trash."""
    try:
        request = await service.approve_with_otp(current_user.id, request_id, data.code)
    except AccessProtocolError as exc:
        raise to_http_exception(exc) from exc
    return DeletionRequestResponse.model_validate(request)


@router.post("/{request_id}/reject", response_model=DeletionRequestResponse)
async def reject_deletion(
    request_id: int,
    service: DeletionService = Depends(get_deletion_service),
    current_user: User = Depends(require_hospital_admin),
):
    """Reject without OTP. The document is left untouched."""
    try:
        request = await service.reject(current_user.id, request_id)
    except AccessProtocolError as exc:
        raise to_http_exception(exc) from exc
    return DeletionRequestResponse.model_validate(request)
