"""Patient document endpoints: listings, trash, restore, deletion requests."""

from fastapi import APIRouter, Depends

from medivault.api.deps import (
    get_deletion_service,
    get_document_service,
    require_patient,
    to_http_exception,
)
from medivault.models import User
from medivault.schemas.document import (
    DeletionRequestCreate,
    DeletionRequestResponse,
    DocumentResponse,
)
from medivault.services.deletion import DeletionService
from medivault.services.documents import DocumentService
from medivault.services.errors import AccessProtocolError

router = APIRouter(tags=["Documents"])


@router.get("/documents", response_model=list[DocumentResponse])
async def list_documents(
    service: DocumentService = Depends(get_document_service),
    current_user: User = Depends(require_patient),
):
    """Active, untrashed documents of the current patient."""
    documents = await service.list_active(current_user.id)
    return [DocumentResponse.model_validate(doc) for doc in documents]


@router.get("/documents/trash", response_model=list[DocumentResponse])
async def list_trash(
    service: DocumentService = Depends(get_document_service),
    current_user: User = Depends(require_patient),
):
    documents = await service.list_trashed(current_user.id)
    return [DocumentResponse.model_validate(doc) for doc in documents]


@router.post("/documents/{document_id}/restore", response_model=DocumentResponse)
async def restore_document(
    document_id: int,
    service: DocumentService = Depends(get_document_service),
    current_user: User = Depends(require_patient),
):
    """Move a trashed document back to Medical Records."""
    try:
        document = await service.restore(current_user.id, document_id)
    except AccessProtocolError as exc:
        raise to_http_exception(exc) from exc
    return DocumentResponse.model_validate(document)


@router.post(
    "/documents/{document_id}/deletion-request",
    response_model=DeletionRequestResponse,
    status_code=201,
)
async def request_document_deletion(
    document_id: int,
    data: DeletionRequestCreate | None = None,
    service: DeletionService = Depends(get_deletion_service),
    current_user: User = Depends(require_patient),
):
    """Ask a hospital admin to delete a document. The admin confirms via OTP."""
    try:
        request = await service.create_request(
            current_user.id, document_id, data.reason if data else None
        )
    except AccessProtocolError as exc:
        raise to_http_exception(exc) from exc
    return DeletionRequestResponse.model_validate(request)


@router.get("/deletion-requests", response_model=list[DeletionRequestResponse])
async def list_my_deletion_requests(
    service: DeletionService = Depends(get_deletion_service),
    current_user: User = Depends(require_patient),
):
    requests = await service.list_for_patient(current_user.id)
    return [DeletionRequestResponse.model_validate(r) for r in requests]
