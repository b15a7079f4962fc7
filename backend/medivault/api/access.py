"""Doctor side of the OTP handshake: request a code, submit the relayed code."""

from fastapi import APIRouter, Depends

from medivault.api.deps import (
    get_access_request_service,
    get_permission_service,
    require_doctor,
    to_http_exception,
)
from medivault.models import User
from medivault.schemas.access import (
    AccessPermissionResponse,
    OtpIssuedResponse,
    OtpRequestCreate,
    OtpVerifyRequest,
)
from medivault.services.access import AccessRequestService
from medivault.services.errors import AccessProtocolError
from medivault.services.permissions import PermissionService

router = APIRouter(prefix="/access", tags=["Access Requests"])


@router.post("/otp", response_model=OtpIssuedResponse, status_code=201)
async def request_access_otp(
    data: OtpRequestCreate,
    service: AccessRequestService = Depends(get_access_request_service),
    current_user: User = Depends(require_doctor),
):
    """Email the patient a one-time code the doctor must obtain from them."""
    try:
        issued = await service.request_access(current_user, data.subject_id)
    except AccessProtocolError as exc:
        raise to_http_exception(exc) from exc
    return OtpIssuedResponse(
        subject_id=issued.subject_id,
        purpose=issued.purpose.value,
        expires_at=issued.expires_at,
    )


@router.post("/otp/verify", response_model=AccessPermissionResponse)
async def verify_access_otp(
    data: OtpVerifyRequest,
    service: AccessRequestService = Depends(get_access_request_service),
    current_user: User = Depends(require_doctor),
):
    """Verify the relayed code and receive view access to the patient's records."""
    try:
        permission = await service.verify_access(current_user, data.subject_id, data.code)
    except AccessProtocolError as exc:
        raise to_http_exception(exc) from exc
    return AccessPermissionResponse.model_validate(permission)


@router.get("/granted", response_model=list[AccessPermissionResponse])
async def list_granted_access(
    service: PermissionService = Depends(get_permission_service),
    current_user: User = Depends(require_doctor),
):
    """Permissions the current doctor holds, newest first."""
    permissions = await service.list_for_grantee(current_user.id)
    return [AccessPermissionResponse.model_validate(p) for p in permissions]
