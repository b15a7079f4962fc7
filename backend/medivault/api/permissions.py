"""Patient view of who can read their records, and revocation."""

from fastapi import APIRouter, Depends

from medivault.api.deps import (
    get_permission_service,
    get_user_store,
    require_patient,
    to_http_exception,
)
from medivault.models import User
from medivault.schemas.access import AccessPermissionResponse, PermissionListItem
from medivault.services.errors import AccessProtocolError
from medivault.services.permissions import PermissionService
from medivault.services.users import UserStore

router = APIRouter(prefix="/access/permissions", tags=["Access Control"])


@router.get("", response_model=list[PermissionListItem])
async def list_my_permissions(
    service: PermissionService = Depends(get_permission_service),
    users: UserStore = Depends(get_user_store),
    current_user: User = Depends(require_patient),
):
    """Every permission ever granted on the current patient's records."""
    permissions = await service.list_for_subject(current_user.id)
    doctors = await users.get_many(p.granted_to_id for p in permissions)
    now = service.clock()
    items = []
    for permission in permissions:
        doctor = doctors.get(permission.granted_to_id)
        base = AccessPermissionResponse.model_validate(permission).model_dump()
        items.append(
            PermissionListItem(
                **base,
                counterpart_name=doctor.full_name if doctor else None,
                counterpart_email=doctor.email if doctor else None,
                currently_authorized=permission.is_current(now),
            )
        )
    return items


@router.post("/{permission_id}/revoke", response_model=AccessPermissionResponse)
async def revoke_permission(
    permission_id: int,
    service: PermissionService = Depends(get_permission_service),
    current_user: User = Depends(require_patient),
):
    """Patient revokes a doctor's access. Takes effect immediately."""
    try:
        permission = await service.revoke(current_user.id, permission_id)
    except AccessProtocolError as exc:
        raise to_http_exception(exc) from exc
    return AccessPermissionResponse.model_validate(permission)
