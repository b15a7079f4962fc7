"""Shared API dependencies: identity, role gates, stores and services."""

from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from medivault.config import settings
from medivault.database import get_db
from medivault.models import User, UserRole
from medivault.services.access import AccessRequestService
from medivault.services.audit import AuditTrail, SQLAuditTrail
from medivault.services.deletion import DeletionRequestStore, DeletionService, SQLDeletionRequestStore
from medivault.services.documents import (
    DocumentReadService,
    DocumentService,
    DocumentStore,
    SQLDocumentStore,
)
from medivault.services.email import EmailOtpDelivery
from medivault.services.errors import AccessProtocolError, NotAuthenticated
from medivault.services.otp import AttemptThrottle, OtpDelivery, OtpIssuer, OtpVerifier
from medivault.services.otp_store import OtpStore, SQLOtpStore
from medivault.services.permissions import (
    AccessGrantEffector,
    PermissionService,
    PermissionStore,
    SQLPermissionStore,
)
from medivault.services.users import SQLUserStore, UserStore

security = HTTPBearer(auto_error=False)

_attempt_throttle = AttemptThrottle(
    max_attempts=settings.otp_verify_max_attempts,
    window_seconds=settings.otp_verify_window_seconds,
)


def to_http_exception(exc: AccessProtocolError) -> HTTPException:
    """Translate a core error into the HTTP error the client sees."""
    return HTTPException(
        status_code=exc.status_code,
        detail=exc.message,
        headers={"X-Error-Type": exc.error_type},
    )


# ----- Stores -----


def get_user_store(db: Annotated[AsyncSession, Depends(get_db)]) -> UserStore:
    return SQLUserStore(db)


def get_otp_store(db: Annotated[AsyncSession, Depends(get_db)]) -> OtpStore:
    return SQLOtpStore(db)


def get_permission_store(db: Annotated[AsyncSession, Depends(get_db)]) -> PermissionStore:
    return SQLPermissionStore(db)


def get_document_store(db: Annotated[AsyncSession, Depends(get_db)]) -> DocumentStore:
    return SQLDocumentStore(db)


def get_deletion_store(db: Annotated[AsyncSession, Depends(get_db)]) -> DeletionRequestStore:
    return SQLDeletionRequestStore(db)


def get_audit_trail(db: Annotated[AsyncSession, Depends(get_db)]) -> AuditTrail:
    return SQLAuditTrail(db)


def get_otp_delivery() -> OtpDelivery:
    return EmailOtpDelivery()


def get_attempt_throttle() -> AttemptThrottle:
    return _attempt_throttle


# ----- Identity -----


async def get_authenticated_user(
    users: Annotated[UserStore, Depends(get_user_store)],
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> User:
    """Get authenticated user from valid JWT access token."""
    credentials_exception = to_http_exception(
        NotAuthenticated("Could not validate credentials")
    )
    credentials_exception.headers["WWW-Authenticate"] = "Bearer"

    if credentials is None:
        raise credentials_exception
    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
        user_id_str: str | None = payload.get("sub")
        token_type: str | None = payload.get("type")
        if user_id_str is None:
            raise credentials_exception
        if token_type and token_type != "access":
            raise credentials_exception
        user_id = int(user_id_str)
    except (JWTError, ValueError):
        raise credentials_exception

    user = await users.get(user_id)
    if not user:
        raise credentials_exception
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive",
        )
    return user


def _require_role(role: UserRole, detail: str):
    async def dependency(
        current_user: Annotated[User, Depends(get_authenticated_user)],
    ) -> User:
        if current_user.role != role.value:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)
        return current_user

    return dependency


require_patient = _require_role(UserRole.patient, "Patient access required")
require_doctor = _require_role(UserRole.doctor, "Doctor access required")
require_hospital_admin = _require_role(
    UserRole.hospital_admin, "Hospital admin access required"
)


# ----- Services -----


def get_otp_issuer(
    store: Annotated[OtpStore, Depends(get_otp_store)],
    delivery: Annotated[OtpDelivery, Depends(get_otp_delivery)],
) -> OtpIssuer:
    return OtpIssuer(store, delivery)


def get_otp_verifier(
    store: Annotated[OtpStore, Depends(get_otp_store)],
    throttle: Annotated[AttemptThrottle, Depends(get_attempt_throttle)],
) -> OtpVerifier:
    return OtpVerifier(store, throttle=throttle)


def get_permission_service(
    store: Annotated[PermissionStore, Depends(get_permission_store)],
    audit: Annotated[AuditTrail, Depends(get_audit_trail)],
) -> PermissionService:
    return PermissionService(store, audit)


def get_access_request_service(
    users: Annotated[UserStore, Depends(get_user_store)],
    issuer: Annotated[OtpIssuer, Depends(get_otp_issuer)],
    verifier: Annotated[OtpVerifier, Depends(get_otp_verifier)],
    permission_store: Annotated[PermissionStore, Depends(get_permission_store)],
    permissions: Annotated[PermissionService, Depends(get_permission_service)],
    audit: Annotated[AuditTrail, Depends(get_audit_trail)],
) -> AccessRequestService:
    return AccessRequestService(
        users=users,
        issuer=issuer,
        verifier=verifier,
        effector=AccessGrantEffector(permission_store),
        permissions=permissions,
        audit=audit,
    )


def get_document_service(
    store: Annotated[DocumentStore, Depends(get_document_store)],
    audit: Annotated[AuditTrail, Depends(get_audit_trail)],
) -> DocumentService:
    return DocumentService(store, audit)


def get_document_read_service(
    documents: Annotated[DocumentStore, Depends(get_document_store)],
    permissions: Annotated[PermissionStore, Depends(get_permission_store)],
    audit: Annotated[AuditTrail, Depends(get_audit_trail)],
) -> DocumentReadService:
    return DocumentReadService(documents, permissions, audit)


def get_deletion_service(
    requests: Annotated[DeletionRequestStore, Depends(get_deletion_store)],
    documents: Annotated[DocumentStore, Depends(get_document_store)],
    users: Annotated[UserStore, Depends(get_user_store)],
    issuer: Annotated[OtpIssuer, Depends(get_otp_issuer)],
    verifier: Annotated[OtpVerifier, Depends(get_otp_verifier)],
    audit: Annotated[AuditTrail, Depends(get_audit_trail)],
) -> DeletionService:
    return DeletionService(
        requests=requests,
        documents=documents,
        users=users,
        issuer=issuer,
        verifier=verifier,
        audit=audit,
    )
