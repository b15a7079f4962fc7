"""Access permissions: the grant effector, the authorization check, revocation."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from medivault.config import settings
from medivault.models import AccessPermission, AccessScope, OtpPurpose
from medivault.services.audit import AuditTrail
from medivault.services.errors import (
    AccessProtocolError,
    EffectorWriteFailed,
    NotFound,
    PermissionDenied,
)
from medivault.services.otp import Clock, VerificationProof, utcnow

logger = logging.getLogger("medivault.permissions")

OTP_GRANT_NOTE = "Access granted via OTP verification"


class PermissionStore(Protocol):
    async def add(self, permission: AccessPermission) -> AccessPermission:
        ...

    async def get(self, permission_id: int) -> Optional[AccessPermission]:
        ...

    async def find_current(
        self, subject_id: int, granted_to_id: int, now: datetime
    ) -> Optional[AccessPermission]:
        ...

    async def list_for_subject(self, subject_id: int) -> list[AccessPermission]:
        ...

    async def list_for_grantee(self, granted_to_id: int) -> list[AccessPermission]:
        ...

    async def deactivate(self, permission_id: int, revoked_at: datetime) -> None:
        ...


class SQLPermissionStore:
    """Permission store backed by SQLAlchemy."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def add(self, permission: AccessPermission) -> AccessPermission:
        self.db.add(permission)
        await self.db.commit()
        return permission

    async def get(self, permission_id: int) -> Optional[AccessPermission]:
        result = await self.db.execute(
            select(AccessPermission).where(AccessPermission.id == permission_id)
        )
        return result.scalar_one_or_none()

    async def find_current(
        self, subject_id: int, granted_to_id: int, now: datetime
    ) -> Optional[AccessPermission]:
        result = await self.db.execute(
            select(AccessPermission)
            .where(
                AccessPermission.subject_id == subject_id,
                AccessPermission.granted_to_id == granted_to_id,
                AccessPermission.active.is_(True),
                or_(
                    AccessPermission.expires_at.is_(None),
                    AccessPermission.expires_at > now,
                ),
            )
            .order_by(AccessPermission.granted_at.desc(), AccessPermission.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_for_subject(self, subject_id: int) -> list[AccessPermission]:
        result = await self.db.execute(
            select(AccessPermission)
            .where(AccessPermission.subject_id == subject_id)
            .order_by(AccessPermission.granted_at.desc())
        )
        return list(result.scalars().all())

    async def list_for_grantee(self, granted_to_id: int) -> list[AccessPermission]:
        result = await self.db.execute(
            select(AccessPermission)
            .where(AccessPermission.granted_to_id == granted_to_id)
            .order_by(AccessPermission.granted_at.desc())
        )
        return list(result.scalars().all())

    async def deactivate(self, permission_id: int, revoked_at: datetime) -> None:
        await self.db.execute(
            update(AccessPermission)
            .where(AccessPermission.id == permission_id)
            .values(active=False, revoked_at=revoked_at)
            .execution_options(synchronize_session="fetch")
        )
        await self.db.commit()


class InMemoryPermissionStore:
    """In-memory permission store for tests and local demos."""

    def __init__(self):
        self._permissions: list[AccessPermission] = []
        self._next_id = 1
        self.fail_writes = False

    @property
    def permissions(self) -> list[AccessPermission]:
        return list(self._permissions)

    async def add(self, permission: AccessPermission) -> AccessPermission:
        if self.fail_writes:
            raise RuntimeError("permission store unavailable")
        permission.id = self._next_id
        self._next_id += 1
        self._permissions.append(permission)
        return permission

    async def get(self, permission_id: int) -> Optional[AccessPermission]:
        for permission in self._permissions:
            if permission.id == permission_id:
                return permission
        return None

    async def find_current(
        self, subject_id: int, granted_to_id: int, now: datetime
    ) -> Optional[AccessPermission]:
        matches = [
            p
            for p in self._permissions
            if p.subject_id == subject_id
            and p.granted_to_id == granted_to_id
            and p.is_current(now)
        ]
        if not matches:
            return None
        return max(matches, key=lambda p: (p.granted_at, p.id))

    async def list_for_subject(self, subject_id: int) -> list[AccessPermission]:
        return sorted(
            (p for p in self._permissions if p.subject_id == subject_id),
            key=lambda p: p.granted_at,
            reverse=True,
        )

    async def list_for_grantee(self, granted_to_id: int) -> list[AccessPermission]:
        return sorted(
            (p for p in self._permissions if p.granted_to_id == granted_to_id),
            key=lambda p: p.granted_at,
            reverse=True,
        )

    async def deactivate(self, permission_id: int, revoked_at: datetime) -> None:
        permission = await self.get(permission_id)
        if permission is not None:
            permission.active = False
            permission.revoked_at = revoked_at

    def clear(self) -> None:
        self._permissions.clear()
        self._next_id = 1


async def is_currently_authorized(
    store: PermissionStore,
    subject_id: int,
    granted_to_id: int,
    now: datetime | None = None,
) -> bool:
    """True while an active, unexpired permission exists for the pair."""
    permission = await store.find_current(subject_id, granted_to_id, now or utcnow())
    return permission is not None


class AccessGrantEffector:
    """Turns a verified ``document_access`` proof into a read permission."""

    def __init__(
        self,
        store: PermissionStore,
        dedupe: bool | None = None,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.dedupe = settings.access_grant_dedupe if dedupe is None else dedupe
        self.clock = clock

    async def grant(self, proof: VerificationProof) -> AccessPermission:
        if proof.purpose != OtpPurpose.document_access:
            raise PermissionDenied("This verification does not authorize document access.")

        now = self.clock()
        try:
            if self.dedupe:
                existing = await self.store.find_current(
                    proof.subject_id, proof.requester_id, now
                )
                if existing is not None:
                    logger.info(
                        "Reusing permission %s for subject=%s grantee=%s",
                        existing.id,
                        proof.subject_id,
                        proof.requester_id,
                    )
                    return existing

            permission = AccessPermission(
                subject_id=proof.subject_id,
                granted_to_id=proof.requester_id,
                scope=AccessScope.view_only.value,
                granted_at=now,
                expires_at=None,
                active=True,
                revoked_at=None,
                notes=OTP_GRANT_NOTE,
            )
            permission = await self.store.add(permission)
        except AccessProtocolError:
            raise
        except Exception as exc:
            logger.exception(
                "OTP %s verified but permission write failed (subject=%s grantee=%s)",
                proof.otp_id,
                proof.subject_id,
                proof.requester_id,
            )
            raise EffectorWriteFailed() from exc

        logger.info(
            "Permission %s granted: subject=%s grantee=%s via OTP %s",
            permission.id,
            proof.subject_id,
            proof.requester_id,
            proof.otp_id,
        )
        return permission


class PermissionService:
    """Patient and doctor views over permissions, plus patient revocation."""

    def __init__(
        self,
        store: PermissionStore,
        audit: AuditTrail | None = None,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.audit = audit
        self.clock = clock

    async def list_for_subject(self, subject_id: int) -> list[AccessPermission]:
        return await self.store.list_for_subject(subject_id)

    async def list_for_grantee(self, granted_to_id: int) -> list[AccessPermission]:
        return await self.store.list_for_grantee(granted_to_id)

    async def is_currently_authorized(self, subject_id: int, granted_to_id: int) -> bool:
        return await is_currently_authorized(
            self.store, subject_id, granted_to_id, self.clock()
        )

    async def revoke(self, subject_id: int, permission_id: int) -> AccessPermission:
        permission = await self.store.get(permission_id)
        if permission is None or permission.subject_id != subject_id:
            raise NotFound("Permission not found")
        if permission.active:
            await self.store.deactivate(permission.id, self.clock())
            if self.audit is not None:
                await self.audit.record(
                    subject_id, subject_id, "access_revoked",
                    permission_id=permission.id, granted_to_id=permission.granted_to_id,
                )
            logger.info(
                "Permission %s revoked by subject %s", permission.id, subject_id
            )
        return await self.store.get(permission_id) or permission
