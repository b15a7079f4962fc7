"""Compliance trail of who did what to which patient's data."""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from medivault.models import AccessAuditLog

logger = logging.getLogger("medivault.audit")


class AuditTrail(Protocol):
    async def record(self, actor_id: int, subject_id: int, action: str, **details: Any) -> None:
        ...


class SQLAuditTrail:
    """Audit rows join the caller's session and commit with it."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(self, actor_id: int, subject_id: int, action: str, **details: Any) -> None:
        entry = AccessAuditLog(
            actor_id=actor_id,
            subject_id=subject_id,
            action=action,
            metadata_=json.dumps(details, default=str) if details else None,
        )
        self.db.add(entry)
        await self.db.flush()
        logger.info("audit action=%s actor=%s subject=%s", action, actor_id, subject_id)


class InMemoryAuditTrail:
    def __init__(self):
        self.entries: list[dict[str, Any]] = []

    async def record(self, actor_id: int, subject_id: int, action: str, **details: Any) -> None:
        self.entries.append(
            {"actor_id": actor_id, "subject_id": subject_id, "action": action, **details}
        )

    def actions(self) -> list[str]:
        return [entry["action"] for entry in self.entries]
