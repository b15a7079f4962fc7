"""Persistence for issued one-time codes.

Consumption is a compare-and-set on ``consumed = false`` and is committed
before the call returns, so a verified code can never be replayed even if the
process dies before the follow-up effect is written.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from medivault.models import OtpPurpose, OtpVerification


class OtpStore(Protocol):
    async def add(
        self,
        requester_id: int,
        subject_id: int,
        purpose: OtpPurpose,
        code: str,
        issued_at: datetime,
        expires_at: datetime,
        reference_id: int | None = None,
    ) -> OtpVerification:
        ...

    async def find_latest_eligible(
        self,
        requester_id: int,
        subject_id: int,
        purpose: OtpPurpose,
        code: str,
        now: datetime,
        reference_id: int | None = None,
    ) -> Optional[OtpVerification]:
        ...

    async def consume(self, otp_id: int, verified_at: datetime) -> bool:
        ...

    async def mark_delivered(self, otp_id: int, delivered_at: datetime) -> None:
        ...


class SQLOtpStore:
    """OTP store backed by SQLAlchemy."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def add(
        self,
        requester_id: int,
        subject_id: int,
        purpose: OtpPurpose,
        code: str,
        issued_at: datetime,
        expires_at: datetime,
        reference_id: int | None = None,
    ) -> OtpVerification:
        record = OtpVerification(
            requester_id=requester_id,
            subject_id=subject_id,
            purpose=OtpPurpose(purpose).value,
            code=code,
            issued_at=issued_at,
            expires_at=expires_at,
            reference_id=reference_id,
            consumed=False,
        )
        self.db.add(record)
        # Durable before the code leaves the building.
        await self.db.commit()
        return record

    async def find_latest_eligible(
        self,
        requester_id: int,
        subject_id: int,
        purpose: OtpPurpose,
        code: str,
        now: datetime,
        reference_id: int | None = None,
    ) -> Optional[OtpVerification]:
        if reference_id is None:
            reference_clause = OtpVerification.reference_id.is_(None)
        else:
            reference_clause = OtpVerification.reference_id == reference_id
        result = await self.db.execute(
            select(OtpVerification)
            .where(
                OtpVerification.requester_id == requester_id,
                OtpVerification.subject_id == subject_id,
                OtpVerification.purpose == OtpPurpose(purpose).value,
                reference_clause,
                OtpVerification.code == code,
                OtpVerification.consumed.is_(False),
                OtpVerification.expires_at > now,
            )
            .order_by(OtpVerification.issued_at.desc(), OtpVerification.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def consume(self, otp_id: int, verified_at: datetime) -> bool:
        result = await self.db.execute(
            update(OtpVerification)
            .where(
                OtpVerification.id == otp_id,
                OtpVerification.consumed.is_(False),
            )
            .values(consumed=True, verified_at=verified_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            return False
        await self.db.commit()
        return True

    async def mark_delivered(self, otp_id: int, delivered_at: datetime) -> None:
        await self.db.execute(
            update(OtpVerification)
            .where(OtpVerification.id == otp_id)
            .values(delivered_at=delivered_at)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()


class InMemoryOtpStore:
    """In-memory OTP store for tests and local demos.

    ``calls`` counts every store operation so callers can assert that
    malformed input never reaches the store.
    """

    def __init__(self):
        self._records: list[OtpVerification] = []
        self._next_id = 1
        self._lock = asyncio.Lock()
        self.calls = 0

    @property
    def records(self) -> list[OtpVerification]:
        return list(self._records)

    async def add(
        self,
        requester_id: int,
        subject_id: int,
        purpose: OtpPurpose,
        code: str,
        issued_at: datetime,
        expires_at: datetime,
        reference_id: int | None = None,
    ) -> OtpVerification:
        self.calls += 1
        record = OtpVerification(
            id=self._next_id,
            requester_id=requester_id,
            subject_id=subject_id,
            purpose=OtpPurpose(purpose).value,
            code=code,
            issued_at=issued_at,
            expires_at=expires_at,
            reference_id=reference_id,
            delivered_at=None,
            verified_at=None,
            consumed=False,
        )
        self._records.append(record)
        self._next_id += 1
        return record

    async def find_latest_eligible(
        self,
        requester_id: int,
        subject_id: int,
        purpose: OtpPurpose,
        code: str,
        now: datetime,
        reference_id: int | None = None,
    ) -> Optional[OtpVerification]:
        self.calls += 1
        candidates = [
            r
            for r in self._records
            if r.requester_id == requester_id
            and r.subject_id == subject_id
            and r.purpose == OtpPurpose(purpose).value
            and r.reference_id == reference_id
            and r.code == code
            and not r.consumed
            and r.expires_at > now
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda r: (r.issued_at, r.id))

    async def consume(self, otp_id: int, verified_at: datetime) -> bool:
        self.calls += 1
        async with self._lock:
            for record in self._records:
                if record.id == otp_id:
                    if record.consumed:
                        return False
                    record.consumed = True
                    record.verified_at = verified_at
                    return True
        return False

    async def mark_delivered(self, otp_id: int, delivered_at: datetime) -> None:
        self.calls += 1
        for record in self._records:
            if record.id == otp_id:
                record.delivered_at = delivered_at
                return

    def clear(self) -> None:
        self._records.clear()
        self._next_id = 1
        self.calls = 0
