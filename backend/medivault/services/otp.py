"""One-time code issuing and verification.

The handshake has three phases: a requester (doctor or hospital admin) asks
for a code, the code is emailed to the subject (patient), and the requester
submits the code the patient relayed to them. Only a successful verification
produces a ``VerificationProof``, which is what the grant and deletion
effectors require before they write anything.
"""

from __future__ import annotations

import asyncio
import logging
import re
import secrets
import time
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Protocol

from medivault.config import settings
from medivault.models import OtpPurpose
from medivault.services.errors import (
    DeliveryFailed,
    InvalidOrExpired,
    TooManyAttempts,
    ValidationError,
)
from medivault.services.otp_store import OtpStore

logger = logging.getLogger("medivault.otp")

Clock = Callable[[], datetime]

_NON_DIGITS = re.compile(r"[^0-9]")

_otp_event_counters: Counter[str] = Counter()


def _count(event: str) -> None:
    _otp_event_counters[event] += 1


def get_otp_event_counters() -> dict[str, int]:
    """Process-wide OTP outcome counters for the metrics endpoint."""
    return dict(_otp_event_counters)


def utcnow() -> datetime:
    return datetime.now(UTC)


def generate_otp_code(length: int = 6) -> str:
    """Uniform code over 0..10**length-1, zero padded to a fixed width."""
    return str(secrets.randbelow(10**length)).zfill(length)


def normalize_otp_code(raw: object, length: int = 6) -> str:
    """Strip separators and require exactly ``length`` ASCII digits."""
    if not isinstance(raw, str):
        raise ValidationError(f"OTP must be exactly {length} digits.")
    digits = _NON_DIGITS.sub("", raw)
    if len(digits) != length:
        raise ValidationError(f"OTP must be exactly {length} digits.")
    return digits


def _require_ids(**ids: int | None) -> None:
    for name, value in ids.items():
        if not value:
            raise ValidationError(f"Missing required identifier: {name}")


def _coerce_purpose(purpose: object) -> OtpPurpose:
    try:
        return OtpPurpose(purpose)
    except ValueError as exc:
        raise ValidationError(f"Unknown OTP purpose: {purpose}") from exc


@dataclass(frozen=True)
class IssuedOtp:
    otp_id: int
    subject_id: int
    purpose: OtpPurpose
    code: str
    expires_at: datetime
    reference_id: int | None = None


@dataclass(frozen=True)
class VerificationProof:
    """Evidence that a code was verified and consumed.

    ``reference_id`` names the object the code was issued for (a deletion
    request id), or ``None`` for codes that cover the whole subject.
    """

    otp_id: int
    requester_id: int
    subject_id: int
    purpose: OtpPurpose
    verified_at: datetime
    reference_id: int | None = None


class OtpDelivery(Protocol):
    async def send(
        self,
        to_address: str,
        subject_name: str,
        requester_name: str,
        code: str,
        purpose: OtpPurpose,
        document_name: str | None = None,
    ) -> None:
        """Deliver the code or raise ``DeliveryFailed``."""
        ...


class AttemptThrottle:
    """Counts verification attempts per (requester, subject) over a fixed window.

    Every attempt reserves a slot under the lock before the store is touched,
    so parallel guesses cannot all slip past the limit. Once ``max_attempts``
    slots are taken the pair is locked out until the window resets. A success
    clears the pair; an attempt that did not fail on its guess hands its slot
    back. State is process local.
    """

    def __init__(
        self,
        max_attempts: int,
        window_seconds: float,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._monotonic = monotonic
        self._attempts: dict[tuple[int, int], tuple[int, float]] = {}
        self._lock = asyncio.Lock()

    @property
    def tracked_pairs(self) -> int:
        return len(self._attempts)

    def _prune(self, now: float) -> None:
        expired = [key for key, (_, reset_at) in self._attempts.items() if now > reset_at]
        for key in expired:
            del self._attempts[key]

    async def acquire(self, requester_id: int, subject_id: int) -> int:
        """Reserve one attempt for the pair or raise ``TooManyAttempts``."""
        key = (requester_id, subject_id)
        now = self._monotonic()
        async with self._lock:
            self._prune(now)
            count, reset_at = self._attempts.get(key, (0, now + self.window_seconds))
            if count >= self.max_attempts:
                raise TooManyAttempts()
            count += 1
            self._attempts[key] = (count, reset_at)
            return count

    async def release(self, requester_id: int, subject_id: int) -> None:
        key = (requester_id, subject_id)
        async with self._lock:
            entry = self._attempts.get(key)
            if entry is None:
                return
            count, reset_at = entry
            if count <= 1:
                del self._attempts[key]
            else:
                self._attempts[key] = (count - 1, reset_at)

    async def reset(self, requester_id: int, subject_id: int) -> None:
        async with self._lock:
            self._attempts.pop((requester_id, subject_id), None)


class OtpIssuer:
    """Creates a code, stores it, then hands it to the delivery collaborator."""

    def __init__(
        self,
        store: OtpStore,
        delivery: OtpDelivery,
        clock: Clock = utcnow,
        ttl: timedelta | None = None,
        code_length: int | None = None,
    ):
        self.store = store
        self.delivery = delivery
        self.clock = clock
        self.ttl = ttl or timedelta(minutes=settings.otp_ttl_minutes)
        self.code_length = code_length or settings.otp_length

    async def issue(
        self,
        requester_id: int,
        subject_id: int,
        purpose: OtpPurpose,
        delivery_address: str | None,
        *,
        requester_name: str,
        subject_name: str,
        reference_id: int | None = None,
        document_name: str | None = None,
    ) -> IssuedOtp:
        _require_ids(requester_id=requester_id, subject_id=subject_id)
        if not delivery_address:
            raise ValidationError("The patient has no email address on file.")
        purpose = _coerce_purpose(purpose)

        code = generate_otp_code(self.code_length)
        issued_at = self.clock()
        expires_at = issued_at + self.ttl
        record = await self.store.add(
            requester_id=requester_id,
            subject_id=subject_id,
            purpose=purpose,
            code=code,
            issued_at=issued_at,
            expires_at=expires_at,
            reference_id=reference_id,
        )
        _count("issued")

        try:
            await self.delivery.send(
                to_address=delivery_address,
                subject_name=subject_name,
                requester_name=requester_name,
                code=code,
                purpose=purpose,
                document_name=document_name,
            )
        except DeliveryFailed:
            logger.warning(
                "OTP %s stored but delivery failed (purpose=%s requester=%s subject=%s)",
                record.id,
                purpose,
                requester_id,
                subject_id,
            )
            _count("delivery_failed")
            raise
        except Exception as exc:
            logger.exception("OTP %s delivery raised unexpectedly", record.id)
            _count("delivery_failed")
            raise DeliveryFailed() from exc

        await self.store.mark_delivered(record.id, self.clock())
        _count("delivered")
        logger.info(
            "OTP %s issued and delivered (purpose=%s requester=%s subject=%s)",
            record.id,
            purpose,
            requester_id,
            subject_id,
        )
        return IssuedOtp(
            otp_id=record.id,
            subject_id=subject_id,
            purpose=purpose,
            code=code,
            expires_at=expires_at,
            reference_id=reference_id,
        )


class OtpVerifier:
    """Checks a submitted code and consumes it exactly once."""

    def __init__(
        self,
        store: OtpStore,
        throttle: AttemptThrottle | None = None,
        clock: Clock = utcnow,
        code_length: int | None = None,
    ):
        self.store = store
        self.throttle = throttle
        self.clock = clock
        self.code_length = code_length or settings.otp_length

    async def verify(
        self,
        requester_id: int,
        subject_id: int,
        purpose: OtpPurpose,
        submitted_code: object,
        reference_id: int | None = None,
    ) -> VerificationProof:
        _require_ids(requester_id=requester_id, subject_id=subject_id)
        try:
            code = normalize_otp_code(submitted_code, self.code_length)
        except ValidationError:
            _count("malformed")
            raise
        purpose = _coerce_purpose(purpose)

        attempts = 0
        if self.throttle is not None:
            try:
                attempts = await self.throttle.acquire(requester_id, subject_id)
            except TooManyAttempts:
                _count("throttled")
                raise

        now = self.clock()
        try:
            record = await self.store.find_latest_eligible(
                requester_id=requester_id,
                subject_id=subject_id,
                purpose=purpose,
                code=code,
                now=now,
                reference_id=reference_id,
            )
        except Exception:
            await self._release(requester_id, subject_id)
            raise
        if record is None:
            logger.info(
                "OTP verification failed for requester=%s subject=%s (%d recent attempts)",
                requester_id,
                subject_id,
                attempts,
            )
            _count("rejected")
            raise InvalidOrExpired()

        try:
            consumed = await self.store.consume(record.id, now)
        except Exception as exc:
            logger.exception("Could not consume OTP %s; failing closed", record.id)
            _count("consume_failed")
            await self._release(requester_id, subject_id)
            raise InvalidOrExpired() from exc
        if not consumed:
            logger.info("OTP %s was consumed by a concurrent verification", record.id)
            _count("lost_race")
            await self._release(requester_id, subject_id)
            raise InvalidOrExpired()

        if self.throttle is not None:
            await self.throttle.reset(requester_id, subject_id)
        _count("verified")
        logger.info(
            "OTP %s verified (purpose=%s requester=%s subject=%s)",
            record.id,
            purpose,
            requester_id,
            subject_id,
        )
        return VerificationProof(
            otp_id=record.id,
            requester_id=requester_id,
            subject_id=subject_id,
            purpose=purpose,
            verified_at=now,
            reference_id=record.reference_id,
        )

    async def _release(self, requester_id: int, subject_id: int) -> None:
        if self.throttle is not None:
            await self.throttle.release(requester_id, subject_id)
