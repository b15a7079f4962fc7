import asyncio
from datetime import timedelta

import pytest

from factories import DOCTOR_ID, OTHER_DOCTOR_ID, PATIENT_ID, wrong_code
from medivault.models import OtpPurpose
from medivault.services.errors import (
    DeliveryFailed,
    InvalidOrExpired,
    TooManyAttempts,
    ValidationError,
)
from medivault.services.otp import (
    AttemptThrottle,
    OtpIssuer,
    OtpVerifier,
    generate_otp_code,
    get_otp_event_counters,
    normalize_otp_code,
)
from medivault.services.otp_store import InMemoryOtpStore


@pytest.fixture()
def issuer(otp_store, delivery, clock):
    return OtpIssuer(otp_store, delivery, clock=clock, ttl=timedelta(minutes=10), code_length=6)


@pytest.fixture()
def verifier(otp_store, throttle, clock):
    return OtpVerifier(otp_store, throttle=throttle, clock=clock, code_length=6)


async def _issue(issuer, requester_id=DOCTOR_ID, purpose=OtpPurpose.document_access):
    return await issuer.issue(
        requester_id=requester_id,
        subject_id=PATIENT_ID,
        purpose=purpose,
        delivery_address="user1@example.com",
        requester_name="Dr. Gregory House",
        subject_name="Jane Patient",
    )


async def _verify(verifier, code, requester_id=DOCTOR_ID, purpose=OtpPurpose.document_access):
    return await verifier.verify(
        requester_id=requester_id,
        subject_id=PATIENT_ID,
        purpose=purpose,
        submitted_code=code,
    )


def test_generated_codes_are_fixed_width_digits():
    codes = {generate_otp_code(6) for _ in range(200)}
    assert all(len(code) == 6 and code.isdigit() for code in codes)
    assert len(codes) > 1


def test_generated_code_keeps_leading_zeros(monkeypatch):
    monkeypatch.setattr("medivault.services.otp.secrets.randbelow", lambda _n: 42)
    assert generate_otp_code(6) == "000042"


@pytest.mark.parametrize(
    "raw, expected",
    [("123456", "123456"), (" 123 456 ", "123456"), ("123-456", "123456"), ("012345", "012345")],
)
def test_normalize_strips_separators(raw, expected):
    assert normalize_otp_code(raw, 6) == expected


@pytest.mark.parametrize("raw", ["", "12345", "1234567", "12a456", "abcdef", None, 123456])
def test_normalize_rejects_malformed_codes(raw):
    with pytest.raises(ValidationError):
        normalize_otp_code(raw, 6)


@pytest.mark.anyio
async def test_issue_persists_then_delivers(issuer, otp_store, delivery, clock):
    issued = await _issue(issuer)

    [record] = otp_store.records
    assert record.code == issued.code
    assert record.purpose == OtpPurpose.document_access.value
    assert record.consumed is False
    assert record.expires_at == clock.now + timedelta(minutes=10)
    assert record.delivered_at == clock.now
    assert delivery.sent[0]["code"] == issued.code
    assert delivery.sent[0]["to_address"] == "user1@example.com"
    assert delivery.sent[0]["requester_name"] == "Dr. Gregory House"


@pytest.mark.anyio
async def test_issue_without_email_is_rejected_before_store(issuer, otp_store):
    with pytest.raises(ValidationError):
        await issuer.issue(
            requester_id=DOCTOR_ID,
            subject_id=PATIENT_ID,
            purpose=OtpPurpose.document_access,
            delivery_address=None,
            requester_name="Dr. Gregory House",
            subject_name="Jane Patient",
        )
    assert otp_store.calls == 0


@pytest.mark.anyio
async def test_delivery_failure_is_surfaced_and_row_kept(issuer, otp_store, delivery):
    delivery.fail = True

    with pytest.raises(DeliveryFailed):
        await _issue(issuer)

    [record] = otp_store.records
    assert record.delivered_at is None
    assert record.consumed is False


@pytest.mark.anyio
async def test_unexpected_delivery_error_becomes_delivery_failed(otp_store, clock):
    class BrokenDelivery:
        async def send(self, **_kwargs):
            raise ConnectionResetError("smtp went away")

    issuer = OtpIssuer(otp_store, BrokenDelivery(), clock=clock)
    with pytest.raises(DeliveryFailed):
        await _issue(issuer)


@pytest.mark.anyio
async def test_code_verifies_exactly_once(issuer, verifier, otp_store, clock):
    issued = await _issue(issuer)
    clock.advance(minutes=1)

    proof = await _verify(verifier, issued.code)
    assert proof.otp_id == issued.otp_id
    assert proof.requester_id == DOCTOR_ID
    assert proof.subject_id == PATIENT_ID
    assert proof.purpose == OtpPurpose.document_access
    assert otp_store.records[0].consumed is True
    assert otp_store.records[0].verified_at == clock.now

    with pytest.raises(InvalidOrExpired):
        await _verify(verifier, issued.code)


@pytest.mark.anyio
async def test_expired_code_is_rejected(issuer, verifier, clock):
    issued = await _issue(issuer)
    clock.advance(minutes=10)

    with pytest.raises(InvalidOrExpired):
        await _verify(verifier, issued.code)


@pytest.mark.anyio
async def test_code_is_bound_to_requester_and_purpose(issuer, verifier):
    issued = await _issue(issuer)

    with pytest.raises(InvalidOrExpired):
        await _verify(verifier, issued.code, requester_id=OTHER_DOCTOR_ID)
    with pytest.raises(InvalidOrExpired):
        await _verify(verifier, issued.code, purpose=OtpPurpose.document_deletion)

    proof = await _verify(verifier, issued.code)
    assert proof.otp_id == issued.otp_id


@pytest.mark.anyio
async def test_wrong_code_is_rejected(issuer, verifier):
    issued = await _issue(issuer)
    with pytest.raises(InvalidOrExpired):
        await _verify(verifier, wrong_code(issued.code))


@pytest.mark.anyio
async def test_malformed_code_never_reaches_store(verifier, otp_store):
    with pytest.raises(ValidationError):
        await _verify(verifier, "12a456")
    with pytest.raises(ValidationError):
        await _verify(verifier, "12345")
    assert otp_store.calls == 0


@pytest.mark.anyio
async def test_earlier_unconsumed_code_stays_valid(issuer, verifier, clock):
    first = await _issue(issuer)
    clock.advance(minutes=2)
    second = await _issue(issuer)
    if first.code == second.code:
        pytest.skip("codes collided")

    proof = await _verify(verifier, first.code)
    assert proof.otp_id == first.otp_id
    proof = await _verify(verifier, second.code)
    assert proof.otp_id == second.otp_id


@pytest.mark.anyio
async def test_latest_matching_code_is_consumed_first(verifier, otp_store, clock):
    for minutes in (0, 1):
        await otp_store.add(
            requester_id=DOCTOR_ID,
            subject_id=PATIENT_ID,
            purpose=OtpPurpose.document_access,
            code="111111",
            issued_at=clock.now + timedelta(minutes=minutes),
            expires_at=clock.now + timedelta(minutes=10 + minutes),
        )
    clock.advance(minutes=2)

    proof = await _verify(verifier, "111111")
    assert proof.otp_id == 2
    proof = await _verify(verifier, "111111")
    assert proof.otp_id == 1


class _InterleavingOtpStore(InMemoryOtpStore):
    """Lets every concurrent lookup finish before any consume runs."""

    def __init__(self, parties: int):
        super().__init__()
        self._barrier = asyncio.Barrier(parties)

    async def find_latest_eligible(self, **kwargs):
        record = await super().find_latest_eligible(**kwargs)
        await self._barrier.wait()
        return record


@pytest.mark.anyio
async def test_concurrent_verifications_consume_once(delivery, clock):
    store = _InterleavingOtpStore(parties=5)
    issuer = OtpIssuer(store, delivery, clock=clock)
    verifier = OtpVerifier(store, clock=clock)
    issued = await _issue(issuer)

    results = await asyncio.gather(
        *(_verify(verifier, issued.code) for _ in range(5)),
        return_exceptions=True,
    )

    proofs = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(proofs) == 1
    assert len(failures) == 4
    assert all(isinstance(f, InvalidOrExpired) for f in failures)


@pytest.mark.anyio
async def test_consume_failure_fails_closed(issuer, otp_store, clock):
    issued = await _issue(issuer)

    async def _broken_consume(_otp_id, _verified_at):
        raise ConnectionError("db dropped")

    otp_store.consume = _broken_consume
    verifier = OtpVerifier(otp_store, clock=clock)
    with pytest.raises(InvalidOrExpired):
        await _verify(verifier, issued.code)


@pytest.mark.anyio
async def test_repeated_failures_lock_out_the_pair(issuer, otp_store, clock):
    ticks = {"now": 0.0}
    throttle = AttemptThrottle(max_attempts=3, window_seconds=60, monotonic=lambda: ticks["now"])
    verifier = OtpVerifier(otp_store, throttle=throttle, clock=clock)
    issued = await _issue(issuer)

    for _ in range(3):
        with pytest.raises(InvalidOrExpired):
            await _verify(verifier, wrong_code(issued.code))
    with pytest.raises(TooManyAttempts):
        await _verify(verifier, issued.code)

    # Other doctors are unaffected.
    other = await _issue(issuer, requester_id=OTHER_DOCTOR_ID)
    await _verify(verifier, other.code, requester_id=OTHER_DOCTOR_ID)

    ticks["now"] = 61.0
    proof = await _verify(verifier, issued.code)
    assert proof.otp_id == issued.otp_id


@pytest.mark.anyio
async def test_success_resets_attempt_count():
    throttle = AttemptThrottle(max_attempts=2, window_seconds=60, monotonic=lambda: 0.0)
    await throttle.acquire(DOCTOR_ID, PATIENT_ID)
    await throttle.reset(DOCTOR_ID, PATIENT_ID)
    assert await throttle.acquire(DOCTOR_ID, PATIENT_ID) == 1
    assert await throttle.acquire(DOCTOR_ID, PATIENT_ID) == 2
    with pytest.raises(TooManyAttempts):
        await throttle.acquire(DOCTOR_ID, PATIENT_ID)

    await throttle.release(DOCTOR_ID, PATIENT_ID)
    assert await throttle.acquire(DOCTOR_ID, PATIENT_ID) == 2


class _SlowLookupOtpStore(InMemoryOtpStore):
    """Yields inside every lookup so parallel verifications overlap."""

    def __init__(self):
        super().__init__()
        self.lookups = 0

    async def find_latest_eligible(self, **kwargs):
        self.lookups += 1
        await asyncio.sleep(0.01)
        return await super().find_latest_eligible(**kwargs)


@pytest.mark.anyio
async def test_parallel_guesses_cannot_exceed_attempt_limit(delivery, clock):
    store = _SlowLookupOtpStore()
    throttle = AttemptThrottle(max_attempts=5, window_seconds=600)
    issuer = OtpIssuer(store, delivery, clock=clock)
    verifier = OtpVerifier(store, throttle=throttle, clock=clock)
    issued = await _issue(issuer)

    results = await asyncio.gather(
        *(_verify(verifier, wrong_code(issued.code)) for _ in range(50)),
        return_exceptions=True,
    )

    assert store.lookups == 5
    assert sum(isinstance(r, InvalidOrExpired) for r in results) == 5
    assert sum(isinstance(r, TooManyAttempts) for r in results) == 45
    with pytest.raises(TooManyAttempts):
        await _verify(verifier, issued.code)


@pytest.mark.anyio
async def test_lost_race_does_not_use_up_an_attempt(delivery, clock):
    store = _InterleavingOtpStore(parties=3)
    throttle = AttemptThrottle(max_attempts=3, window_seconds=600)
    issuer = OtpIssuer(store, delivery, clock=clock)
    verifier = OtpVerifier(store, throttle=throttle, clock=clock)
    issued = await _issue(issuer)

    results = await asyncio.gather(
        *(_verify(verifier, issued.code) for _ in range(3)),
        return_exceptions=True,
    )

    assert sum(isinstance(r, InvalidOrExpired) for r in results) == 2
    assert throttle.tracked_pairs == 0


@pytest.mark.anyio
async def test_expired_pairs_are_pruned():
    ticks = {"now": 0.0}
    throttle = AttemptThrottle(max_attempts=3, window_seconds=60, monotonic=lambda: ticks["now"])
    for subject_id in range(100, 110):
        await throttle.acquire(DOCTOR_ID, subject_id)
    assert throttle.tracked_pairs == 10

    ticks["now"] = 61.0
    await throttle.acquire(OTHER_DOCTOR_ID, PATIENT_ID)
    assert throttle.tracked_pairs == 1


@pytest.mark.anyio
async def test_unknown_purpose_is_a_validation_error(verifier, otp_store):
    with pytest.raises(ValidationError):
        await verifier.verify(
            requester_id=DOCTOR_ID,
            subject_id=PATIENT_ID,
            purpose="account_recovery",
            submitted_code="123456",
        )
    assert otp_store.calls == 0


@pytest.mark.anyio
async def test_outcomes_are_counted(issuer, verifier):
    before = get_otp_event_counters()
    issued = await _issue(issuer)
    with pytest.raises(ValidationError):
        await _verify(verifier, "abc")
    with pytest.raises(InvalidOrExpired):
        await _verify(verifier, wrong_code(issued.code))
    await _verify(verifier, issued.code)
    after = get_otp_event_counters()

    def delta(event):
        return after.get(event, 0) - before.get(event, 0)

    assert delta("issued") == 1
    assert delta("delivered") == 1
    assert delta("malformed") == 1
    assert delta("rejected") == 1
    assert delta("verified") == 1
