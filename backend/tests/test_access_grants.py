from datetime import timedelta

import pytest

from factories import DOCTOR_ID, OTHER_DOCTOR_ID, OTHER_PATIENT_ID, PATIENT_ID
from medivault.models import AccessPermission, OtpPurpose
from medivault.services.access import AccessRequestService
from medivault.services.errors import (
    EffectorWriteFailed,
    InvalidOrExpired,
    NotFound,
    PermissionDenied,
)
from medivault.services.otp import OtpIssuer, OtpVerifier, VerificationProof
from medivault.services.permissions import (
    OTP_GRANT_NOTE,
    AccessGrantEffector,
    PermissionService,
    is_currently_authorized,
)


def _proof(clock, purpose=OtpPurpose.document_access, otp_id=1):
    return VerificationProof(
        otp_id=otp_id,
        requester_id=DOCTOR_ID,
        subject_id=PATIENT_ID,
        purpose=purpose,
        verified_at=clock.now,
    )


@pytest.fixture()
def access_service(user_store, otp_store, permission_store, delivery, throttle, audit, clock):
    return AccessRequestService(
        users=user_store,
        issuer=OtpIssuer(otp_store, delivery, clock=clock),
        verifier=OtpVerifier(otp_store, throttle=throttle, clock=clock),
        effector=AccessGrantEffector(permission_store, dedupe=True, clock=clock),
        permissions=PermissionService(permission_store, clock=clock),
        audit=audit,
    )


@pytest.mark.anyio
async def test_doctor_gains_access_after_patient_relays_code(
    access_service, user_store, permission_store, delivery, audit, clock
):
    doctor = await user_store.get(DOCTOR_ID)
    assert not await is_currently_authorized(permission_store, PATIENT_ID, DOCTOR_ID, clock.now)

    await access_service.request_access(doctor, PATIENT_ID)
    assert delivery.sent[0]["to_address"] == "user1@example.com"
    assert delivery.sent[0]["requester_name"] == "Dr. Gregory House"

    permission = await access_service.verify_access(doctor, PATIENT_ID, delivery.last_code)

    assert permission.subject_id == PATIENT_ID
    assert permission.granted_to_id == DOCTOR_ID
    assert permission.scope == "view_only"
    assert permission.active is True
    assert permission.expires_at is None
    assert permission.notes == OTP_GRANT_NOTE
    assert await is_currently_authorized(permission_store, PATIENT_ID, DOCTOR_ID, clock.now)
    assert audit.actions() == ["otp_issued", "access_granted"]

    with pytest.raises(InvalidOrExpired):
        await access_service.verify_access(doctor, PATIENT_ID, delivery.last_code)


@pytest.mark.anyio
async def test_access_can_only_be_requested_for_patients(access_service, user_store, delivery):
    doctor = await user_store.get(DOCTOR_ID)
    with pytest.raises(NotFound):
        await access_service.request_access(doctor, OTHER_DOCTOR_ID)
    with pytest.raises(NotFound):
        await access_service.request_access(doctor, 999)
    assert delivery.sent == []


@pytest.mark.anyio
async def test_lookup_patient_by_code(access_service, user_store, permission_store, clock):
    doctor = await user_store.get(DOCTOR_ID)

    patient, authorized = await access_service.lookup_patient(doctor, " pat-00000001 ")
    assert patient.id == PATIENT_ID
    assert authorized is False

    await AccessGrantEffector(permission_store, clock=clock).grant(_proof(clock))
    _, authorized = await access_service.lookup_patient(doctor, "PAT-00000001")
    assert authorized is True

    with pytest.raises(NotFound):
        await access_service.lookup_patient(doctor, "PAT-99999999")


@pytest.mark.anyio
async def test_grant_reuses_current_permission_when_deduplicating(permission_store, clock):
    effector = AccessGrantEffector(permission_store, dedupe=True, clock=clock)

    first = await effector.grant(_proof(clock, otp_id=1))
    clock.advance(minutes=5)
    second = await effector.grant(_proof(clock, otp_id=2))

    assert second.id == first.id
    assert len(permission_store.permissions) == 1


@pytest.mark.anyio
async def test_grant_stacks_rows_without_dedupe(permission_store, clock):
    effector = AccessGrantEffector(permission_store, dedupe=False, clock=clock)

    await effector.grant(_proof(clock, otp_id=1))
    await effector.grant(_proof(clock, otp_id=2))

    assert len(permission_store.permissions) == 2


@pytest.mark.anyio
async def test_grant_after_revoke_creates_fresh_permission(permission_store, clock):
    effector = AccessGrantEffector(permission_store, dedupe=True, clock=clock)
    service = PermissionService(permission_store, clock=clock)

    first = await effector.grant(_proof(clock))
    await service.revoke(PATIENT_ID, first.id)
    second = await effector.grant(_proof(clock, otp_id=2))

    assert second.id != first.id
    assert [p.active for p in permission_store.permissions] == [False, True]


@pytest.mark.anyio
async def test_grant_rejects_deletion_proof(permission_store, clock):
    effector = AccessGrantEffector(permission_store, clock=clock)
    with pytest.raises(PermissionDenied):
        await effector.grant(_proof(clock, purpose=OtpPurpose.document_deletion))
    assert permission_store.permissions == []


@pytest.mark.anyio
async def test_grant_write_failure_is_reported(
    access_service, user_store, otp_store, permission_store, delivery
):
    doctor = await user_store.get(DOCTOR_ID)
    await access_service.request_access(doctor, PATIENT_ID)
    permission_store.fail_writes = True

    with pytest.raises(EffectorWriteFailed):
        await access_service.verify_access(doctor, PATIENT_ID, delivery.last_code)

    # The code stays consumed.
    assert otp_store.records[0].consumed is True
    permission_store.fail_writes = False
    with pytest.raises(InvalidOrExpired):
        await access_service.verify_access(doctor, PATIENT_ID, delivery.last_code)


@pytest.mark.anyio
async def test_revocation_takes_effect_immediately(permission_store, audit, clock):
    effector = AccessGrantEffector(permission_store, clock=clock)
    service = PermissionService(permission_store, audit, clock=clock)
    permission = await effector.grant(_proof(clock))

    clock.advance(minutes=1)
    revoked = await service.revoke(PATIENT_ID, permission.id)

    assert revoked.active is False
    assert revoked.revoked_at == clock.now
    assert not await service.is_currently_authorized(PATIENT_ID, DOCTOR_ID)
    assert [p.id for p in await service.list_for_subject(PATIENT_ID)] == [permission.id]
    assert audit.actions() == ["access_revoked"]
    assert audit.entries[0]["granted_to_id"] == DOCTOR_ID


@pytest.mark.anyio
async def test_only_the_patient_can_revoke(permission_store, clock):
    effector = AccessGrantEffector(permission_store, clock=clock)
    service = PermissionService(permission_store, clock=clock)
    permission = await effector.grant(_proof(clock))

    with pytest.raises(NotFound):
        await service.revoke(OTHER_PATIENT_ID, permission.id)
    assert await service.is_currently_authorized(PATIENT_ID, DOCTOR_ID)


@pytest.mark.anyio
async def test_expired_permission_is_not_current(permission_store, clock):
    await permission_store.add(
        AccessPermission(
            subject_id=PATIENT_ID,
            granted_to_id=DOCTOR_ID,
            scope="view_only",
            granted_at=clock.now,
            expires_at=clock.now + timedelta(days=1),
            active=True,
            revoked_at=None,
            notes=None,
        )
    )
    assert await is_currently_authorized(permission_store, PATIENT_ID, DOCTOR_ID, clock.now)
    clock.advance(days=1)
    assert not await is_currently_authorized(permission_store, PATIENT_ID, DOCTOR_ID, clock.now)
