"""Doctor-initiated access requests: issue a code, verify it, grant access."""

from __future__ import annotations

from medivault.models import AccessPermission, OtpPurpose, User, UserRole
from medivault.services.audit import AuditTrail
from medivault.services.errors import NotFound
from medivault.services.otp import IssuedOtp, OtpIssuer, OtpVerifier
from medivault.services.permissions import AccessGrantEffector, PermissionService
from medivault.services.users import UserStore


class AccessRequestService:
    def __init__(
        self,
        users: UserStore,
        issuer: OtpIssuer,
        verifier: OtpVerifier,
        effector: AccessGrantEffector,
        permissions: PermissionService,
        audit: AuditTrail,
    ):
        self.users = users
        self.issuer = issuer
        self.verifier = verifier
        self.effector = effector
        self.permissions = permissions
        self.audit = audit

    async def _get_patient(self, subject_id: int) -> User:
        patient = await self.users.get(subject_id)
        if patient is None or patient.role != UserRole.patient.value or not patient.is_active:
            raise NotFound("Patient not found")
        return patient

    async def lookup_patient(
        self, doctor: User, patient_code: str
    ) -> tuple[User, bool]:
        """Find a patient by public code and report whether the doctor may read their records."""
        patient = await self.users.find_patient_by_code(patient_code.strip().upper())
        if patient is None:
            raise NotFound("No patient found with this ID")
        authorized = await self.permissions.is_currently_authorized(patient.id, doctor.id)
        return patient, authorized

    async def request_access(self, doctor: User, subject_id: int) -> IssuedOtp:
        """Email the patient a ``document_access`` code for this doctor."""
        patient = await self._get_patient(subject_id)
        issued = await self.issuer.issue(
            requester_id=doctor.id,
            subject_id=patient.id,
            purpose=OtpPurpose.document_access,
            delivery_address=patient.email,
            requester_name=f"Dr. {doctor.full_name}" if doctor.full_name else "Unknown Doctor",
            subject_name=patient.full_name,
        )
        await self.audit.record(
            doctor.id, patient.id, "otp_issued", purpose=OtpPurpose.document_access.value
        )
        return issued

    async def verify_access(
        self, doctor: User, subject_id: int, submitted_code: object
    ) -> AccessPermission:
        proof = await self.verifier.verify(
            requester_id=doctor.id,
            subject_id=subject_id,
            purpose=OtpPurpose.document_access,
            submitted_code=submitted_code,
        )
        permission = await self.effector.grant(proof)
        await self.audit.record(
            doctor.id, subject_id, "access_granted",
            permission_id=permission.id, otp_id=proof.otp_id,
        )
        return permission
