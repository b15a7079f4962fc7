"""Document deletion requests and their OTP-gated approval.

A patient files a request; a hospital admin approves it only by verifying a
``document_deletion`` code the patient relays, or rejects it outright. The
approval moves the request to ``approved`` and trashes the document in the
same write. That cascade is the single place where a non-owner changes a
patient's document.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from medivault.models import (
    DeletionRequest,
    DeletionStatus,
    Document,
    OtpPurpose,
    User,
    can_transition,
)
from medivault.services.audit import AuditTrail
from medivault.services.documents import DocumentStore, InMemoryDocumentStore
from medivault.services.errors import (
    ConflictingRequest,
    EffectorWriteFailed,
    NotFound,
    PermissionDenied,
)
from medivault.services.otp import (
    Clock,
    IssuedOtp,
    OtpIssuer,
    OtpVerifier,
    VerificationProof,
    utcnow,
)
from medivault.services.users import UserStore

logger = logging.getLogger("medivault.deletion")

ADMIN_REQUESTER_NAME = "Hospital Admin"


def ensure_transition(current: str, target: DeletionStatus) -> None:
    if not can_transition(current, target):
        raise ConflictingRequest(f"Deletion request is already {current}.")


class DeletionRequestStore(Protocol):
    async def add(self, request: DeletionRequest) -> DeletionRequest:
        ...

    async def get(self, request_id: int) -> Optional[DeletionRequest]:
        ...

    async def find_pending_for_document(self, document_id: int) -> Optional[DeletionRequest]:
        ...

    async def list_by_status(self, status: DeletionStatus | None) -> list[DeletionRequest]:
        ...

    async def list_for_patient(self, patient_id: int) -> list[DeletionRequest]:
        ...

    async def approve_and_trash(
        self, request_id: int, processed_by_id: int, now: datetime
    ) -> Optional[DeletionRequest]:
        """pending -> approved plus the document trash cascade, in one write.

        Returns None when the request was no longer pending.
        """
        ...

    async def reject(
        self, request_id: int, processed_by_id: int, now: datetime
    ) -> Optional[DeletionRequest]:
        ...


class SQLDeletionRequestStore:
    """Deletion request store backed by SQLAlchemy."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def add(self, request: DeletionRequest) -> DeletionRequest:
        self.db.add(request)
        try:
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            raise ConflictingRequest() from exc
        return request

    async def get(self, request_id: int) -> Optional[DeletionRequest]:
        result = await self.db.execute(
            select(DeletionRequest).where(DeletionRequest.id == request_id)
        )
        return result.scalar_one_or_none()

    async def find_pending_for_document(self, document_id: int) -> Optional[DeletionRequest]:
        result = await self.db.execute(
            select(DeletionRequest).where(
                DeletionRequest.document_id == document_id,
                DeletionRequest.status == DeletionStatus.pending.value,
            )
        )
        return result.scalars().first()

    async def list_by_status(self, status: DeletionStatus | None) -> list[DeletionRequest]:
        stmt = select(DeletionRequest)
        if status is not None:
            stmt = stmt.where(DeletionRequest.status == DeletionStatus(status).value)
        result = await self.db.execute(stmt.order_by(DeletionRequest.requested_at.desc()))
        return list(result.scalars().all())

    async def list_for_patient(self, patient_id: int) -> list[DeletionRequest]:
        result = await self.db.execute(
            select(DeletionRequest)
            .where(DeletionRequest.requested_by_id == patient_id)
            .order_by(DeletionRequest.requested_at.desc())
        )
        return list(result.scalars().all())

    async def _transition(
        self,
        request_id: int,
        target: DeletionStatus,
        processed_by_id: int,
        now: datetime,
    ) -> bool:
        result = await self.db.execute(
            update(DeletionRequest)
            .where(
                DeletionRequest.id == request_id,
                DeletionRequest.status == DeletionStatus.pending.value,
            )
            .values(status=target.value, processed_at=now, processed_by_id=processed_by_id)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    async def approve_and_trash(
        self, request_id: int, processed_by_id: int, now: datetime
    ) -> Optional[DeletionRequest]:
        if not await self._transition(
            request_id, DeletionStatus.approved, processed_by_id, now
        ):
            await self.db.rollback()
            return None
        request = await self.get(request_id)
        trashed = await self.db.execute(
            update(Document)
            .where(Document.id == request.document_id)
            .values(
                is_trashed=True,
                is_active=False,
                trashed_at=now,
                trashed_by_id=processed_by_id,
            )
            .execution_options(synchronize_session="fetch")
        )
        if trashed.rowcount != 1:
            await self.db.rollback()
            raise LookupError(f"Document {request.document_id} not found for trashing")
        await self.db.commit()
        return request

    async def reject(
        self, request_id: int, processed_by_id: int, now: datetime
    ) -> Optional[DeletionRequest]:
        if not await self._transition(
            request_id, DeletionStatus.rejected, processed_by_id, now
        ):
            await self.db.rollback()
            return None
        await self.db.commit()
        return await self.get(request_id)


class InMemoryDeletionRequestStore:
    """In-memory deletion request store for tests and local demos."""

    def __init__(self, documents: InMemoryDocumentStore):
        self.documents = documents
        self._requests: list[DeletionRequest] = []
        self._next_id = 1
        self.fail_trash = False

    async def add(self, request: DeletionRequest) -> DeletionRequest:
        if await self.find_pending_for_document(request.document_id):
            raise ConflictingRequest()
        request.id = self._next_id
        self._next_id += 1
        self._requests.append(request)
        return request

    async def get(self, request_id: int) -> Optional[DeletionRequest]:
        for request in self._requests:
            if request.id == request_id:
                return request
        return None

    async def find_pending_for_document(self, document_id: int) -> Optional[DeletionRequest]:
        for request in self._requests:
            if (
                request.document_id == document_id
                and request.status == DeletionStatus.pending.value
            ):
                return request
        return None

    async def list_by_status(self, status: DeletionStatus | None) -> list[DeletionRequest]:
        requests = self._requests
        if status is not None:
            requests = [r for r in requests if r.status == DeletionStatus(status).value]
        return sorted(requests, key=lambda r: r.requested_at, reverse=True)

    async def list_for_patient(self, patient_id: int) -> list[DeletionRequest]:
        return sorted(
            (r for r in self._requests if r.requested_by_id == patient_id),
            key=lambda r: r.requested_at,
            reverse=True,
        )

    async def approve_and_trash(
        self, request_id: int, processed_by_id: int, now: datetime
    ) -> Optional[DeletionRequest]:
        request = await self.get(request_id)
        if request is None or request.status != DeletionStatus.pending.value:
            return None
        document = await self.documents.get(request.document_id)
        if document is None or self.fail_trash:
            raise LookupError(f"Document {request.document_id} not found for trashing")
        request.status = DeletionStatus.approved.value
        request.processed_at = now
        request.processed_by_id = processed_by_id
        document.is_trashed = True
        document.is_active = False
        document.trashed_at = now
        document.trashed_by_id = processed_by_id
        return request

    async def reject(
        self, request_id: int, processed_by_id: int, now: datetime
    ) -> Optional[DeletionRequest]:
        request = await self.get(request_id)
        if request is None or request.status != DeletionStatus.pending.value:
            return None
        request.status = DeletionStatus.rejected.value
        request.processed_at = now
        request.processed_by_id = processed_by_id
        return request


class DeletionApprovalEffector:
    """Applies a verified ``document_deletion`` proof to one pending request."""

    def __init__(self, store: DeletionRequestStore, clock: Clock = utcnow):
        self.store = store
        self.clock = clock

    async def approve(
        self, proof: VerificationProof, request: DeletionRequest, admin_id: int
    ) -> DeletionRequest:
        if (
            proof.purpose != OtpPurpose.document_deletion
            or proof.subject_id != request.requested_by_id
            or proof.requester_id != admin_id
            or proof.reference_id != request.id
        ):
            raise PermissionDenied("This verification does not authorize this deletion.")

        try:
            approved = await self.store.approve_and_trash(request.id, admin_id, self.clock())
        except Exception as exc:
            logger.exception(
                "OTP %s verified but deletion request %s could not be approved",
                proof.otp_id,
                request.id,
            )
            raise EffectorWriteFailed() from exc
        if approved is None:
            logger.error(
                "OTP %s verified but deletion request %s was no longer pending",
                proof.otp_id,
                request.id,
            )
            raise EffectorWriteFailed(
                "The code was verified but the request had already been processed."
            )

        logger.info(
            "Deletion request %s approved by admin %s; document %s trashed",
            request.id,
            admin_id,
            approved.document_id,
        )
        return approved


@dataclass
class DeletionQueueEntry:
    request: DeletionRequest
    document: Optional[Document]
    patient: Optional[User]


class DeletionService:
    def __init__(
        self,
        requests: DeletionRequestStore,
        documents: DocumentStore,
        users: UserStore,
        issuer: OtpIssuer,
        verifier: OtpVerifier,
        audit: AuditTrail,
        clock: Clock = utcnow,
    ):
        self.requests = requests
        self.documents = documents
        self.users = users
        self.issuer = issuer
        self.verifier = verifier
        self.effector = DeletionApprovalEffector(requests, clock=clock)
        self.audit = audit
        self.clock = clock

    async def create_request(
        self, patient_id: int, document_id: int, reason: str | None = None
    ) -> DeletionRequest:
        document = await self.documents.get(document_id)
        if document is None or document.owner_id != patient_id:
            raise NotFound("Document not found")
        if document.is_trashed or not document.is_active:
            raise ConflictingRequest("This document is already in the trash.")
        if await self.requests.find_pending_for_document(document_id):
            raise ConflictingRequest()

        request = DeletionRequest(
            document_id=document_id,
            requested_by_id=patient_id,
            reason=(reason or "").strip() or None,
            status=DeletionStatus.pending.value,
            requested_at=self.clock(),
            processed_at=None,
            processed_by_id=None,
        )
        request = await self.requests.add(request)
        await self.audit.record(
            patient_id, patient_id, "deletion_requested",
            request_id=request.id, document_id=document_id,
        )
        logger.info("Deletion request %s filed for document %s", request.id, document_id)
        return request

    async def list_for_patient(self, patient_id: int) -> list[DeletionRequest]:
        return await self.requests.list_for_patient(patient_id)

    async def list_requests(
        self, status: DeletionStatus | None = DeletionStatus.pending
    ) -> list[DeletionQueueEntry]:
        requests = await self.requests.list_by_status(status)
        documents = await self.documents.get_many(r.document_id for r in requests)
        patients = await self.users.get_many(r.requested_by_id for r in requests)
        return [
            DeletionQueueEntry(
                request=r,
                document=documents.get(r.document_id),
                patient=patients.get(r.requested_by_id),
            )
            for r in requests
        ]

    async def _get_pending(self, request_id: int) -> DeletionRequest:
        request = await self.requests.get(request_id)
        if request is None:
            raise NotFound("Deletion request not found")
        ensure_transition(request.status, DeletionStatus.approved)
        return request

    async def issue_approval_otp(self, admin: User, request_id: int) -> IssuedOtp:
        request = await self._get_pending(request_id)
        patient = await self.users.get(request.requested_by_id)
        if patient is None:
            raise NotFound("Patient profile not found for this request.")
        document = await self.documents.get(request.document_id)
        issued = await self.issuer.issue(
            requester_id=admin.id,
            subject_id=patient.id,
            purpose=OtpPurpose.document_deletion,
            delivery_address=patient.email,
            requester_name=ADMIN_REQUESTER_NAME,
            subject_name=patient.full_name,
            reference_id=request.id,
            document_name=document.file_name if document else None,
        )
        await self.audit.record(
            admin.id, patient.id, "otp_issued",
            purpose=OtpPurpose.document_deletion.value, request_id=request.id,
        )
        return issued

    async def approve_with_otp(
        self, admin_id: int, request_id: int, submitted_code: object
    ) -> DeletionRequest:
        request = await self._get_pending(request_id)
        proof = await self.verifier.verify(
            requester_id=admin_id,
            subject_id=request.requested_by_id,
            purpose=OtpPurpose.document_deletion,
            submitted_code=submitted_code,
            reference_id=request.id,
        )
        approved = await self.effector.approve(proof, request, admin_id)
        await self.audit.record(
            admin_id, request.requested_by_id, "deletion_approved",
            request_id=request.id, document_id=request.document_id, otp_id=proof.otp_id,
        )
        return approved

    async def reject(self, admin_id: int, request_id: int) -> DeletionRequest:
        request = await self.requests.get(request_id)
        if request is None:
            raise NotFound("Deletion request not found")
        ensure_transition(request.status, DeletionStatus.rejected)
        rejected = await self.requests.reject(request_id, admin_id, self.clock())
        if rejected is None:
            raise ConflictingRequest("Deletion request was already processed.")
        await self.audit.record(
            admin_id, request.requested_by_id, "deletion_rejected", request_id=request_id,
        )
        logger.info("Deletion request %s rejected by admin %s", request_id, admin_id)
        return rejected
