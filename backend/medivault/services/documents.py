"""Document metadata: patient listings, trash restore, and the grantee read path.

Trashing happens only through an approved deletion request (see
``medivault.services.deletion``); this module never trashes.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from medivault.models import Document
from medivault.services.audit import AuditTrail
from medivault.services.errors import NotFound, PermissionDenied
from medivault.services.otp import Clock, utcnow
from medivault.services.permissions import PermissionStore, is_currently_authorized

logger = logging.getLogger("medivault.documents")


class DocumentStore(Protocol):
    async def get(self, document_id: int) -> Optional[Document]:
        ...

    async def get_many(self, document_ids: Iterable[int]) -> dict[int, Document]:
        ...

    async def list_active(self, owner_id: int) -> list[Document]:
        ...

    async def list_trashed(self, owner_id: int) -> list[Document]:
        ...

    async def restore(self, owner_id: int, document_id: int) -> bool:
        ...


class SQLDocumentStore:
    """Document store backed by SQLAlchemy."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, document_id: int) -> Optional[Document]:
        result = await self.db.execute(select(Document).where(Document.id == document_id))
        return result.scalar_one_or_none()

    async def get_many(self, document_ids: Iterable[int]) -> dict[int, Document]:
        ids = set(document_ids)
        if not ids:
            return {}
        result = await self.db.execute(select(Document).where(Document.id.in_(ids)))
        return {doc.id: doc for doc in result.scalars().all()}

    async def list_active(self, owner_id: int) -> list[Document]:
        result = await self.db.execute(
            select(Document)
            .where(
                Document.owner_id == owner_id,
                Document.is_active.is_(True),
                Document.is_trashed.is_(False),
            )
            .order_by(Document.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_trashed(self, owner_id: int) -> list[Document]:
        result = await self.db.execute(
            select(Document)
            .where(Document.owner_id == owner_id, Document.is_trashed.is_(True))
            .order_by(Document.trashed_at.desc())
        )
        return list(result.scalars().all())

    async def restore(self, owner_id: int, document_id: int) -> bool:
        result = await self.db.execute(
            update(Document)
            .where(
                Document.id == document_id,
                Document.owner_id == owner_id,
                Document.is_trashed.is_(True),
            )
            .values(is_trashed=False, is_active=True, trashed_at=None, trashed_by_id=None)
            .execution_options(synchronize_session="fetch")
        )
        await self.db.commit()
        return result.rowcount == 1


class InMemoryDocumentStore:
    """In-memory document store for tests and local demos."""

    def __init__(self, documents: Iterable[Document] = ()):
        self._documents: dict[int, Document] = {doc.id: doc for doc in documents}

    def add(self, document: Document) -> Document:
        self._documents[document.id] = document
        return document

    async def get(self, document_id: int) -> Optional[Document]:
        return self._documents.get(document_id)

    async def get_many(self, document_ids: Iterable[int]) -> dict[int, Document]:
        return {
            doc_id: self._documents[doc_id]
            for doc_id in set(document_ids)
            if doc_id in self._documents
        }

    async def list_active(self, owner_id: int) -> list[Document]:
        return [
            doc
            for doc in self._documents.values()
            if doc.owner_id == owner_id and doc.is_active and not doc.is_trashed
        ]

    async def list_trashed(self, owner_id: int) -> list[Document]:
        return [
            doc
            for doc in self._documents.values()
            if doc.owner_id == owner_id and doc.is_trashed
        ]

    async def restore(self, owner_id: int, document_id: int) -> bool:
        doc = self._documents.get(document_id)
        if doc is None or doc.owner_id != owner_id or not doc.is_trashed:
            return False
        doc.is_trashed = False
        doc.is_active = True
        doc.trashed_at = None
        doc.trashed_by_id = None
        return True


class DocumentService:
    """Patient self-service over their own documents."""

    def __init__(self, store: DocumentStore, audit: AuditTrail):
        self.store = store
        self.audit = audit

    async def list_active(self, owner_id: int) -> list[Document]:
        return await self.store.list_active(owner_id)

    async def list_trashed(self, owner_id: int) -> list[Document]:
        return await self.store.list_trashed(owner_id)

    async def restore(self, owner_id: int, document_id: int) -> Document:
        document = await self.store.get(document_id)
        if document is None or document.owner_id != owner_id:
            raise NotFound("Document not found")
        if document.is_trashed:
            await self.store.restore(owner_id, document_id)
            await self.audit.record(
                owner_id, owner_id, "document_restored", document_id=document_id
            )
            logger.info("Document %s restored by owner %s", document_id, owner_id)
        return await self.store.get(document_id) or document


class DocumentReadService:
    """Releases a patient's documents to a grantee only while currently authorized."""

    def __init__(
        self,
        documents: DocumentStore,
        permissions: PermissionStore,
        audit: AuditTrail,
        clock: Clock = utcnow,
    ):
        self.documents = documents
        self.permissions = permissions
        self.audit = audit
        self.clock = clock

    async def _require_authorized(self, grantee_id: int, subject_id: int) -> None:
        if not await is_currently_authorized(
            self.permissions, subject_id, grantee_id, self.clock()
        ):
            raise PermissionDenied("Access not granted to this patient's records")

    async def list_for_grantee(self, grantee_id: int, subject_id: int) -> list[Document]:
        await self._require_authorized(grantee_id, subject_id)
        documents = await self.documents.list_active(subject_id)
        await self.audit.record(
            grantee_id, subject_id, "list_documents", count=len(documents)
        )
        return documents

    async def get_for_grantee(
        self, grantee_id: int, subject_id: int, document_id: int
    ) -> Document:
        await self._require_authorized(grantee_id, subject_id)
        document = await self.documents.get(document_id)
        if (
            document is None
            or document.owner_id != subject_id
            or not document.is_active
            or document.is_trashed
        ):
            raise NotFound("Document not found")
        await self.audit.record(
            grantee_id, subject_id, "view_document", document_id=document_id
        )
        return document
