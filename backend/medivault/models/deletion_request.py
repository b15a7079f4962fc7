"""Patient request to delete one of their documents."""

from datetime import datetime
from enum import StrEnum

from sqlalchemy import DateTime, ForeignKey, Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from medivault.models.base import Base, TimestampMixin


class DeletionStatus(StrEnum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


# approved and rejected are terminal
DELETION_TRANSITIONS: dict[DeletionStatus, frozenset[DeletionStatus]] = {
    DeletionStatus.pending: frozenset({DeletionStatus.approved, DeletionStatus.rejected}),
    DeletionStatus.approved: frozenset(),
    DeletionStatus.rejected: frozenset(),
}


def can_transition(current: DeletionStatus | str, target: DeletionStatus | str) -> bool:
    return DeletionStatus(target) in DELETION_TRANSITIONS[DeletionStatus(current)]


class DeletionRequest(Base, TimestampMixin):
    __tablename__ = "document_deletion_requests"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    document_id: Mapped[int] = mapped_column(
        ForeignKey("documents.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    requested_by_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
        comment="Owning patient",
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=DeletionStatus.pending.value,
        server_default="pending",
    )
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processed_by_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    __table_args__ = (
        Index(
            "uq_deletion_requests_pending_document",
            "document_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
        ),
    )

    def __repr__(self) -> str:
        return f"<DeletionRequest(id={self.id}, document_id={self.document_id}, status={self.status})>"
