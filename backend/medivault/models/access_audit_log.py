"""Audit log for patient data access (compliance)."""

from sqlalchemy import ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from medivault.models.base import Base, TimestampMixin


class AccessAuditLog(Base, TimestampMixin):
    """Log of who touched which patient's data and when."""

    __tablename__ = "access_audit_log"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    actor_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    subject_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )

    action: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="e.g. otp_issued, access_granted, view_document, deletion_approved",
    )
    metadata_: Mapped[str | None] = mapped_column(
        "metadata",
        Text,
        nullable=True,
        comment="JSON: document_id, request_id, outcome",
    )

    def __repr__(self) -> str:
        return f"<AccessAuditLog(id={self.id}, action={self.action}, subject_id={self.subject_id})>"
