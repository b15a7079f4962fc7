"""One-time codes issued to a patient on behalf of a doctor or admin."""

from datetime import datetime
from enum import StrEnum

from sqlalchemy import DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from medivault.models.base import Base, TimestampMixin


class OtpPurpose(StrEnum):
    document_access = "document_access"
    document_deletion = "document_deletion"


class OtpVerification(Base, TimestampMixin):
    """Issued code bound to (requester, subject, purpose, reference). Rows are never deleted."""

    __tablename__ = "otp_verifications"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    requester_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        comment="Doctor or admin who asked for the code",
    )
    subject_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        comment="Patient whose consent the code stands for",
    )
    code: Mapped[str] = mapped_column(String(10), nullable=False)
    purpose: Mapped[str] = mapped_column(String(32), nullable=False)
    reference_id: Mapped[int | None] = mapped_column(
        nullable=True,
        comment="Object the code authorizes, e.g. a deletion request id",
    )

    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    delivered_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    verified_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    consumed: Mapped[bool] = mapped_column(nullable=False, default=False)

    __table_args__ = (
        Index(
            "ix_otp_verifications_lookup",
            "requester_id",
            "subject_id",
            "purpose",
            "consumed",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<OtpVerification(id={self.id}, purpose={self.purpose}, "
            f"requester_id={self.requester_id}, subject_id={self.subject_id}, consumed={self.consumed})>"
        )
