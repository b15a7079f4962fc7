"""Read permission a patient's OTP consent grants to a doctor."""

from datetime import datetime
from enum import StrEnum

from sqlalchemy import DateTime, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from medivault.models.base import Base, TimestampMixin


class AccessScope(StrEnum):
    view_only = "view_only"


class AccessPermission(Base, TimestampMixin):
    __tablename__ = "access_permissions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    subject_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
        comment="Patient whose documents are shared",
    )
    granted_to_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    scope: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=AccessScope.view_only.value,
        server_default="view_only",
    )
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    active: Mapped[bool] = mapped_column(nullable=False, default=True)
    revoked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    def is_current(self, now: datetime) -> bool:
        """Active and not past its expiry."""
        return self.active and (self.expires_at is None or self.expires_at > now)

    def __repr__(self) -> str:
        return (
            f"<AccessPermission(subject_id={self.subject_id}, granted_to_id={self.granted_to_id}, "
            f"active={self.active})>"
        )
