from enum import StrEnum

from sqlalchemy import String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from medivault.models.base import Base, TimestampMixin


class UserRole(StrEnum):
    patient = "patient"
    doctor = "doctor"
    hospital_admin = "hospital_admin"


class User(Base, TimestampMixin):
    """Portal account. Patients, doctors and hospital admins share this table."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        index=True,
        nullable=False,
        comment="User email address, also the OTP delivery address for patients",
    )

    full_name: Mapped[str] = mapped_column(String(255), nullable=False)

    role: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=UserRole.patient.value,
        server_default="patient",
        comment="User role: patient, doctor, hospital_admin",
    )

    patient_code: Mapped[str | None] = mapped_column(
        String(12),
        unique=True,
        index=True,
        nullable=True,
        comment="Public patient identifier, PAT-12345678",
    )

    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)

    __table_args__ = (UniqueConstraint("email", name="uq_users_email"),)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email='{self.email}', role={self.role})>"
