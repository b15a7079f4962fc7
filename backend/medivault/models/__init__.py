from medivault.models.access_audit_log import AccessAuditLog
from medivault.models.access_permission import AccessPermission, AccessScope
from medivault.models.base import Base, TimestampMixin
from medivault.models.deletion_request import (
    DELETION_TRANSITIONS,
    DeletionRequest,
    DeletionStatus,
    can_transition,
)
from medivault.models.document import Document
from medivault.models.otp_verification import OtpPurpose, OtpVerification
from medivault.models.user import User, UserRole

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    # Core Models
    "User",
    "UserRole",
    "Document",
    "OtpVerification",
    "OtpPurpose",
    "AccessPermission",
    "AccessScope",
    "DeletionRequest",
    "DeletionStatus",
    "AccessAuditLog",
    # State machine
    "DELETION_TRANSITIONS",
    "can_transition",
]
