"""Errors raised by the access-control core.

Every error carries the HTTP status and a short machine tag so the API layer
can translate it without knowing each subclass. Messages are safe to show to
end users.
"""


class AccessProtocolError(Exception):
    status_code: int = 400
    error_type: str = "access_protocol_error"
    default_message: str = "Request could not be completed."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(AccessProtocolError):
    """Malformed code or missing identifiers. Raised before any store access."""

    status_code = 400
    error_type = "validation_error"
    default_message = "OTP must be exactly 6 digits."


class NotAuthenticated(AccessProtocolError):
    status_code = 401
    error_type = "not_authenticated"
    default_message = "Authentication required."


class PermissionDenied(AccessProtocolError):
    status_code = 403
    error_type = "permission_denied"
    default_message = "You do not have access to this resource."


class NotFound(AccessProtocolError):
    status_code = 404
    error_type = "not_found"
    default_message = "Resource not found."


class InvalidOrExpired(AccessProtocolError):
    """Wrong, already used and expired codes all look the same to the caller."""

    status_code = 400
    error_type = "invalid_or_expired"
    default_message = "The OTP code is invalid or has expired."


class TooManyAttempts(AccessProtocolError):
    status_code = 429
    error_type = "too_many_attempts"
    default_message = "Too many failed OTP attempts. Please request a new code later."


class ConflictingRequest(AccessProtocolError):
    status_code = 409
    error_type = "conflicting_request"
    default_message = "A deletion request for this document is already pending."


class DeliveryFailed(AccessProtocolError):
    """The code was stored but never reached the patient."""

    status_code = 502
    error_type = "delivery_failed"
    default_message = "OTP was generated but the email failed to send. Please try again."


class EffectorWriteFailed(AccessProtocolError):
    """Verification succeeded but the promised side effect was not written."""

    status_code = 500
    error_type = "effector_write_failed"
    default_message = (
        "The code was verified but the change could not be saved. "
        "The code has been used; please request a new one."
    )
