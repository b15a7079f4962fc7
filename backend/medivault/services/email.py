"""SMTP email sender and the OTP delivery collaborator built on it."""

import asyncio
import logging
import smtplib
from collections.abc import Iterable
from email.message import EmailMessage

from medivault.config import settings
from medivault.models import OtpPurpose
from medivault.services.errors import DeliveryFailed

logger = logging.getLogger("medivault.email")


def send_email(to_addresses: Iterable[str], subject: str, body: str) -> bool:
    if not settings.smtp_enabled:
        logger.info("SMTP disabled. Skipping email send.")
        return False
    if not settings.smtp_host or not settings.smtp_from:
        logger.warning("SMTP is enabled but host/from are not configured.")
        return False

    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = settings.smtp_from
    message["To"] = ", ".join(to_addresses)
    message.set_content(body)

    try:
        with smtplib.SMTP(
            settings.smtp_host, settings.smtp_port, timeout=settings.smtp_timeout_seconds
        ) as server:
            if settings.smtp_use_tls:
                server.starttls()
            if settings.smtp_user and settings.smtp_password:
                server.login(settings.smtp_user, settings.smtp_password)
            server.send_message(message)
        return True
    except Exception:
        logger.exception("Failed to send email")
        return False


_SUBJECTS = {
    OtpPurpose.document_access: "Doctor Access Request - OTP Verification",
    OtpPurpose.document_deletion: "Document Deletion Request - OTP Verification",
}

_REQUESTS = {
    OtpPurpose.document_access: "{requester} has requested access to your medical records.",
    OtpPurpose.document_deletion: (
        "{requester} is processing your request to delete a medical document."
    ),
}


def render_otp_email(
    subject_name: str,
    requester_name: str,
    code: str,
    purpose: OtpPurpose,
    ttl_minutes: int,
    document_name: str | None = None,
) -> tuple[str, str]:
    """Subject line and plain text body for an OTP email."""
    brand = settings.email_brand_name
    request_line = _REQUESTS[purpose].format(requester=requester_name)
    if document_name:
        request_line += f" Document: {document_name}."
    body = (
        f"Hello {subject_name},\n\n"
        f"{request_line} To authorize this, share the following one-time password "
        f"with {requester_name}:\n\n"
        f"    {code}\n\n"
        f"This code expires in {ttl_minutes} minutes. Only share it if you authorize "
        f"this request.\n\n"
        f"If you did not expect this email, contact {brand} support immediately.\n\n"
        f"This is an automated message from {brand}. Please do not reply."
    )
    return f"{brand}: {_SUBJECTS[purpose]}", body


class EmailOtpDelivery:
    """Sends OTP emails over SMTP; any failure becomes ``DeliveryFailed``."""

    def __init__(self, ttl_minutes: int | None = None):
        self.ttl_minutes = ttl_minutes or settings.otp_ttl_minutes

    async def send(
        self,
        to_address: str,
        subject_name: str,
        requester_name: str,
        code: str,
        purpose: OtpPurpose,
        document_name: str | None = None,
    ) -> None:
        subject, body = render_otp_email(
            subject_name=subject_name,
            requester_name=requester_name,
            code=code,
            purpose=OtpPurpose(purpose),
            ttl_minutes=self.ttl_minutes,
            document_name=document_name,
        )
        sent = await asyncio.to_thread(send_email, [to_address], subject, body)
        if not sent:
            raise DeliveryFailed()
