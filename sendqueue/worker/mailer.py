"""
Outbound mail delivery.

The worker only depends on the Mailer protocol; SmtpMailer delivers
through aiosmtplib and DryRunMailer is used when DRY_RUN_MODE is set.
"""

import asyncio
import logging
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid, parseaddr
from typing import Protocol

import aiosmtplib

from sendqueue.config import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendOutcome:
    """Result of handing one message to the mail provider."""

    ok: bool
    error: str | None = None
    permanent: bool = False
    smtp_code: int | None = None

    @classmethod
    def success(cls) -> "SendOutcome":
        return cls(ok=True)

    @classmethod
    def failure(
        cls,
        error: str,
        permanent: bool = False,
        smtp_code: int | None = None,
    ) -> "SendOutcome":
        return cls(ok=False, error=error, permanent=permanent, smtp_code=smtp_code)


class Mailer(Protocol):
    async def send(self, to_email: str, subject: str, html: str) -> SendOutcome: ...


def classify_smtp_error(exc: Exception) -> tuple[bool, int | None]:
    """
    Classify an SMTP error as permanent or transient.

    Network errors, timeouts and 4xx replies are transient. 5xx replies
    and refused recipients are permanent.

    Args:
        exc: The exception raised while sending.

    Returns:
        tuple: (is_permanent, smtp_code)
    """
    if isinstance(exc, aiosmtplib.SMTPRecipientsRefused):
        codes = [r.code for r in exc.recipients]
        code = codes[0] if codes else None
        if codes and all(400 <= c < 500 for c in codes):
            return False, code
        return True, code

    code = getattr(exc, "code", None)
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError, OSError)):
        return False, code if isinstance(code, int) else None

    if isinstance(code, int):
        if 500 <= code < 600:
            return True, code
        return False, code

    return False, None


class SmtpMailer:
    """Delivers messages over SMTP with one connection per message."""

    def __init__(self, settings: Settings | None = None):
        self._settings = settings or get_settings()

    def _build_message(self, to_email: str, subject: str, html: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg.attach(MIMEText(html, "html"))
        _, from_email = parseaddr(self._settings.smtp_from)
        domain = from_email.split("@")[1] if "@" in from_email else None
        msg["Message-ID"] = make_msgid(domain=domain)
        msg["Subject"] = subject
        msg["From"] = self._settings.smtp_from
        msg["To"] = to_email
        return msg

    async def send(self, to_email: str, subject: str, html: str) -> SendOutcome:
        """
        Send one HTML message.

        Args:
            to_email: Recipient address.
            subject: Rendered subject.
            html: Rendered HTML body.

        Returns:
            SendOutcome describing acceptance or the classified failure.
        """
        settings = self._settings
        msg = self._build_message(to_email, subject, html)
        smtp = aiosmtplib.SMTP(
            hostname=settings.smtp_host,
            port=settings.smtp_port,
            timeout=settings.smtp_timeout_seconds,
            start_tls=settings.smtp_start_tls,
        )
        try:
            await smtp.connect()
            if settings.smtp_user:
                await smtp.login(settings.smtp_user, settings.smtp_password or "")
            await smtp.send_message(msg)
        except (aiosmtplib.SMTPException, OSError) as exc:
            permanent, code = classify_smtp_error(exc)
            logger.warning(
                "SMTP send failed",
                extra={"smtp_code": code, "permanent": permanent, "error": str(exc)},
            )
            detail = f"{exc} (SMTP {code})" if code else str(exc)
            return SendOutcome.failure(detail, permanent=permanent, smtp_code=code)
        finally:
            if smtp.is_connected:
                try:
                    await smtp.quit()
                except aiosmtplib.SMTPException:
                    smtp.close()
        return SendOutcome.success()


class DryRunMailer:
    """Accepts every message without delivering it."""

    def __init__(self):
        self.sent_count = 0

    async def send(self, to_email: str, subject: str, html: str) -> SendOutcome:
        self.sent_count += 1
        logger.info("Dry run send", extra={"subject": subject})
        return SendOutcome.success()


def build_mailer(settings: Settings | None = None) -> Mailer:
    """
    Pick the mailer for the current configuration.

    Args:
        settings: Settings to use, defaults to the cached settings.

    Returns:
        DryRunMailer in dry run mode, SmtpMailer otherwise.
    """
    settings = settings or get_settings()
    if settings.dry_run_mode:
        logger.info("Dry run mode enabled, messages will not be delivered")
        return DryRunMailer()
    return SmtpMailer(settings)
