from __future__ import annotations

import asyncio
import smtplib
import ssl
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Deque, List, Optional

from playerdash.logging import get_logger
from playerdash.service.circuit_breaker import CircuitBreaker

logger = get_logger(__name__)

EMAIL_SENT = "sent"
EMAIL_QUEUED = "queued"

# Queued messages younger than this are left for the next retry pass
RETRY_MIN_AGE_SECONDS = 60
# Oldest queued messages are dropped past this many
MAX_QUEUED_EMAILS = 500

_ROLE_LABELS = {
    "platform-admin": "Platform beheerder",
    "tenant-admin": "Bedrijfsbeheerder",
    "member": "Gebruiker",
}

_STYLE = """
        body { font-family: Arial, sans-serif; line-height: 1.6; color: #333; }
        .container { max-width: 600px; margin: 0 auto; padding: 20px; }
        .header { background-color: #1976d2; padding: 20px; text-align: center; }
        .header h1 { color: white; margin: 0; font-size: 24px; }
        .button { display: inline-block; padding: 12px 24px; background-color: #1976d2;
                  color: white !important; text-decoration: none; border-radius: 4px; font-weight: bold; }
        .note { background-color: #fff3e0; padding: 15px; border-left: 4px solid #ff9800; }
        .footer { margin-top: 20px; padding-top: 20px; border-top: 1px solid #eee; font-size: 12px; color: #666; }
"""


@dataclass
class QueuedEmail:
    to: str
    subject: str
    html_body: str
    text_body: Optional[str]
    queued_at: float = field(default_factory=time.monotonic)


class EmailService:
    """Transactional email over SMTP behind a circuit breaker.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Invitation, reminder and password reset messages (Dutch)
    - A queue of failed or shed messages retried by a periodic job
    - Logging instead of sending when SMTP is not configured (dev mode)
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Display Beheer",
        base_url: Optional[str] = None,
        send_timeout: float = 30.0,
        breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")
        self.send_timeout = send_timeout
        self.breaker = breaker or CircuitBreaker(
            "email", failure_threshold=3, reset_timeout=60.0
        )
        self._queue: Deque[QueuedEmail] = deque(maxlen=MAX_QUEUED_EMAILS)
        self._queue_lock = threading.Lock()
        # Messages "sent" while unconfigured, for local inspection
        self.dev_outbox: Deque[QueuedEmail] = deque(maxlen=50)

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @property
    def queued_count(self) -> int:
        with self._queue_lock:
            return len(self._queue)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Deliver one message over SMTP; True when the server accepted it."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=(text_body or html_body)[:200],
            )
            self.dev_outbox.append(QueuedEmail(to_email, subject, html_body, text_body))
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain", "utf-8"))
            msg.attach(MIMEText(html_body, "html", "utf-8"))

            context = ssl.create_default_context()
            timeout = self.send_timeout
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except OSError as e:
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def _requeue(self, messages: List[QueuedEmail]) -> None:
        """Put messages ahead of newer ones, dropping the oldest past the cap."""
        with self._queue_lock:
            combined = [*messages, *self._queue]
            dropped = max(0, len(combined) - MAX_QUEUED_EMAILS)
            self._queue = deque(combined[dropped:], maxlen=MAX_QUEUED_EMAILS)
        if dropped:
            logger.warning("email_queue_overflow", dropped=dropped, cap=MAX_QUEUED_EMAILS)

    def _enqueue(self, message: QueuedEmail) -> None:
        with self._queue_lock:
            full = len(self._queue) == MAX_QUEUED_EMAILS
            self._queue.append(message)
        if full:
            logger.warning("email_queue_overflow", dropped=1, cap=MAX_QUEUED_EMAILS)
        logger.warning(
            "email_queued_for_retry",
            to=self._redact_email(message.to),
            subject=message.subject,
        )

    async def _deliver(self, message: QueuedEmail) -> bool:
        try:
            delivered = await asyncio.wait_for(
                asyncio.to_thread(
                    self._send_email,
                    message.to,
                    message.subject,
                    message.html_body,
                    message.text_body,
                ),
                timeout=self.send_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                "email_timeout", to=self._redact_email(message.to), timeout=self.send_timeout
            )
            delivered = False
        if delivered:
            self.breaker.record_success()
        else:
            self.breaker.record_failure()
        return delivered

    async def send(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str] = None
    ) -> str:
        """Send now or queue for the retry job; returns ``sent`` or ``queued``."""
        message = QueuedEmail(to_email, subject, html_body, text_body)
        if not self.breaker.allow():
            self._enqueue(message)
            return EMAIL_QUEUED
        if await self._deliver(message):
            return EMAIL_SENT
        self._enqueue(message)
        return EMAIL_QUEUED

    async def retry_failed(self) -> int:
        """Resend queued messages; returns how many were delivered."""
        with self._queue_lock:
            pending = list(self._queue)
            self._queue.clear()
        if not pending:
            return 0
        now = time.monotonic()
        keep: List[QueuedEmail] = []
        delivered = 0
        for message in pending:
            if now - message.queued_at < RETRY_MIN_AGE_SECONDS or not self.breaker.allow():
                keep.append(message)
                continue
            if await self._deliver(message):
                delivered += 1
            else:
                message.queued_at = time.monotonic()
                keep.append(message)
        if keep:
            self._requeue(keep)
        logger.info("email_retry_complete", delivered=delivered, pending=len(keep))
        return delivered

    # templates ------------------------------------------------------------

    def _wrap_html(self, title: str, inner: str) -> str:
        return f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <div class="header"><h1>Display Beheer</h1></div>
        <h2>{title}</h2>
        {inner}
        <div class="footer">
            <p>Met vriendelijke groet,<br>Het Display Beheer Team</p>
            <p>Dit is een automatisch gegenereerd bericht. Antwoorden op deze e-mail worden niet gelezen.</p>
        </div>
    </div>
</body>
</html>
"""

    async def send_password_reset(self, to_email: str, token: str) -> str:
        reset_url = f"{self.base_url}/reset-password?token={token}"
        subject = "Wachtwoord resetten - Display Beheer"
        html_body = self._wrap_html(
            "Wachtwoord resetten",
            f"""<p>Beste gebruiker,</p>
        <p>Er is een verzoek ingediend om je wachtwoord voor Display Beheer te resetten.</p>
        <p style="text-align: center;"><a href="{reset_url}" class="button">Wachtwoord Resetten</a></p>
        <div class="note"><strong>Let op:</strong> Deze link is 1 uur geldig vanwege veiligheidsredenen.</div>
        <p>Of kopieer deze link in je browser:</p>
        <p style="word-break: break-all;"><a href="{reset_url}">{reset_url}</a></p>
        <p>Als je geen wachtwoord reset hebt aangevraagd, kun je deze e-mail negeren.</p>""",
        )
        text_body = f"""Beste gebruiker,

Er is een verzoek ingediend om je wachtwoord voor Display Beheer te resetten.

Klik op de volgende link om een nieuw wachtwoord in te stellen:
{reset_url}

Let op: Deze link is 1 uur geldig.

Als je geen wachtwoord reset hebt aangevraagd, kun je deze e-mail negeren.

Met vriendelijke groet,
Het Display Beheer Team
"""
        return await self.send(to_email, subject, html_body, text_body)

    def _invitation_bodies(
        self, token: str, role: str, tenant_id: Optional[str], *, reminder: bool
    ) -> tuple[str, str]:
        link = f"{self.base_url}/complete-registration?token={token}"
        role_label = _ROLE_LABELS.get(role, role)
        intro = (
            "Je hebt je account bij Display Beheer nog niet geactiveerd. "
            "Hieronder vind je een nieuwe activatielink."
            if reminder
            else "Je bent uitgenodigd om deel uit te maken van Display Beheer!"
        )
        tenant_line = f"<p><strong>Bedrijf:</strong> {tenant_id}</p>" if tenant_id else ""
        html_body = self._wrap_html(
            "Herinnering: activeer je account" if reminder else "Welkom bij Display Beheer!",
            f"""<p>{intro}</p>
        <p><strong>Rol:</strong> {role_label}</p>
        {tenant_line}
        <p style="text-align: center;"><a href="{link}" class="button">Account activeren</a></p>
        <div class="note">Deze uitnodiging is 7 dagen geldig. Als je niet binnen deze periode
            registreert, ontvang je een herinnering.</div>
        <p style="word-break: break-all;"><a href="{link}">{link}</a></p>""",
        )
        text_lines = [intro, "", "Details van je account:", f"- Rol: {role_label}"]
        if tenant_id:
            text_lines.append(f"- Bedrijf: {tenant_id}")
        text_lines += [
            "",
            "Klik op de volgende link om je account te activeren:",
            link,
            "",
            "Deze uitnodiging is 7 dagen geldig. Als je niet binnen deze periode "
            "registreert, ontvang je een herinnering.",
            "",
            "Met vriendelijke groet,",
            "Het Display Beheer Team",
        ]
        return html_body, "\n".join(text_lines)

    async def send_invitation(
        self, to_email: str, token: str, role: str, tenant_id: Optional[str]
    ) -> str:
        html_body, text_body = self._invitation_bodies(token, role, tenant_id, reminder=False)
        return await self.send(
            to_email, "Welkom bij Display Beheer - Activeer je account", html_body, text_body
        )

    async def send_reminder(
        self, to_email: str, token: str, role: str, tenant_id: Optional[str]
    ) -> str:
        html_body, text_body = self._invitation_bodies(token, role, tenant_id, reminder=True)
        return await self.send(
            to_email, "Herinnering - Activeer je Display Beheer account", html_body, text_body
        )
