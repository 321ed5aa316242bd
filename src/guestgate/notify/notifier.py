"""Guest notifications: verification codes, admin notices, expiry digests.

Delivery is fire-and-forget from the caller's point of view. Callers hand
a send to ``NotificationDispatcher.submit`` and move on; failures are
logged by the dispatcher and never reach the request or job.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from typing import Any, Protocol

import aiosmtplib
import httpx

from guestgate.config import Settings

logger = logging.getLogger(__name__)

SUBJECT_VERIFICATION = "Your WiFi verification code"
SUBJECT_ADMIN_NEW_GUEST = "New guest authorized on your network"
SUBJECT_EXPIRY_REMINDER = "Guest WiFi access expiring soon"


@dataclass
class GuestSummary:
    name: str
    email: str
    mac_address: str | None
    expires_at: datetime
    ip_address: str | None = None
    authorized_at: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "email": self.email,
            "mac_address": self.mac_address,
            "ip_address": self.ip_address,
            "authorized_at": self.authorized_at.isoformat() if self.authorized_at else None,
            "expires_at": self.expires_at.isoformat(),
        }


class Notifier(Protocol):
    async def send_code(self, email: str, code: str, name: str) -> None: ...

    async def send_admin_notice(self, guest: GuestSummary) -> None: ...

    async def send_expiry_digest(self, guests: list[GuestSummary]) -> None: ...


def _format_guest_line(guest: GuestSummary) -> str:
    return (
        f"- {guest.name} <{guest.email}> "
        f"MAC {guest.mac_address or 'unknown'}, "
        f"expires {guest.expires_at:%Y-%m-%d %H:%M} UTC"
    )


class LogNotifier:
    """Writes notifications to the log instead of delivering them.

    Development default; the verification code is logged so a guest flow
    can be completed without a mail server.
    """

    async def send_code(self, email: str, code: str, name: str) -> None:
        logger.info("Verification code for %s (%s): %s", email, name, code)

    async def send_admin_notice(self, guest: GuestSummary) -> None:
        logger.info("New guest authorized: %s", _format_guest_line(guest))

    async def send_expiry_digest(self, guests: list[GuestSummary]) -> None:
        logger.info(
            "%d guest(s) expiring soon:\n%s",
            len(guests),
            "\n".join(_format_guest_line(g) for g in guests),
        )


class SmtpNotifier:
    """Plain-text email delivery over SMTP via aiosmtplib."""

    def __init__(
        self,
        host: str,
        port: int,
        sender: str,
        admin_emails: list[str],
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = False,
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.sender = sender
        self.admin_emails = admin_emails
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    async def _send(self, to: list[str], subject: str, body: str) -> None:
        if not to:
            logger.debug("No recipients for %r, skipping", subject)
            return
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = ", ".join(to)
        message["Subject"] = subject
        message.set_content(body)
        await aiosmtplib.send(
            message,
            hostname=self.host,
            port=self.port,
            username=self.username,
            password=self.password,
            start_tls=self.use_tls,
            timeout=self.timeout,
        )
        logger.info("Email sent: %s -> %s", subject, ", ".join(to))

    async def send_code(self, email: str, code: str, name: str) -> None:
        body = (
            f"Hi {name},\n\n"
            f"Your verification code is: {code}\n\n"
            "It expires in a few minutes. If you did not request it, "
            "you can ignore this email.\n"
        )
        await self._send([email], SUBJECT_VERIFICATION, body)

    async def send_admin_notice(self, guest: GuestSummary) -> None:
        body = "A new guest was authorized:\n\n" + _format_guest_line(guest) + "\n"
        await self._send(self.admin_emails, SUBJECT_ADMIN_NEW_GUEST, body)

    async def send_expiry_digest(self, guests: list[GuestSummary]) -> None:
        body = (
            f"{len(guests)} guest authorization(s) expire within 24 hours:\n\n"
            + "\n".join(_format_guest_line(g) for g in guests)
            + "\n"
        )
        await self._send(self.admin_emails, SUBJECT_EXPIRY_REMINDER, body)


class WebhookNotifier:
    """POSTs JSON events to a single webhook URL."""

    def __init__(self, url: str, timeout: float = 10.0) -> None:
        self.url = url
        self.timeout = timeout

    async def _post(self, payload: dict[str, Any]) -> None:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.url, json=payload)
        if response.is_success:
            logger.info(
                "Webhook delivered: %s -> %s (HTTP %d)",
                payload["event"],
                self.url,
                response.status_code,
            )
        else:
            logger.warning(
                "Webhook failed: %s -> %s (HTTP %d)",
                payload["event"],
                self.url,
                response.status_code,
            )

    async def send_code(self, email: str, code: str, name: str) -> None:
        await self._post({"event": "verification_code", "email": email, "name": name, "code": code})

    async def send_admin_notice(self, guest: GuestSummary) -> None:
        await self._post({"event": "guest_authorized", "guest": guest.as_dict()})

    async def send_expiry_digest(self, guests: list[GuestSummary]) -> None:
        await self._post({"event": "expiry_digest", "guests": [g.as_dict() for g in guests]})


def create_notifier(cfg: Settings) -> Notifier:
    """Factory: instantiate the configured notification backend."""
    if cfg.notifier_mode == "smtp":
        return SmtpNotifier(
            host=cfg.smtp_host,
            port=cfg.smtp_port,
            sender=cfg.email_from,
            admin_emails=cfg.admin_emails,
            username=cfg.smtp_username,
            password=cfg.smtp_password,
            use_tls=cfg.smtp_use_tls,
        )
    if cfg.notifier_mode == "webhook":
        if not cfg.webhook_url:
            logger.warning("Webhook notifier selected but webhook_url not configured")
            return LogNotifier()
        return WebhookNotifier(cfg.webhook_url)
    if cfg.notifier_mode != "log":
        logger.warning("Unknown notifier mode '%s', logging notifications", cfg.notifier_mode)
    return LogNotifier()


class NotificationDispatcher:
    """Runs notification sends as background tasks with their own error logging."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[None]] = set()

    def submit(
        self,
        send: Callable[..., Awaitable[None]],
        *args: Any,
        label: str | None = None,
    ) -> asyncio.Task[None]:
        label = label or getattr(send, "__name__", "notification")

        async def _run() -> None:
            try:
                await send(*args)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Notification %s failed", label)

        task = asyncio.get_running_loop().create_task(_run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every in-flight notification (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
