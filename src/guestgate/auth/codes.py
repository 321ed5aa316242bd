"""One-time verification codes for guest email verification."""

import enum
import hmac
import logging
import math
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlmodel import Session, col, select

from guestgate.auth.rate_limiter import RateLimiter
from guestgate.exceptions import DisposableEmailError, RateLimitExceeded, ValidationError
from guestgate.notify.notifier import NotificationDispatcher, Notifier
from guestgate.registry.models import VerificationCode, utcnow
from guestgate.registry.store import (
    is_disposable_email,
    is_valid_code,
    require_email,
    require_mac,
    sanitize_name,
)

logger = logging.getLogger(__name__)

CODE_LENGTH = 6


class VerifyStatus(enum.StrEnum):
    ok = "ok"
    wrong = "wrong"
    expired = "expired"
    exhausted = "exhausted"


@dataclass
class IssuedCode:
    code: str
    expires_at: datetime
    can_resend_at: datetime | None = None
    resend_count: int = 0


@dataclass
class VerifyResult:
    status: VerifyStatus
    remaining_attempts: int | None = None
    record: VerificationCode | None = None

    @property
    def ok(self) -> bool:
        return self.status == VerifyStatus.ok


def generate_code() -> str:
    """Uniformly random 6-digit code; leading zeros are kept."""
    return f"{secrets.randbelow(10**CODE_LENGTH):0{CODE_LENGTH}d}"


def codes_match(submitted: str, stored: str) -> bool:
    """Constant-time comparison; unequal lengths never reach compare_digest."""
    if len(submitted) != len(stored):
        return False
    return hmac.compare_digest(submitted.encode(), stored.encode())


class VerificationCodeManager:
    """Issues, resends and checks emailed verification codes."""

    def __init__(
        self,
        rate_limiter: RateLimiter,
        notifier: Notifier,
        dispatcher: NotificationDispatcher,
        code_ttl: timedelta = timedelta(minutes=10),
        max_attempts: int = 3,
        resend_cooldown: timedelta = timedelta(seconds=30),
        max_resends: int = 3,
        allow_disposable_emails: bool = False,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.notifier = notifier
        self.dispatcher = dispatcher
        self.code_ttl = code_ttl
        self.max_attempts = max_attempts
        self.resend_cooldown = resend_cooldown
        self.max_resends = max_resends
        self.allow_disposable_emails = allow_disposable_emails

    @staticmethod
    def _live_code(session: Session, email: str, now: datetime) -> VerificationCode | None:
        stmt = (
            select(VerificationCode)
            .where(
                VerificationCode.email == email,
                VerificationCode.used == False,  # noqa: E712
                VerificationCode.expires_at > now,
            )
            .order_by(col(VerificationCode.id).desc())
        )
        return session.exec(stmt).first()

    @staticmethod
    def _invalidate_live_codes(session: Session, email: str) -> None:
        session.execute(
            update(VerificationCode)
            .where(
                col(VerificationCode.email) == email,
                col(VerificationCode.used) == False,  # noqa: E712
            )
            .values(used=True)
        )

    async def issue(
        self,
        session: Session,
        email: str,
        display_name: str,
        mac_address: str | None = None,
        now: datetime | None = None,
    ) -> IssuedCode:
        """Invalidate any live code for ``email`` and send a fresh one."""
        email = require_email(email)
        if not self.allow_disposable_emails and is_disposable_email(email):
            logger.info("Blocked disposable email %s", email)
            raise DisposableEmailError()
        mac = require_mac(mac_address) if mac_address else None
        name = sanitize_name(display_name or "")
        if not name:
            raise ValidationError("Invalid name - must contain at least one valid character")

        now = now or utcnow()
        self.rate_limiter.enforce(session, email, "verify", now=now)

        self._invalidate_live_codes(session, email)
        record = VerificationCode(
            email=email,
            code=generate_code(),
            expires_at=now + self.code_ttl,
            mac_address=mac,
            name=name,
            used=False,
            attempts=0,
            created_at=now,
        )
        session.add(record)
        session.commit()
        session.refresh(record)
        logger.info("Issued verification code for %s", email)

        self.dispatcher.submit(self.notifier.send_code, email, record.code, name)
        return IssuedCode(code=record.code, expires_at=record.expires_at)

    async def resend(
        self,
        session: Session,
        email: str,
        now: datetime | None = None,
    ) -> IssuedCode:
        """Replace the live code in place, subject to a cooldown and a ceiling."""
        email = require_email(email)
        now = now or utcnow()

        record = self._live_code(session, email, now)
        if record is None:
            raise ValidationError("No pending verification found. Please start over.")

        if record.last_resent_at is not None:
            elapsed = now - record.last_resent_at
            if elapsed < self.resend_cooldown:
                wait = math.ceil((self.resend_cooldown - elapsed).total_seconds())
                raise RateLimitExceeded(
                    f"Please wait {wait} seconds before requesting another code.",
                    retry_after=wait,
                )

        if record.resend_count >= self.max_resends:
            raise RateLimitExceeded("Too many resend attempts. Please try again later.")

        self.rate_limiter.enforce(session, email, "resend", now=now)

        record.code = generate_code()
        record.expires_at = now + self.code_ttl
        record.attempts = 0
        record.resend_count += 1
        record.last_resent_at = now
        session.add(record)
        session.commit()
        session.refresh(record)
        logger.info("Resent verification code for %s (resend %d)", email, record.resend_count)

        self.dispatcher.submit(self.notifier.send_code, email, record.code, record.name or "Guest")
        return IssuedCode(
            code=record.code,
            expires_at=record.expires_at,
            can_resend_at=now + self.resend_cooldown,
            resend_count=record.resend_count,
        )

    def verify(
        self,
        session: Session,
        email: str,
        submitted_code: str,
        now: datetime | None = None,
    ) -> VerifyResult:
        """Check a submitted code against the single live code for ``email``.

        A missing, used or timed-out code all report ``expired``. Wrong
        guesses count against the live code; the guess that uses up the
        last attempt invalidates it and reports ``exhausted``.
        """
        email = require_email(email)
        if not is_valid_code(submitted_code):
            raise ValidationError("Code must be 6 digits")
        now = now or utcnow()

        record = self._live_code(session, email, now)
        if record is None:
            if self._was_exhausted(session, email, now):
                return VerifyResult(VerifyStatus.exhausted, remaining_attempts=0)
            return VerifyResult(VerifyStatus.expired)

        if record.attempts >= self.max_attempts:
            record.used = True
            session.add(record)
            session.commit()
            return VerifyResult(VerifyStatus.exhausted, remaining_attempts=0, record=record)

        if not codes_match(submitted_code, record.code):
            if self._matches_superseded(session, email, submitted_code, record, now):
                return VerifyResult(VerifyStatus.expired)

            record.attempts += 1
            remaining = self.max_attempts - record.attempts
            if remaining <= 0:
                record.used = True
            session.add(record)
            session.commit()
            if remaining <= 0:
                logger.info("Verification code for %s exhausted", email)
                return VerifyResult(VerifyStatus.exhausted, remaining_attempts=0, record=record)
            return VerifyResult(VerifyStatus.wrong, remaining_attempts=remaining, record=record)

        record.used = True
        session.add(record)
        session.commit()
        session.refresh(record)
        return VerifyResult(VerifyStatus.ok, record=record)

    def _was_exhausted(self, session: Session, email: str, now: datetime) -> bool:
        """True if the newest unexpired code for ``email`` ran out of attempts."""
        stmt = (
            select(VerificationCode)
            .where(VerificationCode.email == email, VerificationCode.expires_at > now)
            .order_by(col(VerificationCode.id).desc())
        )
        latest = session.exec(stmt).first()
        return latest is not None and latest.attempts >= self.max_attempts

    @staticmethod
    def _matches_superseded(
        session: Session,
        email: str,
        submitted: str,
        live: VerificationCode,
        now: datetime,
    ) -> bool:
        """True if ``submitted`` is an older, already-invalidated code."""
        stmt = select(VerificationCode).where(
            VerificationCode.email == email,
            VerificationCode.id != live.id,
            VerificationCode.used == True,  # noqa: E712
            VerificationCode.expires_at > now,
        )
        return any(codes_match(submitted, old.code) for old in session.exec(stmt).all())
