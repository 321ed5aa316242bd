"""Datastore-backed sliding-window rate limiter with optional lockout.

Records are keyed by (identifier, action). Store errors propagate: an
unavailable limiter blocks the gated action rather than failing open.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from guestgate.config import RateLimitConfig
from guestgate.exceptions import RateLimitExceeded
from guestgate.registry.models import RateLimit, utcnow

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: datetime
    locked_until: datetime | None = None


class RateLimiter:
    """Counts attempts per (identifier, action) inside a fixed window."""

    def __init__(self, configs: dict[str, RateLimitConfig]) -> None:
        self.configs = configs

    def _config(self, action: str) -> RateLimitConfig:
        try:
            return self.configs[action]
        except KeyError:
            raise ValueError(f"Unknown rate limit action: {action!r}") from None

    @staticmethod
    def _load(session: Session, identifier: str, action: str) -> RateLimit | None:
        stmt = select(RateLimit).where(
            RateLimit.identifier == identifier,
            RateLimit.action == action,
        )
        return session.exec(stmt).first()

    def check(
        self,
        session: Session,
        identifier: str,
        action: str,
        now: datetime | None = None,
    ) -> RateLimitResult:
        """Record an attempt and report whether it is allowed.

        1. Locked out: deny until ``locked_until``.
        2. No record, or last attempt outside the window: start a fresh
           window with one attempt.
        3. At the ceiling: deny, stamping ``locked_until`` if the action
           has a lockout.
        4. Otherwise: count the attempt and allow.
        """
        config = self._config(action)
        now = now or utcnow()
        record = self._load(session, identifier, action)

        if record is not None and record.locked_until and record.locked_until > now:
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_at=record.locked_until,
                locked_until=record.locked_until,
            )

        if record is None or record.last_attempt is None or record.last_attempt < now - config.window:
            if record is None:
                record = RateLimit(identifier=identifier, action=action)
            record.attempts = 1
            record.last_attempt = now
            record.locked_until = None
            session.add(record)
            try:
                session.commit()
            except IntegrityError:
                # Lost a race creating the row; count against the winner's row
                session.rollback()
                return self.check(session, identifier, action, now=now)
            return RateLimitResult(
                allowed=True,
                remaining=config.max_attempts - 1,
                reset_at=now + config.window,
            )

        if record.attempts >= config.max_attempts:
            if config.lockout is not None:
                record.locked_until = now + config.lockout
                session.add(record)
                session.commit()
                logger.warning(
                    "Rate limit lockout for %s/%s until %s",
                    identifier,
                    action,
                    record.locked_until.isoformat(),
                )
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=record.locked_until,
                    locked_until=record.locked_until,
                )
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_at=record.last_attempt + config.window,
            )

        record.attempts += 1
        record.last_attempt = now
        session.add(record)
        session.commit()
        return RateLimitResult(
            allowed=True,
            remaining=config.max_attempts - record.attempts,
            reset_at=now + config.window,
        )

    def enforce(
        self,
        session: Session,
        identifier: str,
        action: str,
        now: datetime | None = None,
    ) -> RateLimitResult:
        """Like check(), but raise RateLimitExceeded when denied."""
        now = now or utcnow()
        result = self.check(session, identifier, action, now=now)
        if not result.allowed:
            logger.info("Rate limit exceeded for %s/%s", identifier, action)
            raise RateLimitExceeded(
                format_rate_limit_error(result, now),
                retry_after=max(1, math.ceil((result.reset_at - now).total_seconds())),
                locked_until=result.locked_until,
            )
        return result

    def reset(self, session: Session, identifier: str, action: str) -> None:
        """Delete the record so the next attempt starts a fresh window."""
        session.execute(
            delete(RateLimit).where(
                RateLimit.identifier == identifier,  # type: ignore[arg-type]
                RateLimit.action == action,  # type: ignore[arg-type]
            )
        )
        session.commit()

    def status(
        self,
        session: Session,
        identifier: str,
        action: str,
        now: datetime | None = None,
    ) -> RateLimitResult | None:
        """Read-only view of the limiter state, for display only."""
        config = self._config(action)
        now = now or utcnow()
        record = self._load(session, identifier, action)
        if record is None:
            return None

        if record.locked_until and record.locked_until > now:
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_at=record.locked_until,
                locked_until=record.locked_until,
            )

        if record.last_attempt is None or record.last_attempt < now - config.window:
            return RateLimitResult(
                allowed=True,
                remaining=config.max_attempts,
                reset_at=now + config.window,
            )

        remaining = max(0, config.max_attempts - record.attempts)
        return RateLimitResult(
            allowed=remaining > 0,
            remaining=remaining,
            reset_at=record.last_attempt + config.window,
        )


def format_rate_limit_error(result: RateLimitResult, now: datetime | None = None) -> str:
    """Human-readable wait time for a denied attempt."""
    now = now or utcnow()
    until = result.locked_until or result.reset_at
    minutes = max(1, math.ceil((until - now).total_seconds() / 60))
    unit = "minute" if minutes == 1 else "minutes"
    if result.locked_until:
        return f"Too many attempts. Please try again in {minutes} {unit}."
    return f"Rate limit exceeded. Please try again in {minutes} {unit}."
