"""Tests for the datastore-backed rate limiter."""

from datetime import datetime, timedelta

import pytest

from guestgate.auth.rate_limiter import RateLimiter, RateLimitResult, format_rate_limit_error
from guestgate.config import RateLimitConfig, Settings
from guestgate.exceptions import RateLimitExceeded

NOW = datetime(2026, 3, 15, 12, 0, 0)


@pytest.fixture
def limiter() -> RateLimiter:
    return RateLimiter(
        {
            "verify": RateLimitConfig(3, timedelta(hours=1)),
            "login": RateLimitConfig(3, timedelta(minutes=15), lockout=timedelta(minutes=30)),
        }
    )


class TestCheck:
    def test_first_attempt_allowed(self, session, limiter):
        result = limiter.check(session, "a@example.com", "verify", now=NOW)
        assert result.allowed is True
        assert result.remaining == 2
        assert result.reset_at == NOW + timedelta(hours=1)

    def test_denied_after_max_attempts(self, session, limiter):
        for i in range(3):
            assert limiter.check(session, "a@example.com", "verify", now=NOW + timedelta(minutes=i)).allowed
        result = limiter.check(session, "a@example.com", "verify", now=NOW + timedelta(minutes=5))
        assert result.allowed is False
        assert result.remaining == 0
        assert result.locked_until is None
        # Window counts from the last allowed attempt
        assert result.reset_at == NOW + timedelta(minutes=2) + timedelta(hours=1)

    def test_window_expiry_starts_fresh(self, session, limiter):
        for _ in range(4):
            limiter.check(session, "a@example.com", "verify", now=NOW)
        later = NOW + timedelta(hours=1, minutes=1)
        result = limiter.check(session, "a@example.com", "verify", now=later)
        assert result.allowed is True
        assert result.remaining == 2

    def test_identifiers_and_actions_are_independent(self, session, limiter):
        for _ in range(3):
            limiter.check(session, "a@example.com", "verify", now=NOW)
        assert limiter.check(session, "b@example.com", "verify", now=NOW).allowed
        assert limiter.check(session, "a@example.com", "login", now=NOW).allowed

    def test_unknown_action(self, session, limiter):
        with pytest.raises(ValueError):
            limiter.check(session, "a@example.com", "nope", now=NOW)


class TestLockout:
    def test_exceeding_ceiling_stamps_lock(self, session, limiter):
        for _ in range(3):
            assert limiter.check(session, "10.0.0.1", "login", now=NOW).allowed
        result = limiter.check(session, "10.0.0.1", "login", now=NOW)
        assert result.allowed is False
        assert result.locked_until == NOW + timedelta(minutes=30)

    def test_lock_outlasts_window(self, session, limiter):
        for _ in range(4):
            limiter.check(session, "10.0.0.1", "login", now=NOW)
        # Past the 15 minute window but inside the 30 minute lock
        result = limiter.check(session, "10.0.0.1", "login", now=NOW + timedelta(minutes=20))
        assert result.allowed is False
        assert result.locked_until == NOW + timedelta(minutes=30)

    def test_lock_expires(self, session, limiter):
        for _ in range(4):
            limiter.check(session, "10.0.0.1", "login", now=NOW)
        result = limiter.check(session, "10.0.0.1", "login", now=NOW + timedelta(minutes=31))
        assert result.allowed is True
        assert result.locked_until is None

    def test_configured_admin_login_lockout(self, session):
        limiter = RateLimiter(Settings().rate_limit_configs())
        for _ in range(5):
            limiter.enforce(session, "10.0.0.1", "admin_login", now=NOW)
        with pytest.raises(RateLimitExceeded) as exc_info:
            limiter.enforce(session, "10.0.0.1", "admin_login", now=NOW)
        assert exc_info.value.locked_until == NOW + timedelta(minutes=30)
        # Still locked after the 15 minute window has passed
        result = limiter.check(session, "10.0.0.1", "admin_login", now=NOW + timedelta(minutes=20))
        assert result.allowed is False


class TestEnforce:
    def test_raises_with_retry_after(self, session, limiter):
        for _ in range(3):
            limiter.enforce(session, "a@example.com", "verify", now=NOW)
        with pytest.raises(RateLimitExceeded) as exc_info:
            limiter.enforce(session, "a@example.com", "verify", now=NOW)
        assert exc_info.value.retry_after == 3600
        assert exc_info.value.status_code == 429
        assert "60 minutes" in exc_info.value.message

    def test_lockout_reports_locked_until(self, session, limiter):
        for _ in range(3):
            limiter.enforce(session, "10.0.0.1", "login", now=NOW)
        with pytest.raises(RateLimitExceeded) as exc_info:
            limiter.enforce(session, "10.0.0.1", "login", now=NOW)
        assert exc_info.value.locked_until == NOW + timedelta(minutes=30)
        assert exc_info.value.message.startswith("Too many attempts")


class TestResetAndStatus:
    def test_reset_clears_record(self, session, limiter):
        for _ in range(4):
            limiter.check(session, "a@example.com", "verify", now=NOW)
        limiter.reset(session, "a@example.com", "verify")
        assert limiter.status(session, "a@example.com", "verify", now=NOW) is None
        assert limiter.check(session, "a@example.com", "verify", now=NOW).allowed

    def test_status_is_read_only(self, session, limiter):
        limiter.check(session, "a@example.com", "verify", now=NOW)
        for _ in range(5):
            status = limiter.status(session, "a@example.com", "verify", now=NOW)
        assert status.allowed is True
        assert status.remaining == 2

    def test_status_reports_lock(self, session, limiter):
        for _ in range(4):
            limiter.check(session, "10.0.0.1", "login", now=NOW)
        status = limiter.status(session, "10.0.0.1", "login", now=NOW)
        assert status.allowed is False
        assert status.locked_until == NOW + timedelta(minutes=30)


class TestFormatError:
    def test_singular_minute(self):
        result = RateLimitResult(allowed=False, remaining=0, reset_at=NOW + timedelta(seconds=30))
        assert format_rate_limit_error(result, NOW) == "Rate limit exceeded. Please try again in 1 minute."

    def test_lockout_message(self):
        until = NOW + timedelta(minutes=15)
        result = RateLimitResult(allowed=False, remaining=0, reset_at=until, locked_until=until)
        assert format_rate_limit_error(result, NOW) == "Too many attempts. Please try again in 15 minutes."
