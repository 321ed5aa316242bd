"""Identity, guest authorization and bookkeeping tables."""

import enum
from datetime import UTC, datetime

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Current time as naive UTC (SQLite strips tzinfo on the way back)."""
    return datetime.now(UTC).replace(tzinfo=None)


class Role(enum.StrEnum):
    guest = "guest"
    admin = "admin"


class User(SQLModel, table=True):
    """A stable identity keyed by email, created on first verification."""

    id: int | None = Field(default=None, primary_key=True)
    email: str = Field(unique=True, index=True)
    name: str | None = None
    role: Role = Role.guest
    email_verified: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Guest(SQLModel, table=True):
    """One network grant for an (identity, MAC address) pair.

    Expiry is purely ``expires_at``; rows are never deleted so they stay
    available for analytics. ``revoked_at`` marks the last time the grant
    was pulled from the controller.
    """

    __table_args__ = (UniqueConstraint("user_id", "mac_address"),)

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    mac_address: str = Field(index=True)  # lowercase, colon-delimited
    ip_address: str | None = None
    device_info: str | None = None
    authorized_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime = Field(index=True)
    last_seen: datetime | None = None
    auth_count: int = 1
    nickname: str | None = None
    revoked_at: datetime | None = None


class VerificationCode(SQLModel, table=True):
    """One emailed code per issuance; at most one live row per email."""

    __tablename__ = "verification_codes"

    id: int | None = Field(default=None, primary_key=True)
    email: str = Field(index=True)
    code: str  # 6 digits, kept as text so leading zeros survive
    expires_at: datetime
    used: bool = False
    attempts: int = 0
    resend_count: int = 0
    last_resent_at: datetime | None = None
    mac_address: str | None = None
    name: str | None = None
    created_at: datetime = Field(default_factory=utcnow, index=True)


class RateLimit(SQLModel, table=True):
    __tablename__ = "rate_limits"
    __table_args__ = (UniqueConstraint("identifier", "action"),)

    id: int | None = Field(default=None, primary_key=True)
    identifier: str = Field(index=True)  # email or IP
    action: str
    attempts: int = 0
    last_attempt: datetime | None = None
    locked_until: datetime | None = None


class NetworkStat(SQLModel, table=True):
    """Point-in-time bandwidth snapshot for a MAC address."""

    __tablename__ = "network_stats"

    id: int | None = Field(default=None, primary_key=True)
    mac_address: str = Field(index=True)
    timestamp: datetime = Field(default_factory=utcnow, index=True)
    bytes_received: int = 0
    bytes_sent: int = 0
    top_apps: str | None = None  # JSON list of DPI app entries
    signal_strength: int | None = None
    ap_mac_address: str | None = None


class AdminSession(SQLModel, table=True):
    __tablename__ = "sessions"

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id")
    token: str = Field(unique=True)
    expires_at: datetime = Field(index=True)
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class EventType(enum.StrEnum):
    connect = "connect"
    disconnect = "disconnect"
    auth_success = "auth_success"
    auth_fail = "auth_fail"
    admin_revoke = "admin_revoke"
    admin_extend = "admin_extend"
    auto_revoke = "auto_revoke"
    code_sent = "code_sent"
    code_resent = "code_resent"


class ActivityLog(SQLModel, table=True):
    """Time-series log of guest and network events."""

    __tablename__ = "activity_logs"

    id: int | None = Field(default=None, primary_key=True)
    user_id: int | None = Field(default=None, foreign_key="user.id", index=True)
    mac_address: str | None = None
    event_type: EventType = Field(index=True)
    ip_address: str | None = None
    details: str | None = None  # JSON
    created_at: datetime = Field(default_factory=utcnow, index=True)
