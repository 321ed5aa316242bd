"""Identity and guest authorization CRUD, plus input normalization."""

import logging
import re
from collections.abc import Iterable
from datetime import datetime, timedelta

from disposable_email_domains import blocklist
from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from guestgate.exceptions import ValidationError
from guestgate.registry.models import Guest, Role, User, utcnow

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 100
MAX_NICKNAME_LENGTH = 50

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_SCRIPT_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]*>")
_UNSAFE_NAME_CHARS_RE = re.compile(r"[^a-zA-Z0-9\s\-'.]")
_CODE_RE = re.compile(r"^[0-9]{6}$")


def normalize_mac(mac: str) -> str:
    """Normalize a MAC address to lowercase colon-separated format.

    Accepts "AA-BB-CC-DD-EE-FF", "aabb.ccdd.eeff", "AABBCCDDEEFF", etc.
    """
    cleaned = re.sub(r"[^a-f0-9]", "", mac.lower())
    return ":".join(cleaned[i : i + 2] for i in range(0, len(cleaned), 2))


def is_valid_mac(mac: str | None) -> bool:
    """True if the address holds exactly 12 hex digits once separators are gone."""
    if not mac:
        return False
    if re.search(r"[^0-9a-fA-F:\-.]", mac):
        return False
    return len(re.sub(r"[^0-9a-fA-F]", "", mac)) == 12


def normalize_email(email: str) -> str:
    return email.strip().lower()


def is_valid_email(email: str | None) -> bool:
    return bool(email) and len(email) <= 254 and bool(_EMAIL_RE.match(email.strip()))


def is_disposable_email(email: object) -> bool:
    """True if the domain is a known throwaway mail provider.

    Only the exact domain is matched; subdomains of a listed provider pass.
    """
    if not isinstance(email, str):
        return False
    local, sep, domain = email.strip().lower().rpartition("@")
    if not sep or not local or not domain:
        return False
    return domain in blocklist


def is_valid_code(code: str | None) -> bool:
    return bool(code) and bool(_CODE_RE.match(code))


def sanitize_name(name: str, max_length: int = MAX_NAME_LENGTH) -> str:
    """Strip markup and anything outside letters, digits, space, - ' and ."""
    cleaned = _SCRIPT_RE.sub("", name.strip())
    cleaned = _TAG_RE.sub("", cleaned)
    cleaned = _UNSAFE_NAME_CHARS_RE.sub("", cleaned)
    return cleaned[:max_length].strip()


def require_email(email: str | None) -> str:
    """Validate and normalize an email, raising ValidationError if malformed."""
    if not is_valid_email(email):
        raise ValidationError("Invalid email address")
    return normalize_email(email)  # type: ignore[arg-type]


def require_mac(mac: str | None) -> str:
    if not is_valid_mac(mac):
        raise ValidationError("Invalid MAC address format")
    return normalize_mac(mac)  # type: ignore[arg-type]


# --- Identities ---


def get_user_by_email(session: Session, email: str) -> User | None:
    stmt = select(User).where(User.email == normalize_email(email))
    return session.exec(stmt).first()


def get_or_create_user(session: Session, email: str, name: str | None = None) -> User:
    """Return the identity for an email, creating a verified guest if absent."""
    email = normalize_email(email)
    user = get_user_by_email(session, email)
    if user is not None:
        return user

    user = User(email=email, name=name, role=Role.guest, email_verified=True)
    session.add(user)
    try:
        session.commit()
    except IntegrityError:
        # Another request created the same identity first
        session.rollback()
        user = get_user_by_email(session, email)
        if user is None:
            raise
        return user
    session.refresh(user)
    logger.info("Created guest identity %s", email)
    return user


# --- Guest authorizations ---


def get_guest(session: Session, guest_id: int) -> Guest | None:
    return session.get(Guest, guest_id)


def get_guest_for(session: Session, user_id: int, mac: str) -> Guest | None:
    """Get the grant for an (identity, MAC) pair."""
    stmt = select(Guest).where(
        Guest.user_id == user_id,
        Guest.mac_address == normalize_mac(mac),
    )
    return session.exec(stmt).first()


def get_latest_guest_by_mac(session: Session, mac: str) -> Guest | None:
    stmt = (
        select(Guest)
        .where(Guest.mac_address == normalize_mac(mac))
        .order_by(col(Guest.expires_at).desc())
    )
    return session.exec(stmt).first()


def upsert_guest(
    session: Session,
    user: User,
    mac: str,
    expires_at: datetime,
    ip_address: str | None = None,
    device_info: str | None = None,
    now: datetime | None = None,
) -> tuple[Guest, bool]:
    """Create or extend the grant for (user, mac).

    Returns ``(guest, is_returning)``. The (user_id, mac_address) unique
    constraint backs the invariant: a concurrent insert that loses the race
    is retried as an update of the winner's row.
    """
    now = now or utcnow()
    mac = normalize_mac(mac)
    if user.id is None:
        raise ValueError(f"User {user.email} has not been saved")

    guest = get_guest_for(session, user.id, mac)
    if guest is None:
        guest = Guest(
            user_id=user.id,
            mac_address=mac,
            ip_address=ip_address,
            device_info=device_info,
            authorized_at=now,
            expires_at=expires_at,
            last_seen=now,
            auth_count=1,
        )
        session.add(guest)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.info("Concurrent grant for %s, updating existing row", mac)
            guest = get_guest_for(session, user.id, mac)
            if guest is None:
                raise
        else:
            session.refresh(guest)
            return guest, False

    guest.expires_at = max(guest.expires_at, expires_at)
    guest.auth_count = (guest.auth_count or 1) + 1
    guest.last_seen = now
    if ip_address:
        guest.ip_address = ip_address
    session.add(guest)
    session.commit()
    session.refresh(guest)
    return guest, True


def get_guests_by_macs(session: Session, macs: Iterable[str]) -> list[Guest]:
    """Batch-load every grant whose MAC is in ``macs`` (one query)."""
    normalized = sorted({normalize_mac(m) for m in macs})
    if not normalized:
        return []
    stmt = select(Guest).where(col(Guest.mac_address).in_(normalized))
    return list(session.exec(stmt).all())


def touch_last_seen(session: Session, macs: Iterable[str], now: datetime | None = None) -> int:
    """Set ``last_seen`` for all grants on the given MACs in one statement."""
    normalized = sorted({normalize_mac(m) for m in macs})
    if not normalized:
        return 0
    result = session.execute(
        update(Guest)
        .where(col(Guest.mac_address).in_(normalized))
        .values(last_seen=now or utcnow())
    )
    session.commit()
    return result.rowcount or 0


def get_active_guests(session: Session, now: datetime | None = None) -> list[Guest]:
    """Grants whose ``expires_at`` is still in the future."""
    now = now or utcnow()
    stmt = select(Guest).where(Guest.expires_at > now)
    return list(session.exec(stmt).all())


def get_unrevoked_expired_guests(session: Session, now: datetime | None = None) -> list[Guest]:
    """Expired grants not yet revoked since they last expired."""
    now = now or utcnow()
    stmt = select(Guest).where(
        Guest.expires_at < now,
        or_(
            col(Guest.revoked_at).is_(None),
            col(Guest.revoked_at) < col(Guest.expires_at),
        ),
    )
    return list(session.exec(stmt).all())


def get_expiring_guests(
    session: Session,
    within: timedelta = timedelta(hours=24),
    now: datetime | None = None,
) -> list[tuple[Guest, User]]:
    """Grants expiring in ``(now, now + within]`` with their identities."""
    now = now or utcnow()
    stmt = (
        select(Guest, User)
        .join(User, col(User.id) == col(Guest.user_id))
        .where(Guest.expires_at > now, Guest.expires_at <= now + within)
        .order_by(col(Guest.expires_at))
    )
    return [(guest, user) for guest, user in session.exec(stmt).all()]


def list_guests(session: Session, active_only: bool = False) -> list[Guest]:
    stmt = select(Guest)
    if active_only:
        stmt = stmt.where(Guest.expires_at > utcnow())
    stmt = stmt.order_by(col(Guest.authorized_at).desc())
    return list(session.exec(stmt).all())


def mark_revoked(session: Session, guest: Guest, now: datetime | None = None) -> Guest:
    guest.revoked_at = now or utcnow()
    session.add(guest)
    session.commit()
    session.refresh(guest)
    return guest


def set_nickname(session: Session, guest_id: int, nickname: str | None) -> Guest | None:
    """Set or clear a device nickname. Return None if the grant is unknown."""
    guest = session.get(Guest, guest_id)
    if guest is None:
        return None
    if nickname:
        guest.nickname = sanitize_name(nickname, MAX_NICKNAME_LENGTH) or None
    else:
        guest.nickname = None
    session.add(guest)
    session.commit()
    session.refresh(guest)
    return guest
