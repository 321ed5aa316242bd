"""Activity log writers for guest and network events.

Writing an activity row must never break the request or job that emits
it, so failures are logged and rolled back here.
"""

import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from guestgate.registry.models import ActivityLog, EventType

logger = logging.getLogger(__name__)


def log_event(
    session: Session,
    event_type: EventType,
    user_id: int | None = None,
    mac_address: str | None = None,
    ip_address: str | None = None,
    details: dict[str, Any] | None = None,
) -> ActivityLog | None:
    """Insert an ActivityLog row. Returns None if the write failed."""
    clean = {k: v for k, v in (details or {}).items() if v is not None}
    entry = ActivityLog(
        user_id=user_id,
        mac_address=mac_address,
        event_type=event_type,
        ip_address=ip_address,
        details=json.dumps(clean, default=str) if clean else None,
    )
    try:
        session.add(entry)
        session.commit()
        session.refresh(entry)
        return entry
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Failed to log %s event", event_type)
        return None


def log_connect(
    session: Session,
    mac_address: str,
    user_id: int | None = None,
    ip_address: str | None = None,
    signal_strength: int | None = None,
    ap_name: str | None = None,
) -> ActivityLog | None:
    return log_event(
        session,
        EventType.connect,
        user_id=user_id,
        mac_address=mac_address,
        ip_address=ip_address,
        details={"signal_strength": signal_strength, "ap_name": ap_name},
    )


def log_disconnect(
    session: Session,
    mac_address: str,
    session_duration: int,
    user_id: int | None = None,
) -> ActivityLog | None:
    return log_event(
        session,
        EventType.disconnect,
        user_id=user_id,
        mac_address=mac_address,
        details={"session_duration": session_duration},
    )


def log_auth_success(
    session: Session,
    user_id: int,
    email: str,
    expires_at: datetime,
    is_returning: bool,
    controller_authorized: bool,
    mac_address: str | None = None,
    ip_address: str | None = None,
    name: str | None = None,
) -> ActivityLog | None:
    return log_event(
        session,
        EventType.auth_success,
        user_id=user_id,
        mac_address=mac_address,
        ip_address=ip_address,
        details={
            "email": email,
            "name": name,
            "expires_at": expires_at.isoformat(),
            "is_returning": is_returning,
            "controller_authorized": controller_authorized,
        },
    )


def log_auth_fail(
    session: Session,
    reason: str,
    email: str | None = None,
    user_id: int | None = None,
    mac_address: str | None = None,
    ip_address: str | None = None,
    remaining_attempts: int | None = None,
) -> ActivityLog | None:
    return log_event(
        session,
        EventType.auth_fail,
        user_id=user_id,
        mac_address=mac_address,
        ip_address=ip_address,
        details={
            "email": email,
            "reason": reason,
            "remaining_attempts": remaining_attempts,
        },
    )


def log_code_sent(
    session: Session,
    email: str,
    name: str | None = None,
    mac_address: str | None = None,
    ip_address: str | None = None,
    resend_count: int | None = None,
) -> ActivityLog | None:
    event = EventType.code_resent if resend_count else EventType.code_sent
    return log_event(
        session,
        event,
        mac_address=mac_address,
        ip_address=ip_address,
        details={"email": email, "name": name, "resend_count": resend_count},
    )


def log_revoke(
    session: Session,
    guest_id: int | None,
    user_id: int | None,
    mac_address: str | None,
    automatic: bool,
    ip_address: str | None = None,
) -> ActivityLog | None:
    return log_event(
        session,
        EventType.auto_revoke if automatic else EventType.admin_revoke,
        user_id=user_id,
        mac_address=mac_address,
        ip_address=ip_address,
        details={"guest_id": guest_id},
    )


def log_extend(
    session: Session,
    guest_id: int | None,
    user_id: int | None,
    mac_address: str | None,
    new_expires_at: datetime,
    reason: str = "admin",
) -> ActivityLog | None:
    return log_event(
        session,
        EventType.admin_extend,
        user_id=user_id,
        mac_address=mac_address,
        details={
            "guest_id": guest_id,
            "new_expires_at": new_expires_at.isoformat(),
            "reason": reason,
        },
    )
