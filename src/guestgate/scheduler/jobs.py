"""Reconciliation jobs that keep the datastore and controller converged.

Every job is idempotent, safe to run on its own, and returns a JobResult
instead of raising. Errors for a single row are collected so the rest of
the batch still runs.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col

from guestgate.activity import log_connect, log_disconnect, log_extend, log_revoke
from guestgate.auth.orchestrator import minutes_until
from guestgate.controller.base import BaseController, ClientInfo, DPIStats
from guestgate.notify.notifier import GuestSummary, Notifier
from guestgate.registry.models import AdminSession, Guest, NetworkStat, VerificationCode, utcnow
from guestgate.registry.store import (
    get_active_guests,
    get_expiring_guests,
    get_guests_by_macs,
    get_unrevoked_expired_guests,
    mark_revoked,
    touch_last_seen,
)

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = timedelta(days=30)
DEFAULT_REMINDER_THROTTLE = timedelta(hours=12)
EXPIRY_REMINDER_WINDOW = timedelta(hours=24)


@dataclass
class JobResult:
    success: bool
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {"success": self.success, "message": self.message, "details": self.details}


@dataclass
class SchedulerState:
    """Process-local state owned by one scheduler instance.

    ``last_seen_macs``/``last_sync_time`` describe the previous connection
    tick; ``last_expiry_reminder`` throttles the expiry digest. None of it
    is persisted, so a restart may send one digest early.
    """

    last_seen_macs: set[str] = field(default_factory=set)
    last_sync_time: datetime | None = None
    last_expiry_reminder: datetime | None = None


def _guest_map(guests: list[Guest]) -> dict[str, Guest]:
    """MAC -> grant, preferring the grant that expires last."""
    by_mac: dict[str, Guest] = {}
    for guest in guests:
        current = by_mac.get(guest.mac_address)
        if current is None or guest.expires_at > current.expires_at:
            by_mac[guest.mac_address] = guest
    return by_mac


async def sync_connection_events(
    session: Session,
    controller: BaseController,
    state: SchedulerState,
    now: datetime | None = None,
) -> JobResult:
    """Log connect/disconnect edges by diffing active MACs against the last tick.

    Disconnects are not derived on the very first tick, when there is no
    previous set to compare against.
    """
    try:
        now = now or utcnow()
        clients = await controller.active_clients()
        if clients is None:
            # Keep the previous set; an outage is not a disconnect
            logger.warning("Controller unreachable, skipping connection sync")
            return JobResult(
                success=False,
                message="Connection sync skipped: controller unreachable",
                details={"previous_clients": len(state.last_seen_macs)},
            )
        current: dict[str, ClientInfo] = {c.mac.lower(): c for c in clients if c.mac}
        previous = state.last_seen_macs

        guests = _guest_map(get_guests_by_macs(session, set(current) | previous))

        connected: list[str] = []
        for mac, client in current.items():
            if mac in previous:
                continue
            connected.append(mac)
            guest = guests.get(mac)
            log_connect(
                session,
                mac,
                user_id=guest.user_id if guest else None,
                ip_address=client.ip,
                signal_strength=client.rssi,
                ap_name=client.essid,
            )

        disconnected: list[str] = []
        if state.last_sync_time is not None:
            session_duration = int((now - state.last_sync_time).total_seconds())
            for mac in sorted(previous - set(current)):
                disconnected.append(mac)
                guest = guests.get(mac)
                log_disconnect(
                    session,
                    mac,
                    session_duration=session_duration,
                    user_id=guest.user_id if guest else None,
                )

        state.last_seen_macs = set(current)
        state.last_sync_time = now

        active_guest_macs = [mac for mac in current if mac in guests]
        try:
            touch_last_seen(session, active_guest_macs, now=now)
        except SQLAlchemyError:
            session.rollback()
            logger.exception("Failed to batch update last_seen")

        return JobResult(
            success=True,
            message="Synced connection events",
            details={
                "active_clients": len(current),
                "connected": len(connected),
                "disconnected": len(disconnected),
            },
        )
    except Exception as e:
        logger.exception("Connection sync error")
        return JobResult(success=False, message=f"Connection sync failed: {e}")


async def cache_dpi_stats(
    session: Session,
    controller: BaseController,
    top_apps_limit: int = 10,
    now: datetime | None = None,
) -> JobResult:
    """Snapshot bandwidth for every active client that has a guest grant.

    DPI lookups run concurrently; a client without DPI data falls back to
    its station-level byte counters.
    """
    try:
        now = now or utcnow()
        listed = await controller.active_clients()
        if listed is None:
            return JobResult(success=False, message="DPI cache skipped: controller unreachable")
        clients = [c for c in listed if c.mac]
        guest_macs = {g.mac_address for g in get_guests_by_macs(session, [c.mac for c in clients])}
        targets = [c for c in clients if c.mac.lower() in guest_macs]

        async def _fetch(client: ClientInfo) -> DPIStats | None:
            try:
                return await controller.dpi_stats(client.mac)
            except Exception:
                logger.exception("Failed to fetch DPI stats for %s", client.mac)
                return None

        results = await asyncio.gather(*(_fetch(c) for c in targets))

        cached = 0
        errors: list[str] = []
        for client, dpi in zip(targets, results, strict=True):
            mac = client.mac.lower()
            total_rx = dpi.total_rx if dpi else 0
            total_tx = dpi.total_tx if dpi else 0
            top_apps = [e.as_dict() for e in dpi.by_app[:top_apps_limit]] if dpi else []

            stat = NetworkStat(
                mac_address=mac,
                timestamp=now,
                bytes_received=total_rx or client.rx_bytes,
                bytes_sent=total_tx or client.tx_bytes,
                top_apps=json.dumps(top_apps) if top_apps else None,
                signal_strength=client.rssi,
                ap_mac_address=client.ap_mac,
            )
            try:
                session.add(stat)
                session.commit()
                cached += 1
            except SQLAlchemyError as e:
                session.rollback()
                logger.exception("Failed to insert network stats for %s", mac)
                errors.append(f"{mac}: {e}")

        details: dict[str, Any] = {"cached": cached, "total": len(clients)}
        if errors:
            details["errors"] = errors
        return JobResult(
            success=not errors,
            message=f"Cached DPI stats for {cached} devices",
            details=details,
        )
    except Exception as e:
        logger.exception("DPI cache error")
        return JobResult(success=False, message=f"DPI cache failed: {e}")


async def sync_authorization_mismatches(
    session: Session,
    controller: BaseController,
    now: datetime | None = None,
) -> JobResult:
    """Re-authorize unexpired grants the controller no longer knows about.

    This is the self-healing path for failed authorizations, controller
    reboots and revocations made directly on the controller.
    """
    try:
        now = now or utcnow()
        authorizations = await controller.guest_authorizations()
        unifi_macs = {a.mac.lower() for a in authorizations if a.authorized}

        db_guests = sorted(
            (g for g in get_active_guests(session, now) if g.mac_address),
            key=lambda g: g.expires_at,
            reverse=True,
        )

        reauthorized = 0
        errors: list[str] = []
        for guest in db_guests:
            mac = guest.mac_address
            if mac in unifi_macs:
                continue
            minutes = minutes_until(guest.expires_at, now)
            try:
                if await controller.authorize(mac, minutes):
                    reauthorized += 1
                    unifi_macs.add(mac)
                    log_extend(
                        session,
                        guest_id=guest.id,
                        user_id=guest.user_id,
                        mac_address=mac,
                        new_expires_at=guest.expires_at,
                        reason="authorization_sync",
                    )
                    logger.info("Re-authorized %s for %d minutes", mac, minutes)
                else:
                    errors.append(f"Failed to re-authorize MAC {mac}: controller returned false")
            except Exception as e:
                logger.exception("Re-authorization raised for %s", mac)
                errors.append(f"Failed to re-authorize MAC {mac}: {e}")

        details: dict[str, Any] = {
            "db_guests": len(db_guests),
            "controller_authorizations": len(unifi_macs) - reauthorized,
            "reauthorized": reauthorized,
        }
        if errors:
            details["errors"] = errors
        return JobResult(
            success=not errors,
            message=f"Synced authorizations: {reauthorized} re-authorized",
            details=details,
        )
    except Exception as e:
        logger.exception("Authorization sync error")
        return JobResult(success=False, message=f"Authorization sync failed: {e}")


async def cleanup_expired_guests(
    session: Session,
    controller: BaseController | None,
    now: datetime | None = None,
) -> JobResult:
    """Revoke each expired grant on the controller once per expiry.

    A grant whose controller revoke fails is left unstamped and retried on
    the next run. A MAC that still has another unexpired grant is stamped
    without touching the controller.
    """
    try:
        now = now or utcnow()
        expired = get_unrevoked_expired_guests(session, now)
        still_active = {g.mac_address for g in get_active_guests(session, now)}

        revoked = 0
        errors: list[str] = []
        for guest in expired:
            try:
                mac = guest.mac_address
                if mac and controller is not None and mac not in still_active:
                    if not await controller.unauthorize(mac):
                        errors.append(f"Failed to revoke guest {guest.id}: controller returned false")
                        continue
                mark_revoked(session, guest, now=now)
                log_revoke(
                    session,
                    guest_id=guest.id,
                    user_id=guest.user_id,
                    mac_address=mac or None,
                    automatic=True,
                )
                revoked += 1
            except Exception as e:
                session.rollback()
                logger.exception("Failed to revoke guest %s", guest.id)
                errors.append(f"Failed to revoke guest {guest.id}: {e}")

        details: dict[str, Any] = {"expired": len(expired), "revoked": revoked}
        if errors:
            details["errors"] = errors
        return JobResult(
            success=not errors,
            message=f"Revoked {revoked} expired guest authorizations",
            details=details,
        )
    except Exception as e:
        logger.exception("Expiry cleanup error")
        return JobResult(success=False, message=f"Expiry cleanup failed: {e}")


def _delete_older_than(session: Session, stmt: Any, label: str) -> JobResult:
    try:
        result = session.execute(stmt)
        session.commit()
        deleted = result.rowcount or 0
        return JobResult(
            success=True,
            message=f"Cleaned up {deleted} {label}",
            details={"deleted": deleted},
        )
    except SQLAlchemyError as e:
        session.rollback()
        logger.exception("Cleanup of %s failed", label)
        return JobResult(success=False, message=f"Cleanup of {label} failed: {e}")


def cleanup_expired_sessions(session: Session, now: datetime | None = None) -> JobResult:
    now = now or utcnow()
    stmt = delete(AdminSession).where(col(AdminSession.expires_at) < now)
    return _delete_older_than(session, stmt, "expired sessions")


def cleanup_old_stats(
    session: Session,
    retention: timedelta = DEFAULT_RETENTION,
    now: datetime | None = None,
) -> JobResult:
    cutoff = (now or utcnow()) - retention
    stmt = delete(NetworkStat).where(col(NetworkStat.timestamp) < cutoff)
    return _delete_older_than(session, stmt, "old network stats records")


def cleanup_old_verification_codes(
    session: Session,
    retention: timedelta = DEFAULT_RETENTION,
    now: datetime | None = None,
) -> JobResult:
    """Delete codes older than the retention window, used or not."""
    cutoff = (now or utcnow()) - retention
    stmt = delete(VerificationCode).where(col(VerificationCode.created_at) < cutoff)
    return _delete_older_than(session, stmt, "old verification codes")


async def run_cleanup(
    session: Session,
    controller: BaseController | None,
    retention: timedelta = DEFAULT_RETENTION,
    now: datetime | None = None,
) -> JobResult:
    """All cleanup sub-jobs; one failing does not stop the others."""
    now = now or utcnow()
    results = {
        "expired_guests": await cleanup_expired_guests(session, controller, now=now),
        "expired_sessions": cleanup_expired_sessions(session, now=now),
        "old_stats": cleanup_old_stats(session, retention, now=now),
        "old_verification_codes": cleanup_old_verification_codes(session, retention, now=now),
    }
    failed = [name for name, r in results.items() if not r.success]
    return JobResult(
        success=not failed,
        message="Cleanup complete" if not failed else f"Cleanup failed: {', '.join(failed)}",
        details={name: r.as_dict() for name, r in results.items()},
    )


async def send_expiry_reminders(
    session: Session,
    notifier: Notifier,
    state: SchedulerState,
    throttle: timedelta = DEFAULT_REMINDER_THROTTLE,
    now: datetime | None = None,
) -> JobResult:
    """Send one digest of grants expiring within 24 hours, at most once per throttle."""
    try:
        now = now or utcnow()
        last = state.last_expiry_reminder
        if last is not None and now - last < throttle:
            return JobResult(
                success=True,
                message="Skipped - reminders sent recently",
                details={"last_sent": last.isoformat()},
            )

        expiring = get_expiring_guests(session, within=EXPIRY_REMINDER_WINDOW, now=now)
        if not expiring:
            return JobResult(success=True, message="No guests expiring soon", details={"count": 0})

        await notifier.send_expiry_digest(
            [
                GuestSummary(
                    name=user.name or "Guest",
                    email=user.email,
                    mac_address=guest.mac_address or None,
                    expires_at=guest.expires_at,
                    ip_address=guest.ip_address,
                    authorized_at=guest.authorized_at,
                )
                for guest, user in expiring
            ]
        )
        state.last_expiry_reminder = now

        return JobResult(
            success=True,
            message=f"Sent expiry reminder for {len(expiring)} guests",
            details={"count": len(expiring)},
        )
    except Exception as e:
        logger.exception("Expiry reminder error")
        return JobResult(success=False, message=f"Expiry reminder failed: {e}")
