"""Sequences controller authorization and datastore writes for a guest.

The controller is always asked first. A datastore grant without a
controller grant leaves a guest who believes they are online and is not;
a controller grant without a datastore row simply times out on the
controller. So when the controller refuses and offline authorization is
disabled, nothing is written.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from guestgate.controller.base import BaseController
from guestgate.exceptions import ControllerUnavailable, InternalError
from guestgate.registry.models import Guest, User, utcnow
from guestgate.registry.store import require_mac, upsert_guest

logger = logging.getLogger(__name__)

OFFLINE_WARNING = (
    "Network authorization could not be confirmed with the controller. "
    "Access may take a few minutes to become active."
)
NO_MAC_WARNING = (
    "No device MAC address was provided, so network access was recorded "
    "but not granted on the controller."
)


@dataclass
class RequestMeta:
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass
class AuthorizationResult:
    guest: Guest
    expires_at: datetime
    is_returning: bool
    controller_authorized: bool
    warning: str | None = None


def minutes_until(expires_at: datetime, now: datetime) -> int:
    """Whole minutes left on a grant, never less than one."""
    return max(1, math.floor((expires_at - now).total_seconds() / 60))


class AuthorizationOrchestrator:
    """Grants, extends and revokes guest network access."""

    def __init__(
        self,
        controller: BaseController | None,
        allow_offline_auth: bool = False,
        grant_duration: timedelta = timedelta(days=7),
    ) -> None:
        self.controller = controller
        self.allow_offline_auth = allow_offline_auth
        self.grant_duration = grant_duration

    async def _controller_authorize(self, mac: str, minutes: int) -> bool:
        if self.controller is None:
            logger.warning("No network controller configured, cannot authorize %s", mac)
            return False
        try:
            return await self.controller.authorize(mac, minutes)
        except Exception:
            logger.exception("Controller authorize raised for %s", mac)
            return False

    async def authorize_guest(
        self,
        session: Session,
        identity: User,
        mac_address: str | None,
        meta: RequestMeta | None = None,
        now: datetime | None = None,
    ) -> AuthorizationResult:
        """Authorize ``mac_address`` for ``identity`` and record the grant.

        Raises ControllerUnavailable (with no datastore write) when the
        controller refuses and offline authorization is disabled, and
        InternalError when the datastore write fails.
        """
        meta = meta or RequestMeta()
        now = now or utcnow()
        expires_at = now + self.grant_duration
        warning: str | None = None
        controller_authorized = False

        if not mac_address:
            logger.warning("No MAC address for %s, recording grant without controller", identity.email)
            mac = ""
            warning = NO_MAC_WARNING
        else:
            mac = require_mac(mac_address)
            controller_authorized = await self._controller_authorize(
                mac, minutes_until(expires_at, now)
            )
            if not controller_authorized:
                if not self.allow_offline_auth:
                    logger.error("Controller authorization failed for %s, aborting", mac)
                    raise ControllerUnavailable()
                logger.warning(
                    "Controller authorization failed for %s, continuing in offline mode", mac
                )
                warning = OFFLINE_WARNING

        try:
            guest, is_returning = upsert_guest(
                session,
                identity,
                mac,
                expires_at,
                ip_address=meta.ip_address,
                device_info=meta.user_agent,
                now=now,
            )
        except SQLAlchemyError as e:
            session.rollback()
            logger.exception("Failed to record grant for %s", mac or identity.email)
            raise InternalError("Failed to save authorization") from e

        logger.info(
            "Authorized %s for %s until %s (returning=%s, controller=%s)",
            mac or "<no mac>",
            identity.email,
            guest.expires_at.isoformat(),
            is_returning,
            controller_authorized,
        )
        return AuthorizationResult(
            guest=guest,
            expires_at=guest.expires_at,
            is_returning=is_returning,
            controller_authorized=controller_authorized,
            warning=warning,
        )

    async def extend_guest(
        self,
        session: Session,
        guest: Guest,
        days: int,
        now: datetime | None = None,
    ) -> bool:
        """Push a grant's expiry out by ``days`` from the later of now or its expiry.

        Returns whether the controller accepted the new window. The datastore
        is updated either way; the authorization sync job repairs the
        controller later.
        """
        now = now or utcnow()
        base = guest.expires_at if guest.expires_at > now else now
        guest.expires_at = base + timedelta(days=days)

        controller_ok = False
        if guest.mac_address:
            controller_ok = await self._controller_authorize(
                guest.mac_address, math.ceil((guest.expires_at - now).total_seconds() / 60)
            )
            if not controller_ok:
                logger.warning("Failed to extend %s on controller", guest.mac_address)

        session.add(guest)
        session.commit()
        session.refresh(guest)
        return controller_ok

    async def revoke_guest(
        self,
        session: Session,
        guest: Guest,
        now: datetime | None = None,
    ) -> bool:
        """Unauthorize and kick a grant's MAC, then expire it immediately.

        Returns whether the controller accepted the revocation.
        """
        now = now or utcnow()
        controller_ok = False
        if guest.mac_address and self.controller is not None:
            try:
                controller_ok = await self.controller.unauthorize(guest.mac_address)
                await self.controller.kick(guest.mac_address)
            except Exception:
                logger.exception("Controller revoke raised for %s", guest.mac_address)
            if not controller_ok:
                logger.warning("Failed to revoke %s on controller", guest.mac_address)

        guest.expires_at = now
        if controller_ok or not guest.mac_address:
            guest.revoked_at = now
        # Otherwise the expired-guest cleanup retries the controller revoke
        session.add(guest)
        session.commit()
        session.refresh(guest)
        return controller_ok
