"""In-memory controller for development and testing.

Keeps guest grants in a dict and serves a scripted list of active
stations. ``fail`` makes every call behave like an unreachable
controller, so degraded paths can be exercised without hardware.
"""

import logging
import random
import time

from guestgate.controller.base import (
    BaseController,
    ClientInfo,
    DPIEntry,
    DPIStats,
    GuestAuthorizationEntry,
)
from guestgate.registry.store import normalize_mac

logger = logging.getLogger(__name__)

# Stations served when no clients are scripted
_DEMO_CLIENTS = [
    ("aa:bb:cc:11:22:33", "Guest-iPhone", -52),
    ("aa:bb:cc:44:55:66", "Guest-Laptop", -61),
    ("dd:ee:ff:11:22:33", "Guest-Tablet", -70),
]


class MockController(BaseController):
    """Fake controller: grants live in memory, calls are recorded."""

    def __init__(
        self,
        clients: list[ClientInfo] | None = None,
        demo: bool = False,
    ) -> None:
        self.authorized: dict[str, GuestAuthorizationEntry] = {}
        self.clients: list[ClientInfo] = list(clients or [])
        self.dpi: dict[str, DPIStats] = {}
        self.fail = False
        self.calls: list[tuple[str, str | None]] = []
        self.is_logged_in = False
        if demo and not self.clients:
            self.clients = [
                ClientInfo(mac=mac, hostname=name, rssi=rssi, essid="Guest", is_guest=True)
                for mac, name, rssi in _DEMO_CLIENTS
            ]

    def _record(self, op: str, mac: str | None = None) -> None:
        self.calls.append((op, mac))

    def calls_for(self, op: str) -> list[str | None]:
        return [mac for name, mac in self.calls if name == op]

    async def login(self) -> bool:
        self._record("login")
        if self.fail:
            return False
        self.is_logged_in = True
        return True

    async def authorize(self, mac: str, minutes: int) -> bool:
        mac = normalize_mac(mac)
        self._record("authorize", mac)
        if self.fail:
            return False
        now = int(time.time())
        self.authorized[mac] = GuestAuthorizationEntry(
            mac=mac,
            authorized=True,
            start=now,
            end=now + max(1, minutes) * 60,
        )
        logger.debug("Mock authorized %s for %d minutes", mac, minutes)
        return True

    async def unauthorize(self, mac: str) -> bool:
        mac = normalize_mac(mac)
        self._record("unauthorize", mac)
        if self.fail:
            return False
        self.authorized.pop(mac, None)
        return True

    async def kick(self, mac: str) -> bool:
        mac = normalize_mac(mac)
        self._record("kick", mac)
        if self.fail:
            return False
        self.clients = [c for c in self.clients if c.mac != mac]
        return True

    async def active_clients(self) -> list[ClientInfo] | None:
        self._record("active_clients")
        if self.fail:
            return None
        return list(self.clients)

    async def dpi_stats(self, mac: str) -> DPIStats | None:
        mac = normalize_mac(mac)
        self._record("dpi_stats", mac)
        if self.fail:
            return None
        if mac in self.dpi:
            return self.dpi[mac]
        return DPIStats(
            mac=mac,
            by_cat=[
                DPIEntry(cat=4, rx_bytes=random.randint(10**6, 10**8), tx_bytes=random.randint(10**5, 10**6)),
                DPIEntry(cat=13, rx_bytes=random.randint(10**5, 10**7), tx_bytes=random.randint(10**4, 10**5)),
            ],
        )

    async def guest_authorizations(self) -> list[GuestAuthorizationEntry]:
        self._record("guest_authorizations")
        if self.fail:
            return []
        return list(self.authorized.values())
