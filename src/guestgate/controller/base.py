"""Base interface and payload types for network controllers."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

# UniFi DPI category ids. Anything not listed reports as "Unknown".
DPI_CATEGORIES: dict[int, str] = {
    0: "Instant Messaging",
    1: "P2P",
    3: "File Transfer",
    4: "Streaming Media",
    5: "Mail and Collaboration",
    6: "VoIP",
    7: "Database",
    8: "Games",
    9: "Network Management",
    10: "Remote Access",
    11: "Bypass Proxies and Tunnels",
    12: "Stock Market",
    13: "Web",
    14: "Security Update",
    15: "Web IM",
    17: "Business",
    18: "Network Protocols",
    19: "Network Protocols",
    20: "Network Protocols",
    23: "Private Protocol",
    24: "Social Network",
    255: "Unknown",
}
DPI_UNKNOWN_CATEGORY = "Unknown"


def dpi_category_name(cat: int | None) -> str:
    if cat is None:
        return DPI_UNKNOWN_CATEGORY
    return DPI_CATEGORIES.get(cat, DPI_UNKNOWN_CATEGORY)


def _int(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


@dataclass
class ClientInfo:
    """An active station as reported by the controller."""

    mac: str
    ip: str | None = None
    hostname: str | None = None
    name: str | None = None
    is_guest: bool = False
    authorized: bool = False
    rssi: int | None = None
    signal: int | None = None
    rx_bytes: int = 0
    tx_bytes: int = 0
    ap_mac: str | None = None
    essid: str | None = None
    uptime: int | None = None

    @classmethod
    def from_api(cls, raw: dict[str, Any]) -> "ClientInfo":
        return cls(
            mac=str(raw["mac"]).lower(),
            ip=raw.get("ip"),
            hostname=raw.get("hostname"),
            name=raw.get("name"),
            is_guest=bool(raw.get("is_guest", False)),
            authorized=bool(raw.get("authorized", False)),
            rssi=_int(raw.get("rssi")),
            signal=_int(raw.get("signal")),
            rx_bytes=_int(raw.get("rx_bytes")) or 0,
            tx_bytes=_int(raw.get("tx_bytes")) or 0,
            ap_mac=raw.get("ap_mac"),
            essid=raw.get("essid"),
            uptime=_int(raw.get("uptime")),
        )


@dataclass
class DPIEntry:
    cat: int | None = None
    app: int | None = None
    rx_bytes: int = 0
    tx_bytes: int = 0
    rx_packets: int = 0
    tx_packets: int = 0

    @classmethod
    def from_api(cls, raw: dict[str, Any]) -> "DPIEntry":
        return cls(
            cat=_int(raw.get("cat")),
            app=_int(raw.get("app")),
            rx_bytes=_int(raw.get("rx_bytes")) or 0,
            tx_bytes=_int(raw.get("tx_bytes")) or 0,
            rx_packets=_int(raw.get("rx_packets")) or 0,
            tx_packets=_int(raw.get("tx_packets")) or 0,
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "app": self.app,
            "cat": self.cat,
            "category": dpi_category_name(self.cat),
            "rx_bytes": self.rx_bytes,
            "tx_bytes": self.tx_bytes,
        }


@dataclass
class DPIStats:
    """Per-client deep packet inspection totals."""

    mac: str
    by_cat: list[DPIEntry] = field(default_factory=list)
    by_app: list[DPIEntry] = field(default_factory=list)

    @classmethod
    def from_api(cls, raw: dict[str, Any]) -> "DPIStats":
        return cls(
            mac=str(raw["mac"]).lower(),
            by_cat=[DPIEntry.from_api(e) for e in raw.get("by_cat") or [] if isinstance(e, dict)],
            by_app=[DPIEntry.from_api(e) for e in raw.get("by_app") or [] if isinstance(e, dict)],
        )

    @property
    def total_rx(self) -> int:
        return sum(e.rx_bytes for e in self.by_cat)

    @property
    def total_tx(self) -> int:
        return sum(e.tx_bytes for e in self.by_cat)


@dataclass
class GuestAuthorizationEntry:
    """A controller-side guest grant; ``start``/``end`` are epoch seconds."""

    mac: str
    authorized: bool
    start: int | None = None
    end: int | None = None

    @classmethod
    def from_api(cls, raw: dict[str, Any]) -> "GuestAuthorizationEntry":
        return cls(
            mac=str(raw["mac"]).lower(),
            authorized=bool(raw.get("authorized", False)),
            start=_int(raw.get("start")),
            end=_int(raw.get("end")),
        )


class BaseController(ABC):
    """Abstract base for network access controllers.

    Implementations never raise for network-level problems: failures come
    back as ``False``, ``None`` or an empty list and the caller decides
    whether that is fatal. ``active_clients`` alone returns None on failure,
    so an unreachable controller is never mistaken for an empty network.
    """

    @abstractmethod
    async def login(self) -> bool:
        """Establish a session. Idempotent when already logged in."""

    @abstractmethod
    async def authorize(self, mac: str, minutes: int) -> bool:
        """Grant network access to a MAC for ``minutes``."""

    @abstractmethod
    async def unauthorize(self, mac: str) -> bool:
        """Revoke a MAC's guest grant."""

    @abstractmethod
    async def kick(self, mac: str) -> bool:
        """Disconnect a MAC so it must reassociate."""

    @abstractmethod
    async def active_clients(self) -> list[ClientInfo] | None:
        """List currently connected stations, or None if the controller could not be read."""

    @abstractmethod
    async def dpi_stats(self, mac: str) -> DPIStats | None:
        """Fetch DPI totals for one MAC."""

    @abstractmethod
    async def guest_authorizations(self) -> list[GuestAuthorizationEntry]:
        """List controller-side guest grants."""

    async def close(self) -> None:
        """Release network resources."""
