"""UniFi Network controller client via its session-based REST API.

Logs in with a credential POST, keeps the session cookie in the httpx
cookie jar and replays the CSRF token on every call. An expired session
is re-established at most once per request.
"""

import asyncio
import logging
from typing import Any

import httpx

from guestgate.controller.base import (
    BaseController,
    ClientInfo,
    DPIStats,
    GuestAuthorizationEntry,
)
from guestgate.registry.store import normalize_mac

logger = logging.getLogger(__name__)

# Re-login attempts allowed per request after an authentication-expired response
MAX_SESSION_RETRIES = 1

_CSRF_HEADER = "x-csrf-token"
_CSRF_COOKIE = "csrf_token"


class UnifiController(BaseController):
    """Authorizes guest MACs and reads station data from a UniFi controller."""

    def __init__(
        self,
        url: str,
        username: str,
        password: str,
        site: str = "default",
        verify_ssl: bool = True,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url.rstrip("/")
        self.username = username
        self.password = password
        self.site = site
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self.is_logged_in = False
        self._csrf_token: str | None = None
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._login_lock = asyncio.Lock()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.url,
                # Home controllers usually ship self-signed certificates
                verify=self.verify_ssl,
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    def _clear_session(self) -> None:
        self.is_logged_in = False
        self._csrf_token = None
        if self._client is not None:
            self._client.cookies.clear()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self.is_logged_in = False

    async def login(self) -> bool:
        if self.is_logged_in:
            return True

        async with self._login_lock:
            if self.is_logged_in:
                return True
            client = self._get_client()
            try:
                response = await client.post(
                    "/api/login",
                    json={"username": self.username, "password": self.password},
                )
            except httpx.HTTPError as e:
                logger.error("UniFi login error: %s", e)
                return False

            if not response.is_success:
                logger.error("UniFi login failed: HTTP %d", response.status_code)
                return False

            self._csrf_token = response.headers.get(_CSRF_HEADER) or response.cookies.get(
                _CSRF_COOKIE
            )
            self.is_logged_in = True
            logger.info("Logged in to UniFi controller at %s", self.url)
            return True

    async def logout(self) -> None:
        if not self.is_logged_in:
            return
        try:
            await self._send("POST", "/api/logout")
        except httpx.HTTPError:
            logger.debug("UniFi logout failed", exc_info=True)
        self._clear_session()

    async def _send(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
    ) -> httpx.Response:
        headers = {}
        if self._csrf_token:
            headers["X-Csrf-Token"] = self._csrf_token
        return await self._get_client().request(method, path, json=payload, headers=headers)

    async def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Send an authenticated request, re-logging in at most once on 401.

        Returns the decoded JSON object, or None on any failure.
        """
        for attempt in range(MAX_SESSION_RETRIES + 1):
            if not await self.login():
                return None

            try:
                response = await self._send(method, path, payload)
            except httpx.HTTPError as e:
                logger.error("UniFi request error: %s %s: %s", method, path, e)
                return None

            if response.status_code == 401:
                self._clear_session()
                if attempt < MAX_SESSION_RETRIES:
                    logger.info("UniFi session expired, re-authenticating")
                    continue
                logger.error("UniFi still unauthorized after re-login: %s %s", method, path)
                return None

            if not response.is_success:
                logger.error(
                    "UniFi request failed: %s %s (HTTP %d)", method, path, response.status_code
                )
                return None

            try:
                data = response.json()
            except ValueError:
                logger.error("UniFi returned malformed JSON: %s %s", method, path)
                return None
            if not isinstance(data, dict):
                logger.error("UniFi returned unexpected payload: %s %s", method, path)
                return None
            return data
        return None

    @staticmethod
    def _is_ok(result: dict[str, Any] | None) -> bool:
        if not result:
            return False
        meta = result.get("meta")
        return isinstance(meta, dict) and meta.get("rc") == "ok"

    @staticmethod
    def _rows(result: dict[str, Any] | None) -> list[dict[str, Any]]:
        if not result:
            return []
        data = result.get("data")
        if not isinstance(data, list):
            return []
        return [row for row in data if isinstance(row, dict) and row.get("mac")]

    async def _stamgr(self, cmd: str, mac: str, **extra: Any) -> bool:
        payload = {"cmd": cmd, "mac": normalize_mac(mac), **extra}
        result = await self._request("POST", f"/api/s/{self.site}/cmd/stamgr", payload)
        return self._is_ok(result)

    async def authorize(self, mac: str, minutes: int) -> bool:
        return await self._stamgr("authorize-guest", mac, minutes=max(1, int(minutes)))

    async def unauthorize(self, mac: str) -> bool:
        return await self._stamgr("unauthorize-guest", mac)

    async def kick(self, mac: str) -> bool:
        return await self._stamgr("kick-sta", mac)

    async def active_clients(self) -> list[ClientInfo] | None:
        result = await self._request("GET", f"/api/s/{self.site}/stat/sta")
        if result is None:
            return None
        return [ClientInfo.from_api(row) for row in self._rows(result)]

    async def dpi_stats(self, mac: str) -> DPIStats | None:
        result = await self._request(
            "POST",
            f"/api/s/{self.site}/stat/stadpi",
            {"macs": [normalize_mac(mac)]},
        )
        rows = self._rows(result)
        return DPIStats.from_api(rows[0]) if rows else None

    async def guest_authorizations(self) -> list[GuestAuthorizationEntry]:
        result = await self._request("GET", f"/api/s/{self.site}/stat/guest")
        return [GuestAuthorizationEntry.from_api(row) for row in self._rows(result)]
