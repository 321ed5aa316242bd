"""Tests for the controller connection test."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from guestgate.controller import test_connection as tc
from guestgate.controller.base import ClientInfo


def _mock_controller(login_ok: bool = True, clients: list[ClientInfo] | None = None) -> MagicMock:
    controller = MagicMock()
    controller.login = AsyncMock(return_value=login_ok)
    controller.active_clients = AsyncMock(return_value=clients or [])
    controller.close = AsyncMock()
    return controller


class TestUnifiConnection:
    @pytest.mark.asyncio
    async def test_success(self) -> None:
        controller = _mock_controller(
            clients=[ClientInfo(mac="aa:bb:cc:dd:ee:ff"), ClientInfo(mac="11:22:33:44:55:66")]
        )
        with patch.object(tc, "UnifiController", return_value=controller) as cls:
            result = await tc.test_unifi("https://192.168.1.1:8443", "admin", "password")

        assert result.success is True
        assert result.device_count == 2
        assert "2 active clients" in result.message
        assert cls.call_args.kwargs["timeout"] == tc.PROBE_TIMEOUT_SECONDS
        controller.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_login_failure(self) -> None:
        controller = _mock_controller(login_ok=False)
        with patch.object(tc, "UnifiController", return_value=controller):
            result = await tc.test_unifi("https://192.168.1.1:8443", "admin", "wrong")

        assert result.success is False
        assert result.device_count is None
        controller.active_clients.assert_not_awaited()
        controller.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_passes_site_and_ssl(self) -> None:
        controller = _mock_controller()
        with patch.object(tc, "UnifiController", return_value=controller) as cls:
            await tc.test_unifi("https://unifi", "admin", "pw", site="lobby", verify_ssl=False)

        kwargs = cls.call_args.kwargs
        assert kwargs["site"] == "lobby"
        assert kwargs["verify_ssl"] is False

    @pytest.mark.asyncio
    async def test_client_listing_failure(self) -> None:
        controller = _mock_controller()
        controller.active_clients = AsyncMock(return_value=None)
        with patch.object(tc, "UnifiController", return_value=controller):
            result = await tc.test_unifi("https://192.168.1.1:8443", "admin", "password")

        assert result.success is False
        assert result.device_count is None
        controller.close.assert_awaited_once()
