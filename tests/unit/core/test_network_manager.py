"""
Tests for camera_bridge.core.network_manager module.
"""

from unittest.mock import AsyncMock, patch

import pytest

from camera_bridge.core.collaborators import CommandResult
from camera_bridge.core.errors import BridgeError, ErrorKind
from camera_bridge.core.network_manager import (
    NetworkManager,
    ScanResult,
    parse_connection_error,
    parse_wifi_list,
    split_terse,
    validate_ssid,
)

OK = CommandResult(0, "", "")


def ok(stdout: str) -> CommandResult:
    return CommandResult(0, stdout, "")


class TestParsing:
    def test_split_terse_handles_escaped_colons(self):
        assert split_terse(r"My\:Net:80:WPA2:*") == ["My:Net", "80", "WPA2", "*"]

    def test_parse_wifi_list(self):
        stdout = "HomeNet:80:WPA2:*\nCafe:45::\n:30:WPA2:\nHomeNet:20:WPA2:\n"
        networks = list(parse_wifi_list(stdout))

        assert [n.ssid for n in networks] == ["HomeNet", "Cafe"]
        assert networks[0].in_use is True
        assert networks[1].security == "Open"

    def test_parse_wifi_list_bad_signal(self):
        networks = list(parse_wifi_list("HomeNet:strong:WPA2:\n"))
        assert networks[0].signal == 0

    def test_validate_ssid(self):
        assert validate_ssid("Home Net_5G-2.4")
        assert not validate_ssid("")
        assert not validate_ssid("x" * 33)
        assert not validate_ssid("evil$(reboot)")

    def test_parse_connection_error(self):
        assert parse_connection_error("Error: Secrets were required") == "Incorrect password"
        assert parse_connection_error("weird failure").startswith("Connection failed:")


class TestScanResult:
    def test_single_pass(self):
        scan = ScanResult(["A", "B"])
        assert list(scan) == ["A", "B"]
        with pytest.raises(RuntimeError):
            iter(scan)


class TestNetworkManager:
    @pytest.fixture
    def manager(self):
        return NetworkManager(wifi_device="wlan0", sudo=[])

    @pytest.mark.asyncio
    async def test_detects_connected_device(self):
        manager = NetworkManager(sudo=[])
        devices = ok("eth0:ethernet:connected\nwlan1:wifi:disconnected\nwlan0:wifi:connected")
        with patch(
            "camera_bridge.core.network_manager.run_command", AsyncMock(return_value=devices)
        ):
            await manager.initialize()
        assert manager.wifi_device == "wlan0"

    @pytest.mark.asyncio
    async def test_scan_sorted_by_signal(self, manager):
        listing = ok("Weak:20:WPA2:\nStrong:90:WPA2:\n")
        with (
            patch(
                "camera_bridge.core.network_manager.run_command",
                AsyncMock(side_effect=[OK, listing]),
            ),
            patch("camera_bridge.core.network_manager.asyncio.sleep", AsyncMock()),
        ):
            scan = await manager.scan()

        assert list(scan) == ["Strong", "Weak"]

    @pytest.mark.asyncio
    async def test_scan_without_device(self):
        manager = NetworkManager(sudo=[])
        with patch(
            "camera_bridge.core.network_manager.run_command",
            AsyncMock(return_value=CommandResult(1, "", "nmcli failed")),
        ):
            assert await manager.scan_networks() == []

    @pytest.mark.asyncio
    async def test_list_saved(self, manager):
        saved = ok("HomeNet:802-11-wireless\nWired:802-3-ethernet\n")
        with patch(
            "camera_bridge.core.network_manager.run_command", AsyncMock(return_value=saved)
        ):
            assert await manager.list_saved() == ["HomeNet"]

    @pytest.mark.asyncio
    async def test_connect_new_network(self, manager):
        with patch(
            "camera_bridge.core.network_manager.run_command",
            AsyncMock(side_effect=[ok(""), OK, OK]),
        ) as mock_run:
            await manager.connect("Cafe", "espresso1")

        add_cmd = mock_run.await_args_list[1].args[0]
        assert add_cmd[:3] == ["nmcli", "connection", "add"]
        assert "espresso1" in add_cmd
        assert mock_run.await_args_list[2].args[0] == ["nmcli", "connection", "up", "Cafe"]

    @pytest.mark.asyncio
    async def test_connect_existing_profile_without_secret(self, manager):
        with patch(
            "camera_bridge.core.network_manager.run_command",
            AsyncMock(side_effect=[ok("Cafe:802-11-wireless"), OK]),
        ) as mock_run:
            await manager.connect("Cafe", None)

        assert mock_run.await_args_list[-1].args[0] == ["nmcli", "connection", "up", "Cafe"]

    @pytest.mark.asyncio
    async def test_connect_failure_cleans_up(self, manager):
        failure = CommandResult(4, "", "Error: Secrets were required, but not provided")
        with patch(
            "camera_bridge.core.network_manager.run_command",
            AsyncMock(side_effect=[ok(""), OK, failure, OK]),
        ) as mock_run:
            with pytest.raises(BridgeError) as exc_info:
                await manager.connect("Cafe", "wrongpass")

        assert exc_info.value.kind == ErrorKind.CONNECT_FAILED
        assert exc_info.value.message == "Incorrect password"
        assert mock_run.await_args_list[-1].args[0] == ["nmcli", "connection", "delete", "Cafe"]

    @pytest.mark.asyncio
    async def test_connect_rejects_short_password(self, manager):
        with patch(
            "camera_bridge.core.network_manager.run_command", AsyncMock(return_value=ok(""))
        ):
            with pytest.raises(BridgeError):
                await manager.connect("Cafe", "short")

    @pytest.mark.asyncio
    async def test_connect_without_device(self):
        manager = NetworkManager(sudo=[])
        with patch(
            "camera_bridge.core.network_manager.run_command", AsyncMock(return_value=ok(""))
        ):
            with pytest.raises(BridgeError) as exc_info:
                await manager.connect("Cafe", "espresso1")
        assert exc_info.value.kind == ErrorKind.COLLABORATOR_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_connection_info(self, manager):
        device = ok("GENERAL.CONNECTION:HomeNet\nIP4.ADDRESS[1]:192.168.1.20/24")
        ssid = ok("802-11-wireless.ssid:HomeNet")
        with patch(
            "camera_bridge.core.network_manager.run_command",
            AsyncMock(side_effect=[device, ssid]),
        ):
            info = await manager.get_connection_info()

        assert info == {"ssid": "HomeNet", "ip_address": "192.168.1.20"}

    @pytest.mark.asyncio
    async def test_connection_info_when_disconnected(self, manager):
        with patch(
            "camera_bridge.core.network_manager.run_command",
            AsyncMock(return_value=ok("GENERAL.CONNECTION:--")),
        ):
            assert await manager.get_connection_info() is None


class TestMissingNmcli:
    """Hosts without NetworkManager report nothing instead of raising."""

    @pytest.fixture
    def missing(self):
        return AsyncMock(
            side_effect=BridgeError(
                ErrorKind.COLLABORATOR_UNAVAILABLE, "Required tool not found: nmcli"
            )
        )

    @pytest.mark.asyncio
    async def test_information_calls_degrade(self, missing):
        manager = NetworkManager(sudo=[])
        with patch("camera_bridge.core.network_manager.run_command", missing):
            await manager.initialize()
            assert await manager.get_connection_info() is None
            assert await manager.scan_networks() == []
            assert await manager.list_saved() == []

    @pytest.mark.asyncio
    async def test_remove_saved_reports_failure(self, missing):
        manager = NetworkManager(wifi_device="wlan0", sudo=[])
        with patch("camera_bridge.core.network_manager.run_command", missing):
            assert await manager.remove_saved("HomeNet") is False

    @pytest.mark.asyncio
    async def test_connect_still_raises(self, missing):
        manager = NetworkManager(sudo=[])
        with patch("camera_bridge.core.network_manager.run_command", missing):
            with pytest.raises(BridgeError) as exc_info:
                await manager.connect("HomeNet", "password123")
        assert exc_info.value.kind == ErrorKind.COLLABORATOR_UNAVAILABLE


class TestRemoveSaved:
    @pytest.mark.asyncio
    async def test_bounded_by_command_timeout(self):
        manager = NetworkManager(wifi_device="wlan0", sudo=[], command_timeout=7.0)
        with patch(
            "camera_bridge.core.network_manager.run_command", AsyncMock(return_value=OK)
        ) as mock_run:
            assert await manager.remove_saved("HomeNet") is True

        assert mock_run.await_args.args[0] == ["nmcli", "connection", "delete", "HomeNet"]
        assert mock_run.await_args.kwargs["timeout"] == 7.0

    @pytest.mark.asyncio
    async def test_hung_delete_returns(self):
        manager = NetworkManager(wifi_device="wlan0", sudo=[])
        with patch(
            "camera_bridge.core.network_manager.run_command",
            AsyncMock(side_effect=TimeoutError()),
        ):
            assert await manager.remove_saved("HomeNet") is False

    @pytest.mark.asyncio
    async def test_failed_activation_cleanup_is_bounded(self):
        manager = NetworkManager(wifi_device="wlan0", sudo=[], command_timeout=7.0)
        failure = CommandResult(4, "", "Error: Connection activation failed")
        with patch(
            "camera_bridge.core.network_manager.run_command",
            AsyncMock(side_effect=[ok(""), OK, failure, OK]),
        ) as mock_run:
            with pytest.raises(BridgeError):
                await manager.connect("Cafe", "espresso1")

        cleanup = mock_run.await_args_list[-1]
        assert cleanup.args[0] == ["nmcli", "connection", "delete", "Cafe"]
        assert cleanup.kwargs["timeout"] == 7.0
