"""
Tests for camera_bridge.core.collaborators module.
"""

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from camera_bridge.core.collaborators import (
    CommandResult,
    RcloneProber,
    ServiceControl,
    SudoInstaller,
    as_user,
    run_command,
)
from camera_bridge.core.errors import BridgeError, ErrorKind

OK = CommandResult(0, "", "")


class TestRunCommand:
    @pytest.mark.asyncio
    async def test_captures_output(self):
        result = await run_command(["echo", "hello"])
        assert result.ok
        assert result.stdout == "hello"

    @pytest.mark.asyncio
    async def test_missing_tool(self):
        with pytest.raises(BridgeError) as exc_info:
            await run_command(["camera-bridge-no-such-tool"])
        assert exc_info.value.kind == ErrorKind.COLLABORATOR_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self):
        with pytest.raises(TimeoutError):
            await run_command(["sleep", "5"], timeout=0.1)

    def test_diagnostic_prefers_stderr(self):
        assert CommandResult(1, "out", "err").diagnostic == "err"
        assert CommandResult(1, "out", "").diagnostic == "out"


class TestAsUser:
    def test_with_sudo(self):
        assert as_user(["sudo", "-n"], "camerabridge") == ["sudo", "-n", "-u", "camerabridge"]

    def test_as_root(self):
        assert as_user([], "camerabridge") == ["runuser", "-u", "camerabridge", "--"]


class TestSudoInstaller:
    @pytest.mark.asyncio
    async def test_stages_then_renames(self):
        target = Path("/home/camerabridge/.config/rclone/rclone.conf")
        installer = SudoInstaller(sudo=["sudo", "-n"])

        with patch(
            "camera_bridge.core.collaborators.run_command", AsyncMock(return_value=OK)
        ) as mock_run:
            await installer.install(b"[dropbox]\n", target, "camerabridge", 0o600)

        commands = [call.args[0] for call in mock_run.await_args_list]
        assert len(commands) == 3

        mkdir, stage, rename = commands
        assert mkdir == [
            "sudo", "-n", "-u", "camerabridge", "mkdir", "-p", str(target.parent)
        ]
        assert stage[:9] == [
            "sudo", "-n", "install", "-o", "camerabridge", "-g", "camerabridge", "-m", "600"
        ]
        staging = stage[-1]
        assert Path(staging).parent == target.parent
        assert Path(staging).name.startswith(".rclone.conf.")
        assert rename == ["sudo", "-n", "mv", "-f", staging, str(target)]

    @pytest.mark.asyncio
    async def test_failed_step_raises_install_failed(self):
        installer = SudoInstaller(sudo=[])
        failure = CommandResult(1, "", "install: invalid user 'camerabridge'")

        with patch(
            "camera_bridge.core.collaborators.run_command",
            AsyncMock(side_effect=[OK, failure, OK]),
        ) as mock_run:
            with pytest.raises(BridgeError) as exc_info:
                await installer.install(
                    b"data", Path("/tmp/rclone/rclone.conf"), "camerabridge", 0o600
                )

        assert exc_info.value.kind == ErrorKind.INSTALL_FAILED
        assert "invalid user" in exc_info.value.detail

        commands = [call.args[0] for call in mock_run.await_args_list]
        assert len(commands) == 3
        assert not any("mv" in cmd for cmd in commands)
        staging = commands[1][-1]
        assert commands[2] == ["rm", "-f", staging]

    @pytest.mark.asyncio
    async def test_failed_rename_discards_staged_file(self):
        target = Path("/home/camerabridge/.config/rclone/rclone.conf")
        installer = SudoInstaller(sudo=["sudo", "-n"])
        failure = CommandResult(1, "", "mv: cannot move: Read-only file system")

        with patch(
            "camera_bridge.core.collaborators.run_command",
            AsyncMock(side_effect=[OK, OK, failure, OK]),
        ) as mock_run:
            with pytest.raises(BridgeError) as exc_info:
                await installer.install(b"[dropbox]\n", target, "camerabridge", 0o600)

        assert exc_info.value.kind == ErrorKind.INSTALL_FAILED
        commands = [call.args[0] for call in mock_run.await_args_list]
        staging = commands[1][-1]
        assert commands[2][:4] == ["sudo", "-n", "mv", "-f"]
        assert commands[3] == ["sudo", "-n", "rm", "-f", staging]

    @pytest.mark.asyncio
    async def test_cleanup_failure_keeps_original_error(self):
        installer = SudoInstaller(sudo=[])
        failure = CommandResult(1, "", "mv: cannot move")

        with patch(
            "camera_bridge.core.collaborators.run_command",
            AsyncMock(side_effect=[OK, OK, failure, TimeoutError()]),
        ):
            with pytest.raises(BridgeError) as exc_info:
                await installer.install(
                    b"data", Path("/tmp/rclone/rclone.conf"), "camerabridge", 0o600
                )

        assert exc_info.value.kind == ErrorKind.INSTALL_FAILED


class TestRcloneProber:
    @pytest.mark.asyncio
    async def test_success(self):
        prober = RcloneProber("camerabridge", Path("/cfg/rclone.conf"), sudo=["sudo", "-n"])

        with patch(
            "camera_bridge.core.collaborators.run_command", AsyncMock(return_value=OK)
        ) as mock_run:
            ok, diagnostic = await prober.probe("dropbox", timeout=30)

        assert ok is True
        assert diagnostic == ""
        cmd = mock_run.await_args.args[0]
        assert cmd[:4] == ["sudo", "-n", "-u", "camerabridge"]
        assert "lsd" in cmd
        assert "dropbox:" in cmd
        assert mock_run.await_args.kwargs["timeout"] == 30

    @pytest.mark.asyncio
    async def test_failure_returns_diagnostic(self):
        prober = RcloneProber("camerabridge", Path("/cfg/rclone.conf"), sudo=[])
        failure = CommandResult(1, "", "couldn't fetch token: invalid_grant")

        with patch(
            "camera_bridge.core.collaborators.run_command", AsyncMock(return_value=failure)
        ):
            ok, diagnostic = await prober.probe("dropbox", timeout=30)

        assert ok is False
        assert "invalid_grant" in diagnostic

    @pytest.mark.asyncio
    async def test_timeout(self):
        prober = RcloneProber("camerabridge", Path("/cfg/rclone.conf"), sudo=[])

        with patch(
            "camera_bridge.core.collaborators.run_command",
            AsyncMock(side_effect=TimeoutError()),
        ):
            ok, diagnostic = await prober.probe("dropbox", timeout=30)

        assert ok is False
        assert "timed out" in diagnostic


class TestServiceControl:
    @pytest.mark.asyncio
    async def test_restart_success(self):
        services = ServiceControl(sudo=["sudo", "-n"])
        with patch(
            "camera_bridge.core.collaborators.run_command", AsyncMock(return_value=OK)
        ) as mock_run:
            assert await services.restart("camera-bridge") is True
        assert mock_run.await_args.args[0] == [
            "sudo", "-n", "systemctl", "restart", "camera-bridge"
        ]

    @pytest.mark.asyncio
    async def test_restart_never_raises(self):
        services = ServiceControl(sudo=[])
        missing = BridgeError(ErrorKind.COLLABORATOR_UNAVAILABLE, "Required tool not found")
        with patch(
            "camera_bridge.core.collaborators.run_command", AsyncMock(side_effect=missing)
        ):
            assert await services.restart("camera-bridge") is False

    @pytest.mark.asyncio
    async def test_is_active(self):
        services = ServiceControl(sudo=[])
        with patch(
            "camera_bridge.core.collaborators.run_command",
            AsyncMock(return_value=CommandResult(3, "", "")),
        ):
            assert await services.is_active("smbd") is False
