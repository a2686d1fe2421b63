"""
Pytest configuration and shared fixtures for Camera Bridge tests.
"""

import asyncio
import os
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from camera_bridge.core.collaborators import Installer, Prober
from camera_bridge.core.config import Settings
from camera_bridge.core.errors import BridgeError, ErrorKind
from camera_bridge.core.locks import ResourceLocks
from camera_bridge.core.network_manager import ScanResult
from camera_bridge.core.network_store import NetworkStore
from camera_bridge.core.provisioning import ProvisioningOrchestrator
from camera_bridge.core.state import StateManager


# ============================================================================
# Fake collaborators
# ============================================================================


class FakeInstaller(Installer):
    """Installs into the local filesystem with the same atomic-replace contract."""

    def __init__(self, delay: float = 0.0, fail: BridgeError | None = None):
        self.delay = delay
        self.fail = fail
        self.calls: list[tuple[bytes, Path, str, int]] = []
        self.completed = 0

    async def install(self, content: bytes, target_path: Path, owner: str, mode: int) -> None:
        self.calls.append((content, target_path, owner, mode))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail is not None:
            raise self.fail

        target_path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(dir=target_path.parent)
        with os.fdopen(fd, "wb") as f:
            # Written in two halves so an unserialized concurrent install could interleave
            half = len(content) // 2
            f.write(content[:half])
            await asyncio.sleep(0)
            f.write(content[half:])
        os.chmod(temp_name, mode)
        os.replace(temp_name, target_path)
        self.completed += 1


class FakeProber(Prober):
    def __init__(self, ok: bool = True, diagnostic: str = "", delay: float = 0.0):
        self.ok = ok
        self.diagnostic = diagnostic
        self.delay = delay
        self.calls: list[str] = []

    async def probe(self, identity: str, timeout: float) -> tuple[bool, str]:
        self.calls.append(identity)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.ok, self.diagnostic


# ============================================================================
# Settings / state fixtures
# ============================================================================


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    return tmp_path


@pytest.fixture
def settings(temp_dir: Path) -> Settings:
    return Settings(
        state_dir=temp_dir / "state",
        log_dir=temp_dir / "log",
        rclone_config_path=temp_dir / "home" / ".config" / "rclone" / "rclone.conf",
        share_path=temp_dir,
        probe_timeout=1.0,
        install_timeout=1.0,
        connect_timeout=1.0,
        lock_wait_timeout=5.0,
    )


@pytest.fixture
def locks(settings: Settings) -> ResourceLocks:
    return ResourceLocks(wait_timeout=settings.lock_wait_timeout)


@pytest.fixture
def state_manager(settings: Settings) -> StateManager:
    settings.ensure_directories()
    return StateManager(settings.state_file)


@pytest.fixture
def installer() -> FakeInstaller:
    return FakeInstaller()


@pytest.fixture
def prober() -> FakeProber:
    return FakeProber()


@pytest.fixture
def service_control() -> MagicMock:
    services = MagicMock()
    services.restart = AsyncMock(return_value=True)
    services.is_active = AsyncMock(return_value=True)
    return services


@pytest.fixture
def orchestrator(settings, installer, prober, state_manager, locks, service_control):
    return ProvisioningOrchestrator(
        settings,
        installer=installer,
        prober=prober,
        state_manager=state_manager,
        locks=locks,
        services=service_control,
    )


# ============================================================================
# Networking fixtures
# ============================================================================


@pytest.fixture
def network_store(settings: Settings, locks: ResourceLocks) -> NetworkStore:
    settings.ensure_directories()
    return NetworkStore(settings.network_store_file, locks)


@pytest.fixture
def mock_network_manager() -> MagicMock:
    """NetworkManager double with every collaborator call succeeding."""
    manager = MagicMock()
    manager.connect = AsyncMock(return_value=None)
    manager.remove_saved = AsyncMock(return_value=True)
    manager.list_saved = AsyncMock(return_value=[])
    manager.scan_networks = AsyncMock(return_value=[])
    manager.scan = AsyncMock(side_effect=lambda: ScanResult([]))
    manager.get_connection_info = AsyncMock(
        return_value={"ssid": "HomeNet", "ip_address": "192.168.1.20"}
    )
    return manager


@pytest.fixture
def connect_failure() -> BridgeError:
    return BridgeError(ErrorKind.CONNECT_FAILED, "Incorrect password", "Secrets were required")
