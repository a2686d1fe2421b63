"""Device health scoring from provisioning, network and service signals."""

import asyncio
import logging
import shutil
from enum import Enum
from pathlib import Path

from pydantic import BaseModel

from .collaborators import ServiceControl
from .config import Settings
from .network_manager import NetworkManager
from .state import ProvisioningState, StateManager

logger = logging.getLogger(__name__)

# Points deducted from 100 for each failing check
PENALTIES = {
    "network_connected": 30,
    "provisioning_verified": 25,
    "file_share_active": 20,
    "connectivity_probe_ok": 15,
    "disk_below_high_water": 10,
}


class HealthLevel(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    WARNING = "warning"
    CRITICAL = "critical"


class HealthSignals(BaseModel):
    network_connected: bool = False
    provisioning_verified: bool = False
    file_share_active: bool = False
    connectivity_probe_ok: bool = False
    disk_usage_percent: float | None = None


class HealthReport(BaseModel):
    score: int
    level: HealthLevel
    checks: dict[str, bool]
    ssid: str | None = None
    ip_address: str | None = None
    provisioning_state: ProvisioningState
    disk_usage_percent: float | None = None


def health_level(score: int) -> HealthLevel:
    if score >= 80:
        return HealthLevel.EXCELLENT
    if score >= 60:
        return HealthLevel.GOOD
    if score >= 40:
        return HealthLevel.WARNING
    return HealthLevel.CRITICAL


def compute_health(
    signals: HealthSignals, high_water_percent: int = 90
) -> tuple[int, dict[str, bool]]:
    """Score ``signals`` on a 0-100 scale; returns the score and per-check results."""
    checks = {
        "network_connected": signals.network_connected,
        "provisioning_verified": signals.provisioning_verified,
        "file_share_active": signals.file_share_active,
        "connectivity_probe_ok": signals.connectivity_probe_ok,
        # Unknown usage is not penalised
        "disk_below_high_water": signals.disk_usage_percent is None
        or signals.disk_usage_percent <= high_water_percent,
    }
    score = 100 - sum(PENALTIES[name] for name, passed in checks.items() if not passed)
    return max(0, min(100, score)), checks


def disk_usage_percent(path: Path) -> float | None:
    """Used space of the filesystem holding ``path`` (or its nearest existing parent)."""
    target = path
    while not target.exists() and target != target.parent:
        target = target.parent
    try:
        usage = shutil.disk_usage(target)
    except OSError as e:
        logger.warning(f"Could not read disk usage for {path}: {e}")
        return None
    if usage.total == 0:
        return None
    return round(usage.used / usage.total * 100, 1)


class StatusAggregator:
    """Computes health on demand by re-reading every signal."""

    def __init__(
        self,
        settings: Settings,
        state_manager: StateManager,
        network_manager: NetworkManager,
        services: ServiceControl,
    ):
        self.settings = settings
        self.state_manager = state_manager
        self.network_manager = network_manager
        self.services = services

    async def collect(self) -> HealthReport:
        connection, share_active, disk = await asyncio.gather(
            self.network_manager.get_connection_info(),
            self.services.is_active(self.settings.share_service),
            asyncio.to_thread(disk_usage_percent, self.settings.share_path),
        )

        state = self.state_manager.get_state()
        info = state.provisioning
        signals = HealthSignals(
            network_connected=bool(connection and connection.get("ssid")),
            provisioning_verified=info.installed_at is not None and info.verified_at is not None,
            file_share_active=share_active,
            connectivity_probe_ok=info.last_probe_ok is True,
            disk_usage_percent=disk,
        )
        score, checks = compute_health(signals, self.settings.disk_high_water_percent)

        return HealthReport(
            score=score,
            level=health_level(score),
            checks=checks,
            ssid=connection.get("ssid") if connection else None,
            ip_address=connection.get("ip_address") if connection else None,
            provisioning_state=state.provisioning_state,
            disk_usage_percent=disk,
        )
