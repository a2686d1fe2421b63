"""
State management with event-driven updates.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from .locks import read_json, write_json_atomic

logger = logging.getLogger(__name__)


class ProvisioningState(str, Enum):
    """Storage provisioning pipeline states."""

    IDLE = "IDLE"
    CLASSIFYING = "CLASSIFYING"
    INSTALLING = "INSTALLING"
    VERIFYING = "VERIFYING"
    CONFIGURED = "CONFIGURED"
    REJECTED = "REJECTED"
    DEGRADED = "DEGRADED"


TRANSIENT_STATES = frozenset(
    {ProvisioningState.CLASSIFYING, ProvisioningState.INSTALLING, ProvisioningState.VERIFYING}
)


class ProvisioningInfo(BaseModel):
    """Facts about the currently installed storage profile."""

    bundle_kind: str | None = None
    auto_refresh: bool = False
    installed_at: datetime | None = None
    verified_at: datetime | None = None
    last_probe_ok: bool | None = None
    last_probe_at: datetime | None = None
    last_error: str | None = None
    last_reason: str | None = None


class NetworkInfo(BaseModel):
    """Network connection information."""

    ssid: str | None = None
    ip_address: str | None = None
    connected_at: datetime | None = None


class SystemState(BaseModel):
    """Complete system state."""

    provisioning_state: ProvisioningState = ProvisioningState.IDLE
    provisioning: ProvisioningInfo = Field(default_factory=ProvisioningInfo)
    network_info: NetworkInfo = Field(default_factory=NetworkInfo)
    persistence_health: str = "healthy"  # "healthy", "degraded", "failed"
    persistence_error: str | None = None
    persistence_failures: int = 0
    persistence_last_failure: datetime | None = None
    updated_at: datetime = Field(default_factory=datetime.now)


class StateManager:
    """
    Manages system state with event-driven updates.

    Features:
    - In-memory state with optional persistence
    - Async event callbacks for provisioning state changes
    - Persistence health tracking that never fails the caller
    """

    def __init__(self, state_file: Path | None = None):
        self.state = SystemState()
        self.state_file = state_file
        self._callbacks: dict[str, list[Any]] = {}
        self._lock = asyncio.Lock()

        if state_file and state_file.exists():
            self._load_state()
            # A pipeline interrupted by a restart has no owner anymore
            if self.state.provisioning_state in TRANSIENT_STATES:
                self.state.provisioning_state = ProvisioningState.IDLE

    def _load_state(self) -> None:
        """Load state from file."""
        if not self.state_file:
            return
        try:
            data = read_json(self.state_file)
            if data is not None:
                self.state = SystemState.model_validate(data)
                logger.info(f"Loaded state from {self.state_file}")
        except (OSError, ValueError, ValidationError) as e:
            logger.error(f"Failed to load state: {e}")

    async def _save_state(self) -> None:
        """Save state to file with health tracking."""
        if not self.state_file:
            return

        try:
            write_json_atomic(self.state_file, self.state.model_dump(mode="json"))

            if self.state.persistence_failures > 0:
                old_health = self.state.persistence_health
                self.state.persistence_failures = 0
                self.state.persistence_health = "healthy"
                self.state.persistence_error = None
                logger.info("State persistence recovered")
                if old_health != "healthy":
                    await self._trigger_callbacks(
                        "persistence_health_change", old_health, "healthy"
                    )

        except OSError as e:
            # Disk full, permission denied, etc.
            old_health = self.state.persistence_health
            self.state.persistence_failures += 1
            self.state.persistence_last_failure = datetime.now()
            self.state.persistence_error = str(e)

            if self.state.persistence_failures <= 3:
                new_health = "degraded"
                logger.warning(
                    f"State persistence degraded (failure {self.state.persistence_failures}): {e}"
                )
            else:
                new_health = "failed"
                logger.error(
                    f"State persistence failed (failure {self.state.persistence_failures}): {e}"
                )

            self.state.persistence_health = new_health

            if old_health != new_health:
                await self._trigger_callbacks("persistence_health_change", old_health, new_health)

    async def update_provisioning(
        self,
        provisioning_state: ProvisioningState | None = None,
        **fields: Any,
    ) -> None:
        """Update provisioning state and info fields, then trigger callbacks."""
        async with self._lock:
            old_state = self.state.provisioning_state

            if provisioning_state is not None:
                self.state.provisioning_state = provisioning_state

            for name, value in fields.items():
                if name not in ProvisioningInfo.model_fields:
                    raise AttributeError(f"Unknown provisioning field: {name}")
                setattr(self.state.provisioning, name, value)

            self.state.updated_at = datetime.now()
            await self._save_state()

            if old_state != self.state.provisioning_state:
                await self._trigger_callbacks(
                    "provisioning_state_change", old_state, self.state.provisioning_state
                )

    async def update_network(self, network_info: NetworkInfo) -> None:
        """Record the network the device is connected to."""
        async with self._lock:
            self.state.network_info = network_info
            self.state.updated_at = datetime.now()
            await self._save_state()

    def on_provisioning_state_change(self, callback: Any) -> None:
        """Register a callback for provisioning state changes."""
        self._callbacks.setdefault("provisioning_state_change", []).append(callback)

    def on_persistence_health_change(self, callback: Any) -> None:
        """Register a callback for persistence health changes."""
        self._callbacks.setdefault("persistence_health_change", []).append(callback)

    async def _trigger_callbacks(self, event: str, *args, **kwargs) -> None:
        """Trigger registered callbacks for an event."""
        for callback in self._callbacks.get(event, []):
            try:
                if asyncio.iscoroutinefunction(callback):
                    await callback(*args, **kwargs)
                else:
                    callback(*args, **kwargs)
            except Exception as e:
                logger.error(f"Callback error for {event}: {e}")

    def get_state(self) -> SystemState:
        """Get current state."""
        return self.state
