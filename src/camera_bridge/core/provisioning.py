"""Storage credential provisioning pipeline.

One ``configure()`` call walks a pasted credential through
classify -> compile -> install -> verify::

    IDLE -> CLASSIFYING -> INSTALLING -> VERIFYING -> CONFIGURED
                 |              |             `-----> DEGRADED
                 `--------------+-------------------> REJECTED

A rejected run leaves the previously installed profile authoritative. A failed
connectivity probe keeps the new profile installed (unless rollback is enabled)
so verification can be retried without pasting the credential again.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum

from pydantic import BaseModel

from .collaborators import Installer, Prober, ServiceControl
from .compiler import InstalledProfileInfo, StorageProfile, compile_profile, read_installed_profile
from .config import Settings
from .credentials import classify
from .errors import BridgeError, ErrorKind
from .locks import LockLease, ResourceLocks, run_detachable
from .state import ProvisioningState, StateManager

logger = logging.getLogger(__name__)


class ProvisioningStatus(str, Enum):
    INSTALLED = "Installed"
    REJECTED = "Rejected"
    CONNECTIVITY_FAILED = "ConnectivityFailed"


class ProvisioningResult(BaseModel):
    status: ProvisioningStatus
    state: ProvisioningState
    bundle_kind: str | None = None
    reason: str
    auto_refresh: bool = False
    error: ErrorKind | None = None
    detail: str | None = None
    rolled_back: bool = False


class ProvisioningOrchestrator:
    def __init__(
        self,
        settings: Settings,
        installer: Installer,
        prober: Prober,
        state_manager: StateManager,
        locks: ResourceLocks,
        services: ServiceControl | None = None,
    ):
        self.settings = settings
        self.installer = installer
        self.prober = prober
        self.state_manager = state_manager
        self.locks = locks
        self.services = services
        self._active_profile: StorageProfile | None = None
        self._background: set[asyncio.Task] = set()

    @property
    def target_key(self) -> str:
        return str(self.settings.storage_config_path)

    @property
    def state(self) -> ProvisioningState:
        return self.state_manager.get_state().provisioning_state

    def installed_profile(self) -> InstalledProfileInfo:
        return read_installed_profile(
            self.settings.storage_config_path, remote_name=self.settings.remote_name
        )

    async def configure(self, raw: str) -> ProvisioningResult:
        """Classify, install and verify a pasted credential."""
        try:
            lease = await self.locks.lease(self.target_key)
        except BridgeError as e:
            return self._result(ProvisioningStatus.REJECTED, self.state, e.message, error=e)

        try:
            return await self._configure(raw, lease)
        finally:
            lease.release()

    async def _configure(self, raw: str, lease: LockLease) -> ProvisioningResult:
        previous = self._active_profile
        previous_info = self.state_manager.get_state().provisioning.model_copy()

        await self.state_manager.update_provisioning(ProvisioningState.CLASSIFYING)
        try:
            bundle = classify(raw, legacy_prefix=self.settings.legacy_token_prefix)
        except BridgeError as e:
            logger.info(f"Credential rejected: {e.kind.value}")
            return await self._reject(e)

        profile = compile_profile(
            bundle,
            path=self.settings.storage_config_path,
            owner=self.settings.service_user,
            mode=self.settings.config_mode,
            remote_name=self.settings.remote_name,
            backend_type=self.settings.backend_type,
        )
        logger.info(
            f"Installing {bundle.kind} credential for remote '{profile.remote_name}' "
            f"at {profile.path}"
        )

        await self.state_manager.update_provisioning(ProvisioningState.INSTALLING)
        error = await self._install(profile, lease)
        if error is not None:
            return await self._reject(error, bundle_kind=bundle.kind)

        self._active_profile = profile
        auto_refresh = bundle.has_refresh_token

        await self.state_manager.update_provisioning(
            ProvisioningState.VERIFYING,
            bundle_kind=bundle.kind,
            auto_refresh=auto_refresh,
            installed_at=datetime.now(),
            verified_at=None,
            last_error=None,
        )

        ok, diagnostic, probe_error = await self._probe()
        if ok:
            reason = f"{self.settings.remote_name} configured successfully"
            if auto_refresh:
                reason += " with OAuth2 auto-refresh"
            elif bundle.kind == "legacy":
                reason += "; legacy tokens may expire, consider OAuth2 for auto-refresh"
            await self.state_manager.update_provisioning(
                ProvisioningState.CONFIGURED,
                verified_at=datetime.now(),
                last_reason=reason,
            )
            self._restart_bridge_service()
            return self._result(
                ProvisioningStatus.INSTALLED,
                ProvisioningState.CONFIGURED,
                reason,
                bundle_kind=bundle.kind,
                auto_refresh=auto_refresh,
            )

        if self.settings.rollback_on_probe_failure and previous is not None:
            rollback_error = await self._install(previous, lease)
            if rollback_error is None:
                self._active_profile = previous
                reason = "Connectivity check failed; previous credential restored"
                restored_state = (
                    ProvisioningState.CONFIGURED
                    if previous_info.verified_at
                    else ProvisioningState.DEGRADED
                )
                restored = previous_info.model_dump(
                    exclude={"last_error", "last_reason", "last_probe_ok", "last_probe_at"}
                )
                await self.state_manager.update_provisioning(
                    restored_state,
                    **restored,
                    last_error=probe_error.value,
                    last_reason=reason,
                )
                return ProvisioningResult(
                    status=ProvisioningStatus.CONNECTIVITY_FAILED,
                    state=restored_state,
                    bundle_kind=bundle.kind,
                    reason=reason,
                    error=probe_error,
                    detail=diagnostic or None,
                    rolled_back=True,
                )
            logger.error(f"Rollback to previous credential failed: {rollback_error.message}")

        reason = "Credential installed but the connectivity check failed"
        await self.state_manager.update_provisioning(
            ProvisioningState.DEGRADED,
            last_error=probe_error.value,
            last_reason=reason,
        )
        return ProvisioningResult(
            status=ProvisioningStatus.CONNECTIVITY_FAILED,
            state=ProvisioningState.DEGRADED,
            bundle_kind=bundle.kind,
            reason=reason,
            auto_refresh=auto_refresh,
            error=probe_error,
            detail=diagnostic or None,
        )

    async def verify(self) -> ProvisioningResult:
        """Re-run the connectivity probe against the installed profile."""
        try:
            lease = await self.locks.lease(self.target_key)
        except BridgeError as e:
            return self._result(ProvisioningStatus.REJECTED, self.state, e.message, error=e)

        try:
            info = self.state_manager.get_state().provisioning
            if info.installed_at is None and not self.installed_profile().configured:
                error = BridgeError(ErrorKind.NOT_CONFIGURED, "No storage credential installed")
                return self._result(
                    ProvisioningStatus.REJECTED, self.state, error.message, error=error
                )

            await self.state_manager.update_provisioning(ProvisioningState.VERIFYING)
            ok, diagnostic, probe_error = await self._probe()
            if ok:
                reason = f"{self.settings.remote_name} connection verified"
                await self.state_manager.update_provisioning(
                    ProvisioningState.CONFIGURED,
                    verified_at=datetime.now(),
                    last_error=None,
                    last_reason=reason,
                )
                return self._result(
                    ProvisioningStatus.INSTALLED,
                    ProvisioningState.CONFIGURED,
                    reason,
                    bundle_kind=info.bundle_kind,
                    auto_refresh=info.auto_refresh,
                )

            reason = "Connectivity check failed"
            await self.state_manager.update_provisioning(
                ProvisioningState.DEGRADED,
                verified_at=None,
                last_error=probe_error.value,
                last_reason=reason,
            )
            return ProvisioningResult(
                status=ProvisioningStatus.CONNECTIVITY_FAILED,
                state=ProvisioningState.DEGRADED,
                bundle_kind=info.bundle_kind,
                reason=reason,
                auto_refresh=info.auto_refresh,
                error=probe_error,
                detail=diagnostic or None,
            )
        finally:
            lease.release()

    async def _install(self, profile: StorageProfile, lease: LockLease) -> BridgeError | None:
        """Run the privileged install within the timeout; returns the failure, if any."""
        try:
            await run_detachable(
                self.installer.install(
                    profile.to_bytes(), profile.path, profile.owner, profile.mode
                ),
                lease,
                timeout=self.settings.install_timeout,
            )
        except TimeoutError:
            return BridgeError(
                ErrorKind.INSTALL_TIMEOUT,
                f"Installing the credential took longer than {self.settings.install_timeout:.0f}s",
            )
        except BridgeError as e:
            logger.error(f"Credential install failed: {e.message} ({e.detail})")
            return e
        except OSError as e:
            logger.error(f"Credential install failed: {e}")
            return BridgeError(ErrorKind.INSTALL_FAILED, "Failed to install credential", str(e))
        return None

    async def _probe(self) -> tuple[bool, str, ErrorKind]:
        timeout = self.settings.probe_timeout
        try:
            ok, diagnostic = await asyncio.wait_for(
                self.prober.probe(self.settings.remote_name, timeout=timeout), timeout=timeout
            )
        except TimeoutError:
            ok, diagnostic = False, f"Connectivity check timed out after {timeout:.0f}s"
        except BridgeError as e:
            logger.warning(f"Connectivity probe unavailable: {e.message}")
            await self._record_probe(False)
            return False, e.detail or e.message, e.kind

        await self._record_probe(ok)
        if not ok:
            logger.warning(f"Connectivity probe failed: {diagnostic}")
        return ok, diagnostic, ErrorKind.CONNECTIVITY_FAILED

    async def _record_probe(self, ok: bool) -> None:
        await self.state_manager.update_provisioning(
            last_probe_ok=ok, last_probe_at=datetime.now()
        )

    async def _reject(
        self, error: BridgeError, bundle_kind: str | None = None
    ) -> ProvisioningResult:
        await self.state_manager.update_provisioning(
            ProvisioningState.REJECTED, last_error=error.kind.value, last_reason=error.message
        )
        return self._result(
            ProvisioningStatus.REJECTED,
            ProvisioningState.REJECTED,
            error.message,
            bundle_kind=bundle_kind,
            error=error,
        )

    def _restart_bridge_service(self) -> None:
        if self.services is None:
            return
        task = asyncio.create_task(self.services.restart(self.settings.bridge_service))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_background(self) -> None:
        """Wait for fire-and-forget work started by earlier runs."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    @staticmethod
    def _result(
        status: ProvisioningStatus,
        state: ProvisioningState,
        reason: str,
        bundle_kind: str | None = None,
        auto_refresh: bool = False,
        error: BridgeError | None = None,
    ) -> ProvisioningResult:
        return ProvisioningResult(
            status=status,
            state=state,
            bundle_kind=bundle_kind,
            reason=reason,
            auto_refresh=auto_refresh,
            error=error.kind if error else None,
            detail=error.detail if error else None,
        )
