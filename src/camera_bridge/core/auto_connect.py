"""Known-network selection and connection."""

import logging
from collections.abc import Iterable
from datetime import datetime

from pydantic import BaseModel

from .config import Settings
from .errors import BridgeError, ErrorKind
from .locks import ResourceLocks, run_detachable
from .network_manager import NetworkManager, WiFiNetwork, validate_ssid
from .network_store import NetworkProfile, NetworkStore
from .state import NetworkInfo, StateManager

logger = logging.getLogger(__name__)

# Lock key serializing radio mutations (connect); independent of the store file key
CONNECT_KEY = "wifi-connect"


class ConnectResult(BaseModel):
    ok: bool
    ssid: str | None = None
    reason: str
    error: ErrorKind | None = None
    detail: str | None = None
    ip_address: str | None = None

    @classmethod
    def failed(cls, error: BridgeError, ssid: str | None = None) -> "ConnectResult":
        return cls(
            ok=False, ssid=ssid, reason=error.message, error=error.kind, detail=error.detail
        )


def select_candidate(scan: Iterable[str], store: NetworkStore) -> NetworkProfile:
    """Pick the best known network among the scanned SSIDs.

    Highest priority wins; ties go to the most recently connected network.
    Raises ``BridgeError(NoKnownNetworkInRange)`` when no known SSID is visible.
    """
    visible = set(scan)
    for profile in store.list():
        if profile.ssid in visible:
            return profile
    raise BridgeError(ErrorKind.NO_KNOWN_NETWORK_IN_RANGE, "No saved network is in range")


class AutoConnectSelector:
    def __init__(
        self,
        settings: Settings,
        network_manager: NetworkManager,
        store: NetworkStore,
        state_manager: StateManager,
        locks: ResourceLocks,
    ):
        self.settings = settings
        self.network_manager = network_manager
        self.store = store
        self.state_manager = state_manager
        self.locks = locks

    async def select_and_connect(self, scan: Iterable[str] | None = None) -> ConnectResult:
        """Connect to the best saved network currently in range.

        A fresh scan is requested when ``scan`` is not supplied.
        """
        try:
            if scan is None:
                scan = await self.network_manager.scan()
            profile = select_candidate(scan, self.store)
        except BridgeError as e:
            if e.kind == ErrorKind.NO_KNOWN_NETWORK_IN_RANGE:
                logger.info("Auto-connect: no saved network in range")
            return ConnectResult.failed(e)

        logger.info(f"Auto-connect selected {profile.ssid} (priority {profile.priority})")
        return await self._connect(profile.ssid, profile.secret or None, promote=False)

    async def connect(self, ssid: str, secret: str | None) -> ConnectResult:
        """Connect to a network by hand and remember it on success."""
        if not validate_ssid(ssid):
            return ConnectResult.failed(
                BridgeError(ErrorKind.CONNECT_FAILED, "SSID contains invalid characters"), ssid
            )
        return await self._connect(ssid, secret or None, promote=True)

    async def connect_saved(self, ssid: str) -> ConnectResult:
        profile = self.store.get(ssid)
        if profile is None:
            return ConnectResult.failed(
                BridgeError(ErrorKind.UNKNOWN_NETWORK, f"No saved network named {ssid}"), ssid
            )
        return await self._connect(ssid, profile.secret or None, promote=True)

    async def forget(self, ssid: str) -> None:
        """Remove a saved network; does not require disconnecting first."""
        removed = await self.store.remove(ssid)
        try:
            await self.network_manager.remove_saved(ssid)
        except BridgeError as e:
            logger.warning(f"Could not remove system profile for {ssid}: {e.message}")
        if not removed:
            raise BridgeError(ErrorKind.UNKNOWN_NETWORK, f"No saved network named {ssid}")

    async def set_priority(self, ssid: str, priority: int) -> NetworkProfile:
        profile = await self.store.set_priority(ssid, priority)
        if profile is None:
            raise BridgeError(ErrorKind.UNKNOWN_NETWORK, f"No saved network named {ssid}")
        logger.info(f"Priority of {ssid} set to {priority}")
        return profile

    async def list_networks(self) -> tuple[list[NetworkProfile], list[WiFiNetwork]]:
        """Saved profiles annotated with availability, plus the scan they came from."""
        visible = await self.network_manager.scan_networks()
        in_range = {network.ssid for network in visible}
        profiles = [
            profile.model_copy(update={"available": profile.ssid in in_range})
            for profile in self.store.list()
        ]
        return profiles, visible

    async def _connect(self, ssid: str, secret: str | None, promote: bool) -> ConnectResult:
        """Connect and record the success.

        Every success refreshes ``last_connected``; only user-initiated connects
        pass ``promote`` and lift the network into the top priority tier.
        """
        try:
            lease = await self.locks.lease(CONNECT_KEY)
        except BridgeError as e:
            return ConnectResult.failed(e, ssid)

        try:
            try:
                await run_detachable(
                    self.network_manager.connect(ssid, secret),
                    lease,
                    timeout=self.settings.connect_timeout,
                )
            except TimeoutError:
                return ConnectResult.failed(
                    BridgeError(
                        ErrorKind.CONNECT_FAILED,
                        f"Connecting to {ssid} took longer than "
                        f"{self.settings.connect_timeout:.0f}s",
                    ),
                    ssid,
                )
            except BridgeError as e:
                logger.warning(f"Connection to {ssid} failed: {e.message}")
                return ConnectResult.failed(e, ssid)

            now = datetime.now()
            await self.store.upsert(
                NetworkProfile(ssid=ssid, secret=secret or "", last_connected=now), promote=promote
            )

            info = await self.network_manager.get_connection_info() or {}
            ip_address = info.get("ip_address")
            await self.state_manager.update_network(
                NetworkInfo(ssid=ssid, ip_address=ip_address, connected_at=now)
            )
            return ConnectResult(
                ok=True, ssid=ssid, reason=f"Connected to {ssid}", ip_address=ip_address
            )
        finally:
            lease.release()
