"""NetworkManager wrapper for WiFi operations."""

import asyncio
import logging
import re
import time
from collections.abc import Iterable, Iterator

from .collaborators import CommandResult, default_sudo, run_command
from .errors import BridgeError, ErrorKind

logger = logging.getLogger(__name__)

SAFE_SSID_PATTERN = re.compile(r"^[a-zA-Z0-9\s\-_.]+$")


class WiFiNetwork:
    def __init__(self, ssid: str, signal: int, security: str, in_use: bool = False):
        self.ssid = ssid
        self.signal = signal
        self.security = security
        self.in_use = in_use

    def to_dict(self) -> dict:
        return {
            "ssid": self.ssid,
            "signal": self.signal,
            "security": self.security,
            "in_use": self.in_use,
        }

    def __repr__(self):
        return f"WiFiNetwork(ssid={self.ssid}, signal={self.signal}, security={self.security})"


class ScanResult:
    """SSIDs observed by one scan.

    Produced lazily and consumable once; a fresh scan must be requested to
    iterate again.
    """

    def __init__(self, ssids: Iterable[str]):
        self._ssids = iter(ssids)
        self._consumed = False

    def __iter__(self) -> Iterator[str]:
        if self._consumed:
            raise RuntimeError("Scan result already consumed; request a fresh scan")
        self._consumed = True
        return self._ssids


def split_terse(line: str) -> list[str]:
    """Split an ``nmcli -t`` line on unescaped colons."""
    fields: list[str] = []
    current: list[str] = []
    escaped = False
    for char in line:
        if escaped:
            current.append(char)
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == ":":
            fields.append("".join(current))
            current = []
        else:
            current.append(char)
    fields.append("".join(current))
    return fields


def parse_wifi_list(stdout: str) -> Iterator[WiFiNetwork]:
    """Parse ``nmcli -t -f SSID,SIGNAL,SECURITY,IN-USE device wifi list`` output."""
    seen_ssids: set[str] = set()
    for line in stdout.split("\n"):
        if not line:
            continue
        parts = split_terse(line)
        if len(parts) < 4:
            continue
        ssid = parts[0]
        if not ssid or ssid in seen_ssids:
            continue
        try:
            signal = int(parts[1]) if parts[1] else 0
        except ValueError:
            signal = 0
        seen_ssids.add(ssid)
        yield WiFiNetwork(ssid, signal, parts[2] or "Open", parts[3] == "*")


def validate_ssid(ssid: str) -> bool:
    """Validate SSID to prevent injection attacks."""
    # 802.11 SSIDs are 1-32 chars
    if not ssid or len(ssid) > 32:
        logger.error(f"Invalid SSID length: {len(ssid) if ssid else 0}")
        return False
    if not SAFE_SSID_PATTERN.match(ssid):
        logger.error(f"SSID contains invalid characters: {ssid}")
        return False
    return True


def parse_connection_error(stderr: str) -> str:
    """Convert technical nmcli errors to user-friendly messages."""
    error_map = {
        "secrets were required": "Incorrect password",
        "no network with ssid": "Network not found or out of range",
        "timeout was reached": "Connection timeout - weak signal",
        "base network connection was interrupted": "Network interference detected",
        "failed to activate": "Unable to activate connection",
        "ip configuration could not be reserved": "DHCP timeout - network busy",
    }

    stderr_lower = stderr.lower()
    for pattern, message in error_map.items():
        if pattern in stderr_lower:
            return message

    return f"Connection failed: {stderr[:100]}"


class NetworkManager:
    def __init__(
        self,
        wifi_device: str | None = None,
        sudo: list[str] | None = None,
        command_timeout: float = 15.0,
    ):
        self.wifi_device = wifi_device
        self._device_pinned = wifi_device is not None
        self._device_cache_time = 0.0
        self._device_cache_timeout = 300
        self.sudo = default_sudo() if sudo is None else sudo
        self.command_timeout = command_timeout

    async def initialize(self) -> None:
        await self._detect_wifi_device()
        if self.wifi_device:
            logger.info(f"WiFi device detected: {self.wifi_device}")
        else:
            logger.warning("No WiFi device detected")

    async def _query(self, cmd: list[str]) -> CommandResult:
        """Run an nmcli command bounded by the command timeout.

        A timeout or a missing tool comes back as a failed result, so callers
        that only gather information degrade instead of raising.
        """
        try:
            return await run_command(cmd, timeout=self.command_timeout)
        except TimeoutError:
            return CommandResult(None, "", f"{cmd[0]} timed out")
        except BridgeError as e:
            return CommandResult(None, "", e.message)

    async def _detect_wifi_device(self) -> None:
        if self._device_pinned:
            return

        current_time = time.time()
        if (
            self.wifi_device
            and (current_time - self._device_cache_time) < self._device_cache_timeout
        ):
            return

        result = await self._query(["nmcli", "-t", "-f", "DEVICE,TYPE,STATE", "device"])
        if not result.ok:
            logger.error("Failed to get network devices")
            return

        wifi_devices = []
        for line in result.stdout.split("\n"):
            parts = split_terse(line) if line else []
            if len(parts) >= 3 and parts[1] == "wifi":
                wifi_devices.append((parts[0], parts[2]))

        # Priority: connected > disconnected > anything else
        for wanted in ("connected", "disconnected"):
            match = next((dev for dev, state in wifi_devices if state == wanted), None)
            if match:
                self.wifi_device = match
                break
        else:
            if wifi_devices:
                self.wifi_device = wifi_devices[0][0]

        self._device_cache_time = current_time

    async def scan_networks(self) -> list[WiFiNetwork]:
        """Scan and return visible networks sorted by signal strength."""
        await self._detect_wifi_device()
        if not self.wifi_device:
            return []

        result = await self._query([*self.sudo, "nmcli", "device", "wifi", "rescan"])
        if not result.ok:
            # Rescan is rate limited by NetworkManager; the cached list is still useful
            logger.warning(f"Network rescan failed: {result.diagnostic}")
        else:
            await asyncio.sleep(2)

        result = await self._query(
            [
                "nmcli",
                "-t",
                "-f",
                "SSID,SIGNAL,SECURITY,IN-USE",
                "device",
                "wifi",
                "list",
                "ifname",
                self.wifi_device,
            ]
        )
        if not result.ok:
            logger.warning(f"Network list failed: {result.diagnostic}")
            return []

        return sorted(parse_wifi_list(result.stdout), key=lambda n: n.signal, reverse=True)

    async def scan(self) -> ScanResult:
        """Scan and return the observable SSIDs, strongest first."""
        networks = await self.scan_networks()
        return ScanResult(network.ssid for network in networks)

    async def list_saved(self) -> list[str]:
        """Names of saved wireless connection profiles."""
        result = await self._query(["nmcli", "-t", "-f", "NAME,TYPE", "connection", "show"])
        if not result.ok:
            logger.error(f"Failed to list saved connections: {result.diagnostic}")
            return []

        saved = []
        for line in result.stdout.split("\n"):
            parts = split_terse(line) if line else []
            if len(parts) >= 2 and "wireless" in parts[1]:
                saved.append(parts[0])
        return saved

    async def remove_saved(self, ssid: str) -> bool:
        result = await self._query([*self.sudo, "nmcli", "connection", "delete", ssid])
        if not result.ok:
            logger.warning(f"Could not delete connection profile {ssid}: {result.diagnostic}")
            return False
        logger.info(f"Deleted connection profile: {ssid}")
        return True

    async def connect(self, ssid: str, secret: str | None) -> None:
        """Connect to ``ssid``, creating or refreshing its connection profile.

        Without a secret an existing profile is reused. Raises ``BridgeError``
        with ``ConnectFailed`` when activation does not succeed.
        """
        if not validate_ssid(ssid):
            raise BridgeError(ErrorKind.CONNECT_FAILED, f"Invalid SSID: {ssid!r}")

        await self._detect_wifi_device()
        if not self.wifi_device:
            raise BridgeError(ErrorKind.COLLABORATOR_UNAVAILABLE, "No WiFi device available")

        profile_exists = ssid in await self.list_saved()

        if profile_exists and not secret:
            logger.info(f"Attempting to connect with existing profile: {ssid}")
            result = await run_command([*self.sudo, "nmcli", "connection", "up", ssid])
            if not result.ok:
                raise BridgeError(
                    ErrorKind.CONNECT_FAILED, parse_connection_error(result.stderr), result.stderr
                )
        else:
            if profile_exists:
                # Replace the stored secret rather than keeping a stale one
                await self._query([*self.sudo, "nmcli", "connection", "delete", ssid])

            cmd = [
                *self.sudo,
                "nmcli",
                "connection",
                "add",
                "type",
                "wifi",
                "con-name",
                ssid,
                "ifname",
                self.wifi_device,
                "ssid",
                ssid,
            ]
            if secret:
                if len(secret) < 8 or len(secret) > 63:
                    raise BridgeError(
                        ErrorKind.CONNECT_FAILED, "Password must be 8-63 characters"
                    )
                cmd += [
                    "802-11-wireless-security.key-mgmt",
                    "wpa-psk",
                    "802-11-wireless-security.psk",
                    secret,
                ]

            result = await run_command(cmd)
            if not result.ok:
                raise BridgeError(
                    ErrorKind.CONNECT_FAILED,
                    "Failed to create connection profile",
                    result.stderr,
                )

            result = await run_command([*self.sudo, "nmcli", "connection", "up", ssid])
            if not result.ok:
                await self._query([*self.sudo, "nmcli", "connection", "delete", ssid])
                raise BridgeError(
                    ErrorKind.CONNECT_FAILED, parse_connection_error(result.stderr), result.stderr
                )

        logger.info(f"Connected to {ssid}")

    async def get_connection_info(self) -> dict[str, str] | None:
        await self._detect_wifi_device()
        if not self.wifi_device:
            return None

        result = await self._query(
            [
                "nmcli",
                "-t",
                "-f",
                "GENERAL.CONNECTION,IP4.ADDRESS",
                "device",
                "show",
                self.wifi_device,
            ]
        )
        if not result.ok:
            return None

        info = {}
        connection_name = None
        for line in result.stdout.split("\n"):
            if line.startswith("GENERAL.CONNECTION:"):
                connection = line.split(":", 1)[1].strip()
                if connection and connection != "--":
                    connection_name = connection
            elif line.startswith("IP4.ADDRESS"):
                ip_info = line.split(":", 1)[1].strip()
                if "/" in ip_info:
                    info["ip_address"] = ip_info.split("/")[0]

        if connection_name:
            result = await self._query(
                [
                    "nmcli",
                    "-t",
                    "-f",
                    "802-11-wireless.ssid",
                    "connection",
                    "show",
                    connection_name,
                ]
            )
            if result.ok:
                for line in result.stdout.split("\n"):
                    if line.startswith("802-11-wireless.ssid:"):
                        ssid = line.split(":", 1)[1].strip()
                        if ssid:
                            info["ssid"] = ssid
                            break

        if "ssid" in info:
            return info

        return None
