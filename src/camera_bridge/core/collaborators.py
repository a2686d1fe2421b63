"""External tools the core drives through narrow contracts.

The core never performs privileged mutations itself. It hands content to an
``Installer``, asks a ``Prober`` whether the installed credential works and
pokes services through ``ServiceControl``. The concrete implementations shell
out to ``sudo``, ``install``, ``rclone`` and ``systemctl``.
"""

import asyncio
import logging
import os
import tempfile
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from .errors import BridgeError, ErrorKind

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    returncode: int | None
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def diagnostic(self) -> str:
        return self.stderr or self.stdout


async def run_command(cmd: list[str], timeout: float | None = None) -> CommandResult:
    """Run ``cmd`` and capture its output.

    A read-only command that overruns ``timeout`` is killed and ``TimeoutError``
    is raised. Callers that dispatch privileged mutations pass no timeout and
    bound the wait themselves so the process is never interrupted.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
    except FileNotFoundError as e:
        raise BridgeError(
            ErrorKind.COLLABORATOR_UNAVAILABLE, f"Required tool not found: {cmd[0]}", str(e)
        ) from e
    except PermissionError as e:
        raise BridgeError(
            ErrorKind.COLLABORATOR_UNAVAILABLE, f"Not permitted to run: {cmd[0]}", str(e)
        ) from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        logger.warning(f"Command timed out after {timeout}s: {cmd[0]}")
        process.kill()
        await process.wait()
        raise

    return CommandResult(
        process.returncode,
        stdout.decode("utf-8", errors="replace").strip(),
        stderr.decode("utf-8", errors="replace").strip(),
    )


def default_sudo() -> list[str]:
    """Prefix for privileged commands; empty when already running as root."""
    return [] if os.geteuid() == 0 else ["sudo", "-n"]


def as_user(sudo: list[str], user: str) -> list[str]:
    """Prefix that runs a command as ``user``."""
    if sudo:
        return [*sudo, "-u", user]
    return ["runuser", "-u", user, "--"]


class Installer(ABC):
    @abstractmethod
    async def install(self, content: bytes, target_path: Path, owner: str, mode: int) -> None:
        """Atomically place ``content`` at ``target_path`` with owner and mode.

        Raises ``BridgeError`` when any step fails.
        """


class Prober(ABC):
    @abstractmethod
    async def probe(self, identity: str, timeout: float) -> tuple[bool, str]:
        """Check that the remote named ``identity`` is reachable."""


class SudoInstaller(Installer):
    """Install files for another account via ``install`` and ``mv``.

    The content is staged next to the target with its final ownership and mode
    already applied, then renamed over the target, so the installation path
    only ever shows a complete file.
    """

    def __init__(self, sudo: list[str] | None = None):
        self.sudo = default_sudo() if sudo is None else sudo

    async def _checked(self, cmd: list[str], what: str) -> None:
        result = await run_command(cmd)
        if not result.ok:
            raise BridgeError(ErrorKind.INSTALL_FAILED, f"Failed to {what}", result.diagnostic)

    async def install(self, content: bytes, target_path: Path, owner: str, mode: int) -> None:
        fd, local_tmp = tempfile.mkstemp(prefix="camera-bridge-", suffix=".conf")
        staging: Path | None = None
        installed = False
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(content)

            await self._checked(
                [*as_user(self.sudo, owner), "mkdir", "-p", str(target_path.parent)],
                "create config directory",
            )

            staging = target_path.with_name(f".{target_path.name}.{uuid.uuid4().hex[:8]}.new")
            await self._checked(
                [
                    *self.sudo,
                    "install",
                    "-o",
                    owner,
                    "-g",
                    owner,
                    "-m",
                    f"{mode:o}",
                    local_tmp,
                    str(staging),
                ],
                "stage config file",
            )
            await self._checked(
                [*self.sudo, "mv", "-f", str(staging), str(target_path)], "replace config file"
            )
            installed = True
            logger.info(f"Installed {len(content)} bytes at {target_path} for {owner}")
        finally:
            try:
                os.unlink(local_tmp)
            except OSError as e:
                logger.warning(f"Could not remove temporary file {local_tmp}: {e}")
            if staging is not None and not installed:
                await self._discard(staging)

    async def _discard(self, staging: Path) -> None:
        """Best-effort removal of a staged file that never replaced the target."""
        try:
            result = await run_command([*self.sudo, "rm", "-f", str(staging)], timeout=10)
        except (BridgeError, TimeoutError) as e:
            logger.warning(f"Could not remove staged file {staging}: {e}")
            return
        if not result.ok:
            logger.warning(f"Could not remove staged file {staging}: {result.diagnostic}")


class RcloneProber(Prober):
    """Probe a remote with a lightweight directory listing as the service user."""

    def __init__(self, service_user: str, config_path: Path, sudo: list[str] | None = None):
        self.service_user = service_user
        self.config_path = config_path
        self.sudo = default_sudo() if sudo is None else sudo

    async def probe(self, identity: str, timeout: float) -> tuple[bool, str]:
        cmd = [
            *as_user(self.sudo, self.service_user),
            "rclone",
            "--config",
            str(self.config_path),
            "lsd",
            f"{identity}:",
            "--max-depth",
            "1",
        ]
        try:
            result = await run_command(cmd, timeout=timeout)
        except TimeoutError:
            return False, f"Connectivity check timed out after {timeout:.0f}s"

        if result.ok:
            return True, ""
        return False, result.diagnostic


class ServiceControl:
    """Query and restart systemd units."""

    def __init__(self, sudo: list[str] | None = None, timeout: float = 15.0):
        self.sudo = default_sudo() if sudo is None else sudo
        self.timeout = timeout

    async def is_active(self, name: str) -> bool:
        try:
            result = await run_command(
                ["systemctl", "is-active", "--quiet", name], timeout=self.timeout
            )
        except (BridgeError, TimeoutError) as e:
            logger.warning(f"Could not query service {name}: {e}")
            return False
        return result.ok

    async def restart(self, name: str) -> bool:
        """Restart ``name``; failures are logged and reported, never raised."""
        try:
            result = await run_command(
                [*self.sudo, "systemctl", "restart", name], timeout=self.timeout
            )
        except (BridgeError, TimeoutError) as e:
            logger.warning(f"Restart of {name} not possible: {e}")
            return False

        if not result.ok:
            logger.warning(f"Restart of {name} failed: {result.diagnostic}")
            return False
        logger.info(f"Restarted service {name}")
        return True
