"""Per-resource mutual exclusion and atomic file persistence."""

import asyncio
import json
import logging
import os
import tempfile
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from .errors import BridgeError, ErrorKind

logger = logging.getLogger(__name__)


class ResourceLocks:
    """Registry of named locks, one per mutable resource.

    Keys are arbitrary strings (typically the resource's filesystem path).
    Distinct keys never block each other.
    """

    def __init__(self, wait_timeout: float | None = None):
        self.wait_timeout = wait_timeout
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    async def acquire(self, key: str, timeout: float | None = None) -> asyncio.Lock:
        """Acquire the lock for ``key`` and return it; the caller must release it.

        Waits up to ``timeout`` seconds (falling back to the registry default).
        A timeout of 0 rejects immediately when the resource is held. Raises
        ``BridgeError(Busy)`` when the lock cannot be obtained in time.
        """
        lock = self.get(key)
        wait = self.wait_timeout if timeout is None else timeout

        if wait is not None and wait <= 0:
            if lock.locked():
                raise BridgeError(ErrorKind.BUSY, f"Another operation is in progress on {key}")
            await lock.acquire()
            return lock

        try:
            if wait is None:
                await lock.acquire()
            else:
                await asyncio.wait_for(lock.acquire(), timeout=wait)
        except TimeoutError:
            logger.warning(f"Gave up waiting {wait}s for lock on {key}")
            raise BridgeError(
                ErrorKind.BUSY, f"Another operation is in progress on {key}"
            ) from None
        return lock

    async def lease(self, key: str, timeout: float | None = None) -> "LockLease":
        return LockLease(key, await self.acquire(key, timeout=timeout))

    @asynccontextmanager
    async def hold(self, key: str, timeout: float | None = None) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        lock = await self.acquire(key, timeout=timeout)
        try:
            yield
        finally:
            lock.release()


class LockLease:
    """A held resource lock whose release can be deferred to a running task.

    A privileged mutation that outlives its caller (timeout or cancellation)
    keeps the resource locked until it completes, so no second mutation can
    interleave with it.
    """

    def __init__(self, key: str, lock: asyncio.Lock):
        self.key = key
        self._lock = lock
        self._detached = False
        self._released = False

    @property
    def detached(self) -> bool:
        return self._detached

    def detach_until(self, task: asyncio.Future) -> None:
        """Transfer release responsibility to ``task``'s completion."""
        if self._released or self._detached:
            return
        self._detached = True
        logger.warning(f"Mutation on {self.key} still running; lock held until it finishes")

        def _done(fut: asyncio.Future) -> None:
            if fut.cancelled():
                logger.warning(f"Detached mutation on {self.key} was cancelled")
            elif fut.exception() is not None:
                logger.error(f"Detached mutation on {self.key} failed: {fut.exception()}")
            else:
                logger.info(f"Detached mutation on {self.key} finished")
            self._release_now()

        task.add_done_callback(_done)

    def _release_now(self) -> None:
        if not self._released:
            self._released = True
            self._lock.release()

    def release(self) -> None:
        """Release the lock unless it was detached to a running task."""
        if not self._detached:
            self._release_now()


async def run_detachable(
    coro: Any, lease: LockLease, timeout: float | None
) -> Any:
    """Await a privileged mutation without ever interrupting it.

    On timeout or caller cancellation the mutation keeps running and ``lease``
    is detached to it. Raises ``TimeoutError`` on overrun.
    """
    task = asyncio.ensure_future(coro)
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
    except (TimeoutError, asyncio.CancelledError):
        if not task.done():
            lease.detach_until(task)
        raise


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON to ``path`` so readers only ever see a complete file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_name, path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


def read_json(path: Path) -> Any | None:
    """Read JSON from ``path``; returns None when the file does not exist."""
    if not path.exists():
        return None
    with open(path) as f:
        return json.load(f)
