"""Persistent store of known WiFi networks."""

import logging
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from .locks import ResourceLocks, read_json, write_json_atomic

logger = logging.getLogger(__name__)


class NetworkProfile(BaseModel):
    ssid: str = Field(min_length=1, max_length=32)
    secret: str = ""
    priority: int = 0
    last_connected: datetime | None = None
    # Derived from the latest scan, never persisted
    available: bool = Field(default=False, exclude=True)

    @property
    def has_secret(self) -> bool:
        return bool(self.secret)

    def public_dict(self) -> dict:
        """Representation safe to hand to the front-end."""
        return {
            "ssid": self.ssid,
            "priority": self.priority,
            "has_secret": self.has_secret,
            "last_connected": self.last_connected.isoformat() if self.last_connected else None,
            "available": self.available,
        }


def profile_order(profile: NetworkProfile) -> tuple[int, float]:
    """Sort key: priority descending, then most recently connected first."""
    connected = profile.last_connected.timestamp() if profile.last_connected else float("-inf")
    return (-profile.priority, -connected)


class NetworkStore:
    """Known networks keyed by SSID, persisted as JSON.

    Reads are served from memory; every mutation is serialized on the store's
    lock key and written through atomically before it returns.
    """

    def __init__(self, path: Path | None, locks: ResourceLocks):
        self.path = path
        self.locks = locks
        self._profiles: dict[str, NetworkProfile] = {}
        if path is not None:
            self._load()

    @property
    def key(self) -> str:
        return str(self.path) if self.path else "network-store"

    def _load(self) -> None:
        try:
            data = read_json(self.path)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load network store {self.path}: {e}")
            return
        if not data:
            return

        for entry in data.get("networks", []):
            try:
                profile = NetworkProfile.model_validate(entry)
            except ValidationError as e:
                logger.warning(f"Skipping invalid saved network: {e}")
                continue
            self._profiles[profile.ssid] = profile
        logger.info(f"Loaded {len(self._profiles)} saved networks from {self.path}")

    def _save(self) -> None:
        if self.path is None:
            return
        networks = [p.model_dump(mode="json") for p in self.list()]
        write_json_atomic(self.path, {"networks": networks})

    def list(self) -> list[NetworkProfile]:
        return sorted(self._profiles.values(), key=profile_order)

    def get(self, ssid: str) -> NetworkProfile | None:
        return self._profiles.get(ssid)

    def __contains__(self, ssid: str) -> bool:
        return ssid in self._profiles

    def __len__(self) -> int:
        return len(self._profiles)

    def top_priority(self) -> int:
        return max((p.priority for p in self._profiles.values()), default=0)

    async def upsert(self, profile: NetworkProfile, promote: bool = False) -> NetworkProfile:
        """Insert or update the profile for ``profile.ssid``.

        An existing entry keeps its priority unless the new one is higher, and
        keeps its secret when none is supplied. ``promote`` lifts the entry into
        the top priority tier (used after a successful connection).
        """
        async with self.locks.hold(self.key):
            existing = self._profiles.get(profile.ssid)
            if existing is None:
                merged = profile.model_copy()
            else:
                merged = existing.model_copy(
                    update={
                        "priority": max(existing.priority, profile.priority),
                        "secret": profile.secret or existing.secret,
                        "last_connected": profile.last_connected or existing.last_connected,
                    }
                )

            if promote:
                merged.priority = max(merged.priority, self.top_priority())

            self._profiles[merged.ssid] = merged
            self._save()
            logger.info(
                f"{'Updated' if existing else 'Saved'} network {merged.ssid} "
                f"(priority {merged.priority})"
            )
            return merged

    async def set_priority(self, ssid: str, priority: int) -> NetworkProfile | None:
        async with self.locks.hold(self.key):
            profile = self._profiles.get(ssid)
            if profile is None:
                return None
            profile.priority = priority
            self._save()
            return profile

    async def remove(self, ssid: str) -> bool:
        async with self.locks.hold(self.key):
            if self._profiles.pop(ssid, None) is None:
                return False
            self._save()
            logger.info(f"Removed saved network {ssid}")
            return True
