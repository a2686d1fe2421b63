"""
Centralized path management for development and production environments.

Environment variables can override any path:
- CAMERA_BRIDGE_STATE_DIR: State storage directory
- CAMERA_BRIDGE_LOG_DIR: Log directory
- CAMERA_BRIDGE_SERVICE_HOME: Home directory of the restricted service user

Development mode is auto-detected by checking for a pyproject.toml in the
source tree root.
"""

import os
from functools import lru_cache
from pathlib import Path


@lru_cache(maxsize=1)
def get_project_root() -> Path:
    """Get project root directory (3 levels up from this file)."""
    return Path(__file__).parent.parent.parent


@lru_cache(maxsize=1)
def _is_development() -> bool:
    """Detect if running from a source checkout rather than a system install."""
    return (get_project_root() / "pyproject.toml").exists()


def get_state_dir() -> Path:
    """Get state storage directory.

    Priority:
    1. CAMERA_BRIDGE_STATE_DIR environment variable
    2. ./var/lib/camera-bridge (development)
    3. /var/lib/camera-bridge (production)
    """
    if override := os.getenv("CAMERA_BRIDGE_STATE_DIR"):
        return Path(override)

    if _is_development():
        return get_project_root() / "var" / "lib" / "camera-bridge"

    return Path("/var/lib/camera-bridge")


def get_log_dir() -> Path:
    """Get log directory.

    Priority:
    1. CAMERA_BRIDGE_LOG_DIR environment variable
    2. ./var/log/camera-bridge (development)
    3. /var/log/camera-bridge (production)
    """
    if override := os.getenv("CAMERA_BRIDGE_LOG_DIR"):
        return Path(override)

    if _is_development():
        return get_project_root() / "var" / "log" / "camera-bridge"

    return Path("/var/log/camera-bridge")


def get_service_home(service_user: str) -> Path:
    """Get home directory of the restricted service identity."""
    if override := os.getenv("CAMERA_BRIDGE_SERVICE_HOME"):
        return Path(override)

    return Path("/home") / service_user


def get_rclone_config_path(service_user: str) -> Path:
    """Get the remote-storage configuration path owned by the service identity."""
    return get_service_home(service_user) / ".config" / "rclone" / "rclone.conf"


def is_development_mode() -> bool:
    return _is_development()
