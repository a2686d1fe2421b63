"""
Configuration management using Pydantic settings.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..paths import get_log_dir, get_rclone_config_path, get_state_dir


class Settings(BaseSettings):
    """Application settings with automatic validation."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="CAMERA_BRIDGE_",
        case_sensitive=False,
    )

    # Remote storage provisioning
    service_user: str = Field(
        default="camerabridge", description="Restricted identity that owns the storage config"
    )
    remote_name: str = Field(default="dropbox", description="Section name of the storage remote")
    backend_type: str = Field(default="dropbox", description="Storage backend kind")
    rclone_config_path: Path | None = Field(
        default=None, description="Storage config install path (default: service user's home)"
    )
    config_mode: int = Field(default=0o600, description="File mode of the installed config")
    legacy_token_prefix: str = Field(
        default="sl.", description="Prefix identifying a bare legacy access token"
    )
    rollback_on_probe_failure: bool = Field(
        default=False,
        description="Reinstall the previous profile when the connectivity probe fails",
    )

    # Collaborator timeouts (seconds)
    probe_timeout: float = Field(default=30.0, description="Connectivity probe ceiling")
    install_timeout: float = Field(default=10.0, description="Privileged install ceiling")
    connect_timeout: float = Field(default=45.0, description="WiFi connect ceiling")
    command_timeout: float = Field(default=15.0, description="Read-only command ceiling")

    # Mutual exclusion
    lock_wait_timeout: float = Field(
        default=60.0,
        description="Seconds a mutation waits for an in-flight one on the same resource "
        "before being rejected as busy (0 rejects immediately)",
    )

    # Services
    bridge_service: str = Field(default="camera-bridge", description="Bridge systemd unit")
    share_service: str = Field(default="smbd", description="File-share systemd unit")

    # Storage / health
    share_path: Path = Field(
        default=Path("/srv/samba/camera-share"), description="Photo share directory"
    )
    disk_high_water_percent: int = Field(
        default=90, description="Disk usage percent above which health is penalised"
    )

    # Network
    wifi_interface: str | None = Field(
        default=None, description="WiFi interface override (auto-detected when unset)"
    )

    # Web server configuration
    web_host: str = Field(default="0.0.0.0", description="API server host")
    web_port: int = Field(default=8080, description="API server port")

    # Runtime settings
    debug: bool = Field(default=False, description="Enable debug logging")

    # Paths
    state_dir: Path = Field(default_factory=get_state_dir, description="State storage directory")
    log_dir: Path = Field(default_factory=get_log_dir, description="Log file directory")

    @property
    def storage_config_path(self) -> Path:
        """Path where the compiled storage profile is installed."""
        if self.rclone_config_path is not None:
            return self.rclone_config_path
        return get_rclone_config_path(self.service_user)

    @property
    def state_file(self) -> Path:
        """Path to state file."""
        return self.state_dir / "state.json"

    @property
    def network_store_file(self) -> Path:
        """Path to the saved network profiles file."""
        return self.state_dir / "networks.json"

    def ensure_directories(self) -> None:
        """Ensure required directories exist."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.log_dir.mkdir(parents=True, exist_ok=True)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    settings = Settings()
    settings.ensure_directories()
    return settings
