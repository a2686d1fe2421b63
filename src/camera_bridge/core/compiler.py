"""Rendering of credential bundles into the storage backend's config format."""

import configparser
import json
from pathlib import Path
from typing import assert_never

from pydantic import BaseModel, Field

from .credentials import NO_EXPIRY, LegacyToken, OAuth2Token


class StorageProfile(BaseModel):
    """Compiled storage configuration ready for installation."""

    remote_name: str = "dropbox"
    backend_type: str = "dropbox"
    token_blob: str
    path: Path
    mode: int = 0o600
    owner: str

    @property
    def content(self) -> str:
        return f"[{self.remote_name}]\ntype = {self.backend_type}\ntoken = {self.token_blob}\n"

    def to_bytes(self) -> bytes:
        return self.content.encode("utf-8")


class InstalledProfileInfo(BaseModel):
    """What can be learned about an installed profile by reading it back."""

    configured: bool = False
    remote_name: str | None = None
    backend_type: str | None = None
    has_refresh_token: bool = False
    expiry: str | None = None
    error: str | None = Field(default=None, description="Why the file could not be read")


def serialize_token(bundle: OAuth2Token | LegacyToken) -> str:
    """Serialize a bundle into the embedded token JSON the backend expects."""
    match bundle:
        case OAuth2Token():
            fields = {
                "access_token": bundle.access_token,
                "token_type": bundle.token_type,
                "refresh_token": bundle.refresh_token or "",
                "expiry": bundle.expiry or NO_EXPIRY,
            }
        case LegacyToken():
            fields = {
                "access_token": bundle.access_token,
                "token_type": "bearer",
                "refresh_token": "",
                "expiry": NO_EXPIRY,
            }
        case _:
            assert_never(bundle)
    return json.dumps(fields, separators=(",", ":"))


def compile_profile(
    bundle: OAuth2Token | LegacyToken,
    path: Path,
    owner: str,
    mode: int = 0o600,
    remote_name: str = "dropbox",
    backend_type: str = "dropbox",
) -> StorageProfile:
    """Build the storage profile for ``bundle``. Never touches the filesystem."""
    return StorageProfile(
        remote_name=remote_name,
        backend_type=backend_type,
        token_blob=serialize_token(bundle),
        path=path,
        mode=mode,
        owner=owner,
    )


def parse_profile_text(text: str, remote_name: str = "dropbox") -> InstalledProfileInfo:
    parser = configparser.ConfigParser(interpolation=None)
    try:
        parser.read_string(text)
    except configparser.Error as e:
        return InstalledProfileInfo(error=f"Unreadable config: {e}")

    if not parser.has_section(remote_name):
        return InstalledProfileInfo()

    section = parser[remote_name]
    info = InstalledProfileInfo(
        configured=True,
        remote_name=remote_name,
        backend_type=section.get("type"),
    )

    raw_token = section.get("token")
    if raw_token:
        try:
            token = json.loads(raw_token)
        except json.JSONDecodeError:
            info.error = "Installed token is not valid JSON"
            return info
        if isinstance(token, dict):
            info.has_refresh_token = bool(token.get("refresh_token"))
            info.expiry = token.get("expiry")
    return info


def read_installed_profile(path: Path, remote_name: str = "dropbox") -> InstalledProfileInfo:
    """Inspect the profile currently installed at ``path``."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return InstalledProfileInfo()
    except OSError as e:
        return InstalledProfileInfo(error=str(e))
    return parse_profile_text(text, remote_name=remote_name)
