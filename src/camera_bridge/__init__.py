"""Camera Bridge Provisioning Service.

Credential provisioning and network profile control plane for the Camera Bridge
photo-ingest appliance.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("camera-bridge")
except PackageNotFoundError:
    __version__ = "unknown"

__all__ = ["__version__"]
