"""
Core modules for the Camera Bridge provisioning control plane.
"""

from .config import Settings, get_settings
from .errors import BridgeError, ErrorKind
from .network_manager import NetworkManager
from .network_store import NetworkProfile, NetworkStore
from .provisioning import ProvisioningOrchestrator, ProvisioningResult, ProvisioningStatus
from .state import ProvisioningState, StateManager

__all__ = [
    "Settings",
    "get_settings",
    "BridgeError",
    "ErrorKind",
    "NetworkManager",
    "NetworkProfile",
    "NetworkStore",
    "ProvisioningOrchestrator",
    "ProvisioningResult",
    "ProvisioningStatus",
    "ProvisioningState",
    "StateManager",
]
