"""Error taxonomy shared by provisioning and networking."""

from enum import Enum


class ErrorKind(str, Enum):
    """Failure categories reported to callers."""

    INVALID_FORMAT = "InvalidFormat"
    MISSING_ACCESS_TOKEN = "MissingAccessToken"
    INSTALL_FAILED = "InstallFailed"
    INSTALL_TIMEOUT = "InstallTimeout"
    CONNECTIVITY_FAILED = "ConnectivityFailed"
    NO_KNOWN_NETWORK_IN_RANGE = "NoKnownNetworkInRange"
    CONNECT_FAILED = "ConnectFailed"
    UNKNOWN_NETWORK = "UnknownNetwork"
    NOT_CONFIGURED = "NotConfigured"
    BUSY = "Busy"
    COLLABORATOR_UNAVAILABLE = "CollaboratorUnavailable"


# Failures that leave the device usable and may simply be retried later
NON_FATAL_KINDS = frozenset(
    {ErrorKind.CONNECTIVITY_FAILED, ErrorKind.NO_KNOWN_NETWORK_IN_RANGE}
)


class BridgeError(Exception):
    """Structured failure raised inside the core.

    ``detail`` carries diagnostic text from an external collaborator and is
    supplementary only; ``message`` is what a user should see.
    """

    def __init__(self, kind: ErrorKind, message: str, detail: str | None = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.detail = detail

    @property
    def fatal(self) -> bool:
        return self.kind not in NON_FATAL_KINDS

    def to_dict(self) -> dict[str, str | None]:
        return {"error": self.kind.value, "message": self.message, "detail": self.detail}

    def __repr__(self) -> str:
        return f"BridgeError(kind={self.kind.value}, message={self.message!r})"
