"""FastAPI JSON API consumed by the setup front-end."""

import logging
import re

from fastapi import FastAPI, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from camera_bridge import __version__
from camera_bridge.core.auto_connect import AutoConnectSelector, ConnectResult
from camera_bridge.core.config import Settings
from camera_bridge.core.errors import NON_FATAL_KINDS, BridgeError, ErrorKind
from camera_bridge.core.provisioning import ProvisioningOrchestrator, ProvisioningResult
from camera_bridge.core.status import StatusAggregator

logger = logging.getLogger(__name__)

HTTP_STATUS = {
    ErrorKind.INVALID_FORMAT: status.HTTP_400_BAD_REQUEST,
    ErrorKind.MISSING_ACCESS_TOKEN: status.HTTP_400_BAD_REQUEST,
    ErrorKind.NOT_CONFIGURED: status.HTTP_409_CONFLICT,
    ErrorKind.BUSY: status.HTTP_409_CONFLICT,
    ErrorKind.UNKNOWN_NETWORK: status.HTTP_404_NOT_FOUND,
    ErrorKind.INSTALL_FAILED: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.CONNECT_FAILED: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.INSTALL_TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
    ErrorKind.COLLABORATOR_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def http_status_for(error: ErrorKind | None) -> int:
    """Non-fatal outcomes (degraded provisioning, nothing in range) are still 200."""
    if error is None or error in NON_FATAL_KINDS:
        return status.HTTP_200_OK
    return HTTP_STATUS.get(error, status.HTTP_500_INTERNAL_SERVER_ERROR)


class ProvisionRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=8192)


class ConnectionRequest(BaseModel):
    ssid: str = Field(..., min_length=1, max_length=32)
    password: str | None = Field(None, max_length=63)

    @field_validator("ssid")
    @classmethod
    def validate_ssid(cls, v):
        if not v or len(v.strip()) == 0:
            raise ValueError("SSID cannot be empty")
        if not re.match(r"^[a-zA-Z0-9\s\-_.]+$", v):
            raise ValueError("SSID contains invalid characters")
        return v.strip()

    @field_validator("password")
    @classmethod
    def validate_password(cls, v):
        # Empty means an open network
        if not v:
            return None
        if len(v) < 8 or len(v) > 63:
            raise ValueError("Password must be 8-63 characters")
        if any(char in v for char in ("\n", "\r", "\x00")):
            raise ValueError("Password contains invalid characters")
        return v


class PriorityRequest(BaseModel):
    priority: int = Field(..., ge=0, le=999)


class WebServer:
    def __init__(
        self,
        settings: Settings,
        orchestrator: ProvisioningOrchestrator,
        selector: AutoConnectSelector,
        status_aggregator: StatusAggregator,
    ):
        self.settings = settings
        self.orchestrator = orchestrator
        self.selector = selector
        self.status_aggregator = status_aggregator

        self.app = FastAPI(
            title="Camera Bridge Setup API",
            version=__version__,
            docs_url="/api/docs" if settings.debug else None,
            redoc_url="/api/redoc" if settings.debug else None,
        )
        self._setup_error_handlers()
        self._setup_provisioning_routes()
        self._setup_network_routes()
        self._setup_status_routes()

    def get_app(self) -> FastAPI:
        return self.app

    def _setup_error_handlers(self):
        @self.app.exception_handler(BridgeError)
        async def bridge_error_handler(request, exc: BridgeError):
            if exc.fatal:
                logger.warning(f"{request.method} {request.url.path} failed: {exc!r}")
            return JSONResponse(status_code=http_status_for(exc.kind), content=exc.to_dict())

    @staticmethod
    def _provisioning_response(result: ProvisioningResult) -> JSONResponse:
        return JSONResponse(
            status_code=http_status_for(result.error), content=result.model_dump(mode="json")
        )

    @staticmethod
    def _connect_response(result: ConnectResult) -> JSONResponse:
        return JSONResponse(
            status_code=http_status_for(result.error), content=result.model_dump(mode="json")
        )

    def _setup_provisioning_routes(self):
        @self.app.post("/api/provision")
        async def provision(req: ProvisionRequest) -> JSONResponse:
            result = await self.orchestrator.configure(req.token)
            logger.info(f"Provisioning finished: {result.status.value} ({result.state.value})")
            return self._provisioning_response(result)

        @self.app.post("/api/provision/verify")
        async def verify() -> JSONResponse:
            return self._provisioning_response(await self.orchestrator.verify())

        @self.app.get("/api/provision")
        async def provisioning_status() -> dict:
            state = self.orchestrator.state_manager.get_state()
            return {
                "state": state.provisioning_state.value,
                "info": state.provisioning.model_dump(mode="json"),
                "installed": self.orchestrator.installed_profile().model_dump(mode="json"),
            }

    def _setup_network_routes(self):
        @self.app.get("/api/networks")
        async def list_networks() -> dict:
            profiles, visible = await self.selector.list_networks()
            return {
                "saved": [p.public_dict() for p in profiles],
                "available": [n.to_dict() for n in visible],
            }

        @self.app.post("/api/networks/connect")
        async def connect(req: ConnectionRequest) -> JSONResponse:
            return self._connect_response(await self.selector.connect(req.ssid, req.password))

        @self.app.post("/api/networks/auto-connect")
        async def auto_connect() -> JSONResponse:
            return self._connect_response(await self.selector.select_and_connect())

        @self.app.post("/api/networks/{ssid}/connect")
        async def connect_saved(ssid: str) -> JSONResponse:
            return self._connect_response(await self.selector.connect_saved(ssid))

        @self.app.put("/api/networks/{ssid}/priority")
        async def set_priority(ssid: str, req: PriorityRequest) -> dict:
            profile = await self.selector.set_priority(ssid, req.priority)
            return profile.public_dict()

        @self.app.delete("/api/networks/{ssid}")
        async def forget(ssid: str) -> dict:
            await self.selector.forget(ssid)
            return {"removed": ssid}

    def _setup_status_routes(self):
        @self.app.get("/api/status")
        async def get_status() -> dict:
            report = await self.status_aggregator.collect()
            return report.model_dump(mode="json")

        @self.app.get("/health")
        async def health_check() -> dict:
            return {"status": "healthy", "version": __version__}
