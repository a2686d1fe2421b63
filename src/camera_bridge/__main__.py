#!/usr/bin/env python3
"""Camera Bridge provisioning service."""

import argparse
import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler

import uvicorn

from camera_bridge.core.auto_connect import AutoConnectSelector
from camera_bridge.core.collaborators import RcloneProber, ServiceControl, SudoInstaller
from camera_bridge.core.config import Settings, get_settings
from camera_bridge.core.locks import ResourceLocks
from camera_bridge.core.network_manager import NetworkManager
from camera_bridge.core.network_store import NetworkStore
from camera_bridge.core.provisioning import ProvisioningOrchestrator
from camera_bridge.core.state import NetworkInfo, ProvisioningState, StateManager
from camera_bridge.core.status import StatusAggregator
from camera_bridge.paths import get_log_dir, is_development_mode
from camera_bridge.services.web_server import WebServer


def setup_logging(debug: bool = False):
    log_level = logging.DEBUG if debug else logging.INFO
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    handlers: list[logging.Handler] = [
        logging.StreamHandler(sys.stdout),
    ]

    # Add file handler if we have write permissions
    try:
        log_dir = get_log_dir()
        log_dir.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_dir / "camera-bridge.log",
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(log_format))
        handlers.append(file_handler)
    except (PermissionError, OSError) as e:
        print(f"Warning: Could not create log file: {e}", file=sys.stderr)

    logging.basicConfig(
        level=log_level,
        format=log_format,
        handlers=handlers,
        force=True,
    )


logger = logging.getLogger(__name__)


class CameraBridgeApp:
    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

        self.locks = ResourceLocks(wait_timeout=self.settings.lock_wait_timeout)
        self.state_manager = StateManager(self.settings.state_file)
        self.network_manager = NetworkManager(
            wifi_device=self.settings.wifi_interface,
            command_timeout=self.settings.command_timeout,
        )
        self.services = ServiceControl(timeout=self.settings.command_timeout)
        self.network_store = NetworkStore(self.settings.network_store_file, self.locks)

        self.orchestrator = ProvisioningOrchestrator(
            self.settings,
            installer=SudoInstaller(),
            prober=RcloneProber(self.settings.service_user, self.settings.storage_config_path),
            state_manager=self.state_manager,
            locks=self.locks,
            services=self.services,
        )
        self.selector = AutoConnectSelector(
            self.settings, self.network_manager, self.network_store, self.state_manager, self.locks
        )
        self.status_aggregator = StatusAggregator(
            self.settings, self.state_manager, self.network_manager, self.services
        )
        self.web_server = WebServer(
            self.settings, self.orchestrator, self.selector, self.status_aggregator
        )
        self.server: uvicorn.Server | None = None

    async def initialize(self, auto_connect: bool = True):
        logger.info("Initializing Camera Bridge provisioning service...")
        if is_development_mode():
            logger.info("Running in development mode")
        logger.info(f"Storage config path: {self.settings.storage_config_path}")
        logger.info(f"Saved networks: {len(self.network_store)}")

        await self.network_manager.initialize()

        connection = await self.network_manager.get_connection_info()
        if connection:
            logger.info(f"Already connected to network: {connection['ssid']}")
            await self.state_manager.update_network(
                NetworkInfo(ssid=connection["ssid"], ip_address=connection.get("ip_address"))
            )
        elif auto_connect and len(self.network_store):
            result = await self.selector.select_and_connect()
            if result.ok:
                logger.info(f"Auto-connected to {result.ssid}")
            else:
                logger.warning(f"Auto-connect did not succeed: {result.reason}")

        self.state_manager.on_provisioning_state_change(self._handle_provisioning_change)
        self.state_manager.on_persistence_health_change(self._handle_persistence_health_change)
        logger.info("Initialization complete")

    async def _handle_provisioning_change(
        self, old_state: ProvisioningState, new_state: ProvisioningState
    ):
        logger.info(f"Provisioning transition: {old_state.value} -> {new_state.value}")
        if new_state == ProvisioningState.DEGRADED:
            logger.warning("Storage credential installed but not verified")

    async def _handle_persistence_health_change(self, old_health: str, new_health: str):
        logger.warning(f"State persistence health changed: {old_health} -> {new_health}")
        if new_health == "failed":
            logger.error(
                "State persistence failed - critical issue with state file. "
                "State changes will not be saved to disk!"
            )

    async def run_web_server(self):
        logger.info(f"Starting API server on {self.settings.web_host}:{self.settings.web_port}")
        config = uvicorn.Config(
            app=self.web_server.get_app(),
            host=self.settings.web_host,
            port=self.settings.web_port,
            log_level="info" if self.settings.debug else "error",
            access_log=self.settings.debug,
        )
        self.server = uvicorn.Server(config)
        await self.server.serve()

    async def run(self, auto_connect: bool = True):
        try:
            await self.initialize(auto_connect=auto_connect)
            await self.run_web_server()
        except Exception as e:
            logger.error(f"Application error: {e}")
            raise
        finally:
            await self.shutdown()

    async def shutdown(self):
        logger.info("Shutting down...")
        if self.server:
            self.server.should_exit = True
        try:
            await asyncio.wait_for(self.orchestrator.wait_background(), timeout=5.0)
        except TimeoutError:
            logger.warning("Background tasks did not complete within timeout")
        logger.info("Shutdown complete")


def main():
    parser = argparse.ArgumentParser(description="Camera Bridge provisioning service")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--host", type=str, help="API server host")
    parser.add_argument("--port", type=int, help="API server port (default: 8080)")
    parser.add_argument(
        "--no-auto-connect",
        action="store_true",
        help="Do not connect to a saved network on startup",
    )

    args = parser.parse_args()
    settings = get_settings()

    if args.debug:
        settings.debug = True
    setup_logging(debug=settings.debug)

    if args.host:
        settings.web_host = args.host
    if args.port:
        settings.web_port = args.port

    if os.geteuid() != 0:
        logger.warning("Not running as root; privileged steps will go through sudo -n")

    app = CameraBridgeApp(settings)

    try:
        asyncio.run(app.run(auto_connect=not args.no_auto_connect))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
