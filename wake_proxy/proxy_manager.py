"""Main proxy manager wiring the listener, coordinator and collaborators together."""

import asyncio
import logging
import signal
import time
from typing import Optional, Dict, Any

from .config_manager import ConfigManager
from .health_oracle import HealthOracle
from .deployment_controller import DeploymentController
from .wake_coordinator import WakeCoordinator
from .connection_listener import ConnectionListener
from .utils import format_duration, mask_secret


logger = logging.getLogger(__name__)


class ProxyManager:
    """Central coordinator for the wake-on-demand game server proxy."""

    def __init__(self, config_path: str = "config.json", config: Optional[Dict[str, Any]] = None):
        # Configuration
        self.config_manager = ConfigManager(config_path)
        self.config: Dict[str, Any] = config or {}

        # Core components
        self.health_oracle: Optional[HealthOracle] = None
        self.deployment_controller: Optional[DeploymentController] = None
        self.coordinator: Optional[WakeCoordinator] = None
        self.listener: Optional[ConnectionListener] = None

        # Control
        self.is_running = False
        self.shutdown_event = asyncio.Event()
        self.start_time = time.time()

    async def initialize(self) -> bool:
        """Initialize all components."""
        try:
            logger.info("Initializing wake proxy...")

            if not self.config:
                self.config = self.config_manager.load_config()

            self.health_oracle = HealthOracle(self.config)
            self.deployment_controller = DeploymentController(self.config)
            self.coordinator = WakeCoordinator(
                self.config, self.health_oracle, self.deployment_controller
            )
            self.listener = ConnectionListener(self.config, self.coordinator)

            railway = self.config["railway"]
            logger.debug(f"Railway service {railway['service_id']} in environment {railway['environment_id']} "
                         f"(token {mask_secret(railway['api_token'])})")
            logger.info("All components initialized successfully")
            return True

        except Exception as e:
            logger.error(f"Initialization failed: {e}")
            return False

    async def start(self) -> bool:
        """Start the proxy service."""
        if self.is_running:
            logger.warning("Proxy is already running")
            return False

        try:
            logger.info("Starting wake proxy...")

            self._setup_signal_handlers()
            await self.listener.start_server()

            self.start_time = time.time()
            self.is_running = True
            logger.info("Wake proxy started successfully")
            return True

        except Exception as e:
            logger.error(f"Failed to start proxy: {e}")
            await self._close_components()
            return False

    async def run_forever(self) -> None:
        """Run the proxy service until shutdown."""
        try:
            logger.info("Wake proxy running...")
            await self.shutdown_event.wait()
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Shutdown the proxy service gracefully."""
        if not self.is_running:
            return

        logger.info("Shutting down wake proxy...")
        self.is_running = False

        try:
            await self._close_components()
            logger.info(f"Wake proxy shutdown complete (uptime {format_duration(time.time() - self.start_time)})")
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")

    async def _close_components(self) -> None:
        if self.listener:
            await self.listener.stop_server()
        if self.health_oracle:
            await self.health_oracle.close()
        if self.deployment_controller:
            await self.deployment_controller.close()

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        for signame in ('SIGTERM', 'SIGINT'):
            if not hasattr(signal, signame):
                continue
            try:
                loop.add_signal_handler(getattr(signal, signame), self._on_signal, signame)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform / loop
                logger.debug(f"Cannot install handler for {signame}")

    def _on_signal(self, signame: str) -> None:
        logger.info(f"Received {signame}, initiating shutdown...")
        self.shutdown_event.set()

    def get_status(self) -> Dict[str, Any]:
        """Get current proxy status."""
        return {
            "is_running": self.is_running,
            "uptime_seconds": time.time() - self.start_time if self.is_running else 0.0,
            "wake": self.coordinator.get_status() if self.coordinator else {},
            "listener": self.listener.get_stats() if self.listener else {},
            "health": self.health_oracle.get_stats() if self.health_oracle else {},
            "control_plane": self.deployment_controller.get_stats() if self.deployment_controller else {}
        }

    def get_config_info(self) -> Dict[str, Any]:
        """Get non-secret configuration information."""
        return {
            "listen_host": self.config["listener"]["host"],
            "listen_port": self.config["listener"]["port"],
            "health_url": self.config["health"]["url"],
            "require_active_status": self.config["health"]["require_active_status"],
            "api_url": self.config["railway"]["api_url"],
            "project_id": self.config["railway"]["project_id"],
            "environment_id": self.config["railway"]["environment_id"],
            "service_id": self.config["railway"]["service_id"],
            "cooldown_seconds": self.config["timing"]["cooldown_seconds"],
            "request_timeout": self.config["timing"]["request_timeout"]
        }
