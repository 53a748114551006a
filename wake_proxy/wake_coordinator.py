"""Wake coordination: decides per connection whether to report, wait or wake."""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any, Callable, Awaitable

from .health_oracle import HealthOracle, HealthResult, HealthStatus
from .deployment_controller import DeploymentController, DeploymentRef


logger = logging.getLogger(__name__)


class WakeDecision(Enum):
    """Outcome of evaluating a connection against the wake state."""
    PASS_THROUGH = "pass_through"            # Server already running
    ALREADY_STARTING = "already_starting"    # Wake in flight or cooling down
    INITIATE = "initiate"                    # This connection starts a wake


@dataclass
class WakeState:
    """Wake lock owned by a single WakeCoordinator."""
    in_flight: bool = False
    last_wake_at: float = 0.0


@dataclass(frozen=True)
class ConnectionIntent:
    """What a client connection asked for, derived from its first packet."""
    raw_token: str
    is_status_probe: bool = False


class WakeCoordinator:
    """Owns the wake lock and drives the health oracle and deployment controller.

    At most one connection per cooldown window reaches the control-plane
    calls. The check of the wake state and the claim of the lock happen in
    one critical section, with no suspension point between them.
    """

    def __init__(self, config: dict,
                 health_oracle: HealthOracle,
                 deployment_controller: DeploymentController,
                 clock: Callable[[], float] = time.time):
        self.health_oracle = health_oracle
        self.deployment_controller = deployment_controller
        self.cooldown = config["timing"]["cooldown_seconds"]
        self.call_timeout = config["timing"]["request_timeout"]
        self.messages = config["messages"]

        self.state = WakeState()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._release_handle: Optional[asyncio.TimerHandle] = None

        # Statistics
        self.stats = {
            "connections": 0,
            "wake_attempts": 0,
            "successful_restarts": 0,
            "failed_restarts": 0,
            "missing_deployments": 0,
            "last_deployment_id": None,
            "decisions": {decision.value: 0 for decision in WakeDecision}
        }

    def decide(self, health: HealthResult, now: Optional[float] = None) -> WakeDecision:
        """Evaluate the current wake state against a health result (no mutation)."""
        if health.running:
            return WakeDecision.PASS_THROUGH

        if now is None:
            now = self._clock()

        if self.state.in_flight or now - self.state.last_wake_at < self.cooldown:
            return WakeDecision.ALREADY_STARTING

        return WakeDecision.INITIATE

    async def handle(self, intent: ConnectionIntent) -> str:
        """Handle a real connection attempt and return the text for the client."""
        self.stats["connections"] += 1

        try:
            health = await self._check_health()

            async with self._lock:
                decision = self.decide(health)
                previous_wake_at = self.state.last_wake_at
                if decision == WakeDecision.INITIATE:
                    self.state.in_flight = True
                    self.state.last_wake_at = self._clock()

            self.stats["decisions"][decision.value] += 1

            if decision == WakeDecision.PASS_THROUGH:
                logger.info("Game server already running, no restart needed")
                return self.messages["already_online"]

            if decision == WakeDecision.ALREADY_STARTING:
                logger.info("Server wake already in progress or cooldown active")
                return self.messages["starting_wait"]

            return await self._wake(intent, previous_wake_at)

        except Exception as e:
            logger.error(f"Unexpected error handling connection {intent.raw_token!r}: {e}")
            return self.messages["restart_failed"]

    async def _check_health(self) -> HealthResult:
        result = await self._call(self.health_oracle.check, "Health check")
        if result is None:
            return HealthResult(HealthStatus.UNREACHABLE)
        return result

    async def _wake(self, intent: ConnectionIntent, previous_wake_at: float) -> str:
        """Run one wake attempt. The caller must already hold the wake lock."""
        self.stats["wake_attempts"] += 1
        logger.info(f"Waking server for connection {intent.raw_token!r}")

        release_now = False
        try:
            deployment: Optional[DeploymentRef] = await self._call(
                self.deployment_controller.latest_deployment, "Deployment lookup"
            )
            if deployment is None:
                # Nothing was restarted, so do not hold the lock for the cooldown
                release_now = True
                self.stats["missing_deployments"] += 1
                logger.error("No deployment found to restart")
                return self.messages["no_deployment"]

            self.stats["last_deployment_id"] = deployment.id

            restarted = await self._call(
                lambda: self.deployment_controller.restart(deployment), "Deployment restart"
            )
            if restarted:
                self.stats["successful_restarts"] += 1
                logger.info(f"Wake started for deployment {deployment.id}")
                return self.messages["starting_retry"]

            self.stats["failed_restarts"] += 1
            logger.error(f"Could not restart deployment {deployment.id}")
            return self.messages["restart_failed"]

        finally:
            if release_now:
                self._release_now(previous_wake_at)
            else:
                self._schedule_release()

    async def _call(self, operation: Callable[[], Awaitable[Any]], name: str) -> Any:
        """Await a collaborator call bounded by the request timeout; None on failure."""
        try:
            return await asyncio.wait_for(operation(), timeout=self.call_timeout)
        except asyncio.TimeoutError:
            logger.error(f"{name} did not complete within {self.call_timeout}s")
        except Exception as e:
            logger.error(f"{name} failed: {e}")
        return None

    def _release_now(self, previous_wake_at: float) -> None:
        self.state.in_flight = False
        self.state.last_wake_at = previous_wake_at
        logger.debug("Wake lock released immediately")

    def _schedule_release(self) -> None:
        loop = asyncio.get_running_loop()
        self._release_handle = loop.call_later(self.cooldown, self._release_after_cooldown)
        logger.debug(f"Wake lock release scheduled in {self.cooldown}s")

    def _release_after_cooldown(self) -> None:
        self.state.in_flight = False
        self._release_handle = None
        logger.info("Wake cooldown elapsed, new wake attempts allowed")

    def get_status(self) -> Dict[str, Any]:
        """Get current wake state and statistics."""
        now = self._clock()
        remaining = 0.0
        if self.state.last_wake_at:
            remaining = max(0.0, self.cooldown - (now - self.state.last_wake_at))

        return {
            "in_flight": self.state.in_flight,
            "last_wake_at": self.state.last_wake_at or None,
            "cooldown_seconds": self.cooldown,
            "cooldown_remaining": remaining,
            "statistics": {**self.stats, "decisions": dict(self.stats["decisions"])}
        }
