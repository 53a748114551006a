"""Health checking of the backing game server through its HTTP health endpoint."""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any

import aiohttp


logger = logging.getLogger(__name__)


class HealthStatus(Enum):
    """Outcome of a single health check."""
    RUNNING = "running"
    NOT_RUNNING = "not_running"
    UNREACHABLE = "unreachable"    # Treated as not running


@dataclass(frozen=True)
class HealthResult:
    """Result of one health check call."""
    status: HealthStatus
    http_status: Optional[int] = None
    reported_status: Optional[str] = None

    @property
    def running(self) -> bool:
        return self.status == HealthStatus.RUNNING


class HealthOracle:
    """Asks the game server's health endpoint whether the server is up.

    Any failure (non-2xx response, network error, timeout, malformed body)
    is reported as not running; ``check`` never raises.
    """

    def __init__(self, config: dict):
        health_config = config["health"]
        self.url = health_config["url"]
        self.require_active_status = health_config.get("require_active_status", True)
        self.auth = aiohttp.BasicAuth(health_config["username"], health_config["password"])
        self.timeout = aiohttp.ClientTimeout(total=config["timing"]["request_timeout"])

        self._session: Optional[aiohttp.ClientSession] = None

        # Statistics
        self.last_result: Optional[HealthResult] = None
        self.last_check_time = 0.0
        self.stats = {
            "total_checks": 0,
            "running": 0,
            "not_running": 0,
            "unreachable": 0
        }

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def check(self) -> HealthResult:
        """Perform one authenticated health check request."""
        result = await self._request()

        self.stats["total_checks"] += 1
        self.stats[result.status.value] += 1
        self.last_result = result
        self.last_check_time = time.time()

        return result

    async def _request(self) -> HealthResult:
        try:
            session = self._get_session()
            async with session.get(self.url, auth=self.auth) as response:
                if not 200 <= response.status < 300:
                    logger.error(f"Server health check failed: HTTP {response.status}")
                    return HealthResult(HealthStatus.NOT_RUNNING, http_status=response.status)

                try:
                    data = await response.json(content_type=None)
                except ValueError as e:
                    logger.error(f"Health check returned a malformed body: {e}")
                    return HealthResult(HealthStatus.NOT_RUNNING, http_status=response.status)

        except asyncio.TimeoutError:
            logger.error(f"Health check timed out after {self.timeout.total}s")
            return HealthResult(HealthStatus.UNREACHABLE)
        except aiohttp.ClientError as e:
            logger.error(f"Error checking server health: {e}")
            return HealthResult(HealthStatus.UNREACHABLE)

        reported = data.get("status") if isinstance(data, dict) else None
        if reported is not None and not isinstance(reported, str):
            reported = str(reported)

        if reported == "active":
            logger.info(f"Server health check completed: status {response.status}")
            return HealthResult(HealthStatus.RUNNING, response.status, reported)

        if self.require_active_status:
            logger.info(f"Server health endpoint reachable but reports status {reported!r}")
            return HealthResult(HealthStatus.NOT_RUNNING, response.status, reported)

        logger.info(f"Server health check completed: status {response.status} (reported {reported!r})")
        return HealthResult(HealthStatus.RUNNING, response.status, reported)

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def get_stats(self) -> Dict[str, Any]:
        """Get health check statistics."""
        return {
            **self.stats,
            "url": self.url,
            "last_status": self.last_result.status.value if self.last_result else None,
            "last_check_time": self.last_check_time
        }
