"""Railway control-plane client for finding and restarting the game deployment."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any

import aiohttp


logger = logging.getLogger(__name__)


LATEST_DEPLOYMENT_QUERY = """
query latestDeployment($projectId: String!, $environmentId: String!, $serviceId: String!) {
  deployments(
    first: 1
    input: {projectId: $projectId, environmentId: $environmentId, serviceId: $serviceId}
  ) {
    edges {
      node {
        id
        staticUrl
      }
    }
  }
}
"""

RESTART_DEPLOYMENT_MUTATION = """
mutation restartDeployment($id: String!) {
  deploymentRestart(id: $id)
}
"""


@dataclass(frozen=True)
class DeploymentRef:
    """Handle to a single deployment of the game service."""
    id: str
    url: str = ""


class DeploymentController:
    """Finds the latest deployment of the game service and restarts it.

    Both operations are a single GraphQL round trip. Transport errors,
    non-2xx responses and GraphQL ``errors`` payloads are logged and
    reported as ``None``/``False``; nothing is raised to the caller.
    """

    def __init__(self, config: dict):
        railway_config = config["railway"]
        self.api_url = railway_config["api_url"]
        self.project_id = railway_config["project_id"]
        self.environment_id = railway_config["environment_id"]
        self.service_id = railway_config["service_id"]
        self._api_token = railway_config["api_token"]
        self.timeout = aiohttp.ClientTimeout(total=config["timing"]["request_timeout"])

        self._session: Optional[aiohttp.ClientSession] = None

        self.stats = {
            "lookups": 0,
            "lookups_failed": 0,
            "restarts": 0,
            "restarts_failed": 0
        }

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self.timeout,
                headers={"Authorization": f"Bearer {self._api_token}"}
            )
        return self._session

    async def _execute(self, query: str, variables: Dict[str, Any], operation: str) -> Optional[Dict[str, Any]]:
        """Run a GraphQL document and return its ``data`` object, or None on any error."""
        payload = {"query": query, "variables": variables}

        try:
            session = self._get_session()
            async with session.post(self.api_url, json=payload) as response:
                if not 200 <= response.status < 300:
                    body = await response.text()
                    logger.error(f"{operation} failed: HTTP {response.status}: {body[:200]}")
                    return None

                try:
                    result = await response.json(content_type=None)
                except ValueError as e:
                    logger.error(f"{operation} returned a malformed body: {e}")
                    return None

        except asyncio.TimeoutError:
            logger.error(f"{operation} timed out after {self.timeout.total}s")
            return None
        except aiohttp.ClientError as e:
            logger.error(f"{operation} request failed: {e}")
            return None

        if not isinstance(result, dict):
            logger.error(f"{operation} returned an unexpected payload: {result!r}")
            return None

        if result.get("errors"):
            logger.error(f"{operation} returned GraphQL errors: {result['errors']}")
            return None

        data = result.get("data")
        if not isinstance(data, dict):
            logger.error(f"{operation} returned no data")
            return None

        return data

    async def latest_deployment(self) -> Optional[DeploymentRef]:
        """Look up the most recent deployment of the configured service."""
        self.stats["lookups"] += 1

        variables = {
            "projectId": self.project_id,
            "environmentId": self.environment_id,
            "serviceId": self.service_id
        }
        data = await self._execute(LATEST_DEPLOYMENT_QUERY, variables, "Deployment lookup")
        if data is None:
            self.stats["lookups_failed"] += 1
            return None

        try:
            edges = data["deployments"]["edges"]
            if not edges:
                logger.warning(f"No deployments found for service {self.service_id}")
                return None
            node = edges[0]["node"]
            deployment = DeploymentRef(id=str(node["id"]), url=node.get("staticUrl") or "")
        except (KeyError, IndexError, TypeError) as e:
            logger.error(f"Deployment lookup returned an unexpected shape: {e!r}")
            self.stats["lookups_failed"] += 1
            return None

        logger.info(f"Latest deployment: {deployment.id} ({deployment.url or 'no static url'})")
        return deployment

    async def restart(self, deployment: DeploymentRef) -> bool:
        """Restart the given deployment."""
        self.stats["restarts"] += 1

        data = await self._execute(RESTART_DEPLOYMENT_MUTATION, {"id": deployment.id}, "Deployment restart")
        if data is None or data.get("deploymentRestart") is False:
            logger.error(f"Restart failed for deployment {deployment.id}")
            self.stats["restarts_failed"] += 1
            return False

        logger.info(f"Restart triggered for deployment {deployment.id}")
        return True

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def get_stats(self) -> Dict[str, Any]:
        """Get control-plane call statistics."""
        return {
            **self.stats,
            "api_url": self.api_url,
            "service_id": self.service_id
        }
