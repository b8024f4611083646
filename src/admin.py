"""
Broker Admin Client - Talks to each EMQX member's management API.

Used to probe member health and to load or unload plugins on a member.
Transport failures become ConnectivityError (retryable); explicit
rejections become AdminAPIError.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from errors import AdminAPIError, ConnectivityError
from models import Member

logger = logging.getLogger(__name__)


class BrokerAdminClient:
    """
    Client for the EMQX v4 management REST API.

    A new session is opened per request, so members joining or leaving
    between passes need no connection bookkeeping.
    """

    def __init__(
        self,
        port: int = 8081,
        username: str = "admin",
        password: str = "public",
        timeout: float = 10.0,
        scheme: str = "http",
    ):
        self.port = port
        self.username = username
        self.password = password
        self.timeout = timeout
        self.scheme = scheme

    def _base_url(self, member: Member) -> str:
        if not member.host:
            raise ConnectivityError(
                f"Member {member.pod_name} has no address yet", member=member.node
            )
        return f"{self.scheme}://{member.host}:{self.port}/api/v4"

    async def _request(
        self,
        method: str,
        member: Member,
        path: str,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self._base_url(member)}{path}"
        auth = aiohttp.BasicAuth(self.username, self.password)
        timeout = aiohttp.ClientTimeout(total=self.timeout)

        try:
            async with aiohttp.ClientSession(auth=auth, timeout=timeout) as session:
                async with session.request(method, url, json=json_body) as response:
                    if response.status >= 500:
                        raise ConnectivityError(
                            f"Member {member.node} answered {response.status}",
                            member=member.node,
                        )
                    if response.status >= 400:
                        text = await response.text()
                        raise AdminAPIError(
                            f"Member {member.node} rejected {method} {path}: "
                            f"{response.status} {text}",
                            member=member.node,
                            status=response.status,
                        )
                    data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise ConnectivityError(
                f"Member {member.node} unreachable: {e}", member=member.node
            ) from e

        if isinstance(data, dict) and data.get("code", 0) != 0:
            raise AdminAPIError(
                f"Member {member.node} rejected {method} {path}: "
                f"{data.get('message', data.get('code'))}",
                member=member.node,
            )
        return data if isinstance(data, dict) else {"data": data}

    async def get_node(self, member: Member) -> Dict[str, Any]:
        """Return the member's own node info (node_status, version, ...)."""
        data = await self._request("GET", member, f"/nodes/{member.node}")
        return data.get("data") or {}

    async def is_healthy(self, member: Member) -> bool:
        """
        Application-level health check.

        Returns:
            True when the member reports itself Running. Unreachable or
            rejecting members count as unhealthy.
        """
        try:
            info = await self.get_node(member)
        except (ConnectivityError, AdminAPIError) as e:
            logger.debug(f"Health check failed for {member.node}: {e}")
            return False
        member.node_info = info
        return info.get("node_status") == "Running"

    async def load_plugin(
        self, member: Member, plugin_name: str, plugin_config: Dict[str, str]
    ) -> None:
        await self._request(
            "PUT",
            member,
            f"/nodes/{member.node}/plugins/{plugin_name}/load",
            json_body={"config": plugin_config},
        )
        logger.info(f"Loaded plugin {plugin_name} on {member.node}")

    async def unload_plugin(self, member: Member, plugin_name: str) -> None:
        """
        Unload a plugin from a member.

        A 404 means the plugin is not loaded there, which is the goal.
        """
        try:
            await self._request(
                "PUT", member, f"/nodes/{member.node}/plugins/{plugin_name}/unload"
            )
        except AdminAPIError as e:
            if e.status == 404:
                logger.info(f"Plugin {plugin_name} already absent on {member.node}")
                return
            raise
        logger.info(f"Unloaded plugin {plugin_name} on {member.node}")
