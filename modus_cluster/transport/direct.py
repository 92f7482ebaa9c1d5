"""
Direct control of worker nodes through their HTTP control endpoint
"""
import asyncio
import logging
from typing import Dict, List, Optional
import aiohttp

from ..core.errors import TransportError
from .base import DirectControl


class HttpDirectControl(DirectControl):
    """
    Push files to and run commands on workers exposing a control server.

    Args:
        endpoints: node_id -> base URL (``http://host:port``)
        timeout: per-request timeout in seconds
    """

    def __init__(self, endpoints: Dict[str, str], timeout: float = 10.0):
        self.endpoints = dict(endpoints)
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self.logger = logging.getLogger("HttpDirectControl")

    def has_node(self, node_id: str) -> bool:
        return node_id in self.endpoints

    def attached_nodes(self) -> List[str]:
        return list(self.endpoints)

    def _url(self, node_id: str) -> str:
        url = self.endpoints.get(node_id)
        if url is None:
            raise TransportError(f"No control endpoint for node {node_id}")
        return url.rstrip("/")

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def push(self, node_id: str, path: str, data: bytes) -> None:
        url = f"{self._url(node_id)}/files/{path.lstrip('/')}"
        try:
            async with self._get_session().put(url, data=data) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise TransportError(
                        f"Push to {node_id} returned status {response.status}: {error_text}"
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"Push to {node_id} failed: {e}") from e
        self.logger.info(f"Pushed {len(data)} bytes to {node_id}:{path}")

    async def execute(self, node_id: str, command: str) -> None:
        url = f"{self._url(node_id)}/execute"
        try:
            async with self._get_session().post(url, json={"command": command}) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise TransportError(
                        f"Execute on {node_id} returned status {response.status}: {error_text}"
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"Execute on {node_id} failed: {e}") from e
        self.logger.info(f"Executed '{command}' on {node_id}")

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
