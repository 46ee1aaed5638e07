#!/usr/bin/env python3
"""Bounded-timeout HTTP health probe for local services."""
import logging
from typing import Optional

import httpx

logger = logging.getLogger('kbproxy.health')


class HealthProbe:
    """Issues ``GET http://127.0.0.1:<port><path>`` and reports readiness."""

    def __init__(self, path: str = '/ping', timeout: float = 5.0, host: str = '127.0.0.1',
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.path = path if path.startswith('/') else f'/{path}'
        self.timeout = timeout
        self.host = host
        self._transport = transport

    def url_for(self, port: int) -> str:
        return f"http://{self.host}:{port}{self.path}"

    async def check(self, port: Optional[int]) -> bool:
        """Return True only when the service answers 200 within the timeout."""
        if not port:
            return False

        url = self.url_for(port)
        # trust_env=False keeps HTTP_PROXY from routing the probe through the proxy itself
        try:
            async with httpx.AsyncClient(timeout=self.timeout, trust_env=False,
                                         transport=self._transport) as client:
                response = await client.get(url, headers={'Accept': 'application/json'})
        except httpx.TimeoutException:
            logger.warning(f"Health check timed out after {self.timeout}s: {url}")
            return False
        except httpx.HTTPError as exc:
            logger.debug(f"Health check failed for {url}: {exc}")
            return False

        if response.status_code != 200:
            logger.warning(f"Health check failed with status {response.status_code}: {url}")
            return False
        return True
