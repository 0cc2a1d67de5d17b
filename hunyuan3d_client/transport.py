import asyncio
from typing import Mapping, Optional, Protocol

import aiohttp
from loguru import logger

from hunyuan3d_client.errors import TransportError


class TransportClient(Protocol):
    async def post(self, url: str, headers: Mapping[str, str], body: bytes) -> bytes:
        """Sends ``body`` and returns the raw response body.

        Raises TransportError on network errors, timeouts and non-2xx statuses.
        """
        ...


class AiohttpTransport:
    def __init__(self, timeout: float = 30.0, session: Optional[aiohttp.ClientSession] = None):
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None
        self.logger = logger

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def post(self, url: str, headers: Mapping[str, str], body: bytes) -> bytes:
        session = self._get_session()
        try:
            async with session.post(
                url, headers=dict(headers), data=body, timeout=self.timeout
            ) as response:
                response.raise_for_status()
                return await response.read()
        except aiohttp.ClientResponseError as e:
            self.logger.warning(f"HTTP error {e.status} at {url}: {e.message}")
            raise TransportError(f"HTTP {e.status}: {e.message}", status=e.status) from e
        except asyncio.TimeoutError as e:
            self.logger.warning(f"Request to {url} timed out after {self.timeout.total}s")
            raise TransportError(f"Request timed out after {self.timeout.total}s") from e
        except aiohttp.ClientError as e:
            self.logger.warning(f"Connection error at {url}: {e}")
            raise TransportError(str(e)) from e

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "AiohttpTransport":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
