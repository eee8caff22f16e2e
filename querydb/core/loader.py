import asyncio
import logging
from pathlib import Path
from typing import Optional

import httpx

from querydb.core.config import settings
from querydb.core.exceptions import QueryNotFoundError, QueryTimeoutError


logger = logging.getLogger(__name__)


def join_path(root: str, *parts: str) -> str:
    """Join query path segments with '/', keeping a trailing slash if asked."""
    result = root or ""
    for part in parts:
        if not result:
            result = part
        elif result.endswith("/"):
            result = result + part.lstrip("/")
        else:
            result = result + "/" + part.lstrip("/")
    return result


def is_remote(path: str) -> bool:
    return path.startswith("http://") or path.startswith("https://")


class ResourceLoader:
    """
    Reads query text from local files or http(s) URLs.

    Every read is bounded by `timeout` seconds.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = settings.RESOURCE_TIMEOUT if timeout is None else timeout
        self.transport = transport

    async def read_text(self, path: str) -> str:
        if is_remote(path):
            return await self._fetch(path)
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(Path(path).read_text, encoding="utf-8"), self.timeout
            )
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            raise QueryNotFoundError(path)
        except asyncio.TimeoutError:
            raise QueryTimeoutError(path, self.timeout)

    async def _fetch(self, url: str) -> str:
        logger.debug(f"Fetching query text: {url}")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(url)
        except httpx.TimeoutException:
            raise QueryTimeoutError(url, self.timeout)
        except httpx.TransportError as error:
            logger.warning(f"Could not fetch {url}: {error}")
            raise QueryNotFoundError(url)

        if response.status_code != 200:
            raise QueryNotFoundError(url)
        return response.text
