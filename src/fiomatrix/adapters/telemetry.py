"""Remote controller client using httpx.

All calls are synchronous PUTs. A non-2xx answer raises
httpx.HTTPStatusError; nothing is retried.
"""

import logging
import os

import httpx

from .base import TelemetryAdapter

logger = logging.getLogger(__name__)


class TelemetryClient(TelemetryAdapter):
    def __init__(self, base_url: str, timeout: float = 30.0, transport: httpx.BaseTransport | None = None):
        self._base_url = base_url.rstrip("/")
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def close(self):
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _put(self, path: str, content: bytes | None = None) -> None:
        url = f"{self._base_url}{path}"
        logger.debug("PUT %s (%d bytes)", url, len(content or b""))
        resp = self._client.put(url, content=content)
        resp.raise_for_status()

    def ping(self) -> None:
        self._put("/ping")

    def push_log(self, data: bytes) -> None:
        self._put("/log/", content=data)

    def upload(self, path: str) -> None:
        name = os.path.basename(path)
        logger.info("Uploading %s", path)
        with open(path, "rb") as f:
            self._put(f"/upload/{name}", content=f.read())

    def shutdown(self, success: bool) -> None:
        code = 0 if success else 1
        logger.info("Requesting remote shutdown with status %d", code)
        self._put(f"/shutdown/{code}")
