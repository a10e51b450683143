import logging
import time
from typing import Any, Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)


class HTTPClient:
    """Pooled HTTP client with retry, used for outbound notifications."""

    def __init__(self, timeout: Optional[float] = None) -> None:
        limits = httpx.Limits(
            max_keepalive_connections=10,
            max_connections=20,
            keepalive_expiry=30.0,
        )
        total = timeout or settings.notify_timeout
        self._client = httpx.Client(
            limits=limits,
            timeout=httpx.Timeout(timeout=total, connect=min(5.0, total)),
            follow_redirects=True,
        )

    def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return self._client.post(url, **kwargs)

    def post_with_retry(self, url: str, retries: int = 3, backoff: float = 0.5, **kwargs: Any) -> httpx.Response:
        """POST with exponential backoff on transport errors.

        The last ``httpx.RequestError`` is re-raised once retries run out.
        """
        for attempt in range(retries):
            try:
                return self.post(url, **kwargs)
            except httpx.RequestError as e:
                if attempt < retries - 1:
                    wait_time = backoff * (2 ** attempt)
                    logger.warning(f"POST {url} failed ({e}); retrying in {wait_time:.1f}s")
                    time.sleep(wait_time)
                    continue
                raise
        raise RuntimeError("retries must be at least 1")

    def close(self) -> None:
        self._client.close()


# Global HTTP client instance
_global_client: Optional[HTTPClient] = None


def get_http_client() -> HTTPClient:
    """Return the shared client, creating it on first use."""
    global _global_client
    if _global_client is None:
        _global_client = HTTPClient()
    return _global_client


def cleanup_http_client() -> None:
    global _global_client
    if _global_client is not None:
        _global_client.close()
        _global_client = None
