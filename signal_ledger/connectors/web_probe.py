"""Website reachability probe for provider social proof."""

from __future__ import annotations

import httpx

from signal_ledger.observability.logger import get_logger

log = get_logger(__name__)


class WebsiteProbe:
    """HEAD a provider's website; reachable means a 2xx/3xx answer."""

    def __init__(self, timeout_secs: float = 5.0):
        self._timeout = httpx.Timeout(timeout_secs)
        self._client: httpx.AsyncClient | None = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def is_reachable(self, url: str) -> bool | None:
        """True/False for a definite answer, None when the URL is unusable."""
        if not url.startswith(("http://", "https://")):
            url = f"https://{url}"
        client = await self._ensure_client()
        try:
            resp = await client.head(url)
        except httpx.InvalidURL:
            return None
        except httpx.HTTPError as e:
            log.info("web_probe.unreachable", url=url, error=str(e))
            return False
        return resp.status_code < 400
