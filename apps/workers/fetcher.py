# apps/workers/fetcher.py
#
# Upstream fetch for the poll loop. One shared AsyncClient per process.
#
# Contract:
#   await fetcher.fetch(url) -> bytes | None
#     - bounded timeout (default 15s)
#     - follows redirects
#     - NEVER raises for network/HTTP problems; None means "no usable data"
#       and the scheduler simply tries again on a later tick.

from __future__ import annotations

import logging
from typing import Optional

import httpx

log = logging.getLogger("avwpulse.fetcher")

# ── Tunables ──────────────────────────────────────────────────────────────────
FETCH_TIMEOUT = 15.0
MAX_REDIRECTS = 5
USER_AGENT = "avwpulse/1.0 (+https://aviationweather.gov/data/api/)"


class Fetcher:
    def __init__(
        self,
        timeout: float = FETCH_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
            max_redirects=MAX_REDIRECTS,
            headers={"User-Agent": USER_AGENT, "Accept": "application/xml, text/xml;q=0.9, */*;q=0.5"},
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
        )

    async def fetch(self, url: str) -> Optional[bytes]:
        log.debug("fetch: %s", url)
        try:
            r = await self._client.get(url, follow_redirects=True)
        except httpx.TimeoutException:
            log.warning("fetch: timed out %s", url)
            return None
        except httpx.HTTPError as e:
            log.warning("fetch: failed %s (%s)", url, type(e).__name__)
            return None

        if r.status_code >= 400:
            log.warning("fetch: %s -> HTTP %d", url, r.status_code)
            return None

        log.debug("fetch: received %d bytes", len(r.content))
        return r.content

    async def aclose(self) -> None:
        await self._client.aclose()
