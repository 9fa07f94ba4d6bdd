"""Abstract collector interface, rate limiting and resilient HTTP access."""

from __future__ import annotations

import asyncio
import os
import random
import time
from abc import ABC, abstractmethod
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

import httpx

from intelpipe.core.config import settings
from intelpipe.core.errors import SourceAuthError, SourceError, TransientSourceError
from intelpipe.core.logging import get_logger
from intelpipe.schemas.config import SourceConfig
from intelpipe.schemas.items import CollectedItem

log = get_logger("ingestion.base")

RETRY_STATUSES = (429, 500, 502, 503, 504)


class RateLimiter:
    """Enforces a minimum interval between requests of one collector instance."""

    def __init__(self, min_interval: float):
        self.min_interval = max(0.0, min_interval)
        self._lock = asyncio.Lock()
        self._last: Optional[float] = None

    async def wait(self) -> None:
        if self.min_interval <= 0:
            return
        async with self._lock:
            now = time.monotonic()
            if self._last is not None:
                delay = self._last + self.min_interval - now
                if delay > 0:
                    await asyncio.sleep(delay)
            self._last = time.monotonic()


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Return seconds given a Retry-After header value."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, retry_at.timestamp() - time.time())


class BaseCollector(ABC):
    """Base class for source collectors.

    One instance serves one configured source. ``collect`` skips and logs
    malformed upstream records; it only raises when the whole source is
    unreachable or rejects the credentials.
    """

    type: str

    def __init__(
        self,
        config: SourceConfig,
        client: Optional[httpx.AsyncClient] = None,
        *,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
        timeout: Optional[float] = None,
    ):
        self.config = config
        self.name = config.name
        self.rate_limiter = RateLimiter(config.min_interval)
        self.max_retries = max(1, max_retries if max_retries is not None else settings.COLLECTOR_MAX_RETRIES)
        self.backoff_base = backoff_base if backoff_base is not None else settings.COLLECTOR_BACKOFF_BASE_SECONDS
        self.backoff_max = backoff_max if backoff_max is not None else settings.COLLECTOR_BACKOFF_MAX_SECONDS
        self.timeout = timeout if timeout is not None else settings.HTTP_TIMEOUT_SECONDS
        self._client = client
        self._owns_client = False
        self.last_skipped = 0

    @abstractmethod
    async def collect(self, source_config: SourceConfig) -> List[CollectedItem]:
        """Return the items currently published by the source, in source order."""

    async def health_check(self) -> bool:
        """Cheap liveness probe; never raises."""
        if not self.config.endpoint:
            return True
        try:
            client = self._get_client()
            resp = await client.head(self.config.endpoint, timeout=min(self.timeout, 5.0))
            if resp.status_code == 405:
                resp = await client.get(self.config.endpoint, timeout=min(self.timeout, 5.0))
        except httpx.HTTPError as exc:
            log.warning(f"Health check failed for {self.name}: {exc}")
            return False
        return resp.status_code < 500

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # -------------------------------------------------------------------------
    # HTTP helpers
    # -------------------------------------------------------------------------
    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                headers={"User-Agent": settings.USER_AGENT},
            )
            self._owns_client = True
        return self._client

    def _auth_headers(self) -> Dict[str, str]:
        ref = self.config.credentials_ref
        if not ref:
            return {}
        secret = os.environ.get(ref)
        if not secret:
            raise SourceAuthError(self.name, f"credential '{ref}' is not set")
        header = self.config.options.get("auth_header", "Authorization")
        scheme = self.config.options.get("auth_scheme", "Bearer")
        return {header: f"{scheme} {secret}".strip()}

    def _backoff(self, attempt: int, retry_after: Optional[float]) -> float:
        if retry_after is not None:
            return min(retry_after, self.backoff_max)
        exponential = min(self.backoff_base * 2 ** (attempt - 1), self.backoff_max)
        return exponential + random.uniform(0, self.backoff_base)

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Perform a rate-limited request with bounded retries on 429/5xx/network errors."""
        client = self._get_client()
        headers = {**self._auth_headers(), **kwargs.pop("headers", {})}
        last_error = ""

        for attempt in range(1, self.max_retries + 1):
            await self.rate_limiter.wait()
            retry_after: Optional[float] = None
            try:
                resp = await client.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_error = f"{type(exc).__name__}: {exc}"
            else:
                if resp.status_code in (401, 403):
                    raise SourceAuthError(self.name, f"HTTP {resp.status_code} from {url}", resp.status_code)
                if resp.status_code not in RETRY_STATUSES:
                    if resp.status_code >= 400:
                        raise SourceError(self.name, f"HTTP {resp.status_code} from {url}", resp.status_code)
                    return resp
                last_error = f"HTTP {resp.status_code}"
                retry_after = parse_retry_after(resp.headers.get("Retry-After"))

            if attempt == self.max_retries:
                break

            delay = self._backoff(attempt, retry_after)
            log.warning(
                f"{self.name}: {method} {url} failed (attempt {attempt}/{self.max_retries}, "
                f"retry in {delay:.1f}s): {last_error}"
            )
            await asyncio.sleep(delay)

        raise TransientSourceError(self.name, f"{method} {url} failed after {self.max_retries} attempts: {last_error}")

    async def _get_json(self, url: str, **kwargs: Any) -> Any:
        resp = await self._request("GET", url, **kwargs)
        try:
            return resp.json()
        except ValueError as exc:
            raise SourceError(self.name, f"invalid JSON from {url}: {exc}") from exc

    async def _get_text(self, url: str, **kwargs: Any) -> str:
        resp = await self._request("GET", url, **kwargs)
        return resp.text
