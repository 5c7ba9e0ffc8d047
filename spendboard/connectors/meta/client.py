"""Spendboard - Meta API Client.

Handles timeouts, retry/backoff, error-envelope translation, and pagination.
"""

import asyncio
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel

from spendboard.config import settings
from spendboard.core.errors import AuthExpired, UpstreamRejected, UpstreamUnavailable
from spendboard.core.logging import get_logger

logger = get_logger("meta.client")

# 190: invalid/expired OAuth token, 102: session expired
AUTH_ERROR_CODES = {102, 190}
AUTH_HTTP_STATUSES = {401}


class MetaPage(BaseModel):
    data: List[Dict[str, Any]] = []
    next_cursor: Optional[str] = None


def _raise_for_envelope(body: Any, status_code: int) -> None:
    """Translate Meta's `{"error": {...}}` envelope into a typed exception."""
    if not isinstance(body, dict) or not body.get("error"):
        return
    error = body["error"] if isinstance(body["error"], dict) else {"message": str(body["error"])}
    message = error.get("message") or "Meta API error"
    try:
        code = int(error.get("code") or 0)
    except (TypeError, ValueError):
        code = 0
    if code in AUTH_ERROR_CODES or status_code in AUTH_HTTP_STATUSES:
        raise AuthExpired(message, status_code=401, error_code=code)
    raise UpstreamRejected(message, status_code=status_code or 400, error_code=code)


class MetaClient:
    """Async HTTP client for the Meta Marketing API."""

    def __init__(
        self,
        access_token: str,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        retry_base_delay: float | None = None,
        max_pages: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.access_token = access_token
        self.base_url = (base_url or settings.meta_graph_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.request_timeout
        self.max_retries = max_retries or settings.max_retries
        self.retry_base_delay = (
            retry_base_delay if retry_base_delay is not None else settings.retry_base_delay
        )
        self.max_pages = max_pages or settings.max_pages
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self) -> "MetaClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _url(self, path: str) -> str:
        if path.startswith("http"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _backoff(self, attempt: int) -> float:
        wait = self.retry_base_delay * (2 ** (attempt - 1))
        if wait > 0:
            await asyncio.sleep(wait)
        return wait

    # ── Core Request Method ──

    async def _request(
        self,
        url: str,
        params: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        """GET with timeout, retry on 429/5xx/transport errors, envelope check."""
        query: Dict[str, Any] | None = None
        if params is not None:
            query = {k: v for k, v in params.items() if v is not None}
            query["access_token"] = self.access_token

        client = await self._get_client()

        for attempt in range(1, self.max_retries + 1):
            try:
                resp = await client.get(url, params=query)
            except httpx.TimeoutException as e:
                if attempt < self.max_retries:
                    wait = await self._backoff(attempt)
                    logger.warning(f"Timeout calling Meta. Retried after {wait}s")
                    continue
                raise UpstreamUnavailable(
                    f"Meta API timeout after {self.timeout}s: {e}"
                ) from e
            except httpx.RequestError as e:
                if attempt < self.max_retries:
                    wait = await self._backoff(attempt)
                    logger.warning(f"Request error: {e}. Retried after {wait}s")
                    continue
                raise UpstreamUnavailable(
                    f"Connection failed after {self.max_retries} attempts: {e}"
                ) from e

            try:
                body = resp.json()
            except ValueError:
                body = {}

            # Rate limited or server error: retry before looking at the body
            if resp.status_code == 429 or resp.status_code >= 500:
                if attempt < self.max_retries:
                    wait = await self._backoff(attempt)
                    logger.warning(
                        f"Meta returned {resp.status_code}. Retried after {wait}s "
                        f"(attempt {attempt}/{self.max_retries})",
                        extra={"status_code": resp.status_code},
                    )
                    continue
                _raise_for_envelope(body, resp.status_code)
                raise UpstreamUnavailable(
                    f"Meta API returned {resp.status_code}",
                    status_code=resp.status_code,
                )

            _raise_for_envelope(body, resp.status_code)
            if resp.status_code >= 400:
                if resp.status_code in AUTH_HTTP_STATUSES:
                    raise AuthExpired(f"Meta API returned {resp.status_code}", status_code=401)
                raise UpstreamRejected(
                    f"Meta API returned {resp.status_code}", status_code=resp.status_code
                )
            if not isinstance(body, dict):
                raise UpstreamRejected("Unexpected Meta API response", status_code=resp.status_code)
            return body

        raise UpstreamUnavailable("Max retries exhausted")

    # ── Pagination ──

    async def fetch_page(
        self, path: str, params: Dict[str, Any] | None = None
    ) -> MetaPage:
        """Fetch a single page. `next_cursor` is the opaque `paging.next` URL."""
        url = self._url(path)
        # A continuation URL already embeds its query (token included).
        body = await self._request(url, None if path.startswith("http") else (params or {}))
        paging = body.get("paging") or {}
        return MetaPage(data=body.get("data") or [], next_cursor=paging.get("next"))

    async def fetch_all(
        self, path: str, params: Dict[str, Any] | None = None
    ) -> MetaPage:
        """Follow `next_cursor` until exhausted.

        Raises UpstreamRejected when more than `max_pages` pages remain, so the
        caller skips the account instead of persisting a truncated window.
        """
        all_data: List[Dict[str, Any]] = []
        page = await self.fetch_page(path, params)
        all_data.extend(page.data)
        pages = 1
        while page.next_cursor and pages < self.max_pages:
            page = await self.fetch_page(page.next_cursor)
            all_data.extend(page.data)
            pages += 1
        if page.next_cursor:
            logger.warning(
                f"Stopped paginating {path} after {pages} pages",
                extra={"endpoint": path},
            )
            raise UpstreamRejected(
                f"{path} has more than {self.max_pages} pages of results",
                hint="Narrow the window with campaign_days or filter to fewer accounts.",
            )

        logger.info(f"Fetched {len(all_data)} records from {path}", extra={"endpoint": path})
        return MetaPage(data=all_data)
