"""TAXOMETRICS — Google API Client.

Shared async HTTP client for Search Console, GA4 Data and Merchant Center.
Handles bearer auth, retry with backoff, and rate limiting. Access tokens are
obtained and refreshed outside this service.
"""

import asyncio
from typing import Any, Dict, List, Optional

import httpx

from taxometrics.config import settings
from taxometrics.core.errors import GoogleAPIError
from taxometrics.core.logging import get_logger

logger = get_logger("google.client")

MAX_RETRIES = 3
RETRY_BASE_DELAY = 2  # seconds


class GoogleAPIClient:
    """Async HTTP client for Google reporting APIs."""

    def __init__(
        self,
        access_token: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.access_token = access_token or settings.google_access_token
        self.timeout = timeout or settings.google_request_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                headers={"Authorization": f"Bearer {self.access_token}"},
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # ── Core Request Method ──

    async def request(
        self,
        method: str,
        url: str,
        params: Dict[str, Any] | None = None,
        json_body: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        """Make a request with retry + rate-limit handling."""
        client = await self._get_client()

        for attempt in range(1, MAX_RETRIES + 1):
            try:
                resp = await client.request(method, url, params=params, json=json_body)

                # Rate limited
                if resp.status_code == 429:
                    wait = RETRY_BASE_DELAY * (2 ** (attempt - 1))
                    logger.warning(
                        f"Rate limited (429). Retrying in {wait}s (attempt {attempt}/{MAX_RETRIES})",
                        extra={"endpoint": url, "status_code": 429},
                    )
                    await asyncio.sleep(wait)
                    continue

                resp.raise_for_status()
                return resp.json()

            except httpx.HTTPStatusError as e:
                body = (
                    e.response.json()
                    if e.response.headers.get("content-type", "").startswith(
                        "application/json"
                    )
                    else {}
                )
                error = body.get("error", {}) if isinstance(body, dict) else {}
                error_msg = error.get("message", str(e))
                error_status = error.get("status", "")

                if attempt < MAX_RETRIES and e.response.status_code >= 500:
                    wait = RETRY_BASE_DELAY * (2 ** (attempt - 1))
                    logger.warning(
                        f"Server error {e.response.status_code}. Retrying in {wait}s",
                        extra={"endpoint": url, "status_code": e.response.status_code},
                    )
                    await asyncio.sleep(wait)
                    continue

                raise GoogleAPIError(
                    error_msg, e.response.status_code, error_status
                ) from e

            except httpx.RequestError as e:
                if attempt < MAX_RETRIES:
                    wait = RETRY_BASE_DELAY * (2 ** (attempt - 1))
                    logger.warning(f"Request error: {e}. Retrying in {wait}s")
                    await asyncio.sleep(wait)
                    continue
                raise GoogleAPIError(
                    f"Connection failed after {MAX_RETRIES} retries: {e}"
                ) from e

        raise GoogleAPIError("Max retries exhausted", 429)

    # ── Pagination ──

    async def paginated_post(
        self,
        url: str,
        body: Dict[str, Any],
        rows_key: str,
        page_size: int,
        style: str = "offset",
        max_pages: int = 50,
    ) -> List[Dict[str, Any]]:
        """Fetch every page of a POST report endpoint.

        ``style="offset"`` pages with ``startRow``/``offset`` fields
        (Search Console, GA4); ``style="token"`` follows ``nextPageToken``
        (Merchant Center).
        """
        all_rows: List[Dict[str, Any]] = []
        page_body = dict(body)

        for page in range(max_pages):
            result = await self.request("POST", url, json_body=page_body)
            rows = result.get(rows_key) or []
            all_rows.extend(rows)

            if style == "token":
                token = result.get("nextPageToken")
                if not token:
                    break
                page_body = {**body, "pageToken": token}
            else:
                if len(rows) < page_size:
                    break
                offset_field = "startRow" if "rowLimit" in body else "offset"
                page_body = {**body, offset_field: (page + 1) * page_size}

        logger.info(f"Fetched {len(all_rows)} rows from {url}", extra={"endpoint": url})
        return all_rows
