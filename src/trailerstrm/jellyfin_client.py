from __future__ import annotations

import logging
import re
from collections.abc import Iterator, Sequence
from typing import Any, Dict, Optional
from urllib.parse import urljoin, urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

LOGGER = logging.getLogger(__name__)

# Default retry configuration
DEFAULT_RETRIES = 3
DEFAULT_BACKOFF_FACTOR = 0.5
DEFAULT_PAGE_SIZE = 500
RETRY_STATUS_CODES = frozenset({500, 502, 503, 504, 429})

TOKEN_HEADER = "X-Emby-Token"


class JellyfinApiError(RuntimeError):
    """Raised when Jellyfin/Emby API requests fail."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class JellyfinRateLimitError(JellyfinApiError):
    """Raised when the server returns 429 Too Many Requests."""


def _build_url(base_url: str, path: str) -> str:
    normalized = base_url.rstrip("/") + "/"
    return urljoin(normalized, path.lstrip("/"))


def _sanitize_url_for_logging(url: str) -> str:
    """Remove credentials from a URL before it is logged."""
    return re.sub(r"(?i)([?&])(api_key|X-Emby-Token)=[^&]*", r"\1\2=***", url)


def _parse_json_response(response: requests.Response) -> Dict[str, Any]:
    try:
        return response.json()
    except ValueError as exc:
        snippet = response.text[:500]
        raise JellyfinApiError(
            f"Failed to parse server response as JSON ({response.status_code}): {snippet}",
            status_code=response.status_code,
        ) from exc


def validate_server_url(url: Optional[str]) -> bool:
    """Validate that URL is a valid http/https URL."""
    if not url:
        return False
    try:
        parsed = urlparse(url)
        return parsed.scheme in ("http", "https") and bool(parsed.netloc)
    except Exception:  # noqa: BLE001 - defensive
        return False


class JellyfinClient:
    """Thin wrapper around the Jellyfin/Emby items API.

    The API key travels in the ``X-Emby-Token`` header, which both servers
    accept. Transient failures are retried with exponential backoff.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        *,
        user_id: Optional[str] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
        max_retries: int = DEFAULT_RETRIES,
        backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        if not validate_server_url(base_url):
            raise JellyfinApiError(f"Invalid server URL: {base_url}")
        if page_size <= 0:
            raise JellyfinApiError(f"Invalid page size: {page_size}")

        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.user_id = user_id
        self.timeout = timeout
        self.page_size = page_size

        self.session = session or requests.Session()
        if session is None:
            retry_strategy = Retry(
                total=max_retries,
                backoff_factor=backoff_factor,
                status_forcelist=list(RETRY_STATUS_CODES),
                allowed_methods=["GET"],
                raise_on_status=False,
            )
            adapter = HTTPAdapter(max_retries=retry_strategy, pool_maxsize=4)
            self.session.mount("http://", adapter)
            self.session.mount("https://", adapter)

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        allow_error: bool = False,
    ) -> requests.Response:
        url = _build_url(self.base_url, path)
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers[TOKEN_HEADER] = self.api_key

        LOGGER.debug("Jellyfin %s %s", method.upper(), _sanitize_url_for_logging(url))

        try:
            response = self.session.request(
                method,
                url,
                params=dict(params or {}),
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise JellyfinApiError(f"Server request failed: {exc}") from exc

        if response.status_code == 429:
            raise JellyfinRateLimitError("Server rate limit exceeded (429)", status_code=429)

        if not allow_error and response.status_code >= 400:
            snippet = response.text[:200]
            raise JellyfinApiError(
                f"Server request failed ({response.status_code}): {snippet}",
                status_code=response.status_code,
            )

        return response

    def _items_path(self) -> str:
        if self.user_id:
            return f"/Users/{self.user_id}/Items"
        return "/Items"

    def iter_items(
        self,
        *,
        include_item_types: Sequence[str] = ("Movie",),
        media_types: Sequence[str] = ("Video",),
        fields: Sequence[str] = (),
        extra_params: Optional[Dict[str, Any]] = None,
    ) -> Iterator[Dict[str, Any]]:
        """Yield every matching item, paging with StartIndex/Limit."""
        params: Dict[str, Any] = {"Recursive": "true"}
        if include_item_types:
            params["IncludeItemTypes"] = ",".join(include_item_types)
        if media_types:
            params["MediaTypes"] = ",".join(media_types)
        if fields:
            params["Fields"] = ",".join(fields)
        if extra_params:
            params.update(extra_params)

        start_index = 0
        while True:
            page_params = dict(params, StartIndex=start_index, Limit=self.page_size)
            payload = _parse_json_response(self._request("GET", self._items_path(), params=page_params))
            entries = payload.get("Items") or []
            yield from entries

            start_index += len(entries)
            total = payload.get("TotalRecordCount")
            if not entries or len(entries) < self.page_size:
                break
            if isinstance(total, int) and start_index >= total:
                break
