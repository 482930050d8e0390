"""
HTTP API source with authentication and pagination.

This module provides:
- Bearer, Basic and API key authentication
- Offset, Page, Cursor and Link pagination bounded by max_pages
- Status code mapping onto retryable / non-retryable source errors
- All pages combined into one JSON array payload
"""

import httpx
import io
import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urljoin
import logging

from core.config import settings
from core.exceptions import (
    AuthenticationError,
    ConfigurationError,
    NetworkError,
    RateLimitError,
    ResourceNotFoundError,
    SourceError,
)
from ingestion.parsers.json_parser import navigate
from ingestion.rows import SourceFile, SourceFileInfo
from ingestion.sources.base import ImportSource
from models.base import PaginationType, SourceType
from schemas.profile import ImportProfile, PaginationConfig

logger = logging.getLogger(__name__)


class HttpApiSource(ImportSource):
    """
    Fetch records from a REST endpoint.

    source_config keys:
        url, method (GET), auth_type (Bearer/Basic/ApiKey), auth_token,
        username, password, api_key_header, headers, body, timeout
    """

    source_type = SourceType.HTTP

    def __init__(self, decrypt=None, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(decrypt)
        self.transport = transport

    def _client(self, profile: ImportProfile) -> httpx.AsyncClient:
        timeout = float(self.config_value(profile, "timeout", default=settings.HTTP_TIMEOUT))
        return httpx.AsyncClient(timeout=timeout, follow_redirects=True, transport=self.transport)

    def _headers(self, profile: ImportProfile) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        headers.update({str(k): str(v) for k, v in (self.config_value(profile, "headers", default={}) or {}).items()})

        auth_type = str(self.config_value(profile, "auth_type", "authType", default="")).lower()
        token = self.secret(profile, "auth_token", "authToken")

        if auth_type == "bearer" and token:
            headers["Authorization"] = f"Bearer {token}"
        elif auth_type == "apikey" and token:
            header_name = self.config_value(profile, "api_key_header", default="X-API-Key")
            headers[header_name] = token

        return headers

    def _auth(self, profile: ImportProfile) -> Optional[httpx.BasicAuth]:
        auth_type = str(self.config_value(profile, "auth_type", "authType", default="")).lower()
        if auth_type != "basic":
            return None
        username = self.config_value(profile, "username", default="")
        password = self.secret(profile, "password") or ""
        return httpx.BasicAuth(username, password)

    def _url(self, profile: ImportProfile) -> str:
        url = self.config_value(profile, "url") or profile.source_path
        if not url:
            raise ConfigurationError(
                "HTTP source requires source_config.url",
                context={"profile_id": profile.id, "field": "url"}
            )
        return url

    async def _request(
        self,
        client: httpx.AsyncClient,
        profile: ImportProfile,
        url: str,
        params: Optional[Dict[str, Any]] = None
    ) -> httpx.Response:
        """
        Send one request and map failures onto source errors.

        Raises:
            AuthenticationError: 401/403
            ResourceNotFoundError: 404
            RateLimitError: 429
            NetworkError: 5xx, timeouts and transport failures
            SourceError: any other non-success status
        """
        method = str(self.config_value(profile, "method", default="GET")).upper()
        body = self.config_value(profile, "body")
        kwargs: Dict[str, Any] = {
            "headers": self._headers(profile),
            "params": params or None,
        }
        auth = self._auth(profile)
        if auth is not None:
            kwargs["auth"] = auth
        if body is not None and method not in ("GET", "HEAD"):
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["content"] = str(body)

        context = {"source_type": self.source_type.value, "api_url": url, "params": params}

        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Request timeout for {url}", context=context, original_exception=e)
        except httpx.TransportError as e:
            raise NetworkError(f"Network error for {url}", context=context, original_exception=e)

        context["status_code"] = response.status_code

        if response.status_code in (401, 403):
            raise AuthenticationError(f"Authentication failed for {url}", context=context)

        if response.status_code == 404:
            raise ResourceNotFoundError(f"Resource not found: {url}", context=context)

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                f"Rate limit exceeded for {url}",
                context=context,
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None
            )

        if response.status_code >= 500:
            context["response_body"] = response.text[:500]
            raise NetworkError(f"Server error {response.status_code} for {url}", context=context)

        if response.status_code >= 400:
            context["response_body"] = response.text[:500]
            raise SourceError(f"Request failed with status {response.status_code}", context=context)

        return response

    @staticmethod
    def _records(body: Any, data_root_path: Optional[str], url: str) -> List[Any]:
        try:
            located = navigate(body, data_root_path)
        except ValueError as e:
            raise SourceError(
                f"Data root path '{data_root_path}' not found in response",
                context={"api_url": url},
                original_exception=e
            )
        if isinstance(located, list):
            return located
        if located is None:
            return []
        return [located]

    @staticmethod
    def _decode(response: httpx.Response, url: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise SourceError(
                "Failed to parse JSON response",
                context={"api_url": url, "response_body": response.text[:500]},
                original_exception=e
            )

    @staticmethod
    def _pointer(body: Any, path: Optional[str]) -> Optional[str]:
        """Value at a dotted path in the body, or None"""
        if not path:
            return None
        try:
            value = navigate(body, path)
        except ValueError:
            return None
        if value in (None, ""):
            return None
        return str(value)

    async def _fetch_pages(self, client: httpx.AsyncClient, profile: ImportProfile, url: str) -> Tuple[List[Any], int]:
        pagination: PaginationConfig = profile.pagination
        data_root = profile.http_data_root_path
        records: List[Any] = []

        if pagination.type == PaginationType.NONE:
            response = await self._request(client, profile, url)
            body = self._decode(response, url)
            return self._records(body, data_root, url), 1

        pages = 0
        next_url: Optional[str] = url
        params: Dict[str, Any] = {}
        page_index = pagination.start_page if pagination.type == PaginationType.PAGE else 0

        while next_url and pages < pagination.max_pages:
            if pagination.type == PaginationType.OFFSET:
                params = {pagination.limit_param: pagination.limit, pagination.page_param: page_index * pagination.limit}
            elif pagination.type == PaginationType.PAGE:
                params = {pagination.limit_param: pagination.limit, pagination.page_param: page_index}

            logger.info(f"Fetching page {pages + 1} from {next_url}")
            response = await self._request(client, profile, next_url, params)
            body = self._decode(response, next_url)
            page_records = self._records(body, data_root, next_url)
            pages += 1

            if not page_records and pagination.stop_on_empty_page:
                break

            records.extend(page_records)

            if pagination.type in (PaginationType.OFFSET, PaginationType.PAGE):
                if len(page_records) < pagination.limit:
                    break
                page_index += 1
                continue

            if pagination.type == PaginationType.CURSOR:
                cursor = self._pointer(body, pagination.cursor_path or pagination.next_link_path)
                if cursor is None:
                    break
                if cursor.startswith(("http://", "https://", "/")):
                    next_url = urljoin(next_url, cursor)
                    params = {}
                else:
                    # Opaque cursors go back to the base URL as a query parameter
                    next_url = url
                    params = {pagination.cursor_param or "cursor": cursor}
                continue

            # Link: RFC 8288 header first, then a link inside the body
            link = response.links.get("next", {}).get("url") or self._pointer(body, pagination.next_link_path)
            next_url = urljoin(next_url, link) if link else None

        if pages >= pagination.max_pages:
            logger.warning(f"Stopped after max_pages={pagination.max_pages} for {url}")

        return records, pages

    async def fetch(self, profile: ImportProfile) -> List[SourceFile]:
        url = self._url(profile)

        async with self._client(profile) as client:
            records, pages = await self._fetch_pages(client, profile, url)

        payload = json.dumps(records, ensure_ascii=False, default=str).encode("utf-8")
        logger.info(f"Fetched {len(records)} records from {url} ({pages} pages)")

        return [SourceFile(
            identifier=url,
            name=url.rstrip("/").rsplit("/", 1)[-1] or url,
            content=io.BytesIO(payload),
            size=len(payload),
            last_modified=datetime.utcnow(),
        )]

    async def list_files(self, profile: ImportProfile) -> List[SourceFileInfo]:
        url = self._url(profile)
        return [SourceFileInfo(identifier=url, name=url)]

    async def archive(self, profile: ImportProfile, identifier: str) -> bool:
        return False

    async def test(self, profile: ImportProfile) -> Tuple[bool, str]:
        try:
            url = self._url(profile)
        except ConfigurationError as e:
            return False, e.message

        async with self._client(profile) as client:
            try:
                response = await client.head(url, headers=self._headers(profile), auth=self._auth(profile) or httpx.USE_CLIENT_DEFAULT)
                if response.status_code < 400:
                    return True, f"Endpoint reachable (HTTP {response.status_code})"
            except httpx.HTTPError as e:
                logger.debug(f"HEAD request failed for {url}: {e}")

            try:
                response = await client.get(url, headers=self._headers(profile), auth=self._auth(profile) or httpx.USE_CLIENT_DEFAULT)
            except httpx.HTTPError as e:
                return False, f"Endpoint unreachable: {e}"

        if response.status_code < 400:
            return True, f"Endpoint reachable (HTTP {response.status_code})"
        return False, f"Endpoint returned HTTP {response.status_code}"
