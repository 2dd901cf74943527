"""
Base class for per-source fetch strategies.

A strategy knows how to validate, extract and transform one upstream
record for its source. The shared fetch loop lives here:

- up to ``retry_attempts`` tries per item with linear backoff
- HTTP 429 sleeps a fixed cooldown and retries
- HTTP 404 means "no data" (no retry, not an error)
- other statuses are logged and retried, then abandoned for that item
- when the primary endpoint is unavailable (network/5xx/maintenance),
  alternate endpoints are tried, then the HTML page's embedded JSON
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional
import asyncio
import json
import re
import httpx
from pydantic import ValidationError as PydanticValidationError
from models.source import ScraperSource
from schemas.project import ProjectRecord
from core.config import settings
from core.exceptions import (
    APIExtractionError,
    AuthenticationError,
    MaintenanceError,
    NetworkError,
    PayloadError,
    RateLimitError,
    ValidationError,
)
import logging

logger = logging.getLogger(__name__)

NEXT_DATA_RE = re.compile(
    r'<script id="__NEXT_DATA__" type="application/json"[^>]*>(.+?)</script>',
    re.DOTALL
)

LISTING_KEYS = ("data", "projects", "items")


def key_variants(key: str) -> List[str]:
    """snake_case -> [snake_case, camelCase, PascalCase]"""
    parts = key.split("_")
    camel = parts[0] + "".join(p.capitalize() for p in parts[1:])
    pascal = "".join(p.capitalize() for p in parts)
    variants = [key]
    for variant in (camel, pascal):
        if variant not in variants:
            variants.append(variant)
    return variants


def dotted_get(data: Any, path: str) -> Any:
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current


@dataclass
class FetchResult:
    """Outcome of fetching one id: a record, a skip, or an error."""
    item_id: int
    record: Optional[ProjectRecord] = None
    raw: Optional[Dict[str, Any]] = None
    fields: Optional[Dict[str, Any]] = None
    error: Optional[Exception] = None

    @property
    def skipped(self) -> bool:
        return self.record is None and self.error is None


class FetchStrategy(ABC):
    """
    Capability interface: ``validate``, ``extract``, ``transform``, ``unique_field``.

    Subclasses implement ``validate`` and ``map_fields``; ``transform``
    builds the canonical record from the mapped fields.

    Attributes:
        code: Source code this strategy is registered under
        unique_field: Canonical identity field used by the upsert engine
        alternate_endpoints: Base URLs tried (as ``{endpoint}/{id}``) when
            the primary endpoint is unavailable
    """

    code: str = ""
    unique_field: str = "external_id"
    alternate_endpoints: tuple = ()

    def __init__(
        self,
        source: ScraperSource,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        retry_delay: Optional[float] = None,
        rate_limit_cooldown: Optional[float] = None
    ):
        self.source = source
        self.client_factory = client_factory or self._default_client
        self.sleep = sleep or asyncio.sleep
        self.max_retries = source.retry_attempts or settings.MAX_RETRIES
        self.timeout = float(source.timeout or settings.REQUEST_TIMEOUT_SECONDS)
        self.retry_delay = settings.RETRY_DELAY_SECONDS if retry_delay is None else retry_delay
        self.rate_limit_cooldown = (
            rate_limit_cooldown
            if rate_limit_cooldown is not None
            else float(source.setting("rate_limit_delay", settings.RATE_LIMIT_COOLDOWN_SECONDS))
        )
        self.headers = {"User-Agent": settings.USER_AGENT, "Accept": "application/json"}
        self.headers.update(source.request_headers())
        self._preferred_endpoints: List[str] = []

    def _default_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)

    # ------------------------------------------------------------------
    # Capability interface
    # ------------------------------------------------------------------

    @abstractmethod
    def validate(self, raw: Dict[str, Any]) -> bool:
        """Minimal identity signal (an id or a name) under any accepted shape"""

    @abstractmethod
    def map_fields(self, raw: Dict[str, Any], item_id: Optional[int] = None) -> Dict[str, Any]:
        """Map a validated raw payload onto canonical field names"""

    def build_record(self, fields: Dict[str, Any]) -> ProjectRecord:
        """
        Raises:
            ValidationError: the fields do not form a valid canonical record
        """
        try:
            return ProjectRecord(**fields)
        except PydanticValidationError as e:
            item_id = fields.get("external_id")
            raise ValidationError(
                f"Invalid record for {self.source.code} id {item_id}",
                context={"source": self.source.code, "item_id": item_id, "errors": str(e)[:500]},
                original_exception=e
            )

    def transform(self, raw: Dict[str, Any], item_id: Optional[int] = None) -> ProjectRecord:
        return self.build_record(self.map_fields(raw, item_id))

    def extract(self, response: httpx.Response) -> Dict[str, Any]:
        """
        Decode a response body: JSON first, then the ``__NEXT_DATA__``
        script tag of a server-rendered page (its ``props`` object).

        Raises:
            PayloadError: Neither form could be decoded
        """
        try:
            data = response.json()
            if isinstance(data, dict):
                return data
        except ValueError:
            pass
        embedded = self.extract_embedded(response.text)
        if embedded is None:
            raise PayloadError(
                "Response is neither JSON nor a page with embedded JSON",
                context={"body": response.text[:200]}
            )
        return embedded

    @staticmethod
    def extract_embedded(html: str) -> Optional[Dict[str, Any]]:
        match = NEXT_DATA_RE.search(html or "")
        if not match:
            return None
        try:
            data = json.loads(match.group(1))
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None
        return data.get("props", data)

    # ------------------------------------------------------------------
    # Field helpers
    # ------------------------------------------------------------------

    @staticmethod
    def unwrap(raw: Dict[str, Any]) -> Dict[str, Any]:
        """Return the project object from a flat or wrapped payload."""
        page_props = raw.get("pageProps")
        if isinstance(page_props, dict) and isinstance(page_props.get("project"), dict):
            return page_props["project"]
        for key in ("project", "data"):
            if isinstance(raw.get(key), dict):
                return raw[key]
        return raw

    def pick(self, data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
        """
        First non-empty value among ``keys``; each key is tried as given,
        in camelCase and in PascalCase. A configured field mapping for the
        first key takes precedence.
        """
        mapping = self.source.field_mapping or {}
        if keys and keys[0] in mapping:
            mapped = dotted_get(data, mapping[keys[0]])
            if mapped not in (None, ""):
                return mapped
        for key in keys:
            for variant in key_variants(key):
                value = data.get(variant)
                if value not in (None, ""):
                    return value
        return default

    def has_identity(self, data: Dict[str, Any], *name_keys: str) -> bool:
        return self.pick(data, "id") is not None or self.pick(data, *name_keys) is not None

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    def use_endpoint(self, endpoint: str) -> None:
        """Prefer ``endpoint`` for fallbacks (set by the recovery engine)."""
        if endpoint in self._preferred_endpoints:
            self._preferred_endpoints.remove(endpoint)
        self._preferred_endpoints.insert(0, endpoint)

    def alternate_urls(self, item_id: int) -> List[str]:
        endpoints = self._preferred_endpoints + [
            e for e in self.alternate_endpoints if e not in self._preferred_endpoints
        ]
        return [f"{endpoint.rstrip('/')}/{item_id}" for endpoint in endpoints]

    def html_url(self, item_id: int) -> Optional[str]:
        """Server-rendered page embedding the record, if the source has one"""
        return None

    def listing_endpoints(self) -> List[str]:
        return list(self._preferred_endpoints) + [
            e for e in self.alternate_endpoints if e not in self._preferred_endpoints
        ]

    def listing_html_url(self) -> Optional[str]:
        return None

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    def _exhausted_error(
        self,
        url: str,
        item_id: Any,
        status: Optional[int],
        body: str,
        cause: Optional[Exception],
        retry_after: Optional[int] = None
    ) -> Exception:
        context = {
            "source": self.source.code,
            "url": url,
            "item_id": item_id,
            "attempts": self.max_retries,
        }
        if status is not None:
            context["status_code"] = status
        if status == 503 or "maintenance" in (body or "").lower():
            return MaintenanceError(f"{self.source.code} is under maintenance", context=context)
        if status == 429:
            return RateLimitError(f"Rate limited by {self.source.code}", context=context, retry_after=retry_after)
        if status in (401, 403):
            return AuthenticationError(f"HTTP {status} from {self.source.code}", context=context)
        if status is not None:
            context["response_body"] = (body or "")[:500]
            return APIExtractionError(f"HTTP {status} after {self.max_retries} attempts", context=context)
        return NetworkError(
            f"Request failed after {self.max_retries} attempts",
            context=context,
            original_exception=cause
        )

    async def _request_with_retry(self, client: httpx.AsyncClient, url: str, item_id: Any) -> Optional[Dict[str, Any]]:
        last_status: Optional[int] = None
        last_body = ""
        last_exception: Optional[Exception] = None
        retry_after: Optional[int] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                response = await client.get(url, headers=self.headers, timeout=self.timeout)
            except httpx.HTTPError as e:
                last_exception = e
                last_status = None
                logger.warning(f"Request error for {url} (attempt {attempt}/{self.max_retries}): {str(e)}")
                if attempt < self.max_retries:
                    await self.sleep(self.retry_delay * attempt)
                continue

            status = response.status_code

            if status == 200:
                try:
                    raw = self.extract(response)
                except PayloadError as e:
                    logger.warning(f"Undecodable body for {self.source.code} id {item_id}: {e.message}")
                    return None
                if not self.validate(raw):
                    logger.warning(f"Invalid data structure received for {self.source.code} id {item_id}")
                    return None
                return raw

            if status == 404:
                logger.debug(f"No data for {self.source.code} id {item_id}")
                return None

            last_status = status
            last_body = response.text[:500]

            if status == 429:
                header = response.headers.get("Retry-After")
                retry_after = int(header) if header and header.isdigit() else None
                cooldown = float(retry_after) if retry_after is not None else self.rate_limit_cooldown
                logger.warning(f"Rate limited by {self.source.code}. Cooling down {cooldown}s")
                await self.sleep(cooldown)
                continue

            logger.warning(
                f"HTTP {status}: {response.reason_phrase} for {url} "
                f"(attempt {attempt}/{self.max_retries})"
            )
            if attempt < self.max_retries:
                await self.sleep(self.retry_delay * attempt)

        raise self._exhausted_error(url, item_id, last_status, last_body, last_exception, retry_after)

    async def fetch_fallbacks(self, client: httpx.AsyncClient, item_id: int) -> Optional[Dict[str, Any]]:
        for url in self.alternate_urls(item_id):
            raw = await self.try_endpoint(client, url)
            if raw is not None:
                logger.info(f"Fetched {self.source.code} id {item_id} from alternate endpoint {url}")
                return raw

        url = self.html_url(item_id)
        if url:
            raw = await self.try_endpoint(client, url, html=True)
            if raw is not None:
                logger.info(f"Fetched {self.source.code} id {item_id} from embedded page data {url}")
                return raw
        return None

    async def try_endpoint(self, client: httpx.AsyncClient, url: str, html: bool = False) -> Optional[Dict[str, Any]]:
        try:
            response = await client.get(url, headers=self.headers, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.debug(f"Fallback {url} failed: {str(e)}")
            return None
        if response.status_code != 200:
            return None
        if html:
            raw = self.extract_embedded(response.text)
        else:
            try:
                raw = self.extract(response)
            except PayloadError:
                return None
        if raw is None or not self.validate(raw):
            return None
        return raw

    async def fetch_item(self, client: httpx.AsyncClient, item_id: int) -> Optional[Dict[str, Any]]:
        """
        Fetch and validate one raw payload.

        Returns:
            The raw payload, or None for "no data" (404 or invalid structure)

        Raises:
            MaintenanceError, NetworkError, RateLimitError, APIExtractionError:
                the item could not be fetched from any endpoint
        """
        url = self.source.build_url(item_id)
        try:
            return await self._request_with_retry(client, url, item_id)
        except APIExtractionError as e:
            if e.status_code is not None and e.status_code < 500:
                raise
            raw = await self.fetch_fallbacks(client, item_id)
            if raw is None:
                raise
            return raw

    async def _fetch_one(self, client: httpx.AsyncClient, item_id: int) -> FetchResult:
        raw = None
        fields = None
        try:
            raw = await self.fetch_item(client, item_id)
            if raw is None:
                return FetchResult(item_id)
            fields = self.map_fields(raw, item_id)
            return FetchResult(item_id, record=self.build_record(fields), raw=raw, fields=fields)
        except Exception as e:
            logger.warning(f"Fetch failed for {self.source.code} id {item_id}: {str(e)}")
            return FetchResult(item_id, raw=raw, fields=fields, error=e)

    async def fetch_batch(self, start: int, end: int) -> AsyncIterator[FetchResult]:
        """Yield one FetchResult per id in ``[start, end]``, sequentially."""
        async with self.client_factory() as client:
            for item_id in range(start, end + 1):
                yield await self._fetch_one(client, item_id)

    async def refetch(self, item_id: int) -> FetchResult:
        """Single-id fetch used by the runner after a successful recovery."""
        async with self.client_factory() as client:
            return await self._fetch_one(client, item_id)

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    @staticmethod
    def unwrap_listing(data: Any) -> Optional[List[Dict[str, Any]]]:
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            for key in LISTING_KEYS:
                if isinstance(data.get(key), list):
                    return data[key]
        return None

    async def fetch_listing(self, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        """
        Page through the source's listing API, trying each endpoint in order
        and finally the listing page's embedded JSON.

        Raises:
            MaintenanceError: every endpoint reported maintenance / 503
            APIExtractionError: no endpoint returned a usable listing
        """
        params = {"limit": limit, "offset": offset, "sort": "updatedAt:desc"}
        maintenance = False

        async with self.client_factory() as client:
            for endpoint in self.listing_endpoints():
                try:
                    response = await client.get(endpoint, params=params, headers=self.headers, timeout=self.timeout)
                except httpx.HTTPError as e:
                    logger.debug(f"Listing endpoint {endpoint} failed: {str(e)}")
                    continue

                if response.status_code == 503 or "maintenance" in response.text.lower():
                    maintenance = True
                    logger.warning(f"Listing endpoint {endpoint} is under maintenance")
                    continue
                if response.status_code != 200:
                    continue
                try:
                    records = self.unwrap_listing(response.json())
                except ValueError:
                    continue
                if records is not None:
                    logger.info(f"Fetched {len(records)} listing records from {endpoint}")
                    return records

            html_url = self.listing_html_url()
            if html_url:
                try:
                    response = await client.get(html_url, headers=self.headers, timeout=self.timeout)
                    props = self.extract_embedded(response.text) if response.status_code == 200 else None
                except httpx.HTTPError:
                    props = None
                projects = dotted_get(props or {}, "pageProps.projects")
                if isinstance(projects, list):
                    logger.info(f"Fetched {len(projects)} listing records from embedded page data")
                    return projects

        context = {"source": self.source.code, "limit": limit, "offset": offset}
        if maintenance:
            context["status_code"] = 503
            raise MaintenanceError(f"{self.source.code} listing is under maintenance", context=context)
        raise APIExtractionError(f"No listing endpoint answered for {self.source.code}", context=context)
