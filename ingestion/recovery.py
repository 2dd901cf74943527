"""
Error classification and bounded recovery for per-record failures.

The runner hands every per-record exception to ``RecoveryEngine.handle``.
The error is classified, then the tactics registered for its class are
tried in order until one succeeds. The returned ``RecoveryResult`` tells
the runner what to do next:

- ``retry``: re-run the failed step once
- ``skip``: count the item as skipped
- ``use_data``: build the record from the replacement fields in ``data``
- ``failed``: count the item as an error
"""

from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Tuple
import asyncio
import re
import time
import httpx
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from ingestion.strategies.base import FetchStrategy
from core.config import settings
from core.exceptions import (
    IngestionException,
    LoadError,
    MaintenanceError,
    NetworkError,
    RateLimitError,
    ValidationError,
)
import logging

logger = logging.getLogger(__name__)

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")

# Last-known canonical fields kept for use_cached_data
CACHE_CAPACITY = 1000


class ErrorType(str, Enum):
    NETWORK = "network"
    NOT_FOUND = "not_found"
    RATE_LIMIT = "rate_limit"
    FORBIDDEN = "forbidden"
    CLIENT_ERROR = "client_error"
    SERVER_ERROR = "server_error"
    MAINTENANCE = "maintenance"
    DATABASE = "database"
    NULL_CONSTRAINT = "database.null_constraint"
    DUPLICATE = "database.duplicate"
    FOREIGN_KEY = "database.foreign_key"
    VALIDATION = "validation"
    UNKNOWN = "unknown"

    @property
    def is_database(self) -> bool:
        return self.value.startswith("database")


class RecoveryAction(str, Enum):
    RETRY = "retry"
    SKIP = "skip"
    USE_DATA = "use_data"
    FAILED = "failed"


@dataclass
class RecoveryResult:
    error_type: ErrorType
    recovered: bool
    action: RecoveryAction
    tactic: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


# Tried in order; the first tactic that succeeds wins
TACTICS: Dict[ErrorType, Tuple[str, ...]] = {
    ErrorType.NETWORK: ("wait_and_retry", "use_cached_data", "switch_endpoint"),
    ErrorType.MAINTENANCE: ("wait_for_online", "use_alternative_source", "notify_admin"),
    ErrorType.NOT_FOUND: ("check_alternative_endpoints", "use_web_scraping", "skip_item"),
    ErrorType.RATE_LIMIT: ("exponential_backoff", "reduce_batch_size", "switch_api_key"),
    ErrorType.NULL_CONSTRAINT: ("provide_defaults", "generate_placeholder"),
    ErrorType.DUPLICATE: ("update_existing", "skip_item"),
    ErrorType.VALIDATION: ("clean_data", "apply_transformations", "use_fallback_values"),
}


def _chain(error: BaseException) -> Iterator[BaseException]:
    seen = set()
    current: Optional[BaseException] = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


class ErrorClassifier:
    """Map an exception (and its causes) to an ``ErrorType``."""

    @staticmethod
    def status_code(error: BaseException) -> Optional[int]:
        for exc in _chain(error):
            status = getattr(exc, "status_code", None)
            if isinstance(status, int):
                return status
            response = getattr(exc, "response", None)
            if isinstance(response, httpx.Response):
                return response.status_code
        return None

    @staticmethod
    def headline(error: BaseException) -> str:
        """First line of an error message, lowercased"""
        if isinstance(error, IngestionException):
            return error.message.lower()
        lines = str(error).splitlines()
        return lines[0].lower() if lines else ""

    def _database_type(self, chain: List[BaseException]) -> ErrorType:
        message = " ".join(self.headline(exc) for exc in chain)
        if "not null" in message or "null value" in message:
            return ErrorType.NULL_CONSTRAINT
        if "duplicate" in message or "unique constraint" in message:
            return ErrorType.DUPLICATE
        if "foreign key" in message:
            return ErrorType.FOREIGN_KEY
        if any(isinstance(exc, IntegrityError) for exc in chain):
            return ErrorType.DUPLICATE
        return ErrorType.DATABASE

    def classify(self, error: BaseException) -> ErrorType:
        chain = list(_chain(error))
        message = " ".join(str(exc) for exc in chain).lower()
        status = self.status_code(error)

        def raised(*types) -> bool:
            return any(isinstance(exc, types) for exc in chain)

        # Typed signals first; message text is only trusted for untyped errors
        if raised(MaintenanceError) or status == 503:
            return ErrorType.MAINTENANCE
        if raised(SQLAlchemyError, LoadError):
            return self._database_type(chain)
        if raised(ValidationError, PydanticValidationError):
            return ErrorType.VALIDATION
        if raised(RateLimitError) or status == 429:
            return ErrorType.RATE_LIMIT
        if status is not None and "maintenance" in message:
            return ErrorType.MAINTENANCE
        if raised(NetworkError, httpx.TransportError, asyncio.TimeoutError):
            return ErrorType.NETWORK

        if status is not None:
            if status == 404:
                return ErrorType.NOT_FOUND
            if status == 403:
                return ErrorType.FORBIDDEN
            if 400 <= status < 500:
                return ErrorType.CLIENT_ERROR
            if status >= 500:
                return ErrorType.SERVER_ERROR

        if "maintenance" in message:
            return ErrorType.MAINTENANCE
        if "timeout" in message or "timed out" in message or "connection" in message:
            return ErrorType.NETWORK
        if "invalid" in message or "validation" in message:
            return ErrorType.VALIDATION
        return ErrorType.UNKNOWN


class RecoveryEngine:
    """
    Bounded recovery tactics per error class.

    Every wait is bounded and goes through the injectable ``sleep``; every
    outbound check goes through the injectable ``client_factory``. Tactics that only
    skip the item always succeed; escalation to an operator always fails.

    Args:
        strategy: Fetch strategy of the running job (alternate endpoints,
            fallbacks, headers)
        classifier: ErrorClassifier instance
        sleep: Async sleep used by every wait tactic
        client_factory: Returns an ``httpx.AsyncClient`` for endpoint checks
        max_retries: Attempts after which wait-and-retry tactics give up
    """

    def __init__(
        self,
        strategy: Optional[FetchStrategy] = None,
        classifier: Optional[ErrorClassifier] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
        max_retries: Optional[int] = None,
        maintenance_max_wait: Optional[float] = None,
        maintenance_poll: Optional[float] = None,
        api_keys: Optional[List[str]] = None
    ):
        self.strategy = strategy
        self.classifier = classifier or ErrorClassifier()
        self.sleep = sleep or asyncio.sleep
        self.client_factory = client_factory or (
            strategy.client_factory if strategy else (lambda: httpx.AsyncClient(timeout=10.0))
        )
        self.max_retries = max_retries or settings.MAX_RETRIES
        self.maintenance_max_wait = (
            settings.MAINTENANCE_MAX_WAIT_SECONDS if maintenance_max_wait is None else maintenance_max_wait
        )
        self.maintenance_poll = (
            settings.MAINTENANCE_POLL_SECONDS if maintenance_poll is None else maintenance_poll
        )
        self.api_keys = list(settings.API_KEYS if api_keys is None else api_keys)

        self.log: deque = deque(maxlen=settings.RECOVERY_LOG_CAPACITY)
        self.batch_size: Optional[int] = None
        self._cache: Dict[Any, Dict[str, Any]] = {}
        self._active_endpoint: Optional[Tuple[str, float]] = None
        self._key_index = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def remember(self, item_id: Any, fields: Dict[str, Any]) -> None:
        """Keep the last good canonical fields of an item for ``use_cached_data``."""
        self._cache.pop(item_id, None)
        self._cache[item_id] = dict(fields)
        if len(self._cache) > CACHE_CAPACITY:
            self._cache.pop(next(iter(self._cache)))

    @property
    def active_endpoint(self) -> Optional[str]:
        if self._active_endpoint is None:
            return None
        endpoint, expires_at = self._active_endpoint
        if time.monotonic() >= expires_at:
            self._active_endpoint = None
            return None
        return endpoint

    def error_stats(self) -> Dict[str, int]:
        stats: Dict[str, int] = {}
        for entry in self.log:
            stats[entry["type"]] = stats.get(entry["type"], 0) + 1
        return stats

    def clear_log(self) -> None:
        self.log.clear()

    async def handle(
        self,
        error: BaseException,
        item_id: Any = None,
        data: Optional[Dict[str, Any]] = None,
        attempt: int = 1,
        batch_size: Optional[int] = None
    ) -> RecoveryResult:
        """
        Classify ``error`` and try its tactics in order.

        Args:
            error: The caught exception
            item_id: Upstream id of the failing item
            data: Canonical fields of the failing record, when available
            attempt: How many times this item has been attempted
            batch_size: Current chunk size of the job

        Returns:
            RecoveryResult; ``recovered`` is False when no tactic succeeded
        """
        error_type = self.classifier.classify(error)
        context = {
            "item_id": item_id,
            "data": data,
            "attempt": attempt,
            "batch_size": batch_size,
            "retry_after": getattr(error, "retry_after", None),
        }
        self._log(error_type, error, item_id)

        for tactic in TACTICS.get(error_type, ()):
            outcome = await getattr(self, f"_{tactic}")(context)
            if outcome is not None:
                action, replacement = outcome
                logger.info(f"Recovered {error_type.value} error for id {item_id} using {tactic} ({action.value})")
                return RecoveryResult(error_type, True, action, tactic, replacement)

        logger.warning(f"No recovery tactic succeeded for {error_type.value} error on id {item_id}")
        return RecoveryResult(error_type, False, RecoveryAction.FAILED)

    def _log(self, error_type: ErrorType, error: BaseException, item_id: Any) -> None:
        self.log.append({
            "type": error_type.value,
            "message": str(error)[:500],
            "item_id": item_id,
            "timestamp": datetime.utcnow().isoformat(),
        })
        logger.error(f"Ingestion error [{error_type.value}] for id {item_id}: {str(error)[:200]}")

    async def _try_get(self, client: httpx.AsyncClient, url: str) -> Optional[httpx.Response]:
        try:
            return await client.get(url, timeout=5.0)
        except httpx.HTTPError as e:
            logger.debug(f"Check of {url} failed: {str(e)}")
            return None

    def _to_fields(self, raw: Optional[Dict[str, Any]], item_id: Any) -> Optional[Dict[str, Any]]:
        if raw is None or self.strategy is None:
            return None
        return self.strategy.map_fields(raw, item_id)

    # ------------------------------------------------------------------
    # network
    # ------------------------------------------------------------------

    async def _wait_and_retry(self, context: Dict[str, Any]):
        attempt = context["attempt"]
        if attempt >= self.max_retries:
            return None
        await self.sleep(min(attempt * 5, 30))
        return RecoveryAction.RETRY, None

    async def _use_cached_data(self, context: Dict[str, Any]):
        cached = self._cache.get(context["item_id"])
        if cached is None:
            return None
        logger.info(f"Using cached data for id {context['item_id']}")
        return RecoveryAction.USE_DATA, dict(cached)

    async def _switch_endpoint(self, context: Dict[str, Any]):
        if self.strategy is None:
            return None
        async with self.client_factory() as client:
            for endpoint in self.strategy.alternate_endpoints:
                response = await self._try_get(client, endpoint)
                if response is not None and response.status_code == 200:
                    self._active_endpoint = (endpoint, time.monotonic() + settings.ENDPOINT_CACHE_TTL_SECONDS)
                    self.strategy.use_endpoint(endpoint)
                    logger.info(f"Switched {self.strategy.source.code} to endpoint {endpoint}")
                    return RecoveryAction.RETRY, None
        return None

    # ------------------------------------------------------------------
    # maintenance
    # ------------------------------------------------------------------

    async def _wait_for_online(self, context: Dict[str, Any]):
        if self.strategy is None:
            return None
        url = self.strategy.source.base_url
        waited = 0.0
        async with self.client_factory() as client:
            while waited < self.maintenance_max_wait:
                response = await self._try_get(client, url)
                if (
                    response is not None
                    and response.status_code == 200
                    and "maintenance" not in response.text.lower()
                ):
                    return RecoveryAction.RETRY, None
                await self.sleep(self.maintenance_poll)
                waited += self.maintenance_poll
        return None

    async def _use_alternative_source(self, context: Dict[str, Any]):
        if self.strategy is None or context["item_id"] is None:
            return None
        async with self.client_factory() as client:
            raw = await self.strategy.fetch_fallbacks(client, context["item_id"])
        fields = self._to_fields(raw, context["item_id"])
        if fields is None:
            return None
        return RecoveryAction.USE_DATA, fields

    async def _notify_admin(self, context: Dict[str, Any]):
        source = self.strategy.source.code if self.strategy else "unknown"
        logger.critical(
            f"Source {source} requires operator attention "
            f"(item {context['item_id']}, attempt {context['attempt']})"
        )
        return None

    # ------------------------------------------------------------------
    # not_found
    # ------------------------------------------------------------------

    async def _check_alternative_endpoints(self, context: Dict[str, Any]):
        if self.strategy is None or context["item_id"] is None:
            return None
        async with self.client_factory() as client:
            for url in self.strategy.alternate_urls(context["item_id"]):
                raw = await self.strategy.try_endpoint(client, url)
                if raw is not None:
                    return RecoveryAction.USE_DATA, self._to_fields(raw, context["item_id"])
        return None

    async def _use_web_scraping(self, context: Dict[str, Any]):
        if self.strategy is None or context["item_id"] is None:
            return None
        url = self.strategy.html_url(context["item_id"])
        if not url:
            return None
        async with self.client_factory() as client:
            raw = await self.strategy.try_endpoint(client, url, html=True)
        if raw is None:
            return None
        return RecoveryAction.USE_DATA, self._to_fields(raw, context["item_id"])

    async def _skip_item(self, context: Dict[str, Any]):
        return RecoveryAction.SKIP, None

    # ------------------------------------------------------------------
    # rate_limit
    # ------------------------------------------------------------------

    async def _exponential_backoff(self, context: Dict[str, Any]):
        attempt = context["attempt"]
        if attempt >= self.max_retries:
            return None
        await self.sleep(max(2 ** attempt, context["retry_after"] or 0))
        return RecoveryAction.RETRY, None

    async def _reduce_batch_size(self, context: Dict[str, Any]):
        current = self.batch_size or context["batch_size"] or 100
        self.batch_size = min(current, max(10, current // 2))
        logger.info(f"Reducing batch size from {current} to {self.batch_size}")
        return RecoveryAction.SKIP, None

    async def _switch_api_key(self, context: Dict[str, Any]):
        if self.strategy is None or not self.api_keys:
            return None
        key = self.api_keys[self._key_index % len(self.api_keys)]
        self._key_index += 1
        self.strategy.headers["Authorization"] = f"Bearer {key}"
        return RecoveryAction.RETRY, None

    # ------------------------------------------------------------------
    # database
    # ------------------------------------------------------------------

    def _source_label(self, data: Dict[str, Any]) -> str:
        source = data.get("external_source") or (self.strategy.source.code if self.strategy else "")
        return str(source).upper()

    async def _provide_defaults(self, context: Dict[str, Any]):
        data = context["data"]
        if data is None:
            return None
        fixed = dict(data)
        if not fixed.get("project_name"):
            fixed["project_name"] = f"{self._source_label(fixed)} Project {context['item_id']}"
        if not fixed.get("status"):
            fixed["status"] = "draft"
        if fixed.get("cost") is None:
            fixed["cost"] = 0
        return RecoveryAction.USE_DATA, fixed

    async def _generate_placeholder(self, context: Dict[str, Any]):
        data = context["data"]
        if data is None or data.get("project_name"):
            return None
        fixed = dict(data)
        fixed["project_name"] = f"Placeholder: {fixed.get('project_code') or context['item_id']}"
        metadata = dict(fixed.get("metadata") or fixed.get("extra_metadata") or {})
        metadata["is_placeholder"] = True
        fixed.pop("extra_metadata", None)
        fixed["metadata"] = metadata
        return RecoveryAction.USE_DATA, fixed

    async def _update_existing(self, context: Dict[str, Any]):
        # The upsert engine matches the now-existing row on the next attempt
        if context["data"] is None or context["attempt"] > 1:
            return None
        return RecoveryAction.RETRY, None

    # ------------------------------------------------------------------
    # validation
    # ------------------------------------------------------------------

    @classmethod
    def _clean(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.replace("\x00", "").strip()
        if isinstance(value, dict):
            return {k: cls._clean(v) for k, v in value.items()}
        if isinstance(value, list):
            return [cls._clean(v) for v in value]
        return value

    async def _clean_data(self, context: Dict[str, Any]):
        data = context["data"]
        if data is None:
            return None
        cleaned = self._clean(data)
        if cleaned == data:
            return None
        return RecoveryAction.USE_DATA, cleaned

    async def _apply_transformations(self, context: Dict[str, Any]):
        data = context["data"]
        if data is None:
            return None
        fixed = dict(data)
        changed = False
        for key in ("date_started", "actual_date_started", "contract_completion_date",
                    "actual_contract_completion_date", "as_of_date", "last_updated_project_cost"):
            value = fixed.get(key)
            if isinstance(value, str) and not _ISO_DATE_RE.match(value):
                fixed[key] = None
                changed = True
        for key, limit in (("latitude", 90.0), ("longitude", 180.0)):
            value = fixed.get(key)
            if value is None:
                continue
            try:
                coord = float(value)
            except (TypeError, ValueError):
                coord = None
            if coord is None or not -limit <= coord <= limit:
                fixed[key] = None
                changed = True
        if not changed:
            return None
        return RecoveryAction.USE_DATA, fixed

    async def _use_fallback_values(self, context: Dict[str, Any]):
        data = context["data"]
        if data is None:
            return None
        fixed = dict(data)
        if not fixed.get("external_id") and context["item_id"] is not None:
            fixed["external_id"] = str(context["item_id"])
        if not fixed.get("project_name"):
            fixed["project_name"] = f"{self._source_label(fixed)} Project {context['item_id']}"
        if fixed == data:
            return None
        return RecoveryAction.USE_DATA, fixed
