"""DataForSEO Google Maps SERP client used as the geo-grid ranking provider."""

import asyncio
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol

import httpx

from geogrid.utils.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

DATAFORSEO_BASE_URL = "https://api.dataforseo.com/v3"
MAPS_LIVE_ENDPOINT = "/serp/google/maps/live/advanced"

STATUS_OK = 20000
STATUS_INVALID_REQUEST = 40001
STATUS_AUTH_ERROR = 40100
STATUS_PAYMENT_REQUIRED = 40200
STATUS_RATE_LIMIT_EXCEEDED = 40202
STATUS_INTERNAL_ERROR = 50000


class ConfigurationError(RuntimeError):
    """Raised when required provider settings are missing."""


class ErrorCategory(str, Enum):
    """How a provider failure should be handled by the caller."""

    RETRYABLE = "retryable"
    PERMANENT = "permanent"
    QUOTA = "quota"


class DataForSEOError(Exception):
    """A failed DataForSEO request, classified for retry decisions."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        category: Optional[ErrorCategory] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.category = category or classify_error(message, status_code)

    @property
    def retryable(self) -> bool:
        return self.category is ErrorCategory.RETRYABLE


_MESSAGE_PATTERNS: tuple[tuple[ErrorCategory, tuple[str, ...]], ...] = (
    (ErrorCategory.RETRYABLE, ("rate limit", "too many requests", "429")),
    (ErrorCategory.QUOTA, ("payment", "quota", "balance", "insufficient", "402")),
    (ErrorCategory.PERMANENT, ("unauthorized", "authentication", "invalid credentials", "401")),
    (ErrorCategory.PERMANENT, ("invalid", "malformed", "bad request", "not found", "does not exist")),
)


def classify_error(message: str, status_code: Optional[int] = None) -> ErrorCategory:
    """Classify a failure by status code first, then by message text.

    Handles both DataForSEO's five-digit status codes and plain HTTP
    status codes. Unknown failures default to retryable.
    """
    if status_code is not None:
        if status_code == STATUS_RATE_LIMIT_EXCEEDED:
            return ErrorCategory.RETRYABLE
        if status_code == STATUS_PAYMENT_REQUIRED:
            return ErrorCategory.QUOTA
        if 40000 <= status_code < 50000:
            return ErrorCategory.PERMANENT
        if status_code >= STATUS_INTERNAL_ERROR:
            return ErrorCategory.RETRYABLE
        if status_code == 429:
            return ErrorCategory.RETRYABLE
        if status_code == 402:
            return ErrorCategory.QUOTA
        if 400 <= status_code < 500:
            return ErrorCategory.PERMANENT
        if 500 <= status_code < 600:
            return ErrorCategory.RETRYABLE

    lowered = (message or "").lower()
    for category, patterns in _MESSAGE_PATTERNS:
        if any(p in lowered for p in patterns):
            return category
    return ErrorCategory.RETRYABLE


@dataclass(frozen=True)
class MapsListing:
    """One ranked business listing returned for a maps query."""

    title: str
    rank_absolute: int
    cid: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    category: Optional[str] = None


class RankedSearch(Protocol):
    """Capability the scanner needs: ranked listings for a keyword at a point."""

    async def google_maps_search(
        self,
        keyword: str,
        coordinates: str,
        depth: int = 20,
    ) -> list[MapsListing]:
        ...


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def parse_maps_items(payload: dict[str, Any]) -> list[MapsListing]:
    """Extract ``maps_search`` items from a live/advanced response body."""
    tasks = payload.get("tasks") or []
    if not tasks:
        return []
    results = tasks[0].get("result") or []
    if not results:
        return []

    listings: list[MapsListing] = []
    for item in results[0].get("items") or []:
        if not isinstance(item, dict) or item.get("type") != "maps_search":
            continue
        title = (item.get("title") or "").strip()
        rank = _to_int(item.get("rank_absolute"))
        if not title or rank is None:
            continue
        rating = item.get("rating") or {}
        cid = item.get("cid")
        listings.append(MapsListing(
            title=title,
            rank_absolute=rank,
            cid=str(cid) if cid is not None else None,
            rating=_to_float(rating.get("value")),
            review_count=_to_int(rating.get("votes_count")),
            address=item.get("address"),
            phone=item.get("phone"),
            category=item.get("category"),
        ))
    return listings


class DataForSEOClient:
    """Async client for DataForSEO's Google Maps live SERP endpoint.

    One instance may be shared by concurrent scans; its rate limiter
    arbitrates the account-wide request budget.

    Usage::

        client = DataForSEOClient()
        listings = await client.google_maps_search(
            "dentist", "32.7357000,-97.0891000,14", depth=20,
        )
    """

    def __init__(
        self,
        login: Optional[str] = None,
        password: Optional[str] = None,
        base_url: str = DATAFORSEO_BASE_URL,
        timeout: float = 60.0,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        rate_limiter: Optional[RateLimiter] = None,
        language_code: str = "en",
        device: str = "desktop",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._login = login or os.getenv("DATAFORSEO_LOGIN", "")
        self._password = password or os.getenv("DATAFORSEO_PASSWORD", "")
        if not self._login or not self._password:
            raise ConfigurationError(
                "DATAFORSEO_LOGIN and DATAFORSEO_PASSWORD must be set to run grid scans."
            )
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._limiter = rate_limiter or RateLimiter(name="dataforseo")
        self._language_code = language_code
        self._device = device
        self._transport = transport
        self.total_requests = 0
        self.total_cost_usd = 0.0

    async def google_maps_search(
        self,
        keyword: str,
        coordinates: str,
        depth: int = 20,
    ) -> list[MapsListing]:
        """Return ranked map listings for ``keyword`` at ``"lat,lng,zoom"``.

        Retryable failures are retried with exponential backoff; the last
        failure is raised as DataForSEOError.
        """
        task: dict[str, Any] = {
            "keyword": keyword,
            "language_code": self._language_code,
            "device": self._device,
            "depth": depth,
            # location_coordinate excludes location_code/location_name, and
            # search_places mode skews local-intent queries at a coordinate.
            "location_coordinate": coordinates,
            "search_places": False,
        }

        for attempt in range(self._max_retries + 1):
            try:
                payload = await self._post(MAPS_LIVE_ENDPOINT, [task])
                return parse_maps_items(payload)
            except DataForSEOError as exc:
                if not exc.retryable or attempt >= self._max_retries:
                    logger.error(
                        "DataForSEO maps search failed for %r at %s (%s): %s",
                        keyword, coordinates, exc.category.value, exc,
                    )
                    raise
                wait = self._retry_base_delay * (2 ** attempt)
                logger.warning(
                    "DataForSEO attempt %d/%d failed (%s). Retrying in %.1fs...",
                    attempt + 1, self._max_retries + 1, exc, wait,
                )
                await asyncio.sleep(wait)
        return []

    async def _post(self, endpoint: str, body: list[dict[str, Any]]) -> dict[str, Any]:
        """POST one request and raise DataForSEOError on any failure."""
        await self._limiter.acquire()
        url = self._base_url + endpoint
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                auth=(self._login, self._password),
                transport=self._transport,
            ) as client:
                response = await client.post(url, json=body)
        except httpx.TimeoutException as exc:
            raise DataForSEOError(
                f"Request timed out: {exc}", category=ErrorCategory.RETRYABLE
            ) from exc
        except httpx.TransportError as exc:
            raise DataForSEOError(
                f"Network error: {exc}", category=ErrorCategory.RETRYABLE
            ) from exc

        self.total_requests += 1
        if response.status_code >= 400:
            raise DataForSEOError(
                f"HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise DataForSEOError(
                "Malformed JSON response", category=ErrorCategory.RETRYABLE
            ) from exc

        self.total_cost_usd += _to_float(payload.get("cost")) or 0.0

        status = _to_int(payload.get("status_code"))
        if status != STATUS_OK:
            raise DataForSEOError(
                payload.get("status_message") or "Unknown DataForSEO error",
                status_code=status,
            )

        tasks = payload.get("tasks") or []
        if tasks:
            task_status = _to_int(tasks[0].get("status_code"))
            if task_status != STATUS_OK:
                raise DataForSEOError(
                    tasks[0].get("status_message") or "Task failed",
                    status_code=task_status,
                )

        logger.debug(
            "DataForSEO %s ok (cost=%s, total_requests=%d)",
            endpoint, payload.get("cost"), self.total_requests,
        )
        return payload

    def get_usage_stats(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "total_cost_usd": round(self.total_cost_usd, 4),
        }
