"""
HTTPX client for the CRM REST API.

Builds authenticated requests, applies the rate budget and response
cache, retries transient failures with exponential backoff + jitter, and
normalizes every outcome into an ApiResponse. Ordinary call failures are
returned, not raised; only configuration errors raise.
"""

import random
import time
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

import httpx
import structlog

from .cache import ResponseCache
from .errors import (
    ConfigurationError,
    CrmSyncError,
    RateLimitExceeded,
    RemoteApiError,
    TransportError,
)
from .log_config import log_api_call
from .rate_limit import RateBudget

# Retryable status codes (rate limited + 5xx server errors)
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

# Failures where the request never reached the server
CONNECT_EXCEPTIONS = (
    httpx.ConnectTimeout,
    httpx.ConnectError,
)

# Retryable exceptions for idempotent reads
RETRYABLE_EXCEPTIONS = CONNECT_EXCEPTIONS + (
    httpx.ReadTimeout,
    httpx.RemoteProtocolError,
)

MUTATING_METHODS = {"POST", "PUT", "DELETE"}
SUPPORTED_METHODS = {"GET"} | MUTATING_METHODS

# Rarely-changing reference lists, cached with the taxonomy TTL
TAXONOMY_ENDPOINTS = {
    "payment_types.json",
    "funds.json",
    "campaigns.json",
    "gift_types.json",
    "gift_categories.json",
    "relationship_types",
    "membership_levels",
}


def calculate_backoff_delay(attempt: int, base_delay: float = 0.5, max_delay: float = 60.0) -> float:
    """
    Calculate exponential backoff delay with jitter.

    Args:
        attempt: Current retry attempt (0-based)
        base_delay: Base delay in seconds
        max_delay: Maximum delay in seconds

    Returns:
        Delay in seconds with jitter applied
    """
    delay = base_delay * (2 ** attempt)
    delay = min(delay, max_delay)

    # Jitter (0-20% of delay)
    jitter = random.uniform(0, 0.2 * delay)
    return delay + jitter


@dataclass(frozen=True)
class ApiResponse:
    """
    Normalized outcome of a remote call.

    ``failure`` holds the typed exception for unsuccessful calls so that
    callers can inspect ``retryable`` or re-raise it unchanged.
    """
    success: bool
    http_status: int = 0
    data: Any = None
    error: Optional[str] = None
    failure: Optional[CrmSyncError] = None
    from_cache: bool = False

    @classmethod
    def ok(cls, http_status: int, data: Any) -> "ApiResponse":
        return cls(success=True, http_status=http_status, data=data)

    @classmethod
    def fail(cls, failure: CrmSyncError, http_status: int = 0) -> "ApiResponse":
        return cls(
            success=False,
            http_status=http_status,
            error=str(failure),
            failure=failure,
        )

    @property
    def items(self) -> List[Dict[str, Any]]:
        """Response body as an ordered list of records."""
        return normalize_items(self.data) if self.success else []

    @property
    def record_id(self) -> Any:
        """Id of the created/returned record, if the body carries one."""
        if self.success and isinstance(self.data, dict):
            return self.data.get("id")
        return None

    def raise_for_failure(self) -> "ApiResponse":
        """Raise the carried failure, or return self when successful."""
        if not self.success:
            raise self.failure or RemoteApiError(self.error or "Unknown error", self.http_status)
        return self


def normalize_items(data: Any) -> List[Dict[str, Any]]:
    """
    Normalize a loosely-shaped response body into a list of records.

    Accepts ``{"items": [...]}``, a bare array, or a single object with
    an ``id``. List entries without an ``id`` are dropped from either list
    shape. Anything else yields an empty list.

    Examples:
        >>> normalize_items({"items": [{"id": 1}, {"id": 2}]})
        [{'id': 1}, {'id': 2}]
        >>> normalize_items([{"id": 1}, "junk"])
        [{'id': 1}]
        >>> normalize_items({"id": 7, "name": "Jane"})
        [{'id': 7, 'name': 'Jane'}]
        >>> normalize_items(None)
        []
    """
    if isinstance(data, dict):
        items = data.get("items")
        if isinstance(items, list):
            return _records(items)
        if "id" in data:
            return [data]
        return []

    if isinstance(data, list):
        return _records(data)

    return []


def _records(items: List[Any]) -> List[Dict[str, Any]]:
    return [item for item in items if isinstance(item, dict) and "id" in item]


class RemoteClient:
    """
    Client for the CRM REST API.

    Features:
    - HTTP Basic auth with the API key as username and empty password
    - Response caching for GET with explicit invalidation
    - Shared rolling-window rate budget
    - Retries on 429/5xx and connection/timeout errors
    - Uniform ApiResponse for every outcome

    One instance per process is expected; its cache and rate budget are
    shared by every component that receives it.
    """

    def __init__(
        self,
        config,
        cache: Optional[ResponseCache] = None,
        rate_budget: Optional[RateBudget] = None,
        logger: Any = None,
        sleep=time.sleep,
        **client_kwargs
    ):
        """
        Initialize the client.

        Args:
            config: CrmSyncSettings instance
            cache: Shared response cache (created from settings if omitted)
            rate_budget: Shared rate budget (created from settings if omitted)
            logger: Structured logger
            sleep: Sleep function used between retries
            **client_kwargs: Additional arguments for httpx.Client
        """
        self.config = config
        self.base_url = config.api_base_url
        self.api_key = config.api_key
        self.max_retries = config.api_max_retries
        self.base_delay = config.retry_base_delay
        self.default_ttl = config.cache_default_ttl_seconds
        self.taxonomy_ttl = config.taxonomy_cache_ttl_seconds

        self.cache = cache if cache is not None else ResponseCache(default_ttl=self.default_ttl)
        self.rate_budget = rate_budget if rate_budget is not None else RateBudget.from_settings(config)
        self._logger = logger or structlog.get_logger(__name__)
        self._sleep = sleep

        client_kwargs.setdefault("timeout", config.request_timeout_seconds)
        client_kwargs.setdefault("headers", {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": f"{config.service_name}/1.0",
        })
        self._client = httpx.Client(**client_kwargs)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self._client.close()

    def close(self):
        """Close the underlying HTTP client."""
        self._client.close()

    def build_url(self, endpoint: str) -> str:
        """
        Join the configured base URL and an endpoint path.

        Raises:
            ConfigurationError: Base URL or API key not configured
        """
        if not self.base_url or not self.api_key:
            raise ConfigurationError("CRM API base URL or API key not configured")
        return f"{self.base_url.rstrip('/')}/{endpoint.lstrip('/')}"

    def ttl_for(self, endpoint: str) -> float:
        """Cache TTL for a read of ``endpoint``."""
        path = endpoint.strip("/").split("?", 1)[0]
        if path in TAXONOMY_ENDPOINTS:
            return self.taxonomy_ttl
        return self.default_ttl

    def request(
        self,
        endpoint: str,
        method: str = "GET",
        params: Optional[Dict[str, Any]] = None,
        use_cache: bool = True,
        ttl: Optional[float] = None,
    ) -> ApiResponse:
        """
        Perform a remote call and return a normalized response.

        Args:
            endpoint: Path relative to the base URL (e.g. "constituents/42")
            method: GET, POST, PUT or DELETE
            params: Query parameters for GET, JSON body otherwise
            use_cache: Serve/store GET responses from/in the cache
            ttl: Override the cache TTL for this read

        Returns:
            ApiResponse; check ``success`` rather than catching exceptions

        Raises:
            ConfigurationError: Base URL or API key not configured
            ValueError: Unsupported HTTP method
        """
        method = method.upper()
        if method not in SUPPORTED_METHODS:
            raise ValueError(f"Unsupported HTTP method: {method}")

        url = self.build_url(endpoint)
        cacheable = method == "GET" and use_cache

        if cacheable:
            cached = self.cache.get(endpoint, params)
            if cached is not None:
                self._logger.debug("Cache hit", endpoint=endpoint)
                return replace(cached, from_cache=True)

        response = self._request_with_retries(method, url, endpoint, params)

        if cacheable and response.success:
            self.cache.set(endpoint, params, response, ttl if ttl is not None else self.ttl_for(endpoint))

        return response

    def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None, use_cache: bool = True) -> ApiResponse:
        """Make GET request."""
        return self.request(endpoint, "GET", params, use_cache)

    def post(self, endpoint: str, payload: Optional[Dict[str, Any]] = None) -> ApiResponse:
        """Make POST request."""
        return self.request(endpoint, "POST", payload, use_cache=False)

    def put(self, endpoint: str, payload: Optional[Dict[str, Any]] = None) -> ApiResponse:
        """Make PUT request."""
        return self.request(endpoint, "PUT", payload, use_cache=False)

    def delete(self, endpoint: str) -> ApiResponse:
        """Make DELETE request."""
        return self.request(endpoint, "DELETE", None, use_cache=False)

    def invalidate(self, endpoint: str) -> int:
        """Drop cached reads at or beneath ``endpoint``."""
        return self.cache.invalidate_prefix(endpoint)

    def _is_retryable(self, method: str, response: ApiResponse, exception: Optional[Exception]) -> bool:
        """Decide whether a failed attempt may be repeated."""
        if isinstance(response.failure, RateLimitExceeded):
            return False

        if method in MUTATING_METHODS:
            # No idempotency on the remote side: only repeat requests that
            # never reached it.
            if exception is not None:
                return isinstance(exception, CONNECT_EXCEPTIONS)
            return response.http_status == 429

        if exception is not None:
            return isinstance(exception, RETRYABLE_EXCEPTIONS)
        return response.http_status in RETRYABLE_STATUS_CODES

    def _request_with_retries(
        self,
        method: str,
        url: str,
        endpoint: str,
        params: Optional[Dict[str, Any]],
    ) -> ApiResponse:
        """Make HTTP request with retry logic."""
        response = None

        for attempt in range(self.max_retries + 1):
            response, exception = self._attempt(method, url, endpoint, params, attempt)

            if response.success or not self._is_retryable(method, response, exception):
                return response

            if attempt < self.max_retries:
                delay = calculate_backoff_delay(attempt, self.base_delay)
                self._logger.warning(
                    "API request failed, retrying",
                    method=method,
                    endpoint=endpoint,
                    status_code=response.http_status,
                    error=response.error,
                    attempt=attempt + 1,
                    retry_after=round(delay, 3),
                )
                self._sleep(delay)

        self._logger.error(
            "Max retries exceeded",
            method=method,
            endpoint=endpoint,
            max_retries=self.max_retries,
            status_code=response.http_status,
            error=response.error,
        )
        return response

    def _attempt(self, method: str, url: str, endpoint: str, params: Optional[Dict[str, Any]], attempt: int):
        """Run one rate-limited HTTP attempt; returns (ApiResponse, exception)."""
        try:
            self.rate_budget.acquire()
        except RateLimitExceeded as exc:
            return ApiResponse.fail(exc, http_status=429), None

        kwargs: Dict[str, Any] = {"auth": (self.api_key, "")}
        if method == "GET":
            if params:
                kwargs["params"] = params
        elif params is not None:
            kwargs["json"] = params

        self._logger.debug(
            "Making API request",
            method=method,
            endpoint=endpoint,
            attempt=attempt + 1,
            max_attempts=self.max_retries + 1,
        )

        start = time.monotonic()
        try:
            http_response = self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            duration_ms = (time.monotonic() - start) * 1000
            log_api_call(self._logger, method, endpoint, status_code=0,
                         duration_ms=duration_ms, error=str(exc))
            failure = TransportError(f"HTTP Error: {exc}")
            return ApiResponse.fail(failure), exc

        duration_ms = (time.monotonic() - start) * 1000
        log_api_call(self._logger, method, endpoint,
                     status_code=http_response.status_code, duration_ms=duration_ms)
        return self._process_response(http_response), None

    def _process_response(self, http_response: httpx.Response) -> ApiResponse:
        """Convert an HTTP response into an ApiResponse."""
        status = http_response.status_code

        if status < 200 or status >= 300:
            failure = RemoteApiError(f"HTTP {status}: {http_response.text[:500]}", status)
            return ApiResponse.fail(failure, http_status=status)

        if status == 204 or not http_response.content:
            return ApiResponse.ok(status, None)

        try:
            data = http_response.json()
        except ValueError as exc:
            failure = RemoteApiError(f"Invalid JSON response: {exc}", status)
            return ApiResponse.fail(failure, http_status=status)

        return ApiResponse.ok(status, data)
