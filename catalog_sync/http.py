from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol
from urllib.parse import urlencode

import requests

from .common import (
    LOGGER,
    is_network_unavailable_error,
    now_epoch,
    parse_retry_after,
    sanitize_url_for_logs,
)


class Limiter(Protocol):
    async def acquire(self) -> None:
        ...


class ApiError(Exception):
    """Upstream hard failure: a non-retryable HTTP status or an unusable response."""

    def __init__(self, service: str, status: int, url: str, message: str = ""):
        self.service = service
        self.status = int(status)
        self.url = url
        self.message = message
        detail = f": {message}" if message else ""
        super().__init__(f"{service} API error {self.status} for {url}{detail}")


@dataclass
class APIResponse:
    status: int
    headers: Dict[str, str]
    data: Any
    text: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class HTTPClient:
    """Rate-limited JSON fetcher shared by every upstream client.

    404 means "not found" and returns None. 204 or an empty body returns the
    caller's `empty` value. 429 and network outages are retried without a cap.
    Any other non-2xx status raises ApiError.
    """

    def __init__(
        self,
        *,
        service: str,
        timeout_seconds: int,
        limiter: Limiter,
        rate_limited_retry_seconds: float = 5,
        max_backoff_seconds: int = 60,
        default_headers: Optional[Dict[str, str]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.service = service
        self.timeout_seconds = timeout_seconds
        self.limiter = limiter
        self.rate_limited_retry_seconds = rate_limited_retry_seconds
        self.max_backoff_seconds = max(1, int(max_backoff_seconds))
        self.default_headers = {"Accept": "application/json", **(default_headers or {})}
        self._sleep = sleep or asyncio.sleep
        self._network_error_throttle_seconds = 20
        self._last_network_error_log_at: Dict[str, int] = {}

    def _should_log_network_error(self, key: str) -> bool:
        now_ts = now_epoch()
        last = self._last_network_error_log_at.get(key, 0)
        if now_ts - last >= self._network_error_throttle_seconds:
            self._last_network_error_log_at[key] = now_ts
            return True
        return False

    def _backoff_seconds(self, failures: int) -> float:
        exponent = min(max(0, failures - 1), 10)
        return min(self.max_backoff_seconds, (2**exponent) + random.random())

    async def request(
        self,
        *,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> APIResponse:
        query = f"?{urlencode(params)}" if params else ""
        safe_url = sanitize_url_for_logs(f"{url}{query}")
        merged_headers = {**self.default_headers, **(headers or {})}
        network_failures = 0

        while True:
            await self.limiter.acquire()

            try:
                raw_resp = await asyncio.to_thread(
                    requests.request,
                    method,
                    url,
                    params=params,
                    headers=merged_headers,
                    timeout=self.timeout_seconds,
                )
            except requests.RequestException as exc:
                if not is_network_unavailable_error(exc):
                    raise ApiError(self.service, 0, safe_url, str(exc)) from exc
                network_failures += 1
                sleep_for = self._backoff_seconds(network_failures)
                throttle_key = f"{method}:{safe_url}:{exc.__class__.__name__}"
                if self._should_log_network_error(throttle_key):
                    LOGGER.warning(
                        "[%s] Network unavailable for %s %s (failure %s). Backing off %.1fs: %s",
                        self.service,
                        method,
                        safe_url,
                        network_failures,
                        sleep_for,
                        exc,
                    )
                await self._sleep(sleep_for)
                continue

            headers_out = {str(k).lower(): str(v) for k, v in raw_resp.headers.items()}
            text = raw_resp.text or ""
            response = APIResponse(
                status=raw_resp.status_code,
                headers=headers_out,
                data=None,
                text=text,
            )

            if response.status == 429:
                retry_after = parse_retry_after(
                    headers_out.get("retry-after"), self.rate_limited_retry_seconds
                )
                LOGGER.warning(
                    "[%s] 429 from %s %s. Retry-After=%ss",
                    self.service,
                    method,
                    safe_url,
                    retry_after,
                )
                await self._sleep(retry_after)
                continue

            if response.ok and response.status != 204 and text.strip():
                try:
                    response.data = raw_resp.json()
                except ValueError as exc:
                    raise ApiError(
                        self.service, response.status, safe_url, "invalid JSON body"
                    ) from exc
            return response

    async def get_json(
        self,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        empty: Any = None,
    ) -> Any:
        response = await self.request(method="GET", url=url, params=params, headers=headers)

        if response.status == 404:
            return None
        if response.status == 204 or (response.ok and response.data is None):
            return empty
        if not response.ok:
            query = f"?{urlencode(params)}" if params else ""
            compact = " ".join(response.text.split())[:180]
            raise ApiError(
                self.service,
                response.status,
                sanitize_url_for_logs(f"{url}{query}"),
                compact,
            )
        return response.data
