"""HTTP clients: blocking reads with retry/backoff, cancellable async reads."""
from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import httpx
import requests

from . import config

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Optional[str]]
LoginPrompt = Callable[[], Awaitable[bool]]

AUTH_NONE = "none"
AUTH_IF_AVAILABLE = "optional"
AUTH_REQUIRED = "required"


class TransportError(RuntimeError):
    """Network failure, timeout or non-2xx response."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class AuthRequiredError(TransportError):
    pass


class RequestCancelled(Exception):
    """A request superseded by a newer one under the same key."""


@dataclass
class RequestMetrics:
    network: Dict[str, int] = field(default_factory=dict)
    cancelled: Dict[str, int] = field(default_factory=dict)
    stale_drops: Dict[str, int] = field(default_factory=dict)

    @staticmethod
    def _inc(bucket: Dict[str, int], kind: str) -> None:
        bucket[kind] = bucket.get(kind, 0) + 1

    def inc_network(self, kind: str) -> None:
        self._inc(self.network, kind)

    def inc_cancelled(self, kind: str) -> None:
        self._inc(self.cancelled, kind)

    def inc_stale(self, kind: str) -> None:
        self._inc(self.stale_drops, kind)

    def network_count(self, kind: str) -> int:
        return self.network.get(kind, 0)


def encode_params(params: Mapping[str, Any]) -> Dict[str, Any]:
    """Drop empty values, render booleans as true/false, keep lists as repeated keys."""
    out: Dict[str, Any] = {}
    for key, value in params.items():
        if value is None or value == "":
            continue
        if isinstance(value, bool):
            out[key] = "true" if value else "false"
        elif isinstance(value, (list, tuple)):
            items = [str(v) for v in value if v is not None and v != ""]
            if items:
                out[key] = items
        else:
            out[key] = value
    return out


def join_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


class HttpClient:
    """Blocking JSON GETs used for reference data (taxonomy)."""

    def __init__(
        self,
        base_url: str,
        token_provider: Optional[TokenProvider] = None,
        timeout: int = config.HTTP_TIMEOUT_SECONDS,
        retry_max: int = config.HTTP_RETRY_MAX,
        backoff_base: float = config.HTTP_BACKOFF_BASE,
        backoff_max: float = config.HTTP_BACKOFF_MAX,
        metrics: Optional[RequestMetrics] = None,
    ) -> None:
        self.base_url = base_url
        self.token_provider = token_provider
        self.timeout = timeout
        self.retry_max = max(1, retry_max)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.metrics = metrics
        self.session = requests.Session()

    def get_json(
        self,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        kind: str = "taxonomy",
    ) -> Any:
        url = join_url(self.base_url, path)
        headers = {"Accept": "application/json"}
        token = self.token_provider() if self.token_provider else None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        query = encode_params(params or {})

        for attempt in range(1, self.retry_max + 1):
            if self.metrics is not None:
                self.metrics.inc_network(kind)
            try:
                resp = self.session.get(url, params=query, headers=headers, timeout=self.timeout)
            except requests.RequestException as exc:
                if attempt >= self.retry_max:
                    raise TransportError(str(exc) or "Network Error") from exc
                self._sleep_backoff(attempt)
                continue

            status = resp.status_code
            if 200 <= status < 300:
                try:
                    return resp.json()
                except ValueError as exc:
                    logger.error("Non-JSON response from %s", url)
                    raise TransportError("Invalid JSON response", status) from exc

            if status in (429, 500, 502, 503, 504):
                logger.warning("HTTP %s from %s (attempt %s)", status, url, attempt)
                if attempt >= self.retry_max:
                    raise TransportError(f"Request failed with status code {status}", status)
                if not self._sleep_retry_after(resp):
                    self._sleep_backoff(attempt)
                continue

            # Non-retryable
            logger.error("HTTP %s from %s", status, url)
            raise TransportError(f"Request failed with status code {status}", status)

        raise RuntimeError("Unexpected HTTP retry loop exit")

    def close(self) -> None:
        self.session.close()

    def _sleep_backoff(self, attempt: int) -> None:
        base = min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)
        jitter = random.uniform(0, self.backoff_base)
        time.sleep(base + jitter)

    def _sleep_retry_after(self, resp: requests.Response) -> bool:
        retry_after = resp.headers.get("Retry-After")
        if not retry_after:
            return False
        try:
            delay = float(retry_after)
        except ValueError:
            return False
        delay = max(0.0, min(delay, self.backoff_max))
        time.sleep(delay)
        return True


class AsyncHttpClient:
    """Cancellable JSON GETs for search traffic.

    Cancelling the asyncio task awaiting `get_json` aborts the underlying
    httpx request. There is no retry loop here: a superseded or failed search
    is re-issued by the caller.
    """

    def __init__(
        self,
        base_url: str,
        token_provider: Optional[TokenProvider] = None,
        login_prompt: Optional[LoginPrompt] = None,
        timeout: float = config.HTTP_TIMEOUT_SECONDS,
        metrics: Optional[RequestMetrics] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url
        self.token_provider = token_provider
        self.login_prompt = login_prompt
        self.timeout = timeout
        self.metrics = metrics
        self.session = httpx.AsyncClient(
            timeout=timeout,
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            transport=transport,
        )

    def _token(self) -> Optional[str]:
        if self.token_provider is None:
            return None
        token = self.token_provider()
        if isinstance(token, str) and token.strip():
            return token
        return None

    async def _prompt_login(self) -> Optional[str]:
        if self.login_prompt is None:
            return None
        ok = await self.login_prompt()
        token = self._token()
        if not ok or not token:
            return None
        return token

    async def _auth_headers(self, auth: str) -> Dict[str, str]:
        token = self._token()
        if auth == AUTH_REQUIRED and not token:
            if self.login_prompt is None:
                raise AuthRequiredError("Authentication required but no login prompt configured.")
            token = await self._prompt_login()
            if not token:
                raise AuthRequiredError("Authentication required but user did not authenticate.")
        if auth in (AUTH_REQUIRED, AUTH_IF_AVAILABLE) and token:
            return {"Authorization": f"Bearer {token}"}
        return {}

    async def get_json(
        self,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        auth: str = AUTH_NONE,
        kind: str = "search",
    ) -> Any:
        url = join_url(self.base_url, path)
        query = encode_params(params or {})
        headers = await self._auth_headers(auth)

        resp = await self._send(url, query, headers, kind)
        if resp.status_code == 401 and self.login_prompt is not None:
            token = await self._prompt_login()
            if token:
                resp = await self._send(url, query, {"Authorization": f"Bearer {token}"}, kind)

        if not 200 <= resp.status_code < 300:
            logger.error("HTTP %s from %s", resp.status_code, url)
            raise TransportError(
                f"Request failed with status code {resp.status_code}", resp.status_code
            )
        try:
            return resp.json()
        except ValueError as exc:
            logger.error("Non-JSON response from %s", url)
            raise TransportError("Invalid JSON response", resp.status_code) from exc

    async def _send(
        self, url: str, query: Dict[str, Any], headers: Dict[str, str], kind: str
    ) -> httpx.Response:
        if self.metrics is not None:
            self.metrics.inc_network(kind)
        try:
            return await self.session.get(url, params=query, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransportError(f"timeout of {int(self.timeout * 1000)}ms exceeded") from exc
        except httpx.HTTPError as exc:
            raise TransportError(str(exc) or "Network Error") from exc

    async def aclose(self) -> None:
        await self.session.aclose()
