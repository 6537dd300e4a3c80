"""Backend client port and the Ollama HTTP adapter.

The fan-out executor only depends on ``BackendClient.call``: it resolves to
the model's text or raises. The Ollama adapter wraps each call in the shared
circuit breaker, and inside it the retry wrapper, so one logical call counts
once against the breaker no matter how many attempts it took.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import aiohttp

from advisor.services.cancellation import CancellationToken
from advisor.services.circuit_breaker import CircuitBreaker
from advisor.services.retry import (
    DEFAULT_RETRY_CONFIG,
    RetryConfig,
    is_retryable_error,
    with_retry,
)

logger = logging.getLogger(__name__)


class BackendCallError(Exception):
    """Rich error from backend calls. Carries status, message, and URL."""

    def __init__(self, status: int, message: str, url: str):
        self.status = status
        self.message = message
        self.url = url
        super().__init__(str(self))

    @property
    def retryable(self) -> bool:
        # status 0 means the request never got an HTTP answer
        return self.status == 0 or self.status == 429 or self.status >= 500

    def __str__(self) -> str:
        if self.status:
            return f"HTTP {self.status} from {self.url}: {self.message}"
        return f"Connection error for {self.url}: {self.message}"


class BackendClient(ABC):
    """Port for one logical remote call per target."""

    @abstractmethod
    async def call(
        self, target: str, payload: Dict[str, Any],
        *, token: Optional[CancellationToken] = None,
    ) -> str:
        """Return the target's text output or raise."""


class OllamaClient(BackendClient):
    """Async Ollama client.

    ``payload`` with ``messages`` goes to /api/chat, otherwise ``prompt`` and
    optional ``system`` go to /api/generate. Supports ``async with`` for a
    pooled session; falls back to a per-call session otherwise.
    """

    def __init__(
        self,
        base_url: str,
        *,
        breaker: Optional[CircuitBreaker] = None,
        retry_config: RetryConfig = DEFAULT_RETRY_CONFIG,
    ):
        self.base_url = base_url.rstrip("/")
        self.breaker = breaker or CircuitBreaker(5, 60.0, name="ollama")
        self.retry_config = retry_config
        self._session: Optional[aiohttp.ClientSession] = None

    async def open(self) -> None:
        if not self._session:
            self._session = aiohttp.ClientSession()

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "OllamaClient":
        await self.open()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def call(self, target, payload, *, token=None):
        if "messages" in payload:
            path = "/api/chat"
            body = {"model": target, "messages": payload["messages"], "stream": False}
        else:
            path = "/api/generate"
            body = {
                "model": target,
                "prompt": payload.get("prompt", ""),
                "system": payload.get("system"),
                "stream": False,
            }

        async def _attempt():
            return await self._post_json(path, body)

        async def _protected():
            return await with_retry(
                _attempt, self.retry_config, is_retryable=is_retryable_error,
            )

        if token is not None:
            token.raise_if_cancelled()
            data = await token.guard(self.breaker.execute(_protected))
        else:
            data = await self.breaker.execute(_protected)
        return _extract_text(data)

    async def list_models(self) -> List[dict]:
        config = RetryConfig(
            max_attempts=2,
            initial_delay=self.retry_config.initial_delay,
            max_delay=self.retry_config.max_delay,
            multiplier=self.retry_config.multiplier,
            per_attempt_timeout=self.retry_config.per_attempt_timeout,
        )
        data = await with_retry(
            lambda: self._request("GET", "/api/tags"), config,
            is_retryable=is_retryable_error,
        )
        return data.get("models") or []

    async def health_check(self) -> bool:
        try:
            await self.list_models()
            return True
        except Exception as e:
            logger.warning(f"Ollama health check failed: {e}")
            return False

    async def _post_json(self, path: str, body: dict) -> dict:
        return await self._request("POST", path, body)

    async def _request(self, method: str, path: str, body: Optional[dict] = None) -> dict:
        url = f"{self.base_url}{path}"
        try:
            if self._session:
                return await self._send(self._session, method, url, body)
            async with aiohttp.ClientSession() as session:
                return await self._send(session, method, url, body)
        except aiohttp.ClientError as e:
            raise BackendCallError(0, str(e) or type(e).__name__, url) from e

    @staticmethod
    async def _send(session, method, url, body):
        async with session.request(method, url, json=body) as resp:
            if resp.status >= 400:
                text = await resp.text()
                raise BackendCallError(resp.status, text[:500], url)
            return await resp.json()


def _extract_text(data: dict) -> str:
    """Pull the answer out of a /api/generate or /api/chat response."""
    if "response" in data:
        return data["response"] or ""
    message = data.get("message") or {}
    return message.get("content", "")
