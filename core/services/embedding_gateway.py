"""
Embedding provider gateway.

One request per call, a short fixed timeout, no retries. Callers on the
request path decide what a failure means for them.
"""

from __future__ import annotations

import threading
import time
from typing import List, Optional

import httpx

import core.config as config
from core.errors import UpstreamError
from core.validators import validate_embedding_text

logger = config.logger


class EmbeddingCircuitBreaker:
    def __init__(self, failure_threshold: int, cooldown_seconds: int):
        self._failure_threshold = max(1, failure_threshold)
        self._cooldown_seconds = max(1, cooldown_seconds)
        self._lock = threading.Lock()
        self._consecutive_failures = 0
        self._cooldown_until = 0.0
        self._last_error: Optional[str] = None
        self._last_failure_ts: Optional[float] = None
        self._last_success_ts: Optional[float] = None

    def is_open(self) -> bool:
        with self._lock:
            return time.time() < self._cooldown_until

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._cooldown_until = 0.0
            self._last_success_ts = time.time()

    def record_failure(self, error: str) -> None:
        with self._lock:
            self._consecutive_failures += 1
            self._last_error = error
            self._last_failure_ts = time.time()
            if self._consecutive_failures >= self._failure_threshold:
                self._cooldown_until = time.time() + self._cooldown_seconds

    def status(self) -> dict:
        with self._lock:
            return {
                "open": time.time() < self._cooldown_until,
                "consecutive_failures": self._consecutive_failures,
                "cooldown_until_epoch": int(self._cooldown_until) if self._cooldown_until else None,
                "last_error": self._last_error,
                "last_failure_epoch": int(self._last_failure_ts) if self._last_failure_ts else None,
                "last_success_epoch": int(self._last_success_ts) if self._last_success_ts else None,
            }


class EmbeddingGateway:
    def __init__(
        self,
        *,
        provider: str = config.EMBEDDING_PROVIDER,
        base_url: str = config.EMBEDDING_BASE_URL,
        api_key: Optional[str] = config.EMBEDDING_API_KEY,
        model: str = config.EMBEDDING_MODEL,
        deployment: str = config.EMBEDDING_DEPLOYMENT,
        api_version: str = config.EMBEDDING_API_VERSION,
        dimensions: Optional[int] = config.EMBEDDING_DIM,
        enforce_dimensions: bool = config.EMBEDDING_ENFORCE_DIM,
        timeout_seconds: float = config.EMBEDDING_TIMEOUT_SECONDS,
        circuit_breaker: Optional[EmbeddingCircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.provider = provider
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._model = model
        self._deployment = deployment
        self._api_version = api_version
        self._dimensions = dimensions
        self._enforce_dimensions = enforce_dimensions
        self._timeout_seconds = timeout_seconds
        self._transport = transport
        self.circuit_breaker = circuit_breaker or EmbeddingCircuitBreaker(
            failure_threshold=config.EMBEDDING_FAILURE_THRESHOLD,
            cooldown_seconds=config.EMBEDDING_COOLDOWN_SECONDS,
        )
        self._client: Optional[httpx.AsyncClient] = None

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            if self.provider == "azure":
                headers["api-key"] = self._api_key
            else:
                headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _client_or_open(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout_seconds),
                limits=httpx.Limits(max_keepalive_connections=10, max_connections=100),
                headers=self._headers(),
                transport=self._transport,
            )
            logger.info("Embedding HTTP client initialized")
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("Embedding HTTP client closed")

    def _request(self, text: str) -> tuple[str, dict]:
        if self.provider == "azure":
            url = (
                f"{self._base_url}/openai/deployments/{self._deployment}/embeddings"
                f"?api-version={self._api_version}"
            )
            payload: dict = {"input": [text]}
        else:
            url = f"{self._base_url}/v1/embeddings"
            payload = {"model": self._model, "input": text}
        if self._dimensions:
            payload["dimensions"] = self._dimensions
        return url, payload

    def _fail(self, detail: str, record: bool = True) -> None:
        if record:
            self.circuit_breaker.record_failure(detail)
        logger.warning("embedding_provider_unavailable", extra={"detail": detail})
        raise UpstreamError(f"embedding provider unavailable: {detail}", service="embedding")

    def _parse(self, data, record: bool = True) -> List[float]:
        try:
            vector = data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError):
            self._fail("malformed response", record)
        if not isinstance(vector, list) or not vector:
            self._fail("malformed response", record)
        if not all(isinstance(value, (int, float)) and not isinstance(value, bool) for value in vector):
            self._fail("malformed response", record)
        if self._enforce_dimensions and self._dimensions and len(vector) != self._dimensions:
            self._fail(f"unexpected dimensions {len(vector)}", record)
        return [float(value) for value in vector]

    async def embed(self, text: str, *, record: bool = True) -> List[float]:
        """
        Return the embedding for ``text`` or raise UpstreamError.

        With ``record=False`` the outcome is not counted by the circuit
        breaker, so health checks cannot open or reset it.
        """
        validate_embedding_text(text)
        if self.provider == "none":
            raise UpstreamError("embedding provider disabled", service="embedding")
        if self.circuit_breaker.is_open():
            raise UpstreamError("embedding circuit breaker open", service="embedding")

        url, payload = self._request(text)
        start = time.perf_counter()
        try:
            response = await self._client_or_open().post(url, json=payload)
        except httpx.TimeoutException:
            self._fail("timeout", record)
        except httpx.RequestError as exc:
            self._fail(f"request error: {type(exc).__name__}", record)

        if response.status_code >= 400:
            self._fail(f"status {response.status_code}", record)
        try:
            data = response.json()
        except ValueError:
            self._fail("malformed response", record)

        vector = self._parse(data, record)
        if record:
            self.circuit_breaker.record_success()
        logger.debug(
            "embedding_generated",
            extra={
                "dimensions": len(vector),
                "elapsed_ms": int((time.perf_counter() - start) * 1000),
            },
        )
        return vector
