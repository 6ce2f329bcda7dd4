"""
Client for the external chat-completion service.
"""

from __future__ import annotations

import time
from typing import Optional

import httpx

import core.config as config
from core.errors import UpstreamError

logger = config.logger


def load_system_prompt() -> str:
    path = config.GENERATION_SYSTEM_PROMPT_PATH
    if path:
        with open(path, encoding="utf-8") as handle:
            return handle.read().strip()
    return config.GENERATION_SYSTEM_PROMPT


def extract_completion_text(data) -> Optional[str]:
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return None
    if not isinstance(content, str):
        return None
    return content.strip() or None


class ReplyGenerator:
    def __init__(
        self,
        *,
        url: str = config.GENERATION_URL,
        api_key: Optional[str] = config.GENERATION_API_KEY,
        auth_style: str = config.GENERATION_AUTH_STYLE,
        model: Optional[str] = config.GENERATION_MODEL,
        temperature: float = config.GENERATION_TEMPERATURE,
        max_tokens: int = config.GENERATION_MAX_TOKENS,
        timeout_seconds: float = config.GENERATION_TIMEOUT_SECONDS,
        system_prompt: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._url = url
        self._api_key = api_key
        self._auth_style = auth_style
        self._model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._timeout_seconds = timeout_seconds
        self.system_prompt = system_prompt if system_prompt is not None else load_system_prompt()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            if self._auth_style == "api-key":
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
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def messages_for(self, prompt: str) -> list[dict]:
        return [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": prompt},
        ]

    async def generate(self, messages: list[dict]) -> str:
        payload = {
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": False,
        }
        if self._model:
            payload["model"] = self._model

        start = time.perf_counter()
        try:
            response = await self._client_or_open().post(self._url, json=payload)
        except httpx.TimeoutException as exc:
            raise UpstreamError("generation timed out", service="generation") from exc
        except httpx.RequestError as exc:
            raise UpstreamError(
                f"generation request error: {type(exc).__name__}",
                service="generation",
            ) from exc

        if response.status_code >= 400:
            raise UpstreamError(f"generation status {response.status_code}", service="generation")
        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamError("generation returned malformed body", service="generation") from exc

        logger.debug(
            "generation_complete",
            extra={"elapsed_ms": int((time.perf_counter() - start) * 1000)},
        )
        return extract_completion_text(data) or config.GENERATION_FALLBACK_TEXT
