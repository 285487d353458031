"""Chat-completion client for LLM-assisted extraction.

Uses raw ``requests`` against any OpenAI-compatible ``/chat/completions``
endpoint.  Features:

* Async-friendly (``asyncio.to_thread`` around the blocking call)
* Retry with exponential back-off on 429/5xx and connection errors
* Request filters: callables that may rewrite URL, payload or headers
  before each POST (auth proxies, tracing headers)
* ``LLMOutcome`` result type so callers branch on success vs. recoverable
  failure instead of catching exceptions
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests

from .config import Config

logger = logging.getLogger(__name__)

RequestFilter = Callable[[str, Dict[str, Any], Dict[str, str]], None]

_RETRYABLE_STATUS = (429, 500, 502, 503, 504)
_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*(.*?)\s*```\s*$", re.DOTALL)


class LLMError(Exception):
    """Raised when the chat-completion endpoint fails or answers garbage."""


@dataclass
class LLMConfig:
    endpoint: str
    api_key: str = ""
    model: str = "gpt-3.5-turbo"
    temperature: float = 0.0
    timeout: float = 30.0
    max_retries: int = 3
    headers: Dict[str, str] = field(default_factory=dict)
    filters: List[RequestFilter] = field(default_factory=list)

    @classmethod
    def from_config(cls, cfg: Config) -> "LLMConfig":
        return cls(
            endpoint=cfg.llm_endpoint,
            api_key=cfg.llm_api_key,
            model=cfg.llm_model,
            temperature=cfg.llm_temperature,
            timeout=cfg.llm_timeout,
            max_retries=cfg.llm_max_retries,
        )


@dataclass
class LLMOutcome:
    """Result of one LLM extraction stage."""

    ok: bool
    items: List[Any] = field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def success(cls, items: List[Any]) -> "LLMOutcome":
        return cls(ok=True, items=list(items))

    @classmethod
    def failure(cls, error: str) -> "LLMOutcome":
        return cls(ok=False, error=error)


def parse_json_array(content: str) -> List[Any]:
    """Parse an LLM reply that should be a JSON array.

    A surrounding Markdown code fence is tolerated.  Raises ``ValueError``
    for anything that is not a JSON array.
    """
    if not isinstance(content, str):
        raise ValueError("LLM content is not a string")
    fenced = _FENCE_RE.match(content)
    body = fenced.group(1) if fenced else content.strip()
    data = json.loads(body)  # json.JSONDecodeError is a ValueError
    if not isinstance(data, list):
        raise ValueError(f"expected a JSON array, got {type(data).__name__}")
    return data


class ChatCompletionClient:
    """Lightweight async wrapper around a chat-completion endpoint."""

    def __init__(self, config: LLMConfig) -> None:
        if not config.endpoint:
            raise ValueError("LLM endpoint is required")
        self.config = config
        self._headers = {"Content-Type": "application/json", **config.headers}
        if config.api_key:
            self._headers["Authorization"] = f"Bearer {config.api_key}"

    # ------------------------------------------------------------------
    # Low-level HTTP call with retries
    # ------------------------------------------------------------------

    def _call_api(self, messages: List[Dict[str, str]]) -> str:
        """Blocking POST with exponential back-off. Returns the message content."""
        url = self.config.endpoint
        payload: Dict[str, Any] = {
            "model": self.config.model,
            "temperature": self.config.temperature,
            "messages": messages,
        }
        headers = dict(self._headers)
        for request_filter in self.config.filters:
            request_filter(url, payload, headers)

        last_exc: Optional[Exception] = None
        for attempt in range(self.config.max_retries):
            try:
                resp = requests.post(
                    url,
                    headers=headers,
                    json=payload,
                    timeout=self.config.timeout,
                )
                if resp.status_code == 200:
                    try:
                        return resp.json()["choices"][0]["message"]["content"]
                    except (ValueError, KeyError, IndexError, TypeError) as exc:
                        raise LLMError(f"Malformed completion body: {exc}") from exc

                if resp.status_code in _RETRYABLE_STATUS:
                    wait = 2 ** attempt
                    logger.warning(
                        "LLM endpoint %s (attempt %d/%d), retrying in %ds",
                        resp.status_code, attempt + 1, self.config.max_retries, wait,
                    )
                    time.sleep(wait)
                    last_exc = LLMError(f"HTTP {resp.status_code}: {resp.text[:200]}")
                    continue

                raise LLMError(f"HTTP {resp.status_code}: {resp.text[:500]}")

            except requests.RequestException as exc:
                wait = 2 ** attempt
                logger.warning(
                    "LLM request error (attempt %d/%d): %s, retrying in %ds",
                    attempt + 1, self.config.max_retries, exc, wait,
                )
                time.sleep(wait)
                last_exc = exc

        raise LLMError(f"Failed after {self.config.max_retries} retries: {last_exc}")

    # ------------------------------------------------------------------
    # Public async API
    # ------------------------------------------------------------------

    async def complete(self, messages: List[Dict[str, str]]) -> str:
        """Send *messages* and return the assistant content string."""
        return await asyncio.to_thread(self._call_api, messages)

    async def complete_json_array(self, system: str, user: str) -> LLMOutcome:
        """Ask for a JSON array; any failure becomes a recoverable outcome."""
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ]
        try:
            content = await self.complete(messages)
            return LLMOutcome.success(parse_json_array(content))
        except (LLMError, ValueError) as exc:
            return LLMOutcome.failure(str(exc))
