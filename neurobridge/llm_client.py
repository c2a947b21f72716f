"""OpenAI-compatible LLM client (embeddings + structured JSON output).

Calls are retried on timeouts, 408, 429 and 5xx with exponential backoff
(1, 2, 4, 8 s, capped at 10 s, +/-20% jitter), honouring ``Retry-After``.
A call makes at most ``max_retries + 1`` HTTP attempts.
"""
import asyncio
import json
import logging
import random
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Optional, Sequence

import httpx

from .errors import RefusalError, TransientError
from .settings.config import settings

logger = logging.getLogger(__name__)

BASE_BACKOFF_SECONDS = 1.0
MAX_BACKOFF_SECONDS = 10.0
JITTER = 0.2


class LLMError(TransientError):
    code = "llm_error"

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def is_retryable_status(code: int) -> bool:
    return code in (408, 429) or 500 <= code <= 599


def backoff_delay(attempt: int, rng: Optional[random.Random] = None) -> float:
    """Delay before retry number ``attempt + 1`` (attempt is 0-based)."""
    base = min(BASE_BACKOFF_SECONDS * (2 ** attempt), MAX_BACKOFF_SECONDS)
    r = (rng or random).random()
    return max(0.0, base * (1.0 + JITTER * (2.0 * r - 1.0)))


def retry_after_seconds(resp: httpx.Response) -> Optional[float]:
    raw = (resp.headers.get("Retry-After") or "").strip()
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class LLMClient:
    def __init__(self, *, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 model: Optional[str] = None, embed_model: Optional[str] = None,
                 timeout: Optional[float] = None, max_retries: Optional[int] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 rng: Optional[random.Random] = None):
        self.api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self.base_url = (base_url or settings.OPENAI_BASE_URL).rstrip("/")
        self.model = model or settings.OPENAI_MODEL
        self.embed_model = embed_model or settings.OPENAI_EMBED_MODEL
        self.timeout = timeout if timeout is not None else settings.OPENAI_TIMEOUT_SECONDS
        self.max_retries = max(0, settings.OPENAI_MAX_RETRIES if max_retries is None else max_retries)
        self._transport = transport
        self._sleep = sleep
        self._rng = rng

    def _headers(self) -> dict[str, str]:
        h = {"Content-Type": "application/json"}
        if self.api_key:
            h["Authorization"] = f"Bearer {self.api_key}"
        return h

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        attempts = self.max_retries + 1
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as c:
            for attempt in range(attempts):
                last = attempt == attempts - 1
                try:
                    r = await c.post(url, json=body, headers=self._headers())
                except httpx.TransportError as e:
                    if last:
                        raise LLMError(f"LLM request to {path} failed after {attempts} attempts: {e}") from e
                    delay = backoff_delay(attempt, self._rng)
                    logger.warning("LLM %s transport error (%s); retry %s in %.2fs", path, e, attempt + 1, delay)
                    await self._sleep(delay)
                    continue

                if r.status_code < 400:
                    try:
                        return r.json()
                    except ValueError as e:
                        raise LLMError(f"LLM {path} returned non-JSON body") from e

                if is_retryable_status(r.status_code) and not last:
                    wait = retry_after_seconds(r)
                    delay = min(wait, MAX_BACKOFF_SECONDS) if wait is not None else backoff_delay(attempt, self._rng)
                    logger.warning("LLM %s returned %s; retry %s in %.2fs", path, r.status_code, attempt + 1, delay)
                    await self._sleep(delay)
                    continue
                raise LLMError(f"LLM {path} returned {r.status_code}: {r.text[:300]}", status_code=r.status_code)
        raise LLMError(f"LLM request to {path} exhausted retries")

    async def embed(self, inputs: Sequence[str]) -> list[list[float]]:
        items = [s for s in inputs or []]
        if not items:
            return []
        data = await self._post("/embeddings", {"model": self.embed_model, "input": items})
        rows = sorted(data.get("data") or [], key=lambda d: d.get("index", 0))
        if len(rows) != len(items):
            raise LLMError(f"embedding count mismatch: sent {len(items)}, got {len(rows)}")
        return [list(map(float, row.get("embedding") or [])) for row in rows]

    async def _chat(self, system: str, user: str, **extra: Any) -> dict[str, Any]:
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            **extra,
        }
        data = await self._post("/chat/completions", body)
        choices = data.get("choices") or []
        if not choices:
            raise LLMError("LLM returned no choices")
        msg = choices[0].get("message") or {}
        if msg.get("refusal"):
            raise RefusalError(f"model refused: {msg['refusal']}")
        return msg

    async def generate_json(self, system: str, user: str, schema_name: str, schema: dict[str, Any]) -> dict[str, Any]:
        msg = await self._chat(system, user, response_format={
            "type": "json_schema",
            "json_schema": {"name": schema_name, "schema": schema, "strict": True},
        })
        raw = (msg.get("content") or "").strip()
        try:
            out = json.loads(raw)
        except ValueError as e:
            raise LLMError(f"LLM returned non-JSON: {raw[:200]}") from e
        if not isinstance(out, dict):
            raise LLMError("LLM JSON output is not an object")
        return out

    async def generate_text(self, system: str, user: str) -> str:
        msg = await self._chat(system, user)
        return (msg.get("content") or "").strip()


_client: Optional[LLMClient] = None


def get_llm_client() -> LLMClient:
    global _client
    if _client is None:
        _client = LLMClient()
    return _client
