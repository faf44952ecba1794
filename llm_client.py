"""
LLM Client (OpenRouter)
=======================

Async chat-completion client used by the generative planner, enrichment and
translation services.

Features:
- SHA-256 request hashing with an in-process TTL LRU cache
- Deduplication of identical in-flight requests
- Exponential backoff retry on 429/5xx, timeouts and connection errors
- Structured outputs via ``response_format`` (json_schema)
"""

import asyncio
import hashlib
import json
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp

from config import LLMSettings
from tools.logging_utils import get_logger

logger = get_logger(__name__)

RETRYABLE_STATUSES = [500, 502, 503, 504, 429]
QUOTA_STATUSES = [402, 429]


class LLMCallError(RuntimeError):
    """A chat completion failed after retries."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class LLMQuotaError(LLMCallError):
    """The provider refused the call for rate/credit reasons."""


def strip_markdown_json(response: str) -> str:
    """Remove ```json fences that some models wrap around JSON output."""
    cleaned = response.strip()
    if cleaned.startswith('```'):
        lines = cleaned.split('\n')
        if lines[0].startswith('```'):
            lines = lines[1:]
        if lines and lines[-1].strip() == '```':
            lines = lines[:-1]
        cleaned = '\n'.join(lines)
    return cleaned


def extract_json_object(raw_content: str) -> str:
    """Return the first balanced {...} block in a response, or the content unchanged."""
    content = strip_markdown_json(raw_content)
    start = content.find('{')
    if start < 0:
        return content

    depth = 0
    in_string = False
    escaped = False
    for i, char in enumerate(content[start:], start):
        if in_string:
            if escaped:
                escaped = False
            elif char == '\\':
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == '{':
            depth += 1
        elif char == '}':
            depth -= 1
            if depth == 0:
                return content[start:i + 1]
    return content


# =============================================================================
# CACHE
# =============================================================================

@dataclass
class CacheEntry:
    response: str
    timestamp: float
    ttl_seconds: int = 86400

    def is_expired(self) -> bool:
        return time.time() - self.timestamp > self.ttl_seconds


class LRUCache:
    """Thread-safe LRU cache with per-entry TTL."""

    def __init__(self, max_size: int = 500):
        self.max_size = max_size
        self.cache: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.lock = threading.RLock()
        self._stats = {"hits": 0, "misses": 0, "evictions": 0}

    def get(self, key: str) -> Optional[str]:
        with self.lock:
            entry = self.cache.get(key)
            if entry is None or entry.is_expired():
                if entry is not None:
                    del self.cache[key]
                self._stats["misses"] += 1
                return None
            self.cache.move_to_end(key)
            self._stats["hits"] += 1
            return entry.response

    def put(self, key: str, response: str, ttl_seconds: int = 86400) -> None:
        with self.lock:
            if key in self.cache:
                self.cache.move_to_end(key)
            elif len(self.cache) >= self.max_size:
                self.cache.popitem(last=False)
                self._stats["evictions"] += 1
            self.cache[key] = CacheEntry(response=response, timestamp=time.time(), ttl_seconds=ttl_seconds)

    def clear(self) -> int:
        with self.lock:
            count = len(self.cache)
            self.cache.clear()
            return count

    def stats(self) -> Dict[str, Any]:
        with self.lock:
            return {"size": len(self.cache), "max_size": self.max_size, **self._stats}


# =============================================================================
# CLIENT
# =============================================================================

class LLMClient:
    """OpenRouter chat completions with caching, dedup and retry."""

    def __init__(self, settings: LLMSettings, api_key: Optional[str] = None):
        self.settings = settings
        self.api_key = api_key
        self.cache = LRUCache(settings.cache_size)
        self.pending_requests: Dict[str, asyncio.Task] = {}

    def _generate_request_hash(self, prompt: str, system_prompt: Optional[str], model: str,
                               temperature: float, response_format: Optional[dict]) -> str:
        content = {
            "prompt": prompt,
            "system_prompt": system_prompt,
            "model": model,
            "temperature": temperature,
            "response_format": response_format,
        }
        return hashlib.sha256(json.dumps(content, sort_keys=True).encode()).hexdigest()

    async def call_llm(self, prompt: str, system_prompt: Optional[str] = None,
                       model: Optional[str] = None, temperature: Optional[float] = None,
                       max_tokens: Optional[int] = None,
                       response_format: Optional[dict] = None) -> str:
        """
        Make a chat completion call with caching and deduplication.

        Returns:
            Raw message content

        Raises:
            LLMQuotaError: provider refused for quota reasons
            LLMCallError: any other failure after retries
        """
        model = model or self.settings.chat_model
        temperature = self.settings.temperature if temperature is None else temperature
        max_tokens = max_tokens or self.settings.max_tokens

        request_hash = self._generate_request_hash(prompt, system_prompt, model, temperature, response_format)
        cached = self.cache.get(request_hash)
        if cached is not None:
            logger.debug("💾 LLM cache hit")
            return cached

        task = self.pending_requests.get(request_hash)
        if task is None:
            task = asyncio.ensure_future(
                self._call_via_http(prompt, system_prompt, model, temperature, max_tokens, response_format)
            )
            self.pending_requests[request_hash] = task
        try:
            response = await task
        finally:
            self.pending_requests.pop(request_hash, None)

        self.cache.put(request_hash, response, self.settings.cache_ttl_seconds)
        return response

    async def call_json(self, prompt: str, system_prompt: Optional[str] = None,
                        response_format: Optional[dict] = None, **kwargs) -> Dict[str, Any]:
        """call_llm + JSON extraction. Raises ValueError when the content is not a JSON object."""
        raw = await self.call_llm(prompt, system_prompt=system_prompt, response_format=response_format, **kwargs)
        try:
            data = json.loads(extract_json_object(raw))
        except json.JSONDecodeError as e:
            raise ValueError(f"LLM returned invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"LLM returned {type(data).__name__}, expected object")
        return data

    async def _call_via_http(self, prompt: str, system_prompt: Optional[str], model: str,
                             temperature: float, max_tokens: int,
                             response_format: Optional[dict]) -> str:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": False,
        }
        if response_format:
            payload["response_format"] = response_format

        headers = {
            "Content-Type": "application/json",
            "X-Title": "Meal Plan Generator",
        }
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        max_retries = max(1, self.settings.max_retries)
        timeout = aiohttp.ClientTimeout(total=self.settings.timeout_seconds)

        for attempt in range(max_retries):
            try:
                async with aiohttp.ClientSession() as session:
                    async with session.post(
                        f"{self.settings.api_url}/chat/completions",
                        json=payload,
                        headers=headers,
                        timeout=timeout,
                    ) as response:
                        if response.status in RETRYABLE_STATUSES:
                            error_body = await response.text()
                            if attempt < max_retries - 1:
                                wait_time = (2 ** attempt) * 2  # 2s, 4s, 8s
                                logger.warning(f"⚠️  OpenRouter error {response.status} (attempt {attempt + 1}/{max_retries}), retrying in {wait_time}s...")
                                await asyncio.sleep(wait_time)
                                continue
                            logger.error(f"❌ OpenRouter error {response.status} after {max_retries} attempts: {error_body[:300]}")
                            error_cls = LLMQuotaError if response.status in QUOTA_STATUSES else LLMCallError
                            raise error_cls(f"OpenRouter error {response.status}: {error_body[:300]}", response.status)

                        if response.status != 200:
                            error_body = await response.text()
                            logger.error(f"❌ OpenRouter error {response.status}: {error_body[:300]}")
                            error_cls = LLMQuotaError if response.status in QUOTA_STATUSES else LLMCallError
                            raise error_cls(f"OpenRouter error {response.status}: {error_body[:300]}", response.status)

                        data = await response.json()

                if "error" in data:
                    error_msg = data.get("error", {})
                    error_text = error_msg.get("message", str(error_msg)) if isinstance(error_msg, dict) else str(error_msg)
                    raise LLMCallError(f"OpenRouter API error: {error_text}")

                try:
                    content = data["choices"][0]["message"]["content"]
                except (KeyError, IndexError) as e:
                    raise LLMCallError(f"Unexpected response format, missing {e}. Keys: {list(data.keys())}") from e
                if content is None or not content.strip():
                    raise LLMCallError("OpenRouter returned empty content")
                return content.strip()

            except asyncio.TimeoutError as e:
                if attempt < max_retries - 1:
                    wait_time = (2 ** attempt) * 2
                    logger.warning(f"⚠️  Timeout (attempt {attempt + 1}/{max_retries}), retrying in {wait_time}s...")
                    await asyncio.sleep(wait_time)
                    continue
                raise LLMCallError(f"LLM call timed out after {max_retries} attempts") from e
            except aiohttp.ClientError as e:
                if attempt < max_retries - 1:
                    wait_time = (2 ** attempt) * 2
                    logger.warning(f"⚠️  HTTP error (attempt {attempt + 1}/{max_retries}), retrying in {wait_time}s...")
                    await asyncio.sleep(wait_time)
                    continue
                raise LLMCallError(f"LLM call failed after {max_retries} attempts: {e}") from e

        raise LLMCallError("LLM call failed without a response")
