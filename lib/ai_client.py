"""AI parsing through the SiliconFlow OpenAI-compatible API."""

from __future__ import annotations

import hashlib
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import openai
from openai import OpenAI

from lib.config import AI_CACHE_TTL_SECONDS, SILICONFLOW_BASE_URL, SILICONFLOW_DEFAULT_MODEL
from lib.models import SiliconFlowConfig
from utils.decorators import log_execution, retry
from utils.errors import AIServiceError, ConfigurationMissing
from utils.logging import logger

CONTENT_PLACEHOLDER = "{content}"
SYSTEM_PROMPT = "You are a helpful AI assistant."
REQUEST_TIMEOUT_SECONDS = 30.0

RETRYABLE_ERRORS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)


def build_prompt(content: str, prompt: str, default_prompt: str = "") -> str:
    """Fill ``{content}`` into the prompt, or append the content after a blank line."""
    template = prompt or default_prompt
    if CONTENT_PLACEHOLDER in template:
        return template.replace(CONTENT_PLACEHOLDER, content)
    return f"{template}\n\n{content}"


def _extract_text(message_content: Any) -> str:
    """Normalize responses that may be lists of parts or plain strings."""
    if isinstance(message_content, str):
        return message_content.strip()
    if isinstance(message_content, list):
        parts: List[str] = []
        for part in message_content:
            if isinstance(part, dict):
                if part.get("type") == "text" and part.get("text"):
                    parts.append(part["text"])
                elif isinstance(part.get("content"), str):
                    parts.append(part["content"])
            elif isinstance(part, str):
                parts.append(part)
        return "\n".join(p.strip() for p in parts if p).strip()
    return str(message_content or "").strip()


class AIParser:
    """Caches parse results per (model, content, prompt) for an hour."""

    def __init__(
        self,
        config: SiliconFlowConfig,
        client: Optional[OpenAI] = None,
        cache_ttl: float = AI_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not config.api_key:
            raise ConfigurationMissing("SiliconFlow API key not configured")
        self.config = config
        self.model = config.model or SILICONFLOW_DEFAULT_MODEL
        self.client = client or OpenAI(
            base_url=SILICONFLOW_BASE_URL,
            api_key=config.api_key,
            timeout=REQUEST_TIMEOUT_SECONDS,
            max_retries=0,
        )
        self._cache_ttl = cache_ttl
        self._clock = clock
        self._cache: Dict[str, Tuple[str, float]] = {}
        self._cache_lock = threading.Lock()

    def cache_key(self, content: str, prompt: str) -> str:
        return hashlib.md5(f"{self.model}:{content}:{prompt}".encode("utf-8")).hexdigest()

    def parse(self, content: str, prompt: str = "") -> str:
        full_prompt = build_prompt(content, prompt, self.config.default_prompt)
        key = self.cache_key(content, full_prompt)
        cached = self._cached(key)
        if cached is not None:
            logger.info("AI parse served from cache")
            return cached

        try:
            result = self._complete(full_prompt)
        except openai.OpenAIError as exc:
            raise AIServiceError(f"AI request failed: {exc}") from exc

        with self._cache_lock:
            self._cache[key] = (result, self._clock() + self._cache_ttl)
        return result

    @log_execution
    def list_models(self) -> List[str]:
        try:
            return [model.id for model in self.client.models.list()]
        except openai.OpenAIError as exc:
            raise AIServiceError(f"Failed to list models: {exc}") from exc

    @retry(max_attempts=3, delay=1.0, exceptions=RETRYABLE_ERRORS)
    def _complete(self, prompt: str) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            stream=False,
        )
        if not response.choices:
            raise AIServiceError("AI returned no choices")
        return _extract_text(getattr(response.choices[0].message, "content", ""))

    def _cached(self, key: str) -> Optional[str]:
        now = self._clock()
        with self._cache_lock:
            for stale in [k for k, (_, expires) in self._cache.items() if expires <= now]:
                del self._cache[stale]
            entry = self._cache.get(key)
        return entry[0] if entry else None


class AIParserPool:
    """Reuses one AIParser, and so one result cache, per SiliconFlow configuration."""

    def __init__(self, factory: Callable[[SiliconFlowConfig], AIParser] = AIParser) -> None:
        self._factory = factory
        self._parsers: Dict[Tuple[str, str, str], AIParser] = {}
        self._lock = threading.Lock()

    def get(self, config: SiliconFlowConfig) -> AIParser:
        if not config.api_key:
            raise ConfigurationMissing("SiliconFlow API key not configured")
        key = (config.api_key, config.model, config.default_prompt)
        with self._lock:
            parser = self._parsers.get(key)
            if parser is None:
                parser = self._factory(config)
                self._parsers = {key: parser}
            return parser
