#!/usr/bin/env python3
"""
Ollama Client - streaming narrative model via the Ollama HTTP API.

Failures are raised as UpstreamError carrying a FailureKind so the retry
controller can classify them without inspecting message text.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional

import requests

from retry_controller import FailureKind, UpstreamError, classify_failure

logger = logging.getLogger(__name__)

DEFAULT_HOST = "http://localhost:11434"
DEFAULT_MODEL = "llama3.2"

_DONE = object()


@dataclass
class OllamaConfig:
    """Configuration for Ollama client"""
    host: str = DEFAULT_HOST
    model: str = DEFAULT_MODEL
    temperature: float = 0.8
    max_tokens: int = 1024
    connect_timeout: float = 5.0
    read_timeout: float = 60.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OllamaConfig':
        known = {k: v for k, v in (data or {}).items() if k in cls.__dataclass_fields__}
        return cls(**known)


class OllamaClient:
    """
    Ollama HTTP API client for streaming chat completions.

    Features:
    - Line-delimited JSON streaming from /api/chat
    - Typed failure classification
    - Async bridge for the turn pipeline
    """

    def __init__(self, config: Optional[OllamaConfig] = None):
        self.config = config or OllamaConfig()
        self.host = self.config.host.rstrip('/')
        self._session: Optional[requests.Session] = None

        logger.info(f"[Ollama] Client initialized (host={self.host}, model={self.config.model})")

    @property
    def session(self) -> requests.Session:
        """Lazy-load requests session"""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def is_available(self) -> bool:
        """Check if Ollama server is running"""
        try:
            response = self.session.get(f"{self.host}/api/tags", timeout=5)
            return response.status_code == 200
        except requests.RequestException:
            return False

    def stream_chat(self, messages: List[Dict[str, str]]) -> Iterator[str]:
        """
        Stream a chat completion fragment by fragment.

        Args:
            messages: Chat history as [{"role": ..., "content": ...}]

        Yields:
            Text fragments in arrival order

        Raises:
            UpstreamError: On transport, HTTP or stream-format failures
        """
        payload = {
            "model": self.config.model,
            "messages": messages,
            "stream": True,
            "options": {
                "temperature": self.config.temperature,
                "num_predict": self.config.max_tokens,
            }
        }

        try:
            response = self.session.post(
                f"{self.host}/api/chat",
                json=payload,
                stream=True,
                timeout=(self.config.connect_timeout, self.config.read_timeout),
            )
            response.raise_for_status()

            with response:
                for line in response.iter_lines():
                    if not line:
                        continue
                    data = json.loads(line)
                    if data.get("error"):
                        raise UpstreamError(FailureKind.SERVER, str(data["error"]))
                    content = data.get("message", {}).get("content", "")
                    if content:
                        yield content
                    if data.get("done"):
                        return
        except UpstreamError:
            raise
        except (requests.RequestException, json.JSONDecodeError) as e:
            kind = classify_failure(e)
            status = getattr(getattr(e, "response", None), "status_code", None)
            logger.warning(f"[Ollama] Chat stream failed ({kind.value}): {e}")
            raise UpstreamError(kind, str(e), status_code=status) from e

        # Stream ended without a done marker
        raise UpstreamError(FailureKind.FORMAT, "stream ended before completion")

    async def astream_chat(self, messages: List[Dict[str, str]]) -> AsyncIterator[str]:
        """Async view of stream_chat; blocking reads run in worker threads."""
        iterator = self.stream_chat(messages)
        while True:
            fragment = await asyncio.to_thread(next, iterator, _DONE)
            if fragment is _DONE:
                return
            yield fragment

    def shutdown(self):
        """Close the session"""
        if self._session:
            self._session.close()
            self._session = None
