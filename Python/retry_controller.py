"""
Retry Controller
Wraps one model-streaming call: classifies failures, retries transient ones
with exponential backoff and guarantees exactly one terminal client event
(`complete` or `error`) per turn.

Classification is by exception type and HTTP status, never by message text.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

import requests

from token_relay import ClientEvent, ClientEventKind, TokenRelay

logger = logging.getLogger(__name__)


class FailureKind(Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    SERVER = "server"
    FORMAT = "format"
    RATE_LIMIT = "rate_limit"
    AUTH = "auth"
    QUOTA = "quota"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE


_RETRYABLE = frozenset({
    FailureKind.NETWORK,
    FailureKind.TIMEOUT,
    FailureKind.SERVER,
    FailureKind.FORMAT,
    FailureKind.RATE_LIMIT,
})

USER_MESSAGES = {
    FailureKind.NETWORK: "The storyteller could not be reached. Please check your connection and try again.",
    FailureKind.TIMEOUT: "The storyteller took too long to respond. Please try again.",
    FailureKind.SERVER: "The storyteller is having trouble right now. Please try again in a moment.",
    FailureKind.FORMAT: "The storyteller's reply was garbled. Please try again.",
    FailureKind.RATE_LIMIT: "Too many requests right now. Please wait a moment and try again.",
    FailureKind.AUTH: "The story service is not authorized to reach the model. Please contact support.",
    FailureKind.QUOTA: "The story service has used up its model quota. Please try again later.",
    FailureKind.UNKNOWN: "Something went wrong while telling the story. Please try again.",
}


class UpstreamError(Exception):
    """A model-call failure with its classification attached."""

    def __init__(self, kind: FailureKind, message: str = "", status_code: Optional[int] = None):
        super().__init__(message or kind.value)
        self.kind = kind
        self.status_code = status_code


def kind_for_status(status_code: Optional[int]) -> FailureKind:
    if status_code in (401, 403):
        return FailureKind.AUTH
    if status_code == 402:
        return FailureKind.QUOTA
    if status_code == 429:
        return FailureKind.RATE_LIMIT
    if status_code == 408:
        return FailureKind.TIMEOUT
    if status_code is not None and status_code >= 500:
        return FailureKind.SERVER
    return FailureKind.UNKNOWN


def classify_failure(exc: BaseException) -> FailureKind:
    """Map an upstream exception to a FailureKind."""
    if isinstance(exc, UpstreamError):
        return exc.kind
    if isinstance(exc, (requests.Timeout, asyncio.TimeoutError, TimeoutError)):
        return FailureKind.TIMEOUT
    if isinstance(exc, requests.HTTPError):
        response = exc.response
        return kind_for_status(response.status_code if response is not None else None)
    if isinstance(exc, (requests.ConnectionError, ConnectionError)):
        return FailureKind.NETWORK
    if isinstance(exc, json.JSONDecodeError):
        return FailureKind.FORMAT
    if isinstance(exc, requests.RequestException):
        return FailureKind.NETWORK
    return FailureKind.UNKNOWN


def user_message(kind: FailureKind) -> str:
    return USER_MESSAGES.get(kind, USER_MESSAGES[FailureKind.UNKNOWN])


@dataclass
class RetryPolicy:
    """Exponential backoff: base * 2**n seconds, capped at max_delay."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0

    def delay_for(self, retry_index: int) -> float:
        return min(self.base_delay * (2 ** retry_index), self.max_delay)


class RetryController:
    """
    Drive one turn's model call to exactly one terminal event.

    Args:
        emit: Callback receiving ClientEvents
        policy: Retry/backoff policy
        sleep: Awaitable sleep, injectable for tests
        turn_deadline: Wall-clock bound in seconds over all attempts and backoff
    """

    def __init__(self, emit: Callable[[ClientEvent], None],
                 policy: Optional[RetryPolicy] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 turn_deadline: Optional[float] = None):
        self.emit = emit
        self.policy = policy or RetryPolicy()
        self.sleep = sleep
        self.turn_deadline = turn_deadline
        self.attempts = 0
        self.retries = 0
        self.failure: Optional[FailureKind] = None
        self._completed = False

    @property
    def completed(self) -> bool:
        return self._completed

    async def run(self, request_factory: Callable[[], AsyncIterator[str]],
                  relay: TokenRelay) -> Optional[str]:
        """
        Stream the request through the relay, retrying transient failures.

        Returns:
            The full response text, or None after an `error` event was emitted
        """
        try:
            if self.turn_deadline:
                return await asyncio.wait_for(self._attempt_loop(request_factory, relay),
                                              self.turn_deadline)
            return await self._attempt_loop(request_factory, relay)
        except asyncio.TimeoutError:
            logger.warning(f"Turn deadline of {self.turn_deadline}s exceeded after "
                           f"{self.attempts} attempt(s)")
            self.fail(FailureKind.TIMEOUT)
            return None

    async def _attempt_loop(self, request_factory: Callable[[], AsyncIterator[str]],
                            relay: TokenRelay) -> Optional[str]:
        while True:
            self.attempts += 1
            relay.reset()
            try:
                async for fragment in request_factory():
                    relay.feed(fragment)
                return relay.finish()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                kind = classify_failure(e)
                if kind.retryable and self.retries < self.policy.max_retries:
                    delay = self.policy.delay_for(self.retries)
                    self.retries += 1
                    logger.warning(f"Attempt {self.attempts} failed ({kind.value}): {e}; "
                                   f"retry {self.retries}/{self.policy.max_retries} in {delay:.1f}s")
                    self.emit(ClientEvent(ClientEventKind.RETRY, {
                        "attempt": self.retries,
                        "maxRetries": self.policy.max_retries,
                        "delayMs": int(delay * 1000),
                        "reason": kind.value,
                    }))
                    await self.sleep(delay)
                    continue

                if kind.retryable:
                    logger.error(f"Giving up after {self.attempts} attempt(s): {kind.value}: {e}")
                else:
                    logger.error(f"Fatal upstream failure ({kind.value}): {e}")
                self.fail(kind)
                return None

    def complete(self, data: Optional[Dict[str, Any]] = None) -> bool:
        """Emit `complete` unless a terminal event was already sent."""
        if self._completed:
            logger.warning("Ignoring complete: turn already terminated")
            return False
        self._completed = True
        self.emit(ClientEvent(ClientEventKind.COMPLETE, {"status": "completed", **(data or {})}))
        return True

    def fail(self, kind: FailureKind) -> bool:
        """Emit one user-facing `error` unless a terminal event was already sent."""
        if self._completed:
            logger.warning(f"Ignoring error ({kind.value}): turn already terminated")
            return False
        self._completed = True
        self.failure = kind
        self.emit(ClientEvent(ClientEventKind.ERROR, {"error": user_message(kind), "kind": kind.value}))
        return True
