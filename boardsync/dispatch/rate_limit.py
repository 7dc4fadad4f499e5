"""Retry, backoff and rate-limit budgeting around platform calls."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, Tuple, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from boardsync.domain.models import RateLimitStatus
from boardsync.errors import NotModifiedError, PERMANENT_STATUSES, PlatformError
from boardsync.logging import get_logger
from boardsync.rules.store import RateLimitSettings, RetrySettings

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CallResult(Generic[T]):
    value: T
    attempts: int


class EntityTagStore:
    """Remembers ``ETag`` headers and bodies of reads made during one pass."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[str, Any]] = {}

    def get(self, key: str) -> Optional[Tuple[str, Any]]:
        with self._lock:
            return self._entries.get(key)

    def headers_for(self, key: str) -> Dict[str, str]:
        entry = self.get(key)
        return {"If-None-Match": entry[0]} if entry else {}

    def remember(self, key: str, etag: Optional[str], body: Any) -> None:
        if not etag:
            return
        with self._lock:
            self._entries[key] = (etag, body)

    def cached_body(self, key: str) -> Any:
        entry = self.get(key)
        return entry[1] if entry else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RateLimitManager:
    """Execute platform calls with proactive throttling and exponential backoff."""

    def __init__(
        self,
        budget_source: Callable[[], RateLimitStatus],
        *,
        retry: RetrySettings | None = None,
        limits: RateLimitSettings | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._budget_source = budget_source
        self.retry = retry or RetrySettings()
        self.limits = limits or RateLimitSettings()
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._status: Optional[RateLimitStatus] = None
        self._fetched_at = 0.0

    def _budget(self) -> Optional[RateLimitStatus]:
        with self._lock:
            now = self._clock()
            stale = now - self._fetched_at >= self.limits.refresh_seconds
            if self._status is not None and not stale:
                return self._status
        try:
            status = self._budget_source()
        except PlatformError as exc:
            logger.warning(
                "Could not read the rate-limit budget: %s",
                exc,
                extra={"metadata": {"reason": "rate-limited", "status": exc.status}},
            )
            return None
        with self._lock:
            self._status = status
            self._fetched_at = self._clock()
        return status

    def wait_for_budget(self) -> None:
        """Sleep until the reset instant when the remaining budget is low."""

        status = self._budget()
        if status is None or status.remaining >= self.limits.min_remaining:
            return
        wait = status.reset + 1 - self._clock()
        if wait > 0:
            logger.warning(
                "Rate limit low (%s remaining), waiting %.0fs until reset",
                status.remaining,
                wait,
                extra={"metadata": {"reason": "rate-limited", "remaining": status.remaining}},
            )
            self._sleep(wait)
        with self._lock:
            self._status = None

    def _spend(self) -> None:
        with self._lock:
            if self._status is not None:
                self._status = RateLimitStatus(
                    remaining=max(self._status.remaining - 1, 0),
                    reset=self._status.reset,
                    limit=self._status.limit,
                )

    @staticmethod
    def is_transient(exc: BaseException) -> bool:
        return (
            isinstance(exc, PlatformError)
            and not isinstance(exc, NotModifiedError)
            and exc.status not in PERMANENT_STATUSES
            and exc.retryable
        )

    def _retrying(self, description: str) -> Retrying:
        def log_retry(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception()
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                description,
                retry_state.attempt_number,
                self.retry.max_retries,
                retry_state.next_action.sleep,
                exc,
                extra={
                    "metadata": {"status": exc.status, "attempt": retry_state.attempt_number}
                },
            )

        return Retrying(
            stop=stop_after_attempt(self.retry.max_retries),
            wait=wait_exponential(
                multiplier=self.retry.initial_retry_delay, max=self.retry.max_retry_delay
            ),
            retry=retry_if_exception(self.is_transient),
            sleep=self._sleep,
            before_sleep=log_retry,
            reraise=True,
        )

    def _attempt(self, operation: Callable[[], T], attempt: int) -> T:
        self.wait_for_budget()
        try:
            return operation()
        except PlatformError as exc:
            exc.attempts = attempt
            raise
        finally:
            self._spend()

    def execute(self, operation: Callable[[], T], *, description: str = "platform call") -> CallResult[T]:
        """Run ``operation`` until it succeeds, fails permanently or retries run out.

        A raised :class:`PlatformError` carries the number of attempts made in
        its ``attempts`` attribute.
        """

        try:
            for attempt in self._retrying(description):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    value = self._attempt(operation, attempts)
        except PlatformError as exc:
            if self.is_transient(exc):
                logger.error(
                    "%s failed after %d attempts: %s",
                    description,
                    exc.attempts,
                    exc,
                    extra={"metadata": {"status": exc.status, "attempts": exc.attempts}},
                )
            raise
        return CallResult(value=value, attempts=attempts)


__all__ = ["CallResult", "EntityTagStore", "RateLimitManager"]
