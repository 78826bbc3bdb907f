"""Last-known-good cache in front of one slow metric source."""

from __future__ import annotations

import itertools
import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Generic, TypeVar

from .models import FailureKind, SourceResult
from .sources import MetricSource, classify_failure

log = logging.getLogger("webuimon.telemetry")

T = TypeVar("T")


@dataclass(frozen=True)
class MetricCacheEntry(Generic[T]):
    value: T
    ok: bool = False
    refreshed_at: float | None = None
    failure: FailureKind = FailureKind.NONE
    consecutive_failures: int = 0


class MetricCache(Generic[T]):
    """
    Wraps exactly one source.

    ``refresh()`` runs one read on a short-lived worker thread and returns at once;
    ``read()`` hands back the current entry without waiting on any worker. A failed
    or overdue refresh keeps the previous value and ``ok`` flag; only after
    ``stale_after_failures`` failures in a row does the entry report ``ok=False``.
    """

    def __init__(
        self,
        source: MetricSource[T],
        empty: T | None = None,
        timeout_s: float = 5.0,
        stale_after_failures: int = 3,
        max_in_flight: int = 4,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.source = source
        self.name: str = getattr(source, "name", type(source).__name__)
        self.timeout_s = timeout_s
        self._stale_after = max(1, int(stale_after_failures))
        self._max_in_flight = max(1, int(max_in_flight))
        self._clock = clock

        initial = empty if empty is not None else getattr(source, "empty", None)
        self._entry: MetricCacheEntry[Any] = MetricCacheEntry(value=initial)
        self._lock = threading.Lock()
        self._tokens = itertools.count(1)
        self._pending: dict[int, float] = {}
        self._expired: set[int] = set()
        self._closed = False

    @property
    def in_flight(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def closed(self) -> bool:
        return self._closed

    def read(self) -> MetricCacheEntry[T]:
        with self._lock:
            return self._entry

    def refresh(self) -> bool:
        """Start one background read. Returns False when skipped."""
        token = 0
        with self._lock:
            if self._closed:
                return False
            now = self._clock()
            overdue, transition = self._expire_overdue_locked(now)
            skipped = len(self._pending) >= self._max_in_flight
            if not skipped:
                token = next(self._tokens)
                self._pending[token] = now

        for elapsed in overdue:
            log.warning(
                "%s refresh still running after %.2fs, counting it as timed out",
                self.name,
                elapsed,
                extra={"event": "refresh_timeout", "metric": self.name, "elapsed_s": round(elapsed, 2)},
            )
        self._log_transition(transition)
        if skipped:
            log.debug("%s refresh skipped, %d reads still in flight", self.name, self._max_in_flight)
            return False

        worker = threading.Thread(target=self._run, args=(token,), name=f"MetricCache-{self.name}", daemon=True)
        worker.start()
        return True

    def refresh_now(self) -> MetricCacheEntry[T]:
        """Run one read on the calling thread and return the resulting entry."""
        with self._lock:
            if self._closed:
                return self._entry
            token = next(self._tokens)
            self._pending[token] = self._clock()
        self._run(token)
        return self.read()

    def close(self) -> None:
        """Stop accepting results and release the source once."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        release = getattr(self.source, "close", None)
        if callable(release):
            try:
                release()
            except Exception:
                log.warning(f"{self.name} source close failed", exc_info=True, extra={"metric": self.name})

    def _invoke(self) -> SourceResult[Any]:
        try:
            return self.source.read()
        except Exception as exc:
            log.exception("%s source raised instead of reporting failure", self.name)
            return SourceResult.failed(None, classify_failure(exc), str(exc))

    def _run(self, token: int) -> None:
        result: SourceResult[Any] | None = None
        try:
            result = self._invoke()
        finally:
            self._complete(token, result)

    def _complete(self, token: int, result: SourceResult[Any] | None) -> None:
        finished = self._clock()
        with self._lock:
            started = self._pending.pop(token, finished)
            already_expired = token in self._expired
            self._expired.discard(token)
            if self._closed or already_expired or result is None:
                return

            elapsed = finished - started
            timed_out = elapsed > self.timeout_s
            if timed_out:
                result = SourceResult.failed(None, FailureKind.TIMEOUT, f"refresh took {elapsed:.2f}s")
            transition = self._apply_locked(result, finished)

        if timed_out:
            log.warning(
                "%s refresh took %.2fs (budget %.2fs), keeping previous value",
                self.name,
                elapsed,
                self.timeout_s,
                extra={"event": "refresh_timeout", "metric": self.name, "elapsed_s": round(elapsed, 2)},
            )
        self._log_transition(transition)

    def _expire_overdue_locked(self, now: float) -> tuple[list[float], tuple[str, str | None] | None]:
        overdue: list[float] = []
        transition = None
        for token, started in self._pending.items():
            if token in self._expired or now - started <= self.timeout_s:
                continue
            self._expired.add(token)
            overdue.append(now - started)
            transition = self._apply_locked(
                SourceResult.failed(None, FailureKind.TIMEOUT, "refresh overdue"), now
            ) or transition
        return overdue, transition

    def _apply_locked(self, result: SourceResult[Any], now: float) -> tuple[str, str | None] | None:
        prev = self._entry
        if result.ok:
            self._entry = MetricCacheEntry(value=result.value, ok=True, refreshed_at=now)
            if not prev.ok and prev.consecutive_failures > 0:
                return ("recovered", None)
            return None

        failures = prev.consecutive_failures + 1
        ok = prev.ok and failures < self._stale_after
        self._entry = replace(prev, ok=ok, failure=result.failure, consecutive_failures=failures)
        if prev.ok and not ok:
            return ("unavailable", result.detail)
        return None

    def _log_transition(self, transition: tuple[str, str | None] | None) -> None:
        if transition is None:
            return
        state, detail = transition
        if state == "recovered":
            log.info("%s telemetry available again", self.name, extra={"event": "metric_recovered", "metric": self.name})
        else:
            log.warning(
                "%s telemetry unavailable: %s",
                self.name,
                detail,
                extra={"event": "metric_unavailable", "metric": self.name},
            )
