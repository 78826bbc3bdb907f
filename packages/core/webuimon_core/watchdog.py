"""
Output folder stall watchdog.

State machine: UNINITIALIZED -> ACTIVE <-> STALLED

Only a strict increase over the baseline file count resets the stall timer. A
decrease (files archived away) leaves both the baseline and the timer alone.
"""

from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Callable

from .logging_setup import get_logger

log = get_logger("watchdog")


class WatchdogPhase(str, Enum):
    UNINITIALIZED = "Uninitialized"
    ACTIVE = "Active"
    STALLED = "Stalled"


@dataclass(frozen=True)
class WatchdogState:
    phase: WatchdogPhase = WatchdogPhase.UNINITIALIZED
    resolved_path: str = ""
    file_count: int = 0
    baseline_count: int | None = None
    last_change_time: float | None = None
    is_alarm: bool = False
    ticks: int = 0


def count_files(path: Path) -> int:
    """Regular files directly inside ``path``; 0 when the folder does not exist."""
    if not path.is_dir():
        return 0
    with os.scandir(path) as entries:
        return sum(1 for entry in entries if entry.is_file())


def advance(
    state: WatchdogState,
    path: str,
    count: int,
    now: float,
    stall_threshold_seconds: float,
    reset_baseline_on_path_change: bool = True,
) -> WatchdogState:
    """One evaluation of the stall state machine. Pure."""
    ticks = state.ticks + 1

    if reset_baseline_on_path_change and state.baseline_count is not None and path != state.resolved_path:
        state = WatchdogState()

    if state.baseline_count is None or state.last_change_time is None:
        return WatchdogState(
            phase=WatchdogPhase.ACTIVE,
            resolved_path=path,
            file_count=count,
            baseline_count=count,
            last_change_time=now,
            is_alarm=False,
            ticks=ticks,
        )

    if count > state.baseline_count:
        return replace(
            state,
            phase=WatchdogPhase.ACTIVE,
            resolved_path=path,
            file_count=count,
            baseline_count=count,
            last_change_time=now,
            is_alarm=False,
            ticks=ticks,
        )

    stalled = (now - state.last_change_time) >= stall_threshold_seconds
    return replace(
        state,
        phase=WatchdogPhase.STALLED if stalled else WatchdogPhase.ACTIVE,
        resolved_path=path,
        file_count=count,
        is_alarm=stalled,
        ticks=ticks,
    )


class ActivityWatchdog:
    """
    Polls the file count of the resolved output folder on a background thread.

    The state is an immutable record swapped under a lock; accessors never wait
    on a tick in progress.
    """

    def __init__(
        self,
        path_provider: Callable[[], str | Path] | None = None,
        stall_threshold_seconds: float = 30.0,
        poll_interval_ms: int = 3000,
        reset_baseline_on_path_change: bool = True,
        clock: Callable[[], float] = time.monotonic,
        counter: Callable[[Path], int] = count_files,
    ) -> None:
        self.stall_threshold_seconds = float(stall_threshold_seconds)
        self.poll_interval_ms = int(poll_interval_ms)
        self.reset_baseline_on_path_change = reset_baseline_on_path_change
        self._provider: Callable[[], str | Path] | None = path_provider
        self._clock = clock
        self._counter = counter

        self._state = WatchdogState()
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._stop_evt = threading.Event()

    def set_path(self, path: str | Path) -> None:
        fixed = Path(path)
        self._provider = lambda: fixed

    def set_path_provider(self, provider: Callable[[], str | Path]) -> None:
        self._provider = provider

    @property
    def state(self) -> WatchdogState:
        with self._lock:
            return self._state

    @property
    def is_alarm(self) -> bool:
        return self.state.is_alarm

    @property
    def file_count(self) -> int:
        return self.state.file_count

    @property
    def current_path(self) -> str:
        return self.state.resolved_path

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _resolve(self) -> str:
        if self._provider is None:
            return self.state.resolved_path
        try:
            return str(self._provider())
        except Exception:
            log.exception("path provider failed, keeping previous path")
            return self.state.resolved_path

    def _count(self, path: str) -> int:
        if not path:
            return 0
        try:
            return int(self._counter(Path(path)))
        except OSError as exc:
            log.warning(f"listing {path} failed: {exc}", extra={"event": "listing_error", "path": path})
            return 0

    def tick(self) -> WatchdogState:
        prev = self.state
        path = self._resolve()
        count = self._count(path)
        now = self._clock()

        new = advance(
            prev,
            path=path,
            count=count,
            now=now,
            stall_threshold_seconds=self.stall_threshold_seconds,
            reset_baseline_on_path_change=self.reset_baseline_on_path_change,
        )
        with self._lock:
            self._state = new

        if prev.resolved_path and path != prev.resolved_path:
            log.info(
                f"monitor path changed: {prev.resolved_path} -> {path}",
                extra={"event": "path_changed", "path": path, "count": count},
            )
        if new.is_alarm and not prev.is_alarm:
            idle = now - (new.last_change_time or now)
            log.warning(
                f"no new files in {path} for {idle:.0f}s (count {count})",
                extra={"event": "alarm_raised", "path": path, "count": count, "elapsed_s": round(idle, 1)},
            )
        elif prev.is_alarm and not new.is_alarm:
            log.info(
                f"output resumed in {path} (count {count})",
                extra={"event": "alarm_cleared", "path": path, "count": count},
            )
        log.debug("tick path=%s count=%d phase=%s", path, count, new.phase.value)
        return new

    def start(self) -> None:
        if self.running:
            return
        self._stop_evt.clear()
        self._thread = threading.Thread(target=self._run, name="ActivityWatchdog", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> bool:
        """Signal the loop to exit; with ``timeout`` also wait for it. True once stopped."""
        self._stop_evt.set()
        thread = self._thread
        if thread is None:
            return True
        if timeout is not None and thread is not threading.current_thread():
            thread.join(timeout)
        return not thread.is_alive()

    def _run(self) -> None:
        while not self._stop_evt.is_set():
            try:
                self.tick()
            except Exception:
                log.exception("watchdog tick failed")
            self._stop_evt.wait(self.poll_interval_ms / 1000.0)
