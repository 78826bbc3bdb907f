"""Snapshot aggregation: fires cache refreshes and publishes consolidated snapshots on a fixed cadence."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Callable, Mapping

from webuimon_telemetry import MetricCache, MetricSource, build_default_sources
from webuimon_telemetry.models import EMPTY_CPU, EMPTY_GPU, EMPTY_MEMORY, EMPTY_NETWORK, EMPTY_VIRTUAL_MEMORY

from .alarm import AlarmPlayer, AlarmRelay, build_alarm_player
from .config import AppConfig
from .logging_setup import get_logger
from .models import (
    CpuSection,
    GpuSection,
    MemorySection,
    NetworkSection,
    Snapshot,
    VirtualMemorySection,
    network_percent,
    usage_percent,
)
from .paths import PathResolver
from .watchdog import ActivityWatchdog

log = get_logger("aggregator")

METRIC_NAMES = ("gpu_vram", "cpu", "memory", "virtual_memory", "network")

_EMPTY_READINGS: dict[str, Any] = {
    "gpu_vram": EMPTY_GPU,
    "cpu": EMPTY_CPU,
    "memory": EMPTY_MEMORY,
    "virtual_memory": EMPTY_VIRTUAL_MEMORY,
    "network": EMPTY_NETWORK,
}

Subscriber = Callable[[Snapshot], None]


class SnapshotAggregator:
    """
    Owns the watchdog, one cache per metric, and the subscriber list.

    A publish tick never waits on a source: it kicks off refreshes and immediately
    assembles a snapshot from whatever each cache currently holds.
    """

    def __init__(
        self,
        watchdog: ActivityWatchdog,
        caches: Mapping[str, MetricCache[Any]],
        publish_interval_ms: int = 2000,
        network_capacity_mbps: float = 125.0,
        alarm: AlarmRelay | None = None,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        missing = [name for name in METRIC_NAMES if name not in caches]
        if missing:
            raise ValueError(f"missing metric caches: {', '.join(missing)}")

        self.watchdog = watchdog
        self.caches = dict(caches)
        self.publish_interval_ms = int(publish_interval_ms)
        self.network_capacity_mbps = float(network_capacity_mbps)
        self.alarm = alarm
        self._now = now

        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()
        self._latest: Snapshot | None = None
        self._thread: threading.Thread | None = None
        self._stop_evt = threading.Event()

    @classmethod
    def from_config(
        cls,
        cfg: AppConfig,
        sources: Mapping[str, MetricSource[Any]] | None = None,
        player: AlarmPlayer | None = None,
    ) -> "SnapshotAggregator":
        mon = cfg.monitoring
        tel = cfg.telemetry
        watchdog = ActivityWatchdog(
            path_provider=PathResolver(mon.base_path, dated_parent=mon.dated_parent),
            stall_threshold_seconds=mon.stall_threshold_seconds,
            poll_interval_ms=mon.poll_interval_ms,
            reset_baseline_on_path_change=mon.reset_baseline_on_path_change,
        )
        if sources is None:
            sources = build_default_sources(
                gpu_name=tel.gpu_name,
                fallback_vram_total_gb=tel.fallback_vram_total_gb,
                timeout_s=tel.refresh_timeout_s,
            )
        caches = {
            name: MetricCache(
                source,
                empty=_EMPTY_READINGS.get(name),
                timeout_s=tel.refresh_timeout_s,
                stale_after_failures=tel.stale_after_failures,
            )
            for name, source in sources.items()
        }
        return cls(
            watchdog=watchdog,
            caches=caches,
            publish_interval_ms=cfg.publish.publish_interval_ms,
            network_capacity_mbps=tel.network_capacity_mbps,
            alarm=AlarmRelay(player or build_alarm_player(cfg)),
        )

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    @property
    def latest(self) -> Snapshot | None:
        with self._lock:
            return self._latest

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return _unsubscribe

    def prime(self) -> None:
        """Refresh every cache synchronously on the calling thread."""
        for cache in self.caches.values():
            cache.refresh_now()

    def collect(self) -> Snapshot:
        wd = self.watchdog.state
        gpu = self.caches["gpu_vram"].read()
        cpu = self.caches["cpu"].read()
        mem = self.caches["memory"].read()
        vmem = self.caches["virtual_memory"].read()
        net = self.caches["network"].read()

        return Snapshot(
            timestamp=self._now(),
            file_count=wd.file_count,
            is_alarm=wd.is_alarm,
            resolved_path=wd.resolved_path,
            gpu=GpuSection(
                name=gpu.value.name,
                used_gb=gpu.value.used_gb,
                total_gb=gpu.value.total_gb,
                percent=usage_percent(gpu.value.used_gb, gpu.value.total_gb, gpu.ok),
                ok=gpu.ok,
            ),
            cpu=CpuSection(
                percent=(max(0.0, min(100.0, cpu.value.percent)) if cpu.ok else 0.0),
                ok=cpu.ok,
            ),
            memory=MemorySection(
                total_gb=mem.value.total_gb,
                used_gb=mem.value.used_gb,
                percent=usage_percent(mem.value.used_gb, mem.value.total_gb, mem.ok),
                ok=mem.ok,
            ),
            virtual_memory=VirtualMemorySection(
                total_gb=vmem.value.total_gb,
                used_gb=vmem.value.used_gb,
                percent=usage_percent(vmem.value.used_gb, vmem.value.total_gb, vmem.ok),
                text=(vmem.value.text if vmem.ok else "N/A"),
                ok=vmem.ok,
            ),
            network=NetworkSection(
                download_mbps=net.value.download_mbps,
                upload_mbps=net.value.upload_mbps,
                percent=network_percent(
                    net.value.download_mbps + net.value.upload_mbps, self.network_capacity_mbps, net.ok
                ),
                ok=net.ok,
            ),
        )

    def publish_once(self) -> Snapshot:
        for cache in self.caches.values():
            cache.refresh()
        snapshot = self.collect()
        with self._lock:
            self._latest = snapshot
        self._dispatch(snapshot)
        return snapshot

    def _dispatch(self, snapshot: Snapshot) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        if self.alarm is not None and not self._stop_evt.is_set():
            subscribers.insert(0, self.alarm)

        for subscriber in subscribers:
            try:
                subscriber(snapshot)
            except Exception:
                log.exception(
                    f"subscriber {getattr(subscriber, '__name__', subscriber)!r} failed",
                    extra={"event": "subscriber_error"},
                )

    def start(self) -> None:
        if self.running:
            return
        self._stop_evt.clear()
        if self.alarm is not None:
            self.alarm.resume()
        self.watchdog.start()
        self._thread = threading.Thread(target=self._run, name="SnapshotAggregator", daemon=True)
        self._thread.start()
        log.info(
            f"monitoring started interval={self.publish_interval_ms}ms caches={','.join(self.caches)}",
            extra={"event": "monitoring_started"},
        )

    def stop(self, timeout: float | None = 5.0) -> bool:
        """Stop both loops and wait up to ``timeout`` for them. True when nothing is left running."""
        self._stop_evt.set()
        watchdog_stopped = self.watchdog.stop(timeout)

        thread = self._thread
        if thread is not None and timeout is not None and thread is not threading.current_thread():
            thread.join(timeout)
        publisher_stopped = thread is None or not thread.is_alive()

        for cache in self.caches.values():
            cache.close()
        if self.alarm is not None:
            self.alarm.stop()

        log.info("monitoring stopped", extra={"event": "monitoring_stopped"})
        return watchdog_stopped and publisher_stopped

    def _run(self) -> None:
        interval = self.publish_interval_ms / 1000.0
        while not self._stop_evt.is_set():
            try:
                self.publish_once()
            except Exception:
                log.exception("publish tick failed")
            self._stop_evt.wait(interval)
