import os
import sys
import tempfile
import threading
import time
import unittest
from datetime import datetime
from pathlib import Path
from unittest import mock

ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT / "packages" / "core"))
sys.path.insert(0, str(ROOT / "packages" / "telemetry"))

from webuimon_core.aggregator import SnapshotAggregator
from webuimon_core.alarm import AlarmRelay
from webuimon_core.config import AppConfig, validate_config
from webuimon_core.watchdog import ActivityWatchdog
from webuimon_telemetry.cache import MetricCache
from webuimon_telemetry.models import (
    EMPTY_CPU,
    EMPTY_GPU,
    EMPTY_MEMORY,
    EMPTY_NETWORK,
    EMPTY_VIRTUAL_MEMORY,
    CpuReading,
    FailureKind,
    GpuVramReading,
    MemoryReading,
    NetworkReading,
    SourceResult,
    VirtualMemoryReading,
)

FIXED_NOW = datetime(2026, 3, 14, 15, 9, 26)

EMPTY = {
    "gpu_vram": EMPTY_GPU,
    "cpu": EMPTY_CPU,
    "memory": EMPTY_MEMORY,
    "virtual_memory": EMPTY_VIRTUAL_MEMORY,
    "network": EMPTY_NETWORK,
}


class FakeClock:
    def __init__(self, t: float = 0.0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t


class StaticSource:
    def __init__(self, name: str, result: SourceResult, gate: threading.Event | None = None) -> None:
        self.name = name
        self.result = result
        self.gate = gate

    def read(self) -> SourceResult:
        if self.gate is not None:
            self.gate.wait(5.0)
        return self.result


class FakePlayer:
    def __init__(self) -> None:
        self.calls: list[str] = []

    def play(self) -> None:
        self.calls.append("play")

    def stop(self) -> None:
        self.calls.append("stop")


def healthy_sources(**overrides) -> dict:
    sources = {
        "gpu_vram": StaticSource(
            "gpu_vram", SourceResult.success(GpuVramReading(name="RTX 4090", used_gb=6.0, total_gb=24.0))
        ),
        "cpu": StaticSource("cpu", SourceResult.success(CpuReading(percent=37.5))),
        "memory": StaticSource(
            "memory", SourceResult.success(MemoryReading(total_gb=32.0, used_gb=8.0, percent=25.0))
        ),
        "virtual_memory": StaticSource(
            "virtual_memory",
            SourceResult.success(
                VirtualMemoryReading(total_gb=64.0, used_gb=16.0, percent=25.0, text="16.0 GB / 64.0 GB (25.0%)")
            ),
        ),
        "network": StaticSource(
            "network", SourceResult.success(NetworkReading(download_mbps=50.0, upload_mbps=12.5))
        ),
    }
    sources.update(overrides)
    return sources


def make_aggregator(sources=None, counts=None, clock=None, alarm=None) -> SnapshotAggregator:
    counter_values = list(counts or [0])

    def counter(_path):
        return counter_values.pop(0) if len(counter_values) > 1 else counter_values[0]

    watchdog = ActivityWatchdog(
        path_provider=lambda: "/outputs",
        stall_threshold_seconds=30.0,
        clock=clock or FakeClock(),
        counter=counter,
    )
    caches = {
        name: MetricCache(source, empty=EMPTY[name]) for name, source in (sources or healthy_sources()).items()
    }
    return SnapshotAggregator(watchdog=watchdog, caches=caches, alarm=alarm, now=lambda: FIXED_NOW)


class SnapshotAssemblyTests(unittest.TestCase):
    def test_collect_combines_watchdog_and_cached_metrics(self):
        agg = make_aggregator(counts=[12])
        agg.watchdog.tick()
        agg.prime()
        snap = agg.collect()

        self.assertEqual(snap.timestamp, FIXED_NOW)
        self.assertEqual(snap.file_count, 12)
        self.assertFalse(snap.is_alarm)
        self.assertEqual(snap.resolved_path, "/outputs")
        self.assertEqual(snap.gpu.name, "RTX 4090")
        self.assertEqual(snap.gpu.percent, 25.0)
        self.assertEqual(snap.cpu.percent, 37.5)
        self.assertEqual(snap.memory.percent, 25.0)
        self.assertEqual(snap.virtual_memory.text, "16.0 GB / 64.0 GB (25.0%)")
        self.assertEqual(snap.network.percent, 50.0)

    def test_payload_uses_flat_keys(self):
        agg = make_aggregator(counts=[3])
        agg.watchdog.tick()
        agg.prime()
        payload = agg.collect().to_payload()
        self.assertEqual(payload["timestamp"], "2026-03-14 15:09:26")
        self.assertEqual(payload["gpu_used_gb"], 6.0)
        self.assertEqual(payload["download_mbps"], 50.0)
        self.assertEqual(payload["upload_mbps"], 12.5)
        self.assertEqual(payload["file_count"], 3)
        self.assertIs(payload["is_alarm"], False)

    def test_percentages_are_clamped(self):
        sources = healthy_sources(
            gpu_vram=StaticSource(
                "gpu_vram", SourceResult.success(GpuVramReading(name="iGPU", used_gb=20.0, total_gb=16.0))
            ),
            network=StaticSource(
                "network", SourceResult.success(NetworkReading(download_mbps=400.0, upload_mbps=10.0))
            ),
        )
        agg = make_aggregator(sources=sources)
        agg.prime()
        snap = agg.collect()
        self.assertEqual(snap.gpu.percent, 100.0)
        self.assertEqual(snap.network.percent, 100.0)

    def test_unavailable_metrics_report_zero_and_na(self):
        sources = healthy_sources(
            gpu_vram=StaticSource(
                "gpu_vram",
                SourceResult.failed(GpuVramReading(name="N/A", used_gb=0.0, total_gb=0.0), FailureKind.UNAVAILABLE),
            ),
            virtual_memory=StaticSource(
                "virtual_memory",
                SourceResult.failed(
                    VirtualMemoryReading(total_gb=0.0, used_gb=0.0, percent=0.0, text="N/A"), FailureKind.ERROR
                ),
            ),
        )
        agg = make_aggregator(sources=sources)
        agg.prime()
        snap = agg.collect()
        self.assertFalse(snap.gpu.ok)
        self.assertEqual(snap.gpu.percent, 0.0)
        self.assertEqual(snap.virtual_memory.text, "N/A")
        self.assertTrue(snap.cpu.ok)

    def test_missing_cache_is_rejected(self):
        watchdog = ActivityWatchdog(path_provider=lambda: "/outputs")
        caches = {name: MetricCache(source) for name, source in healthy_sources().items()}
        del caches["network"]
        with self.assertRaises(ValueError):
            SnapshotAggregator(watchdog=watchdog, caches=caches)

    def test_publish_does_not_wait_for_slow_source(self):
        gate = threading.Event()
        sources = healthy_sources(
            gpu_vram=StaticSource(
                "gpu_vram",
                SourceResult.success(GpuVramReading(name="RTX 4090", used_gb=6.0, total_gb=24.0)),
                gate=gate,
            )
        )
        agg = make_aggregator(sources=sources)
        try:
            started = time.monotonic()
            snap = agg.publish_once()
            self.assertLess(time.monotonic() - started, 1.0)
            self.assertFalse(snap.gpu.ok)
            self.assertIs(agg.latest, snap)
        finally:
            gate.set()


class SubscriberTests(unittest.TestCase):
    def test_failing_subscriber_does_not_block_others(self):
        agg = make_aggregator()
        seen = []

        def broken(_snap):
            seen.append("broken")
            raise RuntimeError("display unplugged")

        agg.subscribe(broken)
        agg.subscribe(lambda snap: seen.append("second"))
        agg.subscribe(lambda snap: seen.append("third"))
        agg.publish_once()
        self.assertEqual(seen, ["broken", "second", "third"])

    def test_unsubscribe_stops_delivery(self):
        agg = make_aggregator()
        seen = []
        unsubscribe = agg.subscribe(seen.append)
        agg.publish_once()
        unsubscribe()
        unsubscribe()
        agg.publish_once()
        self.assertEqual(len(seen), 1)

    def test_alarm_relay_follows_transitions(self):
        clock = FakeClock()
        player = FakePlayer()
        agg = make_aggregator(counts=[4, 4, 4, 5], clock=clock, alarm=AlarmRelay(player))

        agg.watchdog.tick()
        agg.publish_once()
        self.assertEqual(player.calls, [])

        clock.t = 30.0
        agg.watchdog.tick()
        agg.publish_once()
        clock.t = 33.0
        agg.watchdog.tick()
        agg.publish_once()
        self.assertEqual(player.calls, ["play"])

        clock.t = 36.0
        agg.watchdog.tick()
        snap = agg.publish_once()
        self.assertFalse(snap.is_alarm)
        self.assertEqual(player.calls, ["play", "stop"])


class LifecycleTests(unittest.TestCase):
    def test_from_config_builds_caches_and_watchdog(self):
        cfg = AppConfig()
        cfg.monitoring.base_path = "/outputs"
        cfg.monitoring.stall_threshold_seconds = 45.0
        cfg.telemetry.refresh_timeout_s = 2.0
        cfg.telemetry.stale_after_failures = 5
        agg = SnapshotAggregator.from_config(cfg, sources=healthy_sources(), player=FakePlayer())

        self.assertEqual(set(agg.caches), {"gpu_vram", "cpu", "memory", "virtual_memory", "network"})
        self.assertEqual(agg.watchdog.stall_threshold_seconds, 45.0)
        self.assertEqual(agg.caches["cpu"].timeout_s, 2.0)
        self.assertIsNotNone(agg.alarm)

    def test_start_publishes_and_stop_joins(self):
        with tempfile.TemporaryDirectory() as tmp:
            cfg = AppConfig()
            cfg.monitoring.base_path = tmp
            cfg.monitoring.poll_interval_ms = 100
            cfg.publish.publish_interval_ms = 500
            player = FakePlayer()
            agg = SnapshotAggregator.from_config(cfg, sources=healthy_sources(), player=player)
            received = []
            agg.subscribe(received.append)

            agg.start()
            agg.start()
            deadline = time.monotonic() + 3.0
            while not received and time.monotonic() < deadline:
                time.sleep(0.02)

            self.assertTrue(agg.running)
            self.assertTrue(agg.stop(timeout=3.0))
            self.assertFalse(agg.running)
            self.assertFalse(agg.watchdog.running)
            self.assertTrue(received)
            self.assertTrue(all(cache.closed for cache in agg.caches.values()))
            self.assertEqual(player.calls[-1], "stop")

    def test_home_relative_base_path_watches_expanded_folder(self):
        with tempfile.TemporaryDirectory() as tmp:
            outputs = Path(tmp) / "outputs"
            outputs.mkdir()
            for name in ("a.png", "b.png", "c.png"):
                (outputs / name).write_bytes(b"x")
            cfg = AppConfig()
            cfg.monitoring.base_path = "~/outputs"

            with mock.patch.dict(os.environ, {"HOME": tmp, "USERPROFILE": tmp}):
                self.assertEqual(validate_config(cfg, roots=[]), outputs)
                agg = SnapshotAggregator.from_config(cfg, sources=healthy_sources(), player=FakePlayer())
                state = agg.watchdog.tick()

        self.assertEqual(cfg.monitoring.base_path, str(outputs))
        self.assertEqual(state.resolved_path, str(outputs))
        self.assertEqual(state.file_count, 3)

    def test_stop_releases_sources(self):
        class ClosingSource(StaticSource):
            def __init__(self, *args) -> None:
                super().__init__(*args)
                self.closed = 0

            def close(self) -> None:
                self.closed += 1

        gpu = ClosingSource(
            "gpu_vram", SourceResult.success(GpuVramReading(name="RTX 4090", used_gb=6.0, total_gb=24.0))
        )
        agg = make_aggregator(sources=healthy_sources(gpu_vram=gpu))
        agg.stop(timeout=1.0)
        agg.stop(timeout=1.0)
        self.assertEqual(gpu.closed, 1)

    def test_publish_after_stop_does_not_restart_alarm(self):
        clock = FakeClock()
        player = FakePlayer()
        agg = make_aggregator(counts=[4], clock=clock, alarm=AlarmRelay(player))
        agg.watchdog.tick()
        clock.t = 31.0
        agg.watchdog.tick()
        self.assertTrue(agg.watchdog.state.is_alarm)

        agg.stop(timeout=1.0)
        agg.publish_once()
        self.assertEqual(player.calls, ["stop"])


if __name__ == "__main__":
    unittest.main()
