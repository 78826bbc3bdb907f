"""Host metric sources with explicit success flags and graceful GPU fallbacks."""

from __future__ import annotations

import logging
import platform
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Generic, Mapping, Protocol, TypeVar

import psutil

from .models import (
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

log = logging.getLogger("webuimon.telemetry")

T = TypeVar("T")
T_co = TypeVar("T_co", covariant=True)

_GB = 1024**3
_MB = 1024 * 1024
_NO_WINDOW = getattr(subprocess, "CREATE_NO_WINDOW", 0)

_VRAM_COUNTER_SCRIPT = (
    r"((Get-Counter '\GPU Process Memory(*)\Local Usage' -ErrorAction SilentlyContinue).CounterSamples"
    r" | Select-Object -ExpandProperty CookedValue | Measure-Object -Sum).Sum"
)


class MetricSource(Protocol[T_co]):
    name: str

    def read(self) -> SourceResult[T_co]:
        ...


def classify_failure(exc: BaseException) -> FailureKind:
    if isinstance(exc, (subprocess.TimeoutExpired, TimeoutError)):
        return FailureKind.TIMEOUT
    if isinstance(exc, (PermissionError, psutil.AccessDenied)):
        return FailureKind.PERMISSION
    if isinstance(exc, (FileNotFoundError, NotImplementedError, ImportError)):
        return FailureKind.UNAVAILABLE
    return FailureKind.ERROR


class _GuardedSource(Generic[T]):
    """Turns any exception raised by ``_read`` into a failed result."""

    name = "source"
    empty: Any = None

    def read(self) -> SourceResult[T]:
        try:
            return self._read()
        except Exception as exc:
            kind = classify_failure(exc)
            log.debug("%s read failed (%s): %s", self.name, kind.value, exc)
            return SourceResult.failed(self.empty, kind, str(exc) or type(exc).__name__)

    def _read(self) -> SourceResult[T]:
        raise NotImplementedError


class NvmlGpuVramSource(_GuardedSource[GpuVramReading]):
    name = "gpu_vram"
    empty = EMPTY_GPU

    def __init__(self, index: int = 0) -> None:
        import pynvml  # type: ignore

        self._nvml = pynvml
        self._index = index
        self._initialized = False
        pynvml.nvmlInit()
        self._initialized = True

    def _read(self) -> SourceResult[GpuVramReading]:
        nvml = self._nvml
        if nvml.nvmlDeviceGetCount() <= self._index:
            return SourceResult.failed(self.empty, FailureKind.UNAVAILABLE, "no NVML device")

        h = nvml.nvmlDeviceGetHandleByIndex(self._index)
        name = nvml.nvmlDeviceGetName(h)
        if isinstance(name, bytes):
            name = name.decode("utf-8", errors="replace")
        mem = nvml.nvmlDeviceGetMemoryInfo(h)
        return SourceResult.success(
            GpuVramReading(name=str(name), used_gb=mem.used / _GB, total_gb=mem.total / _GB)
        )

    def close(self) -> None:
        if not self._initialized:
            return
        self._initialized = False
        try:
            self._nvml.nvmlShutdown()
        except Exception:
            log.debug("nvmlShutdown failed", exc_info=True)


class CounterGpuVramSource(_GuardedSource[GpuVramReading]):
    """
    Sums ``\\GPU Process Memory(*)\\Local Usage`` through a PowerShell child process.

    The counter only reports usage, so the total comes from configuration.
    """

    name = "gpu_vram"
    empty = EMPTY_GPU

    def __init__(
        self,
        gpu_name: str = "GPU",
        total_gb: float = 16.0,
        timeout_s: float = 5.0,
        runner: Callable[..., Any] = subprocess.run,
    ) -> None:
        self._gpu_name = gpu_name
        self._total_gb = total_gb
        self._timeout_s = timeout_s
        self._runner = runner
        self._exe = shutil.which("powershell") or "powershell"

    def _read(self) -> SourceResult[GpuVramReading]:
        result = self._runner(
            [self._exe, "-NoProfile", "-ExecutionPolicy", "Bypass", "-Command", _VRAM_COUNTER_SCRIPT],
            capture_output=True,
            text=True,
            timeout=self._timeout_s,
            creationflags=_NO_WINDOW,
        )
        if result.returncode != 0:
            return SourceResult.failed(self.empty, FailureKind.ERROR, f"powershell exit code {result.returncode}")

        output = (result.stdout or "").strip()
        if not output:
            return SourceResult.failed(self.empty, FailureKind.UNAVAILABLE, "empty counter output")
        try:
            used_bytes = float(output)
        except ValueError:
            return SourceResult.failed(self.empty, FailureKind.ERROR, f"unparsable counter output: {output[:60]}")

        return SourceResult.success(
            GpuVramReading(name=self._gpu_name, used_gb=used_bytes / _GB, total_gb=self._total_gb)
        )


class UnavailableGpuVramSource(_GuardedSource[GpuVramReading]):
    name = "gpu_vram"
    empty = EMPTY_GPU

    def _read(self) -> SourceResult[GpuVramReading]:
        return SourceResult.failed(self.empty, FailureKind.UNAVAILABLE, "no GPU memory backend")


def build_gpu_vram_source(gpu_name: str = "", total_gb: float = 16.0, timeout_s: float = 5.0) -> MetricSource[GpuVramReading]:
    try:
        return NvmlGpuVramSource()
    except Exception as exc:
        log.info("NVML unavailable, trying counter fallback: %s", exc)

    if platform.system() == "Windows" and shutil.which("powershell"):
        return CounterGpuVramSource(gpu_name=gpu_name or "GPU", total_gb=total_gb, timeout_s=timeout_s)
    return UnavailableGpuVramSource()


class CpuPercentSource(_GuardedSource[CpuReading]):
    name = "cpu"
    empty = EMPTY_CPU

    def __init__(self) -> None:
        try:
            # Prime non-blocking CPU measurement.
            psutil.cpu_percent(interval=None)
        except Exception:
            log.debug("cpu_percent priming failed", exc_info=True)

    def _read(self) -> SourceResult[CpuReading]:
        percent = float(psutil.cpu_percent(interval=None))
        return SourceResult.success(CpuReading(percent=max(0.0, min(100.0, percent))))


class PhysicalMemorySource(_GuardedSource[MemoryReading]):
    name = "memory"
    empty = EMPTY_MEMORY

    def _read(self) -> SourceResult[MemoryReading]:
        vm = psutil.virtual_memory()
        if vm.total <= 0:
            return SourceResult.failed(self.empty, FailureKind.UNAVAILABLE, "physical memory total is zero")
        total_gb = vm.total / _GB
        used_gb = (vm.total - vm.available) / _GB
        return SourceResult.success(
            MemoryReading(total_gb=total_gb, used_gb=used_gb, percent=round(used_gb / total_gb * 100, 1))
        )


class VirtualMemorySource(_GuardedSource[VirtualMemoryReading]):
    """Commit charge approximated as used RAM plus used swap over RAM plus swap."""

    name = "virtual_memory"
    empty = EMPTY_VIRTUAL_MEMORY

    def _read(self) -> SourceResult[VirtualMemoryReading]:
        vm = psutil.virtual_memory()
        swap = psutil.swap_memory()
        limit = vm.total + swap.total
        if limit <= 0:
            return SourceResult.failed(self.empty, FailureKind.UNAVAILABLE, "commit limit is zero")
        committed = (vm.total - vm.available) + swap.used

        total_gb = limit / _GB
        used_gb = committed / _GB
        percent = round(committed / limit * 100, 1)
        text = f"{used_gb:.1f} GB / {total_gb:.1f} GB ({percent:.1f}%)"
        return SourceResult.success(
            VirtualMemoryReading(total_gb=total_gb, used_gb=used_gb, percent=percent, text=text)
        )


@dataclass
class _CounterSnapshot:
    ts: float
    net_sent: int
    net_recv: int


class NetworkThroughputSource(_GuardedSource[NetworkReading]):
    """Throughput in MB/s computed from byte counter deltas between reads."""

    name = "network"
    empty = EMPTY_NETWORK

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._prev: _CounterSnapshot | None = None
        try:
            self._prev = self._sample()
        except Exception:
            log.debug("network counter priming failed", exc_info=True)

    def _sample(self) -> _CounterSnapshot | None:
        net = psutil.net_io_counters()
        if not net:
            return None
        return _CounterSnapshot(ts=self._clock(), net_sent=net.bytes_sent, net_recv=net.bytes_recv)

    def _read(self) -> SourceResult[NetworkReading]:
        current = self._sample()
        if current is None:
            return SourceResult.failed(self.empty, FailureKind.UNAVAILABLE, "no network counters")

        with self._lock:
            prev = self._prev
            self._prev = current
        if prev is None:
            return SourceResult.failed(self.empty, FailureKind.UNAVAILABLE, "network counters warming up")

        elapsed = max(current.ts - prev.ts, 1e-6)
        return SourceResult.success(
            NetworkReading(
                download_mbps=max(current.net_recv - prev.net_recv, 0) / elapsed / _MB,
                upload_mbps=max(current.net_sent - prev.net_sent, 0) / elapsed / _MB,
            )
        )


def build_default_sources(
    gpu_name: str = "",
    fallback_vram_total_gb: float = 16.0,
    timeout_s: float = 5.0,
) -> dict[str, MetricSource[Any]]:
    return {
        "gpu_vram": build_gpu_vram_source(gpu_name=gpu_name, total_gb=fallback_vram_total_gb, timeout_s=timeout_s),
        "cpu": CpuPercentSource(),
        "memory": PhysicalMemorySource(),
        "virtual_memory": VirtualMemorySource(),
        "network": NetworkThroughputSource(),
    }


def close_sources(sources: Mapping[str, MetricSource[Any]]) -> None:
    """Release every source that holds a driver or library handle."""
    for name, source in sources.items():
        release = getattr(source, "close", None)
        if not callable(release):
            continue
        try:
            release()
        except Exception:
            log.warning(f"{name} source close failed", exc_info=True)
