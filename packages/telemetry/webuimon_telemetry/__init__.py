"""Host telemetry sources and non-blocking metric caches for WebUI Monitor."""

from .cache import MetricCache, MetricCacheEntry
from .models import (
    CpuReading,
    FailureKind,
    GpuVramReading,
    MemoryReading,
    NetworkReading,
    SourceResult,
    VirtualMemoryReading,
)
from .sources import (
    CounterGpuVramSource,
    CpuPercentSource,
    MetricSource,
    NetworkThroughputSource,
    NvmlGpuVramSource,
    PhysicalMemorySource,
    UnavailableGpuVramSource,
    VirtualMemorySource,
    build_default_sources,
    build_gpu_vram_source,
    close_sources,
)

__all__ = [
    "CounterGpuVramSource",
    "CpuPercentSource",
    "CpuReading",
    "FailureKind",
    "GpuVramReading",
    "MemoryReading",
    "MetricCache",
    "MetricCacheEntry",
    "MetricSource",
    "NetworkReading",
    "NetworkThroughputSource",
    "NvmlGpuVramSource",
    "PhysicalMemorySource",
    "SourceResult",
    "UnavailableGpuVramSource",
    "VirtualMemoryReading",
    "VirtualMemorySource",
    "build_default_sources",
    "build_gpu_vram_source",
    "close_sources",
]
