"""Published snapshot model."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any


def usage_percent(used: float, total: float, ok: bool) -> float:
    if not ok or total <= 0:
        return 0.0
    return max(0.0, min(100.0, used / total * 100.0))


def network_percent(measured_mbps: float, capacity_mbps: float, ok: bool = True) -> float:
    if not ok or capacity_mbps <= 0:
        return 0.0
    return max(0.0, min(measured_mbps / capacity_mbps * 100.0, 100.0))


@dataclass(frozen=True)
class GpuSection:
    name: str
    used_gb: float
    total_gb: float
    percent: float
    ok: bool


@dataclass(frozen=True)
class CpuSection:
    percent: float
    ok: bool


@dataclass(frozen=True)
class MemorySection:
    total_gb: float
    used_gb: float
    percent: float
    ok: bool


@dataclass(frozen=True)
class VirtualMemorySection:
    total_gb: float
    used_gb: float
    percent: float
    text: str
    ok: bool


@dataclass(frozen=True)
class NetworkSection:
    download_mbps: float
    upload_mbps: float
    percent: float
    ok: bool


@dataclass(frozen=True)
class Snapshot:
    timestamp: datetime
    file_count: int
    is_alarm: bool
    resolved_path: str
    gpu: GpuSection
    cpu: CpuSection
    memory: MemorySection
    virtual_memory: VirtualMemorySection
    network: NetworkSection

    def to_payload(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            "gpu_name": self.gpu.name,
            "gpu_used_gb": self.gpu.used_gb,
            "gpu_total_gb": self.gpu.total_gb,
            "gpu_percent": self.gpu.percent,
            "cpu_percent": self.cpu.percent,
            "mem_total_gb": self.memory.total_gb,
            "mem_used_gb": self.memory.used_gb,
            "mem_percent": self.memory.percent,
            "vmem_total_gb": self.virtual_memory.total_gb,
            "vmem_used_gb": self.virtual_memory.used_gb,
            "vmem_percent": self.virtual_memory.percent,
            "vmem_text": self.virtual_memory.text,
            "download_mbps": self.network.download_mbps,
            "upload_mbps": self.network.upload_mbps,
            "file_count": self.file_count,
            "is_alarm": self.is_alarm,
            "resolved_path": self.resolved_path,
        }
