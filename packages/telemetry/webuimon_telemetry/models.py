"""Typed telemetry readings and source results."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar


T = TypeVar("T")


class FailureKind(str, Enum):
    NONE = "none"
    TIMEOUT = "timeout"
    PERMISSION = "permission"
    UNAVAILABLE = "unavailable"
    ERROR = "error"


@dataclass(frozen=True)
class GpuVramReading:
    name: str
    used_gb: float
    total_gb: float


@dataclass(frozen=True)
class CpuReading:
    percent: float


@dataclass(frozen=True)
class MemoryReading:
    total_gb: float
    used_gb: float
    percent: float


@dataclass(frozen=True)
class VirtualMemoryReading:
    total_gb: float
    used_gb: float
    percent: float
    text: str


@dataclass(frozen=True)
class NetworkReading:
    download_mbps: float
    upload_mbps: float


EMPTY_GPU = GpuVramReading(name="N/A", used_gb=0.0, total_gb=0.0)
EMPTY_CPU = CpuReading(percent=0.0)
EMPTY_MEMORY = MemoryReading(total_gb=0.0, used_gb=0.0, percent=0.0)
EMPTY_VIRTUAL_MEMORY = VirtualMemoryReading(total_gb=0.0, used_gb=0.0, percent=0.0, text="N/A")
EMPTY_NETWORK = NetworkReading(download_mbps=0.0, upload_mbps=0.0)


@dataclass(frozen=True)
class SourceResult(Generic[T]):
    """Outcome of one source read. ``value`` is meaningful only when ``ok``."""

    value: T
    ok: bool
    failure: FailureKind = FailureKind.NONE
    detail: str | None = None

    @classmethod
    def success(cls, value: T) -> "SourceResult[T]":
        return cls(value=value, ok=True)

    @classmethod
    def failed(cls, value: T, failure: FailureKind, detail: str | None = None) -> "SourceResult[T]":
        return cls(value=value, ok=False, failure=failure, detail=detail)
