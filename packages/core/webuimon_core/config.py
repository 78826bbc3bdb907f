"""Persistent monitor settings schema, load/save helpers and startup validation."""

from __future__ import annotations

import json
import logging
import os
import platform
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Iterable

import psutil


CONFIG_VERSION = 1
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
WEBUI_OUTPUTS = Path("stable-diffusion-webui") / "outputs"


class ConfigError(Exception):
    """Configuration that makes monitoring impossible. Raised before anything starts."""


@dataclass
class MonitoringConfig:
    base_path: str = ""
    auto_detect: bool = False
    dated_parent: str = ""
    stall_threshold_seconds: float = 30.0
    poll_interval_ms: int = 3000
    reset_baseline_on_path_change: bool = True


@dataclass
class PublishConfig:
    publish_interval_ms: int = 2000


@dataclass
class TelemetryConfig:
    refresh_timeout_s: float = 5.0
    network_capacity_mbps: float = 125.0
    fallback_vram_total_gb: float = 16.0
    gpu_name: str = ""
    stale_after_failures: int = 3


@dataclass
class AlarmConfig:
    audio_path: str = "alarm.wav"
    enabled: bool = True


@dataclass
class DiagnosticsConfig:
    keep_log_files: int = 7
    log_level: str = "INFO"


@dataclass
class AppConfig:
    config_version: int = CONFIG_VERSION
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    publish: PublishConfig = field(default_factory=PublishConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)
    alarm: AlarmConfig = field(default_factory=AlarmConfig)
    diagnostics: DiagnosticsConfig = field(default_factory=DiagnosticsConfig)
    source_path: str | None = None


def config_root() -> Path:
    system = platform.system()
    if system == "Windows":
        base = Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
        return base / "WebUIMonitor"
    if system == "Darwin":
        return Path.home() / "Library" / "Application Support" / "WebUIMonitor"
    return Path.home() / ".config" / "webuimon"


def config_path() -> Path:
    return config_root() / "config.json"


def _merge(dataclass_type, raw: dict[str, Any]):
    defaults = dataclass_type()  # type: ignore[misc]
    for k, v in (raw or {}).items():
        if hasattr(defaults, k):
            setattr(defaults, k, v)
    return defaults


def _normalize_monitoring(cfg: AppConfig) -> None:
    mon = cfg.monitoring
    mon.base_path = str(mon.base_path or "").strip()
    mon.dated_parent = str(mon.dated_parent or "").strip()
    mon.stall_threshold_seconds = float(max(1.0, float(mon.stall_threshold_seconds)))
    mon.poll_interval_ms = max(100, int(mon.poll_interval_ms))
    mon.auto_detect = bool(mon.auto_detect)
    mon.reset_baseline_on_path_change = bool(mon.reset_baseline_on_path_change)


def _normalize_publish(cfg: AppConfig) -> None:
    cfg.publish.publish_interval_ms = max(500, min(2000, int(cfg.publish.publish_interval_ms)))


def _normalize_telemetry(cfg: AppConfig) -> None:
    tel = cfg.telemetry
    tel.refresh_timeout_s = float(max(0.5, float(tel.refresh_timeout_s)))
    tel.network_capacity_mbps = float(max(0.1, float(tel.network_capacity_mbps)))
    tel.fallback_vram_total_gb = float(max(0.0, float(tel.fallback_vram_total_gb)))
    tel.stale_after_failures = max(1, int(tel.stale_after_failures))


def _normalize_diagnostics(cfg: AppConfig) -> None:
    diag = cfg.diagnostics
    diag.keep_log_files = max(2, int(diag.keep_log_files))
    level = str(diag.log_level or "INFO").strip().upper()
    diag.log_level = level if level in LOG_LEVELS else "INFO"


def _migrate(raw: dict[str, Any]) -> dict[str, Any]:
    data = dict(raw)

    if "config_version" not in data:
        # Legacy flat file: {"MonitoringPath": ..., "AudioPath": ..., "AutoDetect": ...}
        monitoring = dict(data.get("monitoring", {}) or {})
        if "MonitoringPath" in data:
            monitoring.setdefault("base_path", data.pop("MonitoringPath") or "")
        if "AutoDetect" in data:
            monitoring.setdefault("auto_detect", bool(data.pop("AutoDetect")))
        alarm = dict(data.get("alarm", {}) or {})
        if "AudioPath" in data:
            alarm.setdefault("audio_path", data.pop("AudioPath") or "alarm.wav")
        data["monitoring"] = monitoring
        data["alarm"] = alarm
        data["config_version"] = CONFIG_VERSION

    return data


def load_config(path: Path | None = None) -> AppConfig:
    path = path or config_path()
    if not path.exists():
        return AppConfig(source_path=str(path))

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise ConfigError(f"cannot read config {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"config {path} must hold a JSON object")

    data = _migrate(raw)
    cfg = AppConfig(
        config_version=int(data.get("config_version", CONFIG_VERSION)),
        monitoring=_merge(MonitoringConfig, data.get("monitoring", {})),
        publish=_merge(PublishConfig, data.get("publish", {})),
        telemetry=_merge(TelemetryConfig, data.get("telemetry", {})),
        alarm=_merge(AlarmConfig, data.get("alarm", {})),
        diagnostics=_merge(DiagnosticsConfig, data.get("diagnostics", {})),
        source_path=str(path),
    )

    try:
        _normalize_monitoring(cfg)
        _normalize_publish(cfg)
        _normalize_telemetry(cfg)
        _normalize_diagnostics(cfg)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid value in {path}: {exc}") from exc
    return cfg


def save_config(cfg: AppConfig, path: Path | None = None) -> Path:
    cfg.config_version = CONFIG_VERSION
    path = path or (Path(cfg.source_path) if cfg.source_path else config_path())
    path.parent.mkdir(parents=True, exist_ok=True)
    data = asdict(cfg)
    data.pop("source_path", None)
    path.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
    return path


def _search_roots() -> list[Path]:
    roots: list[Path] = []
    try:
        for part in psutil.disk_partitions(all=False):
            roots.append(Path(part.mountpoint))
    except (OSError, RuntimeError):
        logging.getLogger("webuimon.config").debug("disk partition listing failed", exc_info=True)
    roots.append(Path.home())
    return roots


def detect_webui_outputs(roots: Iterable[Path] | None = None) -> Path | None:
    """First ``<root>/stable-diffusion-webui/outputs`` directory found on a mounted volume."""
    for root in roots if roots is not None else _search_roots():
        candidate = Path(root) / WEBUI_OUTPUTS
        try:
            if candidate.is_dir():
                return candidate
        except OSError:
            continue
    return None


def audio_file(cfg: AppConfig) -> Path:
    """Alarm asset path; relative paths resolve next to the config file."""
    audio = Path(cfg.alarm.audio_path).expanduser()
    if audio.is_absolute():
        return audio
    base = Path(cfg.source_path).parent if cfg.source_path else config_root()
    return base / audio


def validate_config(cfg: AppConfig, roots: Iterable[Path] | None = None) -> Path:
    """
    Resolve and check the monitoring base path.

    Returns the usable base path and stores its expanded form back on the config.
    Raises ``ConfigError`` when it is missing or not a
    readable directory, after trying auto-detection when enabled.
    """
    mon = cfg.monitoring
    base = Path(mon.base_path).expanduser() if mon.base_path else None

    if (base is None or not base.is_dir()) and mon.auto_detect:
        detected = detect_webui_outputs(roots)
        if detected is not None:
            mon.base_path = str(detected)
            base = detected

    if base is None:
        raise ConfigError("monitoring.base_path is not set and no WebUI output folder was detected")
    if not base.is_dir():
        raise ConfigError(f"monitoring.base_path does not exist or is not a directory: {base}")
    if not os.access(base, os.R_OK | os.X_OK):
        raise ConfigError(f"monitoring.base_path is not readable: {base}")
    mon.base_path = str(base)
    return base
