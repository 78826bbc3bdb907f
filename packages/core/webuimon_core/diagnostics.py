"""Diagnostics payload and export helpers for local support bundles."""

from __future__ import annotations

import json
import os
import platform
import re
import tempfile
import zipfile
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

from webuimon_telemetry import MetricSource

from .config import AppConfig, ConfigError, audio_file, config_path, validate_config
from .logging_setup import log_dir
from .paths import resolve_monitor_path
from .watchdog import count_files


_SECRET_RE = re.compile(r"(token|secret|password|apikey|api_key|auth)", re.IGNORECASE)


def _jsonable(value: Any) -> Any:
    if is_dataclass(value):
        return asdict(value)
    if isinstance(value, (Path, Enum)):
        return str(value.value if isinstance(value, Enum) else value)
    return value


def redact(value: Any) -> Any:
    if isinstance(value, dict):
        out: dict[str, Any] = {}
        for k, v in value.items():
            if _SECRET_RE.search(k):
                out[k] = "***REDACTED***"
            else:
                out[k] = redact(v)
        return out
    if isinstance(value, list):
        return [redact(v) for v in value]
    return value


def probe_sources(sources: Mapping[str, MetricSource[Any]]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name, source in sources.items():
        result = source.read()
        out[name] = {
            "backend": type(source).__name__,
            "ok": result.ok,
            "failure": result.failure.value,
            "detail": result.detail,
            "value": _jsonable(result.value),
        }
    return out


def build_doctor_payload(cfg: AppConfig, sources: Mapping[str, MetricSource[Any]] | None = None) -> dict[str, Any]:
    monitoring: dict[str, Any] = {"base_path": cfg.monitoring.base_path}
    try:
        base = validate_config(cfg)
        resolved = resolve_monitor_path(base, dated_parent=cfg.monitoring.dated_parent)
        monitoring.update(
            {
                "valid": True,
                "resolved_path": str(resolved),
                "file_count": count_files(resolved),
            }
        )
    except (ConfigError, OSError) as exc:
        monitoring.update({"valid": False, "error": str(exc)})

    alarm_audio = audio_file(cfg)
    return {
        "ts_utc": datetime.now(timezone.utc).isoformat(),
        "platform": platform.platform(),
        "python": platform.python_version(),
        "config": redact(asdict(cfg)),
        "monitoring": monitoring,
        "alarm_audio": {"path": str(alarm_audio), "exists": alarm_audio.is_file()},
        "sources": probe_sources(sources or {}),
    }


TIMELINE_EVENTS = frozenset(
    {
        "alarm_raised",
        "alarm_cleared",
        "path_changed",
        "listing_error",
        "refresh_timeout",
        "metric_unavailable",
        "metric_recovered",
        "subscriber_error",
        "uncaught_exception",
        "thread_exception",
    }
)


def event_timeline(log_files: list[Path], limit: int = 200) -> list[dict[str, Any]]:
    """Stall and telemetry events from JSON log files, oldest first, capped at ``limit``."""
    events: list[dict[str, Any]] = []
    for path in log_files:
        try:
            lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
        except OSError:
            continue
        for line in lines:
            try:
                record = json.loads(line)
            except ValueError:
                continue
            if isinstance(record, dict) and record.get("event") in TIMELINE_EVENTS:
                events.append(record)
    events.sort(key=lambda r: str(r.get("ts_utc", "")))
    return events[-limit:]


def newest_files(folder: Path, limit: int = 20) -> list[dict[str, Any]]:
    """Most recently modified regular files directly inside ``folder``."""
    entries: list[tuple[float, str, int]] = []
    try:
        with os.scandir(folder) as it:
            for entry in it:
                if entry.is_file():
                    st = entry.stat()
                    entries.append((st.st_mtime, entry.name, st.st_size))
    except OSError:
        return []
    entries.sort(reverse=True)
    return [
        {
            "name": name,
            "size": size,
            "modified_utc": datetime.fromtimestamp(mtime, timezone.utc).isoformat(),
        }
        for mtime, name, size in entries[:limit]
    ]


class DiagnosticsExporter:
    def __init__(self, app_name: str = "WebUIMonitor", logs_dir: Path | None = None) -> None:
        self.app_name = app_name
        self._logs_dir = logs_dir

    def bundle(
        self,
        cfg: AppConfig,
        doctor_payload: dict[str, Any],
        recent_snapshots: list[dict[str, Any]] | None = None,
        output_dir: Path | None = None,
    ) -> Path:
        output_base = output_dir or Path(tempfile.gettempdir())
        output_base.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        zip_path = output_base / f"webuimon-diagnostics-{stamp}.zip"

        logs_dir = self._logs_dir or log_dir()
        logs = sorted(logs_dir.glob("*.log*"))
        monitoring = doctor_payload.get("monitoring", {})
        watched = monitoring.get("resolved_path")

        with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            manifest = {
                "app": self.app_name,
                "created_utc": datetime.now(timezone.utc).isoformat(),
                "host": platform.platform(),
                "config_path": cfg.source_path or str(config_path()),
                "log_dir": str(logs_dir),
                "monitor_path": watched,
                "monitor_valid": monitoring.get("valid", False),
            }
            zf.writestr("manifest.json", json.dumps(manifest, indent=2, sort_keys=True))
            zf.writestr("doctor.json", json.dumps(redact(doctor_payload), indent=2, sort_keys=True, default=_jsonable))
            zf.writestr("config.redacted.json", json.dumps(redact(asdict(cfg)), indent=2, sort_keys=True))
            zf.writestr(
                "snapshots.json",
                json.dumps(redact(recent_snapshots or []), indent=2, sort_keys=True, default=_jsonable),
            )
            zf.writestr("events.json", json.dumps(event_timeline(logs), indent=2, sort_keys=True))
            if watched:
                zf.writestr("folder.json", json.dumps(newest_files(Path(watched)), indent=2))

            for item in logs:
                zf.write(item, arcname=f"logs/{item.name}")

        return zip_path
