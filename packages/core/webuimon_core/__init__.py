"""Core services: configuration, stall watchdog, snapshot aggregation, alarm relay, diagnostics."""

from .aggregator import SnapshotAggregator
from .alarm import AlarmPlayer, AlarmRelay, LogAlarmPlayer, WinsoundAlarmPlayer, build_alarm_player
from .config import AppConfig, ConfigError, load_config, save_config, validate_config
from .diagnostics import DiagnosticsExporter, build_doctor_payload
from .models import Snapshot
from .paths import PathResolver, resolve_monitor_path
from .watchdog import ActivityWatchdog, WatchdogPhase, WatchdogState

__all__ = [
    "ActivityWatchdog",
    "AlarmPlayer",
    "AlarmRelay",
    "AppConfig",
    "ConfigError",
    "DiagnosticsExporter",
    "LogAlarmPlayer",
    "PathResolver",
    "Snapshot",
    "SnapshotAggregator",
    "WatchdogPhase",
    "WatchdogState",
    "WinsoundAlarmPlayer",
    "build_alarm_player",
    "build_doctor_payload",
    "load_config",
    "resolve_monitor_path",
    "save_config",
    "validate_config",
]
