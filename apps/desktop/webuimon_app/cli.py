"""CLI entrypoints for WebUI Monitor: headless monitoring, one-shot snapshots, diagnostics, config setup."""

from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
import time
from importlib import metadata
from pathlib import Path

from webuimon_core import (
    AppConfig,
    ConfigError,
    DiagnosticsExporter,
    LogAlarmPlayer,
    Snapshot,
    SnapshotAggregator,
    build_doctor_payload,
    load_config,
    save_config,
    validate_config,
)
from webuimon_core.logging_setup import configure_logging, get_logger, install_crash_hooks
from webuimon_telemetry import build_default_sources, close_sources


def _print_json(data: object) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def _installed_version() -> str:
    try:
        return metadata.version("webuimon")
    except Exception:
        return "0.1.0"


def _load(args: argparse.Namespace) -> AppConfig:
    path = Path(args.config).expanduser() if getattr(args, "config", None) else None
    return load_config(path)


def _fmt_gb(used: float, total: float, ok: bool) -> str:
    return f"{used:04.1f}/{total:04.1f} GB" if ok else "N/A"


def format_status_line(snap: Snapshot) -> str:
    state = "ALARM" if snap.is_alarm else "OK"
    cpu = f"{snap.cpu.percent:05.1f}%" if snap.cpu.ok else "N/A"
    net = (
        f"down {snap.network.download_mbps:05.2f} up {snap.network.upload_mbps:05.2f} MB/s"
        if snap.network.ok
        else "N/A"
    )
    return (
        f"{snap.timestamp:%Y-%m-%d %H:%M:%S} [{state}] files={snap.file_count} "
        f"CPU {cpu}  VRAM {_fmt_gb(snap.gpu.used_gb, snap.gpu.total_gb, snap.gpu.ok)}  "
        f"RAM {_fmt_gb(snap.memory.used_gb, snap.memory.total_gb, snap.memory.ok)}  "
        f"VMEM {snap.virtual_memory.text}  NET {net}  {snap.resolved_path}"
    )


def cmd_run(args: argparse.Namespace) -> int:
    cfg = _load(args)
    base = validate_config(cfg)
    configure_logging(keep_files=cfg.diagnostics.keep_log_files, console=False, level=cfg.diagnostics.log_level)
    install_crash_hooks()
    logger = get_logger()
    logger.info(f"monitoring {base}", extra={"event": "run_start"})

    aggregator = SnapshotAggregator.from_config(cfg)
    if not args.quiet:
        aggregator.subscribe(lambda snap: print(format_status_line(snap), flush=True))

    stop_evt = threading.Event()

    def _on_signal(_signum, _frame) -> None:
        stop_evt.set()

    signal.signal(signal.SIGINT, _on_signal)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _on_signal)

    aggregator.start()
    deadline = (time.monotonic() + args.seconds) if args.seconds is not None else None
    try:
        # Short waits keep the main thread responsive to Ctrl+C on Windows.
        while not stop_evt.is_set():
            if deadline is not None and time.monotonic() >= deadline:
                break
            stop_evt.wait(0.5)
    finally:
        stopped = aggregator.stop(timeout=5.0)
        logger.info("run finished", extra={"event": "run_stop", "clean": stopped})
    return 0


def cmd_snapshot(args: argparse.Namespace) -> int:
    cfg = _load(args)
    validate_config(cfg)
    aggregator = SnapshotAggregator.from_config(cfg)
    try:
        aggregator.watchdog.tick()
        aggregator.prime()
        snap = aggregator.collect()
    finally:
        aggregator.stop(timeout=1.0)
    _print_json(snap.to_payload())
    return 0


def cmd_doctor(args: argparse.Namespace) -> int:
    cfg = _load(args)
    tel = cfg.telemetry
    sources = build_default_sources(
        gpu_name=tel.gpu_name,
        fallback_vram_total_gb=tel.fallback_vram_total_gb,
        timeout_s=tel.refresh_timeout_s,
    )
    try:
        payload = build_doctor_payload(cfg, sources)
        payload["version"] = _installed_version()

        if args.export:
            snapshots = []
            if payload["monitoring"].get("valid"):
                aggregator = SnapshotAggregator.from_config(cfg, sources=sources, player=LogAlarmPlayer())
                try:
                    aggregator.watchdog.tick()
                    aggregator.prime()
                    snapshots.append(aggregator.collect().to_payload())
                finally:
                    aggregator.stop(timeout=1.0)

            exporter = DiagnosticsExporter()
            out_dir = Path(args.out_dir).expanduser().resolve() if args.out_dir else None
            bundle = exporter.bundle(cfg=cfg, doctor_payload=payload, recent_snapshots=snapshots, output_dir=out_dir)
            payload["diagnostics_bundle"] = str(bundle)
    finally:
        close_sources(sources)

    _print_json(payload)
    return 0


def cmd_init_config(args: argparse.Namespace) -> int:
    cfg = _load(args)
    if args.base_path:
        cfg.monitoring.base_path = str(Path(args.base_path).expanduser())
    if args.auto_detect:
        cfg.monitoring.auto_detect = True
    if args.audio_path:
        cfg.alarm.audio_path = args.audio_path

    validate_config(cfg)
    path = save_config(cfg, Path(args.config).expanduser() if args.config else None)
    _print_json({"success": True, "config_path": str(path), "base_path": cfg.monitoring.base_path})
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="webuimon", description="WebUI output stall monitor and host telemetry")
    parser.add_argument("--version", action="version", version=f"%(prog)s {_installed_version()}")
    sub = parser.add_subparsers(dest="command", required=True)

    def _with_config(p: argparse.ArgumentParser) -> argparse.ArgumentParser:
        p.add_argument("--config", default=None, help="Path to config.json (default: per-user config)")
        return p

    run_cmd = _with_config(sub.add_parser("run", help="Monitor until interrupted"))
    run_cmd.add_argument("--quiet", action="store_true", help="Do not print a status line per snapshot")
    run_cmd.add_argument("--seconds", type=float, default=None, help="Stop after this many seconds")
    run_cmd.set_defaults(func=cmd_run)

    snap_cmd = _with_config(sub.add_parser("snapshot", help="Print one snapshot as JSON"))
    snap_cmd.set_defaults(func=cmd_snapshot)

    doctor_cmd = _with_config(sub.add_parser("doctor", help="Print diagnostics and telemetry backends"))
    doctor_cmd.add_argument("--export", action="store_true", help="Export offline diagnostics bundle")
    doctor_cmd.add_argument("--out-dir", default=None, help="Optional output directory for diagnostics bundle")
    doctor_cmd.set_defaults(func=cmd_doctor)

    init_cmd = _with_config(sub.add_parser("init-config", help="Write a config file"))
    init_cmd.add_argument("--base-path", default=None, help="Folder the WebUI writes images into")
    init_cmd.add_argument("--auto-detect", action="store_true", help="Search mounted drives for stable-diffusion-webui/outputs")
    init_cmd.add_argument("--audio-path", default=None, help="Alarm WAV file, relative to the config file")
    init_cmd.set_defaults(func=cmd_init_config)

    return parser


def main(argv: list[str] | None = None) -> int:
    configure_logging(console=False)
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return int(args.func(args))
    except ConfigError as exc:
        get_logger().error(f"configuration error: {exc}", extra={"event": "config_error"})
        print(f"configuration error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
