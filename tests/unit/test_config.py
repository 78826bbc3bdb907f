import json
import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT / "packages" / "core"))
sys.path.insert(0, str(ROOT / "packages" / "telemetry"))

from webuimon_core.config import (
    AppConfig,
    ConfigError,
    audio_file,
    detect_webui_outputs,
    load_config,
    save_config,
    validate_config,
)


class ConfigTests(unittest.TestCase):
    def test_load_default_when_missing(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "missing.json"
            cfg = load_config(path)
            self.assertIsInstance(cfg, AppConfig)
            self.assertEqual(cfg.monitoring.stall_threshold_seconds, 30.0)
            self.assertEqual(cfg.monitoring.poll_interval_ms, 3000)
            self.assertEqual(cfg.publish.publish_interval_ms, 2000)
            self.assertEqual(cfg.telemetry.refresh_timeout_s, 5.0)
            self.assertTrue(cfg.monitoring.reset_baseline_on_path_change)
            self.assertEqual(cfg.source_path, str(path))

    def test_save_and_reload(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.json"
            cfg = load_config(path)
            cfg.monitoring.base_path = "D:/stable-diffusion-webui/outputs"
            cfg.monitoring.dated_parent = "txt2img-images"
            cfg.alarm.enabled = False
            save_config(cfg, path)

            self.assertNotIn("source_path", json.loads(path.read_text(encoding="utf-8")))
            reloaded = load_config(path)
            self.assertEqual(reloaded.monitoring.base_path, "D:/stable-diffusion-webui/outputs")
            self.assertEqual(reloaded.monitoring.dated_parent, "txt2img-images")
            self.assertFalse(reloaded.alarm.enabled)

    def test_migrate_legacy_flat_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.json"
            old = {"MonitoringPath": "E:/webui/outputs", "AudioPath": "siren.wav", "AutoDetect": True}
            path.write_text(json.dumps(old), encoding="utf-8")
            cfg = load_config(path)
            self.assertEqual(cfg.config_version, 1)
            self.assertEqual(cfg.monitoring.base_path, "E:/webui/outputs")
            self.assertTrue(cfg.monitoring.auto_detect)
            self.assertEqual(cfg.alarm.audio_path, "siren.wav")

    def test_out_of_range_values_are_clamped(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.json"
            raw = {
                "config_version": 1,
                "publish": {"publish_interval_ms": 10000},
                "monitoring": {"poll_interval_ms": 5, "stall_threshold_seconds": 0},
                "telemetry": {"stale_after_failures": 0},
                "diagnostics": {"keep_log_files": 0, "log_level": "verbose"},
            }
            path.write_text(json.dumps(raw), encoding="utf-8")
            cfg = load_config(path)
            self.assertEqual(cfg.publish.publish_interval_ms, 2000)
            self.assertEqual(cfg.monitoring.poll_interval_ms, 100)
            self.assertEqual(cfg.monitoring.stall_threshold_seconds, 1.0)
            self.assertEqual(cfg.telemetry.stale_after_failures, 1)
            self.assertEqual(cfg.diagnostics.keep_log_files, 2)
            self.assertEqual(cfg.diagnostics.log_level, "INFO")

    def test_corrupt_file_raises(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.json"
            path.write_text("{not json", encoding="utf-8")
            with self.assertRaises(ConfigError):
                load_config(path)

            path.write_text("[1, 2]", encoding="utf-8")
            with self.assertRaises(ConfigError):
                load_config(path)

    def test_non_numeric_value_raises(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.json"
            path.write_text(json.dumps({"config_version": 1, "publish": {"publish_interval_ms": "fast"}}), encoding="utf-8")
            with self.assertRaises(ConfigError):
                load_config(path)

    def test_audio_file_is_relative_to_config(self):
        with tempfile.TemporaryDirectory() as tmp:
            cfg = load_config(Path(tmp) / "config.json")
            self.assertEqual(audio_file(cfg), Path(tmp) / "alarm.wav")


class ValidateConfigTests(unittest.TestCase):
    def test_existing_base_path_is_accepted(self):
        with tempfile.TemporaryDirectory() as tmp:
            cfg = AppConfig()
            cfg.monitoring.base_path = tmp
            self.assertEqual(validate_config(cfg, roots=[]), Path(tmp))

    def test_home_relative_base_path_is_stored_expanded(self):
        with tempfile.TemporaryDirectory() as tmp:
            (Path(tmp) / "outputs").mkdir()
            cfg = AppConfig()
            cfg.monitoring.base_path = "~/outputs"
            with mock.patch.dict(os.environ, {"HOME": tmp, "USERPROFILE": tmp}):
                base = validate_config(cfg, roots=[])
            self.assertEqual(base, Path(tmp) / "outputs")
            self.assertEqual(cfg.monitoring.base_path, str(base))

    def test_missing_base_path_raises(self):
        with tempfile.TemporaryDirectory() as tmp:
            cfg = AppConfig()
            cfg.monitoring.base_path = str(Path(tmp) / "nope")
            with self.assertRaises(ConfigError):
                validate_config(cfg, roots=[])

    def test_empty_base_path_raises(self):
        with self.assertRaises(ConfigError):
            validate_config(AppConfig(), roots=[])

    def test_auto_detect_fills_base_path(self):
        with tempfile.TemporaryDirectory() as tmp:
            outputs = Path(tmp) / "stable-diffusion-webui" / "outputs"
            outputs.mkdir(parents=True)
            cfg = AppConfig()
            cfg.monitoring.auto_detect = True

            self.assertEqual(validate_config(cfg, roots=[Path(tmp) / "empty", Path(tmp)]), outputs)
            self.assertEqual(cfg.monitoring.base_path, str(outputs))

    def test_detect_returns_none_without_candidates(self):
        with tempfile.TemporaryDirectory() as tmp:
            self.assertIsNone(detect_webui_outputs([Path(tmp)]))


if __name__ == "__main__":
    unittest.main()
