"""Alarm relay turning stall transitions into audio play/stop calls."""

from __future__ import annotations

import platform
import threading
from pathlib import Path
from typing import Protocol

from .config import AppConfig, audio_file
from .logging_setup import get_logger
from .models import Snapshot

log = get_logger("alarm")


class AlarmPlayer(Protocol):
    def play(self) -> None:
        ...

    def stop(self) -> None:
        ...


class LogAlarmPlayer:
    """Fallback player for hosts without audio support."""

    def __init__(self) -> None:
        self.playing = False

    def play(self) -> None:
        if not self.playing:
            self.playing = True
            log.warning("ALARM: output stalled", extra={"event": "alarm_play"})

    def stop(self) -> None:
        if self.playing:
            self.playing = False
            log.info("alarm silenced", extra={"event": "alarm_stop"})


class WinsoundAlarmPlayer:
    """Loops a WAV file asynchronously through ``winsound``."""

    def __init__(self, audio_path: Path) -> None:
        self.audio_path = Path(audio_path)
        self.playing = False
        try:
            import winsound  # type: ignore

            self._winsound = winsound
        except ImportError:
            self._winsound = None
            log.warning("winsound not available, alarm will be silent")

        if not self.audio_path.is_file():
            log.warning(f"alarm audio file not found: {self.audio_path}", extra={"event": "alarm_audio_missing"})
        else:
            log.info(f"alarm audio loaded: {self.audio_path}")

    @property
    def available(self) -> bool:
        return self._winsound is not None and self.audio_path.is_file()

    def play(self) -> None:
        if self.playing or not self.available:
            return
        ws = self._winsound
        try:
            ws.PlaySound(str(self.audio_path), ws.SND_FILENAME | ws.SND_ASYNC | ws.SND_LOOP)
            self.playing = True
        except RuntimeError:
            log.exception("failed to start alarm audio")

    def stop(self) -> None:
        if not self.playing or self._winsound is None:
            return
        try:
            self._winsound.PlaySound(None, 0)
        except RuntimeError:
            log.exception("failed to stop alarm audio")
        finally:
            self.playing = False


def build_alarm_player(cfg: AppConfig) -> AlarmPlayer:
    if cfg.alarm.enabled and platform.system() == "Windows":
        return WinsoundAlarmPlayer(audio_file(cfg))
    return LogAlarmPlayer()


class AlarmRelay:
    """Snapshot subscriber: ``play()`` when ``is_alarm`` turns true, ``stop()`` when it turns false."""

    def __init__(self, player: AlarmPlayer) -> None:
        self.player = player
        self._active = False
        self._stopped = False
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return self._active

    def __call__(self, snapshot: Snapshot) -> None:
        with self._lock:
            if self._stopped or snapshot.is_alarm == self._active:
                return
            self._active = snapshot.is_alarm
            if snapshot.is_alarm:
                self.player.play()
            else:
                self.player.stop()

    def stop(self) -> None:
        """Silence the player and ignore snapshots until ``resume()``."""
        with self._lock:
            self._stopped = True
            self._active = False
            self.player.stop()

    def resume(self) -> None:
        with self._lock:
            self._stopped = False
