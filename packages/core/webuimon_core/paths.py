"""Daily output folder resolution."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Callable


DATE_FOLDER_FORMAT = "%Y-%m-%d"


def dated_folder(base_path: str | Path, today: date, dated_parent: str = "") -> Path:
    base = Path(base_path).expanduser()
    parent = base / dated_parent if dated_parent else base
    return parent / today.strftime(DATE_FOLDER_FORMAT)


def resolve_monitor_path(base_path: str | Path, today: date | None = None, dated_parent: str = "") -> Path:
    """
    Folder to watch for ``today``: ``base/[dated_parent/]YYYY-MM-DD`` when it exists,
    otherwise ``base`` itself. Never cached, so the first call after midnight moves
    to the new day's folder.
    """
    base = Path(base_path).expanduser()
    candidate = dated_folder(base, today or date.today(), dated_parent)
    return candidate if candidate.is_dir() else base


@dataclass
class PathResolver:
    base_path: str | Path
    dated_parent: str = ""
    today: Callable[[], date] = field(default=date.today)

    def __call__(self) -> Path:
        return resolve_monitor_path(self.base_path, self.today(), self.dated_parent)
