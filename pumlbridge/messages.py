from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path

from pydantic import Field

from pumlbridge.model import Model


class Message(Model):
    timestamp: datetime = Field(default_factory=datetime.now)


class FileAppeared(Message):
    path: Path


class FileRemoved(Message):
    path: Path


class FileChanged(Message):
    path: Path


class FileRenamed(Message):
    old_path: Path
    path: Path


class MonitoringFailed(Message):
    directory: Path
    error: str


class DiagramCompiled(Message):
    path: Path
    image_path: Path
    duration: timedelta


class DiagramFailed(Message):
    path: Path
    diagnostics: str
    errors: tuple[str, ...] = ()


class DiagramSkipped(Message):
    path: Path
    reason: str


class Quit(Message):
    pass
