from __future__ import annotations

from pathlib import Path

from rich.console import Console
from rich.style import Style
from rich.text import Text

from pumlbridge.messages import (
    DiagramCompiled,
    DiagramFailed,
    DiagramSkipped,
    FileAppeared,
    FileChanged,
    FileRemoved,
    FileRenamed,
    Message,
    MonitoringFailed,
)

prefix_format = "{timestamp:%H:%M:%S}  "

STYLES = {
    FileAppeared: Style(color="green"),
    FileChanged: Style(color="yellow", dim=True),
    FileRemoved: Style(color="red"),
    FileRenamed: Style(color="cyan"),
    DiagramCompiled: Style(color="green", bold=True),
    DiagramFailed: Style(color="red", bold=True),
    DiagramSkipped: Style(dim=True),
    MonitoringFailed: Style(color="red", bold=True, reverse=True),
}


class Renderer:
    def __init__(self, console: Console, root: Path | None = None):
        self.console = console
        self.root = root

    def display(self, path: Path) -> str:
        if self.root is not None and path.is_relative_to(self.root):
            return str(path.relative_to(self.root))
        return str(path)

    def describe(self, message: Message) -> str | None:
        match message:
            case FileAppeared(path=path):
                return f"{self.display(path)} is ready"
            case FileChanged(path=path):
                return f"{self.display(path)} changed"
            case FileRemoved(path=path):
                return f"{self.display(path)} was removed"
            case FileRenamed(old_path=old_path, path=path):
                return f"{self.display(old_path)} was renamed to {self.display(path)}"
            case DiagramCompiled(path=path, image_path=image_path, duration=duration):
                return f"{self.display(path)} -> {self.display(image_path)} ({duration.total_seconds():.3f}s)"
            case DiagramFailed(path=path, diagnostics=diagnostics, errors=errors):
                detail = "; ".join(errors) if errors else diagnostics.strip()
                return f"{self.display(path)} failed to compile: {detail}"
            case DiagramSkipped(path=path, reason=reason):
                return f"{self.display(path)} skipped: {reason}"
            case MonitoringFailed(error=error):
                return error
            case _:
                return None

    def handle_message(self, message: Message) -> None:
        description = self.describe(message)
        if description is None:
            return

        self.console.print(
            Text.assemble(
                prefix_format.format(timestamp=message.timestamp),
                (description, STYLES.get(type(message), Style())),
            )
        )
