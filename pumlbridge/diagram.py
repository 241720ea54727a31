from __future__ import annotations

import re
from pathlib import Path

from pumlbridge.config import ImageFormat
from pumlbridge.model import Model

START_PATTERN = re.compile(r'@startuml[ \t]*"*([^\r\n"]*)', re.IGNORECASE | re.MULTILINE)


class Diagram(Model):
    path: Path
    content: str
    image_path: Path

    @property
    def image_format(self) -> ImageFormat:
        return ImageFormat.from_path(self.image_path)

    @classmethod
    def read(cls, path: Path) -> Diagram | None:
        """Read a diagram file, or return ``None`` if it does not contain a PlantUML diagram."""
        content = path.read_text(encoding="utf-8", errors="replace")
        if not content.strip():
            return None

        match = START_PATTERN.search(content)
        if match is None:
            return None

        return cls(
            path=path,
            content=content,
            image_path=deduce_image_path(path, match.group(1).strip()),
        )


def deduce_image_path(path: Path, name: str) -> Path:
    if not name:
        return path.with_suffix(".png")

    image_path = Path(name)
    if not image_path.is_absolute():
        image_path = path.parent / image_path

    return image_path.resolve()
