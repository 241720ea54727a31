from __future__ import annotations

import logging
import re
from asyncio import Event
from dataclasses import dataclass
from pathlib import Path

from pumlbridge.config import ImageFormat, PlantUmlSettings
from pumlbridge.errors import PlantUmlError, ProcessCancelledError
from pumlbridge.process import (
    AnyOutcome,
    ProcessCancelled,
    ProcessFailed,
    ProcessSucceeded,
    describe,
    pipe,
    run,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiagramError:
    line_number: int
    message: str

    def __str__(self) -> str:
        return f"line {self.line_number}: {self.message}"

    @classmethod
    def try_parse(cls, text: str) -> DiagramError | None:
        """
        Parse PlantUML's piped error report, which looks like::

            ERROR
            12
            Syntax Error?
        """
        if not text.startswith("ERROR"):
            return None

        parts = [line.strip() for line in text.splitlines() if line.strip()]
        if len(parts) < 3:
            return None

        try:
            line_number = int(parts[1])
        except ValueError:
            return None

        return cls(line_number=line_number, message=parts[2])


def failure(diagnostics: str) -> PlantUmlError:
    error = DiagramError.try_parse(diagnostics)
    return PlantUmlError(diagnostics, errors=() if error is None else (error,))


class PlantUml:
    def __init__(self, settings: PlantUmlSettings = PlantUmlSettings()):
        self.settings = settings

    def command(self, *args: str | Path) -> list[str | Path]:
        return [self.settings.java, "-jar", self.settings.jar, *args]

    def compile_arguments(self, image_format: ImageFormat | None) -> list[str | Path]:
        image_format = image_format or self.settings.image_format
        return [
            *(("-tsvg",) if image_format is ImageFormat.SVG else ()),
            "-quiet",
            "-graphvizdot",
            self.settings.graphviz_dot,
        ]

    async def compile_to_image(
        self,
        code: str,
        image_format: ImageFormat | None = None,
        cancellation: Event | None = None,
    ) -> bytes:
        outcome = await pipe(
            self.command(*self.compile_arguments(image_format), "-pipe"),
            input=code.encode("utf-8"),
            cancellation=cancellation,
        )
        logger.debug("PlantUML %s", describe(outcome))

        if isinstance(outcome, ProcessFailed):
            raise failure(outcome.diagnostics)

        return outcome.unwrap()

    async def compile_to_file(
        self,
        path: Path,
        image_format: ImageFormat | None = None,
        cancellation: Event | None = None,
    ) -> None:
        outcome = await run(
            self.command(*self.compile_arguments(image_format), path.absolute()),
            cancellation=cancellation,
        )
        logger.debug("PlantUML %s", describe(outcome))

        if isinstance(outcome, ProcessFailed):
            raise failure(outcome.diagnostics)

        outcome.unwrap()

    async def version(self, cancellation: Event | None = None) -> str:
        outcome = await pipe(self.command("-version"), input=b"", cancellation=cancellation)
        return extract_version(outcome, self.settings.version_pattern)

    async def graphviz_version(self, cancellation: Event | None = None) -> str:
        outcome = await pipe((self.settings.graphviz_dot, "-V"), input=b"", cancellation=cancellation)
        return extract_version(outcome, self.settings.graphviz_version_pattern)


def extract_version(outcome: AnyOutcome, pattern: str) -> str:
    # Version queries may report on the diagnostic stream, so it is not a failure here.
    match outcome:
        case ProcessSucceeded(output=output):
            text = output.decode("utf-8", errors="replace")
        case ProcessFailed(diagnostics=diagnostics):
            text = diagnostics
        case ProcessCancelled(command=command):
            raise ProcessCancelledError(f"{command[0]} was cancelled")

    if (match := re.search(pattern, text)) is None:
        raise PlantUmlError(f"Could not find a version in {text.strip()!r}")

    return match.group("version")
