from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pumlbridge.plantuml import DiagramError


class PumlBridgeError(Exception):
    pass


class MonitoringError(PumlBridgeError):
    """A directory watch could not be established, or failed while running."""


class InvalidStateError(PumlBridgeError):
    pass


class ProcessLaunchError(PumlBridgeError):
    def __init__(self, command: Sequence[str], reason: str):
        super().__init__(f"Failed to start {command[0]!r}: {reason}")
        self.command = tuple(command)
        self.reason = reason


class ProcessFailure(PumlBridgeError):
    """The process ran, but wrote to its diagnostic stream."""

    def __init__(self, diagnostics: str):
        super().__init__(diagnostics)
        self.diagnostics = diagnostics


class ProcessCancelledError(PumlBridgeError):
    pass


class PlantUmlError(ProcessFailure):
    def __init__(self, diagnostics: str, errors: Sequence[DiagramError] = ()):
        super().__init__(diagnostics)
        self.errors = tuple(errors)
