from __future__ import annotations

import logging
from asyncio import Event, Queue, Task, create_task, gather
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path
from time import monotonic
from typing import Protocol

from pumlbridge.config import ImageFormat
from pumlbridge.diagram import Diagram
from pumlbridge.errors import MonitoringError, PlantUmlError, ProcessCancelledError, ProcessLaunchError
from pumlbridge.messages import (
    DiagramCompiled,
    DiagramFailed,
    DiagramSkipped,
    FileAppeared,
    FileRemoved,
    FileRenamed,
    Message,
    MonitoringFailed,
    Quit,
)
from pumlbridge.monitor import DirectoryMonitor

logger = logging.getLogger(__name__)


class Compiler(Protocol):
    async def compile_to_image(
        self,
        code: str,
        image_format: ImageFormat | None = None,
        cancellation: Event | None = None,
    ) -> bytes: ...


class Compilation:
    def __init__(self, task: Task[None], cancellation: Event):
        self.task = task
        self.cancellation = cancellation

    def cancel(self) -> None:
        self.cancellation.set()


class DiagramPipeline:
    """
    Compiles every diagram that appears in a monitored directory to its image file.

    Each path has at most one compilation in flight; a newer appearance, a removal,
    or a rename away from the same path cancels the older one.
    """

    def __init__(
        self,
        monitor: DirectoryMonitor,
        compiler: Compiler,
        report: Callable[[Message], None] | None = None,
    ):
        self.monitor = monitor
        self.compiler = compiler
        self.report = report

        self.inbox: Queue[Message] = Queue()
        self.compilations: dict[Path, Compilation] = {}

    async def run(self, directory: Path, initial: bool = False) -> None:
        unsubscribe = self.monitor.subscribe(self.inbox.put_nowait)

        try:
            self.monitor.start_monitoring(directory)

            if initial:
                for path in sorted(Path(directory).absolute().glob(self.monitor.filter)):
                    if path.is_file():
                        self.start_compilation(path)

            await self.handle_messages()
        finally:
            unsubscribe()
            await self.monitor.close()

            for compilation in self.compilations.values():
                compilation.cancel()

            await gather(*(c.task for c in self.compilations.values()), return_exceptions=True)

    def stop(self) -> None:
        self.inbox.put_nowait(Quit())

    async def handle_messages(self) -> None:
        while True:
            match message := await self.inbox.get():
                case FileAppeared(path=path):
                    self.start_compilation(path)

                case FileRenamed(old_path=old_path, path=path):
                    self.discard_compilation(old_path)
                    self.start_compilation(path)

                case FileRemoved(path=path):
                    self.discard_compilation(path)

                case MonitoringFailed(error=error):
                    self.emit(message)
                    raise MonitoringError(error)

                case Quit():
                    return

            self.emit(message)

    def emit(self, message: Message) -> None:
        if self.report is not None:
            self.report(message)

    def discard_compilation(self, path: Path) -> None:
        if compilation := self.compilations.pop(path, None):
            compilation.cancel()

    def start_compilation(self, path: Path) -> None:
        if previous := self.compilations.get(path):
            previous.cancel()

        cancellation = Event()
        task = create_task(self.compile(path, cancellation), name=f"Compile {path}")
        compilation = self.compilations[path] = Compilation(task=task, cancellation=cancellation)

        def done(_: Task[None]) -> None:
            if self.compilations.get(path) is compilation:
                del self.compilations[path]

        task.add_done_callback(done)

    async def compile(self, path: Path, cancellation: Event) -> None:
        start_time = monotonic()

        try:
            diagram = Diagram.read(path)
        except OSError as e:
            self.inbox.put_nowait(DiagramSkipped(path=path, reason=f"could not be read: {e}"))
            return

        if diagram is None:
            self.inbox.put_nowait(DiagramSkipped(path=path, reason="does not contain a diagram"))
            return

        try:
            image = await self.compiler.compile_to_image(
                diagram.content,
                diagram.image_format,
                cancellation,
            )
        except PlantUmlError as e:
            self.inbox.put_nowait(
                DiagramFailed(
                    path=path,
                    diagnostics=e.diagnostics,
                    errors=tuple(map(str, e.errors)),
                )
            )
            return
        except ProcessLaunchError as e:
            self.inbox.put_nowait(DiagramFailed(path=path, diagnostics=str(e)))
            return
        except ProcessCancelledError:
            logger.debug("Compilation of %s was cancelled", path)
            return

        if cancellation.is_set():
            return

        try:
            diagram.image_path.write_bytes(image)
        except OSError as e:
            self.inbox.put_nowait(DiagramFailed(path=path, diagnostics=f"could not write {diagram.image_path}: {e}"))
            return

        self.inbox.put_nowait(
            DiagramCompiled(
                path=path,
                image_path=diagram.image_path,
                duration=timedelta(seconds=monotonic() - start_time),
            )
        )
