from __future__ import annotations

import logging
from asyncio import AbstractEventLoop, Event, Task, create_task, gather, get_running_loop
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from fnmatch import fnmatch
from pathlib import Path

from watchfiles import Change, awatch

from pumlbridge.config import MonitorSettings
from pumlbridge.errors import InvalidStateError, MonitoringError
from pumlbridge.messages import (
    FileAppeared,
    FileChanged,
    FileRemoved,
    FileRenamed,
    Message,
    MonitoringFailed,
)
from pumlbridge.timer import AsyncTimer, Timer, TimerFactory

logger = logging.getLogger(__name__)

Subscriber = Callable[[Message], None]


class RawChange(Enum):
    Created = "created"
    Changed = "changed"
    Deleted = "deleted"
    Renamed = "renamed"


CHANGE_TO_RAW = {
    Change.added: RawChange.Created,
    Change.modified: RawChange.Changed,
    Change.deleted: RawChange.Deleted,
}


@dataclass(frozen=True)
class RawEvent:
    change: RawChange
    path: Path
    old_path: Path | None = None


class PathState(Enum):
    Idle = "idle"
    PendingConfirmation = "pending-confirmation"


@dataclass
class MonitoredPath:
    path: Path
    timer: Timer[Path]
    state: PathState = PathState.Idle


def translate_changes(changes: Iterable[tuple[Change, str]], detect_renames: bool = True) -> list[RawEvent]:
    """
    Convert a batch of watchfiles changes into raw events.

    A batch is an unordered set, so changes to the same path are put back in an order
    consistent with whether the path exists now: a file that exists was last created,
    a file that doesn't was last deleted.
    """
    by_path: dict[Path, set[Change]] = defaultdict(set)
    for change, raw_path in changes:
        by_path[Path(raw_path)].add(change)

    events: list[RawEvent] = []

    if detect_renames:
        removed = [p for p, c in by_path.items() if c == {Change.deleted}]
        added = [p for p, c in by_path.items() if c == {Change.added}]
        if len(removed) == 1 and len(added) == 1 and removed[0].parent == added[0].parent:
            old_path, new_path = removed[0], added[0]
            del by_path[old_path], by_path[new_path]
            events.append(RawEvent(change=RawChange.Renamed, path=new_path, old_path=old_path))

    for path, path_changes in sorted(by_path.items()):
        exists = path.exists()
        for change in sorted(path_changes, key=lambda c: 0 if exists and c is Change.deleted else int(c)):
            events.append(RawEvent(change=CHANGE_TO_RAW[change], path=path))

    return events


class DirectoryMonitor:
    """
    Watches one directory and turns its raw notifications into
    :class:`FileAppeared` and :class:`FileRemoved` messages.

    A created or changed file is only announced once it has been quiet for the
    grace period, so subscribers never see a file that is still being written.
    Deletions, renames, and changes are forwarded as soon as they arrive.

    All state is owned by the event loop that :meth:`start_monitoring` runs on.
    Use :meth:`post` to hand over raw events from other threads.
    """

    def __init__(
        self,
        settings: MonitorSettings = MonitorSettings(),
        timer_factory: TimerFactory[Path] = AsyncTimer,
    ):
        self.settings = settings
        self.timer_factory = timer_factory

        self.subscribers: list[Subscriber] = []
        self.paths: dict[Path, MonitoredPath] = {}

        self.directory: Path | None = None
        self.enabled = False
        self.failure: MonitoringError | None = None

        self.loop: AbstractEventLoop | None = None
        self.watcher: Task[None] | None = None
        self.stop_event: Event | None = None

    @property
    def filter(self) -> str:
        return self.settings.filter

    @property
    def is_monitoring(self) -> bool:
        return self.enabled

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        self.subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self.subscribers:
                self.subscribers.remove(subscriber)

        return unsubscribe

    def publish(self, message: Message) -> None:
        for subscriber in tuple(self.subscribers):
            subscriber(message)

    def start_monitoring(self, directory: Path) -> None:
        directory = Path(directory).absolute()
        if not directory.is_dir():
            raise MonitoringError(f"Cannot monitor {directory}: it is not an existing directory")

        try:
            loop = get_running_loop()
        except RuntimeError as e:
            raise MonitoringError(f"Cannot monitor {directory}: no running event loop") from e

        self.stop_monitoring()

        self.directory = directory
        self.loop = loop
        self.failure = None
        self.stop_event = Event()
        self.enabled = True
        self.watcher = create_task(
            self.watch(directory, self.stop_event),
            name=f"Watch {directory}",
        )

        logger.info("Monitoring %s for %s", directory, self.filter)

    def restart_monitoring(self) -> None:
        if self.directory is None:
            raise InvalidStateError("No directory was previously monitored.")

        self.start_monitoring(self.directory)

    def stop_monitoring(self) -> None:
        if self.enabled:
            logger.info("Stopped monitoring %s", self.directory)

        self.enabled = False
        if self.stop_event is not None:
            self.stop_event.set()

    async def close(self) -> None:
        self.stop_monitoring()

        if self.watcher is not None:
            await gather(self.watcher, return_exceptions=True)

    def accepts(self, change: Change, path: str) -> bool:
        p = Path(path)
        return p == self.directory or fnmatch(p.name, self.filter)

    async def watch(self, directory: Path, stop_event: Event) -> None:
        try:
            async for changes in awatch(
                directory,
                watch_filter=self.accepts,
                debounce=self.settings.raw_debounce,
                step=self.settings.raw_step,
                stop_event=stop_event,
                recursive=False,
                force_polling=self.settings.force_polling,
            ):
                if not directory.is_dir():
                    raise FileNotFoundError(f"{directory} no longer exists")

                for event in translate_changes(
                    ((c, p) for c, p in changes if Path(p) != directory),
                    detect_renames=self.settings.detect_renames,
                ):
                    self.handle(event)
        except Exception as e:
            if stop_event is not self.stop_event:
                # superseded by a later start_monitoring()
                logger.debug("Stale watch of %s ended with %r", directory, e)
                return
            self.fail(directory, e)

    def fail(self, directory: Path, exc: Exception) -> None:
        error = MonitoringError(f"Monitoring of {directory} failed: {exc}")
        error.__cause__ = exc

        self.failure = error
        self.enabled = False

        logger.error("%s", error)
        self.publish(MonitoringFailed(directory=directory, error=str(error)))

    def post(self, event: RawEvent) -> None:
        if self.loop is None:
            raise InvalidStateError("Monitoring has not been started.")

        self.loop.call_soon_threadsafe(self.handle, event)

    def handle(self, event: RawEvent) -> None:
        if not self.enabled:
            return

        logger.debug("Raw %s event for %s", event.change.value, event.path)

        match event.change:
            case RawChange.Created:
                self.confirm_later(event.path)
            case RawChange.Changed:
                self.confirm_later(event.path)
                self.publish(FileChanged(path=event.path))
            case RawChange.Deleted:
                self.forget(event.path)
                self.publish(FileRemoved(path=event.path))
            case RawChange.Renamed:
                if event.old_path is None:
                    raise ValueError(f"Rename of {event.path} is missing its old path")
                self.forget(event.old_path)
                self.publish(FileRenamed(old_path=event.old_path, path=event.path))

    def confirm_later(self, path: Path) -> None:
        entry = self.paths.get(path)
        if entry is None:
            entry = self.paths[path] = MonitoredPath(
                path=path,
                timer=self.timer_factory(self.settings.grace_period, self.on_elapsed),
            )

        # Still being written, push the confirmation back.
        entry.timer.restart(path)
        entry.state = PathState.PendingConfirmation

    def forget(self, path: Path) -> None:
        entry = self.paths.pop(path, None)
        if entry is None:
            return

        entry.timer.try_stop()
        entry.state = PathState.Idle
        logger.debug("Discarded pending confirmation of %s", path)

    def on_elapsed(self, path: Path) -> None:
        entry = self.paths.pop(path, None)
        if entry is None:
            return

        entry.timer.try_stop()
        entry.state = PathState.Idle

        if not self.enabled:
            return

        if self.settings.confirm_exists and not path.exists():
            logger.debug("%s disappeared before it was confirmed", path)
            return

        self.publish(FileAppeared(path=path))
