from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from pathlib import Path
from stat import S_IEXEC
from textwrap import dedent

import pytest
from rich.console import Console, Group
from rich.rule import Rule
from rich.text import Text
from typer.testing import CliRunner, Result

from pumlbridge.cli import cli
from pumlbridge.config import MonitorSettings
from pumlbridge.messages import Message
from pumlbridge.monitor import DirectoryMonitor

console = Console()


class FakeTimer:
    def __init__(self, interval: float, on_elapsed: Callable[[Path], None]):
        self.interval = interval
        self.on_elapsed = on_elapsed

        self.restarts: list[Path] = []
        self.stops = 0
        self.started = False
        self.context: Path | None = None

    def restart(self, context: Path) -> None:
        self.restarts.append(context)
        self.context = context
        self.started = True

    def try_stop(self) -> bool:
        self.stops += 1
        was_started = self.started
        self.started = False
        return was_started

    def elapse(self) -> None:
        assert self.context is not None
        self.started = False
        self.on_elapsed(self.context)


@pytest.fixture
def timers() -> list[FakeTimer]:
    return []


@pytest.fixture
def timer_factory(timers: list[FakeTimer]) -> Callable[[float, Callable[[Path], None]], FakeTimer]:
    def factory(interval: float, on_elapsed: Callable[[Path], None]) -> FakeTimer:
        timer = FakeTimer(interval, on_elapsed)
        timers.append(timer)
        return timer

    return factory


@pytest.fixture
def messages() -> list[Message]:
    return []


@pytest.fixture
async def monitor(
    tmp_path: Path,
    timer_factory: Callable[[float, Callable[[Path], None]], FakeTimer],
    messages: list[Message],
) -> AsyncIterator[DirectoryMonitor]:
    monitor = DirectoryMonitor(
        settings=MonitorSettings(grace_period=2),
        timer_factory=timer_factory,
    )
    monitor.subscribe(messages.append)
    monitor.start_monitoring(tmp_path)

    yield monitor

    await monitor.close()


def write_script(path: Path, body: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n" + dedent(body).strip() + "\n")
    path.chmod(path.stat().st_mode | S_IEXEC)

    return path


@pytest.fixture
def script(tmp_path: Path) -> Callable[[str, str], Path]:
    def make(name: str, body: str) -> Path:
        return write_script(tmp_path / "bin" / name, body)

    return make


def run_cli(*args: str) -> Result:
    runner = CliRunner()

    result = runner.invoke(cli, args)

    console.print(
        Group(
            Rule(title="Start Command Output", characters="v"),
            Text.from_ansi(result.output),
            Rule(title="End Command Output", characters="^"),
        ),
    )

    return result
