from __future__ import annotations

import logging
import os
from asyncio import (
    FIRST_COMPLETED,
    CancelledError,
    Event,
    Future,
    StreamReader,
    StreamWriter,
    Task,
    create_task,
    gather,
    get_running_loop,
    shield,
    wait,
)
from asyncio.subprocess import DEVNULL, PIPE, Process, create_subprocess_exec
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from signal import SIGKILL
from time import monotonic

from typing_extensions import assert_never

from pumlbridge.errors import ProcessCancelledError, ProcessFailure, ProcessLaunchError
from pumlbridge.model import Model

logger = logging.getLogger(__name__)

BUFFER_SIZE = 64 * 1024

Command = Sequence[str | Path]


class ProcessOutcome(Model):
    command: tuple[str, ...]

    def unwrap(self) -> bytes:
        """
        Return the captured output of a successful run.

        Raises :class:`ProcessFailure` if the process wrote diagnostics,
        and :class:`ProcessCancelledError` if it was cancelled.
        """
        match self:
            case ProcessSucceeded(output=output):
                return output
            case ProcessFailed(diagnostics=diagnostics):
                raise ProcessFailure(diagnostics)
            case ProcessCancelled():
                raise ProcessCancelledError(f"{self.command[0]} was cancelled")
            case _:  # pragma: unreachable
                raise TypeError(f"Unknown outcome {self!r}")


class ProcessSucceeded(ProcessOutcome):
    output: bytes = b""
    exit_code: int


class ProcessFailed(ProcessOutcome):
    diagnostics: str
    exit_code: int | None


class ProcessCancelled(ProcessOutcome):
    pass


AnyOutcome = ProcessSucceeded | ProcessFailed | ProcessCancelled


@dataclass
class Invocation:
    """
    One run of an external program.

    The diagnostic stream is always drained. When input is supplied, the output is
    drained and the input written concurrently, so a child that writes a lot before
    it has read all of its input can never deadlock against us.

    The arbiter task resolves :attr:`outcome` exactly once, with whichever of
    "the process exited" and "cancellation was requested" it observes first.
    """

    command: tuple[str, ...]
    process: Process
    cancellation: Event
    start_time: float

    diagnostics: bytearray = field(repr=False)
    output: bytearray | None = field(repr=False)
    activities: tuple[Task[None], ...] = field(repr=False)

    outcome: Future[AnyOutcome] = field(repr=False)
    arbiter: Task[AnyOutcome] | None = field(default=None, repr=False)
    duration: timedelta | None = None

    @classmethod
    async def start(
        cls,
        command: Command,
        input: bytes | None = None,
        cancellation: Event | None = None,
        cwd: Path | None = None,
        envs: Mapping[str, str] | None = None,
    ) -> Invocation:
        args = tuple(map(str, command))
        if not args:
            raise ValueError("Cannot run an empty command")

        duplex = input is not None

        start_time = monotonic()

        try:
            process = await create_subprocess_exec(
                *args,
                stdin=PIPE if duplex else DEVNULL,
                stdout=PIPE if duplex else DEVNULL,
                stderr=PIPE,
                cwd=cwd,
                env=None if envs is None else os.environ | dict(envs),
                start_new_session=True,
            )
        except OSError as e:
            raise ProcessLaunchError(args, e.strerror or str(e)) from e

        logger.debug("Started %s (pid %d)", args, process.pid)

        diagnostics = bytearray()
        activities = [
            create_task(
                drain(process.stderr, diagnostics),
                name=f"Read diagnostics for {args[0]}",
            )
        ]

        output = None
        if input is not None:
            output = bytearray()
            activities.append(
                create_task(
                    drain(process.stdout, output),
                    name=f"Read output for {args[0]}",
                )
            )
            activities.append(
                create_task(
                    feed(process.stdin, input),
                    name=f"Write input for {args[0]}",
                )
            )

        invocation = cls(
            command=args,
            process=process,
            cancellation=cancellation or Event(),
            start_time=start_time,
            diagnostics=diagnostics,
            output=output,
            activities=tuple(activities),
            outcome=get_running_loop().create_future(),
        )

        invocation.arbiter = create_task(invocation.arbitrate(), name=f"Arbitrate {args[0]}")

        if invocation.cancellation.is_set():
            invocation.kill()

        return invocation

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def exit_code(self) -> int | None:
        return self.process.returncode

    @property
    def has_exited(self) -> bool:
        return self.exit_code is not None

    def kill(self) -> None:
        if self.has_exited:
            return None

        try:
            os.killpg(os.getpgid(self.process.pid), SIGKILL)
        except ProcessLookupError:
            # process exited before we could send the signal
            logger.debug("%s (pid %d) already exited", self.command[0], self.pid)

    def cancel(self) -> None:
        self.cancellation.set()
        self.kill()

    def cancel_threadsafe(self) -> None:
        """Request cancellation from a thread other than the one running the event loop."""
        self.outcome.get_loop().call_soon_threadsafe(self.cancel)

    async def wait(self) -> AnyOutcome:
        assert self.arbiter is not None
        try:
            return await shield(self.arbiter)
        except CancelledError:
            self.cancel()
            raise

    async def finish(self) -> int:
        exit_code = await self.process.wait()
        await gather(*self.activities)
        return exit_code

    async def arbitrate(self) -> AnyOutcome:
        finished = create_task(self.finish(), name=f"Wait for {self.command[0]}")
        cancelled = create_task(self.cancellation.wait(), name=f"Watch cancellation of {self.command[0]}")

        try:
            await wait((finished, cancelled), return_when=FIRST_COMPLETED)

            if self.cancellation.is_set():
                self.kill()
                return self.resolve(ProcessCancelled(command=self.command))

            exit_code = finished.result()
            if self.diagnostics:
                return self.resolve(
                    ProcessFailed(
                        command=self.command,
                        diagnostics=self.diagnostics.decode("utf-8", errors="replace"),
                        exit_code=exit_code,
                    )
                )

            return self.resolve(
                ProcessSucceeded(
                    command=self.command,
                    output=bytes(self.output or b""),
                    exit_code=exit_code,
                )
            )
        finally:
            await self.release(finished, cancelled)

    def resolve(self, outcome: AnyOutcome) -> AnyOutcome:
        if not self.outcome.done():
            self.outcome.set_result(outcome)
            self.duration = timedelta(seconds=monotonic() - self.start_time)
            logger.debug("%s resolved as %s after %s", self.command[0], type(outcome).__name__, self.duration)
        return self.outcome.result()

    async def release(self, *contenders: Task[object]) -> None:
        for task in (*contenders, *self.activities):
            task.cancel()

        self.kill()

        await gather(*contenders, *self.activities, return_exceptions=True)
        await self.process.wait()


async def drain(stream: StreamReader | None, buffer: bytearray) -> None:
    if stream is None:  # pragma: unreachable
        raise Exception("Process does not have an associated stream reader")

    while chunk := await stream.read(BUFFER_SIZE):
        buffer.extend(chunk)


async def feed(stream: StreamWriter | None, data: bytes) -> None:
    if stream is None:  # pragma: unreachable
        raise Exception("Process does not have an associated stream writer")

    try:
        stream.write(data)
        await stream.drain()
        stream.close()
        await stream.wait_closed()
    except (BrokenPipeError, ConnectionResetError):
        # the child exited, or closed its input, before reading everything
        logger.debug("Process stopped reading its input after less than %d bytes", len(data))
        stream.close()


async def run(
    command: Command,
    cancellation: Event | None = None,
    cwd: Path | None = None,
    envs: Mapping[str, str] | None = None,
) -> AnyOutcome:
    """Run a program without input, capturing only its diagnostic stream."""
    invocation = await Invocation.start(command, cancellation=cancellation, cwd=cwd, envs=envs)
    return await invocation.wait()


async def pipe(
    command: Command,
    input: bytes,
    cancellation: Event | None = None,
    cwd: Path | None = None,
    envs: Mapping[str, str] | None = None,
) -> AnyOutcome:
    """Run a program with the given input, capturing its output and diagnostic streams."""
    invocation = await Invocation.start(command, input=input, cancellation=cancellation, cwd=cwd, envs=envs)
    return await invocation.wait()


def describe(outcome: AnyOutcome) -> str:
    match outcome:
        case ProcessSucceeded(exit_code=exit_code, output=output):
            return f"succeeded with exit code {exit_code} and {len(output)} bytes of output"
        case ProcessFailed(diagnostics=diagnostics):
            return f"failed: {diagnostics.strip()}"
        case ProcessCancelled():
            return "was cancelled"
        case never:
            assert_never(never)
