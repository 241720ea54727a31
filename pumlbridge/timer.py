from __future__ import annotations

from asyncio import Task, create_task, sleep
from functools import partial
from typing import Awaitable, Callable, Generic, Optional, Protocol, TypeVar

T = TypeVar("T")
C = TypeVar("C")
C_contra = TypeVar("C_contra", contravariant=True)


def delay(delay: float, fn: Callable[[], Awaitable[T]], name: Optional[str] = None) -> Task[T]:
    async def delayed() -> T:
        await sleep(delay)
        return await fn()

    return create_task(delayed(), name=name)


class Timer(Protocol[C_contra]):
    """
    A single-shot delay that can be re-armed.

    Restarting an armed timer replaces the pending firing,
    so only the most recent arming ever elapses.
    """

    interval: float

    @property
    def started(self) -> bool: ...

    def restart(self, context: C_contra) -> None: ...

    def try_stop(self) -> bool: ...


TimerFactory = Callable[[float, Callable[[C], None]], Timer[C]]


class AsyncTimer(Generic[C]):
    """
    A :class:`Timer` backed by a task on the running event loop.

    All methods must be called from the loop's thread.
    """

    def __init__(self, interval: float, on_elapsed: Callable[[C], None]):
        self.interval = interval
        self.on_elapsed = on_elapsed

        self._task: Task[None] | None = None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} interval={self.interval} started={self.started}>"

    @property
    def started(self) -> bool:
        return self._task is not None and not self._task.done()

    def restart(self, context: C) -> None:
        self.try_stop()
        self._task = delay(self.interval, partial(self._elapse, context), name=f"Timer for {context}")

    def try_stop(self) -> bool:
        if not self.started:
            return False

        assert self._task is not None
        self._task.cancel()
        self._task = None
        return True

    async def _elapse(self, context: C) -> None:
        self._task = None
        self.on_elapsed(context)
