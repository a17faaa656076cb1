"""Asyncio task helpers with error handling."""
from __future__ import annotations

import asyncio
import functools
import logging
import traceback
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Coroutine

logger = logging.getLogger(__name__)


class SafeTaskExitError(Exception):
    """Exception that can be raised inside a task to safely exit it."""

    pass


async def _execute_and_log_traceback(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    **kwargs: Any,
) -> None:
    try:
        await coro(*args, **kwargs)
    except Exception:
        logger.error(traceback.format_exc())
        raise


def exit_on_error(task: asyncio.Task[Any]) -> None:
    """Task callback that raises SystemExit on task exception."""
    if (
        not task.cancelled()
        and task.exception() is not None
        and not isinstance(task.exception(), SafeTaskExitError)
    ):
        logger.error(
            f'Exception in background task (name="{task.get_name()}"): '
            f'{task.exception()!r}',
        )
        raise SystemExit(1)


def spawn_guarded_background_task(
    coro: Callable[..., Coroutine[Any, Any, None]],
    *args: Any,
    **kwargs: Any,
) -> asyncio.Task[Any]:
    """Run a coroutine safely in the background.

    Exceptions raised inside the task are logged and cause the program to
    exit, unless the exception is a
    [`SafeTaskExitError`][peermesh.utils.tasks.SafeTaskExitError].
    Otherwise, background tasks that are never awaited could fail silently
    and leave the program hanging.

    Args:
        coro: Coroutine to run as task.
        args: Positional arguments for the coroutine.
        kwargs: Keyword arguments for the coroutine.

    Returns:
        Asyncio task handle.
    """
    task = asyncio.create_task(
        _execute_and_log_traceback(coro, *args, **kwargs),
    )
    task.add_done_callback(exit_on_error)
    return task


class SerialTaskQueue:
    """Run submitted coroutines one at a time in submission order.

    A single background task drains the queue so coroutines submitted to
    the same queue never overlap. Exceptions raised by a coroutine are
    logged and do not stop the queue.

    Args:
        name: Name used for the background task and in logs.
        after: Queue whose remaining work must finish before anything
            submitted to this queue runs.
    """

    def __init__(
        self,
        name: str,
        *,
        after: SerialTaskQueue | None = None,
    ) -> None:
        self._name = name
        self._after = after
        self._queue: asyncio.Queue[
            Callable[[], Awaitable[None]] | None
        ] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self._pending = 0
        self._stopped = False

    @property
    def name(self) -> str:
        """Name of the queue."""
        return self._name

    @property
    def idle(self) -> bool:
        """If no submitted coroutine is queued or running."""
        return self._pending == 0

    @property
    def stopped(self) -> bool:
        """If the queue no longer accepts work."""
        return self._stopped

    def submit(
        self,
        coro: Callable[..., Awaitable[None]],
        *args: Any,
        **kwargs: Any,
    ) -> None:
        """Queue a coroutine function to run after all earlier submissions.

        Raises:
            RuntimeError: If the queue has been stopped.
        """
        if self._stopped:
            raise RuntimeError(f'Task queue {self._name} is stopped.')
        self._queue.put_nowait(functools.partial(coro, *args, **kwargs))
        self._pending += 1
        if self._task is None:
            self._task = asyncio.create_task(self._run())
            self._task.set_name(self._name)

    async def _run(self) -> None:
        if self._after is not None:
            await self._after.wait_finished()
            self._after = None
        while True:
            item = await self._queue.get()
            try:
                if item is None:
                    return
                await item()
            except Exception:
                logger.error(
                    f'Exception in task queue {self._name}:\n'
                    f'{traceback.format_exc()}',
                )
            finally:
                if item is not None:
                    self._pending -= 1
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every submitted coroutine has finished."""
        await self._queue.join()

    def stop(self) -> None:
        """Stop accepting work. Already queued work still runs."""
        if self._stopped:
            return
        self._stopped = True
        if self._task is not None:
            self._queue.put_nowait(None)

    async def wait_finished(self) -> None:
        """Wait until the background task of a stopped queue has exited."""
        if self._task is not None:
            await asyncio.wait({self._task})

    def add_done_callback(
        self,
        callback: Callable[[SerialTaskQueue], None],
    ) -> None:
        """Call `callback` with the queue once it is stopped and drained.

        Raises:
            RuntimeError: If the queue has not been stopped.
        """
        if not self._stopped:
            raise RuntimeError(f'Task queue {self._name} is not stopped.')
        if self._task is None or self._task.done():
            callback(self)
        else:
            self._task.add_done_callback(lambda _: callback(self))

    async def close(self) -> None:
        """Stop the queue and cancel any running work.

        A queue this queue was waiting on is closed too.
        """
        self._stopped = True
        if self._after is not None:
            await self._after.close()
            self._after = None
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
