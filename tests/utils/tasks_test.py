from __future__ import annotations

import asyncio
import contextlib
import logging

import pytest

from peermesh.utils.tasks import SafeTaskExitError
from peermesh.utils.tasks import SerialTaskQueue
from peermesh.utils.tasks import spawn_guarded_background_task


def test_background_task_exits_on_error() -> None:
    async def okay_task() -> None:
        return

    async def safe_task() -> None:
        raise SafeTaskExitError()

    async def bad_task() -> None:
        raise RuntimeError()

    async def run(task) -> None:
        await spawn_guarded_background_task(task)

    with contextlib.redirect_stdout(
        None,
    ), contextlib.redirect_stderr(None):
        asyncio.run(run(okay_task))
        with pytest.raises(SafeTaskExitError):
            asyncio.run(run(safe_task))
        with pytest.raises(SystemExit):
            asyncio.run(run(bad_task))


@pytest.mark.asyncio()
async def test_serial_queue_runs_in_order_without_overlap() -> None:
    queue = SerialTaskQueue('test')
    events: list[str] = []

    async def _work(name: str, delay: float) -> None:
        events.append(f'start-{name}')
        await asyncio.sleep(delay)
        events.append(f'end-{name}')

    queue.submit(_work, 'a', 0.02)
    queue.submit(_work, 'b', 0)
    queue.submit(_work, name='c', delay=0.01)
    assert not queue.idle

    await queue.join()

    assert queue.idle
    assert events == [
        'start-a',
        'end-a',
        'start-b',
        'end-b',
        'start-c',
        'end-c',
    ]
    await queue.close()


@pytest.mark.asyncio()
async def test_serial_queue_continues_after_error(caplog) -> None:
    caplog.set_level(logging.ERROR)
    queue = SerialTaskQueue('test')
    done: list[int] = []

    async def _bad() -> None:
        raise RuntimeError('Oh no!')

    async def _good() -> None:
        done.append(1)

    queue.submit(_bad)
    queue.submit(_good)
    await queue.join()

    assert done == [1]
    assert any('Oh no!' in record.message for record in caplog.records)
    await queue.close()


@pytest.mark.asyncio()
async def test_serial_queue_stop_runs_queued_work() -> None:
    queue = SerialTaskQueue('test')
    done: list[int] = []

    async def _good(value: int) -> None:
        done.append(value)

    queue.submit(_good, 1)
    queue.submit(_good, 2)
    queue.stop()
    assert queue.stopped

    with pytest.raises(RuntimeError, match='stopped'):
        queue.submit(_good, 3)

    await queue.join()
    assert done == [1, 2]


@pytest.mark.asyncio()
async def test_serial_queue_stop_before_start() -> None:
    queue = SerialTaskQueue('test')
    queue.stop()
    # Nothing was started so nothing is left to wait on
    await asyncio.wait_for(queue.join(), 1)
    await queue.close()


@pytest.mark.asyncio()
async def test_serial_queue_close_cancels_work() -> None:
    queue = SerialTaskQueue('test')
    started = asyncio.Event()

    async def _forever() -> None:
        started.set()
        await asyncio.sleep(1000)

    queue.submit(_forever)
    await started.wait()
    await queue.close()

    assert queue.stopped


@pytest.mark.asyncio()
async def test_serial_queue_runs_after_previous_queue() -> None:
    first = SerialTaskQueue('first')
    order: list[str] = []

    async def _slow() -> None:
        await asyncio.sleep(0.05)
        order.append('first')

    async def _fast() -> None:
        order.append('second')

    first.submit(_slow)
    first.stop()
    second = SerialTaskQueue('second', after=first)
    second.submit(_fast)
    assert not second.idle

    await second.join()
    assert order == ['first', 'second']
    await second.close()


@pytest.mark.asyncio()
async def test_serial_queue_done_callback() -> None:
    queue = SerialTaskQueue('test')
    done: list[SerialTaskQueue] = []

    async def _work() -> None:
        await asyncio.sleep(0)

    with pytest.raises(RuntimeError, match='not stopped'):
        queue.add_done_callback(done.append)

    queue.submit(_work)
    queue.stop()
    queue.add_done_callback(done.append)
    assert done == []

    await queue.wait_finished()
    await asyncio.sleep(0)
    assert done == [queue]


@pytest.mark.asyncio()
async def test_serial_queue_done_callback_never_started() -> None:
    queue = SerialTaskQueue('test')
    queue.stop()
    done: list[SerialTaskQueue] = []
    queue.add_done_callback(done.append)
    assert done == [queue]


@pytest.mark.asyncio()
async def test_serial_queue_close_closes_previous_queue() -> None:
    first = SerialTaskQueue('first')
    started = asyncio.Event()

    async def _forever() -> None:
        started.set()
        await asyncio.sleep(1000)

    first.submit(_forever)
    first.stop()
    await started.wait()
    second = SerialTaskQueue('second', after=first)
    second.submit(_forever)

    await second.close()
    await asyncio.wait_for(first.wait_finished(), 1)
