import asyncio

import pytest

from gitbuilder.aio.jsonutil import JsonObject
from gitbuilder.aio.kube import KubeError
from gitbuilder.aio.lister import list_namespaces
from gitbuilder.aio.util import send_or_stop

Queues = tuple[asyncio.Queue[JsonObject], asyncio.Queue[Exception], asyncio.Event]

NAMESPACES: JsonObject = {'kind': 'NamespaceList', 'items': [{'metadata': {'name': 'deis'}}]}


class FakeLister:
    def __init__(self, result: JsonObject | Exception = NAMESPACES) -> None:
        self.result = result
        self.gate = asyncio.Event()
        self.gate.set()
        self.calls = 0

    async def list_namespaces(self) -> JsonObject:
        self.calls += 1
        await self.gate.wait()
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


@pytest.fixture
def queues() -> Queues:
    return asyncio.Queue(), asyncio.Queue(), asyncio.Event()


async def test_list_success(queues: Queues) -> None:
    successes, errors, stop = queues
    await list_namespaces(FakeLister(), successes, errors, stop)
    assert successes.get_nowait() == NAMESPACES
    assert successes.empty()
    assert errors.empty()


async def test_list_error(queues: Queues) -> None:
    successes, errors, stop = queues
    error = KubeError(403, 'Forbidden', 'nope')
    await list_namespaces(FakeLister(error), successes, errors, stop)
    assert errors.get_nowait() is error
    assert errors.empty()
    assert successes.empty()


@pytest.mark.parametrize('result', [NAMESPACES, KubeError(500, 'InternalError', 'oops')])
async def test_list_stopped_before_result(
    queues: Queues,
    result: JsonObject | Exception
) -> None:
    successes, errors, stop = queues
    lister = FakeLister(result)
    lister.gate.clear()

    task = asyncio.create_task(list_namespaces(lister, successes, errors, stop))
    await asyncio.sleep(0.01)
    assert lister.calls == 1

    # the list call itself is not interrupted, but its result goes nowhere
    stop.set()
    lister.gate.set()
    await asyncio.wait_for(task, 1)

    assert successes.empty()
    assert errors.empty()


async def test_list_stopped_while_blocked() -> None:
    # nobody is reading, and the queue is full: the put would block forever
    successes = asyncio.Queue[JsonObject](maxsize=1)
    successes.put_nowait({'kind': 'placeholder'})
    errors = asyncio.Queue[Exception]()
    stop = asyncio.Event()

    task = asyncio.create_task(list_namespaces(FakeLister(), successes, errors, stop))
    await asyncio.sleep(0.01)
    assert not task.done()

    stop.set()
    await asyncio.wait_for(task, 1)
    assert successes.get_nowait() == {'kind': 'placeholder'}
    assert successes.empty()


async def test_send_or_stop() -> None:
    queue = asyncio.Queue[int]()
    stop = asyncio.Event()
    assert await send_or_stop(queue, 1, stop) is True
    assert queue.get_nowait() == 1

    stop.set()
    assert await send_or_stop(queue, 2, stop) is False
    assert queue.empty()
