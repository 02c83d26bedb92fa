import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest
from aiohttp import test_utils

from gitbuilder.aio import healthsrv
from gitbuilder.aio.healthsrv import _background, check_namespaces, create_app, result_queues
from gitbuilder.aio.jsonutil import JsonObject
from gitbuilder.aio.kube import KubeError


class FakeLister:
    def __init__(self, result: JsonObject | Exception, delay: float = 0) -> None:
        self.result = result
        self.delay = delay

    async def list_namespaces(self) -> JsonObject:
        await asyncio.sleep(self.delay)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


async def client_for(lister: FakeLister, timeout: float) -> AsyncIterator[test_utils.TestClient]:
    async with test_utils.TestClient(test_utils.TestServer(create_app(lister, timeout))) as client:
        yield client


@pytest.fixture
async def healthy() -> AsyncIterator[test_utils.TestClient]:
    async for client in client_for(FakeLister({'items': []}), 1):
        yield client


@pytest.fixture
async def broken() -> AsyncIterator[test_utils.TestClient]:
    async for client in client_for(FakeLister(KubeError(403, 'Forbidden', 'no namespaces for you')), 1):
        yield client


@pytest.fixture
async def slow() -> AsyncIterator[test_utils.TestClient]:
    async for client in client_for(FakeLister({'items': []}, delay=0.5), 0.05):
        yield client


async def test_healthz_ok(healthy: test_utils.TestClient) -> None:
    response = await healthy.get('/healthz')
    assert response.status == 200
    assert await response.text() == 'OK\n'


async def test_healthz_error(broken: test_utils.TestClient) -> None:
    response = await broken.get('/healthz')
    assert response.status == 503
    assert 'no namespaces for you' in await response.text()


async def test_healthz_timeout(slow: test_utils.TestClient) -> None:
    response = await slow.get('/healthz')
    assert response.status == 503
    assert 'Timed out' in await response.text()
    await asyncio.wait_for(asyncio.gather(*_background), 1)


async def test_check_namespaces() -> None:
    assert await check_namespaces(FakeLister({'items': ['x']}), 1) == {'items': ['x']}

    with pytest.raises(KubeError, match='Forbidden'):
        await check_namespaces(FakeLister(KubeError(403, 'Forbidden', '')), 1)

    with pytest.raises(TimeoutError):
        await check_namespaces(FakeLister({}, delay=0.5), 0.05)

    # the abandoned list call still finishes on its own, delivering nothing
    await asyncio.wait_for(asyncio.gather(*_background), 1)
    assert not _background


async def test_result_queues_have_one_slot(monkeypatch: pytest.MonkeyPatch) -> None:
    created: list[asyncio.Queue[Any]] = []

    def recording_queues() -> tuple[asyncio.Queue[JsonObject], asyncio.Queue[Exception]]:
        successes, errors = result_queues()
        created.extend((successes, errors))
        return successes, errors

    monkeypatch.setattr(healthsrv, 'result_queues', recording_queues)
    assert await check_namespaces(FakeLister({'items': []}), 1) == {'items': []}
    assert [queue.maxsize for queue in created] == [1, 1]
    assert all(queue.empty() for queue in created)
