import logging
from collections.abc import Iterator

import pytest
from aioresponses import aioresponses

from gitbuilder.aio.controller import BUILDER_AUTH_HEADER, Controller
from gitbuilder.aio.jsonutil import JsonError

CONTROLLER = 'http://controller.test'


@pytest.fixture
def mock() -> Iterator[aioresponses]:
    with aioresponses() as mock:
        yield mock


async def test_get_app_config(mock: aioresponses) -> None:
    mock.post(f'{CONTROLLER}/v2/hooks/config', payload={'owner': 'dev', 'values': {'FOO': 'bar', 'N': 1}})
    async with Controller({'url': CONTROLLER, 'builder-key': 'k3y\n'}) as controller:
        assert controller.session.headers[BUILDER_AUTH_HEADER] == 'k3y'
        assert await controller.get_app_config('myapp', 'dev') == {'FOO': 'bar', 'N': 1}

    (call,), = mock.requests.values()
    assert call.kwargs['json'] == {'receive_user': 'dev', 'receive_repo': 'myapp'}


async def test_get_app_config_no_values(mock: aioresponses) -> None:
    mock.post(f'{CONTROLLER}/v2/hooks/config', payload={'owner': 'dev'})
    async with Controller({'url': CONTROLLER, 'builder-key': 'k3y'}) as controller:
        assert await controller.get_app_config('myapp', 'dev') == {}


async def test_publish_release(mock: aioresponses) -> None:
    mock.post(f'{CONTROLLER}/v2/hooks/build', payload={'release': {'version': 2}})
    async with Controller({'url': CONTROLLER, 'builder-key': 'k3y'}) as controller:
        await controller.publish_release('myapp', 'dev', 'a' * 40, 'myapp:git-aaaaaaaa')

    (call,), = mock.requests.values()
    assert call.kwargs['json'] == {
        'receive_user': 'dev', 'receive_repo': 'myapp', 'sha': 'a' * 40, 'image': 'myapp:git-aaaaaaaa'
    }


async def test_key_required() -> None:
    with pytest.raises(JsonError, match="attribute 'builder-key' required"):
        async with Controller({'url': CONTROLLER}):
            pass


async def test_dry_run(mock: aioresponses, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    async with Controller({'url': CONTROLLER, 'post': False}) as controller:
        assert await controller.get_app_config('myapp', 'dev') == {}
        await controller.publish_release('myapp', 'dev', 'a' * 40, 'myapp:git-aaaaaaaa')

    assert mock.requests == {}
    assert caplog.text.count('** Would post') == 2
