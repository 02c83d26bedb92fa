# Copyright (C) 2024 Red Hat, Inc.
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <http://www.gnu.org/licenses/>.

import asyncio
import contextlib
import logging

from aiohttp import web

from .jsonutil import JsonObject
from .lister import NamespaceLister, list_namespaces

logger = logging.getLogger(__name__)

LISTER_KEY = web.AppKey('lister', NamespaceLister)
TIMEOUT_KEY = web.AppKey('timeout', float)

# list calls that outlive their request, until they finish
_background: set[asyncio.Task[None]] = set()


def result_queues() -> tuple[asyncio.Queue[JsonObject], asyncio.Queue[Exception]]:
    # one slot each: a list call delivers at most one result
    return asyncio.Queue(maxsize=1), asyncio.Queue(maxsize=1)


async def check_namespaces(lister: NamespaceLister, timeout: float) -> JsonObject:
    successes, errors = result_queues()
    stop = asyncio.Event()

    task = asyncio.create_task(list_namespaces(lister, successes, errors, stop))
    _background.add(task)
    task.add_done_callback(_background.discard)

    success = asyncio.create_task(successes.get())
    error = asyncio.create_task(errors.get())
    try:
        done, _ = await asyncio.wait({success, error}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop.set()
        for getter in (success, error):
            getter.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await getter

    if success in done:
        return success.result()
    if error in done:
        raise error.result()
    raise TimeoutError(f'Timed out after {timeout:g}s listing namespaces')


async def healthz(request: web.Request) -> web.Response:
    try:
        await check_namespaces(request.app[LISTER_KEY], request.app[TIMEOUT_KEY])
    except Exception as exc:
        logger.warning('Health check failed: %s', exc)
        return web.Response(status=503, text=f'Error listing namespaces: {exc}\n')
    return web.Response(text='OK\n')


def create_app(lister: NamespaceLister, timeout: float) -> web.Application:
    app = web.Application()
    app[LISTER_KEY] = lister
    app[TIMEOUT_KEY] = timeout
    app.router.add_get('/healthz', healthz)
    return app


async def serve(lister: NamespaceLister, host: str, port: int, timeout: float) -> None:
    runner = web.AppRunner(create_app(lister, timeout))
    await runner.setup()
    try:
        await web.TCPSite(runner, host, port).start()
        logger.info('Health server listening on %s:%d', host, port)
        await asyncio.Event().wait()  # forever
    finally:
        await runner.cleanup()
