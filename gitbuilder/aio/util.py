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
import codecs
import contextlib
import logging
import ssl
from collections.abc import AsyncIterator, Mapping
from typing import TypeVar

import aiohttp

from .jsonutil import JsonObject, get_str

logger = logging.getLogger(__name__)

T = TypeVar('T')


async def send_or_stop(queue: asyncio.Queue[T], item: T, stop: asyncio.Event) -> bool:
    """Deliver a single item, unless we are told to stop first.

    Races the put against the stop event.  If the stop event wins (or was
    already set) the put is abandoned and nothing is ever delivered.  Returns
    True if the item was delivered.
    """
    if stop.is_set():
        return False

    put = asyncio.create_task(queue.put(item))
    stopped = asyncio.create_task(stop.wait())
    try:
        await asyncio.wait({put, stopped}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (put, stopped):
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    # a put that completed in the same iteration as the stop still counts as delivered
    return put.done() and not put.cancelled()


async def read_utf8(stream: aiohttp.StreamReader) -> AsyncIterator[str]:
    decoder = codecs.getincrementaldecoder('UTF-8')(errors='replace')
    async for data in stream.iter_any():
        yield decoder.decode(data)
    yield decoder.decode(b'', final=True)


def create_http_session(
    config: JsonObject, headers: Mapping[str, str], *, raise_for_status: bool = True
) -> aiohttp.ClientSession:
    if cadata := get_str(config, 'ca', None):
        connector = aiohttp.TCPConnector(ssl=ssl.create_default_context(cadata=cadata))
    else:
        connector = None

    headers = {
        'User-Agent': get_str(config, 'user-agent', 'gitbuilder'),
        **headers,
    }

    return aiohttp.ClientSession(connector=connector, headers=headers, raise_for_status=raise_for_status)
