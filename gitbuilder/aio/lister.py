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
import logging
from typing import Protocol

from .jsonutil import JsonObject
from .util import send_or_stop

logger = logging.getLogger(__name__)


class NamespaceLister(Protocol):
    async def list_namespaces(self) -> JsonObject:
        ...


async def list_namespaces(
    lister: NamespaceLister,
    successes: asyncio.Queue[JsonObject],
    errors: asyncio.Queue[Exception],
    stop: asyncio.Event,
) -> None:
    """List the namespaces once and report the outcome on exactly one queue.

    Meant to be run as its own task.  Once 'stop' is set, nothing more gets
    delivered, and we return instead of waiting on a reader that went away.
    Setting 'stop' does not interrupt a list call that is already running.
    """
    try:
        namespaces = await lister.list_namespaces()
    except Exception as exc:
        if not await send_or_stop(errors, exc, stop):
            logger.debug('dropping namespace list error after stop: %s', exc)
        return

    await send_or_stop(successes, namespaces, stop)
