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
from collections.abc import Mapping, Sequence
from types import TracebackType
from typing import Self

import aiohttp

from .jsonutil import JsonError, JsonObject, get_dict, get_dictv, get_str, get_str_map
from .kube import KubeApi, KubeError

logger = logging.getLogger(__name__)


def pod_key(pod: JsonObject) -> tuple[str, str]:
    metadata = get_dict(pod, 'metadata')
    return get_str(metadata, 'namespace', ''), get_str(metadata, 'name')


def pod_labels(pod: JsonObject) -> Mapping[str, str]:
    return get_str_map(get_dict(pod, 'metadata'), 'labels', {})


class PodStore:
    """The local mirror of the pods in the cluster.

    This is only ever as current as the last event we saw, so callers must
    treat an empty result as "not yet" rather than "not there".
    """
    def __init__(self) -> None:
        self.pods: dict[tuple[str, str], JsonObject] = {}

    def replace(self, pods: Sequence[JsonObject]) -> None:
        self.pods = {pod_key(pod): pod for pod in pods}

    def apply(self, event: JsonObject) -> None:
        kind = get_str(event, 'type')
        pod = get_dict(event, 'object')
        if kind in ('ADDED', 'MODIFIED'):
            self.pods[pod_key(pod)] = pod
        elif kind == 'DELETED':
            self.pods.pop(pod_key(pod), None)
        else:
            logger.debug('ignoring %s watch event', kind)

    async def list(self, namespace: str, selector: Mapping[str, str]) -> Sequence[JsonObject]:
        return [
            pod for (ns, _name), pod in self.pods.items()
            if ns == namespace and all(pod_labels(pod).get(k) == v for k, v in selector.items())
        ]


class PodWatcher:
    """Keeps a PodStore up to date by following the watch API in the background"""
    RESYNC_DELAY = 1.0

    def __init__(self, api: KubeApi) -> None:
        self.api = api
        self.store = PodStore()
        self.synced = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    async def sync_once(self) -> None:
        pod_list = await self.api.list_pods()
        self.store.replace(get_dictv(pod_list, 'items'))
        self.synced.set()

        resource_version = get_str(get_dict(pod_list, 'metadata'), 'resourceVersion', '')
        async for event in self.api.watch_pods(resource_version):
            if get_str(event, 'type') == 'ERROR':
                # usually "410 Gone": our resourceVersion is too old, so list again
                logger.debug('watch error: %r', event.get('object'))
                return
            self.store.apply(event)

    async def run(self) -> None:
        while True:
            try:
                await self.sync_once()
            # ValueError: a garbled or oversized line in the watch stream
            except (KubeError, aiohttp.ClientError, JsonError, ValueError) as exc:
                logger.warning('Error watching pods: %s', exc)
            await asyncio.sleep(self.RESYNC_DELAY)

    async def __aenter__(self) -> Self:
        self._task = asyncio.create_task(self.run())
        return self

    async def __aexit__(self,
                        exc_type: type[BaseException] | None,
                        exc_value: BaseException | None,
                        traceback: TracebackType | None) -> None:
        assert self._task
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
