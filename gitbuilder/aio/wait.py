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
import sys
from collections.abc import Callable, Mapping, Sequence
from types import TracebackType
from typing import Protocol, Self, TextIO

import aiohttp

from .jsonutil import JsonError, JsonObject, get_dict, get_str
from .kube import KubeError

logger = logging.getLogger(__name__)

PodCondition = Callable[[JsonObject], bool]


class Failure(Exception):
    pass


class PodFailed(Failure):
    def __init__(self, reason: str, message: str) -> None:
        super().__init__(f'Giving up; pod went into failed status: \n[{reason}]:{message}')
        self.reason = reason
        self.message = message


class WaitTimeout(Failure):
    pass


class PodLister(Protocol):
    async def list(self, namespace: str, selector: Mapping[str, str]) -> Sequence[JsonObject]:
        ...


def pod_phase(pod: JsonObject) -> str:
    return get_str(get_dict(pod, 'status', {}), 'phase', '')


def pod_running_or_done(pod: JsonObject) -> bool:
    status = get_dict(pod, 'status', {})
    phase = get_str(status, 'phase', '')
    if phase == 'Failed':
        raise PodFailed(get_str(status, 'reason', ''), get_str(status, 'message', ''))
    return phase in ('Running', 'Succeeded')


def pod_done(pod: JsonObject) -> bool:
    # never fails by itself: the caller looks at the final phase
    return pod_phase(pod) in ('Succeeded', 'Failed')


def check_duration(name: str, value: float) -> None:
    if value <= 0:
        raise ValueError(f'{name} must be a positive duration, not {value!r}')


class Progress:
    """Print a progress marker every so often until the block is left.

    Leaving the block tells the ticker to stop and then waits for it to
    acknowledge, so nothing is left running behind us.
    """
    def __init__(self, message: str, interval: float, output: TextIO | None = None) -> None:
        check_duration('ticker interval', interval)
        self.message = message
        self.interval = interval
        self.output = output or sys.stdout
        self.ticks = 0
        self._quit = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    async def run(self) -> None:
        while True:
            try:
                async with asyncio.timeout(self.interval):
                    await self._quit.wait()
                return
            except TimeoutError:
                self.ticks += 1
                print(self.message, file=self.output, flush=True)

    async def __aenter__(self) -> Self:
        self._task = asyncio.create_task(self.run())
        return self

    async def __aexit__(self,
                        exc_type: type[BaseException] | None,
                        exc_value: BaseException | None,
                        traceback: TracebackType | None) -> None:
        assert self._task
        self._quit.set()
        await self._task


async def wait_for_pod_condition(
    store: PodLister,
    namespace: str,
    pod_name: str,
    condition: PodCondition,
    interval: float,
    timeout: float,
) -> None:
    """Poll the pod store until the condition holds for the named pod.

    An empty result or a failing query is "not yet": the watch cache may not
    have seen the pod yet.  PodFailed from the condition is passed through;
    running out of time raises WaitTimeout.
    """
    check_duration('poll interval', interval)
    check_duration('timeout', timeout)

    async def poll() -> None:
        while True:
            try:
                pods = await store.list(namespace, {'heritage': pod_name})
            except (KubeError, aiohttp.ClientError, JsonError) as exc:
                logger.debug('listing pod %s failed, retrying: %s', pod_name, exc)
                pods = []

            if pods and condition(pods[0]):
                return

            await asyncio.sleep(interval)

    try:
        async with asyncio.timeout(timeout):
            await poll()
    except TimeoutError:
        raise WaitTimeout(f'Timed out after {timeout:g}s waiting for pod {pod_name}') from None


async def wait_for_pod(
    store: PodLister,
    namespace: str,
    pod_name: str,
    ticker: float,
    interval: float,
    timeout: float,
    output: TextIO | None = None,
) -> None:
    """Wait for the pod to be running, or already finished either way"""
    async with Progress('...', ticker, output):
        await wait_for_pod_condition(store, namespace, pod_name, pod_running_or_done, interval, timeout)


async def wait_for_pod_end(store: PodLister, namespace: str, pod_name: str, interval: float, timeout: float) -> None:
    await wait_for_pod_condition(store, namespace, pod_name, pod_done, interval, timeout)
