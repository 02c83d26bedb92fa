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

import contextlib
import json
import logging
from collections.abc import AsyncIterator, Mapping
from pathlib import Path
from typing import Self

import aiohttp
from yarl import URL

from .jsonutil import JsonDict, JsonError, JsonObject, get_str, typechecked
from .util import create_http_session, read_utf8

logger = logging.getLogger(__name__)

# in-cluster service account, as mounted into every pod
SERVICE_ACCOUNT_DIR = Path('/var/run/secrets/kubernetes.io/serviceaccount')


class KubeError(Exception):
    """The API server rejected a request.  Carries the fields of the returned v1/Status."""
    def __init__(self, status: int, reason: str, message: str) -> None:
        super().__init__(f'{status} {reason}: {message}')
        self.status = status
        self.reason = reason
        self.message = message


class AlreadyExists(KubeError):
    pass


def label_selector(labels: Mapping[str, str]) -> str:
    return ','.join(f'{key}={value}' for key, value in sorted(labels.items()))


async def check_response(response: aiohttp.ClientResponse) -> None:
    if response.ok:
        return

    text = await response.text()
    try:
        status = typechecked(json.loads(text), dict)
        reason = get_str(status, 'reason', '') or response.reason or ''
        message = get_str(status, 'message', '') or text
    except (json.JSONDecodeError, JsonError):
        reason, message = response.reason or '', text

    logger.debug('%s %s -> %r %r', response.method, response.url, response.status, reason)
    if reason == 'AlreadyExists':
        raise AlreadyExists(response.status, reason, message)
    raise KubeError(response.status, reason, message)


class KubeApi(contextlib.AsyncExitStack):
    """A small Kubernetes API client: just the calls that a build needs.

    There are no retries here: every error goes straight back to the caller.
    """
    def __init__(self, config: JsonObject) -> None:
        super().__init__()
        self.config = config
        self.api = URL(get_str(config, 'api-url'))
        self.namespace = get_str(config, 'namespace')

    def read_token(self) -> str | None:
        if token := get_str(self.config, 'token', None):
            return token.strip()
        token_file = Path(get_str(self.config, 'token-file', str(SERVICE_ACCOUNT_DIR / 'token')))
        try:
            return token_file.read_text().strip()
        except FileNotFoundError:
            logger.debug('No service account token at %s', token_file)
            return None

    async def __aenter__(self) -> Self:
        headers = {'Accept': 'application/json'}
        if token := self.read_token():
            headers['Authorization'] = f'Bearer {token}'

        config = dict(self.config)
        if 'ca' not in config and (SERVICE_ACCOUNT_DIR / 'ca.crt').exists():
            config['ca'] = (SERVICE_ACCOUNT_DIR / 'ca.crt').read_text()

        self.session = await self.enter_async_context(create_http_session(config, headers, raise_for_status=False))
        return self

    def url(self, resource: str, namespace: str | None = None) -> URL:
        if namespace is None:
            return self.api / 'api/v1' / resource
        return self.api / 'api/v1/namespaces' / namespace / resource

    async def request(self, method: str, url: URL, body: JsonDict | None = None) -> JsonObject:
        logger.debug('%s %s', method, url)
        async with self.session.request(method, url, json=body) as response:
            await check_response(response)
            return typechecked(await response.json(), dict)

    async def create_secret(self, secret: JsonDict) -> JsonObject:
        return await self.request('POST', self.url('secrets', self.namespace), secret)

    async def update_secret(self, secret: JsonDict) -> JsonObject:
        name = get_str(typechecked(secret['metadata'], dict), 'name')
        return await self.request('PUT', self.url(f'secrets/{name}', self.namespace), secret)

    async def create_pod(self, pod: JsonDict) -> JsonObject:
        return await self.request('POST', self.url('pods', self.namespace), pod)

    async def get_pod(self, name: str) -> JsonObject:
        return await self.request('GET', self.url(f'pods/{name}', self.namespace))

    async def list_pods(self, labels: Mapping[str, str] | None = None) -> JsonObject:
        url = self.url('pods', self.namespace)
        if labels:
            url = url % {'labelSelector': label_selector(labels)}
        return await self.request('GET', url)

    async def list_namespaces(self) -> JsonObject:
        return await self.request('GET', self.url('namespaces'))

    async def watch_pods(self, resource_version: str) -> AsyncIterator[JsonObject]:
        """Follow the pod watch stream, yielding one event object per line"""
        url = self.url('pods', self.namespace) % {'watch': '1', 'resourceVersion': resource_version}
        logger.debug('WATCH %s', url)
        async with self.session.get(url, timeout=aiohttp.ClientTimeout(total=None, sock_read=None)) as response:
            await check_response(response)
            # events for big pods easily exceed the line limit of the stream reader
            pending = b''
            async for data in response.content.iter_any():
                *lines, pending = (pending + data).split(b'\n')
                for line in lines:
                    if line.strip():
                        yield typechecked(json.loads(line), dict)
            if pending.strip():
                yield typechecked(json.loads(pending), dict)

    async def stream_pod_log(self, name: str) -> AsyncIterator[str]:
        url = self.url(f'pods/{name}/log', self.namespace) % {'follow': 'true'}
        logger.debug('LOG %s', url)
        async with self.session.get(url, timeout=aiohttp.ClientTimeout(total=None, sock_read=None)) as response:
            await check_response(response)
            async for block in read_utf8(response.content):
                yield block
