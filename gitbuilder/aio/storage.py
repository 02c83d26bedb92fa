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
import hashlib
import hmac
import logging
import time
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import NamedTuple, Self

from yarl import URL

from .jsonutil import JsonError, JsonObject, get_nested, get_str
from .util import create_http_session

logger = logging.getLogger(__name__)


class ObjectStorage(contextlib.AsyncExitStack):
    """Where build contexts get staged for the builder pods to pick up"""
    # handed to the builder as BUILDER_STORAGE
    kind: str

    async def put(self, key: str, data: bytes) -> None:
        raise NotImplementedError


class LocalStorage(ObjectStorage):
    kind = 'local'

    def __init__(self, config: JsonObject) -> None:
        super().__init__()
        self.directory = Path(get_str(config, 'dir')).expanduser()

    async def put(self, key: str, data: bytes) -> None:
        path = self.directory / key
        logger.debug('Write %s', path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)


class S3Key(NamedTuple):
    access: str
    secret: str


def s3_sign(
    url: URL, method: str, headers: Mapping[str, str], checksum: str, keys: S3Key
) -> Mapping[str, str]:
    """Signs an AWS request using the AWS4-HMAC-SHA256 algorithm

    Returns a dictionary of extra headers which need to be sent along with the request.
    The checksum is the hex SHA256 of the body.
    """
    amzdate = time.strftime('%Y%m%dT%H%M%SZ', time.gmtime())
    assert url.host is not None

    # Header canonicalisation demands all header names in lowercase
    headers = {key.lower(): value for key, value in headers.items()}
    headers.update({'host': url.host, 'x-amz-content-sha256': checksum, 'x-amz-date': amzdate})
    headers_str = ''.join(f'{k}:{v}\n' for k, v in sorted(headers.items()))
    headers_list = ';'.join(sorted(headers))

    credential_scope = f'{amzdate[:8]}/any/s3/aws4_request'
    signing_key = f'AWS4{keys.secret}'.encode('ascii')
    for item in credential_scope.split('/'):
        signing_key = hmac.new(signing_key, item.encode('ascii'), hashlib.sha256).digest()

    algorithm = 'AWS4-HMAC-SHA256'
    canonical_request = f'{method}\n{url.raw_path}\n{url.query_string}\n{headers_str}\n{headers_list}\n{checksum}'
    request_hash = hashlib.sha256(canonical_request.encode('ascii')).hexdigest()
    string_to_sign = f'{algorithm}\n{amzdate}\n{credential_scope}\n{request_hash}'
    signature = hmac.new(signing_key, string_to_sign.encode('ascii'), hashlib.sha256).hexdigest()
    headers['Authorization'] = (
        f'{algorithm} Credential={keys.access}/{credential_scope},SignedHeaders={headers_list},Signature={signature}'
    )

    return headers


class S3Storage(ObjectStorage):
    kind = 's3'

    def __init__(self, config: JsonObject) -> None:
        super().__init__()
        self.config = config
        self.url = URL(get_str(config, 'url'))
        try:
            access, secret = get_str(config, 'key').split()
            self.key = S3Key(access, secret)
        except (ValueError, JsonError):
            with get_nested(config, 'key') as key:
                self.key = S3Key(get_str(key, 'access'), get_str(key, 'secret'))

    async def __aenter__(self) -> Self:
        self.session = await self.enter_async_context(create_http_session(self.config, {}))
        return self

    async def put(self, key: str, data: bytes) -> None:
        url = self.url / key
        checksum = hashlib.sha256(data).hexdigest()
        headers = s3_sign(url, 'PUT', {'Content-Type': 'application/gzip'}, checksum, self.key)
        logger.debug('PUT %s (%d bytes)', url, len(data))
        async with self.session.put(url, data=data, headers=headers) as response:
            logger.debug('response %r', response)


STORAGE_DRIVERS: Mapping[str, Callable[[JsonObject], ObjectStorage]] = {
    's3': S3Storage,
    'local': LocalStorage,
}
