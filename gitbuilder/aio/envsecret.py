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

import base64
import logging
from collections.abc import Mapping
from typing import Protocol

from ..podspec import stringify
from .jsonutil import JsonDict, JsonObject, JsonValue
from .kube import AlreadyExists

logger = logging.getLogger(__name__)


class SecretStore(Protocol):
    async def create_secret(self, secret: JsonDict) -> JsonObject:
        ...

    async def update_secret(self, secret: JsonDict) -> JsonObject:
        ...


def env_secret(name: str, env: Mapping[str, JsonValue]) -> JsonDict:
    return {
        'apiVersion': 'v1',
        'kind': 'Secret',
        'type': 'Opaque',
        'metadata': {'name': name},
        'data': {
            key: base64.b64encode(stringify(value).encode()).decode('ascii')
            for key, value in env.items()
        },
    }


async def upsert_env_secret(secrets: SecretStore, name: str, env: Mapping[str, JsonValue]) -> None:
    """Create the secret, or replace the contents of the one that's already there"""
    secret = env_secret(name, env)
    try:
        await secrets.create_secret(secret)
        logger.debug('created secret %s', name)
    except AlreadyExists:
        # two pushes racing each other both end up here: last write wins
        await secrets.update_secret(secret)
        logger.debug('updated secret %s', name)
