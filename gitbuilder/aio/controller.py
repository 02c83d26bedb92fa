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
from typing import Self

from yarl import URL

from .jsonutil import JsonDict, JsonObject, JsonValue, get_bool, get_dict, get_str, typechecked
from .util import create_http_session

logger = logging.getLogger(__name__)

BUILDER_AUTH_HEADER = 'X-Deis-Builder-Auth'


class Controller(contextlib.AsyncExitStack):
    """The platform controller: it knows the app config and takes the finished release"""
    def __init__(self, config: JsonObject) -> None:
        super().__init__()
        self.config = config
        self.api = URL(get_str(config, 'url'))
        self.dry_run = not get_bool(config, 'post', True)

    async def __aenter__(self) -> Self:
        headers = {}
        # the builder key is mandatory unless we're just pretending
        if key := get_str(self.config, 'builder-key', *((None,) if self.dry_run else ())):
            headers[BUILDER_AUTH_HEADER] = key.strip()

        self.session = await self.enter_async_context(create_http_session(self.config, headers))
        return self

    async def post(self, resource: str, body: JsonDict) -> JsonValue:
        if self.dry_run:
            logger.info('** Would post to %s: %s', resource, json.dumps(body, indent=4))
            return {}

        async with self.session.post(self.api / resource, json=body) as response:
            logger.debug('response %r', response)
            return await response.json()

    async def get_app_config(self, app: str, user: str) -> JsonObject:
        config = typechecked(await self.post('v2/hooks/config', {'receive_user': user, 'receive_repo': app}), dict)
        return get_dict(config, 'values', {})

    async def publish_release(self, app: str, user: str, sha: str, image: str) -> None:
        await self.post('v2/hooks/build', {
            'receive_user': user,
            'receive_repo': app,
            'sha': sha,
            'image': image,
        })
