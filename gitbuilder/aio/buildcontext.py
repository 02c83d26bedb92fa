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
import logging
import os
import sys
import tomllib
from pathlib import Path
from typing import Self

from ..constants import BUILTIN_CONFIG, xdg_config_home
from .controller import Controller
from .gitreceive import BuildConfig
from .jsonutil import JsonError, JsonObject, get_nested, get_str, json_merge_patch, load_external_files
from .kube import KubeApi
from .podwatcher import PodWatcher
from .storage import STORAGE_DRIVERS, ObjectStorage

logger = logging.getLogger(__name__)

# set on the builder's own pod by the cluster, for the registry service
REGISTRY_SERVICE_ENV = {
    'host': 'DEIS_REGISTRY_SERVICE_HOST',
    'port': 'DEIS_REGISTRY_SERVICE_PORT',
}


class BuildContext(contextlib.AsyncExitStack):
    config: JsonObject = {}  # noqa:RUF012  # JsonObject is immutable
    kube: KubeApi
    storage: ObjectStorage
    controller: Controller
    watcher: PodWatcher
    build: BuildConfig

    def load_config(self, path: Path, name: str, *, missing_ok: bool = False) -> None:
        logger.debug('Loading %s configuration from %s', name, str(path))
        try:
            with path.open('rb') as file:
                content = tomllib.load(file)
        except tomllib.TOMLDecodeError as exc:
            sys.exit(f'{path}: {exc}')
        except FileNotFoundError as exc:
            if missing_ok:
                logger.debug('No %s configuration found at %s', name, str(path))
                return
            else:
                sys.exit(f'{path}: {exc}')
        except OSError as exc:
            sys.exit(f'{path}: {exc}')

        # load_external_files() can throw so make sure it's outside of the above block
        self.config = json_merge_patch(self.config, load_external_files(content, path.parent))

    def __init__(self, config_file: Path | str | None, *, debug: bool = False) -> None:
        super().__init__()

        self.debug = debug

        # The config is made out of the built-in config...
        self.load_config(Path(BUILTIN_CONFIG), 'built-in')

        # ... plus exactly one of the following:
        if config_file:
            self.load_config(Path(config_file), 'command-line')
        elif config_file := os.environ.get('GITBUILDER_CONFIG'):
            self.load_config(Path(config_file), '$GITBUILDER_CONFIG-specified')
        else:
            self.load_config(Path(xdg_config_home('gitbuilder', 'builder.toml')), 'user', missing_ok=True)

        # ... and the registry service address that the cluster hands to our own pod
        registry = {key: os.environ[var] for key, var in REGISTRY_SERVICE_ENV.items() if var in os.environ}
        if registry:
            self.config = json_merge_patch({'build': {'registry': registry}}, self.config)

    def health_config(self) -> JsonObject:
        with get_nested(self.config, 'health') as health:
            return health

    async def __aenter__(self) -> Self:
        try:
            with get_nested(self.config, 'build') as build:
                self.build = BuildConfig(build)
                if self.debug:
                    self.build.debug = True

            with get_nested(self.config, 'kubernetes') as kubernetes:
                self.kube = await self.enter_async_context(KubeApi(kubernetes))

            with get_nested(self.config, 'storage') as storage:
                driver = get_str(storage, 'driver')
                if driver not in STORAGE_DRIVERS:
                    sys.exit(f'Unknown storage driver {driver}')
                with get_nested(storage, driver) as driver_config:
                    self.storage = await self.enter_async_context(STORAGE_DRIVERS[driver](driver_config))

            with get_nested(self.config, 'controller') as controller:
                self.controller = await self.enter_async_context(Controller(controller))

            self.watcher = await self.enter_async_context(PodWatcher(self.kube))
        except JsonError as exc:
            await self.__aexit__(exc.__class__, exc, None)
            sys.exit(f'Configuration error: {exc}')
        except BaseException as exc:
            await self.__aexit__(exc.__class__, exc, None)
            raise

        return self
