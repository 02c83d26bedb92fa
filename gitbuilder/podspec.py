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

import json
import uuid
from collections.abc import Mapping, Sequence
from typing import NamedTuple

from .aio.jsonutil import JsonDict, JsonDocument, JsonValue

SLUGBUILDER_NAME = 'deis-slugbuilder'
DOCKERBUILDER_NAME = 'deis-dockerbuilder'

# environment contract with the builder images
TAR_PATH = 'TAR_PATH'
PUT_PATH = 'PUT_PATH'
CACHE_PATH = 'CACHE_PATH'
DEBUG_KEY = 'DEIS_DEBUG'
SOURCE_VERSION = 'SOURCE_VERSION'
IMG_NAME = 'IMG_NAME'
BUILDER_STORAGE = 'BUILDER_STORAGE'
BUILDPACK_URL = 'BUILDPACK_URL'
DOCKER_BUILD_ARGS = 'DOCKER_BUILD_ARGS'
DOCKER_BUILD_ARGS_ENABLED = 'DEIS_DOCKER_BUILD_ARGS_ENABLED'
REGISTRY_HOST = 'DEIS_REGISTRY_SERVICE_HOST'
REGISTRY_PORT = 'DEIS_REGISTRY_SERVICE_PORT'

OBJECT_STORE = 'objectstorage-keyfile'
OBJECT_STORE_PATH = '/var/run/secrets/deis/objectstore/creds'
DOCKER_SOCKET_NAME = 'docker-socket'
DOCKER_SOCKET_PATH = '/var/run/docker.sock'
ENV_ROOT = '/tmp/env'

# pod names are DNS labels: at most 63 characters
MAX_POD_NAME = 63
SLUG_APP_NAME_MAX = 35
DOCKER_APP_NAME_MAX = 33


def stringify(value: JsonValue) -> str:
    """Render an application config value the way builders expect to see it in the environment"""
    if isinstance(value, str):
        return value
    return json.dumps(value)


def random_suffix() -> str:
    return uuid.uuid4().hex[:8]


def slugbuilder_pod_name(app: str, short_sha: str) -> str:
    return f'slugbuild-{app[:SLUG_APP_NAME_MAX]}-{short_sha}-{random_suffix()}'


def dockerbuilder_pod_name(app: str, short_sha: str) -> str:
    return f'dockerbuild-{app[:DOCKER_APP_NAME_MAX]}-{short_sha}-{random_suffix()}'


def env_var(name: str, value: str) -> JsonDict:
    return {'name': name, 'value': value}


def secret_volume(name: str) -> JsonDict:
    return {'name': name, 'secret': {'secretName': name}}


class SlugStrategy(NamedTuple):
    env_secret_name: str
    tar_key: str
    put_key: str
    cache_key: str
    git_short_hash: str
    buildpack_url: str
    storage_type: str
    image: str

    container_name = SLUGBUILDER_NAME

    def volumes(self) -> Sequence[JsonDict]:
        return [secret_volume(self.env_secret_name)]

    def volume_mounts(self) -> Sequence[JsonDict]:
        return [{'name': self.env_secret_name, 'mountPath': ENV_ROOT, 'readOnly': True}]

    def environment(self) -> Sequence[JsonDict]:
        env = []
        # an empty cache key means "no cache": leave the variable out entirely
        if self.cache_key:
            env.append(env_var(CACHE_PATH, self.cache_key))
        env += [
            env_var(TAR_PATH, self.tar_key),
            env_var(PUT_PATH, self.put_key),
            env_var(SOURCE_VERSION, self.git_short_hash),
            env_var(BUILDER_STORAGE, self.storage_type),
        ]
        if self.buildpack_url:
            env.append(env_var(BUILDPACK_URL, self.buildpack_url))
        return env


class ImageStrategy(NamedTuple):
    app_env: Mapping[str, JsonValue]
    tar_key: str
    git_short_hash: str
    image_name: str
    storage_type: str
    image: str
    registry_host: str
    registry_port: str
    registry_env: Mapping[str, str]

    container_name = DOCKERBUILDER_NAME

    def volumes(self) -> Sequence[JsonDict]:
        return [{'name': DOCKER_SOCKET_NAME, 'hostPath': {'path': DOCKER_SOCKET_PATH}}]

    def volume_mounts(self) -> Sequence[JsonDict]:
        return [{'name': DOCKER_SOCKET_NAME, 'mountPath': DOCKER_SOCKET_PATH}]

    def environment(self) -> Sequence[JsonDict]:
        env = [env_var(key, stringify(value)) for key, value in self.app_env.items()]

        # The dockerbuilder hands these to docker-py as build args, which wants
        # a JSON object: {"KEY": "value"}.  Key presence enables it, whatever the value.
        if DOCKER_BUILD_ARGS_ENABLED in self.app_env:
            env.append(env_var(DOCKER_BUILD_ARGS, json.dumps(self.app_env, sort_keys=True)))

        env += [
            env_var(TAR_PATH, self.tar_key),
            env_var(SOURCE_VERSION, self.git_short_hash),
            env_var(IMG_NAME, self.image_name),
            env_var(BUILDER_STORAGE, self.storage_type),
            # so that the builder can reach the in-cluster registry
            env_var(REGISTRY_HOST, self.registry_host),
            env_var(REGISTRY_PORT, self.registry_port),
        ]
        env += [env_var(key, value) for key, value in self.registry_env.items()]
        return env


def build_pod(
    debug: bool,
    name: str,
    namespace: str,
    pull_policy: str,
    node_selector: Mapping[str, str],
    strategy: SlugStrategy | ImageStrategy,
) -> JsonDict:
    env: list[JsonDocument] = []
    if debug:
        env.append(env_var(DEBUG_KEY, '1'))
    env.extend(strategy.environment())

    container: JsonDict = {
        'name': strategy.container_name,
        'image': strategy.image,
        'imagePullPolicy': pull_policy,
        'env': env,
        'volumeMounts': [
            {'name': OBJECT_STORE, 'mountPath': OBJECT_STORE_PATH, 'readOnly': True},
            *strategy.volume_mounts(),
        ],
    }

    spec: JsonDict = {
        # a build runs exactly once
        'restartPolicy': 'Never',
        'containers': [container],
        'volumes': [secret_volume(OBJECT_STORE), *strategy.volumes()],
    }
    if node_selector:
        spec['nodeSelector'] = dict(node_selector)

    return {
        'apiVersion': 'v1',
        'kind': 'Pod',
        'metadata': {
            'name': name,
            'namespace': namespace,
            'labels': {'heritage': name},
        },
        'spec': spec,
    }


def slugbuilder_pod(
    debug: bool,
    name: str,
    namespace: str,
    env_secret_name: str,
    tar_key: str,
    put_key: str,
    cache_key: str,
    git_short_hash: str,
    buildpack_url: str,
    storage_type: str,
    image: str,
    pull_policy: str,
    node_selector: Mapping[str, str],
) -> JsonDict:
    strategy = SlugStrategy(env_secret_name, tar_key, put_key, cache_key, git_short_hash,
                            buildpack_url, storage_type, image)
    return build_pod(debug, name, namespace, pull_policy, node_selector, strategy)


def dockerbuilder_pod(
    debug: bool,
    name: str,
    namespace: str,
    env: Mapping[str, JsonValue],
    tar_key: str,
    git_short_hash: str,
    image_name: str,
    storage_type: str,
    image: str,
    registry_host: str,
    registry_port: str,
    registry_env: Mapping[str, str],
    pull_policy: str,
    node_selector: Mapping[str, str],
) -> JsonDict:
    strategy = ImageStrategy(env, tar_key, git_short_hash, image_name, storage_type, image,
                             registry_host, registry_port, registry_env)
    return build_pod(debug, name, namespace, pull_policy, node_selector, strategy)
