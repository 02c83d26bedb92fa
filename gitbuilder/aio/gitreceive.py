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

import logging
import shlex
import sys
from collections.abc import AsyncIterator, Iterable, Mapping
from pathlib import Path
from typing import Protocol, TextIO

from ..podspec import dockerbuilder_pod, dockerbuilder_pod_name, slugbuilder_pod, slugbuilder_pod_name
from .envsecret import SecretStore, upsert_env_secret
from .jsonutil import (
    JsonDict, JsonError, JsonObject, JsonValue, get_bool, get_dict, get_seconds, get_str, get_str_map
)
from .spawn import capture, run
from .wait import Failure, PodLister, wait_for_pod, wait_for_pod_end

logger = logging.getLogger(__name__)

STRATEGIES = ('auto', 'slug', 'image')


class MalformedLine(Failure):
    pass


class Cluster(SecretStore, Protocol):
    namespace: str

    async def create_pod(self, pod: JsonDict) -> JsonObject:
        ...

    async def get_pod(self, name: str) -> JsonObject:
        ...

    def stream_pod_log(self, name: str) -> AsyncIterator[str]:
        ...


class Storage(Protocol):
    kind: str

    async def put(self, key: str, data: bytes) -> None:
        ...


class AppConfigSource(Protocol):
    async def get_app_config(self, app: str, user: str) -> JsonObject:
        ...

    async def publish_release(self, app: str, user: str, sha: str, image: str) -> None:
        ...


class BuildConfig:
    def __init__(self, obj: JsonObject) -> None:
        self.debug = get_bool(obj, 'debug', False)
        self.strategy = get_str(obj, 'strategy', 'auto')
        if self.strategy not in STRATEGIES:
            raise JsonError(obj, f"attribute 'strategy' must be one of {', '.join(STRATEGIES)}")

        # builder pods
        self.slugbuilder_image = get_str(obj, 'slugbuilder-image')
        self.dockerbuilder_image = get_str(obj, 'dockerbuilder-image')
        self.pull_policy = get_str(obj, 'pull-policy', 'IfNotPresent')
        self.node_selector = get_str_map(obj, 'node-selector', {})

        # in-cluster registry, for image builds
        registry = get_dict(obj, 'registry', {})
        self.registry_host = get_str(registry, 'host', '')
        self.registry_port = get_str(registry, 'port', '')
        self.registry_env = get_str_map(registry, 'env', {})

        # all in seconds
        self.session_idle_interval = get_seconds(obj, 'session-idle-interval', 10.0)
        self.pod_tick = get_seconds(obj, 'pod-tick', 0.1)
        self.pod_wait = get_seconds(obj, 'pod-wait', 900.0)


def read_line(line: str) -> tuple[str, str, str]:
    """Parse one '<old-rev> <new-rev> <ref-name>' line from the pre-receive hook"""
    fields = line.split()
    if len(fields) != 3:
        raise MalformedLine(f'malformed line [{line.rstrip()}]')
    old_rev, new_rev, ref_name = fields
    return old_rev, new_rev, ref_name


def parse_repository(ssh_original_command: str) -> str:
    """git-receive-pack '/myapp.git' → myapp"""
    try:
        _, repository = shlex.split(ssh_original_command)
    except ValueError as exc:
        raise Failure(f'unexpected git command [{ssh_original_command}]') from exc
    return repository.strip('/').removesuffix('.git')


class Builder:
    """Runs one build per pushed revision: stage, configure, launch, and follow the builder pod"""
    def __init__(
        self,
        config: BuildConfig,
        cluster: Cluster,
        pods: PodLister,
        storage: Storage,
        controller: AppConfigSource,
        app: str,
        user: str,
        repo_dir: Path,
        output: TextIO | None = None,
    ) -> None:
        self.config = config
        self.cluster = cluster
        self.pods = pods
        self.storage = storage
        self.controller = controller
        self.app = app
        self.user = user
        self.repo_dir = repo_dir
        self.output = output or sys.stdout

    def say(self, message: str) -> None:
        print(message, file=self.output, flush=True)

    async def has_dockerfile(self, rev: str) -> bool:
        return await run(['git', 'cat-file', '-e', f'{rev}:Dockerfile'], cwd=self.repo_dir) == 0

    async def choose_strategy(self, rev: str) -> str:
        if self.config.strategy != 'auto':
            return self.config.strategy
        return 'image' if await self.has_dockerfile(rev) else 'slug'

    def slugbuilder_pod(self, short_sha: str, env: Mapping[str, JsonValue]) -> tuple[JsonDict, str]:
        slug_name = f'{self.app}:git-{short_sha}'
        put_key = f'home/{slug_name}/push'
        cache_key = '' if 'DEIS_DISABLE_CACHE' in env else f'home/{self.app}/cache'
        buildpack_url = env.get('BUILDPACK_URL', '')

        pod = slugbuilder_pod(
            self.config.debug,
            slugbuilder_pod_name(self.app, short_sha),
            self.cluster.namespace,
            f'{self.app}-build-env',
            f'home/{slug_name}/tar',
            put_key,
            cache_key,
            short_sha,
            buildpack_url if isinstance(buildpack_url, str) else '',
            self.storage.kind,
            self.config.slugbuilder_image,
            self.config.pull_policy,
            self.config.node_selector,
        )
        return pod, put_key

    def dockerbuilder_pod(self, short_sha: str, env: Mapping[str, JsonValue]) -> tuple[JsonDict, str]:
        image_name = f'{self.app}:git-{short_sha}'

        pod = dockerbuilder_pod(
            self.config.debug,
            dockerbuilder_pod_name(self.app, short_sha),
            self.cluster.namespace,
            env,
            f'home/{image_name}/tar',
            short_sha,
            image_name,
            self.storage.kind,
            self.config.dockerbuilder_image,
            self.config.registry_host,
            self.config.registry_port,
            self.config.registry_env,
            self.config.pull_policy,
            self.config.node_selector,
        )
        return pod, image_name

    async def build(self, new_rev: str) -> None:
        short_sha = new_rev[:8]
        namespace = self.cluster.namespace
        env = await self.controller.get_app_config(self.app, self.user)
        strategy = await self.choose_strategy(new_rev)
        logger.debug('building %s at %s using the %s strategy', self.app, short_sha, strategy)

        self.say('-----> Uploading build context')
        tarball = await capture(['git', 'archive', '--format=tar.gz', new_rev], cwd=self.repo_dir)
        await self.storage.put(f'home/{self.app}:git-{short_sha}/tar', tarball)

        await upsert_env_secret(self.cluster, f'{self.app}-build-env', env)

        if strategy == 'image':
            pod, image = self.dockerbuilder_pod(short_sha, env)
        else:
            pod, image = self.slugbuilder_pod(short_sha, env)

        pod_name = get_str(get_dict(pod, 'metadata'), 'name')
        self.say(f'-----> Starting build... but first, coffee! ({pod_name})')
        await self.cluster.create_pod(pod)

        await wait_for_pod(self.pods, namespace, pod_name, self.config.session_idle_interval,
                           self.config.pod_tick, self.config.pod_wait, self.output)

        async for block in self.cluster.stream_pod_log(pod_name):
            self.output.write(block)
        self.output.flush()

        await wait_for_pod_end(self.pods, namespace, pod_name, self.config.pod_tick, self.config.pod_wait)

        status = get_dict(await self.cluster.get_pod(pod_name), 'status', {})
        if (phase := get_str(status, 'phase', '')) != 'Succeeded':
            raise Failure(f'Build pod {pod_name} ended in phase {phase or "Unknown"}: '
                          f'{get_str(status, "message", "no message")}')

        self.say('-----> Build complete, launching release')
        await self.controller.publish_release(self.app, self.user, new_rev, image)
        self.say('-----> Done')


async def receive(builder: Builder, lines: Iterable[str], ssh_original_command: str) -> None:
    """The pre-receive hook proper: one build per updated ref, stopping at the first error"""
    logger.debug('Running git hook')
    for line in lines:
        old_rev, new_rev, ref_name = read_line(line)
        logger.debug('read [%s,%s,%s]', old_rev, new_rev, ref_name)

        # only pushes build anything
        if ssh_original_command.startswith('git-receive-pack'):
            await builder.build(new_rev)
