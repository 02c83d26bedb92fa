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

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

import aiohttp

from .aio.buildcontext import BuildContext
from .aio.gitreceive import Builder, parse_repository, receive
from .aio.healthsrv import serve
from .aio.jsonutil import JsonError, get_int, get_nested, get_seconds, get_str
from .aio.kube import KubeApi, KubeError
from .aio.spawn import CommandError
from .aio.wait import Failure

logger = logging.getLogger(__name__)


async def cmd_receive(args: argparse.Namespace) -> None:
    command = os.environ.get('SSH_ORIGINAL_COMMAND', '')
    user = os.environ.get('RECEIVE_USER', '')

    async with BuildContext(args.config_file, debug=args.debug) as ctx:
        builder = Builder(ctx.build, ctx.kube, ctx.watcher.store, ctx.storage, ctx.controller,
                          app=parse_repository(command), user=user, repo_dir=Path.cwd())
        await receive(builder, sys.stdin, command)


async def cmd_healthsrv(args: argparse.Namespace) -> None:
    ctx = BuildContext(args.config_file, debug=args.debug)
    try:
        health = ctx.health_config()
        host = get_str(health, 'host')
        port = get_int(health, 'port')
        timeout = get_seconds(health, 'timeout')
        with get_nested(ctx.config, 'kubernetes') as kubernetes:
            kube = KubeApi(kubernetes)
    except JsonError as exc:
        sys.exit(f'Configuration error: {exc}')

    async with kube:
        await serve(kube, host, port, timeout)


def main() -> None:
    parser = argparse.ArgumentParser(description='Build container images from git pushes')
    parser.add_argument('--debug', action='store_true', help='Enable debugging output')
    parser.add_argument('-F', '--config-file', metavar='FILENAME', help='Configuration file')
    subparsers = parser.add_subparsers(dest='cmd', required=True)

    subparsers.add_parser('receive', help='Run the pre-receive hook: read ref updates from stdin and build them')
    subparsers.add_parser('healthsrv', help='Serve the /healthz endpoint')

    args = parser.parse_args()
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO)

    commands = {'receive': cmd_receive, 'healthsrv': cmd_healthsrv}
    try:
        asyncio.run(commands[args.cmd](args))
    except (Failure, KubeError, CommandError, aiohttp.ClientError, JsonError) as exc:
        sys.exit(f'{args.cmd}: {exc}')
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == '__main__':
    main()
