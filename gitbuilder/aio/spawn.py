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
from collections.abc import Sequence
from pathlib import Path

logger = logging.getLogger(__name__)


class CommandError(Exception):
    pass


async def run(args: Sequence[str], cwd: Path | None = None) -> int:
    logger.debug('run(%r)', args)
    process = await asyncio.create_subprocess_exec(*args, cwd=cwd,
                                                   stdout=asyncio.subprocess.DEVNULL,
                                                   stderr=asyncio.subprocess.DEVNULL)
    logger.debug('run: waiting for pid %r', process.pid)
    status = await process.wait()
    logger.debug('run: pid %r exited, %r', process.pid, status)
    return status


async def capture(args: Sequence[str], cwd: Path | None = None) -> bytes:
    logger.debug('capture(%r)', args)
    process = await asyncio.create_subprocess_exec(*args, cwd=cwd,
                                                   stdout=asyncio.subprocess.PIPE,
                                                   stderr=asyncio.subprocess.PIPE)
    stdout, stderr = await process.communicate()
    logger.debug('capture: pid %r exited, %r, %d bytes', process.pid, process.returncode, len(stdout))
    if process.returncode:
        raise CommandError(f'{args[0]} exited with code {process.returncode}: {stderr.decode(errors="replace")}')
    return stdout
