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
from collections.abc import Callable, Iterator, Mapping, Sequence
from enum import Enum
from pathlib import Path
from typing import ContextManager, TypeVar, Union

# immutable: configuration and objects read back from the cluster
JsonLiteral = str | float | bool | None
JsonValue = Union['JsonObject', Sequence['JsonValue'], JsonLiteral]
JsonObject = Mapping[str, JsonValue]

# mutable: manifests that we assemble and submit
JsonDocument = Union['JsonDict', 'JsonList', JsonLiteral]
JsonDict = dict[str, JsonDocument]
JsonList = list[JsonDocument]


DT = TypeVar('DT')
T = TypeVar('T')


class JsonError(Exception):
    value: object

    def __init__(self, value: object, msg: str):
        super().__init__(msg)
        self.value = value


def typechecked(value: JsonValue, expected_type: type[T]) -> T:
    """Ensure a JSON value has the expected type, returning it if so."""
    if not isinstance(value, expected_type):
        raise JsonError(value, f'must have type {expected_type.__name__}')
    return value


# None is a perfectly good default for most of our optional keys, so it can't be the sentinel
class _Empty(Enum):
    TOKEN = 0


_empty = _Empty.TOKEN


def _get(obj: JsonObject, cast: Callable[[JsonValue], T], key: str, default: DT | _Empty) -> T | DT:
    try:
        value = obj[key]
        if default is not _empty and value is default:
            return default
        return cast(value)
    except KeyError:
        if default is not _empty:
            return default
        raise JsonError(obj, f"attribute '{key}' required") from None
    except JsonError as exc:
        target = f"attribute '{key}'" + (' elements:' if exc.value is not obj[key] else ':')
        raise JsonError(obj, f"{target} {exc!s}") from exc


def get_bool(obj: JsonObject, key: str, default: DT | _Empty = _empty) -> DT | bool:
    return _get(obj, lambda v: typechecked(v, bool), key, default)


def get_int(obj: JsonObject, key: str, default: DT | _Empty = _empty) -> DT | int:
    return _get(obj, lambda v: typechecked(v, int), key, default)


def get_seconds(obj: JsonObject, key: str, default: DT | _Empty = _empty) -> DT | float:
    """A positive duration, given in seconds as an integer or a float"""
    def as_seconds(value: JsonValue) -> float:
        if isinstance(value, bool) or not isinstance(value, int | float):
            raise JsonError(value, 'must be a number of seconds')
        if value <= 0:
            raise JsonError(value, 'must be positive')
        return float(value)
    return _get(obj, as_seconds, key, default)


def get_str(obj: JsonObject, key: str, default: DT | _Empty = _empty) -> DT | str:
    return _get(obj, lambda v: typechecked(v, str), key, default)


def get_dict(obj: JsonObject, key: str, default: DT | _Empty = _empty) -> DT | JsonObject:
    return _get(obj, lambda v: typechecked(v, dict), key, default)


def get_dictv(obj: JsonObject, key: str, default: DT | _Empty = _empty) -> DT | Sequence[JsonObject]:
    return _get(obj, lambda v: tuple(typechecked(item, dict) for item in typechecked(v, list)), key, default)


def get_str_map(obj: JsonObject, key: str, default: DT | _Empty = _empty) -> DT | Mapping[str, str]:
    def as_str_map(value: JsonValue) -> Mapping[str, str]:
        return {key: typechecked(value, str) for key, value in typechecked(value, dict).items()}
    return _get(obj, as_str_map, key, default)


def get_nested(obj: JsonObject, key: str, default: DT | _Empty = _empty) -> ContextManager[DT | JsonObject]:
    # errors raised inside the block get the key prepended, so they point at the right table
    @contextlib.contextmanager
    def wrapper() -> Iterator[DT | JsonObject]:
        # a missing or mistyped table already names the key
        value = get_dict(obj, key, default)
        try:
            yield value
        except JsonError as exc:
            target = f"attribute '{key}'" + (' elements:' if exc.value is not value else ':')
            raise JsonError(obj, f"{target} {exc!s}") from exc
    return wrapper()


def json_merge_patch(current: JsonObject, patch: JsonObject) -> JsonObject:
    """Perform a JSON merge patch (RFC 7396) using 'current' and 'patch'.
    Neither of the input dictionaries is modified; the result is returned.
    """
    result = dict(current)
    for key, patch_value in patch.items():
        if isinstance(patch_value, Mapping):
            current_value = current.get(key, None)
            if not isinstance(current_value, Mapping):
                current_value = {}
            result[key] = json_merge_patch(current_value, patch_value)
        elif patch_value is not None:
            result[key] = patch_value
        else:
            result.pop(key, None)

    return result


def parse_filename(value: JsonValue) -> str | None:
    # magic: must look exactly like [{file="filename"}]
    if not isinstance(value, Sequence) or isinstance(value, str) or len(value) != 1:
        return None
    item, = value
    if not isinstance(item, Mapping) or len(item) != 1:
        return None
    (key, filename), = item.items()
    if key != 'file' or not isinstance(filename, str):
        return None
    return filename


def load_external_files(obj: JsonObject, path: Path) -> JsonObject:
    """Replace any [{"file": "filename"}] entries in a document with the
    contents of the named files, relative to 'path'.  Used to keep tokens and
    keys out of the configuration file itself.
    """
    result = {}
    for key, value in obj.items():
        if filename := parse_filename(value):
            value = (path / filename).read_text()
        elif isinstance(value, dict):
            value = load_external_files(value, path)
        result[key] = value
    return result
