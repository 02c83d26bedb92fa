from pathlib import Path

import pytest

from gitbuilder.aio.buildcontext import BuildContext
from gitbuilder.aio.jsonutil import JsonError, get_nested, get_seconds, get_str, json_merge_patch, load_external_files


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for var in ('GITBUILDER_CONFIG', 'DEIS_REGISTRY_SERVICE_HOST', 'DEIS_REGISTRY_SERVICE_PORT'):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv('XDG_CONFIG_HOME', str(tmp_path / 'xdg'))


def test_builtin_config() -> None:
    ctx = BuildContext(None)
    assert ctx.config['kubernetes'] == {'api-url': 'https://kubernetes.default.svc', 'namespace': 'deis'}
    assert ctx.config['build']['strategy'] == 'auto'  # type: ignore[index,call-overload]
    assert ctx.health_config()['port'] == 8092
    assert 'registry' not in ctx.config['build']  # type: ignore[operator]


def test_command_line_config(tmp_path: Path) -> None:
    config = tmp_path / 'builder.toml'
    config.write_text('[kubernetes]\nnamespace = "builds"\n\n[build]\nstrategy = "image"\n')
    ctx = BuildContext(config)
    assert ctx.config['kubernetes'] == {'api-url': 'https://kubernetes.default.svc', 'namespace': 'builds'}
    assert ctx.config['build']['strategy'] == 'image'  # type: ignore[index,call-overload]
    assert ctx.config['build']['pod-wait'] == 900  # type: ignore[index,call-overload]


def test_environment_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    config = tmp_path / 'env.toml'
    config.write_text('[health]\nport = 9000\n')
    monkeypatch.setenv('GITBUILDER_CONFIG', str(config))
    assert BuildContext(None).health_config()['port'] == 9000


def test_only_one_config_file(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    (tmp_path / 'cli.toml').write_text('[health]\nport = 1\n')
    (tmp_path / 'env.toml').write_text('[health]\nport = 2\ntimeout = 5\n')
    monkeypatch.setenv('GITBUILDER_CONFIG', str(tmp_path / 'env.toml'))
    health = BuildContext(tmp_path / 'cli.toml').health_config()
    assert health['port'] == 1
    assert health['timeout'] == 1


def test_user_config(tmp_path: Path) -> None:
    user_dir = tmp_path / 'xdg' / 'gitbuilder'
    user_dir.mkdir(parents=True)
    (user_dir / 'builder.toml').write_text('[controller]\npost = false\n')
    assert BuildContext(None).config['controller']['post'] is False  # type: ignore[index,call-overload]


def test_missing_config(tmp_path: Path) -> None:
    with pytest.raises(SystemExit, match='No such file'):
        BuildContext(tmp_path / 'nope.toml')


def test_broken_config(tmp_path: Path) -> None:
    config = tmp_path / 'broken.toml'
    config.write_text('[kubernetes\n')
    with pytest.raises(SystemExit, match='broken.toml'):
        BuildContext(config)


def test_external_files(tmp_path: Path) -> None:
    (tmp_path / 'token').write_text('sekrit')
    config = tmp_path / 'builder.toml'
    config.write_text('[kubernetes]\ntoken = [{file="token"}]\n')
    assert BuildContext(config).config['kubernetes']['token'] == 'sekrit'  # type: ignore[index,call-overload]


def test_registry_from_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv('DEIS_REGISTRY_SERVICE_HOST', '10.0.0.9')
    monkeypatch.setenv('DEIS_REGISTRY_SERVICE_PORT', '5000')
    assert BuildContext(None).config['build']['registry'] == {  # type: ignore[index,call-overload]
        'host': '10.0.0.9', 'port': '5000'
    }

    # the configuration file wins
    config = tmp_path / 'builder.toml'
    config.write_text('[build.registry]\nhost = "registry.example.com"\n')
    assert BuildContext(config).config['build']['registry'] == {  # type: ignore[index,call-overload]
        'host': 'registry.example.com', 'port': '5000'
    }


async def test_configuration_error(tmp_path: Path) -> None:
    config = tmp_path / 'builder.toml'
    config.write_text('[build]\nstrategy = "magic"\n')
    with pytest.raises(SystemExit, match="Configuration error: attribute 'build': attribute 'strategy'"):
        async with BuildContext(config):
            pass


def test_merge_patch() -> None:
    current = {'a': 1, 'b': {'c': 2, 'd': 3}}
    assert json_merge_patch(current, {'b': {'c': None, 'e': 4}, 'f': 5}) == {'a': 1, 'b': {'d': 3, 'e': 4}, 'f': 5}
    assert json_merge_patch(current, {'a': {'x': 1}}) == {'a': {'x': 1}, 'b': {'c': 2, 'd': 3}}
    assert current == {'a': 1, 'b': {'c': 2, 'd': 3}}


def test_load_external_files_ignores_lookalikes(tmp_path: Path) -> None:
    doc = {'list': [{'file': 'x', 'other': 'y'}], 'str': 'file', 'nested': {'plain': [1, 2]}}
    assert load_external_files(doc, tmp_path) == doc


@pytest.mark.parametrize('value,expected', [(1, 1.0), (0.5, 0.5), (900, 900.0)])
def test_get_seconds(value: float, expected: float) -> None:
    assert get_seconds({'t': value}, 't') == expected


@pytest.mark.parametrize('value,message', [
    (0, 'must be positive'),
    (-1.5, 'must be positive'),
    ('10', 'must be a number of seconds'),
    (True, 'must be a number of seconds'),
])
def test_get_seconds_invalid(value: object, message: str) -> None:
    with pytest.raises(JsonError, match=f"attribute 't': {message}"):
        get_seconds({'t': value}, 't')  # type: ignore[dict-item]


def test_get_nested() -> None:
    with pytest.raises(JsonError, match=r"^attribute 'kubernetes' required$"):
        with get_nested({}, 'kubernetes'):
            pass

    with pytest.raises(JsonError, match=r"^attribute 'kubernetes': must have type dict$"):
        with get_nested({'kubernetes': 'yes'}, 'kubernetes'):
            pass

    with pytest.raises(JsonError, match=r"^attribute 'kubernetes': attribute 'namespace' required$"):
        with get_nested({'kubernetes': {}}, 'kubernetes') as kubernetes:
            get_str(kubernetes, 'namespace')

    with get_nested({}, 'kubernetes', {}) as kubernetes:
        assert kubernetes == {}
