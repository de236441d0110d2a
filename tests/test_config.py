"""
Test YAML configuration loading.
"""

import pytest

from rtensor import config as config_module
from rtensor.config import (
    ClientConfig, ReconnectConfig, default_endpoint, default_port, get_config, load_config,
    load_config_from_env, parse_config
)


@pytest.fixture(autouse=True)
def reset_config():
    config_module._config.clear()
    yield
    config_module._config.clear()


def test_defaults():
    config = ClientConfig()
    assert config.connection.max_pending == 1024
    assert config.timeout_for('compute') == 60.0
    assert config.cancel_on_timeout


def test_load_yaml(tmp_path):
    path = tmp_path / "rtensor.yaml"
    path.write_text(
        "connection:\n"
        "  max_pending: 16\n"
        "  connect_timeout: 1.5\n"
        "reconnect:\n"
        "  max_attempts: 2\n"
        "timeouts:\n"
        "  compute: 10\n"
        "  transfer: null\n"
    )
    load_config(str(path))
    config = get_config()
    assert config.connection.max_pending == 16
    assert config.connection.connect_timeout == 1.5
    assert config.connection.poll_interval == 0.05  # untouched
    assert config.reconnect.max_attempts == 2
    assert config.timeout_for('compute') == 10
    assert config.timeout_for('transfer') is None
    assert config.timeout_for('create') == 30.0


def test_missing_file():
    with pytest.raises(FileNotFoundError):
        load_config("/nonexistent/rtensor.yaml")


def test_empty_file_gives_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    load_config(str(path))
    assert get_config() == ClientConfig()


@pytest.mark.parametrize("raw", [
    {'connectoin': {}},
    {'connection': {'max_pendin': 3}},
    {'reconnect': {'retries': 3}},
    {'timeouts': {'upload': 1.0}},
    {'connection': {'max_pending': 0}},
    {'reconnect': {'max_attempts': -1}},
])
def test_invalid_configs(raw):
    with pytest.raises(ValueError):
        parse_config(raw)


def test_load_from_env(tmp_path, monkeypatch):
    path = tmp_path / "env.yaml"
    path.write_text("cancel_on_timeout: false\n")
    monkeypatch.setenv('RTENSOR_CONFIG', str(path))
    load_config_from_env()
    assert get_config().cancel_on_timeout is False


def test_load_from_env_unset(monkeypatch):
    monkeypatch.delenv('RTENSOR_CONFIG', raising=False)
    load_config_from_env()
    assert get_config() == ClientConfig()


def test_backoff_is_exponential_and_bounded():
    reconnect = ReconnectConfig(backoff=0.1, backoff_max=0.5)
    assert [reconnect.delay(i) for i in range(4)] == pytest.approx([0.1, 0.2, 0.4, 0.5])


def test_unknown_request_class():
    with pytest.raises(ValueError):
        ClientConfig().timeout_for('upload')


def test_environment_defaults(monkeypatch):
    monkeypatch.delenv('REMOTE_BACKEND_URL', raising=False)
    monkeypatch.delenv('REMOTE_BACKEND_PORT', raising=False)
    assert default_endpoint() == "tcp://localhost:3000"
    assert default_port() == 3000

    monkeypatch.setenv('REMOTE_BACKEND_URL', "tcp://gpu-box:4000")
    monkeypatch.setenv('REMOTE_BACKEND_PORT', "4000")
    assert default_endpoint() == "tcp://gpu-box:4000"
    assert default_port() == 4000

    monkeypatch.setenv('REMOTE_BACKEND_PORT', "abc")
    with pytest.raises(ValueError):
        default_port()
