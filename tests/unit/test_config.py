"""
Tests for configuration loading.
"""
from pathlib import Path

import pytest
import yaml

from clusterpilot.config.loader import Config, load_config, save_config
from clusterpilot.utils.exceptions import ConfigError

DEFAULT_CONFIG = Path(__file__).resolve().parents[2] / "config" / "default.yaml"


def test_defaults():
    config = Config()

    assert config.health.heartbeat_timeout_seconds == 30.0
    assert config.execution.max_parallel_nodes == 8
    assert config.defaults.membership_port == 5801
    assert config.agent.gateway_url is None
    assert config.locks.acquire_timeout_seconds == 0.0


def test_shipped_default_file_loads():
    config = load_config(DEFAULT_CONFIG)

    assert config.server.port > 0
    assert config.defaults.version


def test_partial_file_keeps_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({
        "health": {"heartbeat_timeout_seconds": 45},
        "agent": {"gateway_url": "http://gateway:9000"},
    }))

    config = load_config(path)

    assert config.health.heartbeat_timeout_seconds == 45
    assert config.health.api_rest_path == "/overview"
    assert config.agent.gateway_url == "http://gateway:9000"
    assert config.execution.max_parallel_nodes == 8


def test_env_var_selects_file(tmp_path, monkeypatch):
    path = tmp_path / "custom.yaml"
    path.write_text(yaml.safe_dump({"server": {"port": 9100}}))
    monkeypatch.setenv("CLUSTERPILOT_CONFIG", str(path))

    assert load_config().server.port == 9100


def test_empty_file(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")

    assert load_config(path).defaults.api_port == 8080


def test_missing_file(tmp_path):
    with pytest.raises(ConfigError):
        load_config(tmp_path / "nope.yaml")


def test_invalid_yaml(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("health: [unclosed")

    with pytest.raises(ConfigError):
        load_config(path)


def test_invalid_values(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text(yaml.safe_dump({"execution": {"max_parallel_nodes": "many"}}))

    with pytest.raises(ConfigError):
        load_config(path)


def test_save_and_reload(tmp_path):
    config = Config()
    config.deploy.installer_url = "http://installer:8081"
    path = tmp_path / "nested" / "saved.yaml"

    save_config(config, path)

    assert load_config(path).deploy.installer_url == "http://installer:8081"
