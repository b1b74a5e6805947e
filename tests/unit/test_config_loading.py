"""
Configuration loading: packaged defaults, YAML ${VAR} expansion,
TRADESTATE_ environment overrides and dotenv handling.
"""
import os

import pytest

from tradestate.config.config import DEFAULT_CONFIG_PATH, Config, load_config
from tradestate.config.dotenv_loader import is_prod_env, load_dotenv_files


@pytest.fixture(autouse=True)
def prod_env(monkeypatch):
    """Start every test as prod so dotenv files in the cwd are ignored."""
    monkeypatch.delenv("ENVIRONMENT", raising=False)


def _write(tmp_path, text, name="config.yaml"):
    path = tmp_path / name
    path.write_text(text)
    return path


def test_packaged_config_exists():
    assert DEFAULT_CONFIG_PATH.exists()


def test_packaged_defaults():
    config = load_config()

    assert config.environment == "prod"
    assert config.store.initial_sequence == 0
    assert config.realtime.require_sequence is False
    assert config.mutations.request_timeout_seconds == 30
    assert config.mutations.rollback_target == "snapshot"
    assert config.reconciliation.enabled is True
    assert config.reconciliation.interval_seconds == 60
    assert config.sltp.side_convention == "side_aware"
    assert config.monitoring.log_level == "INFO"
    assert config.monitoring.log_file is None


def test_empty_yaml_uses_model_defaults(tmp_path):
    config = Config.from_yaml(_write(tmp_path, ""))
    assert config.mutations.history_size == 200


def test_environment_overrides_yaml(tmp_path, monkeypatch):
    path = _write(tmp_path, "mutations:\n  request_timeout_seconds: 20\n  rollback_target: latest_known\n")
    monkeypatch.setenv("TRADESTATE_MUTATIONS__REQUEST_TIMEOUT_SECONDS", "5")

    config = Config.from_yaml(path)

    assert config.mutations.request_timeout_seconds == 5
    assert config.mutations.rollback_target == "latest_known"


def test_yaml_variable_expansion(tmp_path, monkeypatch):
    monkeypatch.setenv("TRADESTATE_TEST_LOG_DIR", str(tmp_path))
    path = _write(tmp_path, "monitoring:\n  log_file: ${TRADESTATE_TEST_LOG_DIR}/state.log\n")

    config = Config.from_yaml(path)

    assert config.monitoring.log_file == f"{tmp_path}/state.log"


def test_unset_variable_is_left_as_is(tmp_path, monkeypatch):
    monkeypatch.delenv("TRADESTATE_TEST_UNSET", raising=False)
    path = _write(tmp_path, "monitoring:\n  log_file: ${TRADESTATE_TEST_UNSET}/state.log\n")

    assert Config.from_yaml(path).monitoring.log_file == "${TRADESTATE_TEST_UNSET}/state.log"


def test_environment_variable_selects_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "test")
    assert Config.from_yaml(_write(tmp_path, "environment: prod\n")).environment == "test"


@pytest.mark.parametrize(
    "text",
    [
        "mutations:\n  rollback_target: newest\n",
        "mutations:\n  request_timeout_seconds: 0\n",
        "reconciliation:\n  interval_seconds: 0.5\n",
        "sltp:\n  side_convention: upside_down\n",
        "- just\n- a list\n",
    ],
)
def test_invalid_values_rejected(tmp_path, text):
    with pytest.raises(ValueError):
        Config.from_yaml(_write(tmp_path, text))


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")


def test_dotenv_skipped_in_prod(tmp_path):
    _write(tmp_path, "TRADESTATE_TEST_DOTENV=1\n", name=".env")
    assert is_prod_env()
    assert load_dotenv_files(repo_root=tmp_path) == []


def test_dotenv_local_overrides_env_file(tmp_path, monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "dev")
    # registered with monkeypatch so the values loaded below are undone
    monkeypatch.setenv("TRADESTATE_TEST_SHELL", "from-shell")
    monkeypatch.setenv("TRADESTATE_TEST_LOCAL", "from-shell")
    _write(tmp_path, "TRADESTATE_TEST_SHELL=from-env\nTRADESTATE_TEST_LOCAL=from-env\n", name=".env")
    _write(tmp_path, "TRADESTATE_TEST_LOCAL=from-local\n", name=".env.local")

    loaded = load_dotenv_files(repo_root=tmp_path)

    assert [p.name for p in loaded] == [".env", ".env.local"]
    assert os.environ["TRADESTATE_TEST_SHELL"] == "from-shell"
    assert os.environ["TRADESTATE_TEST_LOCAL"] == "from-local"
