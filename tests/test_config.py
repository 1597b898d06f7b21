import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import core.config
from core.config import AppSettings, BackendOverride, Config, get_settings, reset_settings
from core.errors import ConfigError


# --- Test Setup ---
@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in ("LOG_LEVEL", "DOCDISTILL_CONFIG_PATH", "DEFAULT_MODEL", "BASELINE_MODEL",
                 "GENERATION_TIMEOUT_SEC", "CACHE_TTL_DAYS", "INDEXER", "WORKER_SHUTDOWN_GRACE_SEC"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DOCDISTILL_HOME", str(tmp_path / "home"))
    # no stray .env from the working directory
    monkeypatch.chdir(tmp_path)
    reset_settings()
    yield tmp_path
    reset_settings()


# --- Tests ---

def test_defaults(clean_env):
    app = AppSettings()
    assert app.DEFAULT_MODEL == "sonnet"
    assert app.BASELINE_MODEL == "sonnet"
    assert app.GENERATION_TIMEOUT_SEC == 180
    assert app.INDEXER == "indexing.sqlite_index:build_index"
    assert app.cache_dir == clean_env / "home" / "llm-cache"
    assert app.cache_ttl_sec == 7 * 24 * 60 * 60


def test_env_overrides(clean_env, monkeypatch):
    monkeypatch.setenv("BASELINE_MODEL", "haiku")
    monkeypatch.setenv("CACHE_TTL_DAYS", "1")
    app = AppSettings()
    assert app.BASELINE_MODEL == "haiku"
    assert app.cache_ttl_sec == 86400


def test_dotenv_file_is_read(clean_env):
    (clean_env / ".env").write_text("DEFAULT_MODEL=opus\n", encoding="utf-8")
    assert AppSettings().DEFAULT_MODEL == "opus"


def test_invalid_env_value_is_config_error(clean_env, monkeypatch):
    monkeypatch.setenv("GENERATION_TIMEOUT_SEC", "-1")
    with pytest.raises(ConfigError):
        Config()


def test_backends_yaml_is_loaded(clean_env):
    path = clean_env / "backends.yml"
    path.write_text("""
backends:
  claude:
    command: /opt/claude
    extra_args: ["--debug"]
  codex:
    enabled: false
""", encoding="utf-8")

    config = Config(backends_path=path)

    assert config.backends.for_backend("claude").command == "/opt/claude"
    assert config.backends.for_backend("claude").extra_args == ["--debug"]
    assert config.backends.for_backend("codex").enabled is False
    assert config.backends.for_backend("gemini") == BackendOverride()


def test_missing_yaml_uses_defaults(clean_env):
    config = Config(backends_path=clean_env / "absent.yml")
    assert config.backends.backends == {}


def test_invalid_yaml_raises_config_error(clean_env):
    path = clean_env / "bad.yml"
    path.write_text("backends: [unclosed", encoding="utf-8")
    with pytest.raises(ConfigError):
        Config(backends_path=path)


def test_invalid_schema_raises_config_error(clean_env):
    path = clean_env / "bad.yml"
    path.write_text("backends:\n  claude:\n    extra_args: 5\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        Config(backends_path=path)


def test_config_path_from_env_must_exist(clean_env, monkeypatch):
    monkeypatch.setenv("DOCDISTILL_CONFIG_PATH", str(clean_env / "nope.yml"))
    with pytest.raises(ConfigError):
        Config()


def test_get_settings_is_cached(clean_env):
    first = get_settings()
    assert get_settings() is first
    reset_settings()
    assert get_settings() is not first


def test_default_backends_file_ships_with_project():
    assert core.config.DEFAULT_BACKENDS_FILE.exists()
