"""Tests for configuration loading"""

import pytest

from cicd_demo.config import Config, load_config
from cicd_demo.config.loader import get_config_path


ENV_VARS = [
    "ENVIRONMENT", "NODE_ENV", "BUILD_NUMBER", "GIT_COMMIT", "APP_VERSION", "PORT",
    "ALLOWED_ORIGINS", "RATE_LIMIT_PER_MINUTE", "OTLP_ENDPOINT", "REDIS_URL",
    "DOCUMENT_STORE_URL", "CICD_DEMO_CONFIG", "TRACING_ENABLED",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    # Keep load_dotenv from picking up a developer's .env
    monkeypatch.chdir(tmp_path)


def test_defaults():
    config = Config()
    assert config.service.port == 3000
    assert config.service.is_development
    assert config.api.allowed_origins == ["*"]
    assert config.api.rate_limit_per_minute == 100
    assert config.dependencies.redis_url is None


def test_missing_file_gives_defaults(tmp_path):
    config = load_config(tmp_path / "missing.toml", use_env=False)
    assert config.service.name == "cicd-demo-app"


def test_load_from_toml(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(
        '[service]\n'
        'environment = "production"\n'
        'port = 8080\n'
        '\n'
        '[api]\n'
        'allowed_origins = ["https://example.com"]\n'
        'rate_limit_per_minute = 50\n'
        '\n'
        '[dependencies]\n'
        'redis_url = "redis://cache:6379/0"\n'
    )

    config = load_config(path, use_env=False)

    assert config.service.environment == "production"
    assert not config.service.is_development
    assert config.service.port == 8080
    assert config.api.allowed_origins == ["https://example.com"]
    assert config.api.rate_limit_per_minute == 50
    assert config.dependencies.redis_url == "redis://cache:6379/0"
    assert config.tracing.sampled is True


def test_env_overrides_file(tmp_path, monkeypatch):
    path = tmp_path / "config.toml"
    path.write_text('[service]\nenvironment = "staging"\nport = 8080\n')
    monkeypatch.setenv("NODE_ENV", "production")
    monkeypatch.setenv("PORT", "9000")
    monkeypatch.setenv("BUILD_NUMBER", "128")
    monkeypatch.setenv("GIT_COMMIT", "deadbeef")
    monkeypatch.setenv("ALLOWED_ORIGINS", "https://a.example, https://b.example,")
    monkeypatch.setenv("RATE_LIMIT_PER_MINUTE", "10")
    monkeypatch.setenv("DOCUMENT_STORE_URL", "http://docs:8080/health")

    config = load_config(path)

    assert config.service.environment == "production"
    assert config.service.port == 9000
    assert config.service.build == "128"
    assert config.service.commit == "deadbeef"
    assert config.api.allowed_origins == ["https://a.example", "https://b.example"]
    assert config.api.rate_limit_per_minute == 10
    assert config.dependencies.document_store_url == "http://docs:8080/health"


@pytest.mark.parametrize("value,enabled", [
    ("false", False),
    ("0", False),
    ("OFF", False),
    ("true", True),
])
def test_tracing_enabled_from_env(monkeypatch, tmp_path, value, enabled):
    monkeypatch.setenv("TRACING_ENABLED", value)
    config = load_config(tmp_path / "missing.toml")
    assert config.tracing.enabled is enabled


def test_environment_takes_precedence_over_node_env(monkeypatch, tmp_path):
    monkeypatch.setenv("ENVIRONMENT", "staging")
    monkeypatch.setenv("NODE_ENV", "production")
    config = load_config(tmp_path / "missing.toml")
    assert config.service.environment == "staging"


def test_config_path_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("CICD_DEMO_CONFIG", str(tmp_path / "custom.toml"))
    assert get_config_path() == tmp_path / "custom.toml"
