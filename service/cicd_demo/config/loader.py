"""Configuration loader"""

import os
from pathlib import Path
from typing import List, Optional
from dataclasses import dataclass, field

import toml
from dotenv import load_dotenv

# Try to use tomllib (Python 3.11+) for reading, fallback to toml
try:
    import tomllib
    HAS_TOMLLIB = True
except ImportError:
    HAS_TOMLLIB = False


@dataclass
class ServiceConfig:
    """Service identity"""
    name: str = "cicd-demo-app"
    version: str = "1.0.0"
    environment: str = "development"
    build: str = "local"
    commit: str = "unknown"
    host: str = "0.0.0.0"
    port: int = 3000

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


@dataclass
class APIConfig:
    """HTTP surface configuration"""
    allowed_origins: List[str] = field(default_factory=lambda: ["*"])
    rate_limit_per_minute: int = 100
    docs_url: str = "/api-docs"


@dataclass
class TracingConfig:
    """Span reporting configuration"""
    enabled: bool = True
    sampled: bool = True
    log_spans: bool = True
    otlp_endpoint: Optional[str] = None  # e.g. "http://localhost:4317"
    console: bool = False


@dataclass
class MetricsConfig:
    """Metrics configuration"""
    process_interval_seconds: float = 5.0


@dataclass
class DependencyConfig:
    """External dependencies probed by the health endpoint"""
    redis_url: Optional[str] = None
    document_store_url: Optional[str] = None
    probe_timeout_seconds: float = 2.0


@dataclass
class Config:
    """Main configuration"""
    service: ServiceConfig = field(default_factory=ServiceConfig)
    api: APIConfig = field(default_factory=APIConfig)
    tracing: TracingConfig = field(default_factory=TracingConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    dependencies: DependencyConfig = field(default_factory=DependencyConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "Config":
        """Create Config from dictionary"""
        config = cls()

        if "service" in data:
            config.service = ServiceConfig(**data["service"])

        if "api" in data:
            config.api = APIConfig(**data["api"])

        if "tracing" in data:
            config.tracing = TracingConfig(**data["tracing"])

        if "metrics" in data:
            config.metrics = MetricsConfig(**data["metrics"])

        if "dependencies" in data:
            config.dependencies = DependencyConfig(**data["dependencies"])

        return config


def get_config_path() -> Path:
    """Get path to config file"""
    env_path = os.getenv("CICD_DEMO_CONFIG")
    if env_path:
        return Path(env_path)
    return Path.home() / ".cicd-demo" / "config.toml"


def _apply_env_overrides(config: Config) -> None:
    """Environment variables win over the config file"""
    environment = os.getenv("ENVIRONMENT") or os.getenv("NODE_ENV")
    if environment:
        config.service.environment = environment
    if os.getenv("BUILD_NUMBER"):
        config.service.build = os.environ["BUILD_NUMBER"]
    if os.getenv("GIT_COMMIT"):
        config.service.commit = os.environ["GIT_COMMIT"]
    if os.getenv("APP_VERSION"):
        config.service.version = os.environ["APP_VERSION"]
    if os.getenv("PORT"):
        config.service.port = int(os.environ["PORT"])

    if os.getenv("ALLOWED_ORIGINS"):
        config.api.allowed_origins = [
            origin.strip() for origin in os.environ["ALLOWED_ORIGINS"].split(",") if origin.strip()
        ]
    if os.getenv("RATE_LIMIT_PER_MINUTE"):
        config.api.rate_limit_per_minute = int(os.environ["RATE_LIMIT_PER_MINUTE"])

    if os.getenv("TRACING_ENABLED"):
        config.tracing.enabled = os.environ["TRACING_ENABLED"].lower() not in ("0", "false", "no", "off")
    if os.getenv("OTLP_ENDPOINT"):
        config.tracing.otlp_endpoint = os.environ["OTLP_ENDPOINT"]

    if os.getenv("REDIS_URL"):
        config.dependencies.redis_url = os.environ["REDIS_URL"]
    if os.getenv("DOCUMENT_STORE_URL"):
        config.dependencies.document_store_url = os.environ["DOCUMENT_STORE_URL"]


def load_config(config_path: Optional[Path] = None, use_env: bool = True) -> Config:
    """Load configuration from file and environment"""
    if use_env:
        load_dotenv()

    if config_path is None:
        config_path = get_config_path()

    config_path = Path(config_path).expanduser()

    if config_path.exists():
        if HAS_TOMLLIB:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        else:
            with open(config_path, "r") as f:
                data = toml.load(f)
        config = Config.from_dict(data)
    else:
        config = Config()

    if use_env:
        _apply_env_overrides(config)

    return config
