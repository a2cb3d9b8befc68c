"""Configuration management"""

from .loader import (
    Config,
    ServiceConfig,
    APIConfig,
    TracingConfig,
    MetricsConfig,
    DependencyConfig,
    load_config,
    get_config_path,
)

__all__ = [
    "Config",
    "ServiceConfig",
    "APIConfig",
    "TracingConfig",
    "MetricsConfig",
    "DependencyConfig",
    "load_config",
    "get_config_path",
]
