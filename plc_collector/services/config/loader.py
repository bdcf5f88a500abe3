"""
Configuration Loader

Reads the YAML configuration file, validates it and builds CollectorConfig.
"""

from pathlib import Path

import yaml

from ...common.config import CollectorConfig, load_collector_config
from ...common.exceptions import ConfigError
from ...common.logging_setup import get_service_logger
from .validator import ConfigValidator

logger = get_service_logger("config.loader")


def load_config_file(path: str | Path) -> CollectorConfig:
    """
    Load and validate a configuration file.

    Raises:
        ConfigError: unreadable file, invalid YAML or invalid configuration
    """
    path = Path(path)
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e

    is_valid, errors = ConfigValidator().validate(data)
    if not is_valid:
        raise ConfigError(f"{len(errors)} problem(s) in {path}", errors=errors)

    config = load_collector_config(data)
    logger.info(
        f"Loaded configuration from {path}: {len(config.devices)} devices, "
        f"{sum(len(d.points) for d in config.devices)} points"
    )
    return config
