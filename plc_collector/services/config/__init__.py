"""
Config Service

- validator.py - collects configuration problems
- loader.py - YAML file to CollectorConfig
"""

from .loader import load_config_file
from .validator import ConfigValidator

__all__ = ["ConfigValidator", "load_config_file"]
