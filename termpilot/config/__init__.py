"""Configuration models and loader."""

from termpilot.config.loader import find_config_file, load_config
from termpilot.config.models import AppConfig, ModelConfig

__all__ = ["AppConfig", "ModelConfig", "find_config_file", "load_config"]
