"""
Configuration service for the CDC change applier
"""

import json
import yaml
from typing import Dict, Any
from pathlib import Path

from ..exceptions import ConfigurationError
from ..models.config import ApplierConfig


class ConfigService:
    """Service for loading and managing configuration"""

    def __init__(self):
        self._config: ApplierConfig = None

    def load_config(self, config_path: str) -> ApplierConfig:
        """Load configuration from file"""
        self._config = ApplierConfig.from_dict(self.read_config_file(config_path))
        return self._config

    def read_config_file(self, config_path: str) -> Dict[str, Any]:
        """Parse a .json, .yml or .yaml file into a dictionary"""
        config_path = Path(config_path)
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                if config_path.suffix.lower() == '.json':
                    config_dict = json.load(f)
                elif config_path.suffix.lower() in ['.yml', '.yaml']:
                    config_dict = yaml.safe_load(f)
                else:
                    raise ConfigurationError(f"Unsupported configuration format: {config_path.suffix}")
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON configuration: {e}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML configuration: {e}")
        except OSError as e:
            raise ConfigurationError(f"Error reading configuration: {e}")

        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration file must contain a mapping")
        return config_dict

    def get_config(self) -> ApplierConfig:
        """Get current configuration"""
        if self._config is None:
            raise ConfigurationError("Configuration not loaded")
        return self._config
