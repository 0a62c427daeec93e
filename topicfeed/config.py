"""
Configuration management for topicfeed.
"""
import copy
import os
import json
import logging
import yaml
from pathlib import Path
from typing import Any, Dict, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

ENV_PREFIX = 'TOPICFEED_'
ENV_SEPARATOR = '__'
CONFIG_PATH_VAR = 'TOPICFEED_CONFIG_PATH'

# Default configuration
DEFAULT_CONFIG = {
    "feed": {
        "page_size": 10,
        "debounce_ms": 500,
        "min_complete_slides": 3,
        "init_retries": 3,
        "init_backoff_factor": 0.5
    },
    "index": {
        "page_size": 500,
        "ceiling_seconds": 8.0
    },
    "realtime": {
        "debounce_ms": 1000
    },
    "remote": {
        "base_url": "",
        "api_key": "",
        "default_network": "fast",
        "timeouts": {
            "fast": 10.0,
            "slow": 20.0,
            "offline": 5.0
        }
    },
    "cache": {
        "path": "cache/feed_cache.db",
        "fresh_minutes": 15,
        "stale_hours": 24,
        "max_topics": 5,
        "max_stories": 20
    }
}


class Config:
    """
    Configuration manager for topicfeed.
    """
    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize the Config.

        Args:
            config_path: Path to a YAML or JSON configuration file
        """
        self.config_path = config_path
        self.config = self._load_config()

    def _load_config(self) -> Dict:
        """
        Load configuration from file or use defaults.

        Returns:
            Configuration dictionary
        """
        config = copy.deepcopy(DEFAULT_CONFIG)

        if self.config_path:
            try:
                path = Path(self.config_path)
                if path.exists():
                    if path.suffix.lower() in ['.yaml', '.yml']:
                        with open(path, 'r') as f:
                            user_config = yaml.safe_load(f) or {}
                    elif path.suffix.lower() == '.json':
                        with open(path, 'r') as f:
                            user_config = json.load(f)
                    else:
                        raise ValueError(f"Unsupported config file format: {path.suffix}")

                    # Update config with user settings
                    self._update_dict(config, user_config)
                else:
                    logger.warning(f"Config file {self.config_path} not found, using defaults")
            except (OSError, ValueError, yaml.YAMLError) as e:
                logger.error(f"Error loading config from {self.config_path}: {e}")
                logger.error("Using default configuration")

        # Override with environment variables
        self._override_from_env(config)

        return config

    def _update_dict(self, target: Dict, source: Dict) -> None:
        """
        Recursively update a dictionary.

        Args:
            target: Target dictionary to update
            source: Source dictionary with new values
        """
        for key, value in source.items():
            if key in target and isinstance(target[key], dict) and isinstance(value, dict):
                self._update_dict(target[key], value)
            else:
                target[key] = value

    def _override_from_env(self, config: Dict, prefix: str = ENV_PREFIX) -> None:
        """
        Override configuration with environment variables.

        ``TOPICFEED_FEED__PAGE_SIZE=15`` sets ``feed.page_size``.

        Args:
            config: Configuration dictionary to update
            prefix: Prefix for environment variables
        """
        for key, value in os.environ.items():
            if not key.startswith(prefix) or key == CONFIG_PATH_VAR:
                continue

            parts = key[len(prefix):].lower().split(ENV_SEPARATOR)

            # Navigate to the right place in the config
            current = config
            for part in parts[:-1]:
                if not isinstance(current.get(part), dict):
                    current[part] = {}
                current = current[part]

            try:
                current[parts[-1]] = json.loads(value)
            except json.JSONDecodeError:
                current[parts[-1]] = value

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value.

        Args:
            key: Dot-separated key path (e.g., 'feed.page_size')
            default: Default value if key not found

        Returns:
            Configuration value
        """
        parts = key.split('.')
        current = self.config

        for part in parts:
            if not isinstance(current, dict) or part not in current:
                return default
            current = current[part]

        return current


# Global configuration instance
config = Config(os.getenv(CONFIG_PATH_VAR))


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Replace the global configuration, e.g. from a ``--config`` flag.

    Args:
        config_path: Path to a YAML or JSON configuration file

    Returns:
        The new global Config
    """
    global config
    config = Config(config_path)
    return config


def get_config(key: str, default: Any = None) -> Any:
    """
    Get a configuration value.

    Args:
        key: Dot-separated key path (e.g., 'feed.page_size')
        default: Default value if key not found

    Returns:
        Configuration value
    """
    return config.get(key, default)
