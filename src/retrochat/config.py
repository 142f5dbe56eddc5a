"""
RetroChat - Configuration Management

This module handles loading, merging, and managing configuration from
TOML files and environment variables. Supports default values and
runtime configuration updates.

Author: retrochat contributors
Version: 1.0.0
"""

import copy
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

# Python 3.11+ has tomllib built-in, older versions need tomli
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from .constants import (
    BACKEND_MESH,
    BACKEND_RELAY,
    BACKEND_SIGNALING,
    CONFIG_FILENAME,
    CONNECT_TIMEOUT,
    DEFAULT_BACKEND,
    DEFAULT_BROKERS,
    DEFAULT_DATA_DIR,
    DEFAULT_ICE_SERVERS,
    DEFAULT_SIGNALING_SERVERS,
    DEFAULT_TRACKERS,
    MAX_RECONNECT_DELAY,
    MESH_MAX_PEERS,
    READ_RECEIPT_WINDOW,
    RECONNECT_BACKOFF_BASE,
    RECONNECT_DELAY,
    RELAY_KEEPALIVE,
    RELAY_TOPIC_PREFIX,
    SIGNALING_HEARTBEAT_INTERVAL,
    SIGNALING_KEY,
    TRACKER_ANNOUNCE_INTERVAL,
    TRACKER_OFFER_POOL_SIZE,
    TYPING_INDICATOR_TIMEOUT,
    TYPING_SEND_THROTTLE,
)
from .errors import ConfigError, ErrorCode

# Default configuration dictionary
DEFAULT_CONFIG: Dict[str, Any] = {
    "transport": {
        "backend": DEFAULT_BACKEND,
        "connect_timeout": CONNECT_TIMEOUT,
        "reconnect_delay": RECONNECT_DELAY,
        "backoff_base": RECONNECT_BACKOFF_BASE,
        "backoff_max": MAX_RECONNECT_DELAY,
    },
    "relay": {
        "brokers": list(DEFAULT_BROKERS),
        "topic_prefix": RELAY_TOPIC_PREFIX,
        "keepalive": RELAY_KEEPALIVE,
    },
    "signaling": {
        "servers": list(DEFAULT_SIGNALING_SERVERS),
        "key": SIGNALING_KEY,
        "heartbeat_interval": SIGNALING_HEARTBEAT_INTERVAL,
    },
    "mesh": {
        "trackers": list(DEFAULT_TRACKERS),
        "offer_pool_size": TRACKER_OFFER_POOL_SIZE,
        "announce_interval": TRACKER_ANNOUNCE_INTERVAL,
        "max_peers": MESH_MAX_PEERS,
    },
    "webrtc": {
        "ice_servers": list(DEFAULT_ICE_SERVERS),
    },
    "session": {
        "typing_timeout": TYPING_INDICATOR_TIMEOUT,
        "typing_throttle": TYPING_SEND_THROTTLE,
        "receipt_window": READ_RECEIPT_WINDOW,
    },
    "logging": {
        "level": "INFO",
        "file_logging": False,
        "console_logging": True,
    },
}

# Which section/key lists the candidate endpoints of each backend
BACKEND_ENDPOINTS = {
    BACKEND_RELAY: ("relay", "brokers"),
    BACKEND_SIGNALING: ("signaling", "servers"),
    BACKEND_MESH: ("mesh", "trackers"),
}


class Config:
    """Configuration manager for RetroChat.

    Loads configuration from TOML files, merges with defaults,
    and applies environment variable overrides. Provides a simple
    interface for accessing and updating configuration values.

    Attributes:
        config_path: Path to the configuration file
        data: Configuration dictionary
    """

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize configuration manager.

        Args:
            config_path: Path to configuration file (optional)
                If not provided, uses default location
        """
        if config_path is None:
            data_dir = Path(DEFAULT_DATA_DIR).expanduser()
            config_path = data_dir / CONFIG_FILENAME

        self.config_path = Path(config_path)
        self.data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file and merge with defaults.

        Returns:
            Merged configuration dictionary

        Raises:
            ConfigError: If configuration loading or parsing fails
        """
        config = copy.deepcopy(DEFAULT_CONFIG)

        if self.config_path.exists():
            try:
                with open(self.config_path, "rb") as f:
                    file_config = tomllib.load(f)
            except (OSError, tomllib.TOMLDecodeError) as e:
                raise ConfigError(
                    ErrorCode.E704_CONFIG_PARSE_ERROR,
                    f"Failed to parse configuration file: {e}",
                    {"path": str(self.config_path), "error": str(e)},
                )

            config = self._merge_config(config, file_config)

        config = self._apply_env_overrides(config)
        self._validate(config)

        return config

    def _merge_config(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge override config into base config.

        Args:
            base: Base configuration dictionary
            override: Override configuration dictionary

        Returns:
            Merged configuration dictionary
        """
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to configuration.

        Environment variables follow the pattern: RETROCHAT_SECTION_KEY
        For example: RETROCHAT_TRANSPORT_BACKEND=mesh

        List values accept a comma-separated string.

        Args:
            config: Base configuration dictionary

        Returns:
            Configuration with environment overrides applied
        """
        result = config

        for section, settings in config.items():
            if not isinstance(settings, dict):
                continue

            for key in settings:
                env_var = f"RETROCHAT_{section.upper()}_{key.upper()}"
                env_value = os.environ.get(env_var)

                if env_value is None:
                    continue

                original_type = type(settings[key])
                try:
                    if original_type == bool:
                        result[section][key] = env_value.lower() in ("true", "1", "yes")
                    elif original_type == int:
                        result[section][key] = int(env_value)
                    elif original_type == float:
                        result[section][key] = float(env_value)
                    elif original_type == list:
                        result[section][key] = [
                            item.strip() for item in env_value.split(",") if item.strip()
                        ]
                    else:
                        result[section][key] = env_value
                except ValueError:
                    # Keep original value if conversion fails
                    pass

        return result

    def _validate(self, config: Dict[str, Any]) -> None:
        """Reject configurations the transport layer cannot run with.

        Raises:
            ConfigError: If a value is out of range
        """
        backend = config["transport"]["backend"]
        if backend not in BACKEND_ENDPOINTS:
            raise ConfigError(
                ErrorCode.E703_INVALID_CONFIG,
                f"Unknown transport backend: {backend}",
                {"backend": backend, "choices": sorted(BACKEND_ENDPOINTS)},
            )

        if config["transport"]["connect_timeout"] <= 0:
            raise ConfigError(
                ErrorCode.E703_INVALID_CONFIG,
                "transport.connect_timeout must be positive",
                {"value": config["transport"]["connect_timeout"]},
            )

        section, key = BACKEND_ENDPOINTS[backend]
        if not config[section][key]:
            raise ConfigError(
                ErrorCode.E703_INVALID_CONFIG,
                f"No endpoints configured for backend '{backend}'",
                {"section": section, "key": key},
            )

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Get a configuration value.

        Args:
            section: Configuration section name
            key: Configuration key name
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        return self.data.get(section, {}).get(key, default)

    def set(self, section: str, key: str, value: Any) -> None:
        """Set a configuration value.

        Args:
            section: Configuration section name
            key: Configuration key name
            value: Value to set
        """
        if section not in self.data:
            self.data[section] = {}

        self.data[section][key] = value

    def backend_candidates(self, backend: Optional[str] = None) -> List[str]:
        """Return the ordered endpoint list for a transport backend."""
        backend = backend or self.get("transport", "backend")
        if backend not in BACKEND_ENDPOINTS:
            raise ConfigError(
                ErrorCode.E703_INVALID_CONFIG,
                f"Unknown transport backend: {backend}",
                {"backend": backend},
            )
        section, key = BACKEND_ENDPOINTS[backend]
        return list(self.get(section, key, []))

    def save(self) -> None:
        """Save current configuration to file.

        Raises:
            ConfigError: If saving fails
        """
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)

            with open(self.config_path, "w") as f:
                self._write_toml(f, self.data)

        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"Failed to save configuration: {e}",
                {"path": str(self.config_path), "error": str(e)},
            )

    @staticmethod
    def _write_toml(file, data: Dict[str, Any]) -> None:
        """Write configuration data as TOML format.

        Args:
            file: File object to write to
            data: Configuration data to write
        """
        for section, settings in data.items():
            if isinstance(settings, dict):
                file.write(f"[{section}]\n")
                for key, value in settings.items():
                    file.write(f"{key} = {Config._toml_value(value)}\n")
                file.write("\n")

    @staticmethod
    def _toml_value(value: Any) -> str:
        if isinstance(value, bool):
            return str(value).lower()
        if isinstance(value, (int, float)):
            return str(value)
        if isinstance(value, list):
            return "[" + ", ".join(Config._toml_value(item) for item in value) + "]"
        return f'"{value}"'

    def to_dict(self) -> Dict[str, Any]:
        """Get configuration as dictionary.

        Returns:
            Configuration dictionary
        """
        return copy.deepcopy(self.data)

    @classmethod
    def create_example(cls, path: Path) -> None:
        """Create an example configuration file.

        Args:
            path: Path where to create the example config

        Raises:
            ConfigError: If file creation fails
        """
        try:
            path.parent.mkdir(parents=True, exist_ok=True)

            with open(path, "w") as f:
                f.write("# RetroChat Configuration File\n")
                f.write("# Generated example configuration\n\n")
                cls._write_toml(f, DEFAULT_CONFIG)

        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"Failed to create example configuration: {e}",
                {"path": str(path), "error": str(e)},
            )
