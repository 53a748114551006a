"""Configuration management for the Wake-on-Demand Game Server Proxy."""

import copy
import json
import logging
import os
from pathlib import Path
from typing import Dict, Any, Optional, Mapping

from dotenv import load_dotenv, find_dotenv

from .utils import validate_port, validate_http_url


logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when the configuration is missing required values or is invalid."""


# Environment variable -> (section, key, type)
ENV_OVERRIDES = {
    "PROJECT_ID": ("railway", "project_id", str),
    "ENVIRONMENT_ID": ("railway", "environment_id", str),
    "SERVICE_ID": ("railway", "service_id", str),
    "RAILWAY_API_TOKEN": ("railway", "api_token", str),
    "RAILWAY_API_URL": ("railway", "api_url", str),
    "MC_SERVER_HEALTH": ("health", "url", str),
    "HEALTH_USER": ("health", "username", str),
    "HEALTH_PASS": ("health", "password", str),
    "LISTEN_PORT": ("listener", "port", int),
}

REQUIRED_ENV = ["PROJECT_ID", "ENVIRONMENT_ID", "SERVICE_ID", "RAILWAY_API_TOKEN"]


class ConfigManager:
    """Loads configuration from defaults, an optional JSON file and the environment."""

    def __init__(self, config_path: str = "config.json",
                 env: Optional[Mapping[str, str]] = None):
        self.config_path = Path(config_path)
        self._env = env
        self._config: Dict[str, Any] = {}
        self._default_config = self._get_default_config()

    def _get_default_config(self) -> Dict[str, Any]:
        """Get default configuration values."""
        return {
            "railway": {
                "api_url": "https://backboard.railway.app/graphql/v2",
                "project_id": "",
                "environment_id": "",
                "service_id": "",
                "api_token": ""
            },
            "health": {
                "url": "http://localhost:3000/health",
                "username": "admin",
                "password": "secret",
                "require_active_status": True
            },
            "listener": {
                "host": "0.0.0.0",
                "port": 25565,
                "read_size": 1024,
                "handshake_timeout": 5,
                "status_probe_markers": ["MCPingHost"],
                "detect_status_handshake": False
            },
            "timing": {
                "cooldown_seconds": 60,
                "request_timeout": 10
            },
            "messages": {
                "already_online": "§eServer is already online, please join!",
                "starting_wait": "§eServer is starting... please wait.",
                "starting_retry": "§eServer is starting... please try again in ~30s.",
                "no_deployment": "§cError: No deployment found.",
                "restart_failed": "§cError starting server, try again later."
            },
            "logging": {
                "level": "INFO",
                "file": "/var/log/wake-proxy.log",
                "max_size_mb": 10,
                "backup_count": 3,
                "console_output": True
            },
            "monitoring": {
                "status_endpoint_enabled": False,
                "status_endpoint_port": 8080
            }
        }

    def load_config(self) -> Dict[str, Any]:
        """Load configuration from file and environment with validation."""
        try:
            if self.config_path.exists():
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    loaded_config = json.load(f)
                self._config = self._merge_config(self._default_config, loaded_config)
                logger.info(f"Configuration file loaded from {self.config_path}")
            else:
                logger.debug(f"Config file {self.config_path} not found, using defaults and environment")
                self._config = copy.deepcopy(self._default_config)

            self._apply_env_overrides()
            self._validate_config()

            logger.info("Configuration loaded successfully")
            return self._config

        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON in config file: {e}")
            raise ConfigError(f"Configuration file contains invalid JSON: {e}") from e

    def _merge_config(self, default: Dict[str, Any], loaded: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge loaded config with defaults."""
        result = copy.deepcopy(default)

        for key, value in loaded.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def _environment(self) -> Mapping[str, str]:
        if self._env is not None:
            return self._env
        # Values already present in the process environment win over .env
        load_dotenv(find_dotenv(usecwd=True), override=False)
        return os.environ

    def _apply_env_overrides(self) -> None:
        """Override configuration values from environment variables."""
        env = self._environment()
        errors = []

        for name, (section, key, cast) in ENV_OVERRIDES.items():
            raw = env.get(name)
            if raw is None or raw == "":
                continue
            try:
                self._config[section][key] = cast(raw)
            except ValueError:
                errors.append(f"Invalid value for {name}: {raw!r}")

        if errors:
            raise ConfigError("\n".join(errors))

    def _validate_config(self) -> None:
        """Validate configuration values."""
        errors = []

        railway = self._config["railway"]
        missing = [
            name for name in REQUIRED_ENV
            if not railway[ENV_OVERRIDES[name][1]]
        ]
        if missing:
            errors.append(f"Missing required configuration: {', '.join(missing)}")

        if not validate_http_url(railway["api_url"]):
            errors.append(f"Invalid control-plane API URL: {railway['api_url']}")

        if not validate_http_url(self._config["health"]["url"]):
            errors.append(f"Invalid health check URL: {self._config['health']['url']}")

        listener = self._config["listener"]
        if not validate_port(listener["port"]):
            errors.append(f"Invalid listener port: {listener['port']}")

        markers = listener["status_probe_markers"]
        if not isinstance(markers, list) or not all(isinstance(m, str) and m for m in markers):
            errors.append(f"Invalid status probe markers: {markers}")

        if self._config["monitoring"]["status_endpoint_enabled"]:
            status_port = self._config["monitoring"]["status_endpoint_port"]
            if not validate_port(status_port):
                errors.append(f"Invalid status endpoint port: {status_port}")

        # Validate timing values (skip comment fields)
        timing = self._config["timing"]
        for key, value in timing.items():
            if key.startswith('_comment'):
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                errors.append(f"Invalid timing value for {key}: {value}")

        for key in ("read_size", "handshake_timeout"):
            value = listener[key]
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                errors.append(f"Invalid listener value for {key}: {value}")

        # Validate logging configuration
        log_level = str(self._config["logging"]["level"]).upper()
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if log_level not in valid_levels:
            errors.append(f"Invalid log level: {log_level}. Must be one of {valid_levels}")

        if errors:
            error_msg = "Configuration validation failed:\n" + "\n".join(errors)
            logger.error(error_msg)
            raise ConfigError(error_msg)

    def get(self, key_path: str, default: Any = None) -> Any:
        """Get configuration value using dot notation (e.g., 'listener.port')."""
        keys = key_path.split('.')
        value = self._config

        try:
            for key in keys:
                value = value[key]
            return value
        except (KeyError, TypeError):
            return default

    def save_example_config(self, path: Optional[str] = None) -> None:
        """Save an example configuration file with comments."""
        if path is None:
            path = "config.json.example"

        defaults = self._get_default_config()
        example_config = {
            "_comment_railway": "Railway control plane; ids and token are usually set via "
                                "PROJECT_ID, ENVIRONMENT_ID, SERVICE_ID and RAILWAY_API_TOKEN",
            "railway": defaults["railway"],
            "_comment_health": "Health endpoint of the game server (MC_SERVER_HEALTH, HEALTH_USER, HEALTH_PASS)",
            "health": defaults["health"],
            "_comment_listener": "Game port listener",
            "listener": defaults["listener"],
            "_comment_timing": "All values in seconds",
            "timing": defaults["timing"],
            "_comment_messages": "Text sent back to connecting clients",
            "messages": defaults["messages"],
            "_comment_logging": "Logging configuration",
            "logging": defaults["logging"],
            "_comment_monitoring": "Optional HTTP status endpoint",
            "monitoring": defaults["monitoring"]
        }

        with open(path, 'w', encoding='utf-8') as f:
            json.dump(example_config, f, indent=2, ensure_ascii=False)

        logger.info(f"Example configuration saved to {path}")

    @property
    def config(self) -> Dict[str, Any]:
        """Get the current configuration."""
        return copy.deepcopy(self._config)
