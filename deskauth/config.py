"""
Configuration Management for the DeskAuth client.

This module handles client configuration including the identity service URL,
login polling and refresh timing, token storage and logging, with support for
configuration files and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, Dict, Any, Callable
from configparser import ConfigParser

from deskauth_common.exceptions import ConfigurationError, ErrorCode
from deskauth_common.interfaces import IConfigurationManager
from deskauth.auth.lifecycle import LifecycleSettings
from deskauth.auth.session import default_device_id

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://auth.example.com"

DEFAULT_CONFIG = """# DeskAuth Client Configuration
# Configuration file: {config_path}

[server]
# Identity service base URL
base_url = {base_url}

# Request timeout in seconds
request_timeout = 10

[login]
# Seconds between token polls after the browser was opened
poll_interval = 3

# Token polls before the login times out
max_poll_attempts = 100

# Seconds between login confirmation polls
status_poll_interval = 5

# Confirmation polls before the login times out
max_status_poll_attempts = 60

[refresh]
# Attempts per token refresh
retry_attempts = 3

[storage]
# Token storage backend: secure or memory
backend = "secure"

[logging]
# Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
level = "INFO"
"""


class AuthConfiguration(IConfigurationManager):
    """
    Configuration manager for the DeskAuth client.

    Supports configuration from:
    1. Runtime overrides (highest priority)
    2. Environment variables
    3. Configuration file
    4. Default values (lowest priority)
    """

    ENV_MAPPINGS = {
        'DESKAUTH_BASE_URL': ('server', 'base_url'),
        'DESKAUTH_REQUEST_TIMEOUT': ('server', 'request_timeout'),
        'DESKAUTH_PROVIDER': ('server', 'provider'),
        'DESKAUTH_URI_SCHEME': ('server', 'uri_scheme'),
        'DESKAUTH_DEVICE_ID': ('client', 'device_id'),
        'DESKAUTH_OPEN_BROWSER': ('client', 'open_browser'),
        'DESKAUTH_POLL_INTERVAL': ('login', 'poll_interval'),
        'DESKAUTH_MAX_POLL_ATTEMPTS': ('login', 'max_poll_attempts'),
        'DESKAUTH_STATUS_POLL_INTERVAL': ('login', 'status_poll_interval'),
        'DESKAUTH_MAX_STATUS_POLL_ATTEMPTS': ('login', 'max_status_poll_attempts'),
        'DESKAUTH_REFRESH_RETRY_ATTEMPTS': ('refresh', 'retry_attempts'),
        'DESKAUTH_STORAGE_BACKEND': ('storage', 'backend'),
        'DESKAUTH_STORAGE_DIR': ('storage', 'directory'),
        'DESKAUTH_LOG_LEVEL': ('logging', 'level'),
        'DESKAUTH_LOG_FILE': ('logging', 'file'),
    }

    def __init__(self, config_file: Optional[str] = None):
        self._config_file = config_file or self._get_default_config_path()
        self._config_data: Dict[str, Any] = {}
        self._overrides: Dict[str, Any] = {}

        # Load configuration
        self._load_configuration()

    def _get_default_config_path(self) -> str:
        """Get default configuration file path, creating it on first use."""
        config_dir = Path.home() / '.deskauth'
        config_dir.mkdir(parents=True, exist_ok=True)
        user_config_path = str(config_dir / 'client.conf')

        if not os.path.exists(user_config_path):
            self._create_default_config(user_config_path)

        return user_config_path

    def _create_default_config(self, config_path: str) -> None:
        """Create a minimal default configuration file."""
        try:
            with open(config_path, 'w') as f:
                f.write(DEFAULT_CONFIG.format(config_path=config_path, base_url=DEFAULT_BASE_URL))

            logger.info(f"Created default configuration file: {config_path}")

        except OSError as e:
            logger.error(f"Failed to create default configuration: {e}")
            raise ConfigurationError(
                f"Failed to create default configuration: {e}",
                error_code=ErrorCode.CONFIG_FILE_NOT_FOUND,
                cause=e
            )

    def _load_configuration(self) -> None:
        """Load configuration from file and environment variables."""
        if os.path.exists(self._config_file):
            try:
                self._load_from_file()
                logger.info(f"Configuration loaded from: {self._config_file}")
            except Exception as e:
                logger.warning(f"Failed to load configuration file: {e}")
        else:
            logger.info(f"Configuration file not found: {self._config_file}")

        self._load_from_environment()
        self._set_defaults()

    def _load_from_file(self) -> None:
        """Load configuration from INI file."""
        config = ConfigParser()
        config.read(self._config_file)

        for section_name in config.sections():
            section_data = {}
            for key, value in config[section_name].items():
                # Try to parse as JSON for numbers, booleans and quoted strings
                try:
                    section_data[key] = json.loads(value)
                except (json.JSONDecodeError, ValueError):
                    section_data[key] = value

            self._config_data[section_name] = section_data

    def _load_from_environment(self) -> None:
        """Load configuration from environment variables."""
        for env_var, (section, key) in self.ENV_MAPPINGS.items():
            value = os.environ.get(env_var)
            if value is None:
                continue

            section_data = self._config_data.setdefault(section, {})

            if value.lower() in ('true', 'false'):
                section_data[key] = value.lower() == 'true'
            elif value.isdigit():
                section_data[key] = int(value)
            else:
                try:
                    section_data[key] = float(value)
                except ValueError:
                    section_data[key] = value

    def _set_defaults(self) -> None:
        """Set default configuration values."""
        defaults = {
            'server': {
                'base_url': DEFAULT_BASE_URL,
                'request_timeout': 10.0,
                'provider': 'casdoor',
                'plugin_version': '1.0.0',
                'uri_scheme': 'deskauth'
            },
            'client': {
                'device_id': None,
                'open_browser': True
            },
            'login': {
                'poll_interval': 3.0,
                'max_poll_attempts': 100,
                'status_poll_interval': 5.0,
                'max_status_poll_attempts': 60,
                'startup_check_attempts': 2,
                'startup_check_delay': 1.0
            },
            'refresh': {
                'retry_attempts': 3,
                'margin_seconds': 1800
            },
            'storage': {
                'backend': 'secure',
                'directory': None,
                'service_name': 'deskauth',
                'use_keyring': None
            },
            'logging': {
                'level': 'INFO',
                'format': 'standard',
                'file': None,
                'max_size': 10485760,  # 10MB
                'backup_count': 5,
                'audit_file': None
            }
        }

        for section, section_defaults in defaults.items():
            section_data = self._config_data.setdefault(section, {})
            for key, default_value in section_defaults.items():
                if key not in section_data:
                    section_data[key] = default_value

    def get_config(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Overrides set with ``set_override`` under the same dotted key win.

        Args:
            key: Configuration key in format 'section.key'
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        if key in self._overrides:
            return self._overrides[key]

        if '.' not in key:
            return self._config_data.get(key, default)

        section, config_key = key.split('.', 1)
        value = self._config_data.get(section, {}).get(config_key)
        return default if value is None else value

    def set_config(self, key: str, value: Any) -> None:
        """
        Set configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            value: Value to set
        """
        if '.' not in key:
            self._config_data[key] = value
            return

        section, config_key = key.split('.', 1)
        self._config_data.setdefault(section, {})[config_key] = value

    def set_override(self, key: str, value: Any) -> None:
        """
        Set configuration override (highest priority).

        Args:
            key: Configuration key in format 'section.key'
            value: Override value
        """
        self._overrides[key] = value

    def save_configuration(self) -> None:
        """Save current configuration to file. Overrides are not saved."""
        try:
            config = ConfigParser()

            for section_name, section_data in self._config_data.items():
                config.add_section(section_name)
                for key, value in section_data.items():
                    if value is None:
                        continue
                    config.set(section_name, key, json.dumps(value))

            config_path = Path(self._config_file)
            config_path.parent.mkdir(parents=True, exist_ok=True)

            with open(self._config_file, 'w') as f:
                config.write(f)

            logger.info(f"Configuration saved to: {self._config_file}")

        except OSError as e:
            logger.error(f"Failed to save configuration: {e}")
            raise ConfigurationError(
                f"Failed to save configuration: {e}",
                error_code=ErrorCode.CONFIG_INVALID_FORMAT,
                cause=e
            )

    def get_all_config(self) -> Dict[str, Any]:
        """Get all configuration data."""
        return self._config_data.copy()

    def get_config_file_path(self) -> str:
        """Get configuration file path."""
        return self._config_file

    def reload_configuration(self) -> None:
        """Reload configuration from file and environment."""
        self._config_data.clear()
        self._load_configuration()
        logger.info("Configuration reloaded")

    def _get_typed(self, key: str, cast: Callable[[Any], Any], default: Any) -> Any:
        value = self.get_config(key, default)
        try:
            return cast(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"Invalid value for {key}: {value!r}",
                error_code=ErrorCode.CONFIG_INVALID_VALUE,
                config_key=key,
                cause=e
            )

    # Convenience methods for common configuration values

    def get_base_url(self) -> str:
        """Get identity service base URL."""
        return str(self.get_config('server.base_url', DEFAULT_BASE_URL)).rstrip('/')

    def get_request_timeout(self) -> float:
        """Get request timeout in seconds."""
        return self._get_typed('server.request_timeout', float, 10.0)

    def get_provider(self) -> str:
        return str(self.get_config('server.provider', 'casdoor'))

    def get_plugin_version(self) -> str:
        return str(self.get_config('server.plugin_version', '1.0.0'))

    def get_uri_scheme(self) -> str:
        return str(self.get_config('server.uri_scheme', 'deskauth'))

    def get_device_id(self) -> str:
        """Get device id, derived from the machine unless configured."""
        return str(self.get_config('client.device_id') or default_device_id())

    def should_open_browser(self) -> bool:
        return bool(self.get_config('client.open_browser', True))

    def get_lifecycle_settings(self) -> LifecycleSettings:
        """Build the lifecycle controller's timing settings."""
        return LifecycleSettings(
            poll_interval=self._get_typed('login.poll_interval', float, 3.0),
            max_poll_attempts=self._get_typed('login.max_poll_attempts', int, 100),
            status_poll_interval=self._get_typed('login.status_poll_interval', float, 5.0),
            max_status_poll_attempts=self._get_typed('login.max_status_poll_attempts', int, 60),
            refresh_retry_attempts=self._get_typed('refresh.retry_attempts', int, 3),
            startup_check_attempts=self._get_typed('login.startup_check_attempts', int, 2),
            startup_check_delay=self._get_typed('login.startup_check_delay', float, 1.0),
            refresh_margin_seconds=self._get_typed('refresh.margin_seconds', int, 1800),
        )

    def get_storage_backend(self) -> str:
        return str(self.get_config('storage.backend', 'secure'))

    def get_storage_dir(self) -> Optional[str]:
        return self.get_config('storage.directory')

    def get_storage_service_name(self) -> str:
        return str(self.get_config('storage.service_name', 'deskauth'))

    def get_use_keyring(self) -> Optional[bool]:
        """None means detect keyring availability at runtime."""
        return self.get_config('storage.use_keyring')

    def get_log_level(self) -> str:
        """Get logging level."""
        return str(self.get_config('logging.level', 'INFO')).upper()

    def get_log_format(self) -> str:
        return str(self.get_config('logging.format', 'standard')).lower()

    def get_log_file(self) -> Optional[str]:
        """Get log file path."""
        return self.get_config('logging.file')

    def get_log_max_size(self) -> int:
        return self._get_typed('logging.max_size', int, 10485760)

    def get_log_backup_count(self) -> int:
        return self._get_typed('logging.backup_count', int, 5)

    def get_audit_file(self) -> Optional[str]:
        return self.get_config('logging.audit_file')
