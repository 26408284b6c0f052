"""Configuration manager for the ledger-backed board.

This module handles loading, validating, and persisting application configuration.
"""

import os
import yaml
from pathlib import Path
from typing import Any, Dict, Optional
from dataclasses import dataclass


CHANGE_POLICIES = ('last_substantive', 'last_chunk')
LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')


@dataclass
class BoardConfig:
    """Board configuration settings."""
    domain: str = ""
    author_payment: int = 0
    change_policy: str = "last_substantive"
    consolidate_owner_funds: bool = False


@dataclass
class LedgerConfig:
    """Ledger fee configuration settings."""
    dust: int = 5460
    fee_rate: int = 10000  # per 1024 bytes


@dataclass
class SyncConfig:
    """Synchronization configuration settings."""
    scan_delta_days: int = 30
    pass_delay: float = 1.0


@dataclass
class StorageConfig:
    """Storage configuration settings."""
    db_path: str = "~/.ledgerboard/data/board.db"


@dataclass
class LoggingConfig:
    """Logging configuration settings."""
    level: str = "INFO"
    log_path: str = "~/.ledgerboard/logs/app.log"


class ConfigManager:
    """Manages application configuration with validation and persistence."""

    BASE_DIR = Path.home() / ".ledgerboard"
    DEFAULT_CONFIG_PATH = BASE_DIR / "config" / "settings.yaml"
    BUNDLED_CONFIG_PATH = Path(__file__).parent / "settings.yaml"
    ENV_PREFIX = "LEDGERBOARD_"

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize configuration manager.

        Args:
            config_path: Optional custom path to configuration file.
                        If None, uses default user config path.
        """
        self.config_path = config_path or self.DEFAULT_CONFIG_PATH
        self._config: Dict[str, Any] = {}
        self._load_config()

    def _load_config(self) -> None:
        """Load configuration from file with fallback to defaults."""
        default_config = self._load_yaml(self.BUNDLED_CONFIG_PATH)

        if self.config_path.exists():
            user_config = self._load_yaml(self.config_path)
            self._config = self._merge_configs(default_config, user_config)
        else:
            # First run: write the defaults where the user can edit them
            self._config = default_config
            self.save_config()

        self._apply_env_overrides()
        self._validate_config()

    def _load_yaml(self, path: Path) -> Dict[str, Any]:
        """Load YAML configuration file.

        Args:
            path: Path to YAML file

        Returns:
            Dictionary containing configuration
        """
        try:
            with open(path, 'r', encoding='utf-8') as f:
                config = yaml.safe_load(f)
                return config if config else {}
        except FileNotFoundError:
            return {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in config file {path}: {e}")

    def _merge_configs(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge two configuration dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            else:
                result[key] = value

        return result

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides to configuration.

        Environment variables are prefixed with LEDGERBOARD_ and use
        double underscores between section and key. For example:
        LEDGERBOARD_LEDGER__FEE_RATE=20000
        """
        for env_key, env_value in os.environ.items():
            if not env_key.startswith(self.ENV_PREFIX):
                continue

            parts = env_key[len(self.ENV_PREFIX):].lower().split("__")
            if len(parts) != 2:
                continue

            section, key = parts
            if section not in self._config:
                continue

            self._config[section][key] = self._convert_env_value(env_value)

    def _convert_env_value(self, value: str) -> Any:
        """Convert environment variable string to bool, int, float or str."""
        if value.lower() in ('true', 'yes'):
            return True
        if value.lower() in ('false', 'no'):
            return False

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        return value

    def _validate_config(self) -> None:
        """Validate configuration has all required fields and correct types."""
        required_sections = ['board', 'ledger', 'sync', 'storage', 'logging']

        for section in required_sections:
            if section not in self._config:
                raise ValueError(f"Missing required configuration section: {section}")

        board = self._config['board']
        self._validate_field(board, 'domain', str)
        self._validate_field(board, 'author_payment', int, 0)
        self._validate_field(board, 'change_policy', str)
        self._validate_field(board, 'consolidate_owner_funds', bool)
        if board['change_policy'] not in CHANGE_POLICIES:
            raise ValueError(
                f"Field change_policy must be one of {', '.join(CHANGE_POLICIES)}, "
                f"got {board['change_policy']}"
            )

        ledger = self._config['ledger']
        self._validate_field(ledger, 'dust', int, 0)
        self._validate_field(ledger, 'fee_rate', int, 0)

        if 0 < board['author_payment'] < ledger['dust']:
            raise ValueError(f"Field author_payment must be 0 or >= {ledger['dust']}")

        sync = self._config['sync']
        self._validate_field(sync, 'scan_delta_days', int, 1, 3650)
        if isinstance(sync.get('pass_delay'), int) and not isinstance(sync['pass_delay'], bool):
            sync['pass_delay'] = float(sync['pass_delay'])
        self._validate_field(sync, 'pass_delay', float, 0, 3600)

        storage = self._config['storage']
        self._validate_field(storage, 'db_path', str)

        logging = self._config['logging']
        self._validate_field(logging, 'level', str)
        self._validate_field(logging, 'log_path', str)
        if logging['level'].upper() not in LOG_LEVELS:
            raise ValueError(f"Field level must be a logging level, got {logging['level']}")

    def _validate_field(self, section: Dict[str, Any], field: str,
                       expected_type: type, min_val: Optional[float] = None,
                       max_val: Optional[float] = None) -> None:
        """Validate a configuration field.

        Args:
            section: Configuration section dictionary
            field: Field name to validate
            expected_type: Expected type of the field
            min_val: Optional minimum value for numeric fields
            max_val: Optional maximum value for numeric fields

        Raises:
            ValueError: If validation fails
        """
        if field not in section:
            raise ValueError(f"Missing required field: {field}")

        value = section[field]

        # bool is an int subclass
        if not isinstance(value, expected_type) or (expected_type is not bool and isinstance(value, bool)):
            raise ValueError(
                f"Field {field} must be of type {expected_type.__name__}, "
                f"got {type(value).__name__}"
            )

        if expected_type in (int, float) and min_val is not None and value < min_val:
            raise ValueError(f"Field {field} must be >= {min_val}, got {value}")

        if expected_type in (int, float) and max_val is not None and value > max_val:
            raise ValueError(f"Field {field} must be <= {max_val}, got {value}")

    def save_config(self) -> None:
        """Save current configuration to file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.config_path, 'w', encoding='utf-8') as f:
            yaml.dump(self._config, f, default_flow_style=False, sort_keys=False)

    def get_config(self, section: str, key: Optional[str] = None) -> Any:
        """Get configuration value.

        Args:
            section: Configuration section name
            key: Optional key within section. If None, returns entire section.

        Returns:
            Configuration value

        Raises:
            KeyError: If section or key doesn't exist
        """
        if section not in self._config:
            raise KeyError(f"Configuration section not found: {section}")

        if key is None:
            return self._config[section]

        if key not in self._config[section]:
            raise KeyError(f"Configuration key not found: {section}.{key}")

        return self._config[section][key]

    def set_config(self, section: str, key: str, value: Any) -> None:
        """Set configuration value.

        Raises:
            KeyError: If section doesn't exist
        """
        if section not in self._config:
            raise KeyError(f"Configuration section not found: {section}")

        self._config[section][key] = value

    def get_board_config(self) -> BoardConfig:
        return BoardConfig(**self._config['board'])

    def get_ledger_config(self) -> LedgerConfig:
        return LedgerConfig(**self._config['ledger'])

    def get_sync_config(self) -> SyncConfig:
        return SyncConfig(**self._config['sync'])

    def get_storage_config(self) -> StorageConfig:
        return StorageConfig(**self._config['storage'])

    def get_logging_config(self) -> LoggingConfig:
        return LoggingConfig(**self._config['logging'])

    def expand_path(self, path: str) -> Path:
        """Expand user home directory and environment variables in path."""
        return Path(os.path.expanduser(os.path.expandvars(path)))


# Global configuration manager instance
_config_manager: Optional[ConfigManager] = None


def get_config_manager(config_path: Optional[Path] = None) -> ConfigManager:
    """Get or create global configuration manager instance.

    Args:
        config_path: Optional custom path to configuration file

    Returns:
        ConfigManager instance
    """
    global _config_manager

    if _config_manager is None:
        _config_manager = ConfigManager(config_path)

    return _config_manager
