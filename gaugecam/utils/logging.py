"""Logging configuration utilities for gaugecam."""

import logging
import logging.config
import logging.handlers
import os
from pathlib import Path
from typing import Any, Optional

import yaml


def _get_config_value(key: str, default: Any = None) -> Any:
    """Get configuration value from the config singleton.

    Args:
        key: Configuration key (dot notation supported)
        default: Default value if key not found

    Returns:
        Configuration value
    """
    from gaugecam.config import config

    return config.get(key, default)


def setup_logging(
    config_path: Optional[str] = None,
    default_level: int = logging.INFO,
    env_key: Optional[str] = None,
    environment: Optional[str] = None,
    log_dir: Optional[Path] = None,
) -> None:
    """Setup logging configuration.

    Args:
        config_path: Path to a YAML logging configuration file
        default_level: Default logging level if config file is not found
        env_key: Environment variable key for config path override
        environment: Environment name (development, production, testing)
        log_dir: Directory for log files (defaults to configured value)
    """
    if env_key is None:
        env_key = _get_config_value("system.logging.env_key", "LOG_CFG")

    default_config_path = _get_config_value(
        "system.logging.default_config_path", "logging.yaml"
    )

    if log_dir is None:
        log_dir = get_log_directory()
    logs_dir = Path(log_dir)
    logs_dir.mkdir(exist_ok=True, parents=True)

    if config_path is None:
        config_path = os.getenv(env_key, default_config_path)

    config_path = Path(config_path)

    if config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as config_file:
                config = yaml.safe_load(config_file)

            # Apply environment-specific overrides
            if environment and environment in config:
                env_config = config.pop(environment)
                for section in ("formatters", "handlers", "loggers"):
                    if section in env_config:
                        config.setdefault(section, {}).update(env_config[section])

            for other in ("development", "production", "testing"):
                config.pop(other, None)

            logging.config.dictConfig(config)

        except (OSError, yaml.YAMLError, ValueError, TypeError) as e:
            print(f"Error loading logging configuration from {config_path}: {e}")
            print("Using default logging configuration")
            _setup_default_logging(default_level, logs_dir)
    else:
        _setup_default_logging(default_level, logs_dir)


def _setup_default_logging(level: int, logs_dir: Path) -> None:
    """Setup default logging with console and rotating file handlers.

    Args:
        level: Console logging level
        logs_dir: Directory for log files
    """
    detailed_formatter = logging.Formatter(
        _get_config_value(
            "system.logging.formatters.detailed.format",
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        ),
        datefmt=_get_config_value(
            "system.logging.formatters.detailed.datefmt", "%Y-%m-%d %H:%M:%S"
        ),
    )
    simple_formatter = logging.Formatter(
        _get_config_value(
            "system.logging.formatters.simple.format",
            "%(asctime)s - %(levelname)s - %(message)s",
        ),
        datefmt=_get_config_value(
            "system.logging.formatters.simple.datefmt", "%Y-%m-%d %H:%M:%S"
        ),
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(simple_formatter)

    app_log_level = _get_config_value(
        "system.logging.file_handlers.app_log.level", "DEBUG"
    )
    file_handler = logging.handlers.RotatingFileHandler(
        logs_dir
        / _get_config_value(
            "system.logging.file_handlers.app_log.filename", "gaugecam.log"
        ),
        maxBytes=_get_config_value(
            "system.logging.file_handlers.app_log.max_bytes", 10 * 1024 * 1024
        ),
        backupCount=_get_config_value(
            "system.logging.file_handlers.app_log.backup_count", 5
        ),
        encoding="utf-8",
    )
    file_handler.setLevel(getattr(logging, app_log_level.upper(), logging.DEBUG))
    file_handler.setFormatter(detailed_formatter)

    root_logger_level_str = _get_config_value(
        "system.logging.root_logger_level", "DEBUG"
    )
    root_logger = logging.getLogger()
    root_logger.setLevel(
        getattr(logging, root_logger_level_str.upper(), logging.DEBUG)
    )  # Capture everything, handlers will filter
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def get_log_directory() -> Path:
    """Get the configured log directory path."""
    default_log_dir = _get_config_value("system.logging.default_log_dir", "logs")
    log_dir_env_key = _get_config_value("system.logging.log_dir_env_key", "LOG_DIR")
    return Path(os.getenv(log_dir_env_key, default_log_dir))


def auto_setup_logging() -> None:
    """Setup logging based on the ENVIRONMENT variable."""
    env_key = _get_config_value("system.logging.environment_env_key", "ENVIRONMENT")
    environment = os.getenv(env_key, "development")

    levels = {
        "production": _get_config_value(
            "system.logging.environment_defaults.production.level", "INFO"
        ),
        "testing": _get_config_value(
            "system.logging.environment_defaults.testing.level", "WARNING"
        ),
    }
    level_name = os.getenv("LOG_LEVEL") or levels.get(
        environment,
        _get_config_value(
            "system.logging.environment_defaults.development.level", "DEBUG"
        ),
    )
    numeric_level = getattr(logging, level_name.upper(), logging.INFO)

    setup_logging(default_level=numeric_level, environment=environment)
