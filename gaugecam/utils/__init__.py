"""Shared utilities."""

from .logging import auto_setup_logging, get_log_directory, get_logger, setup_logging

__all__ = ["setup_logging", "get_logger", "get_log_directory", "auto_setup_logging"]
