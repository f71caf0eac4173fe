"""Tests for logging setup."""

import logging
import logging.handlers

import pytest
import yaml

from gaugecam.utils.logging import (
    auto_setup_logging,
    get_log_directory,
    get_logger,
    setup_logging,
)


@pytest.fixture()
def clean_root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


def test_default_logging_handlers(clean_root_logger, tmp_path):
    before = len(clean_root_logger.handlers)
    setup_logging(config_path=str(tmp_path / "missing.yaml"), log_dir=tmp_path)

    added = clean_root_logger.handlers[before:]
    assert any(isinstance(h, logging.handlers.RotatingFileHandler) for h in added)
    assert any(type(h) is logging.StreamHandler for h in added)

    get_logger("gaugecam.test").info("hello")
    assert (tmp_path / "gaugecam.log").exists()


def test_yaml_logging_with_environment_override(clean_root_logger, tmp_path):
    config = {
        "version": 1,
        "disable_existing_loggers": False,
        "handlers": {
            "console": {"class": "logging.StreamHandler", "level": "DEBUG"},
        },
        "loggers": {
            "gaugecam.vision": {"level": "INFO", "handlers": ["console"]},
        },
        "testing": {
            "loggers": {
                "gaugecam.vision": {"level": "WARNING", "handlers": ["console"]},
            },
        },
    }
    path = tmp_path / "logging.yaml"
    path.write_text(yaml.safe_dump(config))

    setup_logging(config_path=str(path), environment="testing", log_dir=tmp_path)
    vision_logger = logging.getLogger("gaugecam.vision")
    assert vision_logger.level == logging.WARNING
    for handler in list(vision_logger.handlers):
        vision_logger.removeHandler(handler)


def test_log_directory_env(monkeypatch, tmp_path):
    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    assert get_log_directory() == tmp_path


def test_auto_setup_logging_testing_environment(clean_root_logger, monkeypatch, tmp_path):
    monkeypatch.setenv("ENVIRONMENT", "testing")
    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    monkeypatch.setenv("LOG_CFG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    before = len(clean_root_logger.handlers)

    auto_setup_logging()

    console = [
        h for h in clean_root_logger.handlers[before:] if type(h) is logging.StreamHandler
    ]
    assert console
    assert console[0].level == logging.WARNING
