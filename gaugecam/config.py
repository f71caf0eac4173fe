"""Configuration for gaugecam.

Tuning values (template size, match scores, swath count, RANSAC settings,
drift threshold) are read from one JSON file with dot-separated keys:

    config.get("vision.bowtie.template_dim", 56)

The file is ``$GAUGECAM_CONFIG`` if set, otherwise ``./gaugecam.json``, or
whatever path was given to ``Config.set_config_file``. Defaults are supplied
at the call site, so an empty or missing file is a valid configuration.
"""

import copy
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

CONFIG_FILE_ENV_KEY = "GAUGECAM_CONFIG"
DEFAULT_CONFIG_FILENAME = "gaugecam.json"


class Config:
    """Process wide configuration store.

    All state lives on the class, so every ``Config()`` sees the same file
    and values. Changes made with ``set`` are written back in a background
    thread.
    """

    _instance: Optional["Config"] = None
    _config_data: dict[str, Any] = {}
    _config_file: Optional[Path] = None
    _loaded: bool = False

    def __new__(cls) -> "Config":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    @classmethod
    def set_config_file(cls, config_path: str | Path) -> None:
        """Switch to another configuration file and load it."""
        cls._config_file = Path(config_path).resolve()
        cls._load_config()

    @classmethod
    def config_file(cls) -> Path:
        """The file values are read from and saved to."""
        if cls._config_file is None:
            env_path = os.getenv(CONFIG_FILE_ENV_KEY)
            cls._config_file = (
                Path(env_path) if env_path else Path.cwd() / DEFAULT_CONFIG_FILENAME
            )
        return cls._config_file

    @classmethod
    def _load_config(cls) -> None:
        path = cls.config_file()
        cls._loaded = True
        cls._config_data = {}
        if not path.exists():
            logger.debug(f"Config file not found: {path}, using defaults")
            return
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading config from {path}: {e}")
            return
        if not isinstance(data, dict):
            logger.error(f"Config file {path} does not hold a JSON object")
            return
        cls._config_data = data
        logger.info(f"Loaded configuration from {path}")

    def get(self, key: str, default: Any = None) -> Any:
        """Value at a dot-separated key, or default if any part is missing."""
        if not self._loaded:
            self._load_config()

        value: Any = self._config_data
        for part in key.split("."):
            if not isinstance(value, dict) or part not in value:
                return default
            value = value[part]
        return value

    def set(self, key: str, value: Any, persist: bool = True) -> None:
        """Set a value at a dot-separated key.

        Missing (or non-dict) intermediate levels are replaced by dicts.
        Unless ``persist`` is False the file is saved in the background.
        """
        if not self._loaded:
            self._load_config()

        *parents, leaf = key.split(".")
        node = self._config_data
        for part in parents:
            if not isinstance(node.get(part), dict):
                node[part] = {}
            node = node[part]
        node[leaf] = value

        if persist:
            threading.Thread(target=self._save_config, daemon=True).start()

    def _save_config(self) -> None:
        path = self.config_file()
        try:
            with open(path, "w", encoding="utf-8") as f:
                json.dump(self._config_data, f, indent=2, ensure_ascii=False)
        except (OSError, TypeError) as e:
            logger.error(f"Error saving config to {path}: {e}")
            return
        logger.debug(f"Saved configuration to {path}")

    def reload(self) -> None:
        """Discard in-memory changes and read the file again."""
        self._load_config()

    def get_all(self) -> dict[str, Any]:
        """Copy of the whole configuration."""
        if not self._loaded:
            self._load_config()
        return copy.deepcopy(self._config_data)


config = Config()
