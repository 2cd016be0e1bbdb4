"""
Hot-reloadable configuration.

Keeps the active GovernorConfig and swaps it when the backing file changes.
A new file is fully validated before the swap; a bad edit leaves the
previous configuration in force.
"""

import logging
import os
import threading
from typing import Callable, List, Optional

from .loader import GovernorConfig, load_governor_config

logger = logging.getLogger(__name__)

ConfigListener = Callable[[GovernorConfig], None]


class ReloadableConfig:
    """Holds the current configuration loaded from a YAML file."""

    def __init__(self, path: str):
        """Load the initial configuration.

        Args:
            path: Path to YAML configuration file

        Raises:
            FileNotFoundError, yaml.YAMLError, ValueError: as load_governor_config
        """
        self.path = path
        self._lock = threading.Lock()
        self._listeners: List[ConfigListener] = []
        self._config = load_governor_config(path)
        self._mtime: Optional[float] = os.path.getmtime(path)

    @property
    def current(self) -> GovernorConfig:
        return self._config

    def subscribe(self, listener: ConfigListener) -> None:
        """Register a callback invoked with every newly applied configuration."""
        with self._lock:
            self._listeners.append(listener)

    def reload(self, force: bool = False) -> bool:
        """Re-read the file if it changed since the last load.

        Args:
            force: Reload even when the modification time is unchanged

        Returns:
            True if a new configuration was applied

        Raises:
            FileNotFoundError, yaml.YAMLError, ValueError: if the new file is
            invalid; the previous configuration stays active
        """
        mtime = os.path.getmtime(self.path)
        if not force and mtime == self._mtime:
            return False

        try:
            new_config = load_governor_config(self.path)
        except Exception:
            logger.error("Rejected configuration change in %s; keeping previous config", self.path)
            raise

        with self._lock:
            self._config = new_config
            self._mtime = mtime
            listeners = list(self._listeners)

        logger.info("Applied configuration from %s", self.path)
        for listener in listeners:
            listener(new_config)
        return True
