"""Logger utility for Ferryman.

All package loggers hang off one parent logger (``ferryman`` by default)
whose handlers are set up from the ``logging`` configuration section.
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from typing import Any

DEFAULT_LOGGING_CONFIG: dict[str, Any] = {
    "level": "INFO",
    "parent_logger": None,
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    "date_format": "%Y-%m-%d %H:%M:%S",
    "enable_console": True,
    "enable_file": False,
    "file_path": None,
    "max_file_size": 10485760,  # 10MB
    "backup_count": 5,
}

PACKAGE_LOGGER = "ferryman"


class ColorFormatter(logging.Formatter):
    """Formatter that colors the whole line by level, for TTY consoles."""

    COLORS = {
        "DEBUG": "\033[94m",  # Blue
        "INFO": "\033[92m",  # Green
        "WARNING": "\033[93m",  # Yellow
        "ERROR": "\033[91m",  # Red
        "CRITICAL": "\033[95m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        msg = super().format(record)
        return f"{color}{msg}{self.RESET}"


class LoggerManager:
    """Manages logger configuration and provides logger instances."""

    def __init__(self) -> None:
        self._loggers: dict[str, logging.Logger] = {}
        self._configured = False
        self._config: dict[str, Any] | None = None

    def configure(self, config: dict[str, Any]) -> None:
        """Configure the package logger.

        Args:
            config: The ``logging`` configuration section. Missing keys fall
                back to DEFAULT_LOGGING_CONFIG.
        """
        self._config = {**DEFAULT_LOGGING_CONFIG, **(config or {})}
        self._configured = True
        self._configure_parent_logger()

    def _parent_name(self) -> str:
        return (self._config or {}).get("parent_logger") or PACKAGE_LOGGER

    def _configure_parent_logger(self) -> None:
        if not self._config:
            return

        parent_logger = logging.getLogger(self._parent_name())

        # Clear existing handlers to avoid duplicates on reconfigure
        for handler in list(parent_logger.handlers):
            parent_logger.removeHandler(handler)
            handler.close()

        level = getattr(logging, str(self._config["level"]).upper(), logging.INFO)
        parent_logger.setLevel(level)

        formatter = logging.Formatter(self._config["format"], self._config["date_format"])

        if self._config["enable_console"]:
            console_handler = logging.StreamHandler(sys.stdout)
            if sys.stdout.isatty():
                console_handler.setFormatter(
                    ColorFormatter(self._config["format"], self._config["date_format"])
                )
            else:
                console_handler.setFormatter(formatter)
            parent_logger.addHandler(console_handler)

        if self._config["enable_file"] and self._config["file_path"]:
            file_handler = logging.handlers.RotatingFileHandler(
                self._config["file_path"],
                maxBytes=self._config["max_file_size"],
                backupCount=self._config["backup_count"],
            )
            file_handler.setFormatter(formatter)
            parent_logger.addHandler(file_handler)

        # Prevent propagation to avoid duplicate logs
        parent_logger.propagate = False

    def get_logger(self, name: str) -> logging.Logger:
        """Get or create a logger under the package parent logger.

        Args:
            name: Component name, e.g. ``"cache"``.

        Returns:
            Logger named ``<parent>.<name>``.
        """
        if not self._configured:
            self.configure({})

        full_name = f"{self._parent_name()}.{name}"
        if full_name not in self._loggers:
            self._loggers[full_name] = logging.getLogger(full_name)
        return self._loggers[full_name]

    def set_level(self, level: str) -> None:
        """Change the logging level for the package."""
        if self._config:
            self._config["level"] = level
            self._configure_parent_logger()


# Global logger manager instance
_logger_manager = LoggerManager()


def configure_logging(config: dict[str, Any]) -> None:
    """Configure the logging system from the ``logging`` configuration section.

    Call once during application start-up.
    """
    _logger_manager.configure(config)


def get_logger(name: str) -> logging.Logger:
    """Get a logger for a package component.

    Example:
        logger = get_logger("cache")
        logger.info("Cleanup: removed %d expired entries", removed)
    """
    return _logger_manager.get_logger(name)


def set_log_level(level: str) -> None:
    """Change the logging level for the entire package."""
    _logger_manager.set_level(level)
