# src/sandboxcore/logging_config.py
"""
Logging configuration for sandboxcore hosts.

Library modules only ever call ``logging.getLogger(__name__)``; the
process embedding the orchestrator calls ``configure_logging`` once at
startup to attach handlers.

Key concepts:

    **Display filter**: When ``console_enabled=False`` (the default), the
    console handler still exists but only passes through log records that
    carry ``extra={"display": True}``. Sandbox lifecycle milestones
    ("Created sandbox abc123 in 8120ms") can reach the operator while
    command-level chatter stays file-only.

    **File rotation**: ``file_mode="single"`` uses a
    ``RotatingFileHandler`` with configurable max size and backup count.
    ``file_mode="per_run"`` creates a new timestamped file per process.

Usage:
    from sandboxcore.logging_config import configure_logging, log_display

    configure_logging(app_name="sandbox-worker")

    logger = logging.getLogger("sandbox-worker")
    log_display(logger, logging.INFO, "Resumed sandbox %s", sandbox_id)
"""

import logging
import os
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

DEFAULT_LOGGING_CONFIG: dict[str, Any] = {
    "console_enabled": False,
    "console_level": "WARNING",
    "console_format": "%(levelname)s - %(message)s",
    "file_enabled": True,
    "file_level": "DEBUG",
    "file_directory": "~/.local/share/sandboxcore/logs",
    "file_mode": "per_run",
    "file_name_pattern": "{app}_{timestamp:%Y%m%d_%H%M%S}.log",
    "file_single_name": "{app}.log",
    "file_format": "%(asctime)s [%(levelname)-8s] %(name)-30s - %(message)s (%(filename)s:%(lineno)d)",
    "rotation_max_bytes": 10 * 1024 * 1024,  # 10 MB
    "rotation_backup_count": 5,
    "display_min_level": "INFO",
    "components": {
        "sandboxcore": "INFO",
        "docker": "WARNING",
        "urllib3": "WARNING",
        "httpx": "WARNING",
        "httpcore": "WARNING",
        "e2b": "WARNING",
        "daytona_sdk": "WARNING",
        "asyncio": "WARNING",
    },
}

_state: dict[str, Any] = {
    "configured": False,
    "log_file_path": None,
    "console_handler": None,
    "file_handler": None,
}


class DisplayFilter(logging.Filter):
    """Controls which log records pass through to the console handler.

    When console is globally enabled, everything passes and the handler's
    own level check does the filtering. Otherwise only records with
    ``record.display = True`` pass, provided they also meet
    ``display_min_level``.
    """

    def __init__(
        self,
        console_globally_enabled: bool = False,
        display_min_level: int = logging.INFO,
    ) -> None:
        super().__init__()
        self.console_globally_enabled = console_globally_enabled
        self.display_min_level = display_min_level

    def filter(self, record: logging.LogRecord) -> bool:
        """Determine if the record should pass to console."""
        if self.console_globally_enabled:
            return True

        if getattr(record, "display", False):
            return record.levelno >= self.display_min_level

        return False


def _level(value: str | int, default: int) -> int:
    if isinstance(value, int):
        return value
    level = logging.getLevelName(value.upper())
    return level if isinstance(level, int) else default


def _create_console_handler(config: dict[str, Any]) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(_level(config.get("console_level", "WARNING"), logging.WARNING))
    handler.setFormatter(logging.Formatter(config["console_format"]))
    return handler


def _create_file_handler(
    config: dict[str, Any], app_name: str
) -> tuple[logging.Handler | None, Path | None]:
    """Create the file handler for ``single`` or ``per_run`` mode."""
    log_dir = Path(os.path.expanduser(config["file_directory"]))
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        sys.stderr.write(f"Warning: Cannot create log directory {log_dir}: {e}\n")
        return None, None

    handler: logging.Handler
    if config.get("file_mode", "per_run") == "single":
        try:
            filename = config["file_single_name"].format(app=app_name)
        except (KeyError, ValueError):
            filename = f"{app_name}.log"
        log_file_path = log_dir / filename
        try:
            handler = RotatingFileHandler(
                log_file_path,
                maxBytes=config.get("rotation_max_bytes", 10 * 1024 * 1024),
                backupCount=config.get("rotation_backup_count", 5),
                encoding="utf-8",
            )
        except OSError as e:
            sys.stderr.write(f"Warning: Cannot create log file {log_file_path}: {e}\n")
            return None, None
    else:
        timestamp = datetime.now()
        try:
            filename = config["file_name_pattern"].format(app=app_name, timestamp=timestamp)
        except (KeyError, ValueError):
            filename = f"{app_name}_{timestamp.strftime('%Y%m%d_%H%M%S')}.log"
        log_file_path = log_dir / filename
        try:
            handler = logging.FileHandler(log_file_path, encoding="utf-8")
        except OSError as e:
            sys.stderr.write(f"Warning: Cannot create log file {log_file_path}: {e}\n")
            return None, None

    handler.setLevel(_level(config.get("file_level", "DEBUG"), logging.DEBUG))
    handler.setFormatter(logging.Formatter(config["file_format"]))
    return handler, log_file_path


def configure_logging(
    app_name: str = "sandboxcore",
    config: dict[str, Any] | None = None,
    force_reconfigure: bool = False,
) -> Path | None:
    """
    Configure root logging for a process that embeds sandboxcore.

    Args:
        app_name: Used in the log file name
        config: Overrides for ``DEFAULT_LOGGING_CONFIG``
        force_reconfigure: Reconfigure even if already configured

    Returns:
        Path to the log file, or None when file logging is disabled/unavailable
    """
    if _state["configured"] and not force_reconfigure:
        return _state["log_file_path"]

    log_config = {**DEFAULT_LOGGING_CONFIG, **(config or {})}

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.setLevel(logging.DEBUG)

    console_globally_enabled = bool(log_config.get("console_enabled", False))
    display_filter = DisplayFilter(
        console_globally_enabled=console_globally_enabled,
        display_min_level=_level(log_config.get("display_min_level", "INFO"), logging.INFO),
    )
    console_handler = _create_console_handler(log_config)
    if not console_globally_enabled:
        # The filter is the sole gate when the console is "off"
        console_handler.setLevel(logging.DEBUG)
    console_handler.addFilter(display_filter)
    root_logger.addHandler(console_handler)

    file_handler, log_file_path = None, None
    if log_config.get("file_enabled", True):
        file_handler, log_file_path = _create_file_handler(log_config, app_name)
        if file_handler:
            root_logger.addHandler(file_handler)

    components = log_config.get("components", DEFAULT_LOGGING_CONFIG["components"])
    for component_name, level_str in components.items():
        logging.getLogger(component_name).setLevel(_level(level_str, logging.INFO))

    _state.update(
        configured=True,
        log_file_path=log_file_path,
        console_handler=console_handler,
        file_handler=file_handler,
    )

    if log_file_path:
        logging.getLogger(__name__).debug(f"Logging configured. Log file: {log_file_path}")

    return log_file_path


def is_configured() -> bool:
    """Check if logging has been configured."""
    return bool(_state["configured"])


def get_log_file_path() -> Path | None:
    """Get the current log file path."""
    return _state["log_file_path"]


def set_console_level(level: str | int) -> None:
    """Change the console handler's log level at runtime."""
    handler = _state["console_handler"]
    if handler is not None:
        handler.setLevel(_level(level, logging.WARNING))


def log_display(logger: logging.Logger, level: int, msg: str, *args: Any, **kwargs: Any) -> None:
    """Log a message that reaches the console even when it is globally off."""
    extra = dict(kwargs.pop("extra", None) or {})
    extra["display"] = True
    logger.log(level, msg, *args, extra=extra, **kwargs)
