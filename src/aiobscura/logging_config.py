"""
Logging configuration for aiobscura.

Sets up rotating file logs in the XDG state directory and an optional
console handler. Modules log through ``logging.getLogger(__name__)``.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

from aiobscura.config import Settings, settings as default_settings

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_HANDLER_MARKER = "_aiobscura_handler"


def _mark(handler: logging.Handler) -> logging.Handler:
    setattr(handler, _HANDLER_MARKER, True)
    return handler


def setup_logging(
    context: str = "cli",
    level: Optional[str] = None,
    settings: Optional[Settings] = None,
    console: Optional[bool] = None,
) -> Optional[Path]:
    """
    Configure the ``aiobscura`` logger hierarchy.

    Calling this more than once replaces handlers installed by a previous
    call, so it is safe to call from every entry point.

    Args:
        context: Name of the entry point; used as the log file stem
            (e.g. ``cli`` -> ``aiobscura-cli.log``)
        level: Override for ``logging.level``
        settings: Settings to read from (defaults to the global instance)
        console: Override for ``logging.console_enabled``

    Returns:
        Path of the log file, or None when file logging is disabled

    Raises:
        PermissionError: If the log directory cannot be created
    """
    cfg = settings or default_settings
    log_level = getattr(logging, (level or cfg.logging.level).upper(), logging.INFO)

    root = logging.getLogger("aiobscura")
    root.setLevel(log_level)
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    log_path: Optional[Path] = None

    if cfg.logging.file_enabled:
        log_dir = cfg.log_directory
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / f"aiobscura-{context}.log"

        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=cfg.logging.max_bytes,
            backupCount=cfg.logging.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root.addHandler(_mark(file_handler))

    console_enabled = cfg.logging.console_enabled if console is None else console
    if console_enabled:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        root.addHandler(_mark(stream_handler))

    if not root.handlers:
        root.addHandler(_mark(logging.NullHandler()))

    root.propagate = False
    root.debug(f"Logging initialized for {context} at level {logging.getLevelName(log_level)}")
    return log_path
