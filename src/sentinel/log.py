"""Logger setup for sentinel.

Every module grabs its logger through :func:`get_logger`. The first call
for a name configures a console handler (and optionally a rotating file
handler); later calls return the same instance.
"""

import logging
import logging.handlers
import os

DEFAULT_CONSOLE_LEVEL_NAME = "INFO"
DEFAULT_FILE_LEVEL_NAME = "DEBUG"
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
ROOT_LOGGER_NAME = "sentinel"

_loggers: dict[str, logging.Logger] = {}


def _get_log_level(level_name: str, default_level: int = logging.INFO) -> int:
    """Convert a level name such as ``'DEBUG'`` to its logging constant."""
    level = logging.getLevelName(str(level_name).upper())
    if isinstance(level, int):
        return level
    logging.getLogger(ROOT_LOGGER_NAME).warning(
        "Invalid log level name %r, using %s", level_name, logging.getLevelName(default_level)
    )
    return default_level


def setup_logger(
    name: str = ROOT_LOGGER_NAME,
    log_format: str = DEFAULT_LOG_FORMAT,
    console_level_name: str = DEFAULT_CONSOLE_LEVEL_NAME,
    file_level_name: str = DEFAULT_FILE_LEVEL_NAME,
    log_file_path: str | None = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    console_handler: logging.Handler | None = None,
) -> logging.Logger:
    """
    Set up and configure the sentinel logger.

    Child loggers (``sentinel.orchestrator`` and so on) propagate to this
    one, so it is normally called once at startup. Calling it again for an
    already configured name returns the existing logger untouched.

    Args:
        name: Logger name.
        log_format: Format string for every handler.
        console_level_name: Level for the console handler.
        file_level_name: Level for the file handler.
        log_file_path: Rotating log file. ``None`` disables file logging.
        max_bytes: Size at which the log file rotates.
        backup_count: Number of rotated files kept.
        console_handler: Handler for console output. Defaults to a
            ``StreamHandler`` on stderr; a full-screen UI passes one that
            does not write to the terminal it draws on.
    """
    if name in _loggers:
        return _loggers[name]

    logger = logging.getLogger(name)
    console_level = _get_log_level(console_level_name, logging.INFO)
    file_level = _get_log_level(file_level_name, logging.DEBUG)
    logger.setLevel(min(console_level, file_level) if log_file_path else console_level)
    logger.propagate = False

    if logger.hasHandlers():
        logger.handlers.clear()

    formatter = logging.Formatter(log_format)

    if console_handler is None:
        console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file_path:
        try:
            log_dir = os.path.dirname(log_file_path)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_file_path,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
            file_handler.setLevel(file_level)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except OSError as e:
            logger.error("Failed to set up file logging to %s: %s", log_file_path, e)

    _loggers[name] = logger
    return logger


def get_logger(name: str = ROOT_LOGGER_NAME) -> logging.Logger:
    """
    Get a logger for a sentinel module.

    Module loggers are plain children of the ``sentinel`` logger and
    inherit its handlers; only the root name gets configured here.
    """
    if name == ROOT_LOGGER_NAME:
        return _loggers.get(name) or setup_logger(name)
    return logging.getLogger(name)
