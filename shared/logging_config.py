"""
Logging for the BioSync components.

Every component (sync engine, remote API client, store, HTTP server, tray)
logs under the ``biosync.<component>`` namespace to the console and to a
per-run file in the data directory's logs/ folder. ``BIOSYNC_LOG_LEVEL``
sets the starting level.
"""

import logging
import os
import sys
from datetime import datetime

from termcolor import colored

from shared.utils import get_data_path

LOGGER_PREFIX = 'biosync'
LOG_LEVEL_ENV = 'BIOSYNC_LOG_LEVEL'
LOG_FORMAT = '[%(asctime)s] [%(component)s] [%(levelname)s] %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class BioSyncFormatter(logging.Formatter):
    """Tags each record with its component; colors by level on a terminal"""

    LEVEL_COLORS = {
        'DEBUG': 'cyan',
        'INFO': 'green',
        'WARNING': 'yellow',
        'ERROR': 'red',
        'CRITICAL': 'magenta'
    }

    def __init__(self, component: str, use_colors: bool = False):
        super().__init__(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
        self.component = component
        self.use_colors = use_colors

    def format(self, record):
        record.component = self.component
        line = super().format(record)
        if self.use_colors:
            return colored(line, self.LEVEL_COLORS.get(record.levelname, 'white'))
        return line


def _logger_name(component: str) -> str:
    return f"{LOGGER_PREFIX}.{component.lower()}"


def _console_stream():
    # windowed tray builds start without a console
    return sys.stdout or sys.stderr


def _is_terminal(stream) -> bool:
    try:
        return bool(stream) and stream.isatty()
    except (AttributeError, ValueError):
        return False


def _log_file(component: str):
    stamp = datetime.now().strftime('%Y-%m-%d_%H-%M-%S')
    log_dir = get_data_path('logs')
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / f"{LOGGER_PREFIX}_{component.lower()}_{stamp}.log"


def setup_logging(component: str, level: str = None, log_to_file: bool = True) -> logging.Logger:
    """Attach console and file handlers to the component's logger.

    ``level`` falls back to ``BIOSYNC_LOG_LEVEL`` and then INFO. A logger that
    already has handlers is returned untouched.
    """
    logger = logging.getLogger(_logger_name(component))
    if logger.handlers:
        return logger

    level = level or os.getenv(LOG_LEVEL_ENV, 'INFO')
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    stream = _console_stream()
    if stream is not None:
        console = logging.StreamHandler(stream)
        console.setFormatter(BioSyncFormatter(component, use_colors=_is_terminal(stream)))
        logger.addHandler(console)

    if log_to_file:
        try:
            file_handler = logging.FileHandler(_log_file(component), encoding='utf-8')
        except OSError as e:
            logger.warning(f"File logging disabled for {component}: {e}")
        else:
            file_handler.setFormatter(BioSyncFormatter(component))
            logger.addHandler(file_handler)

    return logger


def get_logger(component: str) -> logging.Logger:
    existing = logging.getLogger(_logger_name(component))
    return existing if existing.handlers else setup_logging(component)


def get_server_logger() -> logging.Logger:
    return get_logger("SERVER")


def get_sync_logger() -> logging.Logger:
    return get_logger("SYNC")


def get_api_logger() -> logging.Logger:
    return get_logger("API")


def get_store_logger() -> logging.Logger:
    return get_logger("STORE")


def set_log_level(level: str):
    """Apply ``level`` to every biosync logger created so far and its handlers"""
    level_obj = getattr(logging, level.upper(), logging.INFO)
    for name in list(logging.root.manager.loggerDict):
        if not name.startswith(f"{LOGGER_PREFIX}."):
            continue
        logger = logging.getLogger(name)
        logger.setLevel(level_obj)
        for handler in logger.handlers:
            handler.setLevel(level_obj)


def enable_debug_logging():
    set_log_level("DEBUG")
