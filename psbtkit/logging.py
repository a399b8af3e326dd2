# Copyright (C) 2019 The Electrum developers
# Distributed under the MIT software license, see the accompanying
# file LICENCE or http://www.opensource.org/licenses/mit-license.php

import logging
import datetime
import sys
import pathlib
import os
import platform
from typing import Optional, TYPE_CHECKING
import copy

if TYPE_CHECKING:
    from .simple_config import SimpleConfig


class LogFormatterForFiles(logging.Formatter):

    def formatTime(self, record, datefmt=None):
        # timestamps follow ISO 8601 UTC
        date = datetime.datetime.fromtimestamp(record.created).astimezone(datetime.timezone.utc)
        if not datefmt:
            datefmt = "%Y%m%dT%H%M%S.%fZ"
        return date.strftime(datefmt)

    def format(self, record):
        record = _shorten_name_of_logrecord(record)
        return super().format(record)


file_formatter = LogFormatterForFiles(fmt="%(asctime)22s | %(levelname)8s | %(name)s | %(message)s")


class LogFormatterForConsole(logging.Formatter):

    def format(self, record):
        record = _shorten_name_of_logrecord(record)
        text = super().format(record)
        shortcut = getattr(record, 'custom_shortcut', None)
        if shortcut:
            text = text[:1] + f"/{shortcut}" + text[1:]
        return text


# try to make console log lines short... no timestamp, short levelname, no "psbtkit."
console_formatter = LogFormatterForConsole(fmt="%(levelname).1s | %(name)s | %(message)s")


def _shorten_name_of_logrecord(record: logging.LogRecord) -> logging.LogRecord:
    record = copy.copy(record)  # avoid mutating arg
    # strip the main module name from the logger name
    if record.name.startswith("psbtkit."):
        record.name = record.name[8:]
    # manual map to shorten common module names
    record.name = record.name.replace("updater.Updater", "updater", 1)
    return record


def _delete_old_logs(path, keep=10):
    files = sorted(list(pathlib.Path(path).glob("psbtkit_log_*.log")), reverse=True)
    for f in files[keep:]:
        try:
            os.remove(str(f))
        except OSError as e:
            _logger.warning(f"cannot delete old logfile: {e}")


_logfile_path = None
def _configure_file_logging(log_directory: pathlib.Path):
    global _logfile_path
    assert _logfile_path is None, 'file logging already initialized'
    log_directory.mkdir(parents=True, exist_ok=True)

    _delete_old_logs(log_directory)

    timestamp = datetime.datetime.now(datetime.timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    PID = os.getpid()
    _logfile_path = log_directory / f"psbtkit_log_{timestamp}_{PID}.log"

    file_handler = logging.FileHandler(_logfile_path, encoding='utf-8')
    file_handler.setFormatter(file_formatter)
    file_handler.setLevel(logging.DEBUG)
    root_logger.addHandler(file_handler)


console_stderr_handler = None
def _configure_stderr_logging(*, verbosity=None, verbosity_shortcuts=None):
    # log to stderr; without any verbosity setting only WARNING and higher
    global console_stderr_handler
    if console_stderr_handler is not None:
        _logger.warning("stderr handler already exists")
        return
    console_stderr_handler = logging.StreamHandler(sys.stderr)
    console_stderr_handler.setFormatter(console_formatter)
    verbose = bool(verbosity or verbosity_shortcuts)
    console_stderr_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root_logger.addHandler(console_stderr_handler)
    if verbose:
        _process_verbosity_log_levels(verbosity)
        _process_verbosity_filter_shortcuts(verbosity_shortcuts, handler=console_stderr_handler)


def _process_verbosity_log_levels(verbosity):
    """Applies a comma separated list of levels, e.g.
    "debug,psbt=error" (everything except the parser) or
    "warning,finalizer=debug" (only the finalizer).
    """
    if verbosity == '*' or not isinstance(verbosity, str):
        return
    for filt in filter(None, verbosity.split(',')):
        items = filt.split('=')
        if len(items) == 1:
            psbtkit_logger.setLevel(items[0].upper())
        elif len(items) == 2:
            logger_name, level = items
            get_logger(logger_name).setLevel(level.upper())
        else:
            raise Exception(f"invalid log filter: {filt}")


def _process_verbosity_filter_shortcuts(verbosity_shortcuts, *, handler: 'logging.Handler'):
    # a leading '^' turns the whitelist of shortcuts into a blacklist
    if not isinstance(verbosity_shortcuts, str) or not verbosity_shortcuts:
        return
    is_blacklist = verbosity_shortcuts.startswith('^')
    filters = verbosity_shortcuts[1:] if is_blacklist else verbosity_shortcuts
    # only on the handler: filters on parent loggers do not see records of child loggers,
    # see https://docs.python.org/3/howto/logging.html#logging-flow
    handler.addFilter(ShortcutFilteringFilter(is_blacklist=is_blacklist, filters=filters))


class ShortcutInjectingFilter(logging.Filter):

    def __init__(self, *, shortcut: Optional[str]):
        super().__init__()
        self.__shortcut = shortcut

    def filter(self, record):
        record.custom_shortcut = self.__shortcut
        return True


class ShortcutFilteringFilter(logging.Filter):

    def __init__(self, *, is_blacklist: bool, filters: str):
        super().__init__()
        self.__is_blacklist = is_blacklist
        self.__filters = filters

    def filter(self, record):
        # errors, and the logging module itself, always get through
        if record.levelno >= logging.ERROR or record.name == __name__:
            return True
        shortcut = getattr(record, 'custom_shortcut', None)
        if shortcut is None:
            return self.__is_blacklist
        return (shortcut in self.__filters) != self.__is_blacklist


# psbtkit is a library: no handlers are installed at import time,
# the host application decides via configure_logging()
root_logger = logging.getLogger()

# creates a logger specifically for the psbtkit library
psbtkit_logger = logging.getLogger("psbtkit")
psbtkit_logger.setLevel(logging.DEBUG)


# --- External API

def get_logger(name: str) -> logging.Logger:
    if name.startswith("psbtkit."):
        name = name[8:]
    return psbtkit_logger.getChild(name)


_logger = get_logger(__name__)
_logger.setLevel(logging.INFO)


class Logger:

    # Single character short "name" for this class.
    # Can be used for filtering log lines. Does not need to be unique.
    LOGGING_SHORTCUT = None  # type: Optional[str]

    def __init__(self):
        self.logger = self.__get_logger_for_obj()

    def __get_logger_for_obj(self) -> logging.Logger:
        cls = self.__class__
        if cls.__module__:
            name = f"{cls.__module__}.{cls.__name__}"
        else:
            name = cls.__name__
        try:
            diag_name = self.diagnostic_name()
        except Exception as e:
            raise Exception("diagnostic name not yet available?") from e
        if diag_name:
            name += f".[{diag_name}]"
        logger = get_logger(name)
        if self.LOGGING_SHORTCUT:
            logger.addFilter(ShortcutInjectingFilter(shortcut=self.LOGGING_SHORTCUT))
        return logger

    def diagnostic_name(self):
        return ''


def configure_logging(config: 'SimpleConfig', *, log_to_file: Optional[bool] = None) -> None:
    verbosity = config.LOG_VERBOSITY
    verbosity_shortcuts = config.LOG_VERBOSITY_SHORTCUTS
    _configure_stderr_logging(verbosity=verbosity, verbosity_shortcuts=verbosity_shortcuts)

    if log_to_file is None:
        log_to_file = config.LOG_TO_FILE
    if log_to_file:
        if not config.path:
            raise Exception("cannot log to file: config has no data directory")
        log_directory = pathlib.Path(config.path) / "logs"
        _configure_file_logging(log_directory)

    from .version import PSBTKIT_VERSION
    _logger.info(f"psbtkit version: {PSBTKIT_VERSION}")
    _logger.info(f"Python version: {sys.version}. On platform: {platform.platform()}")
    _logger.info(f"Logging to file: {str(_logfile_path)}")
    _logger.info(f"Log filters: verbosity {repr(verbosity)}, verbosity_shortcuts {repr(verbosity_shortcuts)}")


def get_logfile_path() -> Optional[pathlib.Path]:
    return _logfile_path
