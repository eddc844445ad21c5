"""Logging setup for the toolkit CLI.

Console lines are coloured by level; optional sinks write the same records to a
plain log file, a JSON-lines file and syslog. Everything is standard
``logging`` so task modules simply log through their logger.
"""
from __future__ import annotations

import json
import logging
import logging.handlers
import os
import sys
from typing import List, Optional, TextIO

from core.errors import ConfigError
from ops_toolkit.config import LogSettings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_COLOURS = {
    logging.DEBUG: "\033[34m",     # blue
    logging.INFO: "\033[32m",      # green
    logging.WARNING: "\033[33m",   # yellow
    logging.ERROR: "\033[31m",     # red
    logging.CRITICAL: "\033[31m",
}
_RESET = "\033[0m"

ROOT_LOGGER_NAME = "aws_ops"


class ColourFormatter(logging.Formatter):
    """Wrap the whole formatted line in the level's ANSI colour."""

    def __init__(self, colour: bool = True) -> None:
        super().__init__(LOG_FORMAT, DATE_FORMAT)
        self.colour = colour

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        if not self.colour:
            return line
        return f"{_COLOURS.get(record.levelno, _COLOURS[logging.ERROR])}{line}{_RESET}"


class JsonLineFormatter(logging.Formatter):
    """One JSON object per record: timestamp (epoch seconds), level, message."""

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(
            {
                "timestamp": int(record.created),
                "level": record.levelname.lower(),
                "message": record.getMessage(),
            }
        )


def _default_path(suffix: str) -> str:
    prog = os.path.basename(sys.argv[0] or ROOT_LOGGER_NAME) or ROOT_LOGGER_NAME
    return os.path.join("/tmp", f"{prog}{suffix}")


def _syslog_facility(name: str) -> int:
    facility = logging.handlers.SysLogHandler.facility_names.get(name.lower())
    if facility is None:
        raise ConfigError(f"Unknown syslog facility: {name}")
    return facility


def _close_all(handlers: List[logging.Handler]) -> None:
    for handler in handlers:
        handler.close()


def _sink_handlers(cfg: LogSettings) -> List[logging.Handler]:
    handlers: List[logging.Handler] = []
    try:
        if cfg.file:
            fh = logging.FileHandler(cfg.file_path or _default_path(".log"), encoding="utf-8")
            fh.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
            handlers.append(fh)

        if cfg.json:
            jh = logging.FileHandler(cfg.json_path or _default_path(".log.json"), encoding="utf-8")
            jh.setFormatter(JsonLineFormatter())
            handlers.append(jh)

        if cfg.syslog:
            sh = logging.handlers.SysLogHandler(
                address=cfg.syslog_address,
                facility=_syslog_facility(cfg.syslog_facility),
            )
            sh.setFormatter(logging.Formatter(f"{cfg.syslog_tag}[%(process)d]: %(levelname)s: %(message)s"))
            handlers.append(sh)
    except ConfigError:
        _close_all(handlers)
        raise
    except OSError as exc:
        _close_all(handlers)
        raise ConfigError(f"Cannot open log sink: {exc}") from exc
    return handlers


def configure_logging(
    settings: Optional[LogSettings] = None,
    *,
    stream: Optional[TextIO] = None,
) -> logging.Logger:
    """Install handlers on the toolkit logger and return it.

    Calling it twice replaces the previous handlers instead of stacking them.
    An unusable sink (unknown syslog facility, unwritable log path) raises
    ConfigError and leaves the current handlers in place.
    """
    cfg = settings or LogSettings()
    sinks = _sink_handlers(cfg)

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    level = logging.DEBUG if cfg.debug else getattr(logging, cfg.level.upper(), logging.INFO)
    logger.setLevel(level)
    logger.propagate = False

    console = logging.StreamHandler(stream or sys.stderr)
    console.setFormatter(ColourFormatter(colour=cfg.colour))
    logger.addHandler(console)
    for handler in sinks:
        logger.addHandler(handler)

    return logger
