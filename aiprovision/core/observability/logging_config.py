"""
Logging configuration — set up once by the CLI entrypoint.

Every module logs through ``logging.getLogger(__name__)``; this module
only decides where those records go.

Level precedence:
    --debug / -v / -q  >  PROV_LOG_LEVEL  >  INFO

At INFO every skip, retry and give-up of a run is visible.  A second,
more verbose copy can go to a file (PROV_LOG_FILE, PROV_LOG_FILE_LEVEL)
so unattended container runs leave something to read afterwards.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Mapping

DEFAULT_LEVEL = "INFO"

ENV_LEVEL = "PROV_LOG_LEVEL"
ENV_FILE = "PROV_LOG_FILE"
ENV_FILE_LEVEL = "PROV_LOG_FILE_LEVEL"

# Console at INFO and above: severity tag only
_FMT_CONSOLE = "[%(levelname)s] %(message)s"

# Console at DEBUG, and every file handler
_FMT_DETAIL = "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d — %(message)s"
_DATEFMT_CONSOLE = "%H:%M:%S"
_DATEFMT_FILE = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    level: str | None = DEFAULT_LEVEL,
    log_file: str | None = None,
    log_file_level: str | None = None,
) -> None:
    """Install the stderr handler (and optionally a file handler) on the root logger.

    Args:
        level: Console level name; unknown names fall back to INFO.
        log_file: Append log records to this file as well.
        log_file_level: Level for the file, defaults to ``level``.
    """
    console_level = parse_level(level)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    if console_level <= logging.DEBUG:
        console.setFormatter(logging.Formatter(_FMT_DETAIL, datefmt=_DATEFMT_CONSOLE))
    else:
        console.setFormatter(logging.Formatter(_FMT_CONSOLE))

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        if isinstance(handler, logging.FileHandler):
            handler.close()
    root.addHandler(console)

    root_level = console_level
    if log_file:
        file_level = parse_level(log_file_level) if log_file_level else console_level
        root_level = min(root_level, file_level)

        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(file_level)
        fh.setFormatter(logging.Formatter(_FMT_DETAIL, datefmt=_DATEFMT_FILE))
        root.addHandler(fh)

    root.setLevel(root_level)

    # A closed stderr (detached container) must not turn into tracebacks
    logging.raiseExceptions = False


def settings_from_env(environ: Mapping[str, str] | None = None) -> dict[str, str | None]:
    """``setup_logging`` keyword arguments taken from PROV_LOG_* variables."""
    environ = os.environ if environ is None else environ
    return {
        "level": environ.get(ENV_LEVEL) or DEFAULT_LEVEL,
        "log_file": environ.get(ENV_FILE) or None,
        "log_file_level": environ.get(ENV_FILE_LEVEL) or None,
    }


def parse_level(level: str | None) -> int:
    """Level name → numeric constant (INFO when empty or unknown)."""
    if not level:
        return logging.INFO
    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        return logging.INFO
    return numeric
