"""
Logging configuration for Hashlock nodes.

Two output formats:
  - **human** – coloured, single-line, readable
  - **json**  – newline-delimited JSON for log aggregators

The escrow service attaches ``escrow_id``, ``operation`` and (on rejection)
``code`` to its records via ``extra=``.  The JSON formatter emits them as
top-level keys so aggregators can follow one escrow across create,
withdraw and cancel; the human formatter shows the operation and short id.

Files are always written as JSON.  ``aiohttp.access`` is held at WARNING
unless the root level is DEBUG, so polling clients do not flood the log.
``levels`` overrides individual loggers, e.g. ``{"hashlock_api": "DEBUG"}``.

Usage:
    from hashlock_core.logging_config import setup_logging
    setup_logging(level="INFO", fmt="json", log_file="hashlock.log",
                  levels={"hashlock_storage": "WARNING"})
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# Structured fields the escrow service attaches to its log records
ESCROW_FIELDS = ("escrow_id", "operation", "code")


def _escrow_fields(record: logging.LogRecord) -> dict:
    return {k: getattr(record, k) for k in ESCROW_FIELDS if getattr(record, k, "")}


def _short_id(escrow_id: str) -> str:
    return escrow_id[:10] + "…" if len(escrow_id) > 12 else escrow_id


class _JSONFormatter(logging.Formatter):
    """Emit each log record as a single JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            **_escrow_fields(record),
        }
        if record.exc_info and record.exc_info[1]:
            log_obj["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_obj, default=str)


class _HumanFormatter(logging.Formatter):
    """Coloured, concise single-line format."""

    COLOURS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[1;31m",
    }
    RESET = "\033[0m"

    def __init__(self, colour: bool = True):
        super().__init__()
        self.colour = colour

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        fields = _escrow_fields(record)
        tag = ""
        if "operation" in fields:
            tag = f" <{fields['operation']} {_short_id(fields.get('escrow_id', '-'))}>"
        line = f"[{record.levelname:<7}] {record.name}{tag}: {record.getMessage()}"
        if record.exc_info and record.exc_info[1]:
            line += "\n" + self.formatException(record.exc_info)
        if not self.colour:
            return f"{ts} {line}"
        colour = self.COLOURS.get(record.levelname, "")
        return f"{colour}{ts}{self.RESET} {line}"


def _level(name: str, default: int = logging.INFO) -> int:
    value = getattr(logging, str(name).upper(), None)
    return value if isinstance(value, int) else default


def setup_logging(
    level: str = "INFO",
    fmt: str = "human",
    log_file: Optional[str] = None,
    levels: Optional[dict[str, str]] = None,
) -> None:
    """
    Configure the root logger for the whole node.

    Parameters
    ----------
    level : str
        One of DEBUG, INFO, WARNING, ERROR, CRITICAL.  Unknown names fall
        back to INFO.
    fmt : str
        ``"human"`` for single-line output (coloured on a TTY), ``"json"``
        for newline-delimited JSON.
    log_file : str, optional
        If provided, logs are *also* appended to this file as JSON.
    levels : dict, optional
        Per-logger level overrides, applied last.
    """
    root = logging.getLogger()
    root_level = _level(level)
    root.setLevel(root_level)
    root.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        console.setFormatter(_JSONFormatter())
    else:
        console.setFormatter(_HumanFormatter(colour=sys.stderr.isatty()))
    root.addHandler(console)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(str(path))
        fh.setFormatter(_JSONFormatter())
        root.addHandler(fh)

    logging.getLogger("aiohttp.access").setLevel(
        logging.DEBUG if root_level <= logging.DEBUG else logging.WARNING
    )
    for name, lvl in (levels or {}).items():
        logging.getLogger(name).setLevel(_level(lvl))
