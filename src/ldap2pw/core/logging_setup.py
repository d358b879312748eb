"""
Central logging for ldap2pw.

- Console handler: level from config (INFO by default, DEBUG with --verbose)
- Timed rotated file handler: DEBUG (logs/app.log, daily rotation)
- Run file handler: DEBUG (logs/YYYY-MM-DD/<action>_<run_id>.log)
- Secret redaction: masks bind passwords/tokens in both msg and % args
- UTC timestamps in ISO-8601
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
import socket
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

CONTEXT_FIELDS = ("run_id", "action", "host")


class MaskSecretsFilter(logging.Filter):
    """
    Redact common secrets (bind passwords, tokens, API keys) from log records.
    """

    _patterns = [
        re.compile(r"(Authorization:\s*Bearer\s+)([A-Za-z0-9._-]+)", re.IGNORECASE),
        re.compile(r"(api[_-]?key\s*[=:]\s*)([A-Za-z0-9._-]+)", re.IGNORECASE),
        re.compile(r"(password\s*[=:]\s*)([^,\s]+)", re.IGNORECASE),
        re.compile(r"(bind[_-]?pw\s*[=:]\s*)([^,\s]+)", re.IGNORECASE),
        re.compile(r"(\btoken\s*[=:]\s*)([A-Za-z0-9._-]+)", re.IGNORECASE),
    ]

    @staticmethod
    def _mask(text: str) -> str:
        masked = text
        for pat in MaskSecretsFilter._patterns:
            masked = pat.sub(r"\1***REDACTED***", masked)
        return masked

    def filter(self, record: logging.LogRecord) -> bool:
        if record.args and isinstance(record.args, dict):
            record.args = {k: self._mask(str(v)) for k, v in record.args.items()}
        elif record.args and isinstance(record.args, tuple):
            record.args = tuple(self._mask(a) if isinstance(a, str) else a for a in record.args)
        if isinstance(record.msg, str):
            record.msg = self._mask(record.msg)
        return True


class ContextDefaultsFilter(logging.Filter):
    """Give records from plain (non-adapter) loggers the context fields the format expects."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name in CONTEXT_FIELDS:
            if not hasattr(record, name):
                setattr(record, name, "-")
        return True


def _ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def _utc_formatter(fmt: str) -> logging.Formatter:
    f = logging.Formatter(fmt=fmt, datefmt="%Y-%m-%dT%H:%M:%SZ")
    f.converter = time.gmtime  # type: ignore[attr-defined]
    return f


def _level(name: str, default: int) -> int:
    return getattr(logging, str(name).upper(), default)


def _decorate(handler: logging.Handler, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(ContextDefaultsFilter())
    handler.addFilter(MaskSecretsFilter())
    return handler


def _replace_console_handler(base_logger: logging.Logger, *, level: int, formatter: logging.Formatter) -> None:
    """
    Keep exactly ONE StreamHandler bound to the current sys.stderr
    (pytest swaps stdio between tests; repeated runs must not duplicate output).
    """
    for h in list(base_logger.handlers):
        if type(h) is logging.StreamHandler:
            base_logger.removeHandler(h)
            h.close()
    base_logger.addHandler(_decorate(logging.StreamHandler(stream=sys.stderr), level, formatter))


def _replace_app_file_handler(
    base_logger: logging.Logger,
    *,
    base_dir: str,
    level: int,
    formatter: logging.Formatter,
) -> None:
    """
    Point a single TimedRotatingFileHandler at <base_dir>/app.log, replacing
    one left over from a previous call with another base_dir.
    """
    _ensure_dir(base_dir)
    desired = os.path.abspath(os.path.join(base_dir, "app.log"))

    keep = False
    for h in list(base_logger.handlers):
        if isinstance(h, logging.handlers.TimedRotatingFileHandler):
            if os.path.abspath(h.baseFilename) == desired:
                h.setLevel(level)
                keep = True
            else:
                base_logger.removeHandler(h)
                h.close()
    if keep:
        return

    rh = logging.handlers.TimedRotatingFileHandler(
        desired,
        when="midnight",
        backupCount=14,
        encoding="utf-8",
        utc=True,
        delay=False,
    )
    base_logger.addHandler(_decorate(rh, level, formatter))


def build_logger(
    *,
    name: str = "ldap2pw",
    run_id: str,
    action: str,
    base_dir: str = "logs",
    console_level: str = "INFO",
    file_level: str = "DEBUG",
    extra: Optional[Dict[str, Any]] = None,
) -> logging.LoggerAdapter:
    """
    Configure and return a LoggerAdapter.

    Design:
      - A base logger `<name>` holds console + rotating file handlers.
      - A child logger `<name>.<action>.<run_id>` holds a per-run file handler.
      - Records propagate to base logger so they appear in all sinks.
    """
    fmt = (
        "%(asctime)s | %(levelname)-8s | %(name)s | "
        "run=%(run_id)s action=%(action)s host=%(host)s | "
        "%(message)s"
    )
    formatter = _utc_formatter(fmt)

    base = logging.getLogger(name)
    base.setLevel(logging.DEBUG)
    _replace_console_handler(base, level=_level(console_level, logging.INFO), formatter=formatter)
    _replace_app_file_handler(
        base,
        base_dir=base_dir,
        level=_level(file_level, logging.DEBUG),
        formatter=formatter,
    )

    child = logging.getLogger(f"{name}.{action}.{run_id}")
    child.setLevel(logging.DEBUG)
    child.propagate = True

    if not getattr(child, "_ldap2pw_configured", False):
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        dated_dir = os.path.join(base_dir, today)
        _ensure_dir(dated_dir)
        action_file = os.path.join(dated_dir, f"{action}_{run_id}.log")
        Path(action_file).touch(exist_ok=True)
        fh = logging.FileHandler(action_file, encoding="utf-8", delay=False)
        child.addHandler(_decorate(fh, _level(file_level, logging.DEBUG), formatter))
        child._ldap2pw_configured = True  # type: ignore[attr-defined]

    adapter = logging.LoggerAdapter(
        child,
        {
            "run_id": run_id,
            "action": action,
            "host": (extra or {}).get("host") or socket.gethostname(),
        },
    )
    adapter.debug("Logger initialised")
    return adapter
