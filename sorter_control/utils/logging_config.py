"""Logging setup shared by the sorter scripts and host applications.

One call configures the root logger for a process:
    - Console handler on stderr (coloured level names on a TTY)
    - Optional file handler, size- or time-rotated, human or JSON lines
    - Per-attempt context fields (``order``, ``endpoint``) attached to
      every record emitted while they are active
    - Python ``warnings`` routed into logging

Public API:
    setup_logging(cfg.logging.level, cfg.logging.file, json=cfg.logging.json)
    with log_context(order=17): ...
    push_context(app="render_program") / pop_context(["app"])

Line formats:
    Human: 2025-10-28T13:45:12.345Z INFO     [app=sorter order=17] sorter_control.fulfillment.coordinator: Order #17 completed
    JSON:  {"t": "2025-10-28T13:45:12.345+00:00", "lvl": "INFO", "logger": "...", "msg": "...", "order": 17}

Context lives in a ``contextvars.ContextVar`` so worker threads do not
see each other's fields.  Calling setup_logging() again replaces the
handlers it installed earlier and leaves foreign handlers alone.
"""

import contextvars
import json
import logging
import logging.handlers
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

_fields: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    'sorter_log_fields', default={}
)

# Handlers owned by setup_logging
_installed: List[logging.Handler] = []

_LEVEL_COLOURS = {
    'DEBUG': '\033[2m',
    'INFO': '\033[32m',
    'WARNING': '\033[33m',
    'ERROR': '\033[31m',
    'CRITICAL': '\033[1;31m',
}


class ContextFormatter(logging.Formatter):
    """Render records as one human line or one JSON object.

    Parameters
    ----------
    mode : str
        ``"human"`` or ``"json"``.
    use_color : bool
        Colour the level name; ignored unless stderr is a TTY.
    utc : bool
        Timestamps in UTC (default) or local time.
    """

    def __init__(self, mode: str = "human", use_color: bool = True, utc: bool = True):
        super().__init__()
        if mode not in ("human", "json"):
            raise ValueError(f"Log format must be 'human' or 'json', got {mode!r}")
        self.mode = mode
        self.use_color = use_color and sys.stderr.isatty()
        self.utc = utc

    def _timestamp(self, record: logging.LogRecord) -> datetime:
        if self.utc:
            return datetime.fromtimestamp(record.created, tz=timezone.utc)
        return datetime.fromtimestamp(record.created).astimezone()

    def format(self, record: logging.LogRecord) -> str:
        fields = _fields.get()
        ts = self._timestamp(record)
        if self.mode == "json":
            entry: Dict[str, Any] = {
                't': ts.isoformat(timespec='milliseconds'),
                'lvl': record.levelname,
                'logger': record.name,
                'msg': record.getMessage(),
            }
            entry.update(fields)
            if record.exc_info:
                entry['exc'] = self.formatException(record.exc_info)
            return json.dumps(entry, default=str)

        level = f"{record.levelname:<8}"
        if self.use_color and record.levelname in _LEVEL_COLOURS:
            level = f"{_LEVEL_COLOURS[record.levelname]}{level}\033[0m"
        stamp = ts.strftime('%Y-%m-%dT%H:%M:%S.') + f"{ts.microsecond // 1000:03d}"
        stamp += 'Z' if self.utc else ts.strftime('%z')

        head = f"{stamp} {level}"
        if fields:
            head += " [" + " ".join(f"{k}={v}" for k, v in fields.items()) + "]"
        line = f"{head} {record.name}: {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _file_handler(
    log_file: str,
    rotate: Optional[Dict[str, Any]],
    as_json: bool,
) -> logging.Handler:
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)

    mode = (rotate or {}).get('mode')
    if rotate is None:
        handler: logging.Handler = logging.FileHandler(log_file, encoding='utf-8')
    elif mode in (None, 'size'):
        handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=int(rotate.get('max_bytes', 5_000_000)),
            backupCount=int(rotate.get('backup_count', 3)),
            encoding='utf-8',
        )
    elif mode == 'time':
        handler = logging.handlers.TimedRotatingFileHandler(
            log_file,
            when=rotate.get('when', 'midnight'),
            backupCount=int(rotate.get('backup_count', 7)),
            encoding='utf-8',
        )
    else:
        raise ValueError(f"Rotation mode must be 'size' or 'time', got {mode!r}")

    handler.setFormatter(
        ContextFormatter("json" if as_json else "human", use_color=False)
    )
    return handler


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    *,
    json: bool = False,
    color: bool = True,
    to_stderr: bool = True,
    rotate: Optional[Dict[str, Any]] = None,
    capture_warnings: bool = True,
    context: Optional[Dict[str, Any]] = None
) -> List[logging.Handler]:
    """Configure the root logger for this process.

    Parameters
    ----------
    log_level : str
        Root level name, e.g. ``"DEBUG"``.
    log_file : str, optional
        Also log to this file (parent directories are created).
    json : bool
        Write the file as JSON lines.  The console is always human.
    color : bool
        Colour console level names when stderr is a TTY.
    to_stderr : bool
        Install the console handler.
    rotate : dict, optional
        ``{"mode": "size", "max_bytes": ..., "backup_count": ...}`` or
        ``{"mode": "time", "when": "midnight", "backup_count": ...}``.
    capture_warnings : bool
        Route ``warnings.warn`` through logging.
    context : dict, optional
        Fields pushed for the rest of the process, e.g. ``{"app": "sorter"}``.

    Returns
    -------
    list[logging.Handler]
        The handlers now installed on the root logger.
    """
    root = logging.getLogger()
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")

    while _installed:
        old = _installed.pop()
        root.removeHandler(old)
        old.close()

    if to_stderr:
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(ContextFormatter("human", use_color=color))
        _installed.append(console)
    if log_file:
        _installed.append(_file_handler(log_file, rotate, json))

    root.setLevel(level)
    for handler in _installed:
        root.addHandler(handler)

    logging.captureWarnings(capture_warnings)
    if context:
        push_context(**context)
    return list(_installed)


def push_context(**fields: Any) -> None:
    """Attach *fields* to every record logged from this context."""
    _fields.set({**_fields.get(), **fields})


def pop_context(keys: Optional[List[str]] = None) -> None:
    """Drop the named fields, or all of them when *keys* is None."""
    if keys is None:
        _fields.set({})
    else:
        _fields.set({k: v for k, v in _fields.get().items() if k not in keys})


def get_context() -> Dict[str, Any]:
    return dict(_fields.get())


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Scope *fields* to a ``with`` block, restoring the previous set after."""
    token = _fields.set({**_fields.get(), **fields})
    try:
        yield
    finally:
        _fields.reset(token)
