"""
Logging Configuration

Console and rotating-file logging for the server and CLI. Records carry
the tenant, workspace and copy operation they belong to, taken from a
context bound around each request or command.
"""

import json
import logging
import logging.handlers
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

CONTEXT_FIELDS = ('tenant_id', 'workspace', 'operation_id')

# Collaborator chatter that drowns out engine logs below WARNING
NOISY_LOGGERS = ('httpx', 'httpcore', 'sqlalchemy.engine', 'uvicorn.access')

TEXT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

_log_context: ContextVar[Dict[str, Any]] = ContextVar('mapping_engine_log_context', default={})


@contextmanager
def log_context(**fields: Any) -> Iterator[Dict[str, Any]]:
    """
    Attach fields to every record logged inside the block

    Nested blocks add to the outer context; empty values are ignored.
    """
    merged = dict(_log_context.get())
    merged.update({k: v for k, v in fields.items() if v})
    token = _log_context.set(merged)
    try:
        yield merged
    finally:
        _log_context.reset(token)


def current_log_context() -> Dict[str, Any]:
    return dict(_log_context.get())


class ContextFilter(logging.Filter):
    """Copies the bound log context onto each record"""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _log_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'line': record.lineno,
        }
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value:
                entry[key] = value

        # extra={"data": {...}}
        if hasattr(record, 'data'):
            entry['data'] = record.data
        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class ContextTextFormatter(logging.Formatter):
    """Plain text with a ``[tenant/workspace]`` tag when one is bound"""

    def __init__(self):
        super().__init__(TEXT_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        tenant = getattr(record, 'tenant_id', None)
        if not tenant:
            return line
        tag = f"[{tenant}/{getattr(record, 'workspace', '-')}]"
        operation = getattr(record, 'operation_id', None)
        if operation:
            tag += f"[{operation}]"
        return f"{tag} {line}"


def _rotating_handler(path: Path, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(path, maxBytes=10 * 1024 * 1024, backupCount=5)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(ContextFilter())
    return handler


def setup_logging(
    log_dir: Optional[Path] = Path('logs'),
    log_level: str = 'INFO',
    enable_json: bool = False,
    enable_file: bool = True,
    stream=None
) -> None:
    """
    Configure root logging

    Args:
        log_dir: Directory for mapping_engine.log and mapping_engine_errors.log
        log_level: Level name for the root logger and console
        enable_json: Emit JSON lines instead of text
        enable_file: Also write rotating log files
        stream: Console stream, stdout by default
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    formatter = JSONFormatter() if enable_json else ContextTextFormatter()

    console = logging.StreamHandler(stream or sys.stdout)
    console.setLevel(level)
    console.setFormatter(formatter)
    console.addFilter(ContextFilter())
    root_logger.addHandler(console)

    if enable_file and log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        root_logger.addHandler(_rotating_handler(log_dir / "mapping_engine.log", logging.DEBUG, formatter))
        root_logger.addHandler(_rotating_handler(log_dir / "mapping_engine_errors.log", logging.ERROR, formatter))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    logging.getLogger(__name__).debug(f"Logging configured: level={log_level}, json={enable_json}")
