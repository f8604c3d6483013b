"""
Logging configuration.

Modules log through ``logging.getLogger(__name__)`` and attach structured
fields with ``extra={'context': {...}}``. The JSON formatter merges those
fields into each record; the text formatter appends them as key=value pairs.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

TEXT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'warning': logging.WARNING,
    'error': logging.ERROR,
}


def _record_context(record: logging.LogRecord) -> Dict[str, Any]:
    context = getattr(record, 'context', None)
    return context if isinstance(context, dict) else {}


class JsonFormatter(logging.Formatter):
    """Render log records as one JSON object per line"""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            'time': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'msg': record.getMessage(),
        }
        for key, value in _record_context(record).items():
            payload.setdefault(key, value)
        if record.exc_info:
            payload['exception'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable format with structured fields appended"""

    def __init__(self):
        super().__init__(TEXT_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        context = _record_context(record)
        if context:
            message += ' ' + ' '.join(f"{key}={value}" for key, value in context.items())
        return message


def parse_level(level: str) -> int:
    try:
        return _LEVELS[level.lower()]
    except KeyError:
        raise ValueError(f"unknown log level: {level}") from None


def setup_logging(level: str = 'info', fmt: str = 'json',
                  stream: Optional[TextIO] = None) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        level: One of debug, info, warn, error
        fmt: ``json`` or ``text``
        stream: Output stream, stderr by default

    Returns:
        logging.Logger: The configured root logger
    """
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonFormatter() if fmt.lower() == 'json' else TextFormatter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(parse_level(level))
    return root
