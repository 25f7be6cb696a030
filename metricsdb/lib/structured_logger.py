"""Structured Logger with JSON Formatting.

Provides structured logging with JSON output for machine-readable logs.
Every record carries the start of the window active in the current context.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any

from metricsdb.lib.window_context import get_window_id

# Extra fields copied onto the JSON line when present on the record
CONTEXT_FIELDS = ('metric', 'table', 'rows', 'duration_ms', 'db_path', 'count')


class JSONFormatter(logging.Formatter):
  """JSON formatter for structured logging."""

  def format(self, record: logging.LogRecord) -> str:
    """Format log record as JSON.

    Args:
        record: Log record to format

    Returns:
        JSON-formatted log string
    """
    log_data = {
      'timestamp': datetime.now(timezone.utc).isoformat(),
      'level': record.levelname,
      'message': record.getMessage(),
      'module': record.module,
      'function': record.funcName,
      'window_start': get_window_id(),
    }

    for name in CONTEXT_FIELDS:
      if hasattr(record, name):
        log_data[name] = getattr(record, name)

    if record.exc_info:
      log_data['exception'] = {
        'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
        'message': str(record.exc_info[1]) if record.exc_info[1] else None,
      }

    return json.dumps(log_data, default=str)


class StructuredLogger:
  """Thin wrapper passing keyword context as record extras.

  Usage:
      logger = StructuredLogger(__name__)
      logger.info('Window opened', db_path='/tmp/metricsdb_1000')
  """

  def __init__(self, name: str):
    self.logger = logging.getLogger(name)

  def info(self, message: str, **extra: Any) -> None:
    self.logger.info(message, extra=extra)

  def warning(self, message: str, exc_info: bool = False, **extra: Any) -> None:
    self.logger.warning(message, exc_info=exc_info, extra=extra)

  def error(self, message: str, exc_info: bool = False, **extra: Any) -> None:
    self.logger.error(message, exc_info=exc_info, extra=extra)

  def debug(self, message: str, **extra: Any) -> None:
    self.logger.debug(message, extra=extra)


def configure_logging(level: str = 'INFO') -> logging.Logger:
  """Install the JSON handler on the package logger.

  Args:
      level: Log level name; unknown names fall back to INFO

  Returns:
      The configured 'metricsdb' logger
  """
  root = logging.getLogger('metricsdb')
  root.setLevel(getattr(logging, level.upper(), logging.INFO))

  # Remove existing handlers to avoid duplicates
  root.handlers.clear()

  handler = logging.StreamHandler()
  handler.setFormatter(JSONFormatter())
  root.addHandler(handler)
  return root
