"""Unit tests for JSON log formatting."""

import json
import logging
import sys

from metricsdb.lib.structured_logger import JSONFormatter, StructuredLogger, configure_logging
from metricsdb.lib.window_context import set_window_id


def make_record(**extra):
  record = logging.LogRecord(
    name='metricsdb.test',
    level=logging.INFO,
    pathname=__file__,
    lineno=1,
    msg='Committed window %s',
    args=(1000,),
    exc_info=None,
  )
  for key, value in extra.items():
    setattr(record, key, value)
  return record


def test_record_carries_window_start():
  set_window_id(1000)

  data = json.loads(JSONFormatter().format(make_record()))

  assert data['message'] == 'Committed window 1000'
  assert data['level'] == 'INFO'
  assert data['window_start'] == '1000'


def test_context_fields_copied():
  data = json.loads(JSONFormatter().format(make_record(rows=3, duration_ms=1.5, user='x')))

  assert data['rows'] == 3
  assert data['duration_ms'] == 1.5
  assert 'user' not in data


def test_exception_info():
  try:
    raise OSError('disk full')
  except OSError:
    record = make_record()
    record.exc_info = sys.exc_info()

  data = json.loads(JSONFormatter().format(record))

  assert data['exception'] == {'type': 'OSError', 'message': 'disk full'}


def test_structured_logger_passes_extras(caplog):
  caplog.set_level(logging.INFO, logger='metricsdb')

  StructuredLogger('metricsdb.test').info('Opened window', db_path='/tmp/metricsdb_1')

  assert caplog.records[-1].db_path == '/tmp/metricsdb_1'


def test_configure_logging_installs_single_handler():
  configure_logging('debug')
  logger = configure_logging('warning')

  assert logger.level == logging.WARNING
  assert len(logger.handlers) == 1
  assert isinstance(logger.handlers[0].formatter, JSONFormatter)
  logger.handlers.clear()
  logger.setLevel(logging.NOTSET)
