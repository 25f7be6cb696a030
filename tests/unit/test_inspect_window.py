"""Unit tests for the inspect_window CLI.

Verifies output and exit codes (0 ok, 1 store failure, 2 invalid arguments)
against window files written by the store.
"""

import os

import pytest
from click.testing import CliRunner

from metricsdb.services.metric_table_store import MetricTableStore
from metricsdb.services.request_correlation_store import RequestCorrelationStore
from scripts import inspect_window
from scripts.inspect_window import cli, parse_metric_option


@pytest.fixture
def runner(monkeypatch):
  # Wide enough that rich never wraps a cell
  monkeypatch.setattr(inspect_window.console, 'width', 240)
  return CliRunner()


@pytest.fixture
def window_file(db_prefix, window_start):
  """A closed window on disk holding cpu, rss and one completed request."""
  store = MetricTableStore(window_start, db_prefix)
  store.write_single('cpu', {'index': 'idx1'}, 10, 5, 4, 6)
  store.write_single('cpu', {'index': 'idx2'}, 20, 20, 20, 20)
  store.write_single('rss', {'index': 'idx1'}, 54, 54, 54, 54)
  requests = RequestCorrelationStore(store)
  requests.record_start('1', window_start, 3, {'operation': 'search'})
  requests.record_end('1', window_start + 42, {'operation': 'search', 'status': '200'})
  requests.record_start('2', window_start + 1, 1, {'operation': 'bulk'})
  store.close()
  store.release()
  return store.db_path


def invoke(runner, db_prefix, *args):
  return runner.invoke(cli, ['--prefix', db_prefix, *args])


class TestCommands:
  """Test suite for successful inspections."""

  def test_tables(self, runner, db_prefix, window_start, window_file):
    result = invoke(runner, db_prefix, 'tables', str(window_start))

    assert result.exit_code == 0, result.output
    assert 'cpu' in result.output
    assert 'rss' in result.output
    assert 'http_rq_' not in result.output

  def test_dump(self, runner, db_prefix, window_start, window_file):
    result = invoke(runner, db_prefix, 'dump', str(window_start), 'cpu')

    assert result.exit_code == 0, result.output
    assert 'idx1' in result.output
    assert 'idx2' in result.output

  def test_aggregate(self, runner, db_prefix, window_start, window_file):
    result = invoke(
      runner,
      db_prefix,
      'aggregate',
      str(window_start),
      '--metric',
      'cpu:sum',
      '--metric',
      'rss:MAX',
      '--dim',
      'index',
    )

    assert result.exit_code == 0, result.output
    assert '54' in result.output
    assert 'null' in result.output

  def test_latency(self, runner, db_prefix, window_start, window_file):
    result = invoke(runner, db_prefix, 'latency', str(window_start))

    assert result.exit_code == 0, result.output
    assert 'search' in result.output
    assert '42' in result.output
    assert '1 requests in flight' in result.output

  def test_prefix_from_environment(self, runner, db_prefix, window_start, window_file, monkeypatch):
    monkeypatch.setenv('METRICS_DB_FILE_PREFIX', db_prefix)

    result = runner.invoke(cli, ['tables', str(window_start)])

    assert result.exit_code == 0, result.output
    assert 'cpu' in result.output

  def test_window_file_left_in_place(self, runner, db_prefix, window_start, window_file):
    invoke(runner, db_prefix, 'tables', str(window_start))

    assert os.path.exists(window_file)


class TestExitCodes:
  """Test suite for failure exit codes."""

  def test_missing_window_exits_1(self, runner, db_prefix):
    result = invoke(runner, db_prefix, 'tables', '42')

    assert result.exit_code == 1
    assert 'Error reading window 42' in result.output

  def test_unknown_aggregation_exits_2(self, runner, db_prefix, window_start, window_file):
    result = invoke(runner, db_prefix, 'aggregate', str(window_start), '--metric', 'cpu:median')

    assert result.exit_code == 2
    assert 'median' in result.output

  def test_malformed_metric_option_exits_2(self, runner, db_prefix, window_start, window_file):
    result = invoke(runner, db_prefix, 'aggregate', str(window_start), '--metric', 'cpu')

    assert result.exit_code == 2

  def test_unknown_metric_table_exits_2(self, runner, db_prefix, window_start, window_file):
    result = invoke(runner, db_prefix, 'dump', str(window_start), 'heap')

    assert result.exit_code == 2

  def test_dump_of_request_table_exits_2(self, runner, db_prefix, window_start, window_file):
    result = invoke(runner, db_prefix, 'dump', str(window_start), f'http_rq_{window_start}')

    assert result.exit_code == 2
    assert 'request table' in result.output

  def test_latency_without_request_table_exits_1(self, runner, db_prefix, window_start):
    store = MetricTableStore(window_start, db_prefix)
    store.write_single('cpu', {'index': 'a'}, 1, 1, 1, 1)
    store.close()
    store.release()

    result = invoke(runner, db_prefix, 'latency', str(window_start))

    assert result.exit_code == 1


@pytest.mark.parametrize(
  'value, expected',
  [
    ('cpu:sum', ('cpu', 'sum')),
    ('jvm:heap:max', ('jvm:heap', 'max')),
  ],
)
def test_parse_metric_option(value, expected):
  assert parse_metric_option(value) == expected
