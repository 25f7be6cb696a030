"""Shared test fixtures.

Window stores are real SQLite files under pytest's tmp_path, so every test
runs against the same backend the layer uses in production.
"""

import pytest
from prometheus_client import REGISTRY

from metricsdb.lib.config import Settings, reset_settings
from metricsdb.lib.window_context import reset_window_id
from metricsdb.services.metric_table_store import MetricTableStore
from metricsdb.services.request_correlation_store import RequestCorrelationStore

WINDOW_START = 1_535_065_340_000


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
  """Isolate tests from the caller's environment and cached settings."""
  for var in (
    'METRICS_DB_FILE_PREFIX',
    'METRICS_WINDOW_MS',
    'METRICS_RETAINED_WINDOWS',
    'LOG_LEVEL',
  ):
    monkeypatch.delenv(var, raising=False)
  reset_settings()
  reset_window_id()
  yield
  reset_settings()
  reset_window_id()


@pytest.fixture
def db_prefix(tmp_path):
  """Window file prefix inside the test's temporary directory."""
  return str(tmp_path / 'metricsdb_')


@pytest.fixture
def settings(db_prefix):
  return Settings(db_file_prefix=db_prefix, window_ms=5000, retained_windows=2)


# ============================================================================
# Store Fixtures
# ============================================================================


@pytest.fixture
def window_start():
  return WINDOW_START


@pytest.fixture
def store(db_prefix, window_start):
  """Metric table store of one window; released after the test."""
  store = MetricTableStore(window_start, db_prefix)
  yield store
  if not store.is_retired:
    store.release()


@pytest.fixture
def request_store(store):
  """Request correlation table sharing the store's window file."""
  return RequestCorrelationStore(store)


@pytest.fixture
def make_window(db_prefix):
  """Factory opening the metric and request stores of any window."""
  opened = []

  def _make(start: int):
    metrics = MetricTableStore(start, db_prefix)
    opened.append(metrics)
    return metrics, RequestCorrelationStore(metrics)

  yield _make
  for metrics in opened:
    if not metrics.is_retired:
      metrics.release()


# ============================================================================
# Prometheus Helpers
# ============================================================================


@pytest.fixture
def sample_value():
  """Read the current value of a Prometheus sample, 0 when never recorded."""

  def _sample(name: str, labels: dict | None = None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0

  return _sample
