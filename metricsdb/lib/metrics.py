"""Prometheus metrics for window store activity."""

from prometheus_client import Counter, Gauge, Histogram

tables_created_total = Counter(
  'metricsdb_tables_created_total',
  'Tables created in window stores',
  ['kind'],
)

rows_written_total = Counter(
  'metricsdb_rows_written_total',
  'Rows inserted into window stores',
  ['kind'],
)

commit_duration_seconds = Histogram(
  'metricsdb_commit_duration_seconds',
  'Window commit duration in seconds',
  buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
)

inflight_rolled_over_total = Counter(
  'metricsdb_inflight_requests_rolled_over_total',
  'In-flight requests carried into the next window',
)

inflight_expired_total = Counter(
  'metricsdb_inflight_requests_expired_total',
  'In-flight requests dropped at rollover because they outlived the expiry bound',
)

windows_retired_total = Counter(
  'metricsdb_windows_retired_total',
  'Window stores retired',
)

open_windows_gauge = Gauge(
  'metricsdb_open_windows',
  'Window stores currently held',
)


def record_table_created(kind: str):
  """Record a table creation.

  Args:
      kind: 'metric' or 'request'
  """
  tables_created_total.labels(kind=kind).inc()


def record_rows_written(kind: str, count: int):
  """Record inserted rows.

  Args:
      kind: 'metric' or 'request'
      count: Number of rows inserted
  """
  if count:
    rows_written_total.labels(kind=kind).inc(count)


def record_commit_duration(duration_seconds: float):
  commit_duration_seconds.observe(duration_seconds)


def record_rollover(rolled_over: int, expired: int):
  """Record the outcome of one in-flight rollover.

  Args:
      rolled_over: Requests carried into the next window
      expired: Requests dropped for exceeding the expiry bound
  """
  if rolled_over:
    inflight_rolled_over_total.inc(rolled_over)
  if expired:
    inflight_expired_total.inc(expired)


def record_window_retired():
  windows_retired_total.inc()


def update_open_windows(count: int):
  open_windows_gauge.set(count)
