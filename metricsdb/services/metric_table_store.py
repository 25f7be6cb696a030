"""Per-window metric table store.

On-disk database holding one window (e.g. 5 seconds) of metrics. There is
one table per metric; every row holds the four pre-reduced aggregates of one
dimension tuple.

CPU table
    |index   |shard|role|sum|avg|min|max|
    +--------+-----+----+---+---+---+---+
    |sonested|    1| N/A|  5|2.5|  2|  3|

RSS table
    |index    |shard|role|sum|avg|min|max|
    +---------+-----+----+---+---+---+---+
    |nyc_taxis|    1| N/A| 30| 15| 10| 20|

All writes of a window go through one connection and stay in one
transaction until commit(). The store also exposes the relational
primitives (create/insert/select/drop) used by the aggregation and request
correlation engines, translating backend failures into StoreIOError.
"""

import logging
import os
import threading
import time
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import Integer, MetaData, Table, inspect, select
from sqlalchemy.exc import SQLAlchemyError

from metricsdb.lib.database import create_window_engine, get_db_file_path
from metricsdb.lib.errors import (
  ArityError,
  InvalidArgumentError,
  SchemaError,
  StoreIOError,
  StoreRetiredError,
  WindowClosedError,
  WindowNotFoundError,
  WindowOpenError,
)
from metricsdb.lib.metrics import record_commit_duration, record_rows_written, record_table_created
from metricsdb.models.metric_descriptor import AGGREGATE_COLUMNS, MetricDescriptor, ValueType

logger = logging.getLogger(__name__)

# Request correlation tables share the window file; metric names may not use this prefix
REQUEST_TABLE_PREFIX = 'http_rq_'


class BatchWriter:
  """Buffers rows for one table until they are flushed into the window transaction.

  Rows are positional and must match the table's column order; for metric
  tables that is the dimensions followed by sum, avg, min, max.
  """

  def __init__(self, store: 'MetricTableStore', table: Table, kind: str = 'metric'):
    self._store = store
    self._table = table
    self._kind = kind
    self._rows: list[dict[str, Any]] = []
    self.columns = tuple(column.name for column in table.columns)

  @property
  def table_name(self) -> str:
    return self._table.name

  def __len__(self) -> int:
    return len(self._rows)

  def bind(self, *values: Any) -> 'BatchWriter':
    """Buffer one row.

    Raises:
        ArityError: If the value count doesn't match the table; rows buffered
            so far are discarded
    """
    if len(values) != len(self.columns):
      discarded = len(self._rows)
      self._rows.clear()
      raise ArityError(
        f'Table {self.table_name} expects {len(self.columns)} values {list(self.columns)}, '
        f'got {len(values)}; discarded {discarded} buffered rows'
      )
    self._rows.append(dict(zip(self.columns, values)))
    return self

  def execute(self) -> int:
    """Insert the buffered rows into the open window transaction.

    Returns:
        Number of rows flushed
    """
    if not self._rows:
      return 0
    rows, self._rows = self._rows, []
    return self._store.insert_rows(self._table, rows, kind=self._kind)

  def discard(self) -> None:
    self._rows.clear()


class MetricTableStore:
  """Owns the on-disk store of one window and its per-metric tables."""

  def __init__(self, window_start: int, db_file_prefix: str | None = None, create: bool = True):
    """Open (or create) the store of one window.

    Args:
        window_start: Window start time in epoch milliseconds
        db_file_prefix: Path prefix of window files (defaults to settings)
        create: Create the file if missing; False re-opens an existing window

    Raises:
        WindowNotFoundError: If create is False and the window file is missing
        StoreIOError: If the backend cannot be opened
    """
    self.window_start = window_start
    self.db_path = get_db_file_path(window_start, db_file_prefix)
    if not create and not os.path.exists(self.db_path):
      raise WindowNotFoundError(f'No window store at {self.db_path}')

    self._engine = create_window_engine(self.db_path)
    try:
      self._conn = self._engine.connect()
    except SQLAlchemyError as e:
      self._engine.dispose()
      raise StoreIOError(f'Failed to open window store {self.db_path}: {e}') from e

    self._lock = threading.RLock()
    self._metadata = MetaData()
    self._descriptors: dict[str, MetricDescriptor] = {}
    self._tables: dict[str, Table] = {}
    self._writers: list[BatchWriter] = []
    self._closed = False
    self._retired = False

  def __repr__(self) -> str:
    return f'<MetricTableStore(window_start={self.window_start}, db_path={self.db_path!r})>'

  @property
  def is_closed(self) -> bool:
    return self._closed

  @property
  def is_retired(self) -> bool:
    return self._retired

  # ------------------------------------------------------------------
  # Metric tables
  # ------------------------------------------------------------------

  def ensure_table(
    self,
    metric_name: str,
    dimension_names: Sequence[str],
    value_type: ValueType | str = ValueType.DOUBLE,
  ) -> Table:
    """Create the metric's table unless it already exists in this window.

    Args:
        metric_name: Metric (table) name
        dimension_names: Ordered dimension columns
        value_type: Storage type of the aggregate columns

    Returns:
        The metric's table

    Raises:
        InvalidArgumentError: If the name or dimensions are malformed
        SchemaError: If the table exists with a different column set
        WindowClosedError: If the table is missing and the window is sealed
    """
    descriptor = self._describe(metric_name, dimension_names, value_type)
    with self._lock:
      existing = self.descriptor(metric_name)
      if existing is not None:
        if existing != descriptor:
          raise SchemaError(
            f'Table {metric_name} exists with columns {list(existing.columns)} '
            f'({existing.value_type.value}), requested {list(descriptor.columns)} '
            f'({descriptor.value_type.value})'
          )
        return self._tables[metric_name]

      table = descriptor.build_table(self._metadata)
      try:
        self.create_table(table, kind='metric')
      except StoreIOError:
        self._metadata.remove(table)
        raise
      self._descriptors[metric_name] = descriptor
      self._tables[metric_name] = table
      return table

  def open_batch_writer(
    self,
    metric_name: str,
    dimension_names: Sequence[str],
    value_type: ValueType | str = ValueType.DOUBLE,
  ) -> BatchWriter:
    """Ensure the metric's table and return a writer buffering rows for it.

    Rows are shaped (dimension values..., sum, avg, min, max).
    """
    table = self.ensure_table(metric_name, dimension_names, value_type)
    return self.batch_writer(table, kind='metric')

  def write_single(
    self,
    metric_name: str,
    dimensions: Mapping[str, Any],
    sum_value: float | None,
    avg_value: float | None,
    min_value: float | None,
    max_value: float | None,
  ) -> None:
    """Insert one row without batching.

    Creates the table on first write, using the mapping's keys as its
    dimensions. Afterwards keys outside the table's dimensions are rejected;
    missing dimensions are written as NULL.

    Raises:
        InvalidArgumentError: If the mapping holds unknown dimension keys
    """
    dims = dict(dimensions)
    with self._lock:
      descriptor = self.descriptor(metric_name)
      if descriptor is None:
        self.ensure_table(metric_name, list(dims))
        descriptor = self._descriptors[metric_name]

      unknown = set(dims) - set(descriptor.dimensions)
      if unknown:
        raise InvalidArgumentError(
          f'Unknown dimensions {sorted(unknown)} for metric {metric_name}, '
          f'permitted: {list(descriptor.dimensions)}'
        )

      row = {dim: dims.get(dim) for dim in descriptor.dimensions}
      row.update(zip(AGGREGATE_COLUMNS, (sum_value, avg_value, min_value, max_value)))
      self.insert_rows(self._tables[metric_name], [row], kind='metric')

  def descriptor(self, metric_name: str) -> MetricDescriptor | None:
    """Column descriptor of a metric's table, or None if it has no table.

    Raises:
        InvalidArgumentError: If the name belongs to a request table
    """
    if metric_name.startswith(REQUEST_TABLE_PREFIX):
      raise InvalidArgumentError(f'{metric_name} is a request table, not a metric table')
    with self._lock:
      if metric_name not in self._descriptors:
        self._reflect(metric_name)
      return self._descriptors.get(metric_name)

  def get_table(self, metric_name: str) -> Table | None:
    if self.descriptor(metric_name) is None:
      return None
    return self._tables[metric_name]

  def table_exists(self, metric_name: str) -> bool:
    return metric_name in self._tables or self.has_table(metric_name)

  def list_tables(self) -> list[str]:
    """Metric table names in this window (request tables excluded)."""
    with self._lock:
      self._check_live()
      try:
        names = inspect(self._conn).get_table_names()
      except SQLAlchemyError as e:
        raise StoreIOError(f'Failed to list tables of {self.db_path}: {e}') from e
    return sorted(name for name in names if not name.startswith(REQUEST_TABLE_PREFIX))

  def read_raw(self, metric_name: str) -> list[dict[str, Any]]:
    """All rows of a metric table, unmodified.

    Raises:
        InvalidArgumentError: If the metric has no table in this window
    """
    table = self.get_table(metric_name)
    if table is None:
      raise InvalidArgumentError(f'No table for metric {metric_name} in window {self.window_start}')
    return self.fetch(select(table))

  # ------------------------------------------------------------------
  # Window lifecycle
  # ------------------------------------------------------------------

  def commit(self) -> int:
    """Flush every buffered writer and commit the window transaction.

    Any failure rolls back the whole transaction; nothing written since the
    previous commit stays visible.

    Returns:
        Number of buffered rows flushed

    Raises:
        StoreIOError: If the backend fails
    """
    with self._lock:
      self._check_writable()
      start = time.perf_counter()
      flushed = 0
      try:
        for writer in self._writers:
          flushed += writer.execute()
        self._conn.commit()
      except SQLAlchemyError as e:
        self._abort()
        raise StoreIOError(f'Failed to commit window {self.window_start}: {e}') from e
      duration = time.perf_counter() - start

    record_commit_duration(duration)
    logger.debug(
      f'Committed window {self.window_start}',
      extra={'rows': flushed, 'duration_ms': round(duration * 1000, 3)},
    )
    return flushed

  def close(self) -> None:
    """Commit and seal the window; later writes raise WindowClosedError."""
    with self._lock:
      if self._closed:
        return
      self.commit()
      self._closed = True
      self._writers.clear()

  def retire(self) -> None:
    """Close the store handle and delete the window file.

    Raises:
        StoreRetiredError: If the store was already retired
        StoreIOError: If the file cannot be deleted
    """
    with self._lock:
      if self._retired:
        raise StoreRetiredError(f'Window store {self.db_path} already retired')
      self._retired = True
      try:
        self._conn.close()
      finally:
        self._engine.dispose()

    try:
      os.remove(self.db_path)
    except OSError as e:
      logger.error(f'Failed to delete window store {self.db_path}', exc_info=True)
      raise StoreIOError(f'Failed to delete window store {self.db_path}: {e}') from e
    logger.info(f'Retired window {self.window_start}', extra={'db_path': self.db_path})

  def release(self) -> None:
    """Close the store handle, leaving the window file on disk."""
    with self._lock:
      if self._retired:
        return
      self._retired = True
      try:
        self._conn.close()
      finally:
        self._engine.dispose()

  # ------------------------------------------------------------------
  # Relational primitives
  # ------------------------------------------------------------------

  def has_table(self, name: str) -> bool:
    with self._lock:
      self._check_live()
      try:
        return inspect(self._conn).has_table(name)
      except SQLAlchemyError as e:
        raise StoreIOError(f'Failed to look up table {name}: {e}') from e

  def create_table(self, table: Table, kind: str = 'metric') -> None:
    with self._lock:
      self._check_writable()
      try:
        table.create(self._conn)
      except SQLAlchemyError as e:
        raise StoreIOError(f'Failed to create table {table.name}: {e}') from e
    record_table_created(kind)
    logger.debug(f'Created table {table.name}', extra={'table': table.name})

  def insert_rows(
    self, table: Table, rows: Iterable[Mapping[str, Any]], kind: str = 'metric'
  ) -> int:
    """Insert rows into the open window transaction.

    A backend failure aborts the whole transaction.
    """
    rows = [dict(row) for row in rows]
    if not rows:
      return 0
    with self._lock:
      self._check_writable()
      try:
        self._conn.execute(table.insert(), rows)
      except SQLAlchemyError as e:
        self._abort()
        raise StoreIOError(f'Failed to insert into {table.name}: {e}') from e
    record_rows_written(kind, len(rows))
    return len(rows)

  def batch_writer(self, table: Table, kind: str = 'metric') -> BatchWriter:
    """Register a writer whose rows are flushed on commit()."""
    with self._lock:
      self._check_writable()
      writer = BatchWriter(self, table, kind)
      self._writers.append(writer)
      return writer

  def fetch(self, statement) -> list[dict[str, Any]]:
    """Run a select and return its rows as dicts."""
    with self._lock:
      self._check_live()
      try:
        result = self._conn.execute(statement)
        return [dict(row._mapping) for row in result]
      except SQLAlchemyError as e:
        raise StoreIOError(f'Query failed on window {self.window_start}: {e}') from e

  def drop_table(self, table: Table) -> None:
    """Drop a table from a sealed window.

    Raises:
        WindowOpenError: If the window still has uncommitted writes
    """
    with self._lock:
      self._check_live()
      if not self._closed:
        raise WindowOpenError(
          f'Cannot drop {table.name} while window {self.window_start} is open'
        )
      try:
        table.drop(self._conn)
        self._conn.commit()
      except SQLAlchemyError as e:
        raise StoreIOError(f'Failed to drop table {table.name}: {e}') from e
    logger.info(f'Dropped table {table.name}', extra={'table': table.name})

  # ------------------------------------------------------------------
  # Internals
  # ------------------------------------------------------------------

  def _describe(self, metric_name, dimension_names, value_type) -> MetricDescriptor:
    if isinstance(dimension_names, str):
      raise InvalidArgumentError('dimension_names must be a sequence of names, not a string')
    if isinstance(metric_name, str) and metric_name.startswith(REQUEST_TABLE_PREFIX):
      raise InvalidArgumentError(f"Metric names may not start with '{REQUEST_TABLE_PREFIX}'")
    try:
      return MetricDescriptor(
        name=metric_name,
        dimensions=tuple(dimension_names),
        value_type=ValueType(value_type),
      )
    except ValueError as e:
      raise InvalidArgumentError(f'Invalid table definition for {metric_name}: {e}') from e

  def _reflect(self, metric_name: str) -> None:
    """Load the descriptor of a table created by an earlier handle on this file."""
    if not self.has_table(metric_name):
      return
    try:
      table = Table(metric_name, self._metadata, autoload_with=self._conn)
    except SQLAlchemyError as e:
      raise StoreIOError(f'Failed to reflect table {metric_name}: {e}') from e

    names = [column.name for column in table.columns]
    if tuple(names[-len(AGGREGATE_COLUMNS):]) != AGGREGATE_COLUMNS:
      raise SchemaError(f'Table {metric_name} is not a metric table: columns {names}')
    sum_type = table.c[AGGREGATE_COLUMNS[0]].type
    value_type = ValueType.LONG if isinstance(sum_type, Integer) else ValueType.DOUBLE
    self._descriptors[metric_name] = MetricDescriptor(
      name=metric_name,
      dimensions=tuple(names[: -len(AGGREGATE_COLUMNS)]),
      value_type=value_type,
    )
    self._tables[metric_name] = table

  def _abort(self) -> None:
    """Roll back the window transaction and forget everything it created."""
    try:
      self._conn.rollback()
    except SQLAlchemyError:
      logger.error(f'Rollback failed on window {self.window_start}', exc_info=True)
    for writer in self._writers:
      writer.discard()
    # Tables created inside the aborted transaction are gone; re-read from disk on demand
    self._descriptors.clear()
    self._tables.clear()
    self._metadata = MetaData()

  def _check_live(self) -> None:
    if self._retired:
      raise StoreRetiredError(f'Window store {self.db_path} has been retired or released')

  def _check_writable(self) -> None:
    self._check_live()
    if self._closed:
      raise WindowClosedError(f'Window {self.window_start} is closed for writes')
