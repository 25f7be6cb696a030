"""Request correlation over start/end events of customer operations.

Every start and end event is appended as its own row; nothing is updated in
place. A request is reconstructed at read time by grouping on the request id
and taking max() of every other column, since a start row and an end row of
the same request carry disjoint non-null columns.

Requests still running at the end of a window are carried into the next
window's table by rollover(). Requests that started more than
EXPIRE_AFTER_MS before the window start are dropped instead, which bounds
the table size.
"""

import logging
from typing import Any, Mapping

from sqlalchemy import BigInteger, Column, MetaData, String, Table, func, select

from metricsdb.lib.errors import InvalidArgumentError, StoreRetiredError, WindowNotFoundError
from metricsdb.lib.metrics import record_rollover
from metricsdb.models.request_event import (
  EVENT_COLUMNS,
  EVENT_DIMENSIONS,
  OPERATION_KEY,
  LatencyRecord,
  OperationLatency,
  PairedRequest,
  RequestField,
  RequestState,
  classify_request,
)
from metricsdb.services.metric_table_store import (
  REQUEST_TABLE_PREFIX,
  BatchWriter,
  MetricTableStore,
)

logger = logging.getLogger(__name__)

# Started requests older than this (relative to the window start) are dropped at rollover
EXPIRE_AFTER_MS = 600_000

RID = RequestField.RID.value
OPERATION = RequestField.OPERATION.value
ITEM_COUNT = RequestField.ITEM_COUNT.value
ST = RequestField.ST.value
ET = RequestField.ET.value
LAT = RequestField.LAT.value


def build_request_table(metadata: MetaData, name: str) -> Table:
  """Event table: one row per start or end event."""
  return Table(
    name,
    metadata,
    Column(RID, String, nullable=False),
    Column(OPERATION, String, nullable=False),
    Column(RequestField.INDICES.value, String),
    Column(RequestField.STATUS.value, String),
    Column(RequestField.EXCEPTION.value, String),
    Column(ITEM_COUNT, BigInteger),
    Column(ST, BigInteger),
    Column(ET, BigInteger),
  )


class RequestCorrelationStore:
  """Request event table of one window, stored in the window's file."""

  def __init__(self, store: MetricTableStore, create: bool = True):
    """Attach to (or create) the request table of the store's window.

    Args:
        store: Store of the window owning the table
        create: Create the table if missing; False only attaches

    Raises:
        WindowNotFoundError: If create is False and the table is missing
    """
    self._store = store
    self.window_start = store.window_start
    self.expire_after = EXPIRE_AFTER_MS
    self.table_name = f'{REQUEST_TABLE_PREFIX}{store.window_start}'
    self._table = build_request_table(MetaData(), self.table_name)
    self._retired = False

    if not store.has_table(self.table_name):
      if not create:
        raise WindowNotFoundError(f'No request table {self.table_name} in {store.db_path}')
      store.create_table(self._table, kind='request')

  def __repr__(self) -> str:
    return f'<RequestCorrelationStore(table={self.table_name!r})>'

  @property
  def is_retired(self) -> bool:
    return self._retired

  @property
  def expiry_threshold(self) -> int:
    """Started requests at or before this time are expired."""
    return self.window_start - self.expire_after

  # ------------------------------------------------------------------
  # Writes
  # ------------------------------------------------------------------

  def record_start(
    self,
    request_id: str,
    start_time: int,
    item_count: int | None,
    dimensions: Mapping[str, Any],
  ) -> None:
    """Append a start event.

    Args:
        request_id: Caller-supplied request id
        start_time: Start time in epoch milliseconds
        item_count: Items in the request (documents in a bulk, ...)
        dimensions: operation (required), indices, status, exception
    """
    row = self._event_row(request_id, dimensions)
    row[ST] = start_time
    row[ITEM_COUNT] = item_count
    self._insert([row])

  def record_end(self, request_id: str, end_time: int, dimensions: Mapping[str, Any]) -> None:
    """Append an end event.

    Args:
        request_id: Request id given to the matching record_start
        end_time: End time in epoch milliseconds
        dimensions: operation (required), indices, status, exception
    """
    row = self._event_row(request_id, dimensions)
    row[ET] = end_time
    self._insert([row])

  def open_batch_writer(self) -> BatchWriter:
    """Writer for raw event rows, in table column order."""
    self._check_live()
    return self._store.batch_writer(self._table, kind='request')

  # ------------------------------------------------------------------
  # Reads
  # ------------------------------------------------------------------

  def read_raw(self) -> list[dict[str, Any]]:
    self._check_live()
    return self._store.fetch(select(self._table))

  def paired_requests(self) -> list[PairedRequest]:
    """One row per request id, start and end events merged.

    Raw events:
        |rid    |operation|indices |status|exception|itemCount|           st|           et|
        +-------+---------+--------+------+---------+---------+-------------+-------------+
        |1417935|search   |        |{null}|{null}   |        0|1535065254939|       {null}|
        |1418424|search   |{null}  |200   |         |   {null}|       {null}|1535065341025|
        |1418424|search   |sonested|{null}|{null}   |        0|1535065340730|       {null}|

    Paired:
        |1417935|search   |        |{null}|{null}   |        0|1535065254939|       {null}|
        |1418424|search   |sonested|200   |         |        0|1535065340730|1535065341025|
    """
    self._check_live()
    paired = self._paired_select().subquery('paired')
    rows = self._store.fetch(select(paired).order_by(paired.c[RID]))
    return [self._to_paired(row) for row in rows]

  def latency_table(self) -> list[LatencyRecord]:
    """Paired requests with both a start and an end, with lat = et - st."""
    self._check_live()
    latency = self._latency_select().subquery('latency')
    rows = self._store.fetch(select(latency).order_by(latency.c[RID]))
    return [LatencyRecord(**row, state=RequestState.COMPLETED) for row in rows]

  def latency_by_operation(self) -> list[OperationLatency]:
    """Latency and item-count statistics per (operation, status, indices, exception).

    Only one row per operation type is handed downstream instead of one
    row per request.

        |operation|indices |status|exception|sum_lat|avg_lat|min_lat|max_lat|count|
        +---------+--------+------+---------+-------+-------+-------+-------+-----+
        |search   |sonested|200   |         |    600|    300|    295|    305|    2|
    """
    self._check_live()
    latency = self._latency_select().subquery('latency')
    key_columns = [latency.c[key] for key in OPERATION_KEY]
    item_count = latency.c[ITEM_COUNT]
    lat = latency.c[LAT]
    stmt = (
      select(
        *key_columns,
        func.sum(item_count).label(f'sum_{ITEM_COUNT}'),
        func.avg(item_count).label(f'avg_{ITEM_COUNT}'),
        func.min(item_count).label(f'min_{ITEM_COUNT}'),
        func.max(item_count).label(f'max_{ITEM_COUNT}'),
        func.sum(lat).label(f'sum_{LAT}'),
        func.avg(lat).label(f'avg_{LAT}'),
        func.min(lat).label(f'min_{LAT}'),
        func.max(lat).label(f'max_{LAT}'),
        func.count().label(RequestField.COUNT.value),
      )
      .group_by(*key_columns)
      .order_by(*key_columns)
    )
    return [OperationLatency(**row) for row in self._store.fetch(stmt)]

  def in_flight_requests(self) -> list[PairedRequest]:
    """Started, not ended, and started after the expiry threshold."""
    self._check_live()
    paired = self._paired_select().subquery('paired')
    stmt = (
      select(paired)
      .where(
        paired.c[ST].is_not(None),
        paired.c[ET].is_(None),
        paired.c[ST] > self.expiry_threshold,
      )
      .order_by(paired.c[RID])
    )
    return [self._to_paired(row) for row in self._store.fetch(stmt)]

  def expired_requests(self) -> list[PairedRequest]:
    """Started, not ended, and too old to be carried into the next window."""
    self._check_live()
    paired = self._paired_select().subquery('paired')
    stmt = (
      select(paired)
      .where(
        paired.c[ST].is_not(None),
        paired.c[ET].is_(None),
        paired.c[ST] <= self.expiry_threshold,
      )
      .order_by(paired.c[RID])
    )
    return [self._to_paired(row) for row in self._store.fetch(stmt)]

  # ------------------------------------------------------------------
  # Window lifecycle
  # ------------------------------------------------------------------

  def rollover(self, previous: 'RequestCorrelationStore') -> int:
    """Copy the previous window's in-flight requests into this table.

    Must run before the previous window is retired. Expired requests are
    not copied and are counted in metricsdb_inflight_requests_expired_total.

    Returns:
        Number of requests carried over

    Raises:
        InvalidArgumentError: If previous is not an earlier window
        StoreRetiredError: If previous has already been retired
    """
    if previous is self or previous.window_start >= self.window_start:
      raise InvalidArgumentError(
        f'Cannot roll window {previous.window_start} into window {self.window_start}'
      )
    self._check_live()

    in_flight = previous.in_flight_requests()
    expired = previous.expired_requests()
    self._insert([request.to_event_row() for request in in_flight])

    record_rollover(len(in_flight), len(expired))
    if expired:
      logger.info(
        f'Dropped {len(expired)} expired in-flight requests from window {previous.window_start}',
        extra={'count': len(expired), 'table': previous.table_name},
      )
    logger.info(
      f'Rolled {len(in_flight)} in-flight requests from window {previous.window_start} '
      f'into window {self.window_start}',
      extra={'count': len(in_flight), 'table': self.table_name},
    )
    return len(in_flight)

  def retire(self) -> None:
    """Drop this window's request table once the window is closed.

    Raises:
        StoreRetiredError: If the table was already dropped
        WindowOpenError: If the window still has uncommitted writes
    """
    self._check_live()
    self._store.drop_table(self._table)
    self._retired = True

  # ------------------------------------------------------------------
  # Internals
  # ------------------------------------------------------------------

  def _paired_select(self):
    t = self._table
    merged = [func.max(t.c[column]).label(column) for column in EVENT_COLUMNS if column != RID]
    return select(t.c[RID], *merged).group_by(t.c[RID])

  def _latency_select(self):
    paired = self._paired_select().subquery('paired')
    return select(paired, (paired.c[ET] - paired.c[ST]).label(LAT)).where(
      paired.c[ET].is_not(None), paired.c[ST].is_not(None)
    )

  def _to_paired(self, row: Mapping[str, Any]) -> PairedRequest:
    state = classify_request(row[ST], row[ET], self.window_start, self.expire_after)
    return PairedRequest(**row, state=state)

  def _event_row(self, request_id: str, dimensions: Mapping[str, Any]) -> dict[str, Any]:
    unknown = set(dimensions) - EVENT_DIMENSIONS
    if unknown:
      raise InvalidArgumentError(
        f'Unknown request dimensions {sorted(unknown)}, permitted: {sorted(EVENT_DIMENSIONS)}'
      )
    if request_id is None or str(request_id) == '':
      raise InvalidArgumentError('request_id is required')
    if not dimensions.get(OPERATION):
      raise InvalidArgumentError(f"Dimension '{OPERATION}' is required")

    row = dict.fromkeys(EVENT_COLUMNS)
    row[RID] = str(request_id)
    for key, value in dimensions.items():
      row[key] = None if value is None else str(value)
    return row

  def _insert(self, rows: list[dict[str, Any]]) -> None:
    self._check_live()
    self._store.insert_rows(self._table, rows, kind='request')

  def _check_live(self) -> None:
    if self._retired:
      raise StoreRetiredError(f'Request table {self.table_name} has been dropped')
