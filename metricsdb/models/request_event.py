"""Request Event Models

Start and end events of customer-initiated operations (bulk, search, ...)
are stored one row per event and paired at read time by request id.

Raw event table:
    |rid    |operation|indices |status|exception|itemCount|           st|           et|
    +-------+---------+--------+------+---------+---------+-------------+-------------+
    |1418424|search   |{null}  |200   |         |   {null}|       {null}|1535065341025|
    |1418424|search   |sonested|{null}|{null}   |        0|1535065340730|       {null}|

Paired row:
    |1418424|search   |sonested|200   |         |        0|1535065340730|1535065341025|
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class RequestField(str, Enum):
  """Column names of the request tables (persisted format)."""

  RID = 'rid'
  OPERATION = 'operation'
  INDICES = 'indices'
  STATUS = 'status'
  EXCEPTION = 'exception'
  ITEM_COUNT = 'itemCount'
  ST = 'st'
  ET = 'et'
  LAT = 'lat'
  COUNT = 'count'


# Event table columns, in table order
EVENT_COLUMNS = tuple(
  f.value
  for f in (
    RequestField.RID,
    RequestField.OPERATION,
    RequestField.INDICES,
    RequestField.STATUS,
    RequestField.EXCEPTION,
    RequestField.ITEM_COUNT,
    RequestField.ST,
    RequestField.ET,
  )
)

# Dimension keys accepted by record_start/record_end
EVENT_DIMENSIONS = frozenset(
  {
    RequestField.OPERATION.value,
    RequestField.INDICES.value,
    RequestField.STATUS.value,
    RequestField.EXCEPTION.value,
  }
)

# Grouping key of the per-operation latency rollup
OPERATION_KEY = (
  RequestField.OPERATION.value,
  RequestField.STATUS.value,
  RequestField.INDICES.value,
  RequestField.EXCEPTION.value,
)


class RequestState(str, Enum):
  """Lifecycle state of a request id, derived from its paired row."""

  UNSEEN = 'unseen'
  STARTED = 'started'
  COMPLETED = 'completed'
  IN_FLIGHT = 'in_flight'
  EXPIRED = 'expired'


def classify_request(
  st: int | None, et: int | None, window_start: int, expire_after: int
) -> RequestState:
  """Derive the lifecycle state of one paired request.

  A request with only a start time is STARTED when it began in this window,
  IN_FLIGHT when it was carried over from an earlier one, and EXPIRED once
  its start is at or before window_start - expire_after.

  Args:
      st: Start time, or None if no start event was seen
      et: End time, or None if no end event was seen
      window_start: Start of the window holding the request
      expire_after: Expiry bound in milliseconds

  Returns:
      The request's state
  """
  if st is None:
    return RequestState.UNSEEN
  if et is not None:
    return RequestState.COMPLETED
  if st <= window_start - expire_after:
    return RequestState.EXPIRED
  if st >= window_start:
    return RequestState.STARTED
  return RequestState.IN_FLIGHT


class PairedRequest(BaseModel):
  """One request id with its start and end events merged."""

  model_config = ConfigDict(populate_by_name=True)

  rid: str = Field(..., description='Request id')
  operation: str = Field(..., description='Operation type (search, bulk, ...)')
  indices: str | None = None
  status: str | None = None
  exception: str | None = None
  item_count: int | None = Field(default=None, alias='itemCount')
  st: int | None = Field(default=None, description='Start time (epoch ms)')
  et: int | None = Field(default=None, description='End time (epoch ms)')
  state: RequestState = Field(default=RequestState.UNSEEN)

  def to_event_row(self) -> dict:
    """Event-table row carrying this request's observed columns."""
    return self.model_dump(by_alias=True, exclude={'state'})


class LatencyRecord(PairedRequest):
  """Completed request with its latency (et - st)."""

  lat: int = Field(..., description='Latency in milliseconds')


class OperationLatency(BaseModel):
  """Latency and item-count statistics for one operation key."""

  model_config = ConfigDict(populate_by_name=True)

  operation: str
  status: str | None = None
  indices: str | None = None
  exception: str | None = None
  sum_item_count: int | None = Field(default=None, alias='sum_itemCount')
  avg_item_count: float | None = Field(default=None, alias='avg_itemCount')
  min_item_count: int | None = Field(default=None, alias='min_itemCount')
  max_item_count: int | None = Field(default=None, alias='max_itemCount')
  sum_lat: int | None = None
  avg_lat: float | None = None
  min_lat: int | None = None
  max_lat: int | None = None
  count: int = Field(..., ge=1, description='Completed requests in this group')
