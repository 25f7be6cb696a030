"""Window query endpoints.

Downstream consumers read committed windows here; nothing is written through
this API. Query parameters mirror the aggregation call, e.g.

    GET /api/v1/windows/1535065340000/metrics?metrics=cpu,rss&agg=sum,max&dim=index
"""

import logging
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from metricsdb.lib.errors import InvalidArgumentError
from metricsdb.models.dense_table import DenseTable
from metricsdb.models.request_event import OperationLatency, PairedRequest
from metricsdb.services.window_manager import WindowManager

logger = logging.getLogger(__name__)

router = APIRouter()


class WindowListResponse(BaseModel):
  """Windows currently held by the manager."""

  windows: List[int] = Field(..., description='Held window starts, oldest first')
  current: Optional[int] = Field(None, description='Start of the window being written')


class RawTableResponse(BaseModel):
  """Unmodified rows of one metric table."""

  metric: str
  window_start: int
  rows: List[dict[str, Any]]


def get_window_manager(request: Request) -> WindowManager:
  """Dependency returning the manager installed on the app."""
  return request.app.state.window_manager


def _split(value: Optional[str]) -> list[str]:
  if not value:
    return []
  return [part.strip() for part in value.split(',') if part.strip()]


@router.get('', response_model=WindowListResponse)
async def list_windows(manager: WindowManager = Depends(get_window_manager)):
  """List held windows."""
  current = manager.current
  return WindowListResponse(
    windows=manager.windows(), current=current.start if current is not None else None
  )


@router.get('/{start}/metrics', response_model=DenseTable)
async def aggregate_metrics(
  start: int,
  metrics: str = Query(..., description='Comma-separated metric names'),
  agg: str = Query(..., description='Comma-separated aggregation kinds, one per metric'),
  dim: Optional[str] = Query(None, description='Comma-separated grouping dimensions'),
  manager: WindowManager = Depends(get_window_manager),
):
  """Dense multi-metric view of one window.

  Args:
      start: Window start (epoch ms)
      metrics: Metric names, e.g. "cpu,rss"
      agg: Aggregation kinds, e.g. "sum,max"
      dim: Grouping dimensions, e.g. "index,shard"
      manager: Window manager (from dependency)

  Returns:
      DenseTable with one row per dimension tuple
  """
  metric_names = _split(metrics)
  if not metric_names:
    raise InvalidArgumentError('Query parameter metrics must name at least one metric')

  window = manager.get_closed_window(start)
  logger.info(f'Aggregating {metric_names} in window {start}')
  return window.aggregator.aggregate(metric_names, _split(agg), _split(dim))


@router.get('/{start}/tables/{metric}', response_model=RawTableResponse)
async def read_metric_table(
  start: int, metric: str, manager: WindowManager = Depends(get_window_manager)
):
  """Raw rows of one metric table."""
  window = manager.get_closed_window(start)
  return RawTableResponse(metric=metric, window_start=start, rows=window.metrics.read_raw(metric))


@router.get(
  '/{start}/requests/latency',
  response_model=List[OperationLatency],
  response_model_by_alias=True,
)
async def request_latency(start: int, manager: WindowManager = Depends(get_window_manager)):
  """Per-operation latency statistics of completed requests."""
  return manager.get_closed_window(start).requests.latency_by_operation()


@router.get(
  '/{start}/requests/in-flight',
  response_model=List[PairedRequest],
  response_model_by_alias=True,
)
async def in_flight_requests(start: int, manager: WindowManager = Depends(get_window_manager)):
  """Requests started but not yet ended, within the expiry bound."""
  return manager.get_closed_window(start).requests.in_flight_requests()
