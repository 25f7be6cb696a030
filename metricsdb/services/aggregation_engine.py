"""Cross-metric aggregation over a window's per-metric tables.

Each metric lives in its own table, so producing one row per dimension tuple
with a column per metric takes three steps.

1. Aggregate every metric table by the requested dimensions:

    |shard|index   |  cpu|        |shard|index   |  rss|
    +-----+--------+-----+        +-----+--------+-----+
    |0    |sonested|   10|        |0    |sonested|   54|
    |1    |sonested|   20|        |2    |sonested|   47|

2. Union them into one sparse table, NULL for the other metrics' columns:

    |shard|index   |  cpu|  rss|
    +-----+--------+-----+-----+
    |0    |sonested|   10| null|
    |1    |sonested|   20| null|
    |0    |sonested| null|   54|
    |2    |sonested| null|   47|

3. Group by the dimensions taking max() of every metric column. Each metric
   has at most one non-null value per tuple, so max() recovers it:

    |shard|index   |  cpu|  rss|
    +-----+--------+-----+-----+
    |0    |sonested|   10|   54|
    |1    |sonested|   20| null|
    |2    |sonested| null|   47|
"""

import logging
from typing import Sequence

from sqlalchemy import Float, cast, func, null, select, union_all
from sqlalchemy.sql import Subquery

from metricsdb.lib.errors import InvalidArgumentError
from metricsdb.models.dense_table import DenseTable
from metricsdb.models.metric_descriptor import AggregationKind
from metricsdb.services.metric_table_store import MetricTableStore

logger = logging.getLogger(__name__)

AGGREGATE_FUNCTIONS = {
  AggregationKind.SUM: func.sum,
  AggregationKind.AVG: func.avg,
  AggregationKind.MIN: func.min,
  AggregationKind.MAX: func.max,
}


class AggregationEngine:
  """Builds dense multi-metric views from one window's metric tables."""

  def __init__(self, store: MetricTableStore):
    self._store = store

  def aggregate(
    self,
    metric_names: Sequence[str],
    aggregation_kinds: Sequence[str | AggregationKind],
    dimension_names: Sequence[str],
  ) -> DenseTable:
    """Aggregate several metrics into one dense table.

    Args:
        metric_names: Metrics to include, one output column each
        aggregation_kinds: Aggregate column re-aggregated per metric (sum/avg/min/max)
        dimension_names: Grouping dimensions

    Returns:
        One row per dimension tuple seen in any metric; NULL where a metric
        has no data for the tuple

    Raises:
        UnknownAggregationError: If a kind is not sum/avg/min/max
        InvalidArgumentError: For empty or mismatched lists, duplicates, or
            dimensions missing from a metric table
    """
    metrics, kinds, dims = self._validate(metric_names, aggregation_kinds, dimension_names)

    sub_tables = self.aggregated_metric_tables(metrics, kinds, dims)
    if not sub_tables:
      logger.debug(f'No tables for metrics {metrics} in window {self._store.window_start}')
      return DenseTable(dimensions=dims, metrics=metrics, rows=[])

    sparse = self._sparse_union(sub_tables, metrics, kinds, dims)
    dim_columns = [sparse.c[dim] for dim in dims]
    stmt = select(*dim_columns, *[func.max(sparse.c[metric]).label(metric) for metric in metrics])
    if dim_columns:
      stmt = stmt.group_by(*dim_columns).order_by(*dim_columns)

    return DenseTable(dimensions=dims, metrics=metrics, rows=self._store.fetch(stmt))

  def aggregated_metric_tables(
    self,
    metrics: list[str],
    kinds: list[AggregationKind],
    dims: list[str],
  ) -> dict[str, Subquery]:
    """Per-metric group-by sub-queries, keyed by metric.

    Metrics without a table in this window are left out.
    """
    tables = {}
    for metric in metrics:
      table = self._store.get_table(metric)
      if table is None:
        continue
      missing = [dim for dim in dims if dim not in table.c]
      if missing:
        raise InvalidArgumentError(
          f'Metric {metric} has no dimensions {missing}; its columns are {list(table.c.keys())}'
        )
      tables[metric] = table

    sub_tables = {}
    for i, (metric, kind) in enumerate(zip(metrics, kinds)):
      table = tables.get(metric)
      if table is None:
        continue
      group_columns = [table.c[dim] for dim in dims]
      stmt = select(*group_columns, AGGREGATE_FUNCTIONS[kind](table.c[kind.value]).label(metric))
      if group_columns:
        stmt = stmt.group_by(*group_columns)
      sub_tables[metric] = stmt.subquery(f'agg_{i}')
    return sub_tables

  def _sparse_union(
    self,
    sub_tables: dict[str, Subquery],
    metrics: list[str],
    kinds: list[AggregationKind],
    dims: list[str],
  ):
    # The first select fixes each column's result type, so NULLs carry the metric's type
    null_types = {metric: self._result_type(metric, kind) for metric, kind in zip(metrics, kinds)}
    selects = []
    for metric, sub in sub_tables.items():
      columns = [sub.c[dim] for dim in dims]
      for other in metrics:
        if other == metric:
          columns.append(sub.c[metric])
        else:
          columns.append(cast(null(), null_types[other]).label(other))
      selects.append(select(*columns))

    if len(selects) == 1:
      return selects[0].subquery('sparse')
    return union_all(*selects).subquery('sparse')

  def _result_type(self, metric: str, kind: AggregationKind):
    descriptor = self._store.descriptor(metric)
    if descriptor is None or kind is AggregationKind.AVG:
      return Float()
    return descriptor.value_type.sql_type()

  def _validate(self, metric_names, aggregation_kinds, dimension_names):
    for name, value in (
      ('metric_names', metric_names),
      ('aggregation_kinds', aggregation_kinds),
      ('dimension_names', dimension_names),
    ):
      if isinstance(value, str):
        raise InvalidArgumentError(f'{name} must be a sequence, not a string')

    metrics = list(metric_names)
    dims = list(dimension_names)
    if not metrics:
      raise InvalidArgumentError('At least one metric is required')
    if len(metrics) != len(aggregation_kinds):
      raise InvalidArgumentError(
        f'Got {len(metrics)} metrics but {len(aggregation_kinds)} aggregation kinds'
      )
    kinds = [AggregationKind.parse(kind) for kind in aggregation_kinds]

    if len(set(metrics)) != len(metrics):
      raise InvalidArgumentError(f'Duplicate metric names: {metrics}')
    if len(set(dims)) != len(dims):
      raise InvalidArgumentError(f'Duplicate dimension names: {dims}')
    clashing = set(metrics) & set(dims)
    if clashing:
      raise InvalidArgumentError(f'Metric names collide with dimensions: {sorted(clashing)}')
    return metrics, kinds, dims
