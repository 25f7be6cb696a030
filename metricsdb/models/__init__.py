"""Models package for window store descriptors and row models."""

from metricsdb.models.dense_table import DenseTable
from metricsdb.models.metric_descriptor import AggregationKind, MetricDescriptor, ValueType
from metricsdb.models.request_event import (
  LatencyRecord,
  OperationLatency,
  PairedRequest,
  RequestField,
  RequestState,
)

__all__ = [
  'AggregationKind',
  'DenseTable',
  'LatencyRecord',
  'MetricDescriptor',
  'OperationLatency',
  'PairedRequest',
  'RequestField',
  'RequestState',
  'ValueType',
]
