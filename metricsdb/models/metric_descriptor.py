"""Metric Table Descriptor Model

Describes the fixed column set of one per-metric table: the dimension
columns followed by the four pre-reduced aggregate columns.

Example (cpu table):
    |index   |shard|role|sum|avg|min|max|
    +--------+-----+----+---+---+---+---+
    |sonested|    1| N/A|  5|2.5|  2|  3|
"""

from enum import Enum

from pydantic import BaseModel, Field, field_validator
from sqlalchemy import BigInteger, Column, Float, MetaData, String, Table

from metricsdb.lib.errors import UnknownAggregationError


class AggregationKind(str, Enum):
  """Aggregate value columns of a metric table."""

  SUM = 'sum'
  AVG = 'avg'
  MIN = 'min'
  MAX = 'max'

  @classmethod
  def parse(cls, value: 'str | AggregationKind') -> 'AggregationKind':
    """Resolve an aggregation kind, case-insensitively.

    Raises:
        UnknownAggregationError: If the value is not sum/avg/min/max
    """
    if isinstance(value, cls):
      return value
    try:
      return cls(str(value).lower())
    except ValueError:
      raise UnknownAggregationError(
        f"Unknown aggregation kind '{value}', expected one of: sum, avg, min, max"
      ) from None


# Column order of the aggregate columns in every metric table
AGGREGATE_COLUMNS = tuple(kind.value for kind in AggregationKind)


class ValueType(str, Enum):
  """Storage type of a metric's aggregate columns."""

  DOUBLE = 'double'
  LONG = 'long'

  def sql_type(self):
    return Float() if self is ValueType.DOUBLE else BigInteger()


class MetricDescriptor(BaseModel):
  """Column set of one metric table.

  Attributes:
      name: Metric name, also the table name
      dimensions: Ordered dimension column names
      value_type: Storage type of sum/avg/min/max
  """

  name: str = Field(..., min_length=1, description='Metric (table) name')
  dimensions: tuple[str, ...] = Field(default=(), description='Ordered dimension columns')
  value_type: ValueType = Field(default=ValueType.DOUBLE)

  model_config = {'frozen': True}

  @field_validator('dimensions')
  @classmethod
  def validate_dimensions(cls, v: tuple[str, ...]) -> tuple[str, ...]:
    """Reject empty, duplicate, or reserved dimension names."""
    if any(not dim for dim in v):
      raise ValueError('Dimension names must be non-empty')
    if len(set(v)) != len(v):
      raise ValueError(f'Duplicate dimension names: {list(v)}')
    reserved = set(v) & set(AGGREGATE_COLUMNS)
    if reserved:
      raise ValueError(f'Dimension names collide with aggregate columns: {sorted(reserved)}')
    return v

  @property
  def columns(self) -> tuple[str, ...]:
    return self.dimensions + AGGREGATE_COLUMNS

  def build_table(self, metadata: MetaData) -> Table:
    """Build the SQLAlchemy table for this descriptor."""
    columns = [Column(dim, String) for dim in self.dimensions]
    columns += [Column(agg, self.value_type.sql_type()) for agg in AGGREGATE_COLUMNS]
    return Table(self.name, metadata, *columns)
