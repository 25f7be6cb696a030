"""Dense Table Pydantic Model

Result of a cross-metric aggregation: one row per distinct dimension tuple
and one column per requested metric, NULL where a metric has no data for
that tuple.
"""

from typing import Any

from pydantic import BaseModel, Field


class DenseTable(BaseModel):
  """Aggregated view over several metric tables.

  Attributes:
      dimensions: Grouping dimension names, in request order
      metrics: Metric column names, in request order
      rows: One dict per dimension tuple (dimension and metric columns)
  """

  dimensions: list[str] = Field(..., description='Grouping dimensions')
  metrics: list[str] = Field(..., min_length=1, description='Metric columns')
  rows: list[dict[str, Any]] = Field(default=[], description='Dense rows')

  def find(self, **dimension_values: Any) -> dict[str, Any] | None:
    """Return the row matching the given dimension values, if any."""
    for row in self.rows:
      if all(row.get(dim) == value for dim, value in dimension_values.items()):
        return row
    return None

  def column(self, metric: str) -> list[Any]:
    return [row[metric] for row in self.rows]
