"""Error taxonomy for window stores.

Validation errors (schema, arity, aggregation kind, arguments) are raised
before any state changes. Backend failures surface as StoreIOError chained
to the SQLAlchemy error that caused them; nothing here is retried.
"""


class MetricsDBError(Exception):
  """Base class for all window store errors."""

  pass


class SchemaError(MetricsDBError):
  """Raised when a table already exists with an incompatible column set."""

  pass


class ArityError(MetricsDBError):
  """Raised when a batched row's value count doesn't match the table."""

  pass


class UnknownAggregationError(MetricsDBError):
  """Raised for an aggregation kind outside sum/avg/min/max."""

  pass


class InvalidArgumentError(MetricsDBError, ValueError):
  """Raised for malformed calls (empty metric list, mismatched lengths, unknown keys)."""

  pass


class StoreIOError(MetricsDBError):
  """Raised when the backend fails on create/insert/select/drop."""

  pass


class StoreRetiredError(StoreIOError):
  """Raised when a retired store or table is used again."""

  pass


class WindowClosedError(MetricsDBError):
  """Raised when writing to a window that has been committed and sealed."""

  pass


class WindowOpenError(MetricsDBError):
  """Raised when a window is read or dropped before it has been committed and sealed."""

  pass


class WindowNotFoundError(MetricsDBError, LookupError):
  """Raised when a window (or its request table) does not exist."""

  pass
