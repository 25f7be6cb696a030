"""Window lifecycle: open, close, roll over, retire.

Consecutive windows are sequenced so that window N's in-flight requests are
copied into window N+1 before window N can be retired. Closed windows stay
readable (aggregation, export) until they fall out of the retention count.
"""

from collections import OrderedDict
from dataclasses import dataclass, field

from metricsdb.lib.config import Settings, get_settings
from metricsdb.lib.errors import InvalidArgumentError, WindowNotFoundError, WindowOpenError
from metricsdb.lib.metrics import record_window_retired, update_open_windows
from metricsdb.lib.structured_logger import StructuredLogger
from metricsdb.lib.window_context import reset_window_id, set_window_id
from metricsdb.services.aggregation_engine import AggregationEngine
from metricsdb.services.metric_table_store import MetricTableStore
from metricsdb.services.request_correlation_store import RequestCorrelationStore

logger = StructuredLogger(__name__)


@dataclass
class Window:
  """Stores of one time window."""

  start: int
  metrics: MetricTableStore
  requests: RequestCorrelationStore
  aggregator: AggregationEngine = field(init=False)

  def __post_init__(self):
    self.aggregator = AggregationEngine(self.metrics)

  @property
  def is_closed(self) -> bool:
    return self.metrics.is_closed


class WindowManager:
  """Holds the current window and the closed windows still readable."""

  def __init__(self, settings: Settings | None = None):
    self.settings = settings or get_settings()
    self._windows: OrderedDict[int, Window] = OrderedDict()
    self._current: Window | None = None

  @property
  def current(self) -> Window | None:
    return self._current

  def window_start_for(self, timestamp_ms: int) -> int:
    """Start of the window containing a timestamp."""
    return timestamp_ms - timestamp_ms % self.settings.window_ms

  def open_window(self, window_start: int) -> Window:
    """Close the current window and open the next one.

    In-flight requests of the current window are rolled into the new one
    before any window is retired.

    Raises:
        InvalidArgumentError: If window_start is not after the current window
    """
    previous = self._current
    if previous is not None and window_start <= previous.start:
      raise InvalidArgumentError(
        f'Window {window_start} does not follow current window {previous.start}'
      )
    if previous is not None:
      previous.metrics.close()

    metrics = MetricTableStore(window_start, self.settings.db_file_prefix)
    window = Window(start=window_start, metrics=metrics, requests=RequestCorrelationStore(metrics))
    self._windows[window_start] = window
    self._current = window
    set_window_id(window_start)
    logger.info(f'Opened window {window_start}', db_path=metrics.db_path)

    if previous is not None:
      window.requests.rollover(previous.requests)

    self._retire_expired_windows()
    update_open_windows(len(self._windows))
    return window

  def advance(self, timestamp_ms: int) -> Window:
    """Return the window for a timestamp, opening it if it is past the current one."""
    start = self.window_start_for(timestamp_ms)
    if self._current is None or start > self._current.start:
      return self.open_window(start)
    return self._current

  def close_window(self) -> Window | None:
    """Commit and seal the current window."""
    if self._current is not None:
      self._current.metrics.close()
    return self._current

  def get_window(self, window_start: int) -> Window:
    try:
      return self._windows[window_start]
    except KeyError:
      raise WindowNotFoundError(f'Window {window_start} is not held') from None

  def get_closed_window(self, window_start: int) -> Window:
    """Return a held window whose writes are committed.

    Raises:
        WindowNotFoundError: If the window is not held
        WindowOpenError: If the window is still being written
    """
    window = self.get_window(window_start)
    if not window.is_closed:
      raise WindowOpenError(f'Window {window_start} is still open; it is readable once closed')
    return window

  def windows(self) -> list[int]:
    """Held window starts, oldest first."""
    return list(self._windows)

  def shutdown(self) -> None:
    """Retire every held window."""
    while self._windows:
      _, window = self._windows.popitem(last=False)
      self._retire(window)
    self._current = None
    reset_window_id()
    update_open_windows(0)

  def _retire_expired_windows(self) -> None:
    """Retire the oldest closed windows beyond the retention count."""
    closed = [start for start, window in self._windows.items() if window.is_closed]
    for start in closed[: max(0, len(closed) - self.settings.retained_windows)]:
      self._retire(self._windows.pop(start))

  def _retire(self, window: Window) -> None:
    # Dropping the request table needs a sealed window
    window.metrics.close()
    if not window.requests.is_retired:
      window.requests.retire()
    window.metrics.retire()
    record_window_retired()
