"""Window context for log records.

Keeps the start time of the window currently being written in a context
variable so every log line can be tied back to its window file.
"""

import contextvars

# Context variable for the active window start (epoch millis as string)
window_start: contextvars.ContextVar[str] = contextvars.ContextVar(
  'window_start', default='no-window'
)


def get_window_id() -> str:
  """Retrieve the active window start.

  Returns:
      Active window start or 'no-window' if not set
  """
  return window_start.get()


def set_window_id(start: int) -> None:
  """Set the active window for the current context.

  Args:
      start: Window start time in epoch milliseconds
  """
  window_start.set(str(start))


def reset_window_id() -> None:
  """Reset the active window to the default value.

  Useful for testing or after the last window is retired.
  """
  window_start.set('no-window')
