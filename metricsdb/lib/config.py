"""Settings for window stores, read from environment variables.

Environment variables:
    METRICS_DB_FILE_PREFIX: Path prefix of window files (default: /tmp/metricsdb_)
    METRICS_WINDOW_MS: Window size in milliseconds (default: 5000)
    METRICS_RETAINED_WINDOWS: Closed windows kept readable (default: 2)
    LOG_LEVEL: Log level for the metricsdb logger (default: INFO)
"""

import os

from pydantic import BaseModel, Field, ValidationError

from metricsdb.lib.errors import InvalidArgumentError

DEFAULT_DB_FILE_PREFIX = '/tmp/metricsdb_'


class Settings(BaseModel):
  """Window store configuration."""

  db_file_prefix: str = Field(default=DEFAULT_DB_FILE_PREFIX, min_length=1)
  window_ms: int = Field(default=5000, gt=0)
  retained_windows: int = Field(default=2, ge=1)
  log_level: str = Field(default='INFO')

  @classmethod
  def from_env(cls) -> 'Settings':
    """Build settings from environment variables.

    Raises:
        InvalidArgumentError: If a variable holds an invalid value
    """
    env_map = {
      'db_file_prefix': 'METRICS_DB_FILE_PREFIX',
      'window_ms': 'METRICS_WINDOW_MS',
      'retained_windows': 'METRICS_RETAINED_WINDOWS',
      'log_level': 'LOG_LEVEL',
    }
    values = {field: os.getenv(var) for field, var in env_map.items() if os.getenv(var)}
    try:
      return cls(**values)
    except ValidationError as e:
      bad = ', '.join(env_map[str(err['loc'][0])] for err in e.errors())
      raise InvalidArgumentError(f'Invalid configuration in {bad}: {e}') from e


# Global settings instance (lazy-initialized)
_settings: Settings | None = None


def get_settings() -> Settings:
  """Get or create the process-wide settings."""
  global _settings
  if _settings is None:
    _settings = Settings.from_env()
  return _settings


def reset_settings() -> None:
  """Drop the cached settings so the environment is read again."""
  global _settings
  _settings = None
