"""Window Store Database Module

Provides one SQLAlchemy engine per window file. Each window is a standalone
SQLite database named deterministically by its start time, so retiring a
window is a matter of closing its engine and deleting the file.
"""

import os

from sqlalchemy import Engine, create_engine, event

from metricsdb.lib.config import get_settings


def get_db_file_path(window_start: int, prefix: str | None = None) -> str:
  """Build the file path of a window store.

  Args:
      window_start: Window start time in epoch milliseconds
      prefix: Path prefix (defaults to METRICS_DB_FILE_PREFIX)

  Returns:
      Path such as /tmp/metricsdb_1535065340000
  """
  if prefix is None:
    prefix = get_settings().db_file_prefix
  return f'{prefix}{window_start}'


def create_window_engine(db_path: str) -> Engine:
  """Create SQLAlchemy engine for one window file.

  The engine is shared by the window's writer and by readers on worker
  threads; access to the connection is serialised by the store, so the
  sqlite3 same-thread check is disabled.

  Args:
      db_path: Path of the SQLite file (created on first connect)

  Returns:
      Configured SQLAlchemy engine
  """
  parent = os.path.dirname(db_path)
  if parent:
    os.makedirs(parent, exist_ok=True)

  engine = create_engine(
    f'sqlite:///{db_path}',
    connect_args={'check_same_thread': False},
    echo=False,  # Set to True for SQL query logging (debugging)
  )

  @event.listens_for(engine, 'connect')
  def set_sqlite_pragmas(dbapi_connection, connection_record):
    """Window files are short-lived; skip fsync on commit."""
    cursor = dbapi_connection.cursor()
    cursor.execute('PRAGMA synchronous=OFF')
    cursor.close()

  return engine
