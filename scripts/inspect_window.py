"""Window inspection tool.

Reads window files left on disk by the metrics layer without modifying them:

- tables WINDOW_START: list the metric tables of a window
- dump WINDOW_START METRIC: print the raw rows of one metric table
- aggregate WINDOW_START --metric cpu:sum --metric rss:max --dim index
- latency WINDOW_START: per-operation request latency

Exit codes: 0 success, 1 store failure or missing window, 2 invalid arguments.
"""

import sys
from contextlib import contextmanager
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from metricsdb.lib.errors import (
  InvalidArgumentError,
  MetricsDBError,
  UnknownAggregationError,
)
from metricsdb.services.aggregation_engine import AggregationEngine
from metricsdb.services.metric_table_store import MetricTableStore
from metricsdb.services.request_correlation_store import RequestCorrelationStore

console = Console()

EXIT_STORE_ERROR = 1
EXIT_INVALID_ARGUMENT = 2


def _load_env() -> None:
  env_path = Path.cwd() / '.env.local'
  if env_path.exists():
    load_dotenv(env_path)
  else:
    load_dotenv()


@contextmanager
def open_window(prefix: str | None, window_start: int):
  """Open an existing window store and release it on exit.

  Store errors end the command with exit code 1, argument errors with 2.
  """
  store = None
  try:
    store = MetricTableStore(window_start, prefix, create=False)
    yield store
  except (InvalidArgumentError, UnknownAggregationError) as e:
    console.print(f'[red]Invalid argument: {escape(str(e))}[/red]')
    sys.exit(EXIT_INVALID_ARGUMENT)
  except MetricsDBError as e:
    console.print(f'[red]Error reading window {window_start}: {escape(str(e))}[/red]')
    sys.exit(EXIT_STORE_ERROR)
  finally:
    if store is not None:
      store.release()


def parse_metric_option(value: str) -> tuple[str, str]:
  """Split a NAME:KIND option value."""
  name, sep, kind = value.rpartition(':')
  if not sep or not name or not kind:
    raise click.BadParameter(f'{value!r} is not NAME:KIND (e.g. cpu:sum)', param_hint='--metric')
  return name, kind


def render_rows(title: str, rows: list[dict], columns: list[str] | None = None) -> None:
  if not rows and not columns:
    console.print(f'[yellow]{title}: no rows[/yellow]')
    return
  columns = columns or list(rows[0])
  table = Table(title=title)
  for column in columns:
    table.add_column(column)
  for row in rows:
    values = [row.get(column) for column in columns]
    table.add_row(*['null' if value is None else str(value) for value in values])
  console.print(table)


@click.group()
@click.option(
  '--prefix',
  envvar='METRICS_DB_FILE_PREFIX',
  default=None,
  help='Path prefix of window files (from METRICS_DB_FILE_PREFIX)',
)
@click.pass_context
def cli(ctx, prefix):
  """Inspect metrics window stores."""
  ctx.ensure_object(dict)
  ctx.obj['prefix'] = prefix


@cli.command()
@click.argument('window_start', type=int)
@click.pass_context
def tables(ctx, window_start):
  """List the metric tables of a window."""
  with open_window(ctx.obj['prefix'], window_start) as store:
    names = store.list_tables()
    if not names:
      console.print(f'[yellow]Window {window_start} has no metric tables[/yellow]')
      return
    table = Table(title=f'Window {window_start}')
    table.add_column('metric')
    table.add_column('dimensions')
    table.add_column('type')
    for name in names:
      descriptor = store.descriptor(name)
      table.add_row(name, ', '.join(descriptor.dimensions), descriptor.value_type.value)
    console.print(table)


@cli.command()
@click.argument('window_start', type=int)
@click.argument('metric')
@click.pass_context
def dump(ctx, window_start, metric):
  """Print the raw rows of one metric table."""
  with open_window(ctx.obj['prefix'], window_start) as store:
    rows = store.read_raw(metric)
    render_rows(f'{metric} @ {window_start}', rows, list(store.descriptor(metric).columns))


@cli.command()
@click.argument('window_start', type=int)
@click.option(
  '--metric', 'metric_specs', multiple=True, required=True, help='NAME:KIND, repeatable'
)
@click.option('--dim', 'dims', multiple=True, help='Grouping dimension, repeatable')
@click.pass_context
def aggregate(ctx, window_start, metric_specs, dims):
  """Aggregate several metrics into one dense table."""
  specs = [parse_metric_option(spec) for spec in metric_specs]
  metrics = [name for name, _ in specs]
  kinds = [kind for _, kind in specs]
  with open_window(ctx.obj['prefix'], window_start) as store:
    dense = AggregationEngine(store).aggregate(metrics, kinds, list(dims))
    render_rows(f'Aggregate @ {window_start}', dense.rows, dense.dimensions + dense.metrics)


@cli.command()
@click.argument('window_start', type=int)
@click.pass_context
def latency(ctx, window_start):
  """Per-operation latency of completed requests."""
  with open_window(ctx.obj['prefix'], window_start) as store:
    requests = RequestCorrelationStore(store, create=False)
    rows = [row.model_dump(by_alias=True) for row in requests.latency_by_operation()]
    render_rows(f'Request latency @ {window_start}', rows)
    in_flight = requests.in_flight_requests()
    console.print(f'[dim]{len(in_flight)} requests in flight[/dim]')


def main():
  """Entry point for the window inspection CLI."""
  _load_env()
  cli(obj={})


if __name__ == '__main__':
  main()
