"""Unit tests for AggregationEngine.

The dense table is rebuilt from independently stored metric tables through a
sparse union and a max() collapse; these tests pin its output shape.
"""

import pytest

from metricsdb.lib.errors import InvalidArgumentError, UnknownAggregationError
from metricsdb.models.metric_descriptor import AggregationKind, ValueType
from metricsdb.services.aggregation_engine import AggregationEngine


@pytest.fixture
def engine(store):
  return AggregationEngine(store)


@pytest.fixture
def node_metrics(store):
  """cpu and rss per (index, shard), as a node would report them."""
  cpu = store.open_batch_writer('cpu', ['index', 'shard'])
  cpu.bind('sonested', '0', 10, 5, 4, 6)
  cpu.bind('sonested', '1', 20, 10, 8, 12)
  cpu.bind('nyc_taxis', '0', 7, 7, 7, 7)

  rss = store.open_batch_writer('rss', ['index', 'shard'])
  rss.bind('sonested', '0', 54, 27, 20, 34)
  rss.bind('sonested', '2', 47, 47, 47, 47)
  store.commit()
  return store


class TestSparseUnion:
  """Test suite for the union-then-max reconstruction."""

  def test_partial_coverage_yields_null(self, store, engine):
    store.write_single('A', {'d': '1'}, 10, 10, 10, 10)
    store.write_single('B', {'d': '1'}, 20, 20, 20, 20)
    store.write_single('B', {'d': '2'}, 30, 30, 30, 30)

    dense = engine.aggregate(['A', 'B'], ['sum', 'sum'], ['d'])

    assert dense.rows == [
      {'d': '1', 'A': 10, 'B': 20},
      {'d': '2', 'A': None, 'B': 30},
    ]

  def test_one_row_per_dimension_tuple(self, node_metrics, engine):
    dense = engine.aggregate(['cpu', 'rss'], ['sum', 'max'], ['index', 'shard'])

    assert dense.dimensions == ['index', 'shard']
    assert dense.metrics == ['cpu', 'rss']
    assert len(dense.rows) == 4
    assert dense.find(index='sonested', shard='0') == {
      'index': 'sonested',
      'shard': '0',
      'cpu': 10,
      'rss': 34,
    }
    assert dense.find(index='sonested', shard='1')['rss'] is None
    assert dense.find(index='sonested', shard='2')['cpu'] is None
    assert dense.find(index='nyc_taxis', shard='0') == {
      'index': 'nyc_taxis',
      'shard': '0',
      'cpu': 7,
      'rss': None,
    }

  def test_rows_ordered_by_dimensions(self, node_metrics, engine):
    dense = engine.aggregate(['cpu', 'rss'], ['sum', 'sum'], ['index', 'shard'])

    keys = [(row['index'], row['shard']) for row in dense.rows]
    assert keys == sorted(keys)

  def test_coarser_dimensions_reaggregate_rows(self, node_metrics, engine):
    dense = engine.aggregate(['cpu', 'rss'], ['sum', 'sum'], ['index'])

    assert dense.rows == [
      {'index': 'nyc_taxis', 'cpu': 7, 'rss': None},
      {'index': 'sonested', 'cpu': 30, 'rss': 101},
    ]

  @pytest.mark.parametrize(
    'kind, expected',
    [
      ('sum', 30),
      ('avg', 7.5),
      ('min', 4),
      ('max', 12),
    ],
  )
  def test_kind_selects_aggregate_column(self, node_metrics, engine, kind, expected):
    dense = engine.aggregate(['cpu'], [kind], ['index'])

    assert dense.find(index='sonested')['cpu'] == pytest.approx(expected)

  def test_kinds_case_insensitive(self, node_metrics, engine):
    upper = engine.aggregate(['cpu'], ['SUM'], ['index'])
    enum = engine.aggregate(['cpu'], [AggregationKind.SUM], ['index'])

    assert upper.rows == enum.rows

  def test_no_dimensions_collapses_to_single_row(self, node_metrics, engine):
    dense = engine.aggregate(['cpu', 'rss'], ['sum', 'max'], [])

    assert dense.rows == [{'cpu': 37, 'rss': 47}]

  def test_metric_without_table_is_null_column(self, node_metrics, engine):
    dense = engine.aggregate(['cpu', 'heap'], ['sum', 'sum'], ['index'])

    assert dense.column('heap') == [None, None]
    assert dense.column('cpu') == [7, 30]

  def test_no_tables_yields_empty_result(self, engine):
    dense = engine.aggregate(['cpu', 'rss'], ['sum', 'sum'], ['index'])

    assert dense.rows == []
    assert dense.metrics == ['cpu', 'rss']

  def test_long_metric_keeps_integer_values(self, store, engine):
    store.ensure_table('A', ['d'])
    store.ensure_table('B', ['d'], ValueType.LONG)
    store.write_single('A', {'d': '1'}, 1.5, 1.5, 1.5, 1.5)
    store.write_single('B', {'d': '2'}, 3, 3, 3, 3)
    store.commit()

    dense = engine.aggregate(['A', 'B'], ['sum', 'max'], ['d'])

    assert dense.find(d='2')['B'] == 3
    assert isinstance(dense.find(d='2')['B'], int)
    assert dense.find(d='1') == {'d': '1', 'A': 1.5, 'B': None}

  def test_long_metric_average_is_fractional(self, store, engine):
    store.ensure_table('A', ['d'])
    store.ensure_table('B', ['d'], ValueType.LONG)
    store.write_single('A', {'d': '1'}, 1, 1, 1, 1)
    store.write_single('B', {'d': '2'}, 3, 3, 3, 3)
    store.write_single('B', {'d': '2'}, 4, 4, 4, 4)
    store.commit()

    dense = engine.aggregate(['A', 'B'], ['sum', 'avg'], ['d'])

    assert dense.find(d='2')['B'] == pytest.approx(3.5)


class TestValidation:
  """Test suite for argument checks, all raised before any query runs."""

  def test_unknown_kind(self, node_metrics, engine):
    with pytest.raises(UnknownAggregationError, match='median'):
      engine.aggregate(['cpu', 'rss'], ['sum', 'median'], ['index'])

  def test_empty_metric_list(self, engine):
    with pytest.raises(InvalidArgumentError, match='At least one metric'):
      engine.aggregate([], [], ['index'])

  def test_mismatched_lengths(self, engine):
    with pytest.raises(InvalidArgumentError, match='2 metrics but 1'):
      engine.aggregate(['cpu', 'rss'], ['sum'], ['index'])

  def test_duplicate_metric(self, engine):
    with pytest.raises(InvalidArgumentError, match='Duplicate metric'):
      engine.aggregate(['cpu', 'cpu'], ['sum', 'max'], ['index'])

  def test_duplicate_dimension(self, engine):
    with pytest.raises(InvalidArgumentError, match='Duplicate dimension'):
      engine.aggregate(['cpu'], ['sum'], ['index', 'index'])

  def test_metric_named_like_dimension(self, engine):
    with pytest.raises(InvalidArgumentError, match='collide'):
      engine.aggregate(['index'], ['sum'], ['index'])

  def test_string_instead_of_list(self, engine):
    with pytest.raises(InvalidArgumentError, match='sequence'):
      engine.aggregate('cpu', ['sum'], ['index'])

  def test_dimension_missing_from_metric_table(self, node_metrics, engine):
    with pytest.raises(InvalidArgumentError, match='role'):
      engine.aggregate(['cpu'], ['sum'], ['role'])
