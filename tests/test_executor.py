import sqlite3

import pytest
import sqlalchemy as sa

from lazyql import (
    Session,
    RealizedResult,
    ExecutionError,
    CrossSessionError,
)

from setups import vegetables as veg


@pytest.fixture
def engine():
    return veg.CountingEngine('sqlite://')

@pytest.fixture
def session(engine):
    session = Session(engine=engine)
    yield session
    session.close()

@pytest.fixture
def t(session):
    return veg.load_t(session)


def test_materialize_filter_project(t):
    result = t.filter_by(lambda c: c.a > 1).project('b').collect()

    assert isinstance(result, RealizedResult)
    assert result.columns == ('b',)
    assert result.rows == [{'b': 20}, {'b': 30}]
    assert result.relation_id is not None

def test_materialize_count(t):
    result = t.group_aggregate(count=('count', '*')).collect()
    assert result.rows == [{'count': 3}]

def test_materialize_group_aggregate(session):
    vegetables = veg.load_vegetables(session)

    result = (
        vegetables
        .group_aggregate('color', n=('count', '*'), total=('sum', 'weight'))
        .sort_by('color')
        .collect()
    )

    assert result.columns == ('color', 'n', 'total')
    assert result.tuples() == [
        ('green',  2, 340),
        ('orange', 1, 60),
        ('red',    2, 135),
    ]

def test_materialize_filter_after_aggregate(session):
    vegetables = veg.load_vegetables(session)

    result = (
        vegetables
        .group_aggregate('color', n=('count', '*'))
        .filter_by(lambda c: c.n > 1)
        .sort_by('color')
        .collect()
    )
    assert result.column('color') == ['green', 'red']

def test_materialize_sort_limit_distinct(session, t):
    assert t.sort_by('-b').limit(2).collect().column('a') == [3, 2]
    assert t.limit(2).sort_by('-a').collect().column('a') == [2, 1]

    vegetables = veg.load_vegetables(session)
    colors = vegetables.project('color').distinct().sort_by('color').collect()
    assert colors.column('color') == ['green', 'orange', 'red']

def test_materialize_derived_columns(t):
    result = (
        t.project('a', b2=lambda c: c.b * 2)
         .filter_by(lambda c: c.b2 > 25)
         .sort_by('a')
         .collect()
    )
    assert result.tuples() == [(2, 40), (3, 60)]

def test_materialize_joins(session):
    vegetables = veg.load_vegetables(session)
    tomatoes = veg.load_tomatoes(session)

    inner = vegetables.join(tomatoes, on='name').sort_by('name').collect()
    assert inner.columns == ('name', 'color', 'weight', 'radius', 'state')
    assert inner.tuples() == [
        ('cherry_tomato', 'red', 15,  1, 'green'),
        ('tomato',        'red', 120, 4, 'ripe'),
    ]

    left = vegetables.join(tomatoes, on='name', kind='left').collect()
    assert len(left) == 5
    assert { r['name']: r['radius'] for r in left }['carrot'] is None

    right = vegetables.join(tomatoes, on='name', kind='right').sort_by('name').collect()
    assert right.column('name') == ['cherry_tomato', 'heirloom', 'tomato']
    assert right[1]['color'] is None

@pytest.mark.skipif(
    sqlite3.sqlite_version_info < (3, 39),
    reason='FULL OUTER JOIN needs SQLite 3.39+',
)
def test_materialize_full_join(session):
    vegetables = veg.load_vegetables(session)
    tomatoes = veg.load_tomatoes(session)

    full = vegetables.join(tomatoes, on='name', kind='full').collect()
    names = sorted(full.column('name'))

    assert len(names) == 6
    assert 'heirloom' in names
    assert 'kale' in names

def test_materialize_self_join(t):
    result = t.join(t, on='a').sort_by('a').collect()

    assert result.columns == ('a', 'b_x', 'b_y')
    assert result.tuples() == [(1, 10, 10), (2, 20, 20), (3, 30, 30)]

def test_materialize_raw_fragment(t):
    fragment = 'SELECT a, b * 10 AS c FROM {input} WHERE a <> 2'
    result = t.inject_raw(fragment, columns=['a', 'c']).collect()

    assert result.columns == ('a', 'c')
    assert sorted(result.column('c')) == [100, 300]

    # later steps keep working on top of the fragment
    result = t.inject_raw(fragment, columns=['a', 'c']).filter_by(lambda c: c.c > 100).collect()
    assert result.rows == [{'a': 3, 'c': 300}]

def test_materialize_raw_fragment_undeclared_columns(t):
    result = t.inject_raw('SELECT a AS x FROM {input}').sort_by('x').collect()

    # column names come from the cursor
    assert result.columns == ('x',)
    assert result.column('x') == [1, 2, 3]

def test_materialize_raw_base_query(session, t):
    raw = session.sql('SELECT a, b FROM t WHERE b > 15')
    assert raw.filter_by(lambda c: c.a < 3).collect().rows == [{'a': 2, 'b': 20}]

def test_materialize_execution_error(session):
    q = session.sql('SELECT * FROM missing')

    with pytest.raises(ExecutionError) as e:
        q.collect()

    assert 'no such table' in e.value.engine_message
    assert e.value.query == 'SELECT * FROM missing'
    assert e.value.relation_id == q.id

    # the session stays usable after a failed statement
    assert session.sql('SELECT 1 AS x').collect().rows == [{'x': 1}]

def test_materialize_runs_query_each_time(session, engine, t):
    q = t.filter_by(lambda c: c.a > 0)
    assert len(q.collect()) == 3

    with session._executing() as connection:
        connection.execute(sa.text('INSERT INTO t (a, b) VALUES (4, 40)'))
        connection.commit()

    engine.calls.clear()
    assert len(q.collect()) == 4
    assert engine.calls == ['execute']
    assert q.row_count == 4

def test_materialize_foreign_relation(session, t):
    with Session('sqlite://') as other_session:
        with pytest.raises(ValueError):
            other_session.executor.materialize(t)

def test_materialize_cross_session_join(session, t):
    with Session('sqlite://') as other_session:
        other = veg.load_t(other_session)

        with pytest.raises(CrossSessionError):
            t.join(other, on='a').collect()

        crossed = t.join(other, on='a', cross_session=True).collect()
        local = t.join(t, on='a').collect()

        assert crossed.columns == local.columns
        assert sorted(crossed.tuples()) == sorted(local.tuples())

    # transfer tables only live for the materialization
    with session._executing() as connection:
        assert sa.inspect(connection).get_temp_table_names() == []

def test_realized_result_helpers(t):
    result = t.sort_by('a').collect()

    assert len(result) == 3
    assert result.row_count == 3
    assert result[0] == {'a': 1, 'b': 10}
    assert list(result)[-1] == {'a': 3, 'b': 30}
    assert result.column('b') == [10, 20, 30]
    assert result.tuples() == veg.T_ROWS
    assert 'SELECT' in result.query

    with pytest.raises(KeyError):
        result.column('c')

def test_materialize_sort_before_wrapping_step(t):
    result = t.group_aggregate('a', n=('count', '*')).sort_by('-a').project('a').collect()
    assert result.column('a') == [3, 2, 1]

    result = (
        t.group_aggregate('a', n=('count', '*'))
         .sort_by('-a')
         .filter_by(lambda c: c.a > 1)
         .collect()
    )
    assert result.column('a') == [3, 2]

def test_materialize_raw_text_with_colons(session, t):
    result = session.sql("SELECT ':tag' AS s, '10:30' AS at").collect()
    assert result.rows == [{'s': ':tag', 'at': '10:30'}]

    result = (
        t.inject_raw("SELECT a, ':x' AS s FROM {input}", columns=['a', 's'])
         .sort_by('a')
         .collect()
    )
    assert result.column('s') == [':x', ':x', ':x']

def test_materialize_raw_repeated_input(t):
    q = t.inject_raw('SELECT count(*) AS n FROM {input} CROSS JOIN {input}', columns=['n'])
    assert q.collect().rows == [{'n': 9}]
