import time
import threading

import pytest

from lazyql import (
    Session,
    SessionState,
    SchemaError,
    SessionClosedError,
    AlreadyClosedError,
    UnknownTableError,
    open_session,
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


def wait_for(condition, timeout=5):
    deadline = time.time() + timeout
    while not condition():
        if time.time() > deadline:
            raise TimeoutError('condition not reached')
        time.sleep(0.01)


def test_session_lifecycle(session, engine):
    assert session.state is SessionState.CREATED
    assert engine.calls == []

    # first use opens the connection
    veg.load_t(session)
    assert session.state is SessionState.OPEN
    assert engine.calls.count('connect') == 1

    session.close()
    assert session.state is SessionState.CLOSED
    assert session.closed
    assert session._connection is None

    # second close does nothing
    session.close()
    assert session.state is SessionState.CLOSED

    with pytest.raises(AlreadyClosedError):
        session.connect()

def test_session_connect_twice(session, engine):
    assert session.connect() is session
    assert session.connect() is session
    assert engine.calls.count('connect') == 1

def test_session_context_manager():
    with Session('sqlite://') as session:
        assert session.state is SessionState.OPEN
        t = veg.load_t(session)
        assert len(t.collect()) == 3

    assert session.closed

    with pytest.raises(SessionClosedError):
        t.collect()

def test_open_session():
    session = open_session('sqlite://')
    assert session.state is SessionState.OPEN
    assert session.dialect.name == 'sqlite'
    session.close()

def test_session_dialect_override():
    session = Session('sqlite://', dialect='postgres')
    assert session.dialect.name == 'postgresql'

def test_session_closed_operations(session):
    session.close()

    with pytest.raises(SessionClosedError):
        session.bind('t')

    with pytest.raises(SessionClosedError):
        veg.load_t(session)

    with pytest.raises(SessionClosedError):
        session.sql('SELECT 1')

    with pytest.raises(SessionClosedError):
        session.tables()

def test_bind_cached(session):
    t = veg.load_t(session)

    assert session.bind('t') is t
    assert session.bind('t') is session.bind('t')

def test_bind_reflects_existing_table(tmp_path):
    url = f'sqlite:///{tmp_path / "veg.db"}'

    with Session(url) as session:
        veg.load_vegetables(session)

    with Session(url) as session:
        vegetables = session.bind('vegetable')

        assert vegetables.is_base
        assert vegetables.columns == ('name', 'color', 'weight')

        red = vegetables.filter_by(lambda c: c.color == 'red').sort_by('name').collect()
        assert red.column('name') == ['cherry_tomato', 'tomato']

def test_bind_unknown_table(session):
    with pytest.raises(UnknownTableError) as e:
        session.bind('missing')

    assert e.value.table == 'missing'
    assert e.value.session_id == session.id

def test_load_table_index_hints(session):
    t = session.load_table(
        't',
        veg.T_ROWS,
        columns=veg.T_COLUMNS,
        index_hints=['a', ['a', 'b']],
    )

    indexes = session.sql(
        "SELECT name FROM sqlite_master WHERE type = 'index' AND tbl_name = 't'"
    ).collect()
    assert sorted(indexes.column('name')) == ['ix_t_a', 'ix_t_a_b']

    # indexes never change results
    assert t.filter_by(lambda c: c.a == 2).collect().rows == [{'a': 2, 'b': 20}]

def test_load_table_bad_index_hint(session):
    with pytest.raises(SchemaError) as e:
        session.load_table('t', veg.T_ROWS, columns=veg.T_COLUMNS, index_hints=[['c']])

    assert e.value.column == 'c'
    assert 't' not in session.tables()

def test_load_table_overwrite(session):
    veg.load_t(session)

    with pytest.raises(ValueError):
        veg.load_t(session)

    t = session.load_table('t', [(7, 70)], columns=veg.T_COLUMNS, overwrite=True)
    assert t.collect().rows == [{'a': 7, 'b': 70}]
    assert session.bind('t') is t

def test_load_table_dict_rows(session):
    tomatoes = veg.load_tomatoes(session)

    assert tomatoes.columns == ('name', 'radius', 'state')
    assert len(tomatoes.collect()) == 3

def test_load_table_chunked_progress(session):
    rows = [(i, i * 10) for i in range(7)]
    t = session.load_table('t', rows, columns=veg.T_COLUMNS, chunk_size=2, progress=True)

    assert len(t.collect()) == 7

def test_load_table_temporary(session):
    t = session.load_table('scratch', veg.T_ROWS, columns=veg.T_COLUMNS, temporary=True)

    assert len(t.collect()) == 3
    assert 'scratch' not in session.tables()

def test_session_tables(session):
    veg.load_t(session)
    veg.load_tomatoes(session)

    assert sorted(session.tables()) == ['t', 'tomato']

def test_session_executions_fifo(session, engine):
    t = veg.load_t(session)
    engine.started.clear()
    engine.gate = threading.Event()

    errors = []
    def run():
        try:
            t.collect()
        except Exception as e:
            errors.append(e)

    threads = []
    for i, name in enumerate(['first', 'second', 'third']):
        thread = threading.Thread(target=run, name=name)
        thread.start()
        threads.append(thread)

        if i == 0:
            wait_for(lambda: engine.started == ['first'])
        else:
            # wait for the caller to take its place in line
            wait_for(lambda: session._next_ticket == session._serving + i + 1)

    # only the first caller reached the engine so far
    assert engine.started == ['first']

    engine.gate.set()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
    assert engine.started == ['first', 'second', 'third']

def test_session_close_while_executing(session, engine):
    t = veg.load_t(session)
    engine.gate = threading.Event()

    errors = {}
    def run():
        try:
            t.collect()
        except Exception as e:
            errors[threading.current_thread().name] = e

    in_flight = threading.Thread(target=run, name='in_flight')
    in_flight.start()
    wait_for(lambda: session._in_flight)

    queued = threading.Thread(target=run, name='queued')
    queued.start()
    wait_for(lambda: session._next_ticket == session._serving + 2)

    session.close()
    queued.join(timeout=10)

    # queued callers are woken right away
    assert isinstance(errors['queued'], SessionClosedError)

    engine.gate.set()
    in_flight.join(timeout=10)

    assert isinstance(errors['in_flight'], SessionClosedError)
    assert session._connection is None

def test_session_foreign_dialect_previews_only():
    session = Session('sqlite://', dialect='postgres')
    raw = session.sql('SELECT 1 AS x')

    # translation never needs the engine
    assert raw.show_query() == 'SELECT 1 AS x'

    with pytest.raises(ValueError):
        session.connect()

    with pytest.raises(ValueError):
        raw.collect()

    assert session.state is SessionState.CREATED
    session.close()
