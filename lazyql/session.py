'''
Session

Process-wide handle to one backing engine connection. A Session owns the base Relations
bound against it and the single connection every materialization runs on.

Lifecycle: ``CREATED -> OPEN -> CLOSED`` (terminal).

- ``connect()`` opens the connection. Operations needing the engine (``bind``,
  ``load_table``, materialization) open a ``CREATED`` session on first use.
- ``close()`` releases the connection. Closing is idempotent: a second ``close()`` is a
  no-op. Re-opening a closed session raises ``AlreadyClosedError``.
- Every Relation, Executor or Session operation on a closed session raises
  ``SessionClosedError``.

.. code-block:: python

    with Session('sqlite://') as session:
        t = session.load_table('t', rows, columns=['a', 'b'], index_hints=[['a']])
        t.filter_by(lambda c: c.a > 1).collect()

Note: connection access
    At most one statement runs on the connection at a time. Callers queue in arrival
    order (a ticket lock, rather than a plain ``threading.Lock`` which makes no ordering
    promise). Closing the session wakes all queued callers with ``SessionClosedError``,
    and asks the driver to interrupt a statement already in flight where it can; the
    connection itself is released once that statement returns.
'''
import enum
import logging
import threading
from uuid import uuid4
from contextlib import contextmanager

import sqlalchemy as sa

from lazyql import util
from lazyql.steps import RawQueryFragment
from lazyql.dialect import DialectProfile, get_dialect, same_dialect
from lazyql.engines import SQLEngine
from lazyql.errors import (
    AlreadyClosedError,
    ExecutionError,
    SchemaError,
    SessionClosedError,
    UnknownTableError,
)
from lazyql.executor import Executor
from lazyql.relation import Relation


logger = logging.getLogger(__name__)


class SessionState(enum.Enum):
    CREATED = 'created'
    OPEN    = 'open'
    CLOSED  = 'closed'


class Session:
    def __init__(
        self,
        url     : str | sa.URL = 'sqlite://',
        dialect : str | DialectProfile | None = None,
        engine  = None,
        **engine_kwargs,
    ):
        '''
        Parameters:
            url:           SQLAlchemy database URL (default: in-memory SQLite)
            dialect:       dialect profile or name used for translation; defaults to the
                           engine's own dialect. A profile for another dialect only
                           allows previewing queries: connecting raises ``ValueError``
            engine:        pre-built ``lazyql.engine.Engine``; ``url`` and
                           ``engine_kwargs`` are ignored if provided
            engine_kwargs: forwarded to ``sa.create_engine``
        '''
        self.id       = uuid4().hex[:8]
        self.engine   = engine if engine is not None else SQLEngine(url, **engine_kwargs)
        self.executor = Executor(self)

        self._dialect    = get_dialect(dialect)
        self._state      = SessionState.CREATED
        self._connection = None
        self._tables     = {}

        self._cond        = threading.Condition()
        self._next_ticket = 0
        self._serving     = 0
        self._in_flight   = False

    def __repr__(self):
        return f'<Session {self.id} [{self._state.value}]>'

    def __enter__(self):
        return self.connect()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @property
    def state(self):
        return self._state

    @property
    def closed(self):
        return self._state is SessionState.CLOSED

    @property
    def dialect(self) -> DialectProfile:
        if self._dialect is None:
            self._dialect = DialectProfile.from_engine(self.engine.manager)
        return self._dialect

    def _check_open(self):
        if self.closed:
            raise SessionClosedError(f'Session {self.id} is closed', session_id=self.id)

    def _check_dialect(self):
        '''
        Statements are compiled by the engine at execution time, so a profile for another
        dialect would make ``show_query()`` text differ from what actually runs. Such a
        session can still translate, but not connect.
        '''
        if self._dialect is None:
            return

        engine_dialect = self.engine.manager.dialect
        if not same_dialect(self._dialect, engine_dialect):
            raise ValueError(
                f'Session {self.id} translates for dialect "{self._dialect.name}" but its '
                f'engine speaks "{engine_dialect.name}"; it can show queries but not run them'
            )

    def connect(self) -> 'Session':
        with self._cond:
            if self.closed:
                raise AlreadyClosedError(
                    f'Session {self.id} is closed and cannot be re-opened',
                    session_id=self.id,
                )

            if self._state is SessionState.OPEN:
                logger.debug(f'Session {self.id} already open')
                return self

            self._check_dialect()

            try:
                self._connection = self.engine.connect()
            except sa.exc.SQLAlchemyError as e:
                raise self._wrap_engine_error(f'open session {self.id}', e) from e
            self._state = SessionState.OPEN

        logger.info(f'Opened session {self.id}')
        return self

    def close(self):
        '''
        Close the session, releasing its connection. Safe to call more than once; calls
        after the first do nothing.
        '''
        with self._cond:
            if self.closed:
                logger.debug(f'Session {self.id} already closed')
                return

            self._state = SessionState.CLOSED

            if self._in_flight:
                if not self.engine.interrupt(self._connection):
                    logger.warning(
                        f'Could not interrupt in-flight statement on session {self.id}; '
                        f'connection is released once it returns'
                    )
            else:
                self._release()

            self._cond.notify_all()

        logger.info(f'Closed session {self.id}')

    def _release(self):
        if self._connection is not None:
            self._connection.close()
            self._connection = None

        self.engine.dispose()
        self._tables.clear()

    @contextmanager
    def _executing(self):
        '''
        Hold the session connection for one unit of work, waiting in arrival order behind
        other callers.
        '''
        with self._cond:
            # condition lock is reentrant
            if self._state is SessionState.CREATED:
                self.connect()

            ticket = self._next_ticket
            self._next_ticket += 1

            while self._serving != ticket and not self.closed:
                self._cond.wait()

            if self.closed:
                raise SessionClosedError(f'Session {self.id} is closed', session_id=self.id)

            self._in_flight = True

        try:
            yield self._connection
        finally:
            with self._cond:
                self._in_flight = False
                self._serving += 1

                if self.closed:
                    self._release()

                self._cond.notify_all()

    def _wrap_engine_error(self, action, e):
        engine_message = str(getattr(e, 'orig', None) or e)
        return ExecutionError(
            f'Engine failed to {action}: {engine_message}',
            engine_message=engine_message,
        )

    def bind(self, table: str) -> Relation:
        '''
        Base Relation for an existing table, created on first request and cached.

        Raises:
            UnknownTableError: if the engine has no such table
        '''
        self._check_open()

        if table in self._tables:
            return self._tables[table]

        with self._executing() as connection:
            try:
                if not self.engine.has_table(connection, table):
                    raise UnknownTableError(
                        f'Table "{table}" does not exist in session {self.id}',
                        session_id=self.id,
                        table=table,
                    )
                columns = self.engine.reflect_columns(connection, table)
            except sa.exc.SQLAlchemyError as e:
                raise self._wrap_engine_error(f'reflect table "{table}"', e) from e

            relation = Relation(self, table=table, columns=columns)
            self._tables[table] = relation

        return relation

    def load_table(
        self,
        name        : str,
        rows,
        index_hints = None,
        columns     : list[str] | None = None,
        overwrite   : bool = False,
        temporary   : bool = False,
        chunk_size  : int  = 1000,
        progress    : bool = False,
    ) -> Relation:
        '''
        Create a new table from in-memory rows and return its base Relation.

        Parameters:
            rows:        mappings, or sequences aligned with ``columns``
            index_hints: column groups to create secondary indexes on, e.g.
                         ``[['a'], ['a', 'b']]``. Indexes only speed up later filters and
                         joins; they never change query results.
            columns:     column names (required for sequence rows)
            overwrite:   replace an existing table of the same name
            temporary:   create a TEMPORARY table
            chunk_size:  rows per bulk INSERT
            progress:    show a progress bar over insert chunks
        '''
        self._check_open()

        rows  = util.db.normalize_rows(rows, columns)
        names = util.db.column_names(rows, columns)

        groups = []
        for group in index_hints or []:
            group = (group,) if isinstance(group, str) else tuple(group)
            for column in group:
                if column not in names:
                    raise SchemaError(
                        f'Index hint references unknown column "{column}" of table '
                        f'"{name}"; available columns: {names}',
                        column=column,
                        available=names,
                    )
            groups.append(group)

        with self._executing() as connection:
            try:
                table = self.engine.create_table(
                    connection,
                    name,
                    rows,
                    columns=names,
                    temporary=temporary,
                    overwrite=overwrite,
                    chunk_size=chunk_size,
                    progress=progress,
                )

                if groups:
                    self.engine.create_index(connection, name, groups)
            except sa.exc.SQLAlchemyError as e:
                raise self._wrap_engine_error(f'load table "{name}"', e) from e

            relation = Relation(self, table=name, columns=[c.name for c in table.columns])
            self._tables[name] = relation

        return relation

    def sql(self, text: str, columns=None) -> Relation:
        '''
        Base Relation for a complete raw query. The text is used verbatim; ``columns``
        declares its output column names if known.
        '''
        self._check_open()

        columns = tuple(columns) if columns is not None else None
        return Relation(self, step=RawQueryFragment(text, columns), columns=columns)

    def tables(self) -> list[str]:
        self._check_open()

        with self._executing() as connection:
            return self.engine.table_names(connection)


def open_session(
    url     : str | sa.URL = 'sqlite://',
    dialect : str | DialectProfile | None = None,
    **engine_kwargs,
) -> Session:
    '''
    Create a Session and open its connection.
    '''
    return Session(url, dialect=dialect, **engine_kwargs).connect()
