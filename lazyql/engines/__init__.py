'''
SQLAlchemy-backed Engine.

Note: Common on insert behavior
    The bulk insert via ``conn.execute(<insert>, <row_list>)`` ignores irrelevant column
    names within provided record dicts, whereas explicit ``.values()`` calls for non-bulk
    inserts would throw errors if not aligned perfectly. Rows are normalized against the
    table's columns before insertion so every dict carries every key.

Note: SQLite connections
    Sessions hold one connection for their whole lifetime and serialize access to it
    themselves, possibly from several threads. For SQLite URLs we therefore turn off the
    driver's same-thread check, and in-memory databases get a ``StaticPool`` so the single
    database isn't dropped along with a pooled connection.
'''
import time
import logging
import threading

import sqlalchemy as sa
from tqdm.auto import tqdm

from lazyql import util
from lazyql.engine import Engine


logger = logging.getLogger(__name__)


class SQLEngine(Engine[sa.Connection]):
    def __init__(self, url: str | sa.URL, **kwargs):
        super().__init__(url, **kwargs)

        self.url = sa.make_url(url)
        self._insert_lock = threading.Lock()

    def _create_manager(self):
        kwargs = dict(self.manager_kwargs)

        if self.url.get_backend_name() == 'sqlite':
            connect_args = kwargs.setdefault('connect_args', {})
            connect_args.setdefault('check_same_thread', False)

            if self.url.database in (None, '', ':memory:'):
                kwargs.setdefault('poolclass', sa.pool.StaticPool)

        return sa.create_engine(self.url, **kwargs)

    @property
    def dialect(self):
        return self.manager.dialect

    def connect(self):
        return self.manager.connect()

    def execute(
        self,
        connection,
        statement,
        bind_params=None,
    ):
        '''
        Execute a general SQLAlchemy statement, optionally binding provided parameters.
        The open transaction is committed on success (raw fragments may have side
        effects) and rolled back on failure.

        Parameters:
            connection:  database connection instance
            statement:   SQLAlchemy statement
            bind_params: parameters bound to the statement, if any

        Returns:
            ``(rows, columns)``, with rows as column-name indexed dicts and columns the
            cursor's column names
        '''
        try:
            res = connection.execute(statement, bind_params)

            rows, cols = [], []
            if res.returns_rows:
                cols = list(res.keys())
                rows = util.db.result_dicts(res)

            connection.commit()
        except Exception:
            if not connection.closed:
                connection.rollback()
            raise

        return rows, cols

    def create_table(
        self,
        connection,
        name       : str,
        rows,
        columns    : list[str] | None = None,
        temporary  : bool = False,
        overwrite  : bool = False,
        chunk_size : int  = 1000,
        progress   : bool = False,
    ) -> sa.Table:
        '''
        Create a table from in-memory rows, inferring column types from the values, and
        bulk insert the rows in chunks.

        Parameters:
            rows:       mappings, or sequences aligned with ``columns``
            columns:    column names (required for sequence rows, or for empty tables)
            temporary:  create as a TEMPORARY table
            overwrite:  drop an existing table of the same name first
            chunk_size: number of rows per INSERT
            progress:   display a tqdm progress bar over insert chunks
        '''
        rows = util.db.normalize_rows(rows, columns)

        if not rows and columns is None:
            raise ValueError(f'Cannot infer columns for table "{name}" from zero rows')

        if self.has_table(connection, name):
            if not overwrite:
                raise ValueError(
                    f'Table "{name}" already exists; pass overwrite=True to replace it'
                )
            logger.info(f'Dropping existing table "{name}" before load')
            self.drop_table(connection, name)

        table = util.db.infer_table(
            name,
            sa.MetaData(),
            rows,
            columns=columns,
            temporary=temporary,
        )
        rows = util.db.normalize_rows(rows, [c.name for c in table.columns])

        start = time.time()
        with self._insert_lock:
            table.create(connection)

            chunks = util.db.chunked(rows, max(chunk_size, 1))
            if progress:
                chunks = tqdm(
                    chunks,
                    total=-(-len(rows) // max(chunk_size, 1)),
                    desc=f'Loading table "{name}"',
                )

            for chunk in chunks:
                connection.execute(sa.insert(table), chunk)

            connection.commit()

        logger.info(
            f'Loaded {len(rows)} rows into table "{name}" in {time.time()-start:.2f}s'
        )

        return table

    def create_index(self, connection, name, column_groups):
        table = sa.Table(name, sa.MetaData(), autoload_with=connection)

        for group in column_groups:
            index = sa.Index(
                util.db.index_name(name, group),
                *[table.c[c] for c in group],
            )
            index.create(connection)
            logger.info(f'Created index "{index.name}" on table "{name}"')

        connection.commit()

    def drop_table(self, connection, name):
        sa.Table(name, sa.MetaData()).drop(connection, checkfirst=True)
        connection.commit()

    def has_table(self, connection, name):
        return sa.inspect(connection).has_table(name)

    def reflect_columns(self, connection, name):
        return [c['name'] for c in sa.inspect(connection).get_columns(name)]

    def table_names(self, connection):
        return sa.inspect(connection).get_table_names()

    def interrupt(self, connection):
        try:
            dbapi_connection = connection.connection.dbapi_connection
        except sa.exc.SQLAlchemyError:
            return False

        for method in ('interrupt', 'cancel'):
            if hasattr(dbapi_connection, method):
                getattr(dbapi_connection, method)()
                return True

        return False

    def dispose(self):
        if self._manager is not None:
            self._manager.dispose()
        super().dispose()
