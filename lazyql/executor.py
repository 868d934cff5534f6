'''
Executor

Realizes Relations against their Session's connection. Materialization translates the
Relation exactly once, sends the statement once, and returns a ``RealizedResult``.
Nothing is cached across calls: materializing the same Relation twice runs the query
twice.

Note: cross-session joins
    Joins flagged with ``cross_session=True`` whose right side belongs to another Session
    are realized by pulling that side in full (materializing it in its own Session),
    loading the rows into a temporary transfer table in the home Session, and joining
    there. Transfer tables only live for the duration of the materialization, which
    holds the home Session's connection throughout. This is a convenience for small
    inputs; no attempt is made to decide which side would be cheaper to move.
'''
import time
import logging

import sqlalchemy as sa

from lazyql import steps
from lazyql.errors import CrossSessionError, ExecutionError, SessionClosedError
from lazyql.translator import translate, transfer_table_name


logger = logging.getLogger(__name__)


class RealizedResult:
    '''
    Concrete rows of a materialized Relation.

    Parameters:
        columns:     output column names, in order
        rows:        list of column-name indexed dicts
        relation_id: id of the Relation that produced the rows
        query:       query text that was executed
    '''
    def __init__(self, columns, rows, relation_id=None, query=None):
        self.columns     = tuple(columns)
        self.rows        = rows
        self.relation_id = relation_id
        self.query       = query

    def __len__(self):
        return len(self.rows)

    def __iter__(self):
        return iter(self.rows)

    def __getitem__(self, index):
        return self.rows[index]

    def __repr__(self):
        return f'<RealizedResult {self.relation_id}: {len(self.rows)} rows x {list(self.columns)}>'

    @property
    def row_count(self):
        return len(self.rows)

    def tuples(self):
        return [tuple(row[c] for c in self.columns) for row in self.rows]

    def column(self, name):
        if name not in self.columns:
            raise KeyError(name)
        return [row[name] for row in self.rows]


class Executor:
    def __init__(self, session):
        self.session = session

    def _check_relation(self, relation):
        if relation.session is not self.session:
            raise ValueError(
                f'Relation {relation.id} is bound to a different session than this executor'
            )
        self.session._check_open()

    def _foreign_joins(self, relation):
        '''
        Join steps anywhere in the relation graph whose right side lives outside this
        executor's session. Joins within foreign sides are left to their own session.
        '''
        found = {}
        stack = [relation]
        while stack:
            node = stack.pop()
            while node is not None:
                step = node.step
                if isinstance(step, steps.Join):
                    if step.other.session is not self.session:
                        found.setdefault(step.other.id, (node, step))
                    else:
                        stack.append(step.other)
                node = node.parent

        return list(found.values())

    def peek_query_text(self, relation) -> str:
        '''
        Translated query text for ``relation``, without executing anything.
        '''
        self._check_relation(relation)
        return translate(relation, self.session.dialect).text

    def materialize(self, relation) -> 'RealizedResult':
        self._check_relation(relation)

        foreign = self._foreign_joins(relation)
        for node, step in foreign:
            if not step.cross_session:
                raise CrossSessionError(
                    f'Relation {step.other.id} belongs to a different session than '
                    f'relation {node.parent.id}; pass cross_session=True to pull it across',
                    relation_id=node.id,
                    step=step,
                )

        if foreign:
            return self._materialize_with_transfers(relation, foreign)

        translation = translate(relation, self.session.dialect)
        with self.session._executing() as connection:
            return self._run(connection, relation, translation)

    def _materialize_with_transfers(self, relation, foreign):
        pulled = {}
        for _, step in foreign:
            other = step.other
            logger.warning(
                f'Pulling relation {other.id} in full from session {other.session.id} '
                f'for a cross-session join; unsuitable for large inputs'
            )
            pulled[other.id] = other.session.executor.materialize(other)

        engine = self.session.engine
        with self.session._executing() as connection:
            foreign_tables = {}
            try:
                for other_id, result in pulled.items():
                    other = next(s.other for _, s in foreign if s.other.id == other_id)
                    foreign_tables[other_id] = engine.create_table(
                        connection,
                        transfer_table_name(other),
                        result.rows,
                        columns=list(result.columns),
                        temporary=True,
                        overwrite=True,
                    )

                translation = translate(relation, self.session.dialect, foreign_tables)
                return self._run(connection, relation, translation)
            finally:
                if not self.session.closed:
                    for table in foreign_tables.values():
                        engine.drop_table(connection, table.name)

    def _run(self, connection, relation, translation):
        start = time.time()
        try:
            rows, cols = self.session.engine.execute(connection, translation.statement)
        except sa.exc.SQLAlchemyError as e:
            if self.session.closed:
                raise SessionClosedError(
                    f'Session {self.session.id} was closed while materializing relation '
                    f'{relation.id}',
                    session_id=self.session.id,
                ) from e

            engine_message = str(getattr(e, 'orig', None) or e)
            raise ExecutionError(
                f'Engine failed to run relation {relation.id}: {engine_message}',
                relation_id=relation.id,
                query=translation.text,
                engine_message=engine_message,
            ) from e

        if self.session.closed:
            raise SessionClosedError(
                f'Session {self.session.id} was closed while materializing relation '
                f'{relation.id}',
                session_id=self.session.id,
            )

        relation._record_row_count(len(rows))
        logger.info(
            f'Materialized relation {relation.id}: {len(rows)} rows in '
            f'{time.time()-start:.2f}s'
        )

        columns = translation.columns if translation.columns is not None else cols
        return RealizedResult(columns, rows, relation_id=relation.id, query=translation.text)
