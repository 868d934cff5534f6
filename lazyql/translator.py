'''
Translator

Converts a Relation's operation log into an executable SQLAlchemy statement, along with
its query text in a given dialect. Translation is a pure function of the Relation graph
and the dialect profile: it never touches an engine, and translating the same Relation
twice yields identical text.

The chain is walked once from the base up. Steps accumulate onto a single working
SELECT (a ``_Frame``) for as long as SQL allows; when the next step can't be expressed
on the current SELECT (e.g., filtering the output of an aggregate), the frame is closed
off as a named subquery and a fresh SELECT is started over it. Rules worth knowing:

- consecutive filters are ANDed, in chain order
- a project after an aggregate selects from the aggregate's output columns
- raw fragments are spliced in verbatim at their position, the preceding chain
  rendered in place of the ``{input}`` placeholder
- a step type without a translation rule raises ``TranslationError``

Note: cross-session joins
    A join whose right side lives in another Session can only be translated with the
    ``cross_session`` flag. The right side is then read from a *transfer table* in the
    home Session: the executor supplies the actual table via ``foreign_tables``; for
    query inspection a deterministic placeholder name is used instead.
'''
import logging
import itertools

import sqlalchemy as sa

from lazyql import steps
from lazyql.dialect import DialectProfile
from lazyql.errors import TranslationError, CrossSessionError
from lazyql.util.expr import ColumnNamespace, UnknownColumn, resolve
from lazyql.util.types import SQLSelectable


logger = logging.getLogger(__name__)


def transfer_table_name(relation):
    return f'lazyql_transfer_{relation.id}'


class Translation:
    '''
    Result of translating a Relation.

    Parameters:
        relation_id: id of the translated Relation
        statement:   executable SQLAlchemy statement
        columns:     output column names, ``None`` if not statically known
        text:        query text compiled for the dialect
    '''
    def __init__(self, relation_id, statement, columns, text):
        self.relation_id = relation_id
        self.statement   = statement
        self.columns     = columns
        self.text        = text

    def __str__(self):
        return self.text


class _Frame:
    '''
    Working SELECT under construction.

    ``columns`` maps output names to expressions over ``source``; it is ``None`` when the
    output columns aren't known (after an undeclared raw fragment), in which case the
    frame selects ``*``.
    '''
    def __init__(self, source: SQLSelectable, columns: dict | None, tables=()):
        self.source  = source
        self.columns = columns
        self.tables  = set(tables)

        self.where      = []
        self.group_by   = None
        self.order_by   = []
        self.sort_keys  = []
        self.limit      = None
        self.distinct   = False
        self.projected  = False
        self.textual    = None

    @property
    def namespace(self):
        return ColumnNamespace(self.columns)

    @property
    def aggregated(self):
        return self.group_by is not None

    @property
    def bare(self):
        '''
        Whether the frame is still a plain, unmodified table scan.
        '''
        return (
            isinstance(self.source, sa.TableClause)
            and not self.where
            and not self.aggregated
            and not self.order_by
            and self.limit is None
            and not self.distinct
            and not self.projected
        )

    def output_columns(self):
        if self.columns is None:
            return [sa.literal_column('*')]

        columns = []
        for name, expr in self.columns.items():
            if isinstance(expr, sa.ColumnClause) and expr.name == name:
                columns.append(expr)
            else:
                columns.append(expr.label(name))

        return columns

    def statement(self):
        # untouched raw query: hand it back as written
        if self.textual is not None:
            return self.textual

        stmt = sa.select(*self.output_columns()).select_from(self.source)

        for clause in self.where:
            stmt = stmt.where(clause)

        if self.group_by:
            stmt = stmt.group_by(*self.group_by)

        if self.distinct:
            stmt = stmt.distinct()

        if self.order_by:
            stmt = stmt.order_by(*self.order_by)

        if self.limit is not None:
            stmt = stmt.limit(self.limit)

        return stmt


class Translator:
    '''
    Single-use translator for one Relation graph. Subquery names are drawn from a
    per-instance counter so repeated translations produce identical text.

    Parameters:
        dialect:        target dialect profile
        home_session:   Session the translated Relation belongs to; joins against other
                        Sessions are resolved through transfer tables
        foreign_tables: map from foreign Relation id to the (already loaded) transfer
                        table holding its rows
    '''
    visitors = {
        steps.Project:          'visit_project',
        steps.Filter:           'visit_filter',
        steps.Aggregate:        'visit_aggregate',
        steps.Sort:             'visit_sort',
        steps.Join:             'visit_join',
        steps.RawQueryFragment: 'visit_raw',
        steps.Limit:            'visit_limit',
        steps.Distinct:         'visit_distinct',
    }

    def __init__(self, dialect: DialectProfile, home_session, foreign_tables=None):
        self.dialect        = dialect
        self.home_session   = home_session
        self.foreign_tables = foreign_tables or {}

        self._names = itertools.count()

    def _next_name(self):
        return f'q{next(self._names)}'

    def translate(self, relation) -> Translation:
        frame = self.build(relation)
        statement = frame.statement()

        try:
            text = self.dialect.compile(statement)
        except sa.exc.SQLAlchemyError as e:
            raise TranslationError(
                f'Could not compile relation {relation.id} for dialect '
                f'"{self.dialect.name}": {e}',
                relation_id=relation.id,
            ) from e

        columns = tuple(frame.columns) if frame.columns is not None else None
        return Translation(relation.id, statement, columns, text)

    def build(self, relation) -> _Frame:
        '''
        Build the working frame for ``relation`` by replaying its operation log.
        '''
        base = relation.base()

        if base.table is not None:
            frame = self.table_frame(base.table, base.columns)
        else:
            frame = self.raw_base_frame(base.step)

        chain = []
        node = relation
        while node is not base:
            chain.append(node)
            node = node.parent

        for node in reversed(chain):
            frame = self.visit(frame, node)

        return frame

    def visit(self, frame, relation):
        step = relation.step
        method_name = self.visitors.get(type(step))

        if method_name is None:
            raise TranslationError(
                f'No translation for step "{type(step).__name__}" ({step}) '
                f'on relation {relation.id}',
                relation_id=relation.id,
                step=step,
            )

        try:
            return getattr(self, method_name)(frame, step, relation)
        except UnknownColumn as e:
            raise TranslationError(
                f'Unknown column "{e.name}" in {step.describe()} on relation '
                f'{relation.id}',
                relation_id=relation.id,
                step=step,
            ) from None

    # -- frames ---------------------------------------------------------------------------

    def table_frame(self, name, columns):
        table = sa.table(name, *[sa.column(c) for c in columns])
        return _Frame(
            table,
            { c: table.c[c] for c in columns },
            tables=[name],
        )

    def raw_base_frame(self, step: steps.RawQueryFragment):
        textual = self.textual(step.text, step.columns)
        frame = self.subquery_frame(textual.subquery(self._next_name()), step.columns)
        frame.textual = textual

        return frame

    def textual(self, text, columns):
        # raw text is used verbatim: no colon may read as a bind param
        clause = sa.text(text.replace(':', r'\:'))
        if columns is None:
            return clause.columns()
        return clause.columns(*[sa.column(c) for c in columns])

    def subquery_frame(self, subquery, columns, tables=()):
        if columns is None:
            return _Frame(subquery, None, tables)
        return _Frame(subquery, { c: subquery.c[c] for c in columns }, tables)

    def wrap(self, frame):
        '''
        Close off the frame as a named subquery and start a new SELECT over it.

        Subquery row order isn't guaranteed to survive the outer SELECT, so the sort keys
        still present among the output columns are re-applied on the new frame. The inner
        ORDER BY is only kept where a LIMIT depends on it.
        '''
        if frame.limit is None:
            frame.order_by = []

        subquery = frame.statement().subquery(self._next_name())
        columns = list(frame.columns) if frame.columns is not None else None

        new_frame = self.subquery_frame(subquery, columns, frame.tables)

        namespace = new_frame.namespace
        for key, direction in frame.sort_keys:
            if key not in namespace:
                continue
            expr = namespace[key]
            new_frame.order_by.append(expr.desc() if direction == 'desc' else expr.asc())
            new_frame.sort_keys.append((key, direction))

        return new_frame

    # -- steps ----------------------------------------------------------------------------

    def visit_project(self, frame, step: steps.Project, relation):
        if frame.aggregated or frame.distinct or frame.textual is not None:
            frame = self.wrap(frame)

        namespace = frame.namespace
        columns = { name: namespace[name] for name in step.columns }
        for name, spec in step.derived:
            columns[name] = resolve(spec, namespace)

        frame.columns = columns
        frame.projected = True

        return frame

    def visit_filter(self, frame, step: steps.Filter, relation):
        if (
            frame.aggregated
            or frame.distinct
            or frame.limit is not None
            or frame.textual is not None
        ):
            frame = self.wrap(frame)

        frame.where.append(resolve(step.predicate, frame.namespace))

        return frame

    def visit_aggregate(self, frame, step: steps.Aggregate, relation):
        if (
            frame.aggregated
            or frame.distinct
            or frame.limit is not None
            or frame.textual is not None
        ):
            frame = self.wrap(frame)

        namespace = frame.namespace
        group_by = [namespace[k] for k in step.group_keys]

        columns = { k: namespace[k] for k in step.group_keys }
        for name, spec in step.aggregations:
            columns[name] = resolve(spec, namespace)

        frame.columns  = columns
        frame.group_by = group_by
        frame.order_by = []
        frame.sort_keys = []

        return frame

    def visit_sort(self, frame, step: steps.Sort, relation):
        if frame.limit is not None or frame.textual is not None:
            frame = self.wrap(frame)

        namespace = frame.namespace
        order_by = []
        for key, direction in zip(step.keys, step.directions):
            expr = namespace[key]
            order_by.append(expr.desc() if direction == 'desc' else expr.asc())

        frame.order_by = order_by + frame.order_by
        frame.sort_keys = list(zip(step.keys, step.directions)) + frame.sort_keys

        return frame

    def visit_limit(self, frame, step: steps.Limit, relation):
        if frame.textual is not None:
            frame = self.wrap(frame)

        if frame.limit is None:
            frame.limit = step.count
        else:
            frame.limit = min(frame.limit, step.count)

        return frame

    def visit_distinct(self, frame, step: steps.Distinct, relation):
        if frame.limit is not None or frame.textual is not None:
            frame = self.wrap(frame)

        frame.distinct = True

        return frame

    def visit_raw(self, frame, step: steps.RawQueryFragment, relation):
        '''
        Splice the chain so far into the fragment text as an aliased subquery. The parent
        is rendered with inline literals since the result is plain text. Each occurrence
        of the placeholder gets its own alias.
        '''
        parent_text = DialectProfile(
            self.dialect.name, self.dialect.sa_dialect, literal_binds=True
        ).compile(frame.statement())

        quote = self.dialect.sa_dialect.identifier_preparer.quote
        head, *rest = step.text.split(steps.INPUT_PLACEHOLDER)

        text = head
        for piece in rest:
            text += f'({parent_text}) AS {quote(self._next_name())}{piece}'

        textual = self.textual(text, step.columns)
        new_frame = self.subquery_frame(
            textual.subquery(self._next_name()),
            step.columns,
            frame.tables,
        )
        new_frame.textual = textual

        return new_frame

    def visit_join(self, frame, step: steps.Join, relation):
        other = step.other

        if other.session is not self.home_session:
            right = self.foreign_frame(step, relation)
        else:
            right = self.build(other)

        if frame.columns is None or right.columns is None:
            raise TranslationError(
                f'Cannot join relation {relation.parent.id} with {other.id}: column names '
                f'of both sides must be known (declare columns on raw fragments)',
                relation_id=relation.id,
                step=step,
            )

        left_from, left_cols = self.join_input(frame, set())
        right_from, right_cols = self.join_input(right, frame.tables)

        onclause = sa.and_(*[
            left_cols[l] == right_cols[r]
            for l, r in step.on
        ])
        right_for_left = dict(step.on)

        if step.kind == 'right':
            joined = right_from.join(left_from, onclause, isouter=True)
        else:
            joined = left_from.join(
                right_from,
                onclause,
                isouter=step.kind == 'left',
                full=step.kind == 'full',
            )

        columns = {}
        for name, side, source in step.layout(list(frame.columns), list(right.columns)):
            if side == 'right':
                columns[name] = right_cols[source]
            elif source in right_for_left and step.kind == 'right':
                columns[name] = right_cols[right_for_left[source]]
            elif source in right_for_left and step.kind == 'full':
                columns[name] = sa.func.coalesce(
                    left_cols[source],
                    right_cols[right_for_left[source]],
                )
            else:
                columns[name] = left_cols[source]

        return _Frame(joined, columns, frame.tables | right.tables)

    def join_input(self, frame, taken_tables):
        '''
        FROM clause and column map to use for one side of a join. Bare table scans are
        used directly (aliased if the table already appears on the other side); anything
        else is joined as a subquery.
        '''
        if frame.bare:
            table = frame.source
            if table.name in taken_tables:
                table = table.alias(f'{table.name}_{self._next_name()}')
            return table, { name: table.c[expr.name] for name, expr in frame.columns.items() }

        subquery = frame.statement().subquery(self._next_name())
        return subquery, { name: subquery.c[name] for name in frame.columns }

    def foreign_frame(self, step: steps.Join, relation):
        other = step.other

        if not step.cross_session:
            raise CrossSessionError(
                f'Relation {other.id} belongs to a different session than relation '
                f'{relation.parent.id}; pass cross_session=True to pull it across',
                relation_id=relation.id,
                step=step,
            )

        table = self.foreign_tables.get(other.id)
        if table is not None:
            return self.table_frame(table.name, [c.name for c in table.columns])

        if other.columns is None:
            raise TranslationError(
                f'Cannot preview cross-session join with relation {other.id}: its column '
                f'names are not known until it is materialized',
                relation_id=relation.id,
                step=step,
            )

        return self.table_frame(transfer_table_name(other), other.columns)


def translate(relation, dialect: DialectProfile, foreign_tables=None) -> Translation:
    '''
    Translate ``relation`` for ``dialect``. Translations without transfer tables are
    cached on the Relation per dialect.
    '''
    key = (dialect.name, dialect.literal_binds)
    cacheable = not foreign_tables
    if cacheable and key in relation._translations:
        return relation._translations[key]

    translator = Translator(dialect, relation.session, foreign_tables)
    translation = translator.translate(relation)
    logger.debug(f'Translated relation {relation.id}:\n{translation.text}')

    if cacheable:
        relation._translations[key] = translation

    return translation
