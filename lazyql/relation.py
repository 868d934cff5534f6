'''
Relation

Immutable logical plan node. A Relation is either a base table bound to a Session, a
complete raw query, or a single transformation step applied to a parent Relation.
Transformation methods never execute anything; each returns a brand new Relation
wrapping one step, so the same chain of calls always denotes the same query:

.. code-block:: python

    t = session.load_table('t', [(1, 10), (2, 20), (3, 30)], columns=['a', 'b'])

    q = t.filter_by(lambda c: c.a > 1).project('b')
    q.show_query()   # translated text, nothing executed
    q.collect()      # translated once, executed once

Column names are tracked statically wherever they can be derived (base tables, project,
aggregate, join, raw fragments with declared columns). When they're known, references
to missing columns fail right away with a ``SchemaError``; otherwise checks are left to
the engine at materialization time.

Note: caches
    Relations hold two caches that are not part of their logical identity: translated
    query text per dialect, and the row count observed by the last completed
    materialization (``UNKNOWN`` until then). Neither can be set from outside.
'''
import logging
from uuid import uuid4
from collections.abc import Mapping

from lazyql import steps
from lazyql.errors import SchemaError
from lazyql.util.expr import ColumnNamespace, UnknownColumn, resolve


logger = logging.getLogger(__name__)


class _Unknown:
    def __repr__(self):
        return 'UNKNOWN'

    def __bool__(self):
        return False

UNKNOWN = _Unknown()


def _names(args):
    # accept project('a', 'b') as well as project(['a', 'b'])
    if len(args) == 1 and isinstance(args[0], (list, tuple)):
        return tuple(args[0])
    return tuple(args)


class Relation:
    def __init__(
        self,
        session,
        parent  : 'Relation | None'   = None,
        step    : steps.Step | None   = None,
        table   : str | None          = None,
        columns : tuple[str, ...] | None = None,
    ):
        '''
        Parameters:
            session: owning Session
            parent:  Relation this one was derived from (``None`` for base tables and
                     raw queries)
            step:    transformation step applied to ``parent``
            table:   base table name, for base Relations
            columns: output column names, or ``None`` if not statically known
        '''
        setattr_ = super().__setattr__
        setattr_('id',      uuid4().hex[:12])
        setattr_('session', session)
        setattr_('parent',  parent)
        setattr_('step',    step)
        setattr_('table',   table)
        setattr_('columns', tuple(columns) if columns is not None else None)

        setattr_('_translations', {})
        setattr_('_observed',     {})

    def __setattr__(self, name, value):
        raise AttributeError(f'Relation objects are immutable (tried to set "{name}")')

    def __delattr__(self, name):
        raise AttributeError(f'Relation objects are immutable (tried to delete "{name}")')

    def __repr__(self):
        label = self.step.describe() if self.step is not None else f'table({self.table})'
        cols  = '?' if self.columns is None else ', '.join(self.columns)
        return f'<Relation {self.id}: {label} [{cols}]>'

    @property
    def is_base(self):
        return self.parent is None

    @property
    def row_count(self):
        return self._observed.get('row_count', UNKNOWN)

    def _record_row_count(self, count):
        self._observed['row_count'] = count

    def base(self) -> 'Relation':
        '''
        Nearest base Relation (table or raw query) up the parent chain.
        '''
        relation = self
        while relation.parent is not None:
            relation = relation.parent
        return relation

    def operation_log(self) -> list[steps.Step]:
        '''
        Ordered transformation steps from the nearest base to this Relation. A raw query
        base contributes its own fragment as the first entry.
        '''
        log = []
        relation = self
        while relation is not None:
            if relation.step is not None:
                log.append(relation.step)
            relation = relation.parent

        return list(reversed(log))

    def explain(self, indent=0) -> str:
        '''
        Readable rendering of the operation log, with join inputs nested below their
        join step.
        '''
        pad = '  ' * indent

        base = self.base()
        if base.table is not None:
            lines = [f'{pad}table {base.table} [{", ".join(base.columns or [])}]']
        else:
            lines = []

        for step in self.operation_log():
            lines.append(f'{pad}-> {step.describe()}')
            if isinstance(step, steps.Join):
                lines.append(step.other.explain(indent + 2))

        return '\n'.join(lines)

    # -- static checks --------------------------------------------------------------------

    def _schema_error(self, step, column, what='column'):
        available = list(self.columns) if self.columns is not None else None
        return SchemaError(
            f'Unknown {what} "{column}" in {step.describe()} on relation {self.id}; '
            f'available columns: {available}',
            relation_id=self.id,
            step=step,
            column=column,
            available=available,
        )

    def _check_columns(self, names, step):
        if self.columns is None:
            return

        for name in names:
            if name not in self.columns:
                raise self._schema_error(step, name)

    def _check_expression(self, spec, step):
        try:
            resolve(spec, ColumnNamespace.placeholders(self.columns))
        except UnknownColumn as e:
            raise self._schema_error(step, e.name) from None

    def _derive(self, step, columns):
        self.session._check_open()

        if columns is not None and len(set(columns)) != len(columns):
            dupes = sorted({ c for c in columns if list(columns).count(c) > 1 })
            raise ValueError(f'{step.describe()} produces duplicate column names {dupes}')

        return Relation(self.session, parent=self, step=step, columns=columns)

    # -- transformations ------------------------------------------------------------------

    def project(self, *columns, **derived) -> 'Relation':
        '''
        Keep the named columns, in order, optionally adding derived columns.

        Parameters:
            columns: names of columns to keep (or a single list of names)
            derived: new column name to expression, e.g. ``b2=lambda c: c.b * 2``
        '''
        columns = _names(columns)
        step = steps.Project(columns, tuple(derived.items()))

        if not columns and not derived:
            raise ValueError('project() needs at least one column')

        self._check_columns(columns, step)
        for _, spec in step.derived:
            self._check_expression(spec, step)

        return self._derive(step, columns + tuple(derived))

    def filter_by(self, predicate) -> 'Relation':
        '''
        Keep rows satisfying ``predicate``. Successive filters compose with AND.

        Parameters:
            predicate: callable over the column namespace (``lambda c: c.a > 1``) or a
                       SQLAlchemy expression over ``sa.column()`` names
        '''
        step = steps.Filter(predicate)
        self._check_expression(predicate, step)

        return self._derive(step, self.columns)

    def group_aggregate(
        self,
        group_keys   = (),
        aggregations : Mapping | None = None,
        **named_aggregations,
    ) -> 'Relation':
        '''
        Group rows by ``group_keys`` and compute one output row per group. With no keys,
        the whole relation is a single group.

        Parameters:
            group_keys:   column name or list of column names
            aggregations: output name to aggregation spec, e.g.
                          ``{'count': ('count', '*'), 'total': ('sum', 'b')}``; keyword
                          arguments are merged in
        '''
        if isinstance(group_keys, str):
            group_keys = (group_keys,)
        group_keys = tuple(group_keys)

        aggregations = { **(aggregations or {}), **named_aggregations }
        step = steps.Aggregate(group_keys, tuple(aggregations.items()))

        if not group_keys and not aggregations:
            raise ValueError('group_aggregate() needs group keys or aggregations')

        self._check_columns(group_keys, step)
        for _, spec in step.aggregations:
            self._check_expression(spec, step)

        return self._derive(step, group_keys + tuple(aggregations))

    def sort_by(self, *keys, directions=None) -> 'Relation':
        '''
        Order rows by ``keys``. Directions are ``'asc'`` or ``'desc'``; a ``-`` prefix on
        a key is shorthand for descending. Keys of a later sort take precedence over
        those of an earlier one.
        '''
        keys = _names(keys)
        if not keys:
            raise ValueError('sort_by() needs at least one key')

        if directions is None:
            directions = ['desc' if k.startswith('-') else 'asc' for k in keys]
            keys = tuple(k.lstrip('-') for k in keys)
        elif isinstance(directions, str):
            directions = [directions] * len(keys)

        directions = tuple(d.lower() for d in directions)
        if len(directions) != len(keys):
            raise ValueError(
                f'sort_by() got {len(keys)} keys but {len(directions)} directions'
            )
        for direction in directions:
            if direction not in steps.SORT_DIRECTIONS:
                raise ValueError(f'Unknown sort direction "{direction}"')

        step = steps.Sort(keys, directions)
        self._check_columns(keys, step)

        return self._derive(step, self.columns)

    def join(
        self,
        other         : 'Relation',
        on            = None,
        kind          : str = 'inner',
        suffixes      : tuple[str, str] = ('_x', '_y'),
        cross_session : bool = False,
    ) -> 'Relation':
        '''
        Join with another Relation.

        Parameters:
            other:         right-hand Relation
            on:            column name, list of names shared by both sides, mapping from
                           left to right names, or list of ``(left, right)`` pairs. If
                           ``None``, joins on all common column names.
            kind:          ``'inner'``, ``'left'``, ``'right'`` or ``'full'``
            suffixes:      applied to non-key columns present on both sides
            cross_session: allow ``other`` to belong to a different Session. It will be
                           pulled in full into this Relation's Session when materialized,
                           which is unsuitable for large inputs.
        '''
        if not isinstance(other, Relation):
            raise TypeError(f'Can only join Relations, got "{type(other).__name__}"')

        if kind not in steps.JOIN_KINDS:
            raise ValueError(f'Unknown join kind "{kind}"; expected one of {steps.JOIN_KINDS}')

        if on is None:
            if self.columns is None or other.columns is None:
                raise ValueError('Join keys must be given when column names are not known')
            on = [c for c in self.columns if c in other.columns]
            if not on:
                raise ValueError(f'No common columns to join relations {self.id} and {other.id}')

        if isinstance(on, str):
            pairs = ((on, on),)
        elif isinstance(on, Mapping):
            pairs = tuple(on.items())
        else:
            pairs = tuple(
                (k, k) if isinstance(k, str) else tuple(k)
                for k in on
            )

        if not pairs:
            raise ValueError('join() needs at least one pair of key columns')

        step = steps.Join(other, pairs, kind, tuple(suffixes), cross_session)

        self._check_columns([l for l, _ in pairs], step)
        if other.columns is not None:
            for _, right in pairs:
                if right not in other.columns:
                    raise other._schema_error(step, right)

        columns = None
        if self.columns is not None and other.columns is not None:
            columns = tuple(name for name, _, _ in step.layout(self.columns, other.columns))

        return self._derive(step, columns)

    def inject_raw(self, text: str, columns=None) -> 'Relation':
        '''
        Escape hatch for anything the verbs above can't express. ``text`` is used verbatim
        (never validated) and must reference this Relation's query through the ``{input}``
        placeholder, e.g. ``"SELECT a, b FROM {input} WHERE b GLOB '1*'"``. The
        placeholder may appear more than once; each occurrence is aliased separately.

        Parameters:
            columns: output column names of the fragment, if known. When omitted,
                     downstream column checks are deferred to the engine.
        '''
        if steps.INPUT_PLACEHOLDER not in text:
            raise ValueError(
                f'Raw fragment must contain the {steps.INPUT_PLACEHOLDER} placeholder'
            )

        step = steps.RawQueryFragment(text, tuple(columns) if columns is not None else None)
        return self._derive(step, step.columns)

    def limit(self, count: int) -> 'Relation':
        if not isinstance(count, int) or count < 0:
            raise ValueError(f'limit() needs a non-negative integer, got {count!r}')

        return self._derive(steps.Limit(count), self.columns)

    def distinct(self) -> 'Relation':
        return self._derive(steps.Distinct(), self.columns)

    # -- realization ----------------------------------------------------------------------

    def show_query(self) -> str:
        return self.session.executor.peek_query_text(self)

    def collect(self):
        return self.session.executor.materialize(self)
