'''
Steps

Transformation steps attached to Relations. Each step is a small frozen record of the
arguments to a single verb (project, filter, aggregate, ...), carrying only what the
Translator needs to regenerate query text. Steps never execute anything.

Expressions held by steps (predicates, derived columns, aggregations) can be given in a
few forms; see ``lazyql.util.expr.resolve`` for how they're bound to concrete columns at
translation time:

- a callable receiving the current column namespace, e.g. ``lambda c: c.a > 1``
- a SQLAlchemy expression over unbound names, e.g. ``sa.column('a') > 1``
- (aggregations only) a ``(function, column)`` pair, e.g. ``('sum', 'b')`` or
  ``('count', '*')``
'''
from dataclasses import dataclass
from typing import Any


JOIN_KINDS = ('inner', 'left', 'right', 'full')
SORT_DIRECTIONS = ('asc', 'desc')
INPUT_PLACEHOLDER = '{input}'


@dataclass(frozen=True, eq=False)
class Step:
    def describe(self) -> str:
        return type(self).__name__.lower()

    def __str__(self):
        return self.describe()


@dataclass(frozen=True, eq=False)
class Project(Step):
    columns : tuple[str, ...]
    derived : tuple[tuple[str, Any], ...] = ()

    def describe(self):
        names = list(self.columns) + [name for name, _ in self.derived]
        return f'project({", ".join(names)})'


@dataclass(frozen=True, eq=False)
class Filter(Step):
    predicate: Any

    def describe(self):
        return f'filter({self.predicate!r})'


@dataclass(frozen=True, eq=False)
class Aggregate(Step):
    group_keys   : tuple[str, ...]
    aggregations : tuple[tuple[str, Any], ...]

    def describe(self):
        aggs = ', '.join(name for name, _ in self.aggregations)
        return f'aggregate(by=[{", ".join(self.group_keys)}], {aggs})'


@dataclass(frozen=True, eq=False)
class Sort(Step):
    keys       : tuple[str, ...]
    directions : tuple[str, ...]

    def describe(self):
        keys = ', '.join(f'{k} {d}' for k, d in zip(self.keys, self.directions))
        return f'sort({keys})'


@dataclass(frozen=True, eq=False)
class Join(Step):
    '''
    Parameters:
        other:         right-hand Relation
        on:            (left column, right column) pairs
        kind:          one of ``JOIN_KINDS``
        suffixes:      suffixes applied to non-key columns present on both sides
        cross_session: allow ``other`` to live in a different Session, pulling it into
                       the left side's Session at materialization time
    '''
    other         : Any
    on            : tuple[tuple[str, str], ...]
    kind          : str = 'inner'
    suffixes      : tuple[str, str] = ('_x', '_y')
    cross_session : bool = False

    def describe(self):
        on = ', '.join(l if l == r else f'{l}={r}' for l, r in self.on)
        return f'{self.kind}_join({self.other.id}, on=[{on}])'

    def layout(self, left_columns, right_columns):
        '''
        Output column layout for the join: left columns in order, then right columns
        minus the right-hand join keys. Names present on both sides (outside the keys)
        get the left/right suffix.

        Returns:
            list of ``(output name, side, source column)`` triples, side being ``'left'``
            or ``'right'``
        '''
        right_keys = { r for _, r in self.on }
        right_rest = [c for c in right_columns if c not in right_keys]
        collide    = set(left_columns) & set(right_rest)

        sx, sy = self.suffixes
        layout = [
            (c + sx if c in collide else c, 'left', c)
            for c in left_columns
        ]
        layout.extend(
            (c + sy if c in collide else c, 'right', c)
            for c in right_rest
        )

        return layout


@dataclass(frozen=True, eq=False)
class RawQueryFragment(Step):
    '''
    Verbatim dialect text. When attached to a derived Relation the text must contain the
    ``{input}`` placeholder, which is swapped for the parent query (as an aliased
    subquery). Fragments are never checked against the schema.
    '''
    text    : str
    columns : tuple[str, ...] | None = None

    def describe(self):
        text = ' '.join(self.text.split())
        if len(text) > 60:
            text = text[:57] + '...'
        return f'raw({text!r})'


@dataclass(frozen=True, eq=False)
class Limit(Step):
    count: int

    def describe(self):
        return f'limit({self.count})'


@dataclass(frozen=True, eq=False)
class Distinct(Step):
    pass
