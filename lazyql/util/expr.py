'''
Expression binding helpers.

Steps hold user expressions in a loose form (callables, SQLAlchemy expressions over
unbound ``sa.column()`` names, aggregation pairs). The same ``resolve`` routine is used
twice over a Relation's lifetime:

1. at construction time, against a namespace of placeholder columns, purely to check
   referenced names against the statically known column list
2. at translation time, against the real columns of the query being built, producing
   bound SQLAlchemy expressions
'''
import sqlalchemy as sa
from sqlalchemy.sql import visitors
from sqlalchemy.sql.elements import ClauseElement, ColumnClause


AGGREGATE_ALIASES = {
    'mean': 'avg',
    'n':    'count',
}


class UnknownColumn(KeyError):
    def __init__(self, name, available=None):
        super().__init__(name)

        self.name      = name
        self.available = available


class ColumnNamespace:
    '''
    Name-indexed column access handed to expression callables, e.g. ``c.a`` or
    ``c['a']``.

    Parameters:
        columns: mapping from output column name to a SQLAlchemy column expression. If
                 ``None``, the column list is unknown and any name resolves to an unbound
                 ``sa.column`` (the engine gets the final say).
    '''
    def __init__(self, columns: dict | None):
        self._columns = columns

    @classmethod
    def placeholders(cls, names):
        if names is None:
            return cls(None)
        return cls({ name: sa.column(name) for name in names })

    @property
    def known(self):
        return self._columns is not None

    def keys(self):
        if self._columns is None:
            return []
        return list(self._columns.keys())

    def __contains__(self, name):
        return self._columns is None or name in self._columns

    def __getitem__(self, name):
        if self._columns is None:
            return sa.column(name)

        if name not in self._columns:
            raise UnknownColumn(name, available=self.keys())

        return self._columns[name]

    def __getattr__(self, name):
        if name.startswith('__'):
            raise AttributeError(name)
        return self[name]


def _is_unbound_column(element):
    return (
        isinstance(element, ColumnClause)
        and element.table is None
        and not element.is_literal
    )

def rebind(expression: ClauseElement, namespace: ColumnNamespace):
    '''
    Swap unbound ``sa.column(<name>)`` references in an expression for the columns of
    the provided namespace. Bound columns and literal columns are left alone.
    '''
    def replace(element):
        if _is_unbound_column(element):
            return namespace[element.name]
        return None

    return visitors.replacement_traverse(expression, {}, replace)

def aggregate_function(func_name: str, column, namespace: ColumnNamespace):
    if func_name == 'count_distinct':
        return sa.func.count(sa.distinct(namespace[column]))

    func = getattr(sa.func, AGGREGATE_ALIASES.get(func_name, func_name))
    if column == '*':
        return func()

    return func(namespace[column])

def resolve(spec, namespace: ColumnNamespace):
    '''
    Bind an expression spec to the provided namespace.

    Parameters:
        spec: one of
              - SQLAlchemy expression (unbound names are rebound)
              - ``(function, column)`` pair, ``column`` may be ``'*'``
              - a column name string
              - callable taking the namespace and returning any of the above or a
                plain Python literal
    '''
    if isinstance(spec, ClauseElement):
        return rebind(spec, namespace)

    if isinstance(spec, tuple):
        func_name, column = spec
        return aggregate_function(func_name, column, namespace)

    if isinstance(spec, str):
        return namespace[spec]

    if callable(spec):
        result = spec(namespace)

        if isinstance(result, ClauseElement):
            return rebind(result, namespace)

        return sa.literal(result)

    raise TypeError(f'Unsupported expression type "{type(spec).__name__}"')
