'''
Example usage for this file's utilities:

# normalize tuple rows against a column list
rows = db.normalize_rows([(1, 10), (2, 20)], columns=['a', 'b'])

# build a table definition with types inferred from row values
table = db.infer_table('t', sa.MetaData(), rows)

# convert raw results to dictionaries, keys corresponding to col names
result_dicts = db.result_dicts(connection.execute(sa.select(table)))
'''

import datetime
import decimal
import logging
from collections.abc import Mapping

import sqlalchemy as sa


logger = logging.getLogger(__name__)

# checked in order; bool must precede int
PY_TYPE_MAP = [
    (bool,              sa.Boolean),
    (int,               sa.Integer),
    (float,             sa.Float),
    (decimal.Decimal,   sa.Numeric),
    (str,               sa.String),
    (bytes,             sa.LargeBinary),
    (datetime.datetime, sa.DateTime),
    (datetime.date,     sa.Date),
    (datetime.time,     sa.Time),
]

def result_dicts(results, query_cols=None):
    '''
    Parse SQLAlchemy results into Python dicts. Leverages mappings to associate full
    column name context.

    If `query_cols` is provided, their names will be used for the keys of the returned
    dictionaries (in that order) instead of the cursor's own keys.
    '''
    result_mappings = results.mappings().all()

    if query_cols:
        return [
            { str(c):r[c] for c in query_cols }
            for r in result_mappings
        ]

    return [dict(r) for r in result_mappings]

def normalize_rows(rows, columns=None):
    '''
    Bring provided rows into a list of column-name indexed dicts.

    Parameters:
        rows:    iterable of mappings, or of sequences when ``columns`` is provided
        columns: column names for sequence rows; for mapping rows, restricts and orders
                 the kept keys
    '''
    normalized = []
    for i, row in enumerate(rows):
        if isinstance(row, Mapping):
            if columns is None:
                normalized.append(dict(row))
            else:
                normalized.append({ c:row.get(c) for c in columns })
            continue

        if columns is None:
            raise ValueError(
                f'Row {i} is a sequence; column names must be provided for sequence rows'
            )

        row = tuple(row)
        if len(row) != len(columns):
            raise ValueError(
                f'Row {i} has {len(row)} values, expected {len(columns)} ({columns})'
            )

        normalized.append(dict(zip(columns, row)))

    return normalized

def column_names(rows, columns=None):
    '''
    Column order for normalized rows: explicit ``columns`` if given, otherwise first-seen
    key order across all rows.
    '''
    if columns is not None:
        return list(columns)

    names = {}
    for row in rows:
        for key in row:
            names.setdefault(key, None)

    return list(names)

def infer_column_type(values):
    '''
    Pick a SQLAlchemy type for a column from its first non-null Python value. Falls
    back to String for all-null columns and unmapped value types.
    '''
    for value in values:
        if value is None:
            continue

        for py_type, sa_type in PY_TYPE_MAP:
            if isinstance(value, py_type):
                return sa_type

        logger.debug(f'No type mapping for value of type "{type(value).__name__}"')
        return sa.String

    return sa.String

def infer_table(name, metadata, rows, columns=None, temporary=False):
    names = column_names(rows, columns)

    sa_columns = [
        sa.Column(c, infer_column_type(r.get(c) for r in rows))
        for c in names
    ]

    prefixes = ['TEMPORARY'] if temporary else []
    return sa.Table(name, metadata, *sa_columns, prefixes=prefixes)

def index_name(table_name, column_group):
    return f'ix_{table_name}_{"_".join(column_group)}'

def chunked(rows, chunk_size):
    for i in range(0, len(rows), chunk_size):
        yield rows[i:i+chunk_size]
