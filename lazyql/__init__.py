'''
lazyql: lazily evaluated relational queries over SQLAlchemy.

Relations are built by chaining verbs (project, filter, aggregate, sort, join, raw
fragments). Nothing runs until a Relation is materialized, at which point its operation
log is translated into a single query and executed once against the owning Session's
connection.
'''

from lazyql.dialect   import DialectProfile, get_dialect
from lazyql.engine    import Engine
from lazyql.engines   import SQLEngine
from lazyql.errors    import (
    LazyQLError,
    SchemaError,
    TranslationError,
    CrossSessionError,
    ExecutionError,
    SessionError,
    SessionClosedError,
    UnknownTableError,
    AlreadyClosedError,
)
from lazyql.executor   import Executor, RealizedResult
from lazyql.relation   import Relation, UNKNOWN
from lazyql.session    import Session, SessionState, open_session
from lazyql.translator import Translation, Translator, translate

from lazyql import steps
from lazyql import util
