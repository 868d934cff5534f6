from lazyql import Session
from lazyql import Relation
from lazyql import Executor
from lazyql import Translator
from lazyql import RealizedResult
from lazyql import open_session
from lazyql import get_dialect

from lazyql.engines import SQLEngine

from lazyql.errors import LazyQLError
from lazyql.errors import SchemaError
from lazyql.errors import TranslationError
from lazyql.errors import CrossSessionError
from lazyql.errors import ExecutionError
from lazyql.errors import SessionClosedError
from lazyql.errors import AlreadyClosedError
from lazyql.errors import UnknownTableError


def test_error_hierarchy():
    assert issubclass(CrossSessionError, TranslationError)
    assert issubclass(AlreadyClosedError, LazyQLError)
    assert issubclass(UnknownTableError, LazyQLError)

    for error in (SchemaError, TranslationError, ExecutionError, SessionClosedError):
        assert issubclass(error, LazyQLError)
