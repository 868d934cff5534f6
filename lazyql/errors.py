'''
Errors

Exception hierarchy for lazyql. Errors are split by when they surface:

- Construction-time: ``SchemaError`` and ``UnknownTableError`` are raised by the call
  that builds the offending Relation (or binds the missing table).
- Realization-time: ``TranslationError``, ``CrossSessionError`` and ``ExecutionError``
  are only raised once a Relation is translated, i.e., by ``materialize`` or
  ``peek_query_text``. Building a Relation never raises them.

Session state errors (``SessionClosedError``, ``AlreadyClosedError``) can surface from
either side. Nothing here is retried automatically.
'''


class LazyQLError(Exception):
    '''
    Base class for all lazyql errors.
    '''


class SchemaError(LazyQLError):
    def __init__(self, message, relation_id=None, step=None, column=None, available=None):
        super().__init__(message)

        self.relation_id = relation_id
        self.step        = step
        self.column      = column
        self.available   = available


class TranslationError(LazyQLError):
    def __init__(self, message, relation_id=None, step=None):
        super().__init__(message)

        self.relation_id = relation_id
        self.step        = step


class CrossSessionError(TranslationError):
    '''
    Raised when a Join combines Relations bound to different Sessions without the
    ``cross_session`` flag.
    '''


class ExecutionError(LazyQLError):
    '''
    The engine rejected or failed to run translated query text.

    Parameters:
        relation_id:    id of the Relation being materialized
        query:          query text that was sent to the engine
        engine_message: underlying driver/engine message
    '''
    def __init__(self, message, relation_id=None, query=None, engine_message=None):
        super().__init__(message)

        self.relation_id    = relation_id
        self.query          = query
        self.engine_message = engine_message


class SessionError(LazyQLError):
    def __init__(self, message, session_id=None):
        super().__init__(message)

        self.session_id = session_id


class SessionClosedError(SessionError):
    pass


class AlreadyClosedError(SessionError):
    pass


class UnknownTableError(SessionError):
    def __init__(self, message, session_id=None, table=None):
        super().__init__(message, session_id=session_id)

        self.table = table
