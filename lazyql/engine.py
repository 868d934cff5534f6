'''
Engine

Thin contract for the backing relational store. lazyql never executes anything itself;
everything that touches storage goes through an Engine:

- ``execute``: run a query and return named rows
- ``create_table`` / ``create_index``: bulk-load and indexing primitives used by
  ``Session.load_table``
- catalog lookups (``has_table``, ``reflect_columns``, ``table_names``)

Engines are generic up to the connection type C handed out by ``connect()``. The
underlying driver object (e.g., a SQLAlchemy engine) is created lazily and exposed as
``manager``.
'''
import logging
from typing import Generic, TypeVar


logger = logging.getLogger(__name__)


C = TypeVar('C')


class Engine(Generic[C]):
    def __init__(self, *manager_args, **manager_kwargs):
        self.manager_args   = manager_args
        self.manager_kwargs = manager_kwargs

        self._manager = None

    @property
    def manager(self):
        if self._manager is None:
            self._manager = self._create_manager()
        return self._manager

    def _create_manager(self):
        raise NotImplementedError

    def connect(self) -> C:
        raise NotImplementedError

    def execute(self, connection: C, statement, bind_params=None):
        '''
        Execute a statement, returning a ``(rows, columns)`` pair where rows are
        column-name indexed dicts.
        '''
        raise NotImplementedError

    def create_table(self, connection: C, name, rows, columns=None, **kwargs):
        raise NotImplementedError

    def create_index(self, connection: C, name, column_groups):
        raise NotImplementedError

    def drop_table(self, connection: C, name):
        raise NotImplementedError

    def has_table(self, connection: C, name) -> bool:
        raise NotImplementedError

    def reflect_columns(self, connection: C, name) -> list[str]:
        raise NotImplementedError

    def table_names(self, connection: C) -> list[str]:
        raise NotImplementedError

    def interrupt(self, connection: C) -> bool:
        '''
        Attempt to cancel a statement running on ``connection`` from another thread.
        Returns whether the driver exposed a way to do so.
        '''
        return False

    def dispose(self):
        self._manager = None
