from lazyql.util import db
from lazyql.util import expr
from lazyql.util import types
