from typing import TypeVar

import sqlalchemy as sa


SQLSelectable = TypeVar('SQLSelectable', bound=sa.Table | sa.Subquery | sa.Join)
