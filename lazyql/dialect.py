'''
Dialect profiles

A DialectProfile bundles what the Translator needs to know about the target query
language: the SQLAlchemy dialect used to compile statements, and whether bound
parameters are rendered inline when producing human-readable query text.

Profiles for common dialects are available by name through ``get_dialect``; sessions
default to the profile of their connected engine.
'''
import importlib

import sqlalchemy as sa


DIALECT_MODULES = {
    'sqlite':     'sqlalchemy.dialects.sqlite',
    'postgresql': 'sqlalchemy.dialects.postgresql',
    'mysql':      'sqlalchemy.dialects.mysql',
    'mssql':      'sqlalchemy.dialects.mssql',
    'oracle':     'sqlalchemy.dialects.oracle',
}
DIALECT_ALIASES = {
    'postgres': 'postgresql',
    'pg':       'postgresql',
    'mariadb':  'mysql',
}


class DialectProfile:
    def __init__(self, name: str, sa_dialect: sa.Dialect, literal_binds: bool = True):
        self.name          = name
        self.sa_dialect    = sa_dialect
        self.literal_binds = literal_binds

    def __repr__(self):
        return f'DialectProfile({self.name!r})'

    @classmethod
    def from_engine(cls, engine: sa.Engine, **kwargs):
        return cls(engine.dialect.name, engine.dialect, **kwargs)

    def compile(self, statement) -> str:
        '''
        Render a statement as query text in this dialect. With ``literal_binds``,
        parameters are inlined so the text can be read (or copied) standalone.
        '''
        compile_kwargs = {}
        if self.literal_binds:
            compile_kwargs['literal_binds'] = True

        compiled = statement.compile(
            dialect=self.sa_dialect,
            compile_kwargs=compile_kwargs,
        )
        return str(compiled)


def get_dialect(name: str | DialectProfile | None, **kwargs) -> DialectProfile | None:
    '''
    Resolve a dialect profile by name. Profiles are passed through unchanged, and
    ``None`` stays ``None`` (callers fall back to their engine's dialect).
    '''
    if name is None or isinstance(name, DialectProfile):
        return name

    key = DIALECT_ALIASES.get(name.lower(), name.lower())
    if key not in DIALECT_MODULES:
        raise ValueError(
            f'Unknown dialect "{name}"; expected one of {sorted(DIALECT_MODULES)}'
        )

    module = importlib.import_module(DIALECT_MODULES[key])
    return DialectProfile(key, module.dialect(), **kwargs)

def same_dialect(profile: DialectProfile, sa_dialect: sa.Dialect) -> bool:
    '''
    Whether text rendered for ``profile`` is what ``sa_dialect`` would run, modulo the
    name aliases above (e.g., a MariaDB engine against the ``mysql`` profile).
    '''
    def canonical(name):
        return DIALECT_ALIASES.get(name.lower(), name.lower())

    return canonical(profile.name) == canonical(sa_dialect.name)
