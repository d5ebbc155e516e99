"""Dialect-aware INSERT ... ON CONFLICT support."""

from typing import Any, Callable

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

_INSERTS: dict[str, Callable[..., Any]] = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def insert_for(session: AsyncSession) -> Callable[..., Any]:
    """Return the ``insert`` construct supporting ``on_conflict_do_*`` for the bound dialect."""
    dialect = session.get_bind().dialect.name
    try:
        return _INSERTS[dialect]
    except KeyError:
        raise NotImplementedError(f"Upserts are not supported on {dialect}") from None
