"""Dialect-aware INSERT for ON CONFLICT upserts.

Postgres in production, SQLite in tests; both expose on_conflict_do_update,
on_conflict_do_nothing and RETURNING with the same call shape.
"""
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession


def insert_for(session: AsyncSession, model):
    if session.get_bind().dialect.name == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)
