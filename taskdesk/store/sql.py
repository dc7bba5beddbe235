"""
Relational store backed by SQLAlchemy's async engine and the SQLModel tables.

Unlike the REST store this backend supports atomic(): writes issued inside
the block share one session and commit together, so organization
provisioning needs no compensating delete here.
"""

from __future__ import annotations

import os
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from contextvars import ContextVar
from typing import Any, Iterable, Mapping

import structlog
from sqlalchemy import delete as sa_delete
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel, select

from taskdesk_shared.schemas.common import (
    MEMBERSHIPS_TABLE,
    ORGANIZATIONS_TABLE,
    PROFILES_TABLE,
)

from ..errors import StoreError, TransportError, UniquenessError
from ..models import Organization, OrganizationUser, UserProfile
from .base import Filters, is_multi_value, project

log = structlog.get_logger()

UNDEFINED_COLUMN = "42703"
UNDEFINED_TABLE = "42P01"

_MODELS: dict[str, type[SQLModel]] = {
    ORGANIZATIONS_TABLE: Organization,
    MEMBERSHIPS_TABLE: OrganizationUser,
    PROFILES_TABLE: UserProfile,
}


def _is_unique_violation(exc: IntegrityError) -> bool:
    text = str(exc.orig or exc).lower()
    return "unique" in text or "duplicate key" in text or "primary key" in text


@contextmanager
def _translate_errors(operation: str, table: str | None = None) -> Iterator[None]:
    try:
        yield
    except IntegrityError as exc:
        message = str(exc.orig or exc)
        if _is_unique_violation(exc):
            raise UniquenessError(message, code="23505", table=table) from exc
        raise StoreError(message, code="23000", table=table) from exc
    except (OperationalError, InterfaceError) as exc:
        log.warning("sql_store.unavailable", operation=operation, error=str(exc))
        raise TransportError(str(exc.orig or exc), table=table) from exc
    except SQLAlchemyError as exc:
        raise StoreError(str(exc), table=table) from exc


class SqlStore:
    """Store contract over an async SQLAlchemy engine."""

    def __init__(self, database_url: str, *, echo: bool = False):
        self._database_url = database_url
        self._echo = echo
        self._engine: AsyncEngine | None = None
        self._session_factory: sessionmaker | None = None
        self._active: ContextVar[AsyncSession | None] = ContextVar(
            f"taskdesk_sql_session_{id(self)}", default=None
        )

    async def open(self) -> None:
        if self._engine:
            return
        url = make_url(self._database_url)
        if url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):
            os.makedirs(os.path.dirname(url.database) or ".", exist_ok=True)

        self._engine = create_async_engine(self._database_url, echo=self._echo, future=True)
        self._session_factory = sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def close(self) -> None:
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None

    async def create_schema(self) -> None:
        """Create all tables (development and tests; hosted stores manage their own schema)."""
        assert self._engine, "SqlStore.open() must be called first"
        with _translate_errors("create_schema"):
            async with self._engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

    # --- Transactions ---

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        """Run the enclosed operations in one transaction. Nested blocks join the outer one."""
        if self._active.get() is not None:
            yield
            return

        assert self._session_factory, "SqlStore.open() must be called first"
        async with self._session_factory() as session:
            token = self._active.set(session)
            try:
                yield
                with _translate_errors("commit"):
                    await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                self._active.reset(token)

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        active = self._active.get()
        if active is not None:
            yield active
            return

        assert self._session_factory, "SqlStore.open() must be called first"
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    # --- Contract ---

    async def insert(self, table: str, record: Mapping[str, Any]) -> dict[str, Any]:
        model = self._model(table)
        self._check_columns(model, table, record.keys())
        with _translate_errors("insert", table):
            async with self._session() as session:
                row = model(**record)
                session.add(row)
                await session.flush()
                await session.refresh(row)
                return row.model_dump()

    async def select(
        self,
        table: str,
        filters: Filters | None = None,
        columns: Iterable[str] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        model = self._model(table)
        columns = list(columns) if columns is not None else None
        self._check_columns(model, table, list((filters or {}).keys()) + (columns or []))

        stmt = select(model)
        for column, value in (filters or {}).items():
            stmt = stmt.where(_condition(model, column, value))
        if limit is not None:
            stmt = stmt.limit(limit)

        with _translate_errors("select", table):
            async with self._session() as session:
                result = await session.execute(stmt)
                rows = result.scalars().all()
        return [project(row.model_dump(), columns) for row in rows]

    async def delete(self, table: str, filters: Filters) -> int:
        if not filters:
            raise ValueError("Refusing to delete without filters")
        model = self._model(table)
        self._check_columns(model, table, filters.keys())

        stmt = sa_delete(model)
        for column, value in filters.items():
            stmt = stmt.where(_condition(model, column, value))

        with _translate_errors("delete", table):
            async with self._session() as session:
                result = await session.execute(stmt)
                return result.rowcount or 0

    # --- Internals ---

    @staticmethod
    def _model(table: str) -> type[SQLModel]:
        try:
            return _MODELS[table]
        except KeyError:
            raise StoreError(f'relation "{table}" does not exist', code=UNDEFINED_TABLE) from None

    @staticmethod
    def _check_columns(model: type[SQLModel], table: str, columns: Iterable[str]) -> None:
        for column in columns:
            if column not in model.model_fields:
                raise StoreError(
                    f'column "{column}" of relation "{table}" does not exist',
                    code=UNDEFINED_COLUMN,
                )


def _condition(model: type[SQLModel], column: str, value: Any):
    attr = getattr(model, column)
    if value is None:
        return attr.is_(None)
    if is_multi_value(value):
        return attr.in_(list(value))
    return attr == value
