"""
Entity store: find/create/update for clients, users and tokens on top of SQLAlchemy.
Translates entity operations into queries and nothing more; business rules live in oauth2_model.py.
"""
import json
import operator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from oauth2_server.entities import Client, Condition, EntityKind, Token, User
from oauth2_server.models import ClientRecord, TokenRecord, UserRecord

Entity = Client | User | Token

_RECORDS = {
    EntityKind.CLIENT: ClientRecord,
    EntityKind.USER: UserRecord,
    EntityKind.TOKEN: TokenRecord,
}
_KINDS = {Client: EntityKind.CLIENT, User: EntityKind.USER, Token: EntityKind.TOKEN}
_RELATIONSHIPS = {
    EntityKind.CLIENT: {"user"},
    EntityKind.USER: set(),
    EntityKind.TOKEN: {"client", "user"},
}
_OPERATORS = {"eq": operator.eq, "gt": operator.gt}
# Stored as JSON text
_LIST_FIELDS = {"grants", "scopes"}


class StoreError(Exception):
    """The backing store failed (connectivity, query or constraint error)."""


class EntityStore(Protocol):
    async def find_one(
        self, kind: EntityKind, *conditions: Condition, populate: tuple[str, ...] = ()
    ) -> Entity | None: ...

    async def find_many(self, kind: EntityKind, *conditions: Condition) -> list[Entity]: ...

    async def create(self, kind: EntityKind, fields: dict[str, Any]) -> Entity | None: ...

    async def update(self, instance: Entity, fields: dict[str, Any]) -> Entity | None: ...

    async def delete(self, instance: Entity) -> bool: ...


def _column(record, name: str):
    if name not in record.__table__.columns:
        raise ValueError(f"{record.__tablename__} has no field {name!r}")
    return getattr(record, name)


def _encode(name: str, value: Any) -> Any:
    if name in _LIST_FIELDS and value is not None:
        return json.dumps(list(value))
    # SQLite keeps the wall-clock value and drops tzinfo; store everything as UTC
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(timezone.utc)
    return value


def _encode_fields(record, fields: dict[str, Any]) -> dict[str, Any]:
    encoded = {}
    for name, value in fields.items():
        _column(record, name)
        encoded[name] = _encode(name, value)
    return encoded


def _where(record, conditions: tuple[Condition, ...]) -> list:
    clauses = []
    for cond in conditions:
        op = _OPERATORS.get(cond.op)
        if op is None:
            raise ValueError(f"Unsupported operator {cond.op!r}")
        clauses.append(op(_column(record, cond.field), _encode(cond.field, cond.value)))
    return clauses


class SQLAlchemyEntityStore:
    """EntityStore backed by an async SQLAlchemy session factory. One session per operation."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @asynccontextmanager
    async def _session(self):
        try:
            async with self.session_factory() as session:
                yield session
        except SQLAlchemyError as exc:
            raise StoreError(str(exc)) from exc

    def _select(self, kind: EntityKind, conditions: tuple[Condition, ...], populate: tuple[str, ...] = ()):
        kind = EntityKind(kind)
        record = _RECORDS[kind]
        unknown = set(populate) - _RELATIONSHIPS[kind]
        if unknown:
            raise ValueError(f"Cannot populate {sorted(unknown)} on {kind.value}")
        stmt = select(record)
        clauses = _where(record, conditions)
        if clauses:
            stmt = stmt.where(*clauses)
        for name in populate:
            stmt = stmt.options(selectinload(getattr(record, name)))
        return stmt

    async def find_one(
        self, kind: EntityKind, *conditions: Condition, populate: tuple[str, ...] = ()
    ) -> Entity | None:
        stmt = self._select(kind, conditions, populate).limit(1)
        async with self._session() as session:
            row = (await session.execute(stmt)).scalars().first()
            return row.to_entity(populate) if row is not None else None

    async def find_many(self, kind: EntityKind, *conditions: Condition) -> list[Entity]:
        record = _RECORDS[EntityKind(kind)]
        stmt = self._select(kind, conditions).order_by(record.id)
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [row.to_entity() for row in rows]

    async def create(self, kind: EntityKind, fields: dict[str, Any]) -> Entity | None:
        record = _RECORDS[EntityKind(kind)]
        row = record(**_encode_fields(record, fields))
        async with self._session() as session:
            session.add(row)
            await session.commit()
            await session.refresh(row)
            return row.to_entity()

    async def update(self, instance: Entity, fields: dict[str, Any]) -> Entity | None:
        """Apply fields to the stored record behind instance. None if that record is gone."""
        kind = _KINDS.get(type(instance))
        if kind is None:
            raise ValueError(f"Not an entity: {type(instance).__name__}")
        if instance.id is None:
            return None
        record = _RECORDS[kind]
        values = _encode_fields(record, fields)
        async with self._session() as session:
            row = await session.get(record, instance.id)
            if row is None:
                return None
            for name, value in values.items():
                setattr(row, name, value)
            await session.commit()
            await session.refresh(row)
            return row.to_entity()

    async def delete(self, instance: Entity) -> bool:
        """Remove the stored record behind instance. False if there was nothing to remove."""
        kind = _KINDS.get(type(instance))
        if kind is None:
            raise ValueError(f"Not an entity: {type(instance).__name__}")
        if instance.id is None:
            return False
        async with self._session() as session:
            row = await session.get(_RECORDS[kind], instance.id)
            if row is None:
                return False
            await session.delete(row)
            await session.commit()
            return True
