"""
SQLAlchemy records for the OAuth2 server: users, clients, access tokens and the audit log.
Records stay inside the store; callers get the frozen dataclasses from entities.py.
"""
import json
from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from oauth2_server.entities import Client, Token, User, utc_now


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything we write is UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _load_list(raw: str | None) -> tuple[str, ...]:
    return tuple(json.loads(raw)) if raw else ()


class Base(DeclarativeBase):
    pass


class UserRecord(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    # bcrypt hash of the generated service-identity password; never leaves the store
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # JSON array of granted scope labels
    scopes: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    def to_entity(self, populate: tuple[str, ...] = ()) -> User:
        return User(id=self.id, username=self.username, scopes=_load_list(self.scopes))


class ClientRecord(Base):
    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    client_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    client_secret: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    # JSON array of grant types, e.g. ["client_credentials"]
    grants: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    # Service identity for client_credentials clients; None otherwise
    user_ref: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    user: Mapped[UserRecord | None] = relationship(UserRecord, lazy="raise")

    def to_entity(self, populate: tuple[str, ...] = ()) -> Client:
        return Client(
            id=self.id,
            client_id=self.client_id,
            client_secret=self.client_secret,
            name=self.name,
            grants=_load_list(self.grants),
            user_ref=self.user_ref,
            user=self.user.to_entity() if "user" in populate and self.user else None,
        )


class TokenRecord(Base):
    __tablename__ = "tokens"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    access_token: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    scopes: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    client_ref: Mapped[int] = mapped_column(ForeignKey("clients.id"), nullable=False, index=True)
    user_ref: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    client: Mapped[ClientRecord] = relationship(ClientRecord, lazy="raise")
    user: Mapped[UserRecord] = relationship(UserRecord, lazy="raise")

    def to_entity(self, populate: tuple[str, ...] = ()) -> Token:
        return Token(
            id=self.id,
            access_token=self.access_token,
            expires_at=_as_utc(self.expires_at),
            scopes=_load_list(self.scopes),
            client_ref=self.client_ref,
            user_ref=self.user_ref,
            client=self.client.to_entity() if "client" in populate and self.client else None,
            user=self.user.to_entity() if "user" in populate and self.user else None,
        )


class AuditLog(Base):
    """Security events from the token endpoint. No tokens or secrets stored."""
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    client_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    user_id: Mapped[int | None] = mapped_column(nullable=True)
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)  # success | fail
