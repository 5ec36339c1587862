"""
Entities that cross the store boundary, plus the small condition language used to query them.

Entities are frozen: the store hands out fresh instances and the only way to change a
persisted entity is EntityStore.update.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, NamedTuple

GRANT_CLIENT_CREDENTIALS = "client_credentials"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EntityKind(str, Enum):
    CLIENT = "client"
    USER = "user"
    TOKEN = "token"


@dataclass(frozen=True)
class User:
    id: int
    username: str
    scopes: tuple[str, ...] = ()


@dataclass(frozen=True)
class Client:
    id: int
    client_id: str
    client_secret: str
    name: str = ""
    grants: tuple[str, ...] = ()
    user_ref: int | None = None
    # Only set when the lookup asked for populate=("user",)
    user: User | None = field(default=None, compare=False)

    def allows_grant(self, grant_type: str) -> bool:
        return grant_type in self.grants


@dataclass(frozen=True)
class Token:
    access_token: str
    expires_at: datetime | None
    scopes: tuple[str, ...] = ()
    client_ref: int | None = None
    user_ref: int | None = None
    id: int | None = None
    client: Client | None = field(default=None, compare=False)
    user: User | None = field(default=None, compare=False)

    def is_active(self, now: datetime) -> bool:
        """True only when expires_at is set and strictly after now."""
        return self.expires_at is not None and self.expires_at > now

    def expires_in(self, now: datetime) -> int:
        """Whole seconds until expiry (0 once expired)."""
        if self.expires_at is None:
            return 0
        return max(0, int((self.expires_at - now).total_seconds()))


class Condition(NamedTuple):
    field: str
    op: str
    value: Any


def eq(field_name: str, value: Any) -> Condition:
    return Condition(field_name, "eq", value)


def gt(field_name: str, value: Any) -> Condition:
    return Condition(field_name, "gt", value)
