"""
Token authorization model for the client_credentials flow.

Answers the six questions the protocol layer asks: is this bearer token valid, is this
client id/secret pair valid, which user backs this client, issue a token (expiring the
pair's earlier ones), revoke a token, and does this user hold the requested scopes.

Every operation re-reads the store; nothing is cached between calls. Store failures are
logged here and come back as None ("invalid"), never as exceptions. The lookup_* / issue_ /
expire_ / check_ variants return a Result so callers and tests can see why.
"""
import asyncio
import logging
import weakref
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

from oauth2_server.entities import Client, EntityKind, Token, User, eq, gt, utc_now
from oauth2_server.results import Outcome, Result
from oauth2_server.store import EntityStore, StoreError

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
RevokeStrategy = Callable[[Token], Awaitable[Result[Token]]]
ExpireStrategy = Callable[[Client, User, RevokeStrategy], Awaitable[None]]

# Revoked tokens are backdated so they fail the strictly-in-the-future check
REVOKE_BACKDATE = timedelta(seconds=1)


def _mask(value) -> str:
    """Enough of a token to correlate log lines, not enough to use it."""
    if not value:
        return repr(value)
    return f"{str(value)[:6]}..."


def parse_scope(scope: str | None) -> list[str]:
    """
    Split a comma-separated scope string into labels.
    None or "" means no scopes. Labels are stripped, empties dropped, first occurrence kept.
    Raises ValueError if scope is not a string.
    """
    if scope is None:
        return []
    if not isinstance(scope, str):
        raise ValueError(f"scope must be a string, not {type(scope).__name__}")
    labels: list[str] = []
    for part in scope.split(","):
        label = part.strip()
        if label and label not in labels:
            labels.append(label)
    return labels


class TokenRevocationError(Exception):
    """Prior tokens of a (client, user) pair could not all be expired."""

    def __init__(self, tokens: list[Token]):
        super().__init__(f"{len(tokens)} active token(s) could not be revoked")
        self.tokens = tokens


class BackdateRevocation:
    """Default revoke strategy: set expires_at to one second before now and persist it."""

    def __init__(self, store: EntityStore, clock: Clock = utc_now):
        self.store = store
        self.clock = clock

    async def __call__(self, token: Token) -> Result[Token]:
        expires_at = self.clock() - REVOKE_BACKDATE
        try:
            updated = await self.store.update(token, {"expires_at": expires_at})
        except StoreError as exc:
            logger.info("Error trying to expire token id=%s: %s", token.id, exc)
            return Result.fail(Outcome.STORE_ERROR, exc)
        if updated is None:
            logger.info("Token id=%s could not be updated; no record returned", token.id)
            return Result.fail(Outcome.NOT_FOUND)
        return Result.ok(updated)


class ExpireActiveTokens:
    """
    Default expire strategy: revoke every active token of the (client, user) pair.
    Revocations run concurrently and are awaited as one batch. Raises StoreError if the
    tokens cannot be listed and TokenRevocationError if any revocation fails.
    """

    def __init__(self, store: EntityStore, clock: Clock = utc_now):
        self.store = store
        self.clock = clock

    async def __call__(self, client: Client, user: User, revoke: RevokeStrategy) -> None:
        active = await self.store.find_many(
            EntityKind.TOKEN,
            eq("client_ref", client.id),
            eq("user_ref", user.id),
            gt("expires_at", self.clock()),
        )
        if not active:
            return
        results = await asyncio.gather(*(revoke(t) for t in active), return_exceptions=True)
        failed = []
        for token, result in zip(active, results):
            if isinstance(result, StoreError):
                failed.append(token)
            elif isinstance(result, BaseException):
                raise result
            elif not result:
                failed.append(token)
        if failed:
            raise TokenRevocationError(failed)


class TokenAuthorizationModel:
    """
    The model the protocol layer drives. Takes its store explicitly; the revoke and expire
    strategies default to BackdateRevocation and ExpireActiveTokens over that store.
    """

    def __init__(
        self,
        store: EntityStore,
        *,
        revoke_strategy: RevokeStrategy | None = None,
        expire_strategy: ExpireStrategy | None = None,
        clock: Clock = utc_now,
    ):
        self.store = store
        self.clock = clock
        self.revoke_strategy = revoke_strategy or BackdateRevocation(store, clock)
        self.expire_strategy = expire_strategy or ExpireActiveTokens(store, clock)
        # (client.id, user.id) -> asyncio.Lock; entries disappear once no issuance holds them
        self._issuance_locks = weakref.WeakValueDictionary()

    # --- Result-returning operations ---

    async def lookup_access_token(self, bearer_token: str) -> Result[Token]:
        logger.debug("in get_access_token (token: %s)", _mask(bearer_token))
        try:
            token = await self.store.find_one(
                EntityKind.TOKEN, eq("access_token", bearer_token), populate=("client", "user")
            )
        except StoreError as exc:
            logger.info("Error trying to retrieve token %s: %s", _mask(bearer_token), exc)
            return Result.fail(Outcome.STORE_ERROR, exc)
        if token is None:
            logger.info("Could not find token %s", _mask(bearer_token))
            return Result.fail(Outcome.NOT_FOUND)
        if token.expires_at is None:
            logger.info("Token id=%s does not have an expiration date", token.id)
            return Result.fail(Outcome.EXPIRED)
        if not token.is_active(self.clock()):
            logger.info("Token id=%s has expired", token.id)
            return Result.fail(Outcome.EXPIRED)
        return Result.ok(token)

    async def lookup_client(self, client_id: str | None, client_secret: str | None) -> Result[Client]:
        """Match id and secret in a single query so a bad id and a bad secret look the same."""
        logger.debug("in get_client (client_id: %s)", client_id)
        if not client_id or not client_secret:
            return Result.fail(Outcome.MALFORMED)
        try:
            client = await self.store.find_one(
                EntityKind.CLIENT, eq("client_id", client_id), eq("client_secret", client_secret)
            )
        except StoreError as exc:
            logger.info("Error trying to retrieve client %s: %s", client_id, exc)
            return Result.fail(Outcome.STORE_ERROR, exc)
        if client is None:
            logger.info("No client matches client_id %s and the given secret", client_id)
            return Result.fail(Outcome.NOT_FOUND)
        return Result.ok(client)

    async def lookup_user_from_client(self, client: Client | None) -> Result[User]:
        if not client:
            return Result.fail(Outcome.MALFORMED)
        logger.debug("in get_user_from_client (client_id: %s)", client.client_id)
        try:
            resolved = await self.store.find_one(
                EntityKind.CLIENT,
                eq("client_id", client.client_id),
                eq("client_secret", client.client_secret),
                populate=("user",),
            )
        except StoreError as exc:
            logger.info("Error trying to retrieve user for client %s: %s", client.client_id, exc)
            return Result.fail(Outcome.STORE_ERROR, exc)
        if resolved is None or resolved.user is None:
            logger.info("Client %s has no service user", client.client_id)
            return Result.fail(Outcome.NOT_FOUND)
        return Result.ok(resolved.user)

    async def issue_token(self, token: Token, client: Client, user: User) -> Result[Token]:
        """
        Expire the pair's active tokens, then persist token for (client, user).
        If the first phase fails nothing is written. Both phases run under a lock keyed by
        the pair, so two issuances in this process cannot both leave an active token.
        """
        logger.debug("in save_token (client_id: %s, user: %s)", client.client_id, user.username)
        lock = self._issuance_locks.setdefault((client.id, user.id), asyncio.Lock())
        async with lock:
            try:
                await self.expire_strategy(client, user, self.revoke_strategy)
            except (StoreError, TokenRevocationError) as exc:
                logger.info(
                    "Error expiring prior tokens for client %s and user %s; token not saved: %s",
                    client.client_id,
                    user.username,
                    exc,
                )
                return Result.fail(Outcome.STORE_ERROR, exc)
            try:
                saved = await self.store.create(
                    EntityKind.TOKEN,
                    {
                        "access_token": token.access_token,
                        "expires_at": token.expires_at,
                        "scopes": list(token.scopes),
                        "client_ref": client.id,
                        "user_ref": user.id,
                    },
                )
            except StoreError as exc:
                logger.info(
                    "Error trying to save token for client %s and user %s: %s",
                    client.client_id,
                    user.username,
                    exc,
                )
                return Result.fail(Outcome.STORE_ERROR, exc)
        if saved is None:
            return Result.fail(Outcome.NOT_FOUND)
        return Result.ok(saved)

    async def expire_token(self, token: Token) -> Result[Token]:
        logger.debug("in revoke_token (token id: %s)", token.id)
        try:
            return await self.revoke_strategy(token)
        except StoreError as exc:
            logger.info("Error trying to expire token id=%s: %s", token.id, exc)
            return Result.fail(Outcome.STORE_ERROR, exc)

    async def check_scope(self, user: User | None, client: Client | None, scope: str | None) -> Result[list[str]]:
        """
        Granted scopes are exactly the requested ones, provided the stored user holds all of
        them. No user means no store access at all.
        """
        if not user:
            return Result.fail(Outcome.MALFORMED)
        logger.debug("in validate_scope (user: %s, scope: %s)", user.username, scope)
        try:
            requested = parse_scope(scope)
        except ValueError as exc:
            logger.info("Malformed scope for user %s: %s", user.username, exc)
            return Result.fail(Outcome.MALFORMED, exc)
        try:
            current = await self.store.find_one(EntityKind.USER, eq("id", user.id))
        except StoreError as exc:
            logger.info("Error trying to find user id=%s: %s", user.id, exc)
            return Result.fail(Outcome.STORE_ERROR, exc)
        if current is None:
            logger.info("User id=%s no longer exists", user.id)
            return Result.fail(Outcome.NOT_FOUND)
        granted = set(current.scopes)
        missing = [label for label in requested if label not in granted]
        if missing:
            logger.info("User %s lacks scope(s): %s", current.username, ", ".join(missing))
            return Result.fail(Outcome.DENIED)
        return Result.ok(requested)

    # --- Protocol-facing operations: value or None ---

    async def get_access_token(self, bearer_token: str) -> Token | None:
        return (await self.lookup_access_token(bearer_token)).value_or_none()

    async def get_client(self, client_id: str | None, client_secret: str | None) -> Client | None:
        return (await self.lookup_client(client_id, client_secret)).value_or_none()

    async def get_user_from_client(self, client: Client | None) -> User | None:
        return (await self.lookup_user_from_client(client)).value_or_none()

    async def save_token(self, token: Token, client: Client, user: User) -> Token | None:
        return (await self.issue_token(token, client, user)).value_or_none()

    async def revoke_token(self, token: Token) -> Token | None:
        return (await self.expire_token(token)).value_or_none()

    async def validate_scope(self, user: User | None, client: Client | None, scope: str | None) -> list[str] | None:
        return (await self.check_scope(user, client, scope)).value_or_none()
