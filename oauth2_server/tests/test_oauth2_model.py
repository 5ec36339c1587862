"""
Unit tests for TokenAuthorizationModel with a stubbed entity store.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from oauth2_server.entities import Client, EntityKind, Token, User, eq, gt
from oauth2_server.oauth2_model import (
    REVOKE_BACKDATE,
    BackdateRevocation,
    ExpireActiveTokens,
    TokenAuthorizationModel,
    TokenRevocationError,
    parse_scope,
)
from oauth2_server.results import Outcome, Result
from oauth2_server.store import StoreError

pytestmark = pytest.mark.asyncio

NOW = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
USER = User(id=1, username="svc-user", scopes=("all", "read"))
CLIENT = Client(
    id=10,
    client_id="12345",
    client_secret="12345",
    name="Demo",
    grants=("client_credentials",),
    user_ref=1,
)


def clock():
    return NOW


def make_token(access_token="abcdef0123456789", expires_at=NOW + timedelta(hours=1), token_id=100):
    return Token(
        id=token_id,
        access_token=access_token,
        expires_at=expires_at,
        scopes=("all",),
        client_ref=CLIENT.id,
        user_ref=USER.id,
    )


@pytest.fixture
def store():
    store = AsyncMock()
    store.find_one.return_value = None
    store.find_many.return_value = []
    return store


@pytest.fixture
def model(store):
    return TokenAuthorizationModel(store, clock=clock)


# --- get_access_token ---


async def test_get_access_token_returns_active_token_unchanged(model, store):
    token = make_token()
    store.find_one.return_value = token
    assert await model.get_access_token("abcdef0123456789") is token
    store.find_one.assert_awaited_once_with(
        EntityKind.TOKEN, eq("access_token", "abcdef0123456789"), populate=("client", "user")
    )


async def test_get_access_token_expiring_now_is_invalid(model, store):
    store.find_one.return_value = make_token(expires_at=NOW)
    assert await model.get_access_token("abcdef0123456789") is None
    result = await model.lookup_access_token("abcdef0123456789")
    assert result.outcome is Outcome.EXPIRED


async def test_get_access_token_in_the_past_is_invalid(model, store):
    store.find_one.return_value = make_token(expires_at=NOW - timedelta(seconds=1))
    assert await model.get_access_token("abcdef0123456789") is None


async def test_get_access_token_without_expiry_is_invalid(model, store):
    store.find_one.return_value = make_token(expires_at=None)
    result = await model.lookup_access_token("abcdef0123456789")
    assert result.outcome is Outcome.EXPIRED
    assert result.value_or_none() is None


async def test_get_access_token_unknown(model, store):
    result = await model.lookup_access_token("nope")
    assert result.outcome is Outcome.NOT_FOUND
    assert not result


async def test_get_access_token_store_error_is_logged_without_full_token(model, store, caplog):
    store.find_one.side_effect = StoreError("database is locked")
    with caplog.at_level(logging.INFO, logger="oauth2_server.oauth2_model"):
        assert await model.get_access_token("abcdef0123456789") is None
    assert "Error trying to retrieve token" in caplog.text
    assert "abcdef..." in caplog.text
    assert "abcdef0123456789" not in caplog.text


# --- get_client ---


async def test_get_client_matches_id_and_secret_in_one_lookup(model, store):
    store.find_one.return_value = CLIENT
    assert await model.get_client("12345", "12345") is CLIENT
    store.find_one.assert_awaited_once_with(
        EntityKind.CLIENT, eq("client_id", "12345"), eq("client_secret", "12345")
    )


@pytest.mark.parametrize("client_id,client_secret", [(None, "s"), ("", "s"), ("id", None), ("id", "")])
async def test_get_client_missing_credentials_skips_store(model, store, client_id, client_secret):
    result = await model.lookup_client(client_id, client_secret)
    assert result.outcome is Outcome.MALFORMED
    store.find_one.assert_not_awaited()


async def test_get_client_no_match(model, store):
    assert await model.get_client("12345", "wrong") is None


async def test_get_client_store_error(model, store):
    store.find_one.side_effect = StoreError("boom")
    result = await model.lookup_client("12345", "12345")
    assert result.outcome is Outcome.STORE_ERROR
    assert isinstance(result.error, StoreError)


# --- get_user_from_client ---


async def test_get_user_from_client_returns_populated_user(model, store):
    store.find_one.return_value = Client(**{**CLIENT.__dict__, "user": USER})
    assert await model.get_user_from_client(CLIENT) == USER
    store.find_one.assert_awaited_once_with(
        EntityKind.CLIENT, eq("client_id", "12345"), eq("client_secret", "12345"), populate=("user",)
    )


async def test_get_user_from_client_without_user(model, store):
    store.find_one.return_value = CLIENT
    result = await model.lookup_user_from_client(CLIENT)
    assert result.outcome is Outcome.NOT_FOUND


async def test_get_user_from_client_client_gone(model, store):
    assert await model.get_user_from_client(CLIENT) is None


async def test_get_user_from_client_no_client(model, store):
    assert await model.get_user_from_client(None) is None
    store.find_one.assert_not_awaited()


async def test_get_user_from_client_store_error(model, store):
    store.find_one.side_effect = StoreError("boom")
    assert await model.get_user_from_client(CLIENT) is None


# --- save_token ---


async def test_save_token_without_prior_tokens(model, store):
    new = make_token(access_token="fresh", token_id=None)
    saved = make_token(access_token="fresh", token_id=101)
    store.create.return_value = saved

    assert await model.save_token(new, CLIENT, USER) is saved
    store.find_many.assert_awaited_once_with(
        EntityKind.TOKEN, eq("client_ref", CLIENT.id), eq("user_ref", USER.id), gt("expires_at", NOW)
    )
    store.update.assert_not_awaited()
    store.create.assert_awaited_once_with(
        EntityKind.TOKEN,
        {
            "access_token": "fresh",
            "expires_at": new.expires_at,
            "scopes": ["all"],
            "client_ref": CLIENT.id,
            "user_ref": USER.id,
        },
    )


async def test_save_token_expires_every_active_token_first(model, store):
    old = [make_token(access_token="old-1", token_id=1), make_token(access_token="old-2", token_id=2)]
    store.find_many.return_value = old
    store.update.side_effect = lambda token, fields: Token(**{**token.__dict__, **fields})
    store.create.return_value = make_token(access_token="fresh", token_id=3)

    saved = await model.save_token(make_token(access_token="fresh", token_id=None), CLIENT, USER)

    assert saved.access_token == "fresh"
    assert store.update.await_count == 2
    for call, token in zip(store.update.await_args_list, old):
        assert call.args == (token, {"expires_at": NOW - REVOKE_BACKDATE})
    store.create.assert_awaited_once()


async def test_save_token_aborts_when_a_revocation_fails(model, store):
    old = [make_token(access_token="old-1", token_id=1), make_token(access_token="old-2", token_id=2)]
    store.find_many.return_value = old

    async def update(token, fields):
        if token.id == 2:
            raise StoreError("write failed")
        return token

    store.update.side_effect = update

    result = await model.issue_token(make_token(access_token="fresh", token_id=None), CLIENT, USER)

    assert result.outcome is Outcome.STORE_ERROR
    assert isinstance(result.error, TokenRevocationError)
    assert [t.id for t in result.error.tokens] == [2]
    store.create.assert_not_awaited()


async def test_save_token_aborts_when_a_revocation_finds_no_record(model, store):
    store.find_many.return_value = [make_token(token_id=1)]
    store.update.return_value = None
    assert await model.save_token(make_token(token_id=None), CLIENT, USER) is None
    store.create.assert_not_awaited()


async def test_save_token_aborts_when_listing_active_tokens_fails(model, store):
    store.find_many.side_effect = StoreError("boom")
    assert await model.save_token(make_token(token_id=None), CLIENT, USER) is None
    store.create.assert_not_awaited()


async def test_save_token_persist_failure(model, store):
    store.create.side_effect = StoreError("unique constraint")
    result = await model.issue_token(make_token(token_id=None), CLIENT, USER)
    assert result.outcome is Outcome.STORE_ERROR


async def test_save_token_persist_returns_nothing(model, store):
    store.create.return_value = None
    result = await model.issue_token(make_token(token_id=None), CLIENT, USER)
    assert result.outcome is Outcome.NOT_FOUND


async def test_save_token_uses_injected_strategies(store):
    revoke = AsyncMock(return_value=Result.ok(None))
    expire = AsyncMock(return_value=None)
    store.create.return_value = make_token(token_id=5)
    model = TokenAuthorizationModel(store, revoke_strategy=revoke, expire_strategy=expire, clock=clock)

    assert await model.save_token(make_token(token_id=None), CLIENT, USER) is not None
    expire.assert_awaited_once_with(CLIENT, USER, revoke)
    store.find_many.assert_not_awaited()


async def test_save_token_propagates_programming_errors(store):
    store.find_many.return_value = [make_token(token_id=1)]
    revoke = AsyncMock(side_effect=RuntimeError("bug"))
    model = TokenAuthorizationModel(store, revoke_strategy=revoke, clock=clock)
    with pytest.raises(RuntimeError):
        await model.save_token(make_token(token_id=None), CLIENT, USER)


async def test_prior_tokens_are_revoked_concurrently(store):
    store.find_many.return_value = [make_token(token_id=i) for i in range(1, 4)]
    in_flight = 0
    peak = 0

    async def revoke(token):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0)
        in_flight -= 1
        return Result.ok(token)

    store.create.return_value = make_token(token_id=9)
    model = TokenAuthorizationModel(store, revoke_strategy=revoke, clock=clock)
    assert await model.save_token(make_token(token_id=None), CLIENT, USER) is not None
    assert peak == 3


async def test_issuance_is_serialised_per_client_user_pair(store):
    other_user = User(id=2, username="other")
    active = {}
    overlaps = []
    in_flight = 0
    peak = 0

    async def expire(client, user, revoke):
        nonlocal in_flight, peak
        key = (client.id, user.id)
        active[key] = active.get(key, 0) + 1
        overlaps.append(active[key])
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        active[key] -= 1

    store.create.return_value = make_token(token_id=9)
    model = TokenAuthorizationModel(store, expire_strategy=expire, clock=clock)

    await asyncio.gather(*(model.save_token(make_token(token_id=None), CLIENT, USER) for _ in range(4)))
    assert max(overlaps) == 1
    assert peak == 1

    overlaps.clear()
    peak = 0
    await asyncio.gather(
        model.save_token(make_token(token_id=None), CLIENT, USER),
        model.save_token(make_token(token_id=None), CLIENT, other_user),
    )
    assert max(overlaps) == 1
    # Different pairs do not wait on each other
    assert peak == 2
    assert store.create.await_count == 6


# --- revoke_token ---


async def test_revoke_token_backdates_expiry(model, store):
    token = make_token()
    store.update.side_effect = lambda t, fields: Token(**{**t.__dict__, **fields})
    revoked = await model.revoke_token(token)
    assert revoked.expires_at == NOW - timedelta(seconds=1)
    assert revoked.expires_at < NOW


async def test_revoke_token_missing_record(model, store):
    store.update.return_value = None
    result = await model.expire_token(make_token())
    assert result.outcome is Outcome.NOT_FOUND


async def test_revoke_token_store_error(model, store):
    store.update.side_effect = StoreError("boom")
    assert await model.revoke_token(make_token()) is None


async def test_backdate_revocation_is_idempotent_in_effect(store):
    store.update.side_effect = lambda t, fields: Token(**{**t.__dict__, **fields})
    revoke = BackdateRevocation(store, clock)
    first = await revoke(make_token())
    second = await revoke(first.value)
    assert first.value.expires_at < NOW
    assert second.value.expires_at < NOW


async def test_expire_active_tokens_raises_revocation_error(store):
    store.find_many.return_value = [make_token(token_id=1)]
    revoke = AsyncMock(return_value=Result.fail(Outcome.NOT_FOUND))
    with pytest.raises(TokenRevocationError):
        await ExpireActiveTokens(store, clock)(CLIENT, USER, revoke)


# --- validate_scope ---


@pytest.mark.parametrize("scope", ["", None])
async def test_validate_scope_empty_request(model, store, scope):
    store.find_one.return_value = USER
    assert await model.validate_scope(USER, CLIENT, scope) == []


async def test_validate_scope_returns_requested_not_held(model, store):
    store.find_one.return_value = USER
    assert await model.validate_scope(USER, CLIENT, "all") == ["all"]
    store.find_one.assert_awaited_once_with(EntityKind.USER, eq("id", USER.id))


async def test_validate_scope_subset(model, store):
    store.find_one.return_value = User(id=1, username="svc-user", scopes=("a", "b", "c"))
    assert await model.validate_scope(USER, CLIENT, "a,b") == ["a", "b"]


async def test_validate_scope_user_holds_strict_subset(model, store):
    store.find_one.return_value = User(id=1, username="svc-user", scopes=("a",))
    result = await model.check_scope(USER, CLIENT, "a,b")
    assert result.outcome is Outcome.DENIED


async def test_validate_scope_uses_stored_scopes(model, store):
    store.find_one.return_value = User(id=1, username="svc-user", scopes=())
    assert await model.validate_scope(USER, CLIENT, "all") is None


@pytest.mark.parametrize("user", [None, False])
async def test_validate_scope_without_user_skips_store(model, store, user):
    assert await model.validate_scope(user, CLIENT, "all") is None
    store.find_one.assert_not_awaited()


async def test_validate_scope_malformed(model, store):
    result = await model.check_scope(USER, CLIENT, ["all"])
    assert result.outcome is Outcome.MALFORMED
    store.find_one.assert_not_awaited()


async def test_validate_scope_user_gone(model, store):
    result = await model.check_scope(USER, CLIENT, "all")
    assert result.outcome is Outcome.NOT_FOUND


async def test_validate_scope_store_error(model, store):
    store.find_one.side_effect = StoreError("boom")
    assert await model.validate_scope(USER, CLIENT, "all") is None


async def test_parse_scope():
    assert parse_scope(" read , all,,read ") == ["read", "all"]
    assert parse_scope(None) == []
    with pytest.raises(ValueError):
        parse_scope(42)
