"""
Client provisioning. Every client_credentials client gets its own service user with generated
credentials. Optional: OAUTH_SEED_CLIENT_ID + OAUTH_SEED_CLIENT_SECRET provision one client at startup.
"""
import logging
import secrets
from dataclasses import dataclass

import bcrypt

from oauth2_server import config
from oauth2_server.entities import GRANT_CLIENT_CREDENTIALS, Client, EntityKind, User, eq
from oauth2_server.store import EntityStore, StoreError

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    # Bcrypt has a 72-byte limit
    raw = password.encode("utf-8")
    if len(raw) > 72:
        raw = raw[:72]
    return bcrypt.hashpw(raw, bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    return bcrypt.checkpw(plain.encode("utf-8")[:72], hashed.encode("utf-8"))


@dataclass(frozen=True)
class ProvisionedClient:
    client: Client
    user: User
    # Plaintext service-user password; only the bcrypt hash is stored
    password: str


async def provision_client(
    store: EntityStore,
    name: str,
    scopes=(),
    *,
    client_id: str | None = None,
    client_secret: str | None = None,
) -> ProvisionedClient:
    """
    Create a service user (random 8-byte hex username, random 16-byte hex password) holding scopes,
    and a client_credentials client bound to it. Client id and secret are random unless given.
    Raises StoreError if either record cannot be written.
    """
    password = secrets.token_hex(16)
    user = await store.create(
        EntityKind.USER,
        {
            "username": secrets.token_hex(8),
            "password_hash": hash_password(password),
            "scopes": list(dict.fromkeys(scopes)),
        },
    )
    logger.info("Created service user %s", user.username)
    try:
        client = await store.create(
            EntityKind.CLIENT,
            {
                "client_id": client_id or secrets.token_hex(8),
                "client_secret": client_secret or secrets.token_hex(16),
                "name": name,
                "grants": [GRANT_CLIENT_CREDENTIALS],
                "user_ref": user.id,
            },
        )
    except StoreError:
        # A service user without its client is unreachable
        await store.delete(user)
        logger.info("Removed service user %s after the client could not be created", user.username)
        raise
    logger.info("Created client %s (%s)", client.client_id, client.name)
    return ProvisionedClient(client=client, user=user, password=password)


async def seed_from_env(store: EntityStore) -> None:
    """Provision the OAUTH_SEED_CLIENT_* client if it is configured and missing."""
    if not config.SEED_CLIENT_ID or not config.SEED_CLIENT_SECRET:
        return
    existing = await store.find_one(EntityKind.CLIENT, eq("client_id", config.SEED_CLIENT_ID))
    if existing is not None:
        logger.debug("Client already exists: %s", config.SEED_CLIENT_ID)
        return
    await provision_client(
        store,
        config.SEED_CLIENT_NAME,
        config.SEED_CLIENT_SCOPES,
        client_id=config.SEED_CLIENT_ID,
        client_secret=config.SEED_CLIENT_SECRET,
    )
    logger.info("Seeded client: %s", config.SEED_CLIENT_ID)
