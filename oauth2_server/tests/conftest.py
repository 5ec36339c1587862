"""
Pytest configuration for oauth2_server. In-memory SQLite so tests don't touch the filesystem,
and the demo client (12345 / 12345, scope "all") seeded at app startup.
"""
import os

# Must be set before oauth2_server.config is imported
os.environ["OAUTH_DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["OAUTH_SEED_CLIENT_ID"] = "12345"
os.environ["OAUTH_SEED_CLIENT_SECRET"] = "12345"
os.environ["OAUTH_SEED_CLIENT_NAME"] = "Demo Client"
os.environ["OAUTH_SEED_CLIENT_SCOPES"] = "all"
# Rate limit tests switch it on explicitly
os.environ["OAUTH_RATE_LIMIT_TOKEN_PER_MINUTE"] = "0"

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from oauth2_server.main import app
from oauth2_server.models import Base
from oauth2_server.rate_limit import token_limiter
from oauth2_server.store import SQLAlchemyEntityStore

DEMO_CLIENT_ID = "12345"
DEMO_CLIENT_SECRET = "12345"


@pytest.fixture
def client():
    """TestClient with the lifespan running: fresh in-memory database, demo client seeded."""
    with TestClient(app) as c:
        yield c


@pytest.fixture(autouse=True)
def _reset_rate_limiter():
    token_limiter.reset()
    yield
    token_limiter.reset()


@pytest.fixture
def request_token(client):
    """POST /auth/token as the demo client with HTTP Basic credentials."""

    def _request(scope="all", client_id=DEMO_CLIENT_ID, client_secret=DEMO_CLIENT_SECRET):
        data = {"grant_type": "client_credentials"}
        if scope is not None:
            data["scope"] = scope
        return client.post("/auth/token", data=data, auth=(client_id, client_secret))

    return _request


@pytest_asyncio.fixture
async def store():
    """Entity store on its own in-memory database, independent of the app's engine."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield SQLAlchemyEntityStore(async_sessionmaker(engine, expire_on_commit=False))
    await engine.dispose()
