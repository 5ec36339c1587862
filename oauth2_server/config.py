"""
OAuth2 server configuration. Everything comes from the environment; no credentials in this file.
"""
import os

# Async SQLAlchemy URL. Tests use sqlite+aiosqlite:///:memory:
DATABASE_URL = os.environ.get("OAUTH_DATABASE_URL", "sqlite+aiosqlite:///./oauth2_server.db")

# Access token lifetime (seconds)
ACCESS_TOKEN_LIFETIME = int(os.environ.get("OAUTH_ACCESS_TOKEN_LIFETIME", "3600"))

# Random bytes per generated access token (hex-encoded, so 40 characters)
ACCESS_TOKEN_BYTES = 20

LOG_LEVEL = os.environ.get("OAUTH_LOG_LEVEL", "INFO").upper()

# Per-IP limit on POST /auth/token; 0 disables
RATE_LIMIT_TOKEN_PER_MINUTE = int(os.environ.get("OAUTH_RATE_LIMIT_TOKEN_PER_MINUTE", "60"))

# Optional client provisioned at startup (e.g. a demo client for local runs)
SEED_CLIENT_ID = os.environ.get("OAUTH_SEED_CLIENT_ID")
SEED_CLIENT_SECRET = os.environ.get("OAUTH_SEED_CLIENT_SECRET")
SEED_CLIENT_NAME = os.environ.get("OAUTH_SEED_CLIENT_NAME", "oauth2 Client")
SEED_CLIENT_SCOPES = [
    s.strip() for s in os.environ.get("OAUTH_SEED_CLIENT_SCOPES", "").split(",") if s.strip()
]

HOST = os.environ.get("OAUTH_HOST", "127.0.0.1")
PORT = int(os.environ.get("PORT", "3000"))
