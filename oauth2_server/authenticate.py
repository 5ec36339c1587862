"""
Bearer token authentication (RFC 6750 §2.1). Header only; tokens in the query string are refused.
require_access_token is the dependency protected routes use; GET /auth/authenticate exposes it directly.
"""
import logging
import re

from fastapi import APIRouter, Depends, HTTPException, Request

from oauth2_server.dependencies import get_model
from oauth2_server.entities import Token
from oauth2_server.oauth2_model import TokenAuthorizationModel

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth")

BEARER_CHALLENGE = 'Bearer realm="Service"'
_BEARER_RE = re.compile(r"^Bearer\s+(\S+)$")


async def require_access_token(
    request: Request,
    model: TokenAuthorizationModel = Depends(get_model),
) -> Token:
    """
    Resolve the bearer token on the request. 400 if the request is malformed, 401 if there is
    no token or the token is unknown, expired or revoked.
    """
    if "access_token" in request.query_params:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "invalid_request",
                "error_description": "Invalid request: do not send bearer tokens in the query string",
            },
        )
    header = request.headers.get("Authorization")
    if not header:
        raise HTTPException(
            status_code=401,
            detail={"error": "unauthorized_request", "error_description": "Unauthorized request: no authentication given"},
            headers={"WWW-Authenticate": BEARER_CHALLENGE},
        )
    match = _BEARER_RE.match(header)
    if not match:
        raise HTTPException(
            status_code=400,
            detail={"error": "invalid_request", "error_description": "Invalid request: malformed authorization header"},
        )
    token = await model.get_access_token(match.group(1))
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"error": "invalid_token", "error_description": "Invalid token: access token is invalid"},
            headers={"WWW-Authenticate": f'{BEARER_CHALLENGE}, error="invalid_token"'},
        )
    return token


@router.get("/authenticate")
async def authenticate(token: Token = Depends(require_access_token)):
    """Who the token belongs to and what it may do."""
    return {
        "client_id": token.client.client_id if token.client else None,
        "username": token.user.username if token.user else None,
        "scope": list(token.scopes),
        "expires_at": token.expires_at.isoformat(),
    }
