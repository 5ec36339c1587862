"""
Token endpoint (POST /auth/token). client_credentials grant only. RFC 6749 §4.4.
"""
import logging
import secrets
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from oauth2_server.audit import (
    EVENT_INVALID_GRANT,
    EVENT_INVALID_SCOPE,
    EVENT_SERVER_ERROR,
    EVENT_TOKEN_ISSUED,
    OUTCOME_FAIL,
    get_client_ip,
    log_audit,
)
from oauth2_server.client_auth import require_client_auth
from oauth2_server.config import ACCESS_TOKEN_BYTES, ACCESS_TOKEN_LIFETIME, RATE_LIMIT_TOKEN_PER_MINUTE
from oauth2_server.database import get_db
from oauth2_server.dependencies import get_model
from oauth2_server.entities import GRANT_CLIENT_CREDENTIALS, Token, utc_now
from oauth2_server.oauth2_model import TokenAuthorizationModel
from oauth2_server.rate_limit import token_limiter

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth")

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _is_form_request(request: Request) -> bool:
    content_type = request.headers.get("content-type", "")
    return content_type.split(";", 1)[0].strip().lower() == FORM_CONTENT_TYPE


def generate_access_token() -> str:
    return secrets.token_hex(ACCESS_TOKEN_BYTES)


@router.post("/token")
async def token(
    request: Request,
    db: AsyncSession = Depends(get_db),
    model: TokenAuthorizationModel = Depends(get_model),
):
    """
    Authenticate the client, resolve its service user, check the requested scope and issue
    a bearer token. Earlier tokens for the same client and user stop working.
    """
    ip = get_client_ip(request)
    allowed, retry_after = token_limiter.hit(ip or "unknown", RATE_LIMIT_TOKEN_PER_MINUTE)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail={"error": "slow_down", "error_description": "Too many token requests"},
            headers={"Retry-After": str(retry_after)},
        )

    if not _is_form_request(request):
        raise HTTPException(
            status_code=400,
            detail={
                "error": "invalid_request",
                "error_description": "Invalid request: content must be application/x-www-form-urlencoded",
            },
        )
    form = await request.form()
    grant_type = form.get("grant_type")
    scope = form.get("scope")

    client = await require_client_auth(
        model, db, request, form.get("client_id"), form.get("client_secret")
    )

    if not grant_type:
        raise HTTPException(
            status_code=400,
            detail={"error": "invalid_request", "error_description": "Missing parameter: grant_type"},
        )
    if grant_type != GRANT_CLIENT_CREDENTIALS:
        raise HTTPException(
            status_code=400,
            detail={"error": "unsupported_grant_type", "error_description": "Only client_credentials is supported"},
        )
    if not client.allows_grant(grant_type):
        raise HTTPException(
            status_code=400,
            detail={"error": "unauthorized_client", "error_description": "Unauthorized client: grant_type is invalid"},
        )

    user = await model.get_user_from_client(client)
    if user is None:
        await log_audit(db, EVENT_INVALID_GRANT, client_id=client.client_id, ip=ip, outcome=OUTCOME_FAIL)
        raise HTTPException(
            status_code=400,
            detail={"error": "invalid_grant", "error_description": "Invalid grant: user credentials are invalid"},
        )

    granted = await model.validate_scope(user, client, scope)
    if granted is None:
        await log_audit(
            db, EVENT_INVALID_SCOPE, client_id=client.client_id, user_id=user.id, ip=ip, outcome=OUTCOME_FAIL
        )
        raise HTTPException(
            status_code=400,
            detail={"error": "invalid_scope", "error_description": "Invalid scope: Requested scope is invalid"},
        )

    now = utc_now()
    new_token = Token(
        access_token=generate_access_token(),
        expires_at=now + timedelta(seconds=ACCESS_TOKEN_LIFETIME),
        scopes=tuple(granted),
    )
    saved = await model.save_token(new_token, client, user)
    if saved is None:
        await log_audit(
            db, EVENT_SERVER_ERROR, client_id=client.client_id, user_id=user.id, ip=ip, outcome=OUTCOME_FAIL
        )
        raise HTTPException(
            status_code=500,
            detail={"error": "server_error", "error_description": "Token could not be issued"},
        )

    try:
        await log_audit(db, EVENT_TOKEN_ISSUED, client_id=client.client_id, user_id=user.id, ip=ip)
    except SQLAlchemyError:
        # The token is committed and earlier ones are expired; the client must still receive it
        logger.exception("Could not write token_issued audit record for client_id=%s", client.client_id)
    logger.info("client_credentials grant: token issued for client_id=%s user_id=%s", client.client_id, user.id)
    return _token_response(saved)


def _token_response(saved: Token) -> JSONResponse:
    return JSONResponse(
        {
            "access_token": saved.access_token,
            "token_type": "Bearer",
            "expires_in": ACCESS_TOKEN_LIFETIME,
            "scope": list(saved.scopes),
        },
        headers=NO_STORE_HEADERS,
    )
