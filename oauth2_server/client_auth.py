"""
Client authentication for the token endpoint. RFC 6749 §2.3.1.
Credentials via Authorization: Basic base64(client_id:client_secret) or client_id + client_secret in form.
Basic takes precedence when both are sent.
"""
import base64
import binascii
import logging
from typing import NamedTuple

from fastapi import HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from oauth2_server.audit import EVENT_CLIENT_AUTH_FAIL, OUTCOME_FAIL, get_client_ip, log_audit
from oauth2_server.entities import Client
from oauth2_server.oauth2_model import TokenAuthorizationModel

logger = logging.getLogger(__name__)

BASIC_CHALLENGE = 'Basic realm="Service"'


class ClientCredentials(NamedTuple):
    client_id: str | None
    client_secret: str | None
    via_basic: bool


def _parse_basic(header_value: str | None) -> tuple[str, str] | None:
    """Parse 'Basic <base64(client_id:client_secret)>'. Returns (client_id, client_secret) or None."""
    if not header_value or not header_value.strip().lower().startswith("basic "):
        return None
    encoded = header_value.strip()[6:].strip()
    try:
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    if ":" not in decoded:
        return None
    client_id, _, client_secret = decoded.partition(":")
    return (client_id.strip(), client_secret)


def get_client_credentials_from_request(
    request: Request,
    client_id_form: str | None,
    client_secret_form: str | None,
) -> ClientCredentials:
    basic = _parse_basic(request.headers.get("Authorization"))
    if basic:
        return ClientCredentials(basic[0], basic[1], True)
    client_id = client_id_form.strip() if client_id_form else None
    return ClientCredentials(client_id, client_secret_form, False)


async def require_client_auth(
    model: TokenAuthorizationModel,
    db: AsyncSession,
    request: Request,
    client_id_form: str | None,
    client_secret_form: str | None,
) -> Client:
    """
    Resolve and authenticate the client through the model.
    Missing id or secret is a malformed request (400 invalid_request). A pair the model rejects is
    invalid_client: 401 with a Basic challenge when the client tried Basic, 400 otherwise.
    """
    credentials = get_client_credentials_from_request(request, client_id_form, client_secret_form)
    if not credentials.client_id or not credentials.client_secret:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "invalid_request",
                "error_description": "Missing parameter: client_id and client_secret are required",
            },
        )
    client = await model.get_client(credentials.client_id, credentials.client_secret)
    if client is None:
        logger.info("client authentication failed for client_id=%s", credentials.client_id)
        await log_audit(
            db,
            EVENT_CLIENT_AUTH_FAIL,
            client_id=credentials.client_id,
            ip=get_client_ip(request),
            outcome=OUTCOME_FAIL,
        )
        if credentials.via_basic:
            raise HTTPException(
                status_code=401,
                detail={"error": "invalid_client", "error_description": "Invalid client: client is invalid"},
                headers={"WWW-Authenticate": BASIC_CHALLENGE},
            )
        raise HTTPException(
            status_code=400,
            detail={"error": "invalid_client", "error_description": "Invalid client: client is invalid"},
        )
    return client
