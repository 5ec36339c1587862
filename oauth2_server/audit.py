"""
Audit logging. Security-relevant events from the token endpoint only; no tokens, secrets or request bodies.
GET /audit lists recent events as JSON.
"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from oauth2_server.database import get_db
from oauth2_server.models import AuditLog

EVENT_TOKEN_ISSUED = "token_issued"
EVENT_CLIENT_AUTH_FAIL = "client_auth_fail"
EVENT_INVALID_GRANT = "invalid_grant"
EVENT_INVALID_SCOPE = "invalid_scope"
EVENT_SERVER_ERROR = "server_error"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"

MAX_AUDIT_LIMIT = 500


def get_client_ip(request: Request | None) -> str | None:
    """Client IP if available (request.client.host). Forwarding headers are not trusted."""
    if request is None or request.client is None:
        return None
    return getattr(request.client, "host", None)


async def log_audit(
    db: AsyncSession,
    event_type: str,
    *,
    client_id: str | None = None,
    user_id: int | None = None,
    ip: str | None = None,
    outcome: str = OUTCOME_SUCCESS,
) -> None:
    """Append one audit record. Never log tokens or secrets."""
    db.add(
        AuditLog(
            event_type=event_type,
            client_id=client_id,
            user_id=user_id,
            ip=ip,
            outcome=outcome,
        )
    )
    await db.commit()


router = APIRouter(tags=["audit"])


async def _query_audit_logs(
    db: AsyncSession,
    *,
    limit: int = 100,
    event_type: str | None = None,
    outcome: str | None = None,
    client_id: str | None = None,
):
    """Query audit logs with optional filters. Most recent first."""
    stmt = select(AuditLog).order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
    if event_type:
        stmt = stmt.where(AuditLog.event_type == event_type)
    if outcome:
        stmt = stmt.where(AuditLog.outcome == outcome)
    if client_id:
        stmt = stmt.where(AuditLog.client_id == client_id)
    stmt = stmt.limit(min(max(1, limit), MAX_AUDIT_LIMIT))
    rows = (await db.execute(stmt)).scalars().all()
    return [
        {
            "created_at": r.created_at.isoformat() if r.created_at else None,
            "event_type": r.event_type,
            "client_id": r.client_id,
            "user_id": r.user_id,
            "ip": r.ip,
            "outcome": r.outcome,
        }
        for r in rows
    ]


@router.get("/audit")
async def list_audit_logs(
    limit: int = 100,
    event_type: str | None = None,
    outcome: str | None = None,
    client_id: str | None = None,
    db: AsyncSession = Depends(get_db),
):
    """List recent audit events. No tokens or secrets. Most recent first."""
    return await _query_audit_logs(
        db, limit=limit, event_type=event_type, outcome=outcome, client_id=client_id
    )
