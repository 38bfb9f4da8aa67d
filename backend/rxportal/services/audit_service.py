"""Audit trail for refill workflow changes.

Every refill creation and pharmacy response is recorded with who did it,
what changed, and the client address when the change came over HTTP.

Usage:

    from rxportal.services.audit_service import log_audit

    log_audit(
        db,
        action="refill.respond",
        entity_type="refill_request",
        entity_id=refill.id,
        user=operator,
        pharmacy_id=refill.pharmacy_id,
        old_value={"status": "pending"},
        new_value={"status": "approved"},
        client_ip=client_ip,
    )
"""
import logging
from uuid import UUID

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from rxportal.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


def client_ip_from(request: Request | None) -> str | None:
    """Best client address: first X-Forwarded-For hop, else the socket peer."""
    if request is None:
        return None
    ip = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    if not ip and request.client:
        ip = request.client.host
    return ip or None


def log_audit(
    db: AsyncSession,
    *,
    action: str,
    entity_type: str | None = None,
    entity_id: UUID | None = None,
    user: object | None = None,
    pharmacy_id: UUID | None = None,
    old_value: dict | None = None,
    new_value: dict | None = None,
    client_ip: str | None = None,
) -> None:
    """Stage an audit entry on the caller's session.

    Nothing is committed here; the entry is written with the caller's
    transaction so it exists exactly when the audited change does.
    """
    try:
        entry = AuditLog(
            pharmacy_id=pharmacy_id,
            user_id=getattr(user, "id", None) if user else None,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            old_value=old_value,
            new_value=new_value,
            ip_address=client_ip,
        )
        db.add(entry)
    except Exception:
        # Audit logging must never break the main request
        logger.exception("Failed to stage audit log entry for %s", action)
