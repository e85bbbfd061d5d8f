import json
from typing import Any

from flask import g, has_app_context, has_request_context, request
from sqlalchemy.orm import Session

from app.dcms.models import AuditEvent, User


def _request_fields(request_id: str | None) -> dict[str, str | None]:
    # Core operations also run from scripts and worker threads, outside any request.
    rid = request_id or (getattr(g, "request_id", None) if has_app_context() else None)
    ip = request.remote_addr if has_request_context() else None
    return {"request_id": rid, "client_ip": ip}


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Append an audit event to the caller's transaction. Nothing is written
    unless the caller commits, so a rejected operation leaves no trail entry.
    """
    ev = AuditEvent(
        actor_user_id=actor.id if actor else None,
        actor_username=actor.username if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        **_request_fields(request_id),
    )
    s.add(ev)
    return ev


def events_for(s: Session, entity_type: str, entity_id: Any) -> list[AuditEvent]:
    return (
        s.query(AuditEvent)
        .filter(AuditEvent.entity_type == entity_type, AuditEvent.entity_id == str(entity_id))
        .order_by(AuditEvent.created_at.asc(), AuditEvent.id.asc())
        .all()
    )


def event_to_dict(ev: AuditEvent) -> dict[str, Any]:
    return {
        "id": ev.id,
        "action": ev.action,
        "actor_user_id": ev.actor_user_id,
        "actor_username": ev.actor_username,
        "reason": ev.reason,
        "metadata": json.loads(ev.metadata_json) if ev.metadata_json else None,
        "created_at": ev.created_at.isoformat() if ev.created_at else None,
    }
