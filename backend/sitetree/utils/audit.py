from flask import g
from sitetree.extensions import db
from sitetree.models.audit_log import AuditLog
from typing import Optional

def log_action(
    *,
    website_id: str,
    action: str,
    entity_type: str,
    entity_id: Optional[str],
    payload: dict | None = None
) -> AuditLog:
    log = AuditLog()

    # Set by whatever authenticates the caller; background jobs leave it empty
    log.actor_id = g.get("actor_id")
    log.website_id = website_id
    log.action = action
    log.entity_type = entity_type
    log.entity_id = entity_id or "*"
    log.payload = payload or {}

    db.session.add(log)
    return log
