import json
from flask import g, has_request_context, request
from models import db
from models.audit_log import AuditLog

def log_event(action: str, user_id=None, entity=None, entity_id=None, metadata=None, session=None):
    """
    Records an audit row in the current session. Services call this inside
    their own transaction so the row commits (or rolls back) with the change.
    """
    ip = None
    user_agent = None
    correlation_id = None
    if has_request_context():
        ip = request.headers.get("X-Forwarded-For", request.remote_addr)
        user_agent = request.headers.get("User-Agent", "")
        correlation_id = getattr(g, "correlation_id", None)

    row = AuditLog(
        user_id=user_id,
        action=action,
        entity=entity,
        entity_id=str(entity_id) if entity_id is not None else None,
        correlation_id=correlation_id,
        ip=ip,
        user_agent=user_agent[:255] if user_agent else None,
        metadata_json=json.dumps(metadata, default=str) if metadata else None
    )
    session = session or db.session
    session.add(row)
    return row
