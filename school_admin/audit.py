import logging
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.orm import Session

from .models import AuditLog

logger = logging.getLogger(__name__)


def _jsonable(values: Optional[dict]) -> Optional[dict]:
    if values is None:
        return None
    out = {}
    for key, value in values.items():
        if isinstance(value, Decimal):
            out[key] = float(value)
        elif isinstance(value, (date, datetime, time)):
            out[key] = value.isoformat()
        elif hasattr(value, "value"):
            out[key] = value.value
        else:
            out[key] = value
    return out


def log_event(
    db: Session,
    *,
    user_id: Optional[int],
    action: str,
    table_name: str,
    record_id: Any = None,
    old_values: Optional[dict] = None,
    new_values: Optional[dict] = None,
) -> AuditLog:
    """Record an audit row in the caller's transaction; the caller commits."""
    entry = AuditLog(
        user_id=user_id,
        action=action,
        table_name=table_name,
        record_id=str(record_id) if record_id is not None else None,
        old_values=_jsonable(old_values),
        new_values=_jsonable(new_values),
    )
    db.add(entry)
    logger.debug(f"Audit {action} {table_name}#{record_id} by user {user_id}")
    return entry


def list_events(db: Session, *, table_name: Optional[str] = None, limit: int = 100) -> list[AuditLog]:
    query = db.query(AuditLog)
    if table_name:
        query = query.filter(AuditLog.table_name == table_name)
    return query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit).all()
