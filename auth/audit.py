"""
auth/audit.py -- Audit Sink: append-only log of security events.

Every identity component writes here; none of them read from it. The only
reader is the operator CLI (main.py audit), through recent().

Best-effort by contract: record() never raises. A failed audit insert is
logged at WARNING and the primary operation carries on -- an audit database
outage must not be able to block legitimate logins. Rows are never updated
or deleted by this codebase.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.db import audit_events, from_iso, to_iso, utc_now
from auth.models import AuditAction, AuditEvent, RequestContext

logger = logging.getLogger("whisper.auth.audit")


class AuditSink:
    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utc_now) -> None:
        self.engine = engine
        self._clock = clock

    def record(
        self,
        action: AuditAction,
        context: Optional[RequestContext] = None,
        user_id: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        """Append one event. Swallows database errors after logging them."""
        context = context or RequestContext()
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    audit_events.insert().values(
                        user_id=user_id,
                        action=action.value,
                        ip_address=context.ip,
                        user_agent=context.user_agent,
                        path=context.path,
                        method=context.method,
                        metadata=json.dumps(metadata, default=str) if metadata else None,
                        created_at=to_iso(self._clock()),
                    )
                )
        except SQLAlchemyError as e:
            logger.warning("Audit write failed for %s (user_id=%s): %s", action.value, user_id, e)

    def recent(
        self,
        user_id: Optional[int] = None,
        action: Optional[AuditAction] = None,
        limit: int = 50,
    ) -> list[AuditEvent]:
        """Newest-first events, optionally filtered. Operator tooling only."""
        query = audit_events.select()
        if user_id is not None:
            query = query.where(audit_events.c.user_id == user_id)
        if action is not None:
            query = query.where(audit_events.c.action == action.value)
        query = query.order_by(audit_events.c.id.desc()).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_event(r) for r in rows]


def _row_to_event(row) -> AuditEvent:
    return AuditEvent(
        id=row.id,
        user_id=row.user_id,
        action=AuditAction(row.action),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        path=row.path,
        method=row.method,
        metadata=json.loads(row.metadata) if row.metadata else {},
        created_at=from_iso(row.created_at),
    )
