"""
audit/recorder.py -- AuditRecorder: append-only writes to the audit trail.

Two durability modes:
  Non-critical (default): a failed insert is logged at ERROR and append()
      returns None. Routine logins must not fail because the audit table is
      briefly unavailable.

  Critical (critical=True, or when joining a caller's transaction via conn):
      the failure propagates. Password change and revoke-all pass their own
      connection, so the audit row commits or rolls back together with the
      state change it describes.

There is no update or delete method. Events are never mutated.

Layer rule: no imports from api/, auth/, or admission/.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import replace
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.engine import Connection

from audit.models import AuditAction, AuditEvent
from core.database import Database, audit_events, from_iso, to_iso, utcnow
from core.errors import StorageFailure

logger = logging.getLogger("gatekeeper.audit")

MAX_QUERY_LIMIT = 500


class AuditRecorder:
    """Repository for AuditEvent rows.

    Usage:
        recorder = AuditRecorder(db)
        recorder.append(AuditEvent(action=AuditAction.LOGIN, entity_type="operator", entity_id=op.id))
        recorder.append(event, conn=conn)            # inside a caller's transaction
        recent = recorder.list_events(actor_id=op.id, limit=20)
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def append(
        self,
        event: AuditEvent,
        *,
        critical: bool = False,
        conn: Connection | None = None,
    ) -> AuditEvent | None:
        """Persist one event and return it with id and created_at filled in."""
        stamped = replace(
            event,
            id=event.id or uuid.uuid4().hex,
            created_at=event.created_at or utcnow(),
        )
        try:
            with self._db.transaction(conn) as c:
                c.execute(
                    audit_events.insert().values(
                        id=stamped.id,
                        action=stamped.action.value,
                        entity_type=stamped.entity_type,
                        entity_id=stamped.entity_id,
                        old_values=_dump(stamped.old_values),
                        new_values=_dump(stamped.new_values),
                        actor_id=stamped.actor_id,
                        client_ip=stamped.client_ip,
                        user_agent=_truncate(stamped.user_agent, 512),
                        description=stamped.description,
                        created_at=to_iso(stamped.created_at),
                    )
                )
        except StorageFailure:
            if critical or conn is not None:
                raise
            logger.error(
                "Audit event NOT persisted: action=%s entity=%s/%s actor=%s",
                stamped.action.value,
                stamped.entity_type,
                stamped.entity_id,
                stamped.actor_id,
            )
            return None
        logger.info(
            "Audit %s %s/%s actor=%s",
            stamped.action.value,
            stamped.entity_type,
            stamped.entity_id,
            stamped.actor_id,
        )
        return stamped

    def list_events(
        self,
        *,
        actor_id: str | None = None,
        action: AuditAction | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Return matching events, newest first, at most ``limit`` (capped at 500)."""
        query = select(audit_events)
        if actor_id is not None:
            query = query.where(audit_events.c.actor_id == actor_id)
        if action is not None:
            query = query.where(audit_events.c.action == action.value)
        if entity_type is not None:
            query = query.where(audit_events.c.entity_type == entity_type)
        if entity_id is not None:
            query = query.where(audit_events.c.entity_id == entity_id)
        if since is not None:
            query = query.where(audit_events.c.created_at >= to_iso(since))
        if until is not None:
            query = query.where(audit_events.c.created_at <= to_iso(until))
        limit = max(1, min(limit, MAX_QUERY_LIMIT))
        query = query.order_by(audit_events.c.created_at.desc(), audit_events.c.seq.desc()).limit(limit)
        with self._db.transaction() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_event(r) for r in rows]

    def count(self, *, action: AuditAction | None = None, actor_id: str | None = None) -> int:
        query = select(func.count()).select_from(audit_events)
        if action is not None:
            query = query.where(audit_events.c.action == action.value)
        if actor_id is not None:
            query = query.where(audit_events.c.actor_id == actor_id)
        with self._db.transaction() as conn:
            return conn.execute(query).scalar() or 0

    def stats(self, *, since: datetime | None = None, until: datetime | None = None) -> dict[str, int]:
        """Event count per action within the optional time range. Absent actions are omitted."""
        query = select(audit_events.c.action, func.count()).group_by(audit_events.c.action)
        if since is not None:
            query = query.where(audit_events.c.created_at >= to_iso(since))
        if until is not None:
            query = query.where(audit_events.c.created_at <= to_iso(until))
        with self._db.transaction() as conn:
            rows = conn.execute(query.order_by(audit_events.c.action)).fetchall()
        return {action: total for action, total in rows}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _dump(values: dict | None) -> str | None:
    return json.dumps(values, sort_keys=True, default=str) if values is not None else None


def _truncate(value: str | None, size: int) -> str | None:
    return value[:size] if value else value


def _row_to_event(row) -> AuditEvent:
    return AuditEvent(
        id=row.id,
        action=AuditAction(row.action),
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        old_values=json.loads(row.old_values) if row.old_values else None,
        new_values=json.loads(row.new_values) if row.new_values else None,
        actor_id=row.actor_id,
        client_ip=row.client_ip,
        user_agent=row.user_agent,
        description=row.description,
        created_at=from_iso(row.created_at),
    )
