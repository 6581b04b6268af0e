"""
audit/models.py -- Domain types for the audit trail.

An AuditEvent is immutable once written. Ordering by created_at is the
canonical timeline.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class AuditAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    STATUS_CHANGE = "STATUS_CHANGE"
    REVIEW = "REVIEW"
    APPROVE = "APPROVE"
    REJECT = "REJECT"


@dataclass(frozen=True)
class AuditEvent:
    """One security-relevant state transition.

    id and created_at are assigned by AuditRecorder.append() when left empty.
    old_values / new_values must be JSON-serializable and must never contain
    secrets or raw tokens.
    """

    action: AuditAction
    entity_type: str
    entity_id: str | None = None
    old_values: dict | None = None
    new_values: dict | None = None
    actor_id: str | None = None
    client_ip: str | None = None
    user_agent: str | None = None
    description: str | None = None
    id: str | None = None
    created_at: datetime | None = field(default=None, compare=False)
