from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from qcauth.logging import get_logger
from qcauth.storage.models import AuditLogEntry

logger = get_logger(__name__)


class AuditSink:
    """Append-only writer for security-relevant events."""

    def __init__(self, store) -> None:
        self.store = store

    def record(
        self,
        action: str,
        resource: str,
        *,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        resource_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            id=str(uuid.uuid4()),
            user_id=user_id,
            action=action,
            resource=resource,
            metadata=dict(metadata or {}),
            resource_id=resource_id,
            ip_address=ip_address,
        )
        self.store.append_audit_entry(entry)
        logger.info(
            "audit_event",
            action=action,
            resource=resource,
            user_id=user_id,
            resource_id=resource_id,
            metadata=entry.metadata,
        )
        return entry

    def entries(
        self, *, user_id: Optional[str] = None, action: Optional[str] = None, limit: int = 100
    ) -> List[AuditLogEntry]:
        return self.store.list_audit_entries(user_id=user_id, action=action, limit=limit)
