"""
Audit Service: writes the append-only trail of collection events.
"""
from datetime import datetime
from typing import Any, Dict, Optional
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models.audit_log import AuditEvent, CollectionAuditLog

logger = logging.getLogger(__name__)


class AuditService:
    """Inserts audit rows in their own commit so they survive a rolled-back
    business operation."""

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        event: AuditEvent,
        agent_id: Optional[int] = None,
        order_id: Optional[int] = None,
        reconciliation_id: Optional[int] = None,
        actor_user_id: Optional[int] = None,
        error_code: Optional[str] = None,
        client_ip: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[CollectionAuditLog]:
        """Append one entry.

        Args:
            event: What happened.
            agent_id: Courier involved, if any.
            order_id: Order involved, if any.
            reconciliation_id: Reconciliation involved, if any.
            actor_user_id: Admin or courier user who triggered it.
            error_code: Stable error code for failures.
            client_ip: Network origin of the request.
            details: Extra JSON-serialisable context.

        Returns:
            The stored entry, or None when the audit store itself failed
            (logged at ERROR; the caller's outcome is not changed).
        """
        entry = CollectionAuditLog(
            event=event.value,
            agent_id=agent_id,
            order_id=order_id,
            reconciliation_id=reconciliation_id,
            actor_user_id=actor_user_id,
            error_code=error_code,
            client_ip=client_ip,
            details=details or {},
            created_at=datetime.utcnow(),
        )
        try:
            self.db.add(entry)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Audit write failed for {event.value}: {e}", exc_info=True)
            return None
        return entry
