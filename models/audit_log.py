"""
models/audit_log.py  –  Append-only trail of security-relevant events

Rows are inserted by services.audit_service and never changed afterwards.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON, event
from database import Base
from datetime import datetime
import enum


class AuditEvent(str, enum.Enum):
    collection_succeeded     = "collection_succeeded"
    collection_failed        = "collection_failed"
    rate_limited             = "rate_limited"
    change_mismatch          = "change_mismatch"
    consistency_error        = "consistency_error"
    order_update_failed      = "order_update_failed"
    payment_verified         = "payment_verified"
    payment_unverified       = "payment_unverified"
    reconciliation_submitted = "reconciliation_submitted"
    reconciliation_reviewed  = "reconciliation_reviewed"
    reconciliation_corrected = "reconciliation_corrected"


class CollectionAuditLog(Base):
    __tablename__ = "collection_audit_logs"

    audit_id          = Column(Integer, primary_key=True, index=True, autoincrement=True)
    event             = Column(String(40), nullable=False, index=True)
    agent_id          = Column(Integer, nullable=True, index=True)
    actor_user_id     = Column(Integer, nullable=True)
    order_id          = Column(Integer, nullable=True, index=True)
    reconciliation_id = Column(Integer, nullable=True)
    error_code        = Column(String(50), nullable=True)
    client_ip         = Column(String(45), nullable=True)
    details           = Column(JSON, nullable=True)
    created_at        = Column(DateTime, default=datetime.utcnow, index=True)


@event.listens_for(CollectionAuditLog, "before_update")
def _refuse_update(mapper, connection, target):
    raise ValueError("Audit log entries are append-only")


@event.listens_for(CollectionAuditLog, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise ValueError("Audit log entries are append-only")
