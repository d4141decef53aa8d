"""
models/cash_reconciliation.py  –  Daily courier cash reconciliation

Each record = one courier × one calendar day.  Running totals are only ever
moved by in-expression increments so concurrent collections cannot lose an
update; ``version`` is bumped on every change and guards submission/review.
"""

from sqlalchemy import (
    Column, Integer, ForeignKey, DateTime, Date,
    DECIMAL, Boolean, Text, UniqueConstraint, Enum as SAEnum,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from database import Base
import enum


class ReconciliationStatus(str, enum.Enum):
    open           = "open"            # collections still arriving
    submitted      = "submitted"       # courier counted the cash
    pending_review = "pending_review"  # variance above tolerance
    approved       = "approved"
    rejected       = "rejected"


class CashReconciliation(Base):
    __tablename__ = "cash_reconciliations"
    __table_args__ = (
        UniqueConstraint("agent_id", "reconciliation_date", name="uq_reconciliation_agent_date"),
    )

    reconciliation_id   = Column(Integer, primary_key=True, index=True, autoincrement=True)
    agent_id            = Column(Integer, ForeignKey("riders.rider_id", ondelete="CASCADE"), nullable=False, index=True)
    reconciliation_date = Column(Date, nullable=False, index=True)

    # Running totals
    opening_balance    = Column(DECIMAL(10, 2), nullable=False, default=0)
    total_collections  = Column(DECIMAL(10, 2), nullable=False, default=0)
    total_change_given = Column(DECIMAL(10, 2), nullable=False, default=0)
    closing_balance    = Column(DECIMAL(10, 2), nullable=False, default=0)
    collection_count   = Column(Integer, nullable=False, default=0)

    # Courier submission & review
    submitted_amount = Column(DECIMAL(10, 2), nullable=True)
    variance         = Column(DECIMAL(10, 2), nullable=True)
    status           = Column(SAEnum(ReconciliationStatus), nullable=False, default=ReconciliationStatus.open, index=True)
    discrepancy_flag = Column(Boolean, nullable=False, default=False)
    notes            = Column(Text, nullable=True)
    admin_notes      = Column(Text, nullable=True)
    submitted_at     = Column(DateTime, nullable=True)
    reviewed_at      = Column(DateTime, nullable=True)
    reviewed_by      = Column(Integer, ForeignKey("users.user_id", ondelete="SET NULL"), nullable=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    rider    = relationship("Rider", back_populates="reconciliations")
    reviewer = relationship("User", foreign_keys=[reviewed_by])
