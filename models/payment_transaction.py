"""
models/payment_transaction.py  –  COD payment ledger

One row per order.  Created ``pending``; flips to ``collected`` exactly once
through a conditional update, then ``verified`` by an admin and
``reconciled`` by the daily sweep once the courier's day is approved.
"""

from sqlalchemy import (
    Column, Integer, String, ForeignKey, DateTime, DECIMAL, Text,
    Enum as SAEnum,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from database import Base
import enum


class PaymentType(str, enum.Enum):
    cod    = "cod"
    online = "online"


class PaymentStatus(str, enum.Enum):
    pending    = "pending"
    collected  = "collected"
    verified   = "verified"
    reconciled = "reconciled"
    failed     = "failed"
    refunded   = "refunded"


# States in which cash has already changed hands for the order
SETTLED_STATUSES = (
    PaymentStatus.collected,
    PaymentStatus.verified,
    PaymentStatus.reconciled,
)


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    transaction_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id       = Column(Integer, nullable=False, unique=True, index=True)
    payment_type   = Column(SAEnum(PaymentType), nullable=False, default=PaymentType.cod)
    payment_method = Column(String(50), nullable=True)
    amount         = Column(DECIMAL(10, 2), nullable=False)
    status         = Column(SAEnum(PaymentStatus), nullable=False, default=PaymentStatus.pending, index=True)

    # Collection
    agent_id         = Column(Integer, ForeignKey("riders.rider_id", ondelete="SET NULL"), nullable=True, index=True)
    collection_id    = Column(String(40), nullable=True, unique=True)
    collected_amount = Column(DECIMAL(10, 2), nullable=True)
    change_amount    = Column(DECIMAL(10, 2), nullable=True)
    collected_at     = Column(DateTime, nullable=True, index=True)
    verified_at      = Column(DateTime, nullable=True)
    notes            = Column(Text, nullable=True)

    # Audit context supplied by the mobile client
    client_timestamp = Column(DateTime, nullable=True)
    client_ip        = Column(String(45), nullable=True)
    session_ref      = Column(String(128), nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    rider = relationship("Rider", back_populates="payment_transactions")
