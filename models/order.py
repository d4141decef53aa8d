"""
models/order.py  –  Minimal projection of the order domain

The order system owns totals, status and customer data.  This table only
carries what cash collection reads (total, status, assignment, payment
method) and the audit notes it appends on completion.
"""

from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, DECIMAL, Text
from sqlalchemy.sql import func
from database import Base


class Order(Base):
    __tablename__ = "orders"

    order_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_number = Column(String(50), nullable=True, index=True)
    total_amount = Column(DECIMAL(10, 2), nullable=False)
    status = Column(String(30), nullable=False, default="pending", index=True)
    payment_method = Column(String(50), nullable=False, default="cod")
    assigned_rider_id = Column(Integer, ForeignKey("riders.rider_id", ondelete="SET NULL"), nullable=True, index=True)
    order_notes = Column(Text, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
