from sqlalchemy import Column, Integer, String, ForeignKey, Boolean, DateTime, Enum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from database import Base
import enum


class RiderStatus(str, enum.Enum):
    active = "active"
    inactive = "inactive"
    suspended = "suspended"


class Rider(Base):
    """A delivery courier (agent) who collects cash on delivery."""
    __tablename__ = "riders"

    rider_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.user_id", ondelete="CASCADE"), unique=True, nullable=False)
    vehicle_type = Column(String(50), nullable=True)
    vehicle_plate = Column(String(50), nullable=True)
    status = Column(Enum(RiderStatus), default=RiderStatus.active, index=True)
    can_collect_cod = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    # Relationships
    user = relationship("User", back_populates="rider_profile")
    payment_transactions = relationship("PaymentTransaction", back_populates="rider")
    reconciliations = relationship("CashReconciliation", back_populates="rider")
