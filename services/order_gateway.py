"""
Order collaborator.

Cash collection never touches order internals directly; it reads an
``OrderSnapshot`` and asks the gateway to complete the order.  The SQL
gateway below works against the local ``orders`` projection; any other order
system can be plugged in by implementing the same two methods.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional
import logging

from sqlalchemy.orm import Session

from models.order import Order
from utils.money import quantize

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderSnapshot:
    order_id: int
    total: Decimal
    status: str
    assigned_agent_id: Optional[int]
    payment_method: str = "cod"


class OrderGateway:
    """Interface consumed by the collection processor."""

    def get_order(self, order_id: int) -> Optional[OrderSnapshot]:
        raise NotImplementedError

    def set_order_completed(self, order_id: int, audit_note: str) -> None:
        raise NotImplementedError


class SqlOrderGateway(OrderGateway):
    def __init__(self, db: Session):
        self.db = db

    def get_order(self, order_id: int) -> Optional[OrderSnapshot]:
        order = self.db.query(Order).filter(Order.order_id == order_id).first()
        if not order:
            return None
        return OrderSnapshot(
            order_id=order.order_id,
            total=quantize(order.total_amount),
            status=order.status,
            assigned_agent_id=order.assigned_rider_id,
            payment_method=order.payment_method or "cod",
        )

    def set_order_completed(self, order_id: int, audit_note: str) -> None:
        order = self.db.query(Order).filter(Order.order_id == order_id).first()
        if not order:
            raise LookupError(f"Order {order_id} not found")

        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        line = f"[{stamp}] {audit_note}"
        order.order_notes = f"{order.order_notes}\n{line}" if order.order_notes else line
        order.status = "completed"
        order.completed_at = datetime.now()
        self.db.commit()
        logger.info(f"Order #{order_id} marked completed")
