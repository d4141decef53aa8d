"""
Payment ledger: owns ``PaymentTransaction`` rows (one per order).

Every state change is a single conditional UPDATE whose row count says
whether this caller won; creation relies on the unique ``order_id``.
"""
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import List, Optional
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.payment_transaction import (
    PaymentStatus,
    PaymentTransaction,
    PaymentType,
    SETTLED_STATUSES,
)
from services.errors import ServiceError
from services.order_gateway import OrderSnapshot
from utils.money import quantize

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CollectionMetadata:
    """Audit context sent along with a collection."""
    client_timestamp: Optional[datetime] = None
    client_ip: Optional[str] = None
    session_ref: Optional[str] = None


def day_bounds(day: date):
    start = datetime.combine(day, datetime.min.time())
    return start, start + timedelta(days=1)


class PaymentLedger:
    def __init__(self, db: Session):
        self.db = db

    # ── Reads ──────────────────────────────────────────────────

    def get(self, order_id: int) -> Optional[PaymentTransaction]:
        return self.db.query(PaymentTransaction).filter(
            PaymentTransaction.order_id == order_id
        ).first()

    def get_by_id(self, transaction_id: int) -> Optional[PaymentTransaction]:
        return self.db.query(PaymentTransaction).filter(
            PaymentTransaction.transaction_id == transaction_id
        ).first()

    def collected_for_agent_day(self, agent_id: int, day: date) -> List[PaymentTransaction]:
        start, end = day_bounds(day)
        return (
            self.db.query(PaymentTransaction)
            .filter(
                PaymentTransaction.agent_id == agent_id,
                PaymentTransaction.payment_type == PaymentType.cod,
                PaymentTransaction.status.in_(SETTLED_STATUSES),
                PaymentTransaction.collected_at >= start,
                PaymentTransaction.collected_at < end,
            )
            .order_by(PaymentTransaction.collected_at.asc())
            .all()
        )

    # ── Creation ───────────────────────────────────────────────

    def create(self, order: OrderSnapshot) -> PaymentTransaction:
        """Insert the pending record for *order*. If another request created
        it first, the existing row is returned instead."""
        payment_type = PaymentType.cod if order.payment_method == "cod" else PaymentType.online
        txn = PaymentTransaction(
            order_id=order.order_id,
            payment_type=payment_type,
            payment_method=order.payment_method,
            amount=quantize(order.total),
            status=PaymentStatus.pending,
        )
        self.db.add(txn)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.get(order.order_id)
            if existing is None:
                raise
            logger.info(f"Payment record for order #{order.order_id} already created concurrently")
            return existing
        self.db.refresh(txn)
        logger.info(
            f"Payment record created for order #{order.order_id} "
            f"({payment_type.value}, {txn.amount})"
        )
        return txn

    def get_or_create(self, order: OrderSnapshot) -> PaymentTransaction:
        return self.get(order.order_id) or self.create(order)

    # ── Transitions ────────────────────────────────────────────

    def mark_collected(
        self,
        order_id: int,
        agent_id: int,
        collected_amount: Decimal,
        change_amount: Decimal,
        collection_id: str,
        collected_at: datetime,
        notes: str = "",
        metadata: Optional[CollectionMetadata] = None,
    ) -> bool:
        """pending → collected. False when the row is no longer pending
        (someone else collected it first)."""
        metadata = metadata or CollectionMetadata()
        updated = (
            self.db.query(PaymentTransaction)
            .filter(
                PaymentTransaction.order_id == order_id,
                PaymentTransaction.status == PaymentStatus.pending,
            )
            .update(
                {
                    PaymentTransaction.status: PaymentStatus.collected,
                    PaymentTransaction.agent_id: agent_id,
                    PaymentTransaction.collected_amount: quantize(collected_amount),
                    PaymentTransaction.change_amount: quantize(change_amount),
                    PaymentTransaction.collection_id: collection_id,
                    PaymentTransaction.collected_at: collected_at,
                    PaymentTransaction.notes: notes or None,
                    PaymentTransaction.client_timestamp: metadata.client_timestamp,
                    PaymentTransaction.client_ip: metadata.client_ip,
                    PaymentTransaction.session_ref: metadata.session_ref,
                    PaymentTransaction.updated_at: datetime.utcnow(),
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return updated == 1

    def set_verified(self, transaction_id: int, verified: bool) -> PaymentTransaction:
        """collected → verified, or verified → collected to withdraw it."""
        txn = self.get_by_id(transaction_id)
        if not txn:
            raise ServiceError("transaction_not_found", "Payment transaction not found")

        source = PaymentStatus.collected if verified else PaymentStatus.verified
        target = PaymentStatus.verified if verified else PaymentStatus.collected
        updated = (
            self.db.query(PaymentTransaction)
            .filter(
                PaymentTransaction.transaction_id == transaction_id,
                PaymentTransaction.status == source,
            )
            .update(
                {
                    PaymentTransaction.status: target,
                    PaymentTransaction.verified_at: datetime.now() if verified else None,
                    PaymentTransaction.updated_at: datetime.utcnow(),
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        if updated != 1:
            self.db.refresh(txn)
            raise ServiceError(
                "invalid_transition",
                f"Cannot change a '{txn.status.value}' payment to '{target.value}'",
            )
        self.db.refresh(txn)
        return txn

    def mark_reconciled(self, agent_id: int, day: date) -> int:
        """Settle a courier's collected/verified rows for an approved day."""
        start, end = day_bounds(day)
        updated = (
            self.db.query(PaymentTransaction)
            .filter(
                PaymentTransaction.agent_id == agent_id,
                PaymentTransaction.status.in_([PaymentStatus.collected, PaymentStatus.verified]),
                PaymentTransaction.collected_at >= start,
                PaymentTransaction.collected_at < end,
            )
            .update(
                {
                    PaymentTransaction.status: PaymentStatus.reconciled,
                    PaymentTransaction.updated_at: datetime.utcnow(),
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return updated

    def on_order_status_changed(
        self,
        order: OrderSnapshot,
        trigger_statuses,
    ) -> Optional[PaymentTransaction]:
        """Open the ledger row once the order reaches a confirmed status."""
        if order.status not in trigger_statuses:
            return None
        return self.get_or_create(order)
