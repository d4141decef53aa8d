"""
Collection processor: records one cash-on-delivery payment.

Order of work for ``collect``:

    rate guard -> courier capability -> order lookup and ownership
    -> duplicate check -> collectible status -> ledger row -> amounts
    -> pending→collected (conditional) -> complete order -> accumulate

Everything before the conditional update is side-effect free (apart from the
rate counter and the audit trail).  Once the ledger row is ``collected`` it is
never rolled back: money has changed hands.  A failure afterwards is reported
to the caller as ``order_update_failed`` or ``aggregation_failed`` and left in
the audit log for manual follow-up.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Optional
import logging
import uuid

from sqlalchemy.orm import Session

from config import settings
from models.audit_log import AuditEvent
from models.payment_transaction import PaymentType, SETTLED_STATUSES
from models.rider import Rider, RiderStatus
from services.audit_service import AuditService
from services.errors import CollectionError, InputValidationError, ServiceError
from services.order_gateway import OrderGateway
from services.payment_ledger import CollectionMetadata, PaymentLedger
from services.reconciliation_aggregator import ReconciliationAggregator
from utils.money import calculate_change, quantize
from utils.rate_guard import RateGuard
from utils.validators import (
    sanitize_notes,
    validate_amount,
    validate_order_reference,
    validate_timestamp,
)

logger = logging.getLogger(__name__)


@dataclass
class CollectionOptions:
    notes: Optional[str] = None
    client_change: Any = None
    timestamp: Any = None
    client_ip: Optional[str] = None
    session_ref: Optional[str] = None


@dataclass
class CollectionReceipt:
    order_id: int
    collected_amount: Decimal
    change_amount: Decimal
    order_total: Decimal
    collection_id: str
    collected_at: datetime
    reconciliation_date: date
    warnings: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "collected_amount": float(self.collected_amount),
            "change_amount": float(self.change_amount),
            "order_total": float(self.order_total),
            "collection_id": self.collection_id,
            "collected_at": self.collected_at.isoformat(),
            "reconciliation_date": self.reconciliation_date.isoformat(),
            "warnings": self.warnings,
        }


def new_collection_id() -> str:
    return f"col_{uuid.uuid4().hex[:12]}"


def _parsed_order_id(raw) -> Optional[int]:
    try:
        return validate_order_reference(raw)
    except InputValidationError:
        return None


class CollectionProcessor:
    def __init__(
        self,
        db: Session,
        orders: OrderGateway,
        rate_guard: RateGuard,
        ledger: Optional[PaymentLedger] = None,
        aggregator: Optional[ReconciliationAggregator] = None,
        audit: Optional[AuditService] = None,
        clock: Callable[[], datetime] = datetime.now,
        max_overpayment=None,
    ):
        self.db = db
        self.orders = orders
        self.rate_guard = rate_guard
        self.ledger = ledger or PaymentLedger(db)
        self.aggregator = aggregator or ReconciliationAggregator(db, self.ledger)
        self.audit = audit or AuditService(db)
        self.clock = clock
        self.max_overpayment = quantize(
            max_overpayment if max_overpayment is not None else settings.MAX_OVERPAYMENT
        )

    # ── Public API ─────────────────────────────────────────────

    def calculate_change(self, order_total, collected_amount) -> dict:
        total = validate_amount(order_total, allow_zero=False)
        collected = validate_amount(collected_amount)
        return {
            "order_total": float(total),
            "collected_amount": float(collected),
            "change_amount": float(calculate_change(total, collected)),
            "sufficient": collected >= total,
        }

    def collect(
        self,
        order_id,
        agent_id: int,
        collected_amount,
        options: Optional[CollectionOptions] = None,
    ) -> CollectionReceipt:
        options = options or CollectionOptions()
        try:
            receipt = self._collect(order_id, agent_id, collected_amount, options)
        except ServiceError as e:
            event = AuditEvent.rate_limited if e.code == "rate_limited" else AuditEvent.collection_failed
            if e.code not in ("aggregation_failed", "order_update_failed"):
                logger.warning(f"Collection refused for agent {agent_id}, order {order_id}: {e.code}")
            self.audit.record(
                event,
                agent_id=agent_id,
                order_id=_parsed_order_id(order_id),
                error_code=e.code,
                client_ip=options.client_ip,
                details={"message": e.message, **e.details},
            )
            raise

        self.audit.record(
            AuditEvent.collection_succeeded,
            agent_id=agent_id,
            order_id=receipt.order_id,
            client_ip=options.client_ip,
            details={
                "collection_id": receipt.collection_id,
                "collected_amount": str(receipt.collected_amount),
                "change_amount": str(receipt.change_amount),
                "order_total": str(receipt.order_total),
            },
        )
        return receipt

    # ── Steps ──────────────────────────────────────────────────

    def _check_agent(self, agent_id: int) -> Rider:
        rider = self.db.query(Rider).filter(Rider.rider_id == agent_id).first()
        if not rider or rider.status != RiderStatus.active:
            raise CollectionError("agent_not_found", "Courier profile not found or inactive")
        if not rider.can_collect_cod:
            raise CollectionError("permission_denied", "Courier is not allowed to collect cash payments")
        return rider

    def _collect(self, raw_order_id, agent_id: int, raw_amount, options: CollectionOptions) -> CollectionReceipt:
        self.rate_guard.check(agent_id)
        self._check_agent(agent_id)

        order_id = validate_order_reference(raw_order_id)
        order = self.orders.get_order(order_id)
        if not order:
            raise CollectionError("order_not_found", f"Order #{order_id} not found")
        if order.assigned_agent_id != agent_id:
            raise CollectionError("order_not_assigned", f"Order #{order_id} is not assigned to you")

        existing = self.ledger.get(order_id)
        if existing and existing.status in SETTLED_STATUSES:
            raise CollectionError(
                "already_collected",
                f"Payment for order #{order_id} was already collected",
                details={"collection_id": existing.collection_id},
            )

        validate_order_reference(order_id, order.status, settings.COLLECTIBLE_ORDER_STATUSES)

        txn = existing or self.ledger.create(order)
        if txn.payment_type != PaymentType.cod:
            raise CollectionError("not_cod_payment", f"Order #{order_id} is not a cash-on-delivery order")

        warnings = []
        order_total = quantize(txn.amount)
        if order_total != order.total:
            warnings.append("order_total_changed")
            logger.warning(
                f"Order #{order_id} total changed from {order_total} to {order.total}; "
                f"collecting against the recorded amount"
            )

        collected = validate_amount(raw_amount, allow_zero=False)
        if collected < order_total:
            raise CollectionError(
                "insufficient_payment",
                f"Collected {collected} is less than the order total {order_total}",
            )
        if collected - order_total > self.max_overpayment:
            raise CollectionError(
                "excessive_overpayment",
                f"Overpayment of {collected - order_total} exceeds {self.max_overpayment}; check the amount",
            )
        change = calculate_change(order_total, collected)

        if options.client_change is not None:
            self._cross_check_change(agent_id, order_id, change, options, warnings)

        collected_at = self.clock()
        collection_id = new_collection_id()
        notes = sanitize_notes(options.notes)
        metadata = CollectionMetadata(
            client_timestamp=validate_timestamp(options.timestamp, now=self.clock),
            client_ip=options.client_ip,
            session_ref=options.session_ref,
        )

        won = self.ledger.mark_collected(
            order_id, agent_id, collected, change, collection_id, collected_at, notes, metadata
        )
        if not won:
            raise CollectionError(
                "already_collected",
                f"Payment for order #{order_id} was collected by a concurrent request",
            )
        logger.info(
            f"💵 COD collected for order #{order_id} by agent {agent_id}: "
            f"{collected} (change {change}) [{collection_id}]"
        )

        order_error = None
        try:
            self.orders.set_order_completed(
                order_id,
                f"COD payment collected: {collected} (change {change}), ref {collection_id}",
            )
        except Exception as e:
            self.db.rollback()
            order_error = e
            logger.error(f"Order #{order_id} could not be completed after collection: {e}", exc_info=True)

        day = collected_at.date()
        if not self.aggregator.accumulate(agent_id, day, collected, change):
            self.audit.record(
                AuditEvent.consistency_error,
                agent_id=agent_id,
                order_id=order_id,
                error_code="aggregation_failed",
                details={"collection_id": collection_id, "collected_amount": str(collected),
                         "change_amount": str(change), "date": day.isoformat()},
            )
            logger.error(
                f"Ledger shows order #{order_id} collected but the reconciliation for "
                f"agent {agent_id} on {day} was not updated"
            )
            raise CollectionError(
                "aggregation_failed",
                "Payment recorded but the daily cash total could not be updated; it has been flagged for review",
                details={"collection_id": collection_id},
            )

        if order_error is not None:
            self.audit.record(
                AuditEvent.order_update_failed,
                agent_id=agent_id,
                order_id=order_id,
                error_code="order_update_failed",
                details={"collection_id": collection_id, "error": type(order_error).__name__},
            )
            raise CollectionError(
                "order_update_failed",
                "Payment recorded but the order status could not be updated",
                details={"collection_id": collection_id},
            )

        return CollectionReceipt(
            order_id=order_id,
            collected_amount=collected,
            change_amount=change,
            order_total=order_total,
            collection_id=collection_id,
            collected_at=collected_at,
            reconciliation_date=day,
            warnings=warnings,
        )

    def _cross_check_change(self, agent_id, order_id, change, options, warnings) -> None:
        try:
            reported = quantize(options.client_change)
        except (ArithmeticError, ValueError):
            reported = None
        if reported == change:
            return
        warnings.append("change_mismatch")
        logger.warning(
            f"Change mismatch on order #{order_id}: client reported {options.client_change}, server computed {change}"
        )
        self.audit.record(
            AuditEvent.change_mismatch,
            agent_id=agent_id,
            order_id=order_id,
            client_ip=options.client_ip,
            details={"client_change": str(options.client_change), "server_change": str(change)},
        )
