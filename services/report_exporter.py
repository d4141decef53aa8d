"""
Report exporter: read-only views over the ledger and the reconciliations.

Nothing in here writes: every method runs plain SELECTs and shapes rows for
the admin dashboard, the courier app, or a CSV download.
"""
import csv
import io
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from config import settings
from models.cash_reconciliation import CashReconciliation
from models.payment_transaction import PaymentTransaction, PaymentType, SETTLED_STATUSES
from services.errors import InputValidationError
from services.payment_ledger import PaymentLedger, day_bounds
from services.variance_reviewer import serialize_reconciliation
from utils.money import ZERO, as_float, quantize

EXPORT_COLUMNS = [
    "row_type",
    "reconciliation_date",
    "agent_id",
    "order_id",
    "collection_id",
    "order_total",
    "collected_amount",
    "change_amount",
    "net_amount",
    "payment_status",
    "collected_at",
    "reconciliation_id",
    "reconciliation_status",
    "closing_balance",
    "submitted_amount",
    "variance",
    "discrepancy_flag",
    "transaction_count",
    "reconciliation_count",
]


def serialize_transaction(txn: PaymentTransaction) -> dict:
    return {
        "transaction_id": txn.transaction_id,
        "order_id": txn.order_id,
        "collection_id": txn.collection_id,
        "payment_type": txn.payment_type.value,
        "payment_method": txn.payment_method,
        "amount": as_float(txn.amount),
        "collected_amount": as_float(txn.collected_amount),
        "change_amount": as_float(txn.change_amount),
        "status": txn.status.value,
        "agent_id": txn.agent_id,
        "collected_at": txn.collected_at.isoformat() if txn.collected_at else None,
        "verified_at": txn.verified_at.isoformat() if txn.verified_at else None,
        "notes": txn.notes,
    }


class ReportExporter:
    def __init__(self, db: Session, ledger: Optional[PaymentLedger] = None):
        self.db = db
        self.ledger = ledger or PaymentLedger(db)

    def daily_report(self, agent_id: int, day: date) -> dict:
        transactions = self.ledger.collected_for_agent_day(agent_id, day)
        reconciliation = self.db.query(CashReconciliation).filter(
            CashReconciliation.agent_id == agent_id,
            CashReconciliation.reconciliation_date == day,
        ).first()

        total_collections = sum((quantize(t.collected_amount) for t in transactions), ZERO)
        total_change = sum((quantize(t.change_amount) for t in transactions), ZERO)

        return {
            "agent_id": agent_id,
            "date": day.isoformat(),
            "transactions": [serialize_transaction(t) for t in transactions],
            "reconciliation": serialize_reconciliation(reconciliation),
            "summary": {
                "transaction_count": len(transactions),
                "total_collections": float(total_collections),
                "total_change": float(total_change),
                "net_amount": float(total_collections - total_change),
            },
        }

    def _check_range(self, date_from: date, date_to: date) -> None:
        if date_from > date_to:
            raise InputValidationError("invalid_date_range", "date_from must not be after date_to")
        if (date_to - date_from).days + 1 > settings.EXPORT_MAX_DAYS:
            raise InputValidationError(
                "invalid_date_range",
                f"Export range cannot exceed {settings.EXPORT_MAX_DAYS} days",
            )

    def range_export(self, date_from: date, date_to: date, agent_id: Optional[int] = None) -> List[dict]:
        """Collected transactions in the range, each joined with its
        courier/day reconciliation, followed by one summary row."""
        self._check_range(date_from, date_to)
        start, _ = day_bounds(date_from)
        _, end = day_bounds(date_to)

        query = self.db.query(PaymentTransaction).filter(
            PaymentTransaction.payment_type == PaymentType.cod,
            PaymentTransaction.status.in_(SETTLED_STATUSES),
            PaymentTransaction.collected_at >= start,
            PaymentTransaction.collected_at < end,
        )
        rec_query = self.db.query(CashReconciliation).filter(
            CashReconciliation.reconciliation_date >= date_from,
            CashReconciliation.reconciliation_date <= date_to,
        )
        if agent_id is not None:
            query = query.filter(PaymentTransaction.agent_id == agent_id)
            rec_query = rec_query.filter(CashReconciliation.agent_id == agent_id)

        transactions = query.order_by(
            PaymentTransaction.collected_at.asc(),
            PaymentTransaction.transaction_id.asc(),
        ).all()
        reconciliations: Dict[Tuple[int, date], CashReconciliation] = {
            (r.agent_id, r.reconciliation_date): r for r in rec_query.all()
        }

        rows = []
        total_collected = ZERO
        total_change = ZERO
        for txn in transactions:
            collected = quantize(txn.collected_amount)
            change = quantize(txn.change_amount)
            total_collected += collected
            total_change += change
            day = txn.collected_at.date()
            rec = reconciliations.get((txn.agent_id, day))
            rows.append({
                "row_type": "transaction",
                "reconciliation_date": day.isoformat(),
                "agent_id": txn.agent_id,
                "order_id": txn.order_id,
                "collection_id": txn.collection_id,
                "order_total": as_float(txn.amount),
                "collected_amount": float(collected),
                "change_amount": float(change),
                "net_amount": float(collected - change),
                "payment_status": txn.status.value,
                "collected_at": txn.collected_at.isoformat(),
                "reconciliation_id": rec.reconciliation_id if rec else None,
                "reconciliation_status": rec.status.value if rec else None,
                "closing_balance": as_float(rec.closing_balance) if rec else None,
                "submitted_amount": as_float(rec.submitted_amount) if rec else None,
                "variance": as_float(rec.variance) if rec else None,
                "discrepancy_flag": bool(rec.discrepancy_flag) if rec else None,
            })

        variance_total = sum(
            (quantize(r.variance) for r in reconciliations.values() if r.variance is not None),
            ZERO,
        )
        rows.append({
            "row_type": "summary",
            "transaction_count": len(transactions),
            "reconciliation_count": len(reconciliations),
            "collected_amount": float(total_collected),
            "change_amount": float(total_change),
            "net_amount": float(total_collected - total_change),
            "variance": float(variance_total),
            "discrepancy_flag": any(r.discrepancy_flag for r in reconciliations.values()),
        })
        return rows

    @staticmethod
    def to_csv(rows: List[dict]) -> str:
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            writer.writerow({k: ("" if row.get(k) is None else row.get(k)) for k in EXPORT_COLUMNS})
        return buffer.getvalue()

    def payment_statistics(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        agent_id: Optional[int] = None,
        payment_type: Optional[str] = None,
    ) -> dict:
        query = self.db.query(
            PaymentTransaction.payment_type,
            PaymentTransaction.status,
            func.count(PaymentTransaction.transaction_id).label("cnt"),
            func.coalesce(func.sum(PaymentTransaction.amount), 0).label("amount"),
            func.coalesce(func.sum(PaymentTransaction.collected_amount), 0).label("collected"),
            func.coalesce(func.sum(PaymentTransaction.change_amount), 0).label("change"),
        )
        if date_from:
            query = query.filter(PaymentTransaction.created_at >= day_bounds(date_from)[0])
        if date_to:
            query = query.filter(PaymentTransaction.created_at < day_bounds(date_to)[1])
        if agent_id is not None:
            query = query.filter(PaymentTransaction.agent_id == agent_id)
        if payment_type:
            try:
                query = query.filter(PaymentTransaction.payment_type == PaymentType(payment_type))
            except ValueError:
                raise InputValidationError("invalid_payment_type", f"Unknown payment type '{payment_type}'")

        rows = query.group_by(PaymentTransaction.payment_type, PaymentTransaction.status).all()

        stats = {
            "total_transactions": 0,
            "total_amount": Decimal("0"),
            "total_collected": Decimal("0"),
            "total_change": Decimal("0"),
            "by_type": {},
            "by_status": {},
        }
        for row in rows:
            amount = quantize(row.amount)
            collected = quantize(row.collected)
            stats["total_transactions"] += row.cnt
            stats["total_amount"] += amount
            stats["total_collected"] += collected
            stats["total_change"] += quantize(row.change)

            by_type = stats["by_type"].setdefault(
                row.payment_type.value, {"count": 0, "amount": 0.0, "collected": 0.0}
            )
            by_type["count"] += row.cnt
            by_type["amount"] = float(quantize(by_type["amount"]) + amount)
            by_type["collected"] = float(quantize(by_type["collected"]) + collected)

            by_status = stats["by_status"].setdefault(row.status.value, {"count": 0, "amount": 0.0})
            by_status["count"] += row.cnt
            by_status["amount"] = float(quantize(by_status["amount"]) + amount)

        for key in ("total_amount", "total_collected", "total_change"):
            stats[key] = float(stats[key])
        return stats


def default_export_range(today: Optional[date] = None) -> Tuple[date, date]:
    today = today or date.today()
    return today - timedelta(days=6), today
