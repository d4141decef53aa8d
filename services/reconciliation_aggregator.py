"""
Reconciliation aggregator: owns the running totals of ``CashReconciliation``.

Totals move only through in-expression increments
(``total_collections = total_collections + :delta``) so two collections by
the same courier in the same instant both land.  The closing balance is
moved by the same net delta, which keeps
``closing = opening + collections - change`` true after every step on any
SQL backend.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional
import logging

from sqlalchemy import Numeric, literal
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models.cash_reconciliation import CashReconciliation, ReconciliationStatus
from models.rider import Rider, RiderStatus
from services.errors import ReconciliationError
from services.payment_ledger import PaymentLedger
from utils.money import ZERO, quantize

logger = logging.getLogger(__name__)

MONEY = Numeric(10, 2)


@dataclass
class SweepResult:
    date: date
    agents_checked: int = 0
    agents_with_collections: int = 0
    transactions_reconciled: int = 0
    notifications_sent: int = 0
    agents_failed: List[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "date": self.date.isoformat(),
            "agents_checked": self.agents_checked,
            "agents_with_collections": self.agents_with_collections,
            "transactions_reconciled": self.transactions_reconciled,
            "notifications_sent": self.notifications_sent,
            "agents_failed": self.agents_failed,
        }


class ReconciliationAggregator:
    MAX_CREATE_RETRIES = 3

    def __init__(self, db: Session, ledger: Optional[PaymentLedger] = None):
        self.db = db
        self.ledger = ledger or PaymentLedger(db)

    # ── Reads ──────────────────────────────────────────────────

    def get(self, agent_id: int, day: date) -> Optional[CashReconciliation]:
        return self.db.query(CashReconciliation).filter(
            CashReconciliation.agent_id == agent_id,
            CashReconciliation.reconciliation_date == day,
        ).first()

    def get_by_id(self, reconciliation_id: int) -> Optional[CashReconciliation]:
        return self.db.query(CashReconciliation).filter(
            CashReconciliation.reconciliation_id == reconciliation_id
        ).first()

    # ── Accumulation ───────────────────────────────────────────

    def _increment(self, agent_id: int, day: date, collected: Decimal, change: Decimal, count: int) -> int:
        net = collected - change
        return (
            self.db.query(CashReconciliation)
            .filter(
                CashReconciliation.agent_id == agent_id,
                CashReconciliation.reconciliation_date == day,
            )
            .update(
                {
                    CashReconciliation.total_collections:
                        CashReconciliation.total_collections + literal(collected, MONEY),
                    CashReconciliation.total_change_given:
                        CashReconciliation.total_change_given + literal(change, MONEY),
                    CashReconciliation.closing_balance:
                        CashReconciliation.closing_balance + literal(net, MONEY),
                    CashReconciliation.collection_count:
                        CashReconciliation.collection_count + count,
                    CashReconciliation.version: CashReconciliation.version + 1,
                    CashReconciliation.updated_at: datetime.utcnow(),
                },
                synchronize_session=False,
            )
        )

    def _insert(self, agent_id: int, day: date, collected: Decimal, change: Decimal, count: int) -> bool:
        """Create the day's row; False when another request created it first."""
        opening = ZERO
        row = CashReconciliation(
            agent_id=agent_id,
            reconciliation_date=day,
            opening_balance=opening,
            total_collections=collected,
            total_change_given=change,
            closing_balance=opening + collected - change,
            collection_count=count,
            status=ReconciliationStatus.open,
            discrepancy_flag=False,
            version=1,
        )
        self.db.add(row)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return False
        return True

    def accumulate(self, agent_id: int, day: date, collected_amount, change_amount) -> bool:
        """Add one collection to the courier's day. Returns False when the
        row could not be written (the error is logged)."""
        collected = quantize(collected_amount)
        change = quantize(change_amount)
        try:
            for _ in range(self.MAX_CREATE_RETRIES):
                updated = self._increment(agent_id, day, collected, change, 1)
                if updated:
                    reopened = self._reopen_submitted(agent_id, day)
                    self.db.commit()
                    if reopened:
                        logger.warning(
                            f"Collection recorded for agent {agent_id} on {day} after submission; "
                            f"day moved back to review"
                        )
                    return True
                self.db.rollback()
                if self._insert(agent_id, day, collected, change, 1):
                    logger.info(f"Opened reconciliation for agent {agent_id} on {day}")
                    return True
            logger.error(f"Could not create or update reconciliation for agent {agent_id} on {day}")
            return False
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Reconciliation accumulate failed for agent {agent_id} on {day}: {e}", exc_info=True)
            return False

    def _reopen_submitted(self, agent_id: int, day: date) -> int:
        """Runs in the increment's transaction. A submitted day gets its variance
        recomputed against the new closing balance; an approved day goes back
        to pending_review."""
        day_filter = (
            CashReconciliation.agent_id == agent_id,
            CashReconciliation.reconciliation_date == day,
        )
        touched = (
            self.db.query(CashReconciliation)
            .filter(
                *day_filter,
                CashReconciliation.status != ReconciliationStatus.open,
                CashReconciliation.submitted_amount.isnot(None),
            )
            .update(
                {
                    CashReconciliation.variance:
                        CashReconciliation.submitted_amount - CashReconciliation.closing_balance,
                },
                synchronize_session=False,
            )
        )
        if not touched:
            return 0
        return (
            self.db.query(CashReconciliation)
            .filter(*day_filter, CashReconciliation.status == ReconciliationStatus.approved)
            .update(
                {
                    CashReconciliation.status: ReconciliationStatus.pending_review,
                    CashReconciliation.reviewed_at: None,
                    CashReconciliation.reviewed_by: None,
                },
                synchronize_session=False,
            )
        )

    def ensure_row(self, agent_id: int, day: date) -> CashReconciliation:
        """Day row with zero totals for a courier who submits without collections."""
        row = self.get(agent_id, day)
        if row:
            return row
        self._insert(agent_id, day, ZERO, ZERO, 0)
        return self.get(agent_id, day)

    # ── Explicit correction ────────────────────────────────────

    def recompute(self, reconciliation_id: int) -> CashReconciliation:
        """Rebuild running totals from the ledger. The only path allowed to
        lower the closing balance."""
        row = self.get_by_id(reconciliation_id)
        if not row:
            raise ReconciliationError("reconciliation_not_found", "Reconciliation not found")
        if row.status == ReconciliationStatus.approved:
            raise ReconciliationError(
                "reconciliation_locked",
                "Approved reconciliations cannot be recomputed",
            )

        transactions = self.ledger.collected_for_agent_day(row.agent_id, row.reconciliation_date)
        collections = sum((quantize(t.collected_amount) for t in transactions), ZERO)
        change = sum((quantize(t.change_amount) for t in transactions), ZERO)
        closing = quantize(row.opening_balance) + collections - change
        values = {
            CashReconciliation.total_collections: collections,
            CashReconciliation.total_change_given: change,
            CashReconciliation.closing_balance: closing,
            CashReconciliation.collection_count: len(transactions),
            CashReconciliation.version: CashReconciliation.version + 1,
            CashReconciliation.updated_at: datetime.utcnow(),
        }
        if row.submitted_amount is not None:
            values[CashReconciliation.variance] = quantize(row.submitted_amount) - closing

        updated = (
            self.db.query(CashReconciliation)
            .filter(
                CashReconciliation.reconciliation_id == reconciliation_id,
                CashReconciliation.version == row.version,
            )
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        if updated != 1:
            raise ReconciliationError(
                "concurrent_modification",
                "Reconciliation changed while it was being recomputed; retry",
            )
        self.db.refresh(row)
        logger.info(
            f"Reconciliation {reconciliation_id} recomputed: "
            f"collections={collections} change={change} closing={closing}"
        )
        return row

    # ── Daily sweep ────────────────────────────────────────────

    def sweep(self, day: date, notifier=None) -> SweepResult:
        """End-of-day pass over active couriers. Re-running it is safe:
        settled rows are skipped and notifications are deduplicated."""
        from services.report_exporter import ReportExporter
        from utils.notification_helper import notify_reconciliation_due

        notifier = notifier or notify_reconciliation_due
        exporter = ReportExporter(self.db)
        result = SweepResult(date=day)

        riders = self.db.query(Rider).filter(Rider.status == RiderStatus.active).order_by(Rider.rider_id).all()
        for rider in riders:
            result.agents_checked += 1
            try:
                report = exporter.daily_report(rider.rider_id, day)
                if report["summary"]["transaction_count"] == 0:
                    continue
                result.agents_with_collections += 1

                row = self.get(rider.rider_id, day)
                if row is None:
                    # collections without a day row: an earlier accumulate failed
                    logger.warning(f"Rebuilding missing reconciliation for agent {rider.rider_id} on {day}")
                    row = self.recompute(self.ensure_row(rider.rider_id, day).reconciliation_id)

                if row.status == ReconciliationStatus.approved:
                    result.transactions_reconciled += self.ledger.mark_reconciled(rider.rider_id, day)
                elif row.status == ReconciliationStatus.open:
                    if notifier(self.db, rider, report, row):
                        result.notifications_sent += 1
                logger.info(f"Daily reconciliation checked for agent {rider.rider_id} on {day}")
            except (SQLAlchemyError, ReconciliationError) as e:
                self.db.rollback()
                result.agents_failed.append(rider.rider_id)
                logger.error(f"Sweep failed for agent {rider.rider_id} on {day}: {e}", exc_info=True)

        logger.info(f"Daily reconciliation sweep for {day}: {result.to_dict()}")
        return result
