"""
Variance reviewer: courier cash submission and admin approval.

``variance = submitted_amount - closing_balance`` (signed; negative means the
courier is short).  Small variances are approved on submission, the rest wait
for an admin.  Large variances stay flagged whatever the decision.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional
import logging

from sqlalchemy.orm import Session

from models.cash_reconciliation import CashReconciliation, ReconciliationStatus
from models.rider import Rider
from models.user import User
from config import settings
from services.errors import ReconciliationError
from services.reconciliation_aggregator import ReconciliationAggregator
from utils.money import quantize

logger = logging.getLogger(__name__)

SUBMITTABLE_STATUSES = (
    ReconciliationStatus.open,
    ReconciliationStatus.submitted,
    ReconciliationStatus.pending_review,
    ReconciliationStatus.rejected,
)

REVIEWABLE_STATUSES = (
    ReconciliationStatus.submitted,
    ReconciliationStatus.pending_review,
)

DECISIONS = {
    "approve": ReconciliationStatus.approved,
    "reject": ReconciliationStatus.rejected,
}


class VarianceReviewer:
    MAX_RETRIES = 3

    def __init__(
        self,
        db: Session,
        aggregator: Optional[ReconciliationAggregator] = None,
        tolerance: Optional[Decimal] = None,
        discrepancy_threshold: Optional[Decimal] = None,
    ):
        self.db = db
        self.aggregator = aggregator or ReconciliationAggregator(db)
        self.tolerance = quantize(tolerance if tolerance is not None else settings.AUTO_APPROVE_TOLERANCE)
        self.discrepancy_threshold = quantize(
            discrepancy_threshold if discrepancy_threshold is not None else settings.DISCREPANCY_THRESHOLD
        )

    def classify(self, variance) -> str:
        """within_tolerance | minor | major"""
        size = abs(quantize(variance))
        if size <= self.tolerance:
            return "within_tolerance"
        if size <= self.discrepancy_threshold:
            return "minor"
        return "major"

    def is_discrepancy(self, variance) -> bool:
        return abs(quantize(variance)) > self.discrepancy_threshold

    # ── Courier submission ─────────────────────────────────────

    def submit(self, agent_id: int, day: date, submitted_amount, notes: str = "") -> CashReconciliation:
        submitted = quantize(submitted_amount)

        for _ in range(self.MAX_RETRIES):
            row = self.aggregator.ensure_row(agent_id, day)
            if row.status not in SUBMITTABLE_STATUSES:
                raise ReconciliationError(
                    "reconciliation_locked",
                    f"Reconciliation for {day.isoformat()} is already {row.status.value}",
                )

            variance = submitted - quantize(row.closing_balance)
            status = (
                ReconciliationStatus.approved
                if abs(variance) <= self.tolerance
                else ReconciliationStatus.pending_review
            )
            updated = (
                self.db.query(CashReconciliation)
                .filter(
                    CashReconciliation.reconciliation_id == row.reconciliation_id,
                    CashReconciliation.version == row.version,
                    CashReconciliation.status.in_(SUBMITTABLE_STATUSES),
                )
                .update(
                    {
                        CashReconciliation.submitted_amount: submitted,
                        CashReconciliation.variance: variance,
                        CashReconciliation.status: status,
                        CashReconciliation.discrepancy_flag: self.is_discrepancy(variance),
                        CashReconciliation.notes: notes or None,
                        CashReconciliation.submitted_at: datetime.now(),
                        CashReconciliation.version: CashReconciliation.version + 1,
                        CashReconciliation.updated_at: datetime.utcnow(),
                    },
                    synchronize_session=False,
                )
            )
            self.db.commit()
            if updated == 1:
                self.db.refresh(row)
                logger.info(
                    f"Agent {agent_id} submitted {submitted} for {day}: "
                    f"variance={variance} status={status.value}"
                )
                return row
            # a collection or another submission moved the row; read it again
            self.db.expire_all()

        raise ReconciliationError(
            "concurrent_modification",
            "Reconciliation kept changing during submission; retry",
        )

    # ── Admin review ───────────────────────────────────────────

    def review(
        self,
        reconciliation_id: int,
        decision: str,
        admin_notes: str = "",
        reviewer_user_id: Optional[int] = None,
    ) -> CashReconciliation:
        target = DECISIONS.get((decision or "").strip().lower())
        if target is None:
            raise ReconciliationError("invalid_decision", "Decision must be 'approve' or 'reject'")

        row = self.aggregator.get_by_id(reconciliation_id)
        if not row:
            raise ReconciliationError("reconciliation_not_found", "Reconciliation not found")
        if row.status == ReconciliationStatus.open or row.submitted_amount is None:
            raise ReconciliationError(
                "reconciliation_not_submitted",
                "The courier has not submitted a cash count for this day",
            )
        if row.status not in REVIEWABLE_STATUSES:
            raise ReconciliationError(
                "reconciliation_locked",
                f"Reconciliation was already {row.status.value}",
            )

        # closing balance may have grown since submission
        variance = quantize(row.submitted_amount) - quantize(row.closing_balance)
        updated = (
            self.db.query(CashReconciliation)
            .filter(
                CashReconciliation.reconciliation_id == reconciliation_id,
                CashReconciliation.version == row.version,
                CashReconciliation.status.in_(REVIEWABLE_STATUSES),
            )
            .update(
                {
                    CashReconciliation.status: target,
                    CashReconciliation.variance: variance,
                    CashReconciliation.discrepancy_flag: self.is_discrepancy(variance),
                    CashReconciliation.admin_notes: admin_notes or None,
                    CashReconciliation.reviewed_at: datetime.now(),
                    CashReconciliation.reviewed_by: reviewer_user_id,
                    CashReconciliation.version: CashReconciliation.version + 1,
                    CashReconciliation.updated_at: datetime.utcnow(),
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        if updated != 1:
            raise ReconciliationError(
                "concurrent_modification",
                "Reconciliation changed while it was being reviewed; reload and retry",
            )
        self.db.refresh(row)
        logger.info(
            f"Reconciliation {reconciliation_id} {target.value} "
            f"(variance={variance}, flagged={row.discrepancy_flag})"
        )
        return row

    def list_pending(self, limit: int = 50) -> List[dict]:
        rows = (
            self.db.query(CashReconciliation, User.full_name)
            .join(Rider, CashReconciliation.agent_id == Rider.rider_id)
            .join(User, Rider.user_id == User.user_id)
            .filter(CashReconciliation.status.in_(REVIEWABLE_STATUSES))
            .order_by(
                CashReconciliation.reconciliation_date.desc(),
                CashReconciliation.reconciliation_id.desc(),
            )
            .limit(limit)
            .all()
        )
        return [
            dict(serialize_reconciliation(rec), agent_name=name, severity=self.classify(rec.variance or 0))
            for rec, name in rows
        ]


def serialize_reconciliation(rec: Optional[CashReconciliation]) -> Optional[dict]:
    if rec is None:
        return None
    return {
        "reconciliation_id": rec.reconciliation_id,
        "agent_id": rec.agent_id,
        "reconciliation_date": rec.reconciliation_date.isoformat(),
        "opening_balance": float(quantize(rec.opening_balance)),
        "total_collections": float(quantize(rec.total_collections)),
        "total_change_given": float(quantize(rec.total_change_given)),
        "closing_balance": float(quantize(rec.closing_balance)),
        "collection_count": rec.collection_count,
        "submitted_amount": float(quantize(rec.submitted_amount)) if rec.submitted_amount is not None else None,
        "variance": float(quantize(rec.variance)) if rec.variance is not None else None,
        "status": rec.status.value,
        "discrepancy_flag": bool(rec.discrepancy_flag),
        "notes": rec.notes,
        "admin_notes": rec.admin_notes,
        "submitted_at": rec.submitted_at.isoformat() if rec.submitted_at else None,
        "reviewed_at": rec.reviewed_at.isoformat() if rec.reviewed_at else None,
    }
