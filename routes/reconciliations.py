from datetime import date as date_type, timedelta
from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field
from typing import Any, Optional
from database import get_db
from config import settings
from models.audit_log import AuditEvent
from models.rider import Rider
from models.user import User
from services.audit_service import AuditService
from services.errors import ReconciliationError
from services.reconciliation_aggregator import ReconciliationAggregator
from services.report_exporter import ReportExporter
from services.scheduler import sweep_day
from services.variance_reviewer import VarianceReviewer, serialize_reconciliation
from utils.dependencies import get_current_agent, require_admin
from utils.notification_helper import notify_reconciliation_reviewed
from utils.validators import sanitize_notes, validate_amount, validate_date
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliations", tags=["Cash Reconciliation"])


# Schemas
class SubmitReconciliationRequest(BaseModel):
    submitted_amount: Any = None
    notes: Optional[str] = None
    date: Optional[str] = None


class ReviewReconciliationRequest(BaseModel):
    decision: str = Field(..., description="approve or reject")
    admin_notes: Optional[str] = None


def _result(reviewer: VarianceReviewer, rec) -> dict:
    data = serialize_reconciliation(rec)
    if rec.variance is not None:
        data["severity"] = reviewer.classify(rec.variance)
    return data


# ============================================================================
# RIDER ENDPOINTS
# ============================================================================

@router.post("/submit")
def submit_reconciliation(
    body: SubmitReconciliationRequest,
    rider: Rider = Depends(get_current_agent),
    db: Session = Depends(get_db)
):
    """Rider submits the cash physically counted at the end of the day"""
    day = validate_date(body.date)
    amount = validate_amount(body.submitted_amount)
    notes = sanitize_notes(body.notes)

    reviewer = VarianceReviewer(db)
    rec = reviewer.submit(rider.rider_id, day, amount, notes)

    AuditService(db).record(
        AuditEvent.reconciliation_submitted,
        agent_id=rider.rider_id,
        reconciliation_id=rec.reconciliation_id,
        actor_user_id=rider.user_id,
        details={"submitted_amount": str(amount), "variance": str(rec.variance), "status": rec.status.value}
    )
    return {
        "success": True,
        "message": f"Reconciliation {rec.status.value}",
        "data": _result(reviewer, rec)
    }


# ============================================================================
# ADMIN ENDPOINTS
# ============================================================================

@router.get("/pending")
def get_pending_reconciliations(
    limit: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Submissions waiting for an admin decision, newest first"""
    pending = VarianceReviewer(db).list_pending(limit)
    return {"success": True, "message": f"{len(pending)} pending", "data": pending}


@router.post("/{reconciliation_id}/review")
def review_reconciliation(
    reconciliation_id: int,
    body: ReviewReconciliationRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    reviewer = VarianceReviewer(db)
    rec = reviewer.review(
        reconciliation_id,
        body.decision,
        sanitize_notes(body.admin_notes),
        reviewer_user_id=admin.user_id
    )

    AuditService(db).record(
        AuditEvent.reconciliation_reviewed,
        agent_id=rec.agent_id,
        reconciliation_id=rec.reconciliation_id,
        actor_user_id=admin.user_id,
        details={"decision": rec.status.value, "variance": str(rec.variance), "flagged": bool(rec.discrepancy_flag)}
    )

    rider = db.query(Rider).filter(Rider.rider_id == rec.agent_id).first()
    if rider:
        notify_reconciliation_reviewed(db, rider.user_id, rec.reconciliation_id, rec.status.value, float(rec.variance or 0))

    return {
        "success": True,
        "message": f"Reconciliation {rec.status.value}",
        "data": _result(reviewer, rec)
    }


@router.post("/{reconciliation_id}/recompute")
def recompute_reconciliation(
    reconciliation_id: int,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Rebuild a day's running totals from the payment ledger"""
    rec = ReconciliationAggregator(db).recompute(reconciliation_id)

    AuditService(db).record(
        AuditEvent.reconciliation_corrected,
        agent_id=rec.agent_id,
        reconciliation_id=rec.reconciliation_id,
        actor_user_id=admin.user_id,
        details={"closing_balance": str(rec.closing_balance), "collection_count": rec.collection_count}
    )
    return {
        "success": True,
        "message": "Reconciliation recomputed",
        "data": serialize_reconciliation(rec)
    }


@router.get("/report")
def get_daily_report(
    agent_id: int = Query(...),
    date: Optional[str] = Query(None, description="YYYY-MM-DD, defaults to today"),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    day = validate_date(date)
    return {
        "success": True,
        "message": "Daily report retrieved successfully",
        "data": ReportExporter(db).daily_report(agent_id, day)
    }


@router.get("/export")
def export_reconciliations(
    date_from: Optional[str] = Query(None),
    date_to: Optional[str] = Query(None),
    agent_id: Optional[int] = Query(None),
    format: str = Query("json", pattern="^(json|csv)$"),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Collected transactions joined with their reconciliation, plus a summary row"""
    end = validate_date(date_to)
    start = validate_date(date_from, default=end - timedelta(days=6))

    exporter = ReportExporter(db)
    rows = exporter.range_export(start, end, agent_id)

    if format == "csv":
        filename = f"cod_reconciliation_{start.isoformat()}_{end.isoformat()}.csv"
        return Response(
            content=exporter.to_csv(rows),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'}
        )

    return {
        "success": True,
        "message": f"{len(rows) - 1} transactions exported",
        "data": rows
    }


@router.get("/statistics")
def get_payment_statistics(
    date_from: Optional[str] = Query(None),
    date_to: Optional[str] = Query(None),
    agent_id: Optional[int] = Query(None),
    payment_type: Optional[str] = Query(None),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    start = validate_date(date_from) if date_from else None
    end = validate_date(date_to) if date_to else None
    return {
        "success": True,
        "message": "Payment statistics retrieved successfully",
        "data": ReportExporter(db).payment_statistics(start, end, agent_id, payment_type)
    }


@router.post("/sweep")
def run_daily_sweep(
    date: Optional[str] = Query(None, description="YYYY-MM-DD, defaults to yesterday"),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Run the end-of-day reconciliation sweep on demand"""
    day = validate_date(date, default=date_type.today() - timedelta(days=1))
    logger.info(f"Manual sweep for {day} requested by admin {admin.user_id}")

    result = sweep_day(db, day)
    if result is None:
        raise ReconciliationError("sweep_in_progress", "A reconciliation sweep is already running")
    return {
        "success": True,
        "message": "Sweep completed",
        "data": result.to_dict()
    }
