from fastapi import APIRouter, Depends, HTTPException, Request, status, Query
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field
from typing import Any, Optional, Union
from database import get_db
from config import settings
from models.audit_log import AuditEvent
from models.order import Order
from models.rider import Rider
from models.user import User
from services.audit_service import AuditService
from services.collection_processor import CollectionOptions, CollectionProcessor
from services.order_gateway import SqlOrderGateway
from services.payment_ledger import PaymentLedger
from services.report_exporter import ReportExporter, serialize_transaction
from utils.dependencies import get_current_agent, get_rate_guard, require_admin
from utils.rate_guard import RateGuard
from utils.validators import validate_date

router = APIRouter(prefix="/payments", tags=["Payments"])


# Schemas
class CollectPaymentRequest(BaseModel):
    order_id: Union[int, str]
    collected_amount: Any = None
    change_amount: Any = None
    notes: Optional[str] = None
    timestamp: Any = None
    session_id: Optional[str] = Field(None, max_length=64)


class CalculateChangeRequest(BaseModel):
    order_total: Any = None
    collected_amount: Any = None


class VerifyPaymentRequest(BaseModel):
    verified: bool = True


class OrderEventRequest(BaseModel):
    order_id: int
    status: str = Field(..., min_length=1, max_length=30)


def get_collection_processor(
    db: Session = Depends(get_db),
    rate_guard: RateGuard = Depends(get_rate_guard)
) -> CollectionProcessor:
    return CollectionProcessor(db, SqlOrderGateway(db), rate_guard)


@router.post("/collect")
def collect_payment(
    body: CollectPaymentRequest,
    request: Request,
    rider: Rider = Depends(get_current_agent),
    processor: CollectionProcessor = Depends(get_collection_processor)
):
    """Record a cash-on-delivery payment collected by the rider"""
    receipt = processor.collect(
        body.order_id,
        rider.rider_id,
        body.collected_amount,
        CollectionOptions(
            notes=body.notes,
            client_change=body.change_amount,
            timestamp=body.timestamp,
            client_ip=request.client.host if request.client else None,
            session_ref=body.session_id,
        ),
    )
    return {
        "success": True,
        "message": "Payment collected successfully",
        "data": receipt.to_dict()
    }


@router.post("/calculate-change")
def calculate_change(
    body: CalculateChangeRequest,
    rider: Rider = Depends(get_current_agent),
    processor: CollectionProcessor = Depends(get_collection_processor)
):
    """Preview the change owed before collecting"""
    return {
        "success": True,
        "message": "Change calculated",
        "data": processor.calculate_change(body.order_total, body.collected_amount)
    }


@router.get("/my-report")
def get_my_daily_report(
    date: Optional[str] = Query(None, description="YYYY-MM-DD, defaults to today"),
    rider: Rider = Depends(get_current_agent),
    db: Session = Depends(get_db)
):
    """Rider's own collections and reconciliation for one day"""
    day = validate_date(date)
    return {
        "success": True,
        "message": "Daily report retrieved successfully",
        "data": ReportExporter(db).daily_report(rider.rider_id, day)
    }


@router.post("/order-events")
def order_status_changed(
    body: OrderEventRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Order system notifies a status change; opens the payment record when due"""
    order = db.query(Order).filter(Order.order_id == body.order_id).first()
    if not order:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Order not found"
        )

    order.status = body.status
    db.commit()

    gateway = SqlOrderGateway(db)
    txn = PaymentLedger(db).on_order_status_changed(
        gateway.get_order(body.order_id),
        settings.PAYMENT_RECORD_TRIGGER_STATUSES
    )
    return {
        "success": True,
        "message": "Payment record ready" if txn else "No payment record needed for this status",
        "data": serialize_transaction(txn) if txn else None
    }


@router.post("/{transaction_id}/verify")
def verify_payment(
    transaction_id: int,
    body: VerifyPaymentRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Admin marks a collected payment as verified, or withdraws verification"""
    txn = PaymentLedger(db).set_verified(transaction_id, body.verified)

    AuditService(db).record(
        AuditEvent.payment_verified if body.verified else AuditEvent.payment_unverified,
        agent_id=txn.agent_id,
        order_id=txn.order_id,
        actor_user_id=admin.user_id,
        details={"transaction_id": transaction_id}
    )
    return {
        "success": True,
        "message": "Payment verified" if body.verified else "Payment verification withdrawn",
        "data": serialize_transaction(txn)
    }
