# utils/notification_helper.py
# Helper to create notifications for cash collection and reconciliation events

from sqlalchemy.orm import Session
from models.notification import Notification, NotificationType

RECONCILIATION_REFERENCE = "cash_reconciliation"


def create_notification(db: Session, user_id: int, notification_type: NotificationType, title: str, message: str, reference_id: int = None, reference_type: str = None):
    """Create a notification for a user"""
    notif = Notification(
        user_id=user_id,
        notification_type=notification_type,
        title=title,
        message=message,
        reference_id=reference_id,
        reference_type=reference_type
    )
    db.add(notif)
    db.commit()
    return notif


def already_notified(db: Session, user_id: int, reference_type: str, reference_id: int) -> bool:
    return db.query(Notification).filter(
        Notification.user_id == user_id,
        Notification.reference_type == reference_type,
        Notification.reference_id == reference_id
    ).first() is not None


def notify_reconciliation_due(db: Session, rider, report: dict, row) -> bool:
    """Remind a rider to submit the day's cash. Sent at most once per reconciliation."""
    if already_notified(db, rider.user_id, RECONCILIATION_REFERENCE, row.reconciliation_id):
        return False

    summary = report["summary"]
    create_notification(
        db=db,
        user_id=rider.user_id,
        notification_type=NotificationType.cash_reconciliation,
        title="Cash Reconciliation Due",
        message=(
            f"You collected ₱{summary['total_collections']:.2f} across "
            f"{summary['transaction_count']} COD orders on {report['date']}. "
            f"Please submit ₱{summary['net_amount']:.2f} for reconciliation."
        ),
        reference_id=row.reconciliation_id,
        reference_type=RECONCILIATION_REFERENCE
    )
    return True


def notify_reconciliation_reviewed(db: Session, rider_user_id: int, reconciliation_id: int, decision: str, variance: float):
    """Tell the rider how an admin decided on their submission"""
    if decision == "approved":
        title = "Reconciliation Approved"
        message = "Your cash submission has been approved. Thank you!"
    else:
        title = "Reconciliation Rejected"
        message = f"Your cash submission was rejected (variance ₱{variance:.2f}). Please contact your supervisor."
    return create_notification(
        db=db,
        user_id=rider_user_id,
        notification_type=NotificationType.cash_reconciliation,
        title=title,
        message=message,
        reference_id=reconciliation_id,
        reference_type="reconciliation_review"
    )
