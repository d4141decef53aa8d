"""
Validators: guard functions for untrusted input from courier devices.

Everything here is pure: no database access, no side effects. Failures are
raised as InputValidationError with a stable error code.
"""
import math
import re
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterable, Optional

from config import settings
from services.errors import InputValidationError
from utils.money import quantize, to_decimal

_TAG_RE = re.compile(r"<[^>]*>")
_SCRIPT_RE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

# order ids are stored in INT columns
MAX_ORDER_ID = 2_147_483_647


def validate_order_reference(
    raw: Any,
    order_status: Optional[str] = None,
    collectible_statuses: Optional[Iterable[str]] = None,
) -> int:
    """Parse an order id and, when the order's status is known, require it
    to be one of the collectible statuses."""
    if isinstance(raw, bool):
        raise InputValidationError("invalid_order_reference", "Invalid order ID")
    try:
        if isinstance(raw, float):
            if not raw.is_integer():
                raise ValueError(raw)
            order_id = int(raw)
        else:
            order_id = int(str(raw).strip())
    except (TypeError, ValueError):
        raise InputValidationError("invalid_order_reference", "Invalid order ID")

    if order_id <= 0 or order_id > MAX_ORDER_ID:
        raise InputValidationError("invalid_order_reference", "Invalid order ID")

    if order_status is not None:
        allowed = set(collectible_statuses or settings.COLLECTIBLE_ORDER_STATUSES)
        if order_status not in allowed:
            raise InputValidationError(
                "order_not_collectible",
                f"Order #{order_id} is '{order_status}' and cannot be collected",
            )

    return order_id


def validate_amount(
    raw: Any,
    allow_zero: bool = True,
    ceiling: Optional[Decimal] = None,
) -> Decimal:
    """Numeric, non-negative (strictly positive unless allow_zero), at most
    the hard ceiling, rounded to cents."""
    if raw is None or isinstance(raw, bool):
        raise InputValidationError("invalid_amounts", "Amount is required")
    if isinstance(raw, float) and not math.isfinite(raw):
        raise InputValidationError("invalid_amounts", "Amount must be a finite number")
    try:
        amount = to_decimal(raw)
    except (InvalidOperation, ValueError):
        raise InputValidationError("invalid_amounts", "Amount must be numeric")
    if not amount.is_finite():
        raise InputValidationError("invalid_amounts", "Amount must be a finite number")

    limit = quantize(ceiling if ceiling is not None else settings.MAX_COLLECTION_AMOUNT)
    try:
        amount = quantize(amount)
    except InvalidOperation:
        # too many digits to carry in cents
        raise InputValidationError("invalid_amounts", f"Amount exceeds the maximum of {limit}")

    if amount < 0:
        raise InputValidationError("invalid_amounts", "Amount cannot be negative")
    if amount == 0 and not allow_zero:
        raise InputValidationError("invalid_amounts", "Amount must be greater than zero")
    if amount > limit:
        raise InputValidationError(
            "invalid_amounts",
            f"Amount {amount} exceeds the maximum of {limit}",
        )
    return amount


def _parse_client_time(raw: Any) -> Optional[datetime]:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, datetime):
        parsed = raw
    elif isinstance(raw, (int, float)):
        if not math.isfinite(raw):
            return None
        seconds = raw / 1000 if raw > 1e11 else raw  # epoch millis from JS clients
        try:
            return datetime.fromtimestamp(seconds)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def validate_timestamp(
    raw: Any,
    now: Optional[Callable[[], datetime]] = None,
) -> datetime:
    """Client clock is advisory: anything unparseable, more than a few
    minutes ahead, or older than a day is replaced by server time."""
    server_now = (now or datetime.now)()
    parsed = _parse_client_time(raw)
    if parsed is None:
        return server_now

    if parsed > server_now + timedelta(minutes=settings.TIMESTAMP_FUTURE_SKEW_MINUTES):
        return server_now
    if parsed < server_now - timedelta(hours=settings.TIMESTAMP_MAX_AGE_HOURS):
        return server_now
    return parsed


def sanitize_notes(raw: Any, max_length: Optional[int] = None) -> str:
    """Strip markup and control characters, then truncate."""
    if raw is None:
        return ""
    text = str(raw)
    text = _SCRIPT_RE.sub("", text)
    text = _TAG_RE.sub("", text)
    text = _CONTROL_RE.sub("", text)
    text = text.replace("\r\n", "\n").strip()
    limit = max_length if max_length is not None else settings.NOTES_MAX_LENGTH
    return text[:limit]


def validate_date(raw: Any, default: Optional[date] = None) -> date:
    """YYYY-MM-DD (or a date). Empty input falls back to *default* / today."""
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return default or date.today()
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    try:
        return datetime.strptime(str(raw).strip(), "%Y-%m-%d").date()
    except ValueError:
        raise InputValidationError("invalid_date", "Invalid date format; expected YYYY-MM-DD")
