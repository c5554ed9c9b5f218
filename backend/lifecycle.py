"""Legal status transitions for payment links and orders.

Everything here is pure: callers hand in the current state and an event and
get back the next state plus the side effects they are expected to run.
"""
from datetime import datetime
from typing import Dict, NamedTuple, Optional, Tuple

# Payment link states
LINK_PENDING = "pending"
LINK_COMPLETED = "completed"
LINK_FAILED = "failed"
LINK_EXPIRED = "expired"
LINK_STATUSES = (LINK_PENDING, LINK_COMPLETED, LINK_FAILED, LINK_EXPIRED)

# Order fulfilment states
ORDER_PENDING = "pending"
ORDER_PROCESSING = "processing"
ORDER_COMPLETED = "completed"
ORDER_CANCELLED = "cancelled"
ORDER_STATUSES = (ORDER_PENDING, ORDER_PROCESSING, ORDER_COMPLETED, ORDER_CANCELLED)

# Order money states
PAYMENT_PENDING = "pending"
PAYMENT_PAID = "paid"
PAYMENT_FAILED = "failed"
PAYMENT_STATUSES = (PAYMENT_PENDING, PAYMENT_PAID, PAYMENT_FAILED)

# Events
GATEWAY_SUCCESS = "gateway_success"
GATEWAY_FAILED = "gateway_failed"
GATEWAY_PENDING = "gateway_pending"
EXPIRE = "expire"
PAYMENT_CONFIRMED = "payment_confirmed"
PAYMENT_REJECTED = "payment_failed"

# Effects
STAMP_PAID = "stamp_paid"
DERIVE_ORDER = "derive_order"
NOTIFY_PAYMENT_CONFIRMED = "notify_payment_confirmed"
RESTORE_STOCK = "restore_stock"
NOTIFY_STATUS_CHANGE = "notify_status_change"

SOLD_OUT_BADGE = "SOLD OUT"

_GATEWAY_EVENTS = {
    "success": GATEWAY_SUCCESS,
    "failed": GATEWAY_FAILED,
    "pending": GATEWAY_PENDING,
}


class IllegalTransition(Exception):
    def __init__(self, current: str, event: str, message: Optional[str] = None):
        super().__init__(message or f"Cannot apply {event} to {current}")
        self.current = current
        self.event = event


class Transition(NamedTuple):
    status: str
    effects: Tuple[str, ...] = ()


class PaymentTransition(NamedTuple):
    status: str
    payment_status: str
    effects: Tuple[str, ...] = ()


def gateway_event(verification_status: str) -> str:
    return _GATEWAY_EVENTS.get(verification_status, GATEWAY_PENDING)


def link_transition(status: str, event: str) -> Transition:
    if status not in LINK_STATUSES:
        raise IllegalTransition(status, event, f"Unknown link status: {status}")

    if event == GATEWAY_SUCCESS:
        if status == LINK_COMPLETED:
            # Order derivation is idempotent, so a repeat success still runs it.
            return Transition(LINK_COMPLETED, (DERIVE_ORDER,))
        return Transition(LINK_COMPLETED, (STAMP_PAID, DERIVE_ORDER))

    if event == GATEWAY_FAILED:
        if status == LINK_COMPLETED:
            return Transition(LINK_COMPLETED)
        return Transition(LINK_FAILED)

    if event == GATEWAY_PENDING:
        return Transition(status)

    if event == EXPIRE:
        if status == LINK_PENDING:
            return Transition(LINK_EXPIRED)
        return Transition(status)

    raise IllegalTransition(status, event)


def admin_link_transition(status: str, requested: str) -> Transition:
    """Manual override from the admin panel. Stamps payment on completion."""
    if requested not in LINK_STATUSES:
        raise IllegalTransition(
            status,
            requested,
            "Invalid status. Must be one of: pending, completed, failed, expired",
        )
    if requested == LINK_COMPLETED and status != LINK_COMPLETED:
        return Transition(LINK_COMPLETED, (STAMP_PAID,))
    return Transition(requested)


def payment_transition(
    order_status: str, payment_status: str, event: str
) -> PaymentTransition:
    if event == PAYMENT_CONFIRMED:
        if payment_status == PAYMENT_PAID:
            return PaymentTransition(order_status, payment_status)
        effects: Tuple[str, ...] = ()
        if payment_status == PAYMENT_PENDING:
            effects = (NOTIFY_PAYMENT_CONFIRMED,)
        return PaymentTransition(ORDER_PROCESSING, PAYMENT_PAID, effects)

    if event == PAYMENT_REJECTED:
        if payment_status == PAYMENT_PAID:
            return PaymentTransition(order_status, payment_status)
        return PaymentTransition(order_status, PAYMENT_FAILED)

    raise IllegalTransition(payment_status, event)


def cancel_transition(order_status: str) -> Transition:
    if order_status in (ORDER_COMPLETED, ORDER_CANCELLED):
        raise IllegalTransition(
            order_status, "cancel", f"Cannot cancel order with status: {order_status}"
        )
    return Transition(ORDER_CANCELLED, (RESTORE_STOCK,))


def status_update_transition(current: str, requested: Optional[str]) -> Transition:
    """Admin status change. Cancelling goes through the stock-restoring path."""
    if not requested:
        return Transition(current)
    if requested not in ORDER_STATUSES:
        raise IllegalTransition(current, requested, f"Invalid order status: {requested}")
    if requested == current:
        return Transition(current)
    if current == ORDER_CANCELLED:
        raise IllegalTransition(current, requested, "Cannot reopen a cancelled order")
    if requested == ORDER_CANCELLED:
        effects = cancel_transition(current).effects + (NOTIFY_STATUS_CHANGE,)
        return Transition(ORDER_CANCELLED, effects)
    return Transition(requested, (NOTIFY_STATUS_CHANGE,))


def admin_payment_transition(current: str, requested: Optional[str]) -> str:
    """Manual payment status override. A paid order stays paid."""
    if not requested or requested == current:
        return current
    if requested not in PAYMENT_STATUSES:
        raise IllegalTransition(current, requested, f"Invalid payment status: {requested}")
    if current == PAYMENT_PAID:
        raise IllegalTransition(
            current, requested, f"Cannot change payment status of a paid order to {requested}"
        )
    return requested


# --- Derived fields ---


def stock_flags(quantity: int, badge: Optional[str] = None) -> Tuple[bool, Optional[str]]:
    """Availability and display badge implied by a stock count."""
    if quantity <= 0:
        return False, SOLD_OUT_BADGE
    if badge == SOLD_OUT_BADGE:
        return True, None
    return True, badge


def is_expired(link: Dict, now: Optional[datetime] = None) -> bool:
    expires_at = link.get("expires_at")
    if not isinstance(expires_at, datetime):
        return False
    return (now or datetime.utcnow()) > expires_at


def time_remaining(link: Dict, now: Optional[datetime] = None) -> Optional[int]:
    """Milliseconds until expiry, 0 once expired, None without expiry."""
    expires_at = link.get("expires_at")
    if not isinstance(expires_at, datetime):
        return None
    remaining = expires_at - (now or datetime.utcnow())
    return max(0, int(remaining.total_seconds() * 1000))


def format_time_remaining(
    expires_at: Optional[datetime], now: Optional[datetime] = None
) -> str:
    if not isinstance(expires_at, datetime):
        return "No expiry"

    seconds = (expires_at - (now or datetime.utcnow())).total_seconds()
    if seconds <= 0:
        return "Expired"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    if hours > 24:
        return f"{hours // 24}d {hours % 24}h"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"
