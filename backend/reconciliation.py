"""Payment-link lifecycle: creation, verification, order derivation and sweeps.

The engine owns no global state. The application factory builds one with the
gateway client, the stores and the mailer it should talk to.
"""
import hashlib
import hmac
import json
import logging
import re
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Optional, Tuple
from urllib.parse import urlencode

from lifecycle import (
    DERIVE_ORDER,
    GATEWAY_FAILED,
    IllegalTransition,
    LINK_COMPLETED,
    LINK_FAILED,
    LINK_PENDING,
    NOTIFY_PAYMENT_CONFIRMED,
    ORDER_PROCESSING,
    PAYMENT_CONFIRMED,
    PAYMENT_PAID,
    PAYMENT_REJECTED,
    STAMP_PAID,
    admin_link_transition,
    gateway_event,
    link_transition,
    payment_transition,
)
from money import CENT, as_float, to_amount, to_minor_units
from notifications import dispatch
from orders import (
    CUSTOM_PAYMENT_PRODUCT_ID,
    ORDER_TYPE_PAYMENT_LINK,
    confirmation_payload,
    order_totals,
)
from paystack import VerifiedTransaction, generate_reference
from storage import generate_order_number

logger = logging.getLogger(__name__)

email_regex = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

QR_CODE_API_URL = "https://api.qrserver.com/v1/create-qr-code/"
CHARGE_SUCCESS = "charge.success"
CHARGE_FAILED = "charge.failed"


class ValidationError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class InvalidSignature(Exception):
    pass


def qr_code_url(payment_url: str) -> str:
    params = {
        "size": "300x300",
        "format": "png",
        "data": payment_url,
        "color": "2563eb",
        "bgcolor": "ffffff",
        "margin": "15",
        "ecc": "M",
    }
    return f"{QR_CODE_API_URL}?{urlencode(params)}"


def sign_payload(secret: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def _positive_int(value, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a positive whole number")
    try:
        numeric = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a positive whole number")
    if numeric < 1:
        raise ValidationError(f"{field} must be a positive whole number")
    return numeric


def split_line_amount(amount: Decimal, quantity: int) -> Tuple[Decimal, int]:
    """Unit price and quantity whose product is exactly the amount paid."""
    unit = (amount / quantity).quantize(CENT)
    if unit * quantity == amount:
        return unit, quantity
    return amount, 1


class ReconciliationEngine:
    def __init__(
        self,
        gateway,
        links,
        orders,
        catalog,
        mailer,
        webhook_secret: Optional[str] = None,
        frontend_url: Optional[str] = None,
        currency: str = "NGN",
        fallback_customer_email: str = "customer@nevellines.com",
        default_timeout_minutes: int = 1440,
        stale_after_minutes: int = 10,
    ):
        self.gateway = gateway
        self.links = links
        self.orders = orders
        self.catalog = catalog
        self.mailer = mailer
        self.webhook_secret = webhook_secret or ""
        self.frontend_url = (frontend_url or "").rstrip("/")
        self.currency = currency
        self.fallback_customer_email = fallback_customer_email
        self.default_timeout_minutes = default_timeout_minutes
        self.stale_after_minutes = stale_after_minutes

    # --- Create ---

    def create_link(self, payload: Dict, now: Optional[datetime] = None) -> Dict:
        now = now or datetime.utcnow()
        product_id = str(payload.get("productId") or "").strip() or None
        raw_quantity = payload.get("quantity")
        quantity = 1 if raw_quantity in (None, "") else _positive_int(raw_quantity, "Quantity")
        timeout_minutes = _positive_int(
            payload.get("sessionTimeoutMinutes") or self.default_timeout_minutes,
            "Session timeout",
        )

        product_name = ""
        if product_id:
            product = self.catalog.find_by_id(product_id)
            if not product:
                raise ValidationError("Product not found", 404)
            product_name = product.get("name", "")
            raw_amount = to_amount(product.get("price") or 0) * quantity
        else:
            raw_amount = payload.get("customAmount")

        try:
            amount = to_amount(raw_amount)
        except ValueError:
            raise ValidationError("Amount must be greater than zero")
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero")
        if amount < 1:
            raise ValidationError(f"Minimum amount is {self.currency} 1.00")

        customer_email = str(payload.get("customerEmail") or "").strip().lower() or None
        email_to_use = customer_email or self.fallback_customer_email
        if not email_regex.match(email_to_use):
            raise ValidationError("Invalid email format")

        if not self.frontend_url:
            logger.error("FRONTEND_URL is not configured; cannot build callback URL")
            raise ValidationError("Server configuration error", 500)

        customer_name = str(payload.get("customerName") or "").strip() or None
        customer_phone = str(payload.get("customerPhone") or "").strip() or None
        description = (
            str(payload.get("description") or "").strip()
            or product_name
            or "Payment for Nevellines"
        )
        link_metadata = {
            "created_by": "admin",
            "created_at": now.isoformat() + "Z",
            "session_timeout_minutes": timeout_minutes,
        }
        custom_fields = [
            {
                "display_name": "Product Name",
                "variable_name": "product_name",
                "value": product_name or description,
            },
            {"display_name": "Quantity", "variable_name": "quantity", "value": str(quantity)},
        ]
        if customer_name or customer_phone:
            custom_fields.append(
                {
                    "display_name": "Customer Name",
                    "variable_name": "customer_name",
                    "value": customer_name or "N/A",
                }
            )
        if customer_phone:
            custom_fields.append(
                {"display_name": "Phone", "variable_name": "phone", "value": customer_phone}
            )

        reference = generate_reference(now)
        logger.info(
            "Creating payment link %s for %s %s (product=%s, quantity=%s)",
            reference,
            self.currency,
            amount,
            product_id or "custom",
            quantity,
        )
        initialized = self.gateway.initialize_transaction(
            email=email_to_use,
            amount_minor_units=to_minor_units(amount),
            reference=reference,
            callback_url=f"{self.frontend_url}/payment/callback",
            metadata=dict(
                link_metadata,
                productId=product_id,
                productName=product_name,
                quantity=quantity,
                description=description,
                custom_fields=custom_fields,
            ),
            currency=self.currency,
        )

        link = {
            "reference": initialized.reference,
            "amount": as_float(amount),
            "product_id": product_id,
            "product_name": product_name or None,
            "description": description,
            "customer_email": customer_email,
            "customer_name": customer_name,
            "customer_phone": customer_phone,
            "quantity": quantity,
            "metadata": link_metadata,
            "authorization_url": initialized.authorization_url,
            "access_code": initialized.access_code,
            "checkout_url": initialized.authorization_url,
            "qr_code": qr_code_url(initialized.authorization_url),
            "short_url": initialized.authorization_url,
            "status": LINK_PENDING,
            "session_timeout_minutes": timeout_minutes,
            "expires_at": now + timedelta(minutes=timeout_minutes),
            "created_at": now,
        }
        self.links.create(link)
        logger.info("Payment link %s saved, expires at %s", link["reference"], link["expires_at"])
        return link

    # --- Verify ---

    def verify(self, reference: str, now: Optional[datetime] = None) -> VerifiedTransaction:
        """Ask the gateway about a reference and move local state to match.

        Gateway errors propagate untouched and leave every record as it was.
        """
        verification = self.gateway.verify_transaction(reference)
        self.apply_verification(reference, verification, now)
        return verification

    def apply_verification(
        self, reference: str, verification: VerifiedTransaction, now: Optional[datetime] = None
    ) -> Optional[str]:
        now = now or datetime.utcnow()
        if verification.reference and verification.reference != reference:
            logger.warning(
                "Gateway answered for %s while verifying %s; ignoring",
                verification.reference,
                reference,
            )
            return None

        link = self.links.find_by_reference(reference)
        if not link:
            if verification.status == "success":
                order = self.orders.find_by_payment_reference(reference)
                if order:
                    self.confirm_order_payment(order)
            else:
                logger.info("No payment link stored for %s", reference)
            return None

        transition = link_transition(
            link.get("status") or LINK_PENDING, gateway_event(verification.status)
        )
        if STAMP_PAID in transition.effects:
            if self.links.mark_completed(reference, now):
                logger.info("Payment link %s marked completed", reference)
        elif transition.status == LINK_FAILED and link.get("status") != LINK_FAILED:
            if self.links.mark_failed(reference):
                logger.info("Payment link %s marked failed", reference)

        if DERIVE_ORDER in transition.effects:
            self.derive_order(link, verification)
        return transition.status

    def apply_failure(self, reference: str) -> None:
        link = self.links.find_by_reference(reference)
        if link:
            current = link.get("status") or LINK_PENDING
            transition = link_transition(current, GATEWAY_FAILED)
            if transition.status != current and self.links.mark_failed(reference):
                logger.info("Payment link %s marked failed", reference)

        order = self.orders.find_by_payment_reference(reference)
        if order:
            change = payment_transition(
                order.get("status"), order.get("payment_status"), PAYMENT_REJECTED
            )
            if change.payment_status != order.get("payment_status"):
                if self.orders.mark_payment_failed(order["_id"]):
                    logger.info(
                        "Order %s payment status updated to failed", order.get("order_number")
                    )

    # --- Derive-Order ---

    def confirm_order_payment(self, order: Dict) -> bool:
        change = payment_transition(
            order.get("status"), order.get("payment_status"), PAYMENT_CONFIRMED
        )
        if change.payment_status == order.get("payment_status"):
            return False
        if not self.orders.mark_paid(order["_id"], change.status):
            return False

        old_payment_status = order.get("payment_status")
        order["payment_status"] = change.payment_status
        order["status"] = change.status
        logger.info(
            "Order %s payment status %s -> paid",
            order.get("order_number"),
            old_payment_status,
        )
        if NOTIFY_PAYMENT_CONFIRMED in change.effects and order.get("customer_email"):
            dispatch(
                self.mailer.send_status_update,
                order.get("customer_email"),
                order.get("customer_name") or "Valued Customer",
                order.get("order_number"),
                "pending_payment",
                "payment_confirmed",
            )
        return True

    def build_link_order(
        self, link: Dict, product: Optional[Dict], verification: Optional[VerifiedTransaction]
    ) -> Dict:
        amount = to_amount(link.get("amount") or 0)
        quantity = int(link.get("quantity") or 1)
        unit_price, line_quantity = split_line_amount(amount, quantity)

        if product:
            items = [
                {
                    "product_id": str(product["_id"]),
                    "name": product.get("name", ""),
                    "price": as_float(unit_price),
                    "quantity": line_quantity,
                    "image": product.get("image"),
                }
            ]
        else:
            items = [
                {
                    "product_id": CUSTOM_PAYMENT_PRODUCT_ID,
                    "name": link.get("product_name")
                    or link.get("description")
                    or "Custom Payment",
                    "price": as_float(unit_price),
                    "quantity": line_quantity,
                    "image": None,
                }
            ]

        customer = (verification.customer if verification else None) or {}
        first_name = str(customer.get("first_name") or "").strip()
        last_name = str(customer.get("last_name") or "").strip()
        gateway_name = f"{first_name} {last_name}".strip() if first_name and last_name else ""

        totals = order_totals(items, 0)
        return {
            "order_number": generate_order_number(),
            "order_type": ORDER_TYPE_PAYMENT_LINK,
            "customer_email": str(
                customer.get("email") or link.get("customer_email") or ""
            ).strip().lower(),
            "customer_name": gateway_name or link.get("customer_name") or "Valued Customer",
            "customer_phone": link.get("customer_phone") or "",
            "items": items,
            "subtotal": totals["subtotal"],
            "shipping": totals["shipping"],
            "total": totals["total"],
            "payment_method": "paystack",
            "payment_reference": link["reference"],
            "payment_status": PAYMENT_PAID,
            "status": ORDER_PROCESSING,
            "notes": f"Payment Link Order - {link.get('description') or 'No description'}",
            "metadata": {
                "payment_link_id": str(link.get("_id") or ""),
                "paystack": verification.as_dict() if verification else {},
            },
        }

    def derive_order(
        self, link: Dict, verification: Optional[VerifiedTransaction] = None
    ) -> Tuple[Dict, bool]:
        """Turn a completed link into exactly one order.

        Returns (order, created). Stock and the confirmation email belong to
        whichever call actually inserted the order.
        """
        reference = link["reference"]
        existing = self.orders.find_by_payment_reference(reference)
        if existing:
            logger.info("Order already exists for reference %s", reference)
            self.confirm_order_payment(existing)
            return existing, False

        if verification is not None:
            link_amount = to_amount(link.get("amount") or 0)
            if to_minor_units(link_amount) != verification.amount_minor_units:
                logger.warning(
                    "Gateway amount %s differs from link amount %s for %s; using link amount",
                    verification.amount,
                    link_amount,
                    reference,
                )

        product = self.catalog.find_by_id(link["product_id"]) if link.get("product_id") else None
        order, created = self.orders.insert_if_absent(
            self.build_link_order(link, product, verification)
        )
        if not created:
            logger.info("Order for %s was created concurrently", reference)
            self.confirm_order_payment(order)
            return order, False

        logger.info(
            "Created order %s from payment link %s", order.get("order_number"), reference
        )

        if product:
            try:
                self.catalog.adjust_stock(product["_id"], -int(link.get("quantity") or 1))
            except Exception as exc:
                logger.error(
                    "Order %s saved but stock decrement for %s failed: %s",
                    order.get("order_number"),
                    product["_id"],
                    exc,
                )

        if order.get("customer_email"):
            dispatch(self.mailer.send_order_confirmation, confirmation_payload(order))
        return order, True

    # --- Sweep ---

    def sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or datetime.utcnow()
        summary = {"expired": 0, "checked": 0, "completed": 0, "failed": 0, "errors": 0}

        summary["expired"] = self.links.expire_overdue(now)
        if summary["expired"]:
            logger.info("Expired %s overdue payment links", summary["expired"])

        cutoff = now - timedelta(minutes=self.stale_after_minutes)
        for link in self.links.find_stale_pending(cutoff):
            reference = link.get("reference")
            summary["checked"] += 1
            try:
                logger.info("Checking status for old pending link: %s", reference)
                verification = self.gateway.verify_transaction(reference)
                outcome = self.apply_verification(reference, verification, now)
            except Exception as exc:
                summary["errors"] += 1
                logger.error("Error checking status for link %s: %s", reference, exc)
                continue

            if outcome == LINK_COMPLETED:
                summary["completed"] += 1
            elif outcome == LINK_FAILED:
                summary["failed"] += 1
        return summary

    def list_links(self, now: Optional[datetime] = None, **filters):
        summary = self.sweep(now)
        documents, total = self.links.search(**filters)
        return documents, total, summary

    # --- Webhook ---

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        if not self.webhook_secret or not signature:
            return False
        expected = sign_payload(self.webhook_secret, raw_body).encode("ascii")
        return hmac.compare_digest(expected, str(signature).encode("utf-8", "surrogateescape"))

    def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> str:
        if not self.verify_signature(raw_body, signature):
            logger.warning("Invalid Paystack webhook signature")
            raise InvalidSignature("Invalid webhook signature")

        try:
            event = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            raise ValidationError("Invalid webhook payload")
        if not isinstance(event, dict):
            raise ValidationError("Invalid webhook payload")

        event_type = event.get("event")
        data = event.get("data") if isinstance(event.get("data"), dict) else {}
        reference = str(data.get("reference") or "").strip()
        logger.info("Paystack webhook received: %s", event_type)

        if event_type not in (CHARGE_SUCCESS, CHARGE_FAILED):
            logger.info("Unhandled webhook event: %s", event_type)
            return "ignored"
        if not reference:
            logger.warning("Paystack webhook %s without a reference", event_type)
            return "ignored"

        if event_type == CHARGE_SUCCESS:
            self.verify(reference)
        else:
            self.apply_failure(reference)
        return event_type

    # --- Admin ---

    def track_view(self, reference: str, ip_address: str, now: Optional[datetime] = None):
        return self.links.record_view(reference, ip_address or "unknown", now or datetime.utcnow())

    def set_link_status(self, reference: str, status: str, now: Optional[datetime] = None):
        link = self.links.find_by_reference(reference)
        if not link:
            raise ValidationError("Payment link not found", 404)
        try:
            transition = admin_link_transition(link.get("status") or LINK_PENDING, status)
        except IllegalTransition as exc:
            raise ValidationError(str(exc))

        if STAMP_PAID in transition.effects:
            self.links.mark_completed(reference, now or datetime.utcnow())
            return self.links.find_by_reference(reference)
        return self.links.set_status(reference, transition.status)

    def delete_link(self, reference: str) -> None:
        if not self.links.delete(reference):
            raise ValidationError("Payment link not found", 404)

