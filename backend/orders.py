import logging
import re
from decimal import Decimal
from typing import Dict, List, Optional

from pymongo.errors import DuplicateKeyError

from lifecycle import (
    IllegalTransition,
    NOTIFY_STATUS_CHANGE,
    ORDER_CANCELLED,
    ORDER_PENDING,
    PAYMENT_PENDING,
    RESTORE_STOCK,
    admin_payment_transition,
    cancel_transition,
    status_update_transition,
)
from money import as_float, to_amount
from notifications import dispatch
from storage import generate_order_number, normalize_object_id

logger = logging.getLogger(__name__)

CUSTOM_PAYMENT_PRODUCT_ID = "custom-payment"
ORDER_TYPE_STORE = "store"
ORDER_TYPE_PAYMENT_LINK = "payment_link"
PAYMENT_METHODS = ("paystack", "bank_transfer", "cash_on_delivery")

email_regex = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class OrderError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def safe_positive_int(value, default=0):
    try:
        numeric = int(float(value))
    except (TypeError, ValueError):
        return default
    return max(default, numeric)


def order_totals(items: List[Dict], shipping=0) -> Dict[str, float]:
    subtotal = Decimal("0")
    total_items = 0
    for item in items:
        quantity = safe_positive_int(item.get("quantity"), 0)
        subtotal += to_amount(item.get("price") or 0) * quantity
        total_items += quantity
    shipping_amount = to_amount(shipping or 0)
    return {
        "subtotal": as_float(subtotal),
        "shipping": as_float(shipping_amount),
        "total": as_float(subtotal + shipping_amount),
        "total_items": total_items,
    }


def shipping_fee_for(subtotal: float, shipping_settings: Optional[Dict]) -> float:
    shipping_settings = shipping_settings or {}
    fee = as_float(to_amount(shipping_settings.get("default_shipping_fee") or 0))
    threshold = shipping_settings.get("free_shipping_threshold")
    if threshold not in (None, "") and subtotal >= float(threshold):
        return 0.0
    return fee


def confirmation_payload(order: Dict) -> Dict:
    return {
        "customer_name": order.get("customer_name") or "Valued Customer",
        "customer_email": order.get("customer_email"),
        "order_number": order.get("order_number"),
        "items": [
            {
                "name": item.get("name"),
                "quantity": item.get("quantity"),
                "price": item.get("price"),
                "image": item.get("image"),
            }
            for item in order.get("items") or []
        ],
        "subtotal": order.get("subtotal"),
        "shipping": order.get("shipping"),
        "total": order.get("total"),
        "order_date": order.get("created_at"),
        "payment_method": order.get("payment_method"),
        "payment_reference": order.get("payment_reference"),
    }


def normalize_cart_line(entry) -> Optional[Dict]:
    if not isinstance(entry, dict):
        return None
    product_id = str(
        entry.get("productId") or entry.get("product_id") or entry.get("id") or ""
    ).strip()
    if not product_id:
        return None
    return {
        "product_id": product_id,
        "quantity": safe_positive_int(entry.get("quantity"), 1) or 1,
        "color": str(entry.get("color") or "").strip() or None,
        "size": str(entry.get("size") or "").strip() or None,
    }


def place_store_order(payload: Dict, catalog, orders, mailer, shipping_settings=None) -> Dict:
    """Validate a cart against the catalog, persist it, then take the stock.

    Nothing is written until every line has been validated.
    """
    customer_name = str(payload.get("customerName") or "").strip()
    customer_email = normalize_email(payload.get("customerEmail"))
    customer_phone = str(payload.get("customerPhone") or "").strip()
    payment_method = str(payload.get("paymentMethod") or "").strip()
    raw_items = payload.get("items")

    if not customer_name or not customer_email or not customer_phone or not payment_method:
        raise OrderError("Missing required fields")
    if not email_regex.match(customer_email):
        raise OrderError("Invalid email format")
    if payment_method not in PAYMENT_METHODS:
        raise OrderError(f"Unsupported payment method: {payment_method}")
    if not isinstance(raw_items, list) or not raw_items:
        raise OrderError("Order must contain at least one item")

    validated_items: List[Dict] = []
    for entry in raw_items:
        line = normalize_cart_line(entry)
        if line is None:
            raise OrderError("Each item needs a product identifier")
        if normalize_object_id(line["product_id"]) is None:
            raise OrderError(f"Invalid product ID format: {line['product_id']}")

        product = catalog.find_by_id(line["product_id"])
        if not product:
            raise OrderError(f"Product {line['product_id']} not found")

        available = int(product.get("quantity") or 0)
        if not product.get("in_stock", available > 0) or line["quantity"] > available:
            raise OrderError(f"Insufficient stock for {product.get('name')}")

        item = {
            "product_id": str(product["_id"]),
            "name": product.get("name", ""),
            "price": as_float(to_amount(product.get("price") or 0)),
            "quantity": line["quantity"],
            "image": product.get("image"),
        }
        if line["color"]:
            item["color"] = line["color"]
        if line["size"]:
            item["size"] = line["size"]
        validated_items.append(item)

    subtotal = order_totals(validated_items)["subtotal"]
    totals = order_totals(validated_items, shipping_fee_for(subtotal, shipping_settings))

    payment_reference = str(payload.get("paymentReference") or "").strip() or None
    order = {
        "order_number": generate_order_number(),
        "order_type": ORDER_TYPE_STORE,
        "customer_name": customer_name,
        "customer_email": customer_email,
        "customer_phone": customer_phone,
        "customer_address": str(payload.get("customerAddress") or "").strip() or None,
        "items": validated_items,
        "subtotal": totals["subtotal"],
        "shipping": totals["shipping"],
        "total": totals["total"],
        "status": ORDER_PENDING,
        "payment_method": payment_method,
        "payment_status": PAYMENT_PENDING,
        "notes": str(payload.get("notes") or "").strip() or None,
    }
    if payment_reference:
        order["payment_reference"] = payment_reference

    try:
        orders.create(order)
    except DuplicateKeyError:
        raise OrderError("An order with this payment reference already exists", 409)

    logger.info("Order %s created, total %s", order["order_number"], order["total"])

    for item in validated_items:
        try:
            catalog.adjust_stock(item["product_id"], -item["quantity"])
        except Exception as exc:
            logger.error(
                "Order %s saved but stock decrement for %s failed: %s",
                order["order_number"],
                item["product_id"],
                exc,
            )

    dispatch(mailer.send_order_confirmation, confirmation_payload(order))
    return order


def _find_order(orders, identifier) -> Dict:
    order = orders.find(identifier)
    if not order:
        raise OrderError("Order not found", 404)
    return order


def _restore_stock(order: Dict, catalog) -> None:
    for item in order.get("items") or []:
        product_id = item.get("product_id")
        if not product_id or product_id == CUSTOM_PAYMENT_PRODUCT_ID:
            continue
        restored = catalog.adjust_stock(product_id, safe_positive_int(item.get("quantity"), 0))
        if restored is None:
            logger.warning(
                "Product %s from order %s no longer exists; stock not restored",
                product_id,
                order.get("order_number"),
            )


def _claim_and_restore(order: Dict, orders, catalog) -> None:
    # The conditional status write decides which caller restores the stock.
    if not orders.claim_cancellation(order["_id"]):
        raise OrderError("Order was already cancelled or completed", 409)
    _restore_stock(order, catalog)
    order["status"] = ORDER_CANCELLED
    logger.info("Order %s cancelled", order.get("order_number"))


def cancel_order(identifier, orders, catalog) -> Dict:
    order = _find_order(orders, identifier)
    try:
        transition = cancel_transition(order.get("status") or ORDER_PENDING)
    except IllegalTransition as exc:
        raise OrderError(str(exc))

    if RESTORE_STOCK in transition.effects:
        _claim_and_restore(order, orders, catalog)
    return order


def update_order_status(
    identifier,
    orders,
    catalog,
    mailer,
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
    notes: Optional[str] = None,
) -> Dict:
    order = _find_order(orders, identifier)
    old_status = order.get("status") or ORDER_PENDING
    old_payment_status = order.get("payment_status") or PAYMENT_PENDING

    try:
        transition = status_update_transition(old_status, status)
        new_payment_status = admin_payment_transition(old_payment_status, payment_status)
    except IllegalTransition as exc:
        raise OrderError(str(exc))

    fields = []
    if RESTORE_STOCK in transition.effects:
        _claim_and_restore(order, orders, catalog)
    elif transition.status != old_status:
        order["status"] = transition.status
        fields.append("status")
    if new_payment_status != old_payment_status:
        order["payment_status"] = new_payment_status
        fields.append("payment_status")
    if notes is not None:
        order["notes"] = notes
        fields.append("notes")
    if fields:
        orders.save(order, fields)

    if NOTIFY_STATUS_CHANGE in transition.effects:
        dispatch(
            mailer.send_status_update,
            order.get("customer_email"),
            order.get("customer_name") or "Valued Customer",
            order.get("order_number"),
            old_status,
            transition.status,
        )
    return order
