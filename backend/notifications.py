import logging
from datetime import datetime
from html import escape
from typing import Dict, List, Optional, Tuple

import resend

logger = logging.getLogger(__name__)

STATUS_LABELS = {
    "pending": "Pending",
    "pending_payment": "Awaiting payment",
    "payment_confirmed": "Payment confirmed",
    "processing": "Processing",
    "completed": "Completed",
    "cancelled": "Cancelled",
}


def dispatch(send, *args, **kwargs) -> bool:
    """Run a notification without letting it fail the caller."""
    try:
        sent = bool(send(*args, **kwargs))
    except Exception as exc:
        logger.error("Notification %s failed: %s", getattr(send, "__name__", send), exc)
        return False
    if not sent:
        logger.warning("Notification %s was not delivered", getattr(send, "__name__", send))
    return sent


class Mailer:
    def __init__(
        self,
        api_key: Optional[str],
        sender: str = "orders@nevellines.com",
        store_name: str = "Nevellines",
        currency_symbol: str = "₦",
    ):
        self.api_key = (api_key or "").strip()
        self.sender = sender
        self.store_name = store_name
        self.currency_symbol = currency_symbol

    def _send(self, payload: Dict[str, object]) -> Tuple[bool, Optional[str]]:
        if not self.api_key:
            return False, "Resend API key is not configured."

        previous_api_key = getattr(resend, "api_key", None)
        resend.api_key = self.api_key
        try:
            response = resend.Emails.send(payload)
        except Exception as exc:
            return False, str(exc)
        finally:
            resend.api_key = previous_api_key

        if not isinstance(response, dict) or not response.get("id"):
            return False, str(response)
        return True, None

    def _money(self, value) -> str:
        try:
            numeric = float(value)
        except (TypeError, ValueError):
            numeric = 0.0
        return f"{self.currency_symbol}{numeric:,.2f}"

    def build_order_confirmation_html(self, data: Dict) -> str:
        rows: List[str] = []
        for item in data.get("items") or []:
            image = item.get("image")
            image_html = (
                f'<img src="{escape(str(image))}" alt="" '
                'style="width:56px;height:56px;object-fit:cover;border-radius:8px;margin-right:12px;" />'
                if image
                else ""
            )
            line_total = float(item.get("price") or 0) * int(item.get("quantity") or 1)
            rows.append(
                "<tr>"
                f'<td style="padding:12px 0;">{image_html}<strong>{escape(str(item.get("name") or "Item"))}</strong>'
                f'<div style="font-size:13px;color:#6b7280;">Quantity: {int(item.get("quantity") or 1)}</div></td>'
                f'<td style="padding:12px 0;text-align:right;font-weight:600;">{self._money(line_total)}</td>'
                "</tr>"
            )

        order_date = data.get("order_date")
        if isinstance(order_date, datetime):
            order_date = order_date.strftime("%B %d, %Y")

        reference_html = ""
        if data.get("payment_reference"):
            reference_html = (
                '<p style="margin:4px 0;color:#6b7280;">Payment reference: '
                f'{escape(str(data["payment_reference"]))}</p>'
            )

        return f"""<!DOCTYPE html>
<html lang="en">
  <head><meta charset="UTF-8" /><title>Order Confirmation</title></head>
  <body style="margin:0;padding:0;font-family:'Segoe UI',Helvetica,Arial,sans-serif;background:#f9fafb;">
    <div style="max-width:600px;margin:0 auto;background:#ffffff;">
      <div style="background:linear-gradient(135deg,#3b82f6 0%,#8b5cf6 100%);color:#ffffff;padding:30px;text-align:center;">
        <h1 style="margin:0;font-size:28px;">{escape(self.store_name)}</h1>
        <p style="margin:8px 0 0 0;">Thank you for your order!</p>
      </div>
      <div style="padding:30px;">
        <p>Hi <strong>{escape(str(data.get("customer_name") or "Valued Customer"))}</strong>, your order has been placed and is being processed.</p>
        <p style="margin:4px 0;color:#6b7280;">Order number: <strong>{escape(str(data.get("order_number") or ""))}</strong></p>
        <p style="margin:4px 0;color:#6b7280;">Order date: {escape(str(order_date or ""))}</p>
        {reference_html}
        <table style="width:100%;border-collapse:collapse;margin-top:20px;">{"".join(rows)}</table>
        <p style="text-align:right;margin:16px 0 4px 0;">Subtotal: {self._money(data.get("subtotal"))}</p>
        <p style="text-align:right;margin:4px 0;">Shipping: {self._money(data.get("shipping"))}</p>
        <p style="text-align:right;margin:4px 0;font-size:18px;font-weight:700;">Total: {self._money(data.get("total"))}</p>
      </div>
    </div>
  </body>
</html>"""

    def send_order_confirmation(self, data: Dict) -> bool:
        recipient = str(data.get("customer_email") or "").strip().lower()
        if not recipient:
            logger.warning(
                "Skipping order confirmation for %s: no customer email", data.get("order_number")
            )
            return False

        item_lines = ", ".join(
            f"{item.get('name') or 'Item'} x{int(item.get('quantity') or 1)}"
            for item in data.get("items") or []
        )
        payload: Dict[str, object] = {
            "from": f"{self.store_name} <{self.sender}>",
            "to": [recipient],
            "subject": f"Order Confirmation - {data.get('order_number')}",
            "html": self.build_order_confirmation_html(data),
            "text": (
                f"Thank you for your purchase! Order {data.get('order_number')}.\n"
                f"Items: {item_lines}.\n"
                f"Total: {self._money(data.get('total'))}.\n\n"
                f"{self.store_name} Team"
            ),
        }
        sent, error = self._send(payload)
        if sent:
            logger.info(
                "Order confirmation email sent for %s to %s", data.get("order_number"), recipient
            )
        else:
            logger.error(
                "Failed to send order confirmation email for %s: %s",
                data.get("order_number"),
                error,
            )
        return sent

    def send_status_update(
        self,
        customer_email: str,
        customer_name: str,
        order_number: str,
        old_status: str,
        new_status: str,
    ) -> bool:
        recipient = str(customer_email or "").strip().lower()
        if not recipient:
            return False

        old_label = STATUS_LABELS.get(old_status, old_status)
        new_label = STATUS_LABELS.get(new_status, new_status)
        html_body = f"""<!DOCTYPE html>
<html lang="en">
  <body style="margin:0;padding:30px;font-family:'Segoe UI',Helvetica,Arial,sans-serif;background:#f9fafb;">
    <div style="max-width:600px;margin:0 auto;background:#ffffff;padding:30px;border-radius:12px;">
      <h2 style="margin:0 0 12px 0;">{escape(self.store_name)} order update</h2>
      <p>Hi <strong>{escape(customer_name or "Valued Customer")}</strong>,</p>
      <p>Your order <strong>{escape(order_number)}</strong> moved from
        <em>{escape(old_label)}</em> to <strong>{escape(new_label)}</strong>.</p>
    </div>
  </body>
</html>"""
        payload: Dict[str, object] = {
            "from": f"{self.store_name} <{self.sender}>",
            "to": [recipient],
            "subject": f"Order Update - {order_number}",
            "html": html_body,
            "text": f"Your order {order_number} is now {new_label} (was {old_label}).",
        }
        sent, error = self._send(payload)
        if not sent:
            logger.error("Failed to send status update for %s: %s", order_number, error)
        return sent
