"""
Checkout Service — 注文確認メール

aiosmtplib で SMTP 送信する。SMTP が未設定なら警告を出して送らない。
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from email.message import EmailMessage
from html import escape

import aiosmtplib

from .config import Settings
from .events import OrderConfirmationRequested, OrderEmailItem

logger = logging.getLogger(__name__)

STATUS_LABELS = {
    "placed": "Placed",
    "processing": "Processing",
    "dispatched": "Dispatched",
    "delivered": "Delivered",
    "cancelled": "Cancelled",
    "returned": "Returned",
}


def _group_indian(digits: str) -> str:
    # 12,34,567 形式 (下3桁の後は2桁区切り)
    if len(digits) <= 3:
        return digits
    head, tail = digits[:-3], digits[-3:]
    groups = []
    while len(head) > 2:
        groups.insert(0, head[-2:])
        head = head[:-2]
    if head:
        groups.insert(0, head)
    return ",".join(groups) + "," + tail


def format_currency(value: float, currency: str = "INR") -> str:
    amount = Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    sign = "-" if amount < 0 else ""
    digits = str(abs(amount))
    if currency == "INR":
        return f"{sign}₹{_group_indian(digits)}"
    return f"{sign}{currency} {int(digits):,}"


def render_address(address: dict[str, str]) -> str:
    parts = [address.get("line1", "")]
    if address.get("line2"):
        parts.append(address["line2"])
    parts.append(f"{address.get('city', '')}, {address.get('state', '')} {address.get('postal_code', '')}")
    parts.append(address.get("country", ""))
    return "\n".join(p for p in parts if p)


def _item_text(item: OrderEmailItem, currency: str) -> str:
    color = f" ({item.color})" if item.color else ""
    return f"{item.name}{color} (x{item.quantity}) — {format_currency(item.total, currency)}"


def render_subject(payload: OrderConfirmationRequested, store_name: str) -> str:
    return f"Your {store_name} order #{payload.order_number}"


def render_text(payload: OrderConfirmationRequested, store_name: str) -> str:
    status = STATUS_LABELS.get(payload.status, payload.status)
    items = "\n".join(_item_text(item, payload.currency) for item in payload.items)
    return (
        f"Hi {payload.customer_name},\n\n"
        "Thank you for your order!\n\n"
        f"Order reference: #{payload.order_number}\n"
        f"Status: {status}\n"
        f"Payment: {payload.payment_method} ({payload.payment_status})\n"
        f"Total: {format_currency(payload.total, payload.currency)}\n\n"
        f"Items:\n{items}\n\n"
        f"Shipping to:\n{render_address(payload.shipping_address)}\n\n"
        "Our operations team will be in touch with scheduling details.\n\n"
        f"Regards,\n{store_name}"
    )


def render_html(payload: OrderConfirmationRequested, store_name: str) -> str:
    status = STATUS_LABELS.get(payload.status, payload.status)
    items = "".join(
        f"<li><strong>{escape(item.name)}</strong>"
        f"{f' ({escape(item.color)})' if item.color else ''}"
        f" (x{item.quantity}) — {format_currency(item.total, payload.currency)}</li>"
        for item in payload.items
    )
    address = escape(render_address(payload.shipping_address))
    return f"""<!doctype html>
<html>
  <body style="font-family: Arial, sans-serif; color: #0f172a;">
    <p>Hi {escape(payload.customer_name)},</p>
    <p>Thank you for your order!</p>
    <p>
      <strong>Order reference:</strong> #{payload.order_number}<br />
      <strong>Status:</strong> {status}<br />
      <strong>Payment:</strong> {escape(payload.payment_method)} ({payload.payment_status})<br />
      <strong>Total:</strong> {format_currency(payload.total, payload.currency)}
    </p>
    <h3 style="margin-bottom: 0.5rem;">Items</h3>
    <ul style="padding-left: 1.2rem;">{items}</ul>
    <h3 style="margin-bottom: 0.5rem;">Shipping to</h3>
    <p style="white-space: pre-line;">{address}</p>
    <p>Our operations team will be in touch with scheduling details.</p>
    <p style="margin-top: 2rem;">Regards,<br />{escape(store_name)}</p>
  </body>
</html>"""


def build_message(payload: OrderConfirmationRequested, settings: Settings) -> EmailMessage:
    message = EmailMessage()
    message["From"] = settings.smtp_from
    message["To"] = payload.to
    message["Subject"] = render_subject(payload, settings.store_name)
    message.set_content(render_text(payload, settings.store_name))
    message.add_alternative(render_html(payload, settings.store_name), subtype="html")
    return message


async def send_order_confirmation_email(
    payload: OrderConfirmationRequested,
    settings: Settings,
) -> bool:
    """送信したら True。SMTP 未設定で送らなかった場合は False。"""
    if not settings.email_configured:
        logger.warning("Email not sent: SMTP credentials are not configured.")
        return False

    await aiosmtplib.send(
        build_message(payload, settings),
        hostname=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_user,
        password=settings.smtp_password,
        use_tls=settings.smtp_port == 465,
    )
    logger.info("Order confirmation sent for order %s", payload.order_id)
    return True
