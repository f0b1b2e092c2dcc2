"""注文確認通知とメール本文"""

import json
from datetime import datetime, timezone

import pytest

from app import mailer, notifications, subscriber
from app.config import Settings
from app.notifications import PublishingNotificationSender, build_confirmation
from app.publisher import NOTIFICATION_CHANNEL, InMemoryPublisher, encode


def order(**fields) -> dict:
    base = {
        "id": "3f1c9a52-7b1e-4c1a-9d7e-0a1b2c3d4e5f",
        "customer_name": "Asha Rao",
        "customer_email": "asha.rao@gmail.com",
        "status": "placed",
        "payment_method": "cod",
        "payment_status": "pending",
        "total": 123456.0,
        "currency": "INR",
        "items": [
            {"name": "ThinkPad T480", "quantity": 2, "price": 25000.0, "color": "Black"},
            {"name": "USB-C Dock", "quantity": 1, "price": 3456.0, "color": ""},
        ],
        "shipping_address": {
            "line1": "12 MG Road",
            "line2": "",
            "city": "Bengaluru",
            "state": "Karnataka",
            "postal_code": "560001",
            "country": "India",
        },
    }
    base.update(fields)
    return base


SMTP = Settings(smtp_host="smtp.test", smtp_port=587, smtp_user="u", smtp_password="p", smtp_from="shop@test.in")


class TestBuildConfirmation:
    def test_payload(self):
        payload = build_confirmation(order())

        assert payload.order_number == "3D4E5F"
        assert payload.payment_method == "Cash on delivery"
        assert payload.items[0].total == 50000.0
        assert payload.items[0].color == "Black"
        assert payload.items[1].color is None

    def test_online_label(self):
        assert build_confirmation(order(payment_method="online")).payment_method == "Online payment"


class TestFormatting:
    @pytest.mark.parametrize(
        "value, expected",
        [(0, "₹0"), (999, "₹999"), (1180, "₹1,180"), (123456, "₹1,23,456"), (12345678.5, "₹1,23,45,679")],
    )
    def test_indian_grouping(self, value, expected):
        assert mailer.format_currency(value) == expected

    def test_other_currency(self):
        assert mailer.format_currency(1234567, "USD") == "USD 1,234,567"

    def test_subject_and_body(self):
        payload = build_confirmation(order())

        assert mailer.render_subject(payload, "Rajesh Renewed") == "Your Rajesh Renewed order #3D4E5F"
        text = mailer.render_text(payload, "Rajesh Renewed")
        assert "ThinkPad T480 (Black) (x2)" in text
        assert "₹50,000" in text
        assert "Bengaluru, Karnataka 560001" in text

    def test_html_is_escaped(self):
        payload = build_confirmation(order(customer_name="<script>alert(1)</script>"))

        html = mailer.render_html(payload, "Rajesh Renewed")
        assert "<script>" not in html
        assert "&lt;script&gt;" in html


class TestDelivery:
    async def test_publishing_sender(self):
        publisher = InMemoryPublisher()
        sender = PublishingNotificationSender(publisher)

        await sender.send_order_confirmation(build_confirmation(order()))

        [(channel, message)] = publisher.messages
        assert channel == NOTIFICATION_CHANNEL
        assert message["event_type"] == "OrderConfirmationRequested"
        assert message["data"]["order_number"] == "3D4E5F"

    async def test_dispatch_failure_is_contained(self):
        class Broken(notifications.NotificationSender):
            async def send_order_confirmation(self, payload):
                raise ConnectionError("redis down")

        task = notifications.dispatch_order_confirmation(Broken(), build_confirmation(order()))
        await notifications.drain()

        assert task.done()
        assert isinstance(task.exception(), ConnectionError)

    async def test_email_skipped_without_smtp(self, monkeypatch):
        sent = []

        async def fake_send(message, **kwargs):
            sent.append(message)

        monkeypatch.setattr(mailer.aiosmtplib, "send", fake_send)

        assert await mailer.send_order_confirmation_email(build_confirmation(order()), Settings()) is False
        assert sent == []

    async def test_subscriber_sends_email(self, monkeypatch):
        sent = []

        async def fake_send(message, **kwargs):
            sent.append((message, kwargs))

        monkeypatch.setattr(mailer.aiosmtplib, "send", fake_send)
        raw = encode("OrderConfirmationRequested", build_confirmation(order()))

        await subscriber.handle_message(raw, SMTP)

        [(message, kwargs)] = sent
        assert message["To"] == "asha.rao@gmail.com"
        assert message["Subject"] == "Your Rajesh Renewed order #3D4E5F"
        assert kwargs["hostname"] == "smtp.test"
        assert kwargs["use_tls"] is False

    async def test_subscriber_ignores_other_events(self, monkeypatch):
        sent = []

        async def fake_send(message, **kwargs):
            sent.append(message)

        monkeypatch.setattr(mailer.aiosmtplib, "send", fake_send)
        raw = json.dumps(
            {"event_type": "SagaCompleted", "data": {"at": datetime.now(timezone.utc).isoformat()}}
        )

        await subscriber.handle_message(raw, SMTP)

        assert sent == []
