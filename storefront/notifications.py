"""
Order notifications over email (SMTP) and SMS (Twilio).

Notifications are a side channel: NotificationDispatcher.notify never raises,
whatever the channel does. The HTTP layer schedules it as a background task
so it runs after the response has been sent.
"""
import re
import smtplib
from email.message import EmailMessage
from enum import Enum
from html import escape
from typing import Optional, Protocol, Tuple

import structlog
from twilio.rest import Client as TwilioClient

from storefront.config import Settings
from storefront.schemas import Order

logger = structlog.get_logger(__name__)


class NotificationEvent(str, Enum):
    ORDER_CONFIRMED = "order_confirmed"
    ORDER_SHIPPED = "order_shipped"
    PAYMENT_VERIFIED = "payment_verified"


class Notifier(Protocol):
    def notify(self, event: NotificationEvent, order: Order) -> None: ...


def short_id(order: Order) -> str:
    return (order.id or "")[-8:] or "N/A"


def format_phone_number(phone: str) -> str:
    """Normalise a phone number to E.164, assuming +1 for bare 10-digit numbers."""
    if phone.strip().startswith("+"):
        return "+" + re.sub(r"\D", "", phone)
    digits = re.sub(r"\D", "", phone)
    if digits.startswith("0"):
        digits = digits[1:]
    if len(digits) == 10:
        return "+1" + digits
    return "+" + digits


# Templates

def order_confirmation_email(order: Order, public_url: str) -> Tuple[str, str]:
    rows = "".join(
        f"<div class=\"item\"><strong>{escape(item.title)}</strong> - Qty: {item.quantity}"
        f" &times; ${item.price:.2f}</div>"
        for item in order.items
    )
    discount = ""
    if order.discount_amount:
        discount = f"<p>Discount ({escape(order.coupon_code or '')}): -${order.discount_amount:.2f}</p>"
    html = (
        "<html><body>"
        "<h1>Order Confirmed!</h1>"
        f"<p>Hello {escape(order.customer.name)},</p>"
        "<p>Your order has been confirmed and we're preparing it for shipment.</p>"
        f"<p><strong>Order #:</strong> {short_id(order)}</p>"
        f"<p><strong>Status:</strong> {escape(order.status)}</p>"
        f"{rows}"
        f"<p>Subtotal: ${order.subtotal:.2f}</p>"
        f"<p>Shipping: ${order.shipping:.2f}</p>"
        f"<p>Tax: ${order.tax:.2f}</p>"
        f"{discount}"
        f"<p><strong>Total: ${order.total:.2f}</strong></p>"
        f"<a href=\"{public_url}/account/orders\">View Order</a>"
        "</body></html>"
    )
    return f"Order Confirmation #{short_id(order)}", html


def order_shipped_email(order: Order, public_url: str) -> Tuple[str, str]:
    tracking = ""
    if order.tracking_number:
        tracking = f"<p>Tracking number: <strong>{escape(order.tracking_number)}</strong></p>"
    html = (
        "<html><body>"
        "<h1>Your order is on its way!</h1>"
        f"<p>Hello {escape(order.customer.name)},</p>"
        f"<p>Order #{short_id(order)} has shipped.</p>"
        f"{tracking}"
        f"<a href=\"{public_url}/account/orders\">Track Order</a>"
        "</body></html>"
    )
    return f"Your Order #{short_id(order)} Has Shipped!", html


def order_shipped_sms(order: Order) -> str:
    msg = f"Your order #{short_id(order)} has shipped."
    if order.tracking_number:
        msg += f" Tracking: {order.tracking_number}."
    return msg


def payment_verified_sms(order: Order) -> str:
    return (
        f"Your payment for order #{(order.id or '')[-6:]} has been verified. "
        f"Order total: ${order.total:.2f}. Thank you for your purchase!"
    )


# Channels

class EmailSender:
    def __init__(self, settings: Settings):
        self.settings = settings

    def send(self, to: str, subject: str, html: str, text: Optional[str] = None) -> bool:
        s = self.settings
        if not s.smtp_configured:
            logger.warning("email_not_configured", to=to, subject=subject)
            return False

        msg = EmailMessage()
        msg["From"] = s.smtp_from or s.smtp_user
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(text or re.sub(r"<[^>]*>", "", html))
        msg.add_alternative(html, subtype="html")

        if s.smtp_port == 465:
            with smtplib.SMTP_SSL(s.smtp_host, s.smtp_port, timeout=10) as server:
                server.login(s.smtp_user, s.smtp_password)
                server.send_message(msg)
        else:
            with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=10) as server:
                server.starttls()
                server.login(s.smtp_user, s.smtp_password)
                server.send_message(msg)
        logger.info("email_sent", to=to, subject=subject)
        return True


class SmsSender:
    def __init__(self, settings: Settings, client: Optional[TwilioClient] = None):
        self.settings = settings
        self._client = client

    @property
    def client(self) -> Optional[TwilioClient]:
        if self._client is None and self.settings.twilio_configured:
            self._client = TwilioClient(self.settings.twilio_account_sid, self.settings.twilio_auth_token)
        return self._client

    def send(self, to: str, message: str) -> bool:
        client = self.client
        if client is None:
            logger.warning("sms_not_configured", to=to)
            return False
        result = client.messages.create(
            body=message,
            from_=self.settings.twilio_phone_number,
            to=format_phone_number(to),
        )
        logger.info("sms_sent", to=to, sid=result.sid)
        return True


class NotificationDispatcher:
    def __init__(self, email: EmailSender, sms: SmsSender, public_url: str = "http://localhost:3000"):
        self.email = email
        self.sms = sms
        self.public_url = public_url.rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> "NotificationDispatcher":
        return cls(EmailSender(settings), SmsSender(settings), settings.public_url)

    def notify(self, event: NotificationEvent, order: Order) -> None:
        event = NotificationEvent(event)
        if event == NotificationEvent.ORDER_CONFIRMED:
            subject, html = order_confirmation_email(order, self.public_url)
            self._email(event, order, subject, html)
        elif event == NotificationEvent.ORDER_SHIPPED:
            subject, html = order_shipped_email(order, self.public_url)
            self._email(event, order, subject, html)
            self._sms(event, order, order_shipped_sms(order))
        elif event == NotificationEvent.PAYMENT_VERIFIED:
            self._sms(event, order, payment_verified_sms(order))

    def _email(self, event: NotificationEvent, order: Order, subject: str, html: str) -> None:
        try:
            self.email.send(order.customer.email, subject, html)
        except Exception:
            logger.exception("notification_failed", channel="email", notification=event.value,
                             order_id=order.id)

    def _sms(self, event: NotificationEvent, order: Order, message: str) -> None:
        if not order.customer.phone:
            return
        try:
            self.sms.send(order.customer.phone, message)
        except Exception:
            logger.exception("notification_failed", channel="sms", notification=event.value,
                             order_id=order.id)
