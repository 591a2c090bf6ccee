import asyncio
import os
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from urllib.parse import urlencode
from typing import Any, Dict, Iterable, List, Optional, Union

from ..log import log_event
from .rendering import format_money, render

APP_NAME = os.environ.get("APP_NAME", "Your Store").strip()
APP_URL = os.environ.get("APP_URL", "http://localhost:8000").strip().rstrip("/")

ORDER_UPDATE_STATUSES = ("confirmed", "processing", "in_transit", "delivered", "cancelled")

_ORDER_UPDATE_SUBJECTS = {
    "confirmed": "Order confirmed #{order_id}",
    "processing": "Your order #{order_id} is being prepared",
    "in_transit": "Your order #{order_id} has shipped",
    "delivered": "Your order #{order_id} was delivered",
    "cancelled": "Order cancelled #{order_id}",
}


class EmailError(Exception):
    pass


def _recipients(to: Union[str, Iterable[str]]) -> List[str]:
    items = [to] if isinstance(to, str) else list(to or [])
    out: List[str] = []
    for item in items:
        addr = (item or "").strip()
        if addr and addr.lower() not in {a.lower() for a in out}:
            out.append(addr)
    return out


class EmailService:
    """SMTP mailer that renders the Jinja2 templates under `templates/`."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        secure: Optional[bool] = None,
        from_name: Optional[str] = None,
        admin_email: Optional[str] = None,
    ):
        self.host = host if host is not None else os.environ.get("SMTP_HOST", "").strip()
        self.port = port if port is not None else int(os.environ.get("SMTP_PORT", "587").strip() or 587)
        self.user = user if user is not None else os.environ.get("SMTP_USER", "").strip()
        self.password = password if password is not None else os.environ.get("SMTP_PASSWORD", "").strip()
        if secure is None:
            secure = os.environ.get("SMTP_SECURE", "").strip().lower() in ("1", "true", "yes", "on")
        self.secure = secure
        self.from_name = from_name or os.environ.get("EMAIL_FROM_NAME", "").strip() or APP_NAME
        self.from_email = os.environ.get("EMAIL_FROM", "").strip() or self.user
        self.admin_email = admin_email or os.environ.get("ADMIN_NOTIFICATION_EMAIL", "").strip() or self.from_email

    @property
    def configured(self) -> bool:
        return bool(self.host and self.from_email)

    def _deliver(self, msg: MIMEMultipart, recipients: List[str]) -> None:
        if not self.configured:
            raise EmailError("SMTP transport is not configured (set SMTP_HOST and SMTP_USER)")
        if self.secure:
            server = smtplib.SMTP_SSL(self.host, self.port, context=ssl.create_default_context(), timeout=30)
        else:
            server = smtplib.SMTP(self.host, self.port, timeout=30)
        try:
            server.ehlo()
            if not self.secure and server.has_extn("starttls"):
                server.starttls(context=ssl.create_default_context())
                server.ehlo()
            if self.user and self.password:
                server.login(self.user, self.password)
            server.sendmail(self.from_email, recipients, msg.as_string())
        finally:
            server.quit()

    async def send_raw(self, to: Union[str, Iterable[str]], subject: str, html: str, text: Optional[str] = None) -> str:
        """Send an already rendered message; returns the Message-ID."""
        if not isinstance(html, str) or not html.strip():
            raise EmailError("HTML content cannot be empty")
        recipients = _recipients(to)
        if not recipients:
            raise EmailError("no recipients")
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = formataddr((self.from_name, self.from_email or ""))
        msg["To"] = ", ".join(recipients)
        msg["Message-ID"] = make_msgid(domain=(self.from_email or "localhost").split("@")[-1])
        if text and text.strip():
            msg.attach(MIMEText(text, "plain", "utf-8"))
        msg.attach(MIMEText(html, "html", "utf-8"))
        try:
            await asyncio.to_thread(self._deliver, msg, recipients)
        except EmailError:
            raise
        except (smtplib.SMTPException, OSError) as e:
            log_event("email", action="send_failed", to=recipients, subject=subject, error=str(e))
            raise EmailError(str(e)) from e
        log_event("email", action="sent", to=recipients, subject=subject, html_length=len(html))
        return msg["Message-ID"]

    async def send_email(self, to: Union[str, Iterable[str]], subject: str, template: str, context: Optional[Dict[str, Any]] = None) -> str:
        ctx = {"company_name": self.from_name, "app_url": APP_URL, **(context or {})}
        html, text = render(template, **ctx)
        return await self.send_raw(to, subject, html, text)

    async def send_password_reset_email(self, to: str, reset_code: str, user_name: Optional[str] = None) -> str:
        return await self.send_email(to, "Password Reset Code", "password_reset", {
            "reset_code": reset_code,
            "user_name": user_name,
            "expiry_minutes": 10,
        })

    async def send_welcome_email(self, to: str, user_name: Optional[str] = None) -> str:
        return await self.send_email(to, f"Welcome to {self.from_name}!", "welcome", {
            "user_name": user_name,
            "login_url": f"{APP_URL}/auth/login",
        })

    async def send_email_verification(self, to: str, verification_url: str, user_name: Optional[str] = None) -> str:
        return await self.send_email(to, "Verify Your Email Address", "email_verification", {
            "user_name": user_name,
            "verification_url": verification_url,
        })

    async def send_user_created_email(self, to: str, name: Optional[str], password: Optional[str] = None) -> str:
        return await self.send_email(to, "Welcome to Your Account", "user_created", {
            "user_name": name,
            "email": to,
            "password": password,
            "login_url": f"{APP_URL}/auth/login",
        })

    async def send_user_updated_email(self, to: str, name: Optional[str], changes: Optional[List[str]] = None) -> str:
        return await self.send_email(to, "Your Account Has Been Updated", "user_updated", {
            "user_name": name,
            "changes": changes or [],
            "login_url": f"{APP_URL}/auth/login",
        })

    async def send_order_confirmation_email(self, to: str, order: Dict[str, Any]) -> str:
        order_id = order.get("orderId") or ""
        return await self.send_email(to, f"Order Confirmation #{order_id}", "order_confirmation", {
            "customer_name": order.get("customerName"),
            "order_id": order_id,
            "order_date": order.get("orderDate"),
            "items": order.get("items") or [],
            "subtotal": order.get("subtotal") or 0,
            "shipping_cost": order.get("shippingCost") or 0,
            "vat": order.get("vatAmount"),
            "discount": order.get("discountAmount"),
            "total": order.get("total") or 0,
            "shipping_address": order.get("shippingAddress") or {},
            "payment_method": order.get("paymentMethod"),
            "bank_transfer": order.get("bankTransferDetails"),
            "order_url": f"{APP_URL}/account/orders/{order_id}",
        })

    async def send_order_admin_notification(self, order: Dict[str, Any], to: Optional[str] = None) -> str:
        order_id = order.get("orderId") or ""
        recipient = to or self.admin_email
        if not recipient:
            raise EmailError("no admin notification address configured")
        total = order.get("total") or 0
        subject = f"New order #{order_id} - {order.get('customerName') or ''} - {format_money(total)}€"
        return await self.send_email(recipient, subject, "order_admin_confirmation", {
            "customer_name": order.get("customerName"),
            "customer_email": order.get("email"),
            "order_id": order_id,
            "order_date": order.get("orderDate"),
            "items": order.get("items") or [],
            "subtotal": order.get("subtotal") or 0,
            "shipping_cost": order.get("shippingCost") or 0,
            "total": total,
            "shipping_address": order.get("shippingAddress") or {},
            "order_url": f"{APP_URL}/admin/store/orders/{order_id}",
        })

    async def send_order_update_email(self, to: str, update: Dict[str, Any]) -> str:
        status = update.get("status")
        if status not in ORDER_UPDATE_STATUSES:
            raise EmailError(
                f"Invalid order status: {status}. Valid statuses are: {', '.join(ORDER_UPDATE_STATUSES)}"
            )
        order_id = update.get("orderId") or ""
        return await self.send_email(to, _ORDER_UPDATE_SUBJECTS[status].format(order_id=order_id), "order_update", {
            "customer_name": update.get("customerName"),
            "order_id": order_id,
            "order_date": update.get("orderDate"),
            "status": status,
            "items": update.get("items") or [],
            "total": update.get("total") or 0,
            "tracking_number": update.get("trackingNumber"),
            "tracking_url": update.get("trackingUrl"),
            "estimated_delivery": update.get("estimatedDelivery"),
            "custom_message": update.get("customMessage"),
            "order_url": f"{APP_URL}/account/orders/{order_id}",
            "support_email": os.environ.get("SUPPORT_EMAIL", "").strip() or self.from_email,
        })

    async def send_order_status_update(self, to: str, update: Dict[str, Any]) -> str:
        order_id = update.get("orderId") or ""
        return await self.send_email(to, f"Order Status Update - {order_id}", "order_status_update", {
            "customer_name": update.get("customerName"),
            "order_id": order_id,
            "order_date": update.get("orderDate"),
            "status": update.get("status"),
            "items": update.get("items") or [],
            "subtotal": update.get("subtotal") or 0,
            "shipping_cost": update.get("shippingCost") or 0,
            "total": update.get("total") or 0,
            "shipping_address": update.get("shippingAddress") or {},
        })

    async def send_newsletter(self, to: str, subject: str, content: str, preview_text: str = "", subscriber_name: Optional[str] = None) -> str:
        return await self.send_email(to, subject, "newsletter", {
            "subject": subject,
            "content": content,
            "preview_text": preview_text,
            "subscriber_name": subscriber_name,
            "unsubscribe_url": f"{APP_URL}/newsletter/unsubscribe?{urlencode({'email': to})}",
        })

    async def send_notification(self, to: str, title: str, message: str, action_url: Optional[str] = None, action_text: Optional[str] = None) -> str:
        return await self.send_email(to, title, "notification", {
            "title": title,
            "message": message,
            "action_url": action_url,
            "action_text": action_text or "Open",
        })


email_service = EmailService()
