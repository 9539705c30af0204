import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Iterable, Optional, Protocol

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def send(self, to_email: str, subject: str, body: str) -> bool:
        """Deliver a message. Returns False on failure instead of raising."""
        ...


class EmailSender:
    """Email sender over SMTP (Mailpit in development)."""

    def __init__(
        self,
        host: str,
        port: int,
        from_address: str = "noreply@ecom-orders.local",
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = False,
    ):
        """Initialize email sender."""
        self.host = host
        self.port = port
        self.from_address = from_address
        self.username = username
        self.password = password
        self.use_tls = use_tls

    def send(self, to_email: str, subject: str, body: str) -> bool:
        """Send email via SMTP."""
        try:
            msg = MIMEMultipart()
            msg["From"] = self.from_address
            msg["To"] = to_email
            msg["Subject"] = subject

            msg.attach(MIMEText(body, "plain"))

            with smtplib.SMTP(self.host, self.port, timeout=30) as server:
                if self.use_tls:
                    server.starttls()
                if self.username:
                    server.login(self.username, self.password or "")
                server.send_message(msg)

            logger.info(f"Email sent to {to_email}: {subject}")
            return True

        except Exception as e:
            logger.error(f"Error sending email to {to_email}: {e}")
            return False


def build_order_confirmation_email(
    customer_name: str,
    order_id: str,
    items: Iterable[dict],
    total_price: float,
    currency: str = "NGN",
) -> tuple:
    """Plain-text order confirmation. Returns (subject, body)."""
    lines = "\n".join(
        f"  - {item['name']} x{item['quantity']} @ {item['price']:.2f}" for item in items
    )
    subject = f"Order Confirmed #{order_id}"
    body = f"""
Dear {customer_name},

Your order has been confirmed!

Order ID: {order_id}
Items:
{lines}

Total: {currency} {total_price:.2f}

Thank you for your purchase!

Best regards,
The Shop Team
"""
    return subject, body
