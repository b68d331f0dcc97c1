import logging
from typing import Optional, Tuple
import requests

from common.settings import settings

logger = logging.getLogger(__name__)

BREVO_API_URL = "https://api.brevo.com/v3/smtp/email"

class EmailDeliveryError(Exception):
    pass

class BrevoEmailSender:
    def __init__(self, api_key: str = None, from_email: str = None, from_name: str = None,
                 session: Optional[requests.Session] = None):
        self.api_key = api_key if api_key is not None else settings.brevo_api_key
        self.from_email = from_email or settings.brevo_from_email
        self.from_name = from_name or settings.brevo_from_name
        self.session = session or requests.Session()

    def send_email(self, to_email: str, subject: str, html_body: str) -> Tuple[bool, Optional[str]]:
        """
        Send a single transactional email.
        Returns (success, error_message). Without an API key the message is only logged.
        """
        if not self.api_key:
            logger.info(f"Email delivery disabled; would send '{subject}' to {to_email}")
            return True, None

        payload = {
            "sender": {"name": self.from_name, "email": self.from_email},
            "to": [{"email": to_email}],
            "subject": subject,
            "htmlContent": html_body,
        }
        headers = {
            "accept": "application/json",
            "api-key": self.api_key,
            "content-type": "application/json",
        }

        try:
            response = self.session.post(BREVO_API_URL, json=payload, headers=headers, timeout=10)
        except requests.exceptions.RequestException as e:
            error_msg = f"Network error sending to {to_email}: {e}"
            logger.error(error_msg)
            return False, error_msg

        if response.status_code in (200, 201, 202):
            return True, None

        try:
            message = response.json().get("message", response.text)
        except ValueError:
            message = response.text
        error_msg = f"Brevo API error for {to_email}: {response.status_code} - {message}"
        logger.error(error_msg)
        return False, error_msg

    def send_order_confirmation(self, order, product, download_url: str) -> None:
        subject = f"Order Confirmation: {product.title}"
        html_body = f"""
        <h1>Thank you for your purchase, {order.customer_name}!</h1>
        <p>You have successfully purchased <strong>{product.title}</strong>.</p>
        <p>Order ID: {order.id}</p>
        <p>Amount Paid: {order.currency} {order.amount / 100:.2f}</p>
        <br/>
        <h3><a href="{download_url}">Download your product here</a></h3>
        <p>If the link above doesn't work, check your order details on our website.</p>
        """
        ok, error = self.send_email(order.customer_email, subject, html_body)
        if not ok:
            raise EmailDeliveryError(error)
