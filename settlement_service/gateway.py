"""
Razorpay REST client

Covers checkout (orders, plans, subscriptions), RazorpayX payouts
(contacts, fund accounts, payouts) and signature verification. Every
outbound call goes through a shared circuit breaker and carries a fixed
timeout.
"""
import hashlib
import hmac
import logging
from typing import Optional, Dict, Any
import requests

from common.settings import settings
from common.circuit_breaker import CircuitBreaker, CircuitBreakerException, GATEWAY_CB_CONFIG
from common.error_handling import ServiceError, ErrorCodes

logger = logging.getLogger(__name__)

PAYOUT_REFERENCE_PREFIX = "payout_"

class GatewayError(ServiceError):
    """The payment gateway rejected a call or could not be reached.

    `outcome_unknown` is set when the request may still have been acted on
    (timeouts, dropped connections, 5xx answers); only errors without it are
    definite rejections.
    """
    def __init__(self, message: str, code: str = ErrorCodes.GATEWAY_ERROR, original_error: Exception = None,
                 outcome_unknown: bool = None):
        super().__init__(code, message, original_error)
        if outcome_unknown is None:
            outcome_unknown = code == ErrorCodes.GATEWAY_TIMEOUT or isinstance(original_error, requests.RequestException)
        self.outcome_unknown = outcome_unknown

def payout_reference(payout_id: str) -> str:
    return f"{PAYOUT_REFERENCE_PREFIX}{payout_id}"

def payout_id_from_reference(reference_id: Optional[str]) -> Optional[str]:
    if reference_id and reference_id.startswith(PAYOUT_REFERENCE_PREFIX):
        return reference_id[len(PAYOUT_REFERENCE_PREFIX):]
    return None

def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()

def compute_webhook_signature(raw_body: bytes, secret: str) -> str:
    return _hmac_hex(secret, raw_body)

def compute_payment_signature(gateway_order_id: str, gateway_payment_id: str, secret: str) -> str:
    return _hmac_hex(secret, f"{gateway_order_id}|{gateway_payment_id}".encode("utf-8"))

class RazorpayGateway:
    def __init__(
        self,
        key_id: str = None,
        key_secret: str = None,
        webhook_secret: str = None,
        account_number: str = None,
        base_url: str = None,
        timeout: float = None,
        payout_timeout: float = None,
        session: Optional[requests.Session] = None,
    ):
        self.key_id = key_id if key_id is not None else settings.razorpay_key_id
        self.key_secret = key_secret if key_secret is not None else settings.razorpay_key_secret
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.razorpay_webhook_secret
        self.account_number = account_number if account_number is not None else settings.razorpayx_account_number
        self.base_url = (base_url or settings.razorpay_base_url).rstrip("/")
        self.timeout = timeout or settings.gateway_timeout_seconds
        self.payout_timeout = payout_timeout or settings.payout_timeout_seconds
        self.session = session or requests.Session()
        self.session.auth = (self.key_id, self.key_secret)
        # 4xx answers are the caller's fault and must not trip the breaker
        self.breaker = CircuitBreaker("razorpay", GATEWAY_CB_CONFIG, counted_exceptions=(requests.RequestException,))

    def _send(self, method: str, path: str, payload: Dict[str, Any], timeout: float, headers: Dict[str, str]) -> requests.Response:
        response = self.session.request(method, f"{self.base_url}{path}", json=payload, timeout=timeout, headers=headers)
        if response.status_code >= 500:
            # counted by the breaker
            response.raise_for_status()
        return response

    def _request(self, method: str, path: str, payload: Dict[str, Any] = None,
                 timeout: float = None, headers: Dict[str, str] = None) -> Dict[str, Any]:
        try:
            response = self.breaker.call(self._send, method, path, payload, timeout or self.timeout, headers or {})
        except CircuitBreakerException as e:
            raise GatewayError(str(e), code=ErrorCodes.CIRCUIT_BREAKER_OPEN, original_error=e)
        except requests.Timeout:
            raise
        except requests.RequestException as e:
            logger.error(f"Razorpay {method} {path} failed: {e}")
            raise GatewayError(f"payment gateway request failed: {e}", original_error=e)

        if response.status_code >= 400:
            try:
                description = response.json().get("error", {}).get("description", response.text)
            except ValueError:
                description = response.text
            logger.error(f"Razorpay {method} {path} returned {response.status_code}: {description}")
            raise GatewayError(f"payment gateway error ({response.status_code}): {description}")

        return response.json() if response.content else {}

    def _create(self, path: str, payload: Dict[str, Any]) -> str:
        try:
            body = self._request("POST", path, payload)
        except requests.Timeout as e:
            raise GatewayError(f"payment gateway timed out on {path}", original_error=e)
        if not body.get("id"):
            raise GatewayError(f"payment gateway returned no id for {path}")
        return body["id"]

    # checkout

    def create_order(self, amount: int, currency: str, receipt: str) -> str:
        return self._create("/orders", {"amount": amount, "currency": currency, "receipt": receipt})

    def create_plan(self, name: str, amount: int, currency: str, interval: str) -> str:
        period = "yearly" if interval == "yearly" else "monthly"
        return self._create("/plans", {
            "period": period,
            "interval": 1,
            "item": {"name": name, "amount": amount, "currency": currency},
        })

    def create_subscription(self, plan_id: str) -> str:
        return self._create("/subscriptions", {"plan_id": plan_id, "total_count": 1200, "customer_notify": 1})

    def cancel_subscription(self, subscription_id: str) -> None:
        try:
            self._request("POST", f"/subscriptions/{subscription_id}/cancel", {"cancel_at_cycle_end": 0})
        except requests.Timeout as e:
            raise GatewayError("payment gateway timed out cancelling subscription", original_error=e)

    # payouts

    def create_contact(self, name: str, email: str, reference_id: str) -> str:
        return self._create("/contacts", {
            "name": name,
            "email": email,
            "type": "vendor",
            "reference_id": reference_id,
        })

    def create_fund_account(self, contact_id: str, holder_name: str, ifsc: str, account_number: str) -> str:
        return self._create("/fund_accounts", {
            "contact_id": contact_id,
            "account_type": "bank_account",
            "bank_account": {"name": holder_name, "ifsc": ifsc, "account_number": account_number},
        })

    def create_payout(self, fund_account_id: str, amount: int, idempotency_key: str) -> str:
        """Submit a bank transfer. A timeout means the outcome is unknown and is never retried here."""
        payload = {
            "account_number": self.account_number,
            "fund_account_id": fund_account_id,
            "amount": amount,
            "currency": "INR",
            "mode": "IMPS",
            "purpose": "payout",
            "reference_id": payout_reference(idempotency_key),
            "narration": "Creator Store Payout",
        }
        try:
            body = self._request("POST", "/payouts", payload, timeout=self.payout_timeout,
                                 headers={"X-Payout-Idempotency": idempotency_key})
        except requests.Timeout as e:
            logger.critical(f"Payout submission timed out, outcome unknown (idempotency key {idempotency_key})")
            raise GatewayError("payout submission timed out; outcome unknown",
                               code=ErrorCodes.GATEWAY_TIMEOUT, original_error=e)
        if not body.get("id"):
            raise GatewayError("payment gateway returned no payout id", outcome_unknown=True)
        return body["id"]

    # signatures

    def verify_webhook_signature(self, raw_body: bytes, signature: str, secret: str = None) -> bool:
        secret = secret if secret is not None else self.webhook_secret
        if not signature or not secret:
            return False
        return hmac.compare_digest(compute_webhook_signature(raw_body, secret), signature)

    def verify_payment_signature(self, gateway_order_id: str, gateway_payment_id: str, signature: str) -> bool:
        if not signature or not self.key_secret:
            return False
        expected = compute_payment_signature(gateway_order_id, gateway_payment_id, self.key_secret)
        return hmac.compare_digest(expected, signature)
