import json
import logging
from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool

from common.error_handling import BusinessLogicError, ErrorCodes
from common.schemas import VerifyPaymentRequest, OrderOut
from settlement_service.container import Services
from settlement_service.deps import get_services
from settlement_service.models import PayoutStatus

logger = logging.getLogger(__name__)

router = APIRouter()

SUBSCRIPTION_EVENTS = {
    "subscription.charged",
    "subscription.halted",
    "subscription.cancelled",
    "subscription.completed",
}

PAYOUT_EVENTS = {
    "payout.processed": PayoutStatus.COMPLETED,
    "payout.failed": PayoutStatus.FAILED,
    "payout.reversed": PayoutStatus.REVERSED,
}

def _entity(payload: dict, name: str) -> dict:
    return ((payload or {}).get(name) or {}).get("entity") or {}

def dispatch_event(services: Services, event: dict) -> None:
    name = event.get("event", "")
    payload = event.get("payload") or {}

    if name == "order.paid":
        payment = _entity(payload, "payment")
        gateway_order_id = payment.get("order_id") or _entity(payload, "order").get("id")
        if not gateway_order_id or not payment.get("id"):
            logger.warning("order.paid webhook without order or payment id")
            return
        services.orders.handle_payment_success(gateway_order_id, payment["id"])
    elif name in SUBSCRIPTION_EVENTS:
        services.orders.handle_subscription_event(name, payload)
    elif name in PAYOUT_EVENTS:
        payout = _entity(payload, "payout")
        if not payout.get("id"):
            logger.warning(f"{name} webhook without payout id")
            return
        services.payouts.handle_payout_webhook(payout["id"], PAYOUT_EVENTS[name], payout.get("reference_id"))
    else:
        logger.info(f"Ignoring unhandled webhook event {name!r}")

@router.post("/webhook")
async def webhook(request: Request, services: Services = Depends(get_services)):
    """Gateway webhook. Answers 200 for every correctly signed delivery."""
    raw_body = await request.body()
    signature = request.headers.get("X-Razorpay-Signature", "")
    if not services.gateway.verify_webhook_signature(raw_body, signature):
        raise BusinessLogicError(ErrorCodes.INVALID_SIGNATURE, "invalid webhook signature")

    try:
        event = json.loads(raw_body)
    except ValueError:
        event = None
    if not isinstance(event, dict):
        logger.warning("Webhook body is not a JSON event envelope")
        return {"status": "received"}

    try:
        await run_in_threadpool(dispatch_event, services, event)
    except Exception as e:
        # the gateway retries anything but 2xx; failures here are reconciled from the logs
        logger.error(f"Webhook {event.get('event')!r} processing failed: {e}", exc_info=True)
    return {"status": "received"}

@router.post("/verify", response_model=OrderOut)
def verify_payment(req: VerifyPaymentRequest, services: Services = Depends(get_services)):
    if not services.gateway.verify_payment_signature(req.gateway_order_id, req.gateway_payment_id, req.signature):
        raise BusinessLogicError(ErrorCodes.INVALID_SIGNATURE, "invalid payment signature")
    return services.orders.handle_payment_success(req.gateway_order_id, req.gateway_payment_id)
