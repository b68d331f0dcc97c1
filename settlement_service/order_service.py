"""
Checkout and settlement.

An order is priced and opened with the gateway at checkout, then settled
exactly once when the gateway confirms payment (webhook or client-side
signature verification). Settlement is guarded by a compare-and-set on the
order status; only the caller that wins it credits the creator's wallet
and schedules the post-payment side effects through the outbox.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from common.error_handling import BusinessLogicError, ErrorCodes
from common.settings import settings
from settlement_service.booking_service import slot_duration
from settlement_service.models import (
    Order, Subscription, Booking, OrderStatus, SubscriptionStatus, ProductType,
    EntrySource, new_id, utcnow,
)
from settlement_service.repositories import (
    OrderRepository, SubscriptionRepository, ProductRepository, CreatorRepository,
    CouponRepository, SubscriberRepository,
)
from settlement_service.outbox_worker import (
    enqueue, TOPIC_BOOKING_CREATE, TOPIC_ORDER_CONFIRMATION_EMAIL, TOPIC_SUBSCRIBER_UPSERT,
)

logger = logging.getLogger(__name__)

# gateway entity status -> local status
SUBSCRIPTION_STATUS_MAP = {
    "created": SubscriptionStatus.CREATED,
    "authenticated": SubscriptionStatus.CREATED,
    "active": SubscriptionStatus.ACTIVE,
    "pending": SubscriptionStatus.PAST_DUE,
    "halted": SubscriptionStatus.HALTED,
    "cancelled": SubscriptionStatus.CANCELLED,
    "completed": SubscriptionStatus.CANCELLED,
    "expired": SubscriptionStatus.CANCELLED,
}

# used when the entity carries no recognizable status
SUBSCRIPTION_EVENT_STATUS = {
    "subscription.charged": SubscriptionStatus.ACTIVE,
    "subscription.halted": SubscriptionStatus.HALTED,
    "subscription.cancelled": SubscriptionStatus.CANCELLED,
    "subscription.completed": SubscriptionStatus.CANCELLED,
}

def parse_slot_start(value: str) -> datetime:
    """Parse an ISO-8601 instant; offsets are required, `Z` is accepted."""
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR,
                                 "invalid booking slot start, expected ISO-8601 with offset",
                                 field="booking_slot_start")
    if parsed.tzinfo is None:
        raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR,
                                 "booking slot start must include a timezone offset",
                                 field="booking_slot_start")
    return parsed.astimezone(timezone.utc)

def _epoch(value) -> Optional[datetime]:
    if isinstance(value, (int, float)) and value > 0:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None

class OrderService:
    def __init__(self, session_factory, gateway, storage, mailer, wallet, coupons, bookings,
                 clock=utcnow, default_fee_rate: float = None, currency: str = None):
        self.session_factory = session_factory
        self.gateway = gateway
        self.storage = storage
        self.mailer = mailer
        self.wallet = wallet
        self.coupons = coupons
        self.bookings = bookings
        self.clock = clock
        self.default_fee_rate = default_fee_rate if default_fee_rate is not None else settings.default_platform_fee_rate
        self.currency = currency or settings.default_currency

    # checkout

    def create_order(
        self,
        product_id: str,
        customer_name: str,
        customer_email: str,
        bump_accepted: bool = False,
        booking_slot_start: Optional[str] = None,
        coupon_code: Optional[str] = None,
    ) -> Order:
        customer_email = (customer_email or "").strip().lower()
        if not customer_email:
            raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR, "customer email is required", field="customer_email")

        with self.session_factory() as db:
            products = ProductRepository(db)
            product = products.get(product_id)
            if not product:
                raise BusinessLogicError(ErrorCodes.NOT_FOUND, "product not found")
            bump = None
            if bump_accepted and product.bump_product_id:
                bump = products.get(product.bump_product_id)

        line_items = [{
            "product_id": product.id,
            "title": product.title,
            "amount": product.price,
            "product_type": product.product_type,
        }]
        total = product.price

        if bump is not None and bump.is_visible and bump.creator_id == product.creator_id:
            bump_price = bump.price
            if 0 < product.bump_discount <= bump.price:
                bump_price -= product.bump_discount
            line_items.append({
                "product_id": bump.id,
                "title": f"{bump.title} (Bump Offer)",
                "amount": bump_price,
                "product_type": bump.product_type,
            })
            total += bump_price

        if total == 0 or product.product_type == ProductType.LEAD_MAGNET:
            return self._create_free_order(product, line_items, customer_name, customer_email)

        slot_start = slot_end = None
        if product.product_type == ProductType.BOOKING and booking_slot_start:
            slot_start = parse_slot_start(booking_slot_start)
            slot_end = slot_start + slot_duration(product)

        discount = 0
        applied_code = None
        if coupon_code:
            result = self.coupons.validate_coupon(product.creator_id, coupon_code, product.id, total)
            if not result.valid:
                raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR, result.message, field="coupon_code")
            discount = result.discount_amount
            applied_code = coupon_code.strip().upper()
        payable = total - discount

        subscription = None
        if product.product_type == ProductType.MEMBERSHIP:
            interval = product.subscription_interval or "monthly"
            plan_id = self.gateway.create_plan(product.title, payable, self.currency, interval)
            gateway_order_id = self.gateway.create_subscription(plan_id)
            subscription = Subscription(
                product_id=product.id,
                creator_id=product.creator_id,
                customer_email=customer_email,
                customer_name=customer_name or "",
                amount=payable,
                currency=self.currency,
                interval=interval,
                gateway_plan_id=plan_id,
                gateway_subscription_id=gateway_order_id,
                status=SubscriptionStatus.CREATED,
                cancel_at_period_end=False,
                total_count=1200,
            )
        else:
            receipt = f"rcpt_{product.id}_{int(self.clock().timestamp())}"
            gateway_order_id = self.gateway.create_order(payable, self.currency, receipt)

        order = Order(
            product_id=product.id,
            creator_id=product.creator_id,
            line_items=line_items,
            booking_slot_start=slot_start,
            booking_slot_end=slot_end,
            customer_name=customer_name or "",
            customer_email=customer_email,
            amount=payable,
            currency=self.currency,
            coupon_code=applied_code,
            discount_amount=discount,
            gateway_order_id=gateway_order_id,
            status=OrderStatus.CREATED,
        )
        with self.session_factory() as db:
            if subscription is not None:
                SubscriptionRepository(db).add(subscription)
            OrderRepository(db).add(order)
            db.commit()

        logger.info(f"Order {order.id} created for product {product.id} ({payable} {self.currency}, gateway {gateway_order_id})")
        return order

    def _create_free_order(self, product, line_items, customer_name, customer_email) -> Order:
        order = Order(
            product_id=product.id,
            creator_id=product.creator_id,
            line_items=line_items,
            customer_name=customer_name or "",
            customer_email=customer_email,
            amount=0,
            currency=self.currency,
            gateway_order_id=f"free_{new_id()}",
            status=OrderStatus.PAID,
        )
        with self.session_factory() as db:
            OrderRepository(db).add(order)
            enqueue(db, TOPIC_SUBSCRIBER_UPSERT, {
                "creator_id": product.creator_id,
                "email": customer_email,
                "name": customer_name or "",
                "source_product_id": product.id,
            })
            enqueue(db, TOPIC_ORDER_CONFIRMATION_EMAIL, {"order_id": order.id})
            db.commit()
        logger.info(f"Free order {order.id} fulfilled for product {product.id}")
        return order

    # settlement

    def handle_payment_success(self, gateway_order_id: str, gateway_payment_id: str) -> Order:
        """Settle an order exactly once. Re-delivery of the same confirmation is a no-op."""
        with self.session_factory() as db:
            orders = OrderRepository(db)
            order = orders.find_by_gateway_order_id(gateway_order_id)
            if not order:
                raise BusinessLogicError(ErrorCodes.NOT_FOUND, "order not found for gateway order id")
            if order.status == OrderStatus.PAID:
                return order

            if not orders.mark_paid(gateway_order_id, gateway_payment_id):
                db.rollback()
                db.refresh(order)
                logger.info(f"Order {order.id} already settled by a concurrent delivery")
                return order

            if order.booking_slot_start is not None and order.booking_slot_end is not None:
                enqueue(db, TOPIC_BOOKING_CREATE, {"order_id": order.id})
            enqueue(db, TOPIC_ORDER_CONFIRMATION_EMAIL, {"order_id": order.id})
            db.commit()

        order.status = OrderStatus.PAID
        order.gateway_payment_id = gateway_payment_id
        logger.info(f"Order {order.id} settled with payment {gateway_payment_id}")

        fee_rate = self._fee_rate(order.creator_id)
        fee = int(order.amount * fee_rate / 100)
        net = order.amount - fee

        if fee > 0:
            try:
                with self.session_factory() as db:
                    OrderRepository(db).set_platform_fee(order.id, fee)
                    db.commit()
                order.platform_fee = fee
            except Exception as e:
                logger.error(f"Failed to record platform fee on order {order.id}: {e}")

        if net > 0:
            try:
                self.wallet.credit_transaction(
                    order.creator_id,
                    net,
                    f"Order payment via {gateway_payment_id} (net after {fee_rate:.1f}% fee)",
                    order.id,
                    EntrySource.ORDER,
                )
            except Exception as e:
                logger.critical(f"Failed to credit wallet for order {order.id} (net {net}): {e}")

        if order.coupon_code:
            self._redeem_coupon(order)

        return order

    def _fee_rate(self, creator_id: str) -> float:
        try:
            with self.session_factory() as db:
                creator = CreatorRepository(db).get(creator_id)
        except Exception as e:
            logger.error(f"Could not load creator {creator_id} for fee rate, using default: {e}")
            return self.default_fee_rate
        if creator is not None and creator.platform_fee_rate and creator.platform_fee_rate > 0:
            return creator.platform_fee_rate
        return self.default_fee_rate

    def _redeem_coupon(self, order: Order) -> None:
        try:
            with self.session_factory() as db:
                coupon = CouponRepository(db).find_by_code(order.creator_id, order.coupon_code)
            if coupon is None:
                logger.warning(f"Coupon {order.coupon_code} on order {order.id} no longer exists")
                return
            self.coupons.increment_usage(coupon.id)
        except Exception as e:
            logger.error(f"Failed to record coupon usage for order {order.id}: {e}")

    # subscriptions

    def handle_subscription_event(self, event_name: str, payload: Dict[str, Any]) -> Subscription:
        entity = ((payload or {}).get("subscription") or {}).get("entity")
        if not isinstance(entity, dict):
            raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR, "missing subscription entity in payload")
        gateway_subscription_id = entity.get("id")
        if not gateway_subscription_id:
            raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR, "missing subscription id")

        with self.session_factory() as db:
            subscription = SubscriptionRepository(db).find_by_gateway_id(gateway_subscription_id)
            if not subscription:
                raise BusinessLogicError(ErrorCodes.NOT_FOUND, f"subscription {gateway_subscription_id} not found")

            status = SUBSCRIPTION_STATUS_MAP.get(entity.get("status")) or SUBSCRIPTION_EVENT_STATUS.get(event_name)
            if status:
                subscription.status = status
            if isinstance(entity.get("paid_count"), (int, float)):
                subscription.paid_count = int(entity["paid_count"])
            if isinstance(entity.get("total_count"), (int, float)):
                subscription.total_count = int(entity["total_count"])

            start = _epoch(entity.get("current_start")) or _epoch(entity.get("start_at"))
            end = _epoch(entity.get("current_end")) or _epoch(entity.get("end_at"))
            if start:
                subscription.current_start = start
            if end:
                subscription.current_end = end
            subscription.updated_at = utcnow()
            db.commit()

        logger.info(f"Subscription {subscription.id} -> {subscription.status} on {event_name}")

        if event_name == "subscription.charged" and subscription.paid_count == 1:
            payment_id = (((payload.get("payment") or {}).get("entity")) or {}).get("id")
            if payment_id:
                try:
                    self.handle_payment_success(gateway_subscription_id, payment_id)
                except BusinessLogicError as e:
                    logger.warning(f"Could not settle first charge of subscription {subscription.id}: {e.message}")
            else:
                logger.warning(f"First charge of subscription {subscription.id} carried no payment id")

        return subscription

    def cancel_subscription(self, subscription_id: str, requester_email: str) -> Subscription:
        with self.session_factory() as db:
            subscription = SubscriptionRepository(db).get(subscription_id)
        if not subscription:
            raise BusinessLogicError(ErrorCodes.NOT_FOUND, "subscription not found")
        if subscription.customer_email.lower() != (requester_email or "").strip().lower():
            raise BusinessLogicError(ErrorCodes.UNAUTHORIZED, "unauthorized to cancel this subscription")
        if subscription.status == SubscriptionStatus.CANCELLED:
            raise BusinessLogicError(ErrorCodes.ALREADY_CANCELLED, "subscription is already cancelled")

        self.gateway.cancel_subscription(subscription.gateway_subscription_id)

        with self.session_factory() as db:
            subscription = SubscriptionRepository(db).get(subscription_id)
            subscription.status = SubscriptionStatus.CANCELLED
            subscription.updated_at = utcnow()
            db.commit()
        logger.info(f"Subscription {subscription_id} cancelled by buyer")
        return subscription

    def list_buyer_subscriptions(self, email: str) -> List[Subscription]:
        with self.session_factory() as db:
            return SubscriptionRepository(db).list_by_customer(email.strip().lower())

    # reads

    def get_order(self, order_id: str) -> Order:
        with self.session_factory() as db:
            order = OrderRepository(db).get(order_id)
        if not order:
            raise BusinessLogicError(ErrorCodes.NOT_FOUND, "order not found")
        return order

    def list_creator_orders(self, creator_id: str) -> List[Order]:
        with self.session_factory() as db:
            return OrderRepository(db).list_by_creator(creator_id)

    def list_buyer_orders(self, email: str) -> List[Order]:
        with self.session_factory() as db:
            return OrderRepository(db).list_paid_by_customer(email.strip().lower())

    def get_order_download_url(self, order_id: str, product_id: Optional[str] = None) -> str:
        order = self.get_order(order_id)
        if order.status != OrderStatus.PAID:
            raise BusinessLogicError(ErrorCodes.FORBIDDEN, "order not paid")

        item_ids = [item.get("product_id") for item in order.line_items or []]
        if product_id:
            wanted = product_id
        else:
            wanted = item_ids[0] if item_ids else order.product_id
        if wanted != order.product_id and wanted not in item_ids:
            raise BusinessLogicError(ErrorCodes.FORBIDDEN, "product not found in this order")

        with self.session_factory() as db:
            product = ProductRepository(db).get(wanted)
        if not product:
            raise BusinessLogicError(ErrorCodes.NOT_FOUND, "product not found")
        if not product.file_key:
            raise BusinessLogicError(ErrorCodes.NOT_FOUND, "product has no file")
        return self.storage.presign_download(product.file_key)

    # outbox handlers

    def outbox_handlers(self) -> Dict[str, Any]:
        return {
            TOPIC_BOOKING_CREATE: self.process_booking_task,
            TOPIC_ORDER_CONFIRMATION_EMAIL: self.process_confirmation_email_task,
            TOPIC_SUBSCRIBER_UPSERT: self.process_subscriber_task,
        }

    def _primary_product(self, db, order: Order):
        item_ids = [item.get("product_id") for item in order.line_items or []]
        return ProductRepository(db).get(item_ids[0] if item_ids else order.product_id)

    def process_booking_task(self, payload: Dict[str, Any]) -> None:
        with self.session_factory() as db:
            order = OrderRepository(db).get(payload["order_id"])
            if not order:
                raise LookupError(f"order {payload['order_id']} not found")
            product = self._primary_product(db, order)
        if not product or product.product_type != ProductType.BOOKING:
            logger.warning(f"Order {order.id} has a slot but its product is not bookable")
            return
        self.bookings.create_booking(Booking(
            product_id=product.id,
            creator_id=product.creator_id,
            order_id=order.id,
            buyer_email=order.customer_email,
            buyer_name=order.customer_name,
            slot_start=order.booking_slot_start,
            slot_end=order.booking_slot_end,
        ))

    def process_confirmation_email_task(self, payload: Dict[str, Any]) -> None:
        with self.session_factory() as db:
            order = OrderRepository(db).get(payload["order_id"])
            if not order:
                raise LookupError(f"order {payload['order_id']} not found")
            product = self._primary_product(db, order)
        if not product:
            raise LookupError(f"product for order {order.id} not found")

        download_url = "#"
        if product.file_key:
            try:
                download_url = self.storage.presign_download(product.file_key)
            except Exception as e:
                logger.error(f"Error generating download link for order {order.id}: {e}")
        self.mailer.send_order_confirmation(order, product, download_url)

    def process_subscriber_task(self, payload: Dict[str, Any]) -> None:
        with self.session_factory() as db:
            SubscriberRepository(db).upsert(
                payload["creator_id"],
                payload["email"],
                payload.get("name", ""),
                payload.get("source_product_id"),
                consent_given=True,
            )
            db.commit()
