"""
Checkout, settlement and post-payment side effects
"""
import json
import threading
import unittest

from sqlalchemy import select

from common.error_handling import BusinessLogicError, ErrorCodes
from settlement_service.container import build_services
from settlement_service.models import (
    Outbox, EmailSubscriber, OrderStatus, ProductType, SubscriptionStatus, BookingStatus, DiscountType,
)
from settlement_service.order_service import parse_slot_start
from settlement_service.outbox_worker import TOPIC_BOOKING_CREATE, TOPIC_ORDER_CONFIRMATION_EMAIL, TOPIC_SUBSCRIBER_UPSERT
from fakes import (
    TempDatabase, FixedClock, FakeGateway, FakeStorage, FakeMailer, utc, seed_creator, seed_product,
)

class OrderTestCase(unittest.TestCase):

    def setUp(self):
        self.db = TempDatabase()
        self.clock = FixedClock(utc(2030, 1, 1, 0, 0))
        self.gateway = FakeGateway()
        self.storage = FakeStorage()
        self.mailer = FakeMailer()
        self.services = build_services(self.db.session_factory, gateway=self.gateway, storage=self.storage,
                                       mailer=self.mailer, clock=self.clock)
        self.orders = self.services.orders
        seed_creator(self.db.session_factory)
        seed_product(self.db.session_factory, file_key="creator-1/ebook.pdf")

    def tearDown(self):
        self.db.close()

    def outbox_topics(self):
        with self.db.session_factory() as db:
            return [row.topic for row in db.execute(select(Outbox).order_by(Outbox.id)).scalars()]

    def balance(self, creator_id="creator-1"):
        return self.services.wallet.get_balance(creator_id)

class TestCreateOrder(OrderTestCase):

    def test_single_item_with_coupon(self):
        """A 1000 paise product with a 10% coupon opens a 900 paise gateway order"""
        self.services.coupons.create_coupon("creator-1", "SAVE10", DiscountType.PERCENTAGE, 10)

        order = self.orders.create_order("product-1", "Riya", "Riya@Example.com", coupon_code="save10")

        self.assertEqual(order.amount, 900)
        self.assertEqual(order.discount_amount, 100)
        self.assertEqual(order.coupon_code, "SAVE10")
        self.assertEqual(order.customer_email, "riya@example.com")
        self.assertEqual(order.status, OrderStatus.CREATED)
        self.assertEqual(len(order.line_items), 1)
        self.assertEqual(self.gateway.orders[0]["amount"], 900)
        self.assertEqual(self.gateway.orders[0]["receipt"], f"rcpt_product-1_{int(self.clock().timestamp())}")
        self.assertEqual(order.gateway_order_id, self.gateway.orders[0]["id"])

    def test_invalid_coupon_is_rejected(self):
        with self.assertRaises(BusinessLogicError) as ctx:
            self.orders.create_order("product-1", "Riya", "riya@example.com", coupon_code="NOPE")
        self.assertEqual(ctx.exception.code, ErrorCodes.VALIDATION_ERROR)
        self.assertEqual(ctx.exception.message, "Coupon not found or inactive")
        self.assertEqual(self.gateway.orders, [])

    def test_bump_offer_adds_discounted_line(self):
        seed_product(self.db.session_factory, "bump-1", title="Workbook", price=500)
        seed_product(self.db.session_factory, "main-1", title="Course", price=2000,
                     bump_product_id="bump-1", bump_discount=200)

        order = self.orders.create_order("main-1", "Riya", "riya@example.com", bump_accepted=True)

        self.assertEqual(order.amount, 2300)
        self.assertEqual([i["title"] for i in order.line_items], ["Course", "Workbook (Bump Offer)"])
        self.assertEqual(order.line_items[1]["amount"], 300)

    def test_bump_ignored_unless_accepted_visible_and_same_creator(self):
        seed_product(self.db.session_factory, "hidden-bump", price=500, is_visible=False)
        seed_product(self.db.session_factory, "foreign-bump", creator_id="creator-2", price=500)
        seed_product(self.db.session_factory, "main-hidden", price=2000, bump_product_id="hidden-bump")
        seed_product(self.db.session_factory, "main-foreign", price=2000, bump_product_id="foreign-bump")

        self.assertEqual(self.orders.create_order("main-hidden", "R", "r@example.com", bump_accepted=False).amount, 2000)
        self.assertEqual(self.orders.create_order("main-hidden", "R", "r@example.com", bump_accepted=True).amount, 2000)
        self.assertEqual(self.orders.create_order("main-foreign", "R", "r@example.com", bump_accepted=True).amount, 2000)

    def test_free_order_is_paid_immediately(self):
        seed_product(self.db.session_factory, "free-1", price=0)

        order = self.orders.create_order("free-1", "Riya", "riya@example.com")

        self.assertEqual(order.status, OrderStatus.PAID)
        self.assertEqual(order.amount, 0)
        self.assertTrue(order.gateway_order_id.startswith("free_"))
        self.assertEqual(self.gateway.orders, [])
        self.assertEqual(self.outbox_topics(), [TOPIC_SUBSCRIBER_UPSERT, TOPIC_ORDER_CONFIRMATION_EMAIL])
        self.assertEqual(self.balance(), 0)

    def test_lead_magnet_is_free_regardless_of_price(self):
        seed_product(self.db.session_factory, "lead-1", price=500, product_type=ProductType.LEAD_MAGNET)
        order = self.orders.create_order("lead-1", "Riya", "riya@example.com")
        self.assertEqual(order.status, OrderStatus.PAID)
        self.assertEqual(order.amount, 0)

    def test_membership_creates_plan_and_subscription(self):
        seed_product(self.db.session_factory, "club-1", title="Club", price=49900,
                     product_type=ProductType.MEMBERSHIP, subscription_interval="yearly")

        order = self.orders.create_order("club-1", "Riya", "riya@example.com")

        self.assertEqual(self.gateway.plans[0]["interval"], "yearly")
        self.assertEqual(order.gateway_order_id, self.gateway.subscriptions[0]["id"])
        subs = self.orders.list_buyer_subscriptions("riya@example.com")
        self.assertEqual(len(subs), 1)
        self.assertEqual(subs[0].gateway_subscription_id, order.gateway_order_id)
        self.assertEqual(subs[0].status, SubscriptionStatus.CREATED)
        self.assertEqual(subs[0].amount, 49900)

    def test_booking_slot_is_stored_in_utc(self):
        seed_product(self.db.session_factory, "coach-1", price=5000, product_type=ProductType.BOOKING,
                     duration_minutes=45)

        order = self.orders.create_order("coach-1", "Riya", "riya@example.com",
                                         booking_slot_start="2030-01-07T14:30:00+05:30")

        self.assertEqual(order.booking_slot_start, utc(2030, 1, 7, 9, 0))
        self.assertEqual(order.booking_slot_end, utc(2030, 1, 7, 9, 45))

    def test_non_positive_duration_books_default_length(self):
        seed_product(self.db.session_factory, "coach-1", price=5000, product_type=ProductType.BOOKING,
                     duration_minutes=-30)

        order = self.orders.create_order("coach-1", "Riya", "riya@example.com",
                                         booking_slot_start="2030-01-07T09:00:00Z")

        self.assertEqual(order.booking_slot_end, utc(2030, 1, 7, 9, 30))

    def test_invalid_booking_slot(self):
        seed_product(self.db.session_factory, "coach-1", price=5000, product_type=ProductType.BOOKING)
        for value in ("tomorrow", "2030-01-07T09:00:00"):
            with self.assertRaises(BusinessLogicError) as ctx:
                self.orders.create_order("coach-1", "Riya", "riya@example.com", booking_slot_start=value)
            self.assertEqual(ctx.exception.code, ErrorCodes.VALIDATION_ERROR)
        self.assertEqual(self.gateway.orders, [])

    def test_parse_slot_start_accepts_z(self):
        self.assertEqual(parse_slot_start("2030-01-07T09:00:00Z"), utc(2030, 1, 7, 9, 0))

    def test_unknown_product(self):
        with self.assertRaises(BusinessLogicError) as ctx:
            self.orders.create_order("missing", "Riya", "riya@example.com")
        self.assertEqual(ctx.exception.code, ErrorCodes.NOT_FOUND)

class TestSettlement(OrderTestCase):

    def test_settlement_credits_net_once(self):
        """Redelivered confirmations settle and credit exactly once"""
        order = self.orders.create_order("product-1", "Riya", "riya@example.com")

        settled = self.orders.handle_payment_success(order.gateway_order_id, "pay_1")
        again = self.orders.handle_payment_success(order.gateway_order_id, "pay_1")

        self.assertEqual(settled.status, OrderStatus.PAID)
        self.assertEqual(again.status, OrderStatus.PAID)
        self.assertEqual(self.balance(), 950)
        stored = self.orders.get_order(order.id)
        self.assertEqual(stored.platform_fee, 50)
        self.assertEqual(stored.gateway_payment_id, "pay_1")
        _, entries = self.services.wallet.get_wallet_details("creator-1")
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].description, "Order payment via pay_1 (net after 5.0% fee)")
        self.assertEqual(entries[0].reference_id, order.id)
        self.assertEqual(self.outbox_topics(), [TOPIC_ORDER_CONFIRMATION_EMAIL])

    def test_creator_fee_rate_overrides_default(self):
        seed_creator(self.db.session_factory, "creator-2", platform_fee_rate=10.0)
        seed_product(self.db.session_factory, "p2", creator_id="creator-2", price=1000)
        order = self.orders.create_order("p2", "Riya", "riya@example.com")

        self.orders.handle_payment_success(order.gateway_order_id, "pay_1")

        self.assertEqual(self.balance("creator-2"), 900)

    def test_concurrent_confirmations_credit_once(self):
        order = self.orders.create_order("product-1", "Riya", "riya@example.com")
        barrier = threading.Barrier(4)
        errors = []

        def deliver():
            barrier.wait()
            try:
                self.orders.handle_payment_success(order.gateway_order_id, "pay_1")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=deliver) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(errors, [])
        self.assertEqual(self.balance(), 950)
        self.assertEqual(self.outbox_topics(), [TOPIC_ORDER_CONFIRMATION_EMAIL])

    def test_coupon_usage_counted_at_settlement(self):
        coupon = self.services.coupons.create_coupon("creator-1", "SAVE10", DiscountType.PERCENTAGE, 10)
        order = self.orders.create_order("product-1", "Riya", "riya@example.com", coupon_code="SAVE10")
        self.assertEqual(self.services.coupons.list_coupons("creator-1")[0].times_used, 0)

        self.orders.handle_payment_success(order.gateway_order_id, "pay_1")
        self.orders.handle_payment_success(order.gateway_order_id, "pay_1")

        listed = self.services.coupons.list_coupons("creator-1")
        self.assertEqual(listed[0].id, coupon.id)
        self.assertEqual(listed[0].times_used, 1)
        # 900 paid, 5% fee is 45
        self.assertEqual(self.balance(), 855)

    def test_unknown_gateway_order(self):
        with self.assertRaises(BusinessLogicError) as ctx:
            self.orders.handle_payment_success("order_missing", "pay_1")
        self.assertEqual(ctx.exception.code, ErrorCodes.NOT_FOUND)

    def test_booking_settlement_enqueues_booking(self):
        seed_product(self.db.session_factory, "coach-1", price=5000, product_type=ProductType.BOOKING)
        order = self.orders.create_order("coach-1", "Riya", "riya@example.com",
                                         booking_slot_start="2030-01-07T09:00:00Z")

        self.orders.handle_payment_success(order.gateway_order_id, "pay_1")

        self.assertEqual(self.outbox_topics(), [TOPIC_BOOKING_CREATE, TOPIC_ORDER_CONFIRMATION_EMAIL])

class TestOutboxHandlers(OrderTestCase):

    def run_outbox(self):
        return self.services.outbox.run_once()

    def outbox_rows(self):
        with self.db.session_factory() as db:
            return list(db.execute(select(Outbox).order_by(Outbox.id)).scalars())

    def test_booking_and_email_after_settlement(self):
        seed_product(self.db.session_factory, "coach-1", title="Coaching", price=5000,
                     product_type=ProductType.BOOKING)
        order = self.orders.create_order("coach-1", "Riya", "riya@example.com",
                                         booking_slot_start="2030-01-07T09:00:00Z")
        self.orders.handle_payment_success(order.gateway_order_id, "pay_1")

        self.assertEqual(self.run_outbox(), 2)

        bookings = self.services.bookings.list_buyer_bookings("riya@example.com")
        self.assertEqual(len(bookings), 1)
        self.assertEqual(bookings[0].status, BookingStatus.CONFIRMED)
        self.assertEqual(bookings[0].slot_start, utc(2030, 1, 7, 9, 0))
        self.assertEqual(bookings[0].order_id, order.id)
        # coaching has no file
        self.assertEqual(self.mailer.sent[0]["download_url"], "#")
        self.assertEqual([r.status for r in self.outbox_rows()], ["sent", "sent"])

    def test_email_carries_download_link(self):
        order = self.orders.create_order("product-1", "Riya", "riya@example.com")
        self.orders.handle_payment_success(order.gateway_order_id, "pay_1")

        self.run_outbox()

        self.assertEqual(self.mailer.sent, [{
            "order_id": order.id,
            "to": "riya@example.com",
            "product": "Ebook",
            "download_url": "https://storage.test/creator-1/ebook.pdf?signature=abc",
        }])

    def test_presign_failure_still_sends_email(self):
        self.storage.fail = True
        order = self.orders.create_order("product-1", "Riya", "riya@example.com")
        self.orders.handle_payment_success(order.gateway_order_id, "pay_1")

        self.run_outbox()

        self.assertEqual(self.mailer.sent[0]["download_url"], "#")

    def test_mail_failure_marks_row_failed_without_touching_order(self):
        self.mailer.fail = True
        order = self.orders.create_order("product-1", "Riya", "riya@example.com")
        self.orders.handle_payment_success(order.gateway_order_id, "pay_1")

        self.run_outbox()

        rows = self.outbox_rows()
        self.assertEqual(rows[0].status, "failed")
        self.assertIn("smtp down", rows[0].last_error)
        self.assertEqual(self.orders.get_order(order.id).status, OrderStatus.PAID)
        self.assertEqual(self.balance(), 950)

    def test_free_order_records_subscriber(self):
        seed_product(self.db.session_factory, "free-1", price=0)
        self.orders.create_order("free-1", "Riya", "Riya@example.com")

        self.run_outbox()

        with self.db.session_factory() as db:
            subscribers = list(db.execute(select(EmailSubscriber)).scalars())
        self.assertEqual(len(subscribers), 1)
        self.assertEqual(subscribers[0].email, "riya@example.com")
        self.assertEqual(subscribers[0].source_product_id, "free-1")
        self.assertTrue(subscribers[0].consent_given)

    def test_lost_booking_race_fails_task_not_settlement(self):
        seed_product(self.db.session_factory, "coach-1", price=5000, product_type=ProductType.BOOKING)
        first = self.orders.create_order("coach-1", "A", "a@example.com", booking_slot_start="2030-01-07T09:00:00Z")
        second = self.orders.create_order("coach-1", "B", "b@example.com", booking_slot_start="2030-01-07T09:00:00Z")
        self.orders.handle_payment_success(first.gateway_order_id, "pay_1")
        self.orders.handle_payment_success(second.gateway_order_id, "pay_2")

        self.run_outbox()

        statuses = {(r.topic, json.loads(r.payload)["order_id"]): r.status for r in self.outbox_rows()}
        self.assertEqual(statuses[(TOPIC_BOOKING_CREATE, first.id)], "sent")
        self.assertEqual(statuses[(TOPIC_BOOKING_CREATE, second.id)], "failed")
        self.assertEqual(self.orders.get_order(second.id).status, OrderStatus.PAID)

class TestSubscriptions(OrderTestCase):

    def setUp(self):
        super().setUp()
        seed_product(self.db.session_factory, "club-1", title="Club", price=20000,
                     product_type=ProductType.MEMBERSHIP)
        self.order = self.orders.create_order("club-1", "Riya", "riya@example.com")
        self.sub_id = self.order.gateway_order_id

    def event(self, status, paid_count, payment_id=None):
        payload = {"subscription": {"entity": {
            "id": self.sub_id,
            "status": status,
            "paid_count": paid_count,
            "current_start": 1893456000,
            "current_end": 1896134400,
        }}}
        if payment_id:
            payload["payment"] = {"entity": {"id": payment_id}}
        return payload

    def test_first_charge_settles_order(self):
        sub = self.orders.handle_subscription_event("subscription.charged", self.event("active", 1, "pay_1"))

        self.assertEqual(sub.status, SubscriptionStatus.ACTIVE)
        self.assertEqual(sub.current_start, utc(2030, 1, 1, 0, 0))
        self.assertEqual(self.orders.get_order(self.order.id).status, OrderStatus.PAID)
        self.assertEqual(self.balance(), 19000)

    def test_renewal_charge_does_not_settle_again(self):
        self.orders.handle_subscription_event("subscription.charged", self.event("active", 1, "pay_1"))
        self.orders.handle_subscription_event("subscription.charged", self.event("active", 2, "pay_2"))
        self.assertEqual(self.balance(), 19000)

    def test_status_mapping(self):
        self.assertEqual(self.orders.handle_subscription_event("subscription.pending", self.event("pending", 1)).status,
                         SubscriptionStatus.PAST_DUE)
        self.assertEqual(self.orders.handle_subscription_event("subscription.halted", self.event("halted", 1)).status,
                         SubscriptionStatus.HALTED)
        self.assertEqual(self.orders.handle_subscription_event("subscription.completed", self.event("completed", 1)).status,
                         SubscriptionStatus.CANCELLED)

    def test_unknown_subscription(self):
        self.sub_id = "sub_missing"
        with self.assertRaises(BusinessLogicError) as ctx:
            self.orders.handle_subscription_event("subscription.charged", self.event("active", 1))
        self.assertEqual(ctx.exception.code, ErrorCodes.NOT_FOUND)

    def test_buyer_cancels(self):
        sub = self.orders.list_buyer_subscriptions("riya@example.com")[0]

        with self.assertRaises(BusinessLogicError) as ctx:
            self.orders.cancel_subscription(sub.id, "other@example.com")
        self.assertEqual(ctx.exception.code, ErrorCodes.UNAUTHORIZED)

        cancelled = self.orders.cancel_subscription(sub.id, "RIYA@example.com")
        self.assertEqual(cancelled.status, SubscriptionStatus.CANCELLED)
        self.assertEqual(self.gateway.cancelled, [self.sub_id])

        with self.assertRaises(BusinessLogicError) as ctx:
            self.orders.cancel_subscription(sub.id, "riya@example.com")
        self.assertEqual(ctx.exception.code, ErrorCodes.ALREADY_CANCELLED)

class TestDownloads(OrderTestCase):

    def test_paid_order_gets_presigned_url(self):
        order = self.orders.create_order("product-1", "Riya", "riya@example.com")
        self.orders.handle_payment_success(order.gateway_order_id, "pay_1")

        url = self.orders.get_order_download_url(order.id)

        self.assertEqual(url, "https://storage.test/creator-1/ebook.pdf?signature=abc")

    def test_bump_product_download(self):
        seed_product(self.db.session_factory, "bump-1", title="Workbook", price=500, file_key="creator-1/workbook.pdf")
        seed_product(self.db.session_factory, "main-1", price=2000, bump_product_id="bump-1",
                     file_key="creator-1/main.pdf")
        order = self.orders.create_order("main-1", "Riya", "riya@example.com", bump_accepted=True)
        self.orders.handle_payment_success(order.gateway_order_id, "pay_1")

        self.assertIn("workbook.pdf", self.orders.get_order_download_url(order.id, "bump-1"))

    def test_download_rules(self):
        unpaid = self.orders.create_order("product-1", "Riya", "riya@example.com")
        with self.assertRaises(BusinessLogicError) as ctx:
            self.orders.get_order_download_url(unpaid.id)
        self.assertEqual(ctx.exception.code, ErrorCodes.FORBIDDEN)

        self.orders.handle_payment_success(unpaid.gateway_order_id, "pay_1")
        with self.assertRaises(BusinessLogicError) as ctx:
            self.orders.get_order_download_url(unpaid.id, "someone-elses-product")
        self.assertEqual(ctx.exception.code, ErrorCodes.FORBIDDEN)

        seed_product(self.db.session_factory, "nofile", price=300)
        order = self.orders.create_order("nofile", "Riya", "riya@example.com")
        self.orders.handle_payment_success(order.gateway_order_id, "pay_2")
        with self.assertRaises(BusinessLogicError) as ctx:
            self.orders.get_order_download_url(order.id)
        self.assertEqual(ctx.exception.code, ErrorCodes.NOT_FOUND)

    def test_order_listings(self):
        paid = self.orders.create_order("product-1", "Riya", "riya@example.com")
        self.orders.create_order("product-1", "Riya", "riya@example.com")
        self.orders.handle_payment_success(paid.gateway_order_id, "pay_1")

        self.assertEqual(len(self.orders.list_creator_orders("creator-1")), 2)
        self.assertEqual([o.id for o in self.orders.list_buyer_orders("Riya@Example.com")], [paid.id])

if __name__ == "__main__":
    unittest.main()
