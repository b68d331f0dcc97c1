import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, BigInteger, Boolean, Float, Text, JSON, DateTime,
    Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

Base = declarative_base()

# SQLite only auto-increments INTEGER primary keys
AutoBigInt = BigInteger().with_variant(Integer, "sqlite")

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def new_id() -> str:
    return uuid.uuid4().hex

class UTCDateTime(TypeDecorator):
    """Stores naive UTC, hands back aware UTC."""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)

class ProductType:
    DOWNLOAD = "download"
    COURSE = "course"
    BOOKING = "booking"
    LEAD_MAGNET = "lead_magnet"
    MEMBERSHIP = "membership"

class OrderStatus:
    CREATED = "created"
    PAID = "paid"
    FAILED = "failed"

class SubscriptionStatus:
    CREATED = "created"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    HALTED = "halted"
    CANCELLED = "cancelled"

class EntryDirection:
    CREDIT = "credit"
    DEBIT = "debit"

class EntrySource:
    ORDER = "order"
    PAYOUT = "payout"

class PayoutStatus:
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REVERSED = "reversed"

    TERMINAL = (COMPLETED, FAILED, REVERSED)

class BookingStatus:
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"

class DiscountType:
    PERCENTAGE = "percentage"
    FIXED = "fixed"

class Creator(Base):
    __tablename__ = "creators"
    id = Column(String(64), primary_key=True, default=new_id)
    email = Column(String(255), nullable=False)
    display_name = Column(String(255), nullable=False, default="")
    platform_fee_rate = Column(Float, nullable=True)  # percent; NULL means platform default
    payout_holder_name = Column(String(255))
    payout_account_masked = Column(String(32))  # last 4 digits only
    payout_ifsc = Column(String(16))
    payout_contact_id = Column(String(64))
    payout_fund_account_id = Column(String(64))
    payout_verified = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

class Product(Base):
    __tablename__ = "products"
    id = Column(String(64), primary_key=True, default=new_id)
    creator_id = Column(String(64), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    price = Column(BigInteger, nullable=False, default=0)  # paise
    product_type = Column(String(32), nullable=False, default=ProductType.DOWNLOAD)
    is_visible = Column(Boolean, nullable=False, default=True)
    file_key = Column(String(512))
    bump_product_id = Column(String(64))
    bump_discount = Column(BigInteger, nullable=False, default=0)
    duration_minutes = Column(Integer)
    timezone = Column(String(64))
    availability = Column(JSON)  # [{"day_of_week": 1, "start_time": "09:00", "end_time": "10:00"}]
    cancellation_window_hours = Column(Integer)
    subscription_interval = Column(String(16))
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

class Order(Base):
    __tablename__ = "orders"
    id = Column(String(64), primary_key=True, default=new_id)
    product_id = Column(String(64), nullable=False)
    creator_id = Column(String(64), nullable=False, index=True)
    line_items = Column(JSON, nullable=False, default=list)
    booking_slot_start = Column(UTCDateTime)
    booking_slot_end = Column(UTCDateTime)
    customer_name = Column(String(255), nullable=False, default="")
    customer_email = Column(String(255), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    currency = Column(String(8), nullable=False)
    coupon_code = Column(String(64))
    discount_amount = Column(BigInteger, nullable=False, default=0)
    platform_fee = Column(BigInteger, nullable=False, default=0)
    gateway_order_id = Column(String(64), nullable=False, unique=True)
    gateway_payment_id = Column(String(64))
    status = Column(String(16), nullable=False, default=OrderStatus.CREATED)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

class Subscription(Base):
    __tablename__ = "subscriptions"
    id = Column(String(64), primary_key=True, default=new_id)
    product_id = Column(String(64), nullable=False)
    creator_id = Column(String(64), nullable=False, index=True)
    customer_email = Column(String(255), nullable=False, index=True)
    customer_name = Column(String(255), nullable=False, default="")
    amount = Column(BigInteger, nullable=False)
    currency = Column(String(8), nullable=False)
    interval = Column(String(16), nullable=False, default="monthly")
    gateway_plan_id = Column(String(64))
    gateway_subscription_id = Column(String(64), nullable=False, unique=True)
    status = Column(String(16), nullable=False, default=SubscriptionStatus.CREATED)
    current_start = Column(UTCDateTime)
    current_end = Column(UTCDateTime)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    total_count = Column(Integer, nullable=False, default=0)
    paid_count = Column(Integer, nullable=False, default=0)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

class LedgerEntry(Base):
    __tablename__ = "ledger_entries"
    id = Column(AutoBigInt, primary_key=True, autoincrement=True)
    creator_id = Column(String(64), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)  # always positive; sign comes from direction
    direction = Column(String(8), nullable=False)  # 'debit' or 'credit'
    source = Column(String(16), nullable=False)  # 'order' or 'payout'
    reference_id = Column(String(64), nullable=False, index=True)
    description = Column(String(512), nullable=False, default="")
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

class Payout(Base):
    __tablename__ = "payouts"
    id = Column(String(64), primary_key=True, default=new_id)
    creator_id = Column(String(64), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    platform_fee = Column(BigInteger, nullable=False, default=0)
    net_amount = Column(BigInteger, nullable=False)
    gateway_payout_id = Column(String(64), unique=True)
    status = Column(String(16), nullable=False, default=PayoutStatus.PROCESSING)
    # creator_id while processing, NULL once terminal: one in-flight payout per creator
    inflight_creator_id = Column(String(64), unique=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    completed_at = Column(UTCDateTime)

class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (Index("ix_bookings_product_slot", "product_id", "slot_start"),)
    id = Column(String(64), primary_key=True, default=new_id)
    product_id = Column(String(64), nullable=False)
    creator_id = Column(String(64), nullable=False, index=True)
    order_id = Column(String(64), nullable=False)
    buyer_email = Column(String(255), nullable=False, index=True)
    buyer_name = Column(String(255), nullable=False, default="")
    slot_start = Column(UTCDateTime, nullable=False)
    slot_end = Column(UTCDateTime, nullable=False)
    meeting_link = Column(String(512))
    status = Column(String(16), nullable=False, default=BookingStatus.CONFIRMED)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

class Coupon(Base):
    __tablename__ = "coupons"
    __table_args__ = (UniqueConstraint("creator_id", "code", name="uq_coupon_creator_code"),)
    id = Column(String(64), primary_key=True, default=new_id)
    creator_id = Column(String(64), nullable=False, index=True)
    code = Column(String(64), nullable=False)  # stored upper-case
    discount_type = Column(String(16), nullable=False)
    discount_value = Column(BigInteger, nullable=False)  # percent (0-100) or fixed paise
    min_order_amount = Column(BigInteger, nullable=False, default=0)  # 0 = no minimum
    max_uses = Column(BigInteger, nullable=False, default=0)  # 0 = unlimited
    times_used = Column(BigInteger, nullable=False, default=0)
    applicable_product_ids = Column(JSON, nullable=False, default=list)  # empty = all products
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

class EmailSubscriber(Base):
    __tablename__ = "email_subscribers"
    __table_args__ = (UniqueConstraint("creator_id", "email", name="uq_subscriber_creator_email"),)
    id = Column(String(64), primary_key=True, default=new_id)
    creator_id = Column(String(64), nullable=False)
    email = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False, default="")
    source_product_id = Column(String(64))
    consent_given = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

class Outbox(Base):
    __tablename__ = "outbox"
    id = Column(AutoBigInt, primary_key=True, autoincrement=True)
    topic = Column(String(64), nullable=False)
    payload = Column(Text, nullable=False)
    status = Column(String(16), nullable=False, default="new", index=True)  # new|sent|failed
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(String(1000))
    trace_id = Column(String(32))
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    processed_at = Column(UTCDateTime)

class Lease(Base):
    __tablename__ = "leases"
    key = Column(String(128), primary_key=True)
    holder = Column(String(64), nullable=False)
    acquired_at = Column(UTCDateTime, nullable=False, default=utcnow)
