"""
Typed data access per entity.

Every repository wraps a caller-owned Session; committing is the caller's
job except where a method documents otherwise (leases commit immediately
so that other workers can see them).
"""
from datetime import datetime, timedelta
from typing import List, Optional
from sqlalchemy import select, update, delete, func, case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement_service.models import (
    Creator, Product, Order, Subscription, LedgerEntry, Payout, Booking, Coupon,
    EmailSubscriber, Outbox, Lease, OrderStatus, PayoutStatus, BookingStatus,
    EntryDirection, EntrySource, utcnow,
)

class CreatorRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, creator_id: str) -> Optional[Creator]:
        return self.db.get(Creator, creator_id)

class ProductRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, product_id: str) -> Optional[Product]:
        return self.db.get(Product, product_id)

class OrderRepository:
    def __init__(self, db: Session):
        self.db = db

    def add(self, order: Order) -> Order:
        self.db.add(order)
        self.db.flush()
        return order

    def get(self, order_id: str) -> Optional[Order]:
        return self.db.get(Order, order_id)

    def find_by_gateway_order_id(self, gateway_order_id: str) -> Optional[Order]:
        return self.db.execute(
            select(Order).where(Order.gateway_order_id == gateway_order_id)
        ).scalar_one_or_none()

    def mark_paid(self, gateway_order_id: str, gateway_payment_id: str) -> bool:
        """Compare-and-set to paid. True only for the caller that moved it."""
        result = self.db.execute(
            update(Order)
            .where(Order.gateway_order_id == gateway_order_id, Order.status != OrderStatus.PAID)
            .values(status=OrderStatus.PAID, gateway_payment_id=gateway_payment_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def set_platform_fee(self, order_id: str, fee: int) -> None:
        self.db.execute(
            update(Order).where(Order.id == order_id).values(platform_fee=fee, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    def list_by_creator(self, creator_id: str) -> List[Order]:
        return list(self.db.execute(
            select(Order).where(Order.creator_id == creator_id).order_by(Order.created_at.desc())
        ).scalars())

    def list_paid_by_customer(self, email: str) -> List[Order]:
        return list(self.db.execute(
            select(Order)
            .where(Order.customer_email == email, Order.status == OrderStatus.PAID)
            .order_by(Order.created_at.desc())
        ).scalars())

class SubscriptionRepository:
    def __init__(self, db: Session):
        self.db = db

    def add(self, subscription: Subscription) -> Subscription:
        self.db.add(subscription)
        self.db.flush()
        return subscription

    def get(self, subscription_id: str) -> Optional[Subscription]:
        return self.db.get(Subscription, subscription_id)

    def find_by_gateway_id(self, gateway_subscription_id: str) -> Optional[Subscription]:
        return self.db.execute(
            select(Subscription).where(Subscription.gateway_subscription_id == gateway_subscription_id)
        ).scalar_one_or_none()

    def list_by_customer(self, email: str) -> List[Subscription]:
        return list(self.db.execute(
            select(Subscription).where(Subscription.customer_email == email)
            .order_by(Subscription.created_at.desc())
        ).scalars())

class LedgerRepository:
    """Append-only. There is deliberately no update or delete here."""

    def __init__(self, db: Session):
        self.db = db

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        self.db.add(entry)
        self.db.flush()
        return entry

    def balance(self, creator_id: str) -> int:
        signed = case(
            (LedgerEntry.direction == EntryDirection.CREDIT, LedgerEntry.amount),
            else_=-LedgerEntry.amount,
        )
        total = self.db.execute(
            select(func.coalesce(func.sum(signed), 0)).where(LedgerEntry.creator_id == creator_id)
        ).scalar_one()
        return int(total)

    def total(self, creator_id: str, direction: str, source: str) -> int:
        total = self.db.execute(
            select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(
                LedgerEntry.creator_id == creator_id,
                LedgerEntry.direction == direction,
                LedgerEntry.source == source,
            )
        ).scalar_one()
        return int(total)

    def list_by_creator(self, creator_id: str) -> List[LedgerEntry]:
        return list(self.db.execute(
            select(LedgerEntry).where(LedgerEntry.creator_id == creator_id)
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
        ).scalars())

class PayoutRepository:
    def __init__(self, db: Session):
        self.db = db

    def add(self, payout: Payout) -> Payout:
        payout.inflight_creator_id = payout.creator_id if payout.status == PayoutStatus.PROCESSING else None
        self.db.add(payout)
        self.db.flush()
        return payout

    def find_processing(self, creator_id: str) -> Optional[Payout]:
        return self.db.execute(
            select(Payout).where(Payout.creator_id == creator_id, Payout.status == PayoutStatus.PROCESSING)
        ).scalars().first()

    def find_by_gateway_id(self, gateway_payout_id: str) -> Optional[Payout]:
        return self.db.execute(
            select(Payout).where(Payout.gateway_payout_id == gateway_payout_id)
        ).scalar_one_or_none()

    def get(self, payout_id: str) -> Optional[Payout]:
        return self.db.get(Payout, payout_id)

    def attach_gateway_id(self, payout_id: str, gateway_payout_id: str) -> bool:
        """Record the gateway's id on a payout submitted without one."""
        result = self.db.execute(
            update(Payout)
            .where(Payout.id == payout_id, Payout.gateway_payout_id.is_(None))
            .values(gateway_payout_id=gateway_payout_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _finish(self, condition, status: str) -> bool:
        # the bank can still reverse a processed payout, once
        sources = [PayoutStatus.PROCESSING]
        if status == PayoutStatus.REVERSED:
            sources.append(PayoutStatus.COMPLETED)
        result = self.db.execute(
            update(Payout)
            .where(condition, Payout.status.in_(sources))
            .values(status=status, completed_at=utcnow(), inflight_creator_id=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def finish(self, gateway_payout_id: str, status: str) -> bool:
        """Move a payout to a terminal status. True for the winning caller."""
        return self._finish(Payout.gateway_payout_id == gateway_payout_id, status)

    def finish_by_id(self, payout_id: str, status: str) -> bool:
        return self._finish(Payout.id == payout_id, status)

    def list_by_creator(self, creator_id: str) -> List[Payout]:
        return list(self.db.execute(
            select(Payout).where(Payout.creator_id == creator_id).order_by(Payout.created_at.desc())
        ).scalars())

class BookingRepository:
    def __init__(self, db: Session):
        self.db = db

    def add(self, booking: Booking) -> Booking:
        self.db.add(booking)
        self.db.flush()
        return booking

    def get(self, booking_id: str) -> Optional[Booking]:
        return self.db.get(Booking, booking_id)

    def find_overlapping(self, product_id: str, start: datetime, end: datetime) -> List[Booking]:
        return list(self.db.execute(
            select(Booking).where(
                Booking.product_id == product_id,
                Booking.status == BookingStatus.CONFIRMED,
                Booking.slot_start < end,
                Booking.slot_end > start,
            )
        ).scalars())

    def find_confirmed_starting_between(self, product_id: str, start: datetime, end: datetime) -> List[Booking]:
        return list(self.db.execute(
            select(Booking).where(
                Booking.product_id == product_id,
                Booking.status == BookingStatus.CONFIRMED,
                Booking.slot_start >= start,
                Booking.slot_start < end,
            )
        ).scalars())

    def set_status(self, booking_id: str, status: str) -> None:
        self.db.execute(
            update(Booking).where(Booking.id == booking_id).values(status=status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    def list_by_creator(self, creator_id: str) -> List[Booking]:
        return list(self.db.execute(
            select(Booking).where(Booking.creator_id == creator_id).order_by(Booking.slot_start)
        ).scalars())

    def list_by_buyer(self, email: str) -> List[Booking]:
        return list(self.db.execute(
            select(Booking).where(Booking.buyer_email == email).order_by(Booking.slot_start)
        ).scalars())

class CouponRepository:
    def __init__(self, db: Session):
        self.db = db

    def add(self, coupon: Coupon) -> Coupon:
        self.db.add(coupon)
        self.db.flush()
        return coupon

    def get(self, coupon_id: str) -> Optional[Coupon]:
        return self.db.get(Coupon, coupon_id)

    def find_by_code(self, creator_id: str, code: str) -> Optional[Coupon]:
        return self.db.execute(
            select(Coupon).where(Coupon.creator_id == creator_id, Coupon.code == code.upper())
        ).scalar_one_or_none()

    def list_by_creator(self, creator_id: str) -> List[Coupon]:
        return list(self.db.execute(
            select(Coupon).where(Coupon.creator_id == creator_id).order_by(Coupon.created_at.desc())
        ).scalars())

    def increment_usage(self, coupon_id: str) -> None:
        # single UPDATE so concurrent redemptions never lose a count
        self.db.execute(
            update(Coupon).where(Coupon.id == coupon_id)
            .values(times_used=Coupon.times_used + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

class SubscriberRepository:
    def __init__(self, db: Session):
        self.db = db

    def upsert(self, creator_id: str, email: str, name: str, source_product_id: str, consent_given: bool) -> EmailSubscriber:
        existing = self.db.execute(
            select(EmailSubscriber).where(EmailSubscriber.creator_id == creator_id, EmailSubscriber.email == email)
        ).scalar_one_or_none()
        if existing:
            existing.name = name or existing.name
            existing.consent_given = existing.consent_given or consent_given
            return existing
        subscriber = EmailSubscriber(
            creator_id=creator_id, email=email, name=name,
            source_product_id=source_product_id, consent_given=consent_given,
        )
        self.db.add(subscriber)
        self.db.flush()
        return subscriber

class OutboxRepository:
    def __init__(self, db: Session):
        self.db = db

    def add(self, row: Outbox) -> Outbox:
        self.db.add(row)
        self.db.flush()
        return row

    def pending(self, limit: int) -> List[Outbox]:
        return list(self.db.execute(
            select(Outbox).where(Outbox.status == "new").order_by(Outbox.id).limit(limit)
        ).scalars())

    def mark(self, row_id: int, status: str, error: Optional[str] = None) -> None:
        self.db.execute(
            update(Outbox).where(Outbox.id == row_id)
            .values(status=status, last_error=error, attempts=Outbox.attempts + 1, processed_at=utcnow())
            .execution_options(synchronize_session=False)
        )

class LeaseBusy(Exception):
    """Another holder owns the lease."""

class LeaseRepository:
    def __init__(self, db: Session):
        self.db = db

    def acquire(self, key: str, holder: str, ttl_seconds: int) -> None:
        """Take the lease or raise LeaseBusy. Commits immediately."""
        stale_before = utcnow() - timedelta(seconds=ttl_seconds)
        try:
            self.db.execute(delete(Lease).where(Lease.key == key, Lease.acquired_at < stale_before))
            self.db.add(Lease(key=key, holder=holder, acquired_at=utcnow()))
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise LeaseBusy(key)

    def release(self, key: str, holder: str) -> None:
        self.db.execute(delete(Lease).where(Lease.key == key, Lease.holder == holder))
        self.db.commit()
