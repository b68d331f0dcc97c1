from dataclasses import dataclass

from settlement_service.booking_service import BookingService
from settlement_service.coupon_service import CouponService
from settlement_service.gateway import RazorpayGateway
from settlement_service.mailer import BrevoEmailSender
from settlement_service.models import utcnow
from settlement_service.order_service import OrderService
from settlement_service.outbox_worker import OutboxWorker
from settlement_service.payout_service import PayoutService
from settlement_service.storage import ObjectStorage
from settlement_service.wallet_service import WalletService

@dataclass
class Services:
    session_factory: object
    gateway: object
    storage: object
    mailer: object
    wallet: WalletService
    coupons: CouponService
    bookings: BookingService
    orders: OrderService
    payouts: PayoutService
    outbox: OutboxWorker

def build_services(session_factory=None, gateway=None, storage=None, mailer=None, clock=utcnow) -> Services:
    """Wire the services together; collaborators default to the real adapters."""
    if session_factory is None:
        from settlement_service.db import SessionLocal
        session_factory = SessionLocal
    gateway = gateway or RazorpayGateway()
    storage = storage or ObjectStorage()
    mailer = mailer or BrevoEmailSender()

    wallet = WalletService(session_factory)
    coupons = CouponService(session_factory, clock=clock)
    bookings = BookingService(session_factory, clock=clock)
    orders = OrderService(session_factory, gateway, storage, mailer, wallet, coupons, bookings, clock=clock)
    payouts = PayoutService(session_factory, gateway)
    outbox = OutboxWorker(session_factory, handlers=orders.outbox_handlers())

    return Services(
        session_factory=session_factory,
        gateway=gateway,
        storage=storage,
        mailer=mailer,
        wallet=wallet,
        coupons=coupons,
        bookings=bookings,
        orders=orders,
        payouts=payouts,
        outbox=outbox,
    )
