import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from common.error_handling import BusinessLogicError, ErrorCodes
from common.retry import RetryConfig
from settlement_service.leases import hold_lease, LeaseBusy
from settlement_service.models import Booking, BookingStatus, ProductType, new_id, utcnow
from settlement_service.repositories import BookingRepository, ProductRepository

logger = logging.getLogger(__name__)

DEFAULT_DURATION_MINUTES = 30
DEFAULT_CANCELLATION_WINDOW_HOURS = 24

def slot_duration(product) -> timedelta:
    """Length of one session; unset or non-positive durations fall back to the default."""
    minutes = product.duration_minutes
    if not minutes or minutes <= 0:
        minutes = DEFAULT_DURATION_MINUTES
    return timedelta(minutes=minutes)

# a busy product lease only lasts as long as one overlap check + insert
BOOKING_LEASE_RETRY = RetryConfig(
    max_attempts=5,
    base_delay=0.05,
    max_delay=1.0,
    retryable_exceptions=(LeaseBusy,),
)

def _parse_hhmm(value: str):
    parsed = datetime.strptime(value, "%H:%M")
    return parsed.hour, parsed.minute

def _resolve_timezone(name: Optional[str], product_id: str):
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Invalid timezone {name!r} on product {product_id}, falling back to UTC")
        return timezone.utc

class BookingService:
    def __init__(self, session_factory, clock=utcnow, lease_retry: RetryConfig = BOOKING_LEASE_RETRY):
        self.session_factory = session_factory
        self.clock = clock
        self.lease_retry = lease_retry

    def get_available_slots(self, product_id: str, date_str: str) -> List[datetime]:
        """Expand the weekly availability for one local date into free UTC slot starts."""
        with self.session_factory() as db:
            product = ProductRepository(db).get(product_id)
        if not product:
            raise BusinessLogicError(ErrorCodes.NOT_FOUND, "product not found")
        if product.product_type != ProductType.BOOKING:
            raise BusinessLogicError(ErrorCodes.INVALID_PRODUCT_TYPE, "product is not a booking product")
        if not product.availability:
            return []

        duration = slot_duration(product)
        tz = _resolve_timezone(product.timezone, product_id)

        try:
            day = datetime.strptime(date_str, "%Y-%m-%d")
        except (TypeError, ValueError):
            raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR,
                                     "invalid date format (expected YYYY-MM-DD)", field="date")
        day_start = datetime(day.year, day.month, day.day, tzinfo=tz)
        # Python counts Monday as 0; availability counts Sunday as 0
        weekday = (day_start.weekday() + 1) % 7

        candidates = []
        for window in product.availability:
            if window.get("day_of_week") != weekday:
                continue
            try:
                start_h, start_m = _parse_hhmm(window.get("start_time", ""))
                end_h, end_m = _parse_hhmm(window.get("end_time", ""))
            except (TypeError, ValueError):
                logger.warning(f"Skipping invalid availability window {window} on product {product_id}")
                continue

            # stride in absolute time so DST shifts inside a window are respected
            current = day_start.replace(hour=start_h, minute=start_m).astimezone(timezone.utc)
            window_end = day_start.replace(hour=end_h, minute=end_m).astimezone(timezone.utc)
            while current + duration <= window_end:
                candidates.append(current)
                current += duration

        if not candidates:
            return []

        sod = day_start.astimezone(timezone.utc)
        eod = sod + timedelta(hours=24)
        with self.session_factory() as db:
            booked = BookingRepository(db).find_confirmed_starting_between(product_id, sod, eod)
        taken = {b.slot_start for b in booked}

        now = self.clock()
        return [slot for slot in candidates if slot not in taken and slot > now]

    def create_booking(self, booking: Booking) -> Booking:
        """Insert a confirmed booking unless a confirmed one already overlaps it.

        The overlap check and the insert run under a per-product lease so two
        settlements racing for the same slot cannot both pass the check.
        """
        if booking.slot_end <= booking.slot_start:
            raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR, "booking must end after it starts")
        booking.id = booking.id or new_id()
        booking.status = BookingStatus.CONFIRMED
        if not booking.meeting_link:
            booking.meeting_link = f"https://meet.google.com/placeholder-{booking.id[:6]}"

        try:
            with hold_lease(self.session_factory, f"booking:{booking.product_id}", retry_config=self.lease_retry):
                with self.session_factory() as db:
                    repo = BookingRepository(db)
                    if repo.find_overlapping(booking.product_id, booking.slot_start, booking.slot_end):
                        raise BusinessLogicError(ErrorCodes.SLOT_UNAVAILABLE, "the requested slot is no longer available")
                    repo.add(booking)
                    db.commit()
        except LeaseBusy:
            raise BusinessLogicError(ErrorCodes.SLOT_UNAVAILABLE, "the requested slot is being booked, try again")

        logger.info(f"Booking {booking.id} confirmed for product {booking.product_id} at {booking.slot_start.isoformat()}")
        return booking

    def cancel_booking(self, booking_id: str, requester_email: str, is_creator: bool = False,
                       creator_id: Optional[str] = None) -> None:
        with self.session_factory() as db:
            repo = BookingRepository(db)
            booking = repo.get(booking_id)
            if not booking:
                raise BusinessLogicError(ErrorCodes.NOT_FOUND, "booking not found")

            if is_creator:
                if creator_id is not None and booking.creator_id != creator_id:
                    raise BusinessLogicError(ErrorCodes.UNAUTHORIZED, "booking belongs to another creator")
            elif (booking.buyer_email or "").lower() != (requester_email or "").lower():
                raise BusinessLogicError(ErrorCodes.UNAUTHORIZED, "unauthorized to cancel this booking")

            if booking.status == BookingStatus.CANCELLED:
                raise BusinessLogicError(ErrorCodes.ALREADY_CANCELLED, "booking is already cancelled")

            product = ProductRepository(db).get(booking.product_id)
            window_hours = (product.cancellation_window_hours if product else None) or DEFAULT_CANCELLATION_WINDOW_HOURS
            cutoff = booking.slot_start - timedelta(hours=window_hours)
            if not is_creator and self.clock() > cutoff:
                raise BusinessLogicError(
                    ErrorCodes.POLICY_VIOLATION,
                    f"cancellation period has expired (requires {window_hours} hours notice)",
                )

            repo.set_status(booking_id, BookingStatus.CANCELLED)
            db.commit()
        logger.info(f"Booking {booking_id} cancelled by {'creator' if is_creator else 'buyer'}")

    def list_creator_bookings(self, creator_id: str) -> List[Booking]:
        with self.session_factory() as db:
            return BookingRepository(db).list_by_creator(creator_id)

    def list_buyer_bookings(self, email: str) -> List[Booking]:
        with self.session_factory() as db:
            return BookingRepository(db).list_by_buyer(email.lower())
