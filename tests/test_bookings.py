"""
Availability expansion, double-booking guard and cancellation policy
"""
import threading
import unittest
from datetime import timedelta

from common.error_handling import BusinessLogicError, ErrorCodes
from settlement_service.booking_service import BookingService
from settlement_service.models import Booking, BookingStatus, ProductType
from fakes import TempDatabase, FixedClock, utc, seed_product

MONDAY = "2030-01-07"
MONDAY_WINDOW = [{"day_of_week": 1, "start_time": "09:00", "end_time": "10:00"}]

class BookingTestCase(unittest.TestCase):

    def setUp(self):
        self.db = TempDatabase()
        self.clock = FixedClock(utc(2030, 1, 1, 0, 0))
        self.bookings = BookingService(self.db.session_factory, clock=self.clock)

    def tearDown(self):
        self.db.close()

    def coaching(self, product_id="coach-1", **fields):
        fields.setdefault("availability", MONDAY_WINDOW)
        fields.setdefault("duration_minutes", 30)
        fields.setdefault("timezone", "UTC")
        return seed_product(self.db.session_factory, product_id, product_type=ProductType.BOOKING,
                            title="Coaching", price=5000, **fields)

    def booking(self, start, minutes=30, product_id="coach-1", email="buyer@example.com"):
        return Booking(product_id=product_id, creator_id="creator-1", order_id="order-x",
                       buyer_email=email, buyer_name="Buyer", slot_start=start,
                       slot_end=start + timedelta(minutes=minutes))

class TestAvailableSlots(BookingTestCase):

    def test_monday_window_yields_two_slots(self):
        """One 09:00-10:00 window with 30 minute sessions gives 09:00 and 09:30"""
        self.coaching()
        slots = self.bookings.get_available_slots("coach-1", MONDAY)
        self.assertEqual(slots, [utc(2030, 1, 7, 9, 0), utc(2030, 1, 7, 9, 30)])

    def test_other_weekday_has_no_slots(self):
        self.coaching()
        self.assertEqual(self.bookings.get_available_slots("coach-1", "2030-01-08"), [])

    def test_partial_slot_at_window_end_is_dropped(self):
        self.coaching(duration_minutes=40)
        slots = self.bookings.get_available_slots("coach-1", MONDAY)
        self.assertEqual(slots, [utc(2030, 1, 7, 9, 0)])

    def test_non_positive_duration_uses_default(self):
        for minutes in (-30, 0):
            with self.subTest(duration_minutes=minutes):
                self.coaching(f"coach-{minutes}", duration_minutes=minutes)
                slots = self.bookings.get_available_slots(f"coach-{minutes}", MONDAY)
                self.assertEqual(slots, [utc(2030, 1, 7, 9, 0), utc(2030, 1, 7, 9, 30)])

    def test_product_timezone_is_applied(self):
        self.coaching(timezone="Asia/Kolkata")
        slots = self.bookings.get_available_slots("coach-1", MONDAY)
        self.assertEqual(slots, [utc(2030, 1, 7, 3, 30), utc(2030, 1, 7, 4, 0)])

    def test_invalid_timezone_falls_back_to_utc(self):
        self.coaching(timezone="Mars/Olympus_Mons")
        with self.assertLogs("settlement_service.booking_service", level="WARNING"):
            slots = self.bookings.get_available_slots("coach-1", MONDAY)
        self.assertEqual(slots, [utc(2030, 1, 7, 9, 0), utc(2030, 1, 7, 9, 30)])

    def test_booked_slot_is_hidden(self):
        self.coaching()
        self.bookings.create_booking(self.booking(utc(2030, 1, 7, 9, 0)))
        self.assertEqual(self.bookings.get_available_slots("coach-1", MONDAY), [utc(2030, 1, 7, 9, 30)])

    def test_cancelled_booking_frees_slot(self):
        self.coaching()
        booking = self.bookings.create_booking(self.booking(utc(2030, 1, 7, 9, 0)))
        self.bookings.cancel_booking(booking.id, "buyer@example.com")
        self.assertEqual(len(self.bookings.get_available_slots("coach-1", MONDAY)), 2)

    def test_past_slots_are_hidden(self):
        self.coaching()
        self.clock.now = utc(2030, 1, 7, 9, 15)
        self.assertEqual(self.bookings.get_available_slots("coach-1", MONDAY), [utc(2030, 1, 7, 9, 30)])

    def test_overlapping_windows_are_not_deduplicated(self):
        self.coaching(availability=MONDAY_WINDOW + [{"day_of_week": 1, "start_time": "09:30", "end_time": "10:30"}])
        slots = self.bookings.get_available_slots("coach-1", MONDAY)
        self.assertEqual(slots, [utc(2030, 1, 7, 9, 0), utc(2030, 1, 7, 9, 30),
                                 utc(2030, 1, 7, 9, 30), utc(2030, 1, 7, 10, 0)])

    def test_invalid_window_is_skipped(self):
        self.coaching(availability=[{"day_of_week": 1, "start_time": "9am", "end_time": "10:00"}] + MONDAY_WINDOW)
        self.assertEqual(len(self.bookings.get_available_slots("coach-1", MONDAY)), 2)

    def test_no_availability(self):
        self.coaching(availability=[])
        self.assertEqual(self.bookings.get_available_slots("coach-1", MONDAY), [])

    def test_errors(self):
        self.coaching()
        seed_product(self.db.session_factory, "ebook-1", product_type=ProductType.DOWNLOAD)
        cases = [
            ("missing", MONDAY, ErrorCodes.NOT_FOUND),
            ("ebook-1", MONDAY, ErrorCodes.INVALID_PRODUCT_TYPE),
            ("coach-1", "07/01/2030", ErrorCodes.VALIDATION_ERROR),
        ]
        for product_id, date, code in cases:
            with self.assertRaises(BusinessLogicError) as ctx:
                self.bookings.get_available_slots(product_id, date)
            self.assertEqual(ctx.exception.code, code)

class TestCreateBooking(BookingTestCase):

    def test_confirmed_with_placeholder_link(self):
        self.coaching()
        booking = self.bookings.create_booking(self.booking(utc(2030, 1, 7, 9, 0)))
        self.assertEqual(booking.status, BookingStatus.CONFIRMED)
        self.assertEqual(booking.meeting_link, f"https://meet.google.com/placeholder-{booking.id[:6]}")

    def test_overlap_is_rejected(self):
        self.coaching()
        self.bookings.create_booking(self.booking(utc(2030, 1, 7, 9, 0), minutes=60))
        with self.assertRaises(BusinessLogicError) as ctx:
            self.bookings.create_booking(self.booking(utc(2030, 1, 7, 9, 30)))
        self.assertEqual(ctx.exception.code, ErrorCodes.SLOT_UNAVAILABLE)

    def test_adjacent_slots_do_not_overlap(self):
        self.coaching()
        self.bookings.create_booking(self.booking(utc(2030, 1, 7, 9, 0)))
        self.bookings.create_booking(self.booking(utc(2030, 1, 7, 9, 30)))
        self.assertEqual(len(self.bookings.list_creator_bookings("creator-1")), 2)

    def test_concurrent_bookings_for_same_slot(self):
        """Two settlements racing for one slot confirm exactly one booking"""
        self.coaching()
        barrier = threading.Barrier(2)
        outcomes = []

        def attempt(email):
            barrier.wait()
            try:
                self.bookings.create_booking(self.booking(utc(2030, 1, 7, 9, 0), email=email))
                outcomes.append("ok")
            except BusinessLogicError as e:
                outcomes.append(e.code)

        threads = [threading.Thread(target=attempt, args=(f"b{i}@example.com",)) for i in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(sorted(outcomes), sorted(["ok", ErrorCodes.SLOT_UNAVAILABLE]))
        confirmed = [b for b in self.bookings.list_creator_bookings("creator-1") if b.status == BookingStatus.CONFIRMED]
        self.assertEqual(len(confirmed), 1)

class TestCancelBooking(BookingTestCase):

    def setUp(self):
        super().setUp()
        self.coaching()
        self.existing = self.bookings.create_booking(self.booking(utc(2030, 1, 7, 9, 0)))

    def test_buyer_cancels_inside_window(self):
        self.bookings.cancel_booking(self.existing.id, "Buyer@Example.com")
        self.assertEqual(self.bookings.list_buyer_bookings("buyer@example.com")[0].status, BookingStatus.CANCELLED)

    def test_other_buyer_is_unauthorized(self):
        with self.assertRaises(BusinessLogicError) as ctx:
            self.bookings.cancel_booking(self.existing.id, "someone@example.com")
        self.assertEqual(ctx.exception.code, ErrorCodes.UNAUTHORIZED)

    def test_buyer_blocked_after_cutoff(self):
        self.clock.now = utc(2030, 1, 7, 8, 0)
        with self.assertRaises(BusinessLogicError) as ctx:
            self.bookings.cancel_booking(self.existing.id, "buyer@example.com")
        self.assertEqual(ctx.exception.code, ErrorCodes.POLICY_VIOLATION)

    def test_creator_overrides_cutoff(self):
        self.clock.now = utc(2030, 1, 7, 8, 0)
        self.bookings.cancel_booking(self.existing.id, "", is_creator=True, creator_id="creator-1")
        self.assertEqual(self.bookings.list_creator_bookings("creator-1")[0].status, BookingStatus.CANCELLED)

    def test_other_creator_is_unauthorized(self):
        with self.assertRaises(BusinessLogicError) as ctx:
            self.bookings.cancel_booking(self.existing.id, "", is_creator=True, creator_id="creator-2")
        self.assertEqual(ctx.exception.code, ErrorCodes.UNAUTHORIZED)

    def test_custom_cancellation_window(self):
        self.coaching("coach-2", cancellation_window_hours=2)
        booking = self.bookings.create_booking(self.booking(utc(2030, 1, 7, 9, 0), product_id="coach-2"))
        self.clock.now = utc(2030, 1, 7, 6, 30)
        self.bookings.cancel_booking(booking.id, "buyer@example.com")

    def test_double_cancel_and_missing(self):
        self.bookings.cancel_booking(self.existing.id, "buyer@example.com")
        with self.assertRaises(BusinessLogicError) as ctx:
            self.bookings.cancel_booking(self.existing.id, "buyer@example.com")
        self.assertEqual(ctx.exception.code, ErrorCodes.ALREADY_CANCELLED)

        with self.assertRaises(BusinessLogicError) as ctx:
            self.bookings.cancel_booking("missing", "buyer@example.com")
        self.assertEqual(ctx.exception.code, ErrorCodes.NOT_FOUND)

if __name__ == "__main__":
    unittest.main()
