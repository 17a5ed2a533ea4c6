"""
Soft Booking Lifecycle
======================
SOFT -> CONFIRMED -> PAID, any non-cancelled state -> CANCELLED.

A soft booking holds flight seats and a hotel room until it expires. Holding
uses compare-and-decrement updates (available >= requested in the WHERE
clause) so concurrent bookings cannot oversell. Every state change is a
conditional UPDATE on the current status, and inventory is released only
for rows whose status actually changed, which makes cancel and the expiry
sweep safe to repeat or run concurrently.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Any, Optional
import logging

from db import RESERVATION_CODE_PREFIX, SOFT_BOOKING_TTL_HOURS, row_to_dict, rows_to_dicts
from pricing_engine import (
    ComponentNotFoundError,
    InvalidConfigurationError,
    Occupancy,
    cents_to_major,
    find_cached_price,
)

logger = logging.getLogger(__name__)

RELEASE_COLUMNS = """
    id, reservation_code, outbound_flight_id, return_flight_id,
    hotel_id, seats_held, rooms_held
"""

BOOKING_COLUMNS = """
    id, reservation_code, status, package_id, flight_block_id, hotel_id,
    adults, children, child_ages, total_amount, currency,
    customer_name, customer_email, expires_at, created_at,
    confirmed_at, paid_at, cancelled_at, cancel_reason
"""


# =====================================================
# EXCEPTIONS
# =====================================================

class BookingError(Exception):
    pass

class InventoryConflictError(BookingError):
    pass

class BookingStateError(BookingError):
    pass


def booking_to_json(row: Dict[str, Any]) -> Dict[str, Any]:
    def iso(value):
        return value.isoformat() if value else None

    return {
        'id': row['id'],
        'reservationCode': row['reservation_code'],
        'status': row['status'],
        'packageId': row.get('package_id'),
        'flightBlockId': row.get('flight_block_id'),
        'hotelId': row.get('hotel_id'),
        'adults': row.get('adults'),
        'children': row.get('children'),
        'childAges': row.get('child_ages') or '',
        'totalAmount': cents_to_major(row['total_amount']),
        'currency': row.get('currency') or 'EUR',
        'customerName': row.get('customer_name'),
        'customerEmail': row.get('customer_email'),
        'expiresAt': iso(row.get('expires_at')),
        'createdAt': iso(row.get('created_at')),
        'confirmedAt': iso(row.get('confirmed_at')),
        'paidAt': iso(row.get('paid_at')),
        'cancelledAt': iso(row.get('cancelled_at')),
        'cancelReason': row.get('cancel_reason'),
    }


class BookingService:

    def __init__(
        self,
        db_connection,
        pricing,
        ttl_hours: int = SOFT_BOOKING_TTL_HOURS,
        code_prefix: str = RESERVATION_CODE_PREFIX,
        clock=None
    ):
        self.db = db_connection
        self.pricing = pricing
        self.ttl = timedelta(hours=ttl_hours)
        self.code_prefix = code_prefix
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._clock()

    # -------------------------------------------------
    # READ
    # -------------------------------------------------

    def get_booking(self, reservation_code: str) -> Dict[str, Any]:
        cur = self.db.cursor()
        cur.execute(
            f"SELECT {BOOKING_COLUMNS} FROM bookings WHERE reservation_code = %s",
            (reservation_code,)
        )
        row = row_to_dict(cur, cur.fetchone())
        if not row:
            raise ComponentNotFoundError(f"Booking {reservation_code} not found")
        return row

    # -------------------------------------------------
    # CREATE (HOLD INVENTORY)
    # -------------------------------------------------

    def resolve_total(self, package, hotel_id, occupancy: Occupancy, flight_block_id: str):
        """Stored matrix price when precomputed, otherwise a live quote."""
        block = self.pricing.resolve_block(package, flight_block_id)
        if block is None:
            raise InvalidConfigurationError("Package has no bookable flight block")
        hotel = self.pricing.resolve_hotel(package, hotel_id)

        cached = find_cached_price(
            self.pricing.repo.get_package_prices(package['id']),
            hotel['id'], block.block_group_id, occupancy
        )
        if cached:
            return cached['total_price'], hotel, block

        quote, hotel, _, block = self.pricing.price_combination(
            package, hotel_id, occupancy, block.block_group_id
        )
        return quote.total_price, hotel, block

    def _hold(self, cur, table: str, column: str, row_id, amount: int) -> None:
        cur.execute(
            f"""UPDATE {table} SET {column} = {column} - %s
                WHERE id = %s AND ({column} IS NULL OR {column} >= %s)""",
            (amount, row_id, amount)
        )
        if cur.rowcount == 0:
            raise InventoryConflictError(f"Not enough {column.replace('_', ' ')} on {table[:-1]} {row_id}")

    def _next_reservation_code(self, cur) -> str:
        cur.execute("SELECT nextval('reservation_code_seq')")
        number = cur.fetchone()[0]
        return f"{self.code_prefix}-{int(number):04d}"

    def create_soft_booking(
        self,
        package_id,
        flight_block_id: str,
        hotel_id,
        occupancy: Occupancy,
        customer: Dict[str, Any],
        currency: str = 'EUR'
    ) -> Dict[str, Any]:
        package = self.pricing.load_package(package_id)
        total, hotel, block = self.resolve_total(package, hotel_id, occupancy, flight_block_id)

        seats = occupancy.total_people
        rooms = 1
        created_at = self.now()
        expires_at = created_at + self.ttl

        cur = self.db.cursor()
        try:
            self._hold(cur, 'flights', 'available_seats', block.outbound.id, seats)
            self._hold(cur, 'flights', 'available_seats', block.return_flight.id, seats)
            self._hold(cur, 'hotels', 'available_rooms', hotel['id'], rooms)

            reservation_code = self._next_reservation_code(cur)
            cur.execute(
                """INSERT INTO bookings (reservation_code, status, package_id, flight_block_id,
                   outbound_flight_id, return_flight_id, hotel_id, adults, children, child_ages,
                   seats_held, rooms_held, total_amount, currency, customer_name, customer_email,
                   expires_at, created_at)
                   VALUES (%s,'SOFT',%s,%s,%s,%s,%s,%s,%s,%s,%s,%s,%s,%s,%s,%s,%s,%s)
                   RETURNING id""",
                (reservation_code, package['id'], block.block_group_id,
                 block.outbound.id, block.return_flight.id, hotel['id'],
                 occupancy.adults, occupancy.children, occupancy.child_ages_key,
                 seats, rooms, total, currency,
                 customer.get('name'), customer.get('email'),
                 expires_at, created_at)
            )
            booking_id = cur.fetchone()[0]
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"Soft booking {reservation_code} created: package={package['id']} "
            f"block={block.block_group_id} hotel={hotel['id']} seats={seats} total={total}"
        )
        return {
            'id': booking_id,
            'reservation_code': reservation_code,
            'status': 'SOFT',
            'package_id': package['id'],
            'flight_block_id': block.block_group_id,
            'hotel_id': hotel['id'],
            'adults': occupancy.adults,
            'children': occupancy.children,
            'child_ages': occupancy.child_ages_key,
            'total_amount': total,
            'currency': currency,
            'customer_name': customer.get('name'),
            'customer_email': customer.get('email'),
            'expires_at': expires_at,
            'created_at': created_at,
        }

    # -------------------------------------------------
    # TRANSITIONS
    # -------------------------------------------------

    def _release(self, cur, booking: Dict[str, Any]) -> None:
        for flight_id in (booking['outbound_flight_id'], booking['return_flight_id']):
            if flight_id:
                cur.execute(
                    """UPDATE flights SET available_seats = LEAST(available_seats + %s, total_seats)
                       WHERE id = %s""",
                    (booking['seats_held'], flight_id)
                )
        if booking['hotel_id'] and booking['rooms_held']:
            cur.execute(
                "UPDATE hotels SET available_rooms = available_rooms + %s WHERE id = %s",
                (booking['rooms_held'], booking['hotel_id'])
            )

    def _transition_failed(self, reservation_code: str, action: str) -> BookingStateError:
        booking = self.get_booking(reservation_code)
        expires_at = booking.get('expires_at')
        if booking['status'] == 'SOFT' and expires_at and expires_at < self.now():
            return BookingStateError(f"Booking {reservation_code} has expired")
        return BookingStateError(
            f"Cannot {action} booking {reservation_code} in status {booking['status']}"
        )

    def confirm(self, reservation_code: str) -> Dict[str, Any]:
        now = self.now()
        cur = self.db.cursor()
        try:
            cur.execute(
                f"""UPDATE bookings SET status = 'CONFIRMED', confirmed_at = %s, expires_at = NULL
                    WHERE reservation_code = %s AND status = 'SOFT'
                    AND (expires_at IS NULL OR expires_at >= %s)
                    RETURNING {BOOKING_COLUMNS}""",
                (now, reservation_code, now)
            )
            row = row_to_dict(cur, cur.fetchone())
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if not row:
            raise self._transition_failed(reservation_code, 'confirm')
        logger.info(f"Booking {reservation_code} confirmed")
        return row

    def mark_paid(self, reservation_code: str) -> Dict[str, Any]:
        cur = self.db.cursor()
        try:
            cur.execute(
                f"""UPDATE bookings SET status = 'PAID', paid_at = %s
                    WHERE reservation_code = %s AND status = 'CONFIRMED'
                    RETURNING {BOOKING_COLUMNS}""",
                (self.now(), reservation_code)
            )
            row = row_to_dict(cur, cur.fetchone())
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if not row:
            raise self._transition_failed(reservation_code, 'mark as paid')
        logger.info(f"Booking {reservation_code} paid")
        return row

    def cancel(self, reservation_code: str, reason: Optional[str] = None) -> Dict[str, Any]:
        cur = self.db.cursor()
        try:
            cur.execute(
                f"""UPDATE bookings SET status = 'CANCELLED', cancelled_at = %s, cancel_reason = %s
                    WHERE reservation_code = %s AND status <> 'CANCELLED'
                    RETURNING {RELEASE_COLUMNS}""",
                (self.now(), reason, reservation_code)
            )
            released = row_to_dict(cur, cur.fetchone())
            if released:
                self._release(cur, released)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if not released:
            raise self._transition_failed(reservation_code, 'cancel')
        logger.info(f"Booking {reservation_code} cancelled, released {released['seats_held']} seat(s)")
        return self.get_booking(reservation_code)

    # -------------------------------------------------
    # EXPIRY SWEEP
    # -------------------------------------------------

    def expire_soft_bookings(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Cancel every SOFT booking past its expiry and release what it held."""
        now = now or self.now()
        cur = self.db.cursor()
        try:
            cur.execute(
                f"""UPDATE bookings
                    SET status = 'CANCELLED', cancelled_at = %s,
                        cancel_reason = 'Booking expired - payment not received in time'
                    WHERE status = 'SOFT' AND expires_at < %s
                    RETURNING {RELEASE_COLUMNS}""",
                (now, now)
            )
            expired = rows_to_dicts(cur, cur.fetchall())
            for booking in expired:
                self._release(cur, booking)
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.error("Soft booking expiry sweep failed, rolled back", exc_info=True)
            raise

        if expired:
            logger.info(f"Expired {len(expired)} soft booking(s)")
        return [
            {'id': b['id'], 'reservationCode': b['reservation_code'], 'status': 'expired'}
            for b in expired
        ]
