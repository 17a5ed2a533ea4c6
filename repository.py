"""
PostgreSQL access for packages, hotels, rate sheets, flight blocks and the
precomputed package price matrix.

Every read returns plain dicts or pricing_engine dataclasses; the only write
path for the price matrix is replace_package_prices(), which swaps the whole
matrix of one package inside a single transaction.
"""

from typing import Dict, List, Any, Optional, Sequence
import logging

from psycopg2.extras import execute_values

from db import row_to_dict, rows_to_dicts
from pricing_engine import Flight, FlightBlock, HotelRateRow, InvalidConfigurationError

logger = logging.getLogger(__name__)

PACKAGE_COLUMNS = """
    id, name, slug, description, city_id, active, featured,
    available_from, available_to, hotel_id, hotel_ids, flight_block_ids,
    departure_flight_id, return_flight_id, includes_transfer, transfer_id,
    service_charge, profit_margin
"""

FLIGHT_COLUMNS = """
    id, flight_number, block_group_id, departure_time, arrival_time,
    price_per_seat, available_seats, total_seats
"""

RATE_COLUMNS = """
    id, hotel_id, valid_from, valid_to, single_rate, double_rate, extra_bed_rate,
    paying_child_min_age, paying_child_max_age, child_rate, board
"""

PRICE_ROW_FIELDS = (
    'package_id', 'adults', 'children', 'child_ages',
    'flight_price', 'hotel_price', 'transfer_price', 'total_price',
    'hotel_id', 'hotel_name', 'hotel_board', 'room_type',
    'flight_block_id', 'nights',
)


def _flight_from_row(row: Dict[str, Any]) -> Flight:
    return Flight(
        id=row['id'],
        flight_number=row['flight_number'],
        departure_time=row['departure_time'],
        arrival_time=row['arrival_time'],
        price_per_seat=int(row['price_per_seat']),
        available_seats=int(row['available_seats']),
        total_seats=int(row['total_seats']),
    )


def _rate_from_row(row: Dict[str, Any]) -> HotelRateRow:
    return HotelRateRow(
        id=row['id'],
        hotel_id=row['hotel_id'],
        valid_from=row['valid_from'],
        valid_to=row['valid_to'],
        single_rate=int(row['single_rate']),
        double_rate=int(row['double_rate']),
        extra_bed_rate=int(row['extra_bed_rate']),
        paying_child_min_age=int(row['paying_child_min_age']),
        paying_child_max_age=int(row['paying_child_max_age']),
        child_rate=int(row['child_rate']),
        board=row['board'] or '',
    )


def build_flight_block(block_group_id: str, flights: Sequence[Flight]) -> Optional[FlightBlock]:
    """First departure is the outbound leg, last departure the return leg."""
    if len(flights) < 2:
        return None
    ordered = sorted(flights, key=lambda f: f.departure_time)
    return FlightBlock(block_group_id=block_group_id, outbound=ordered[0], return_flight=ordered[-1])


class PackageRepository:

    def __init__(self, db_connection):
        self.db = db_connection

    # -------------------------------------------------
    # PACKAGES
    # -------------------------------------------------

    def get_package(self, package_id: int) -> Optional[Dict[str, Any]]:
        cur = self.db.cursor()
        cur.execute(f"SELECT {PACKAGE_COLUMNS} FROM packages WHERE id = %s", (package_id,))
        return row_to_dict(cur, cur.fetchone())

    def get_package_by_slug(self, slug: str) -> Optional[Dict[str, Any]]:
        cur = self.db.cursor()
        cur.execute(
            f"SELECT {PACKAGE_COLUMNS} FROM packages WHERE slug = %s AND active = TRUE",
            (slug,)
        )
        return row_to_dict(cur, cur.fetchone())

    def find_packages_for_city(self, city_id: int, on_date) -> List[Dict[str, Any]]:
        cur = self.db.cursor()
        cur.execute(
            f"""SELECT {PACKAGE_COLUMNS} FROM packages
                WHERE city_id = %s AND active = TRUE
                AND available_from <= %s AND available_to >= %s
                ORDER BY id""",
            (city_id, on_date, on_date)
        )
        return rows_to_dicts(cur, cur.fetchall())

    def list_active_package_ids(self) -> List[int]:
        cur = self.db.cursor()
        cur.execute("SELECT id FROM packages WHERE active = TRUE ORDER BY id")
        return [r[0] for r in cur.fetchall()]

    # -------------------------------------------------
    # FLIGHTS
    # -------------------------------------------------

    def get_flight_blocks(self, block_group_ids: Sequence[str]) -> List[FlightBlock]:
        if not block_group_ids:
            return []
        cur = self.db.cursor()
        cur.execute(
            f"""SELECT {FLIGHT_COLUMNS} FROM flights
                WHERE block_group_id = ANY(%s)
                ORDER BY departure_time ASC""",
            (list(block_group_ids),)
        )
        grouped: Dict[str, List[Flight]] = {}
        for row in rows_to_dicts(cur, cur.fetchall()):
            grouped.setdefault(row['block_group_id'], []).append(_flight_from_row(row))

        blocks = []
        for block_group_id in block_group_ids:
            block = build_flight_block(block_group_id, grouped.get(block_group_id, []))
            if block is None:
                logger.warning(f"Flight block {block_group_id} has fewer than 2 flights, skipped")
                continue
            blocks.append(block)
        return blocks

    def get_flight_pair(self, departure_flight_id, return_flight_id) -> Optional[FlightBlock]:
        if not departure_flight_id or not return_flight_id:
            return None
        cur = self.db.cursor()
        cur.execute(
            f"SELECT {FLIGHT_COLUMNS} FROM flights WHERE id IN (%s, %s)",
            (departure_flight_id, return_flight_id)
        )
        by_id = {r['id']: _flight_from_row(r) for r in rows_to_dicts(cur, cur.fetchall())}
        if departure_flight_id not in by_id or return_flight_id not in by_id:
            return None
        return FlightBlock(
            block_group_id='default',
            outbound=by_id[departure_flight_id],
            return_flight=by_id[return_flight_id],
        )

    def list_flight_blocks(self) -> List[FlightBlock]:
        cur = self.db.cursor()
        cur.execute(
            """SELECT block_group_id FROM flights
               WHERE block_group_id IS NOT NULL AND is_block_seat = TRUE
               GROUP BY block_group_id
               ORDER BY MIN(departure_time) ASC"""
        )
        return self.get_flight_blocks([r[0] for r in cur.fetchall()])

    def create_flight_block(
        self,
        block_group_id: str,
        outbound: Dict[str, Any],
        return_leg: Dict[str, Any]
    ) -> List[int]:
        """Insert the outbound and return legs of a block with every seat available."""
        cur = self.db.cursor()
        try:
            flight_ids = []
            for leg in (outbound, return_leg):
                cur.execute(
                    """INSERT INTO flights (flight_number, block_group_id, departure_time,
                       arrival_time, price_per_seat, total_seats, available_seats, is_block_seat)
                       VALUES (%s,%s,%s,%s,%s,%s,%s,TRUE) RETURNING id""",
                    (leg['flight_number'], block_group_id, leg['departure_time'],
                     leg['arrival_time'], leg['price_per_seat'],
                     leg['total_seats'], leg['total_seats'])
                )
                flight_ids.append(cur.fetchone()[0])
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Created flight block {block_group_id} with flights {flight_ids}")
        return flight_ids

    def update_flight(self, block_group_id: str, flight_id: int, values: Dict[str, Any]) -> bool:
        """
        Update one leg of a block. Seats already sold stay sold: the new
        available count is the new total minus the booked seats, and a total
        below the booked seats is refused.
        """
        cur = self.db.cursor()
        try:
            cur.execute(
                """SELECT total_seats, available_seats FROM flights
                   WHERE id = %s AND block_group_id = %s FOR UPDATE""",
                (flight_id, block_group_id)
            )
            row = cur.fetchone()
            if not row:
                self.db.rollback()
                return False

            booked = int(row[0]) - int(row[1])
            total_seats = values.get('total_seats', int(row[0]))
            if total_seats < booked:
                raise InvalidConfigurationError(
                    f"Cannot set total seats to {total_seats}, {booked} seats are already booked"
                )

            changes = {k: v for k, v in values.items()
                       if k in ('flight_number', 'departure_time', 'arrival_time', 'price_per_seat')}
            changes['total_seats'] = total_seats
            changes['available_seats'] = total_seats - booked
            assignments = ', '.join(f"{column} = %s" for column in changes)
            cur.execute(
                f"UPDATE flights SET {assignments} WHERE id = %s",
                (*changes.values(), flight_id)
            )
            self.db.commit()
            return True
        except Exception:
            self.db.rollback()
            raise

    def delete_flight_block(self, block_group_id: str) -> bool:
        cur = self.db.cursor()
        try:
            cur.execute(
                """SELECT COUNT(*) FROM bookings b
                   JOIN flights f ON f.id IN (b.outbound_flight_id, b.return_flight_id)
                   WHERE f.block_group_id = %s AND b.status <> 'CANCELLED'""",
                (block_group_id,)
            )
            if cur.fetchone()[0] > 0:
                raise InvalidConfigurationError(
                    f"Cannot delete flight block {block_group_id} with existing bookings"
                )
            cur.execute(
                "DELETE FROM flights WHERE block_group_id = %s AND is_block_seat = TRUE",
                (block_group_id,)
            )
            deleted = cur.rowcount > 0
            self.db.commit()
            return deleted
        except Exception:
            self.db.rollback()
            raise

    # -------------------------------------------------
    # HOTELS / RATE SHEETS
    # -------------------------------------------------

    def get_hotel(self, hotel_id: int) -> Optional[Dict[str, Any]]:
        cur = self.db.cursor()
        cur.execute(
            "SELECT id, name, slug, active, available_rooms FROM hotels WHERE id = %s",
            (hotel_id,)
        )
        return row_to_dict(cur, cur.fetchone())

    def get_hotels(self, hotel_ids: Sequence[int]) -> List[Dict[str, Any]]:
        if not hotel_ids:
            return []
        cur = self.db.cursor()
        cur.execute(
            """SELECT id, name, slug, active, available_rooms FROM hotels
               WHERE id = ANY(%s) ORDER BY name, id""",
            (list(hotel_ids),)
        )
        return rows_to_dicts(cur, cur.fetchall())

    def get_rate_rows(self, hotel_ids: Sequence[int]) -> Dict[Any, List[HotelRateRow]]:
        rates: Dict[Any, List[HotelRateRow]] = {hid: [] for hid in hotel_ids}
        if not hotel_ids:
            return rates
        cur = self.db.cursor()
        cur.execute(
            f"SELECT {RATE_COLUMNS} FROM hotel_prices WHERE hotel_id = ANY(%s) ORDER BY id",
            (list(hotel_ids),)
        )
        for row in rows_to_dicts(cur, cur.fetchall()):
            rates.setdefault(row['hotel_id'], []).append(_rate_from_row(row))
        return rates

    def list_rate_rows(self, hotel_id: int) -> List[HotelRateRow]:
        return self.get_rate_rows([hotel_id]).get(hotel_id, [])

    def create_rate_row(self, hotel_id: int, values: Dict[str, Any]) -> int:
        cur = self.db.cursor()
        try:
            cur.execute(
                """INSERT INTO hotel_prices (hotel_id, valid_from, valid_to, single_rate,
                   double_rate, extra_bed_rate, paying_child_min_age, paying_child_max_age,
                   child_rate, board)
                   VALUES (%s,%s,%s,%s,%s,%s,%s,%s,%s,%s) RETURNING id""",
                (hotel_id, values['valid_from'], values['valid_to'], values['single_rate'],
                 values['double_rate'], values['extra_bed_rate'],
                 values['paying_child_min_age'], values['paying_child_max_age'],
                 values['child_rate'], values.get('board', ''))
            )
            rate_id = cur.fetchone()[0]
            self.db.commit()
            return rate_id
        except Exception:
            self.db.rollback()
            raise

    def delete_rate_row(self, hotel_id: int, rate_id: int) -> bool:
        cur = self.db.cursor()
        try:
            cur.execute(
                "DELETE FROM hotel_prices WHERE id = %s AND hotel_id = %s",
                (rate_id, hotel_id)
            )
            deleted = cur.rowcount > 0
            self.db.commit()
            return deleted
        except Exception:
            self.db.rollback()
            raise

    def replace_rate_rows(self, hotel_id: int, rows: Sequence[Dict[str, Any]]) -> int:
        """Swap a hotel's whole rate sheet for an imported one in one transaction."""
        cur = self.db.cursor()
        try:
            cur.execute("DELETE FROM hotel_prices WHERE hotel_id = %s", (hotel_id,))
            if rows:
                execute_values(
                    cur,
                    """INSERT INTO hotel_prices (hotel_id, valid_from, valid_to, single_rate,
                       double_rate, extra_bed_rate, paying_child_min_age, paying_child_max_age,
                       child_rate, board) VALUES %s""",
                    [(hotel_id, r['valid_from'], r['valid_to'], r['single_rate'],
                      r['double_rate'], r['extra_bed_rate'], r['paying_child_min_age'],
                      r['paying_child_max_age'], r['child_rate'], r.get('board', ''))
                     for r in rows]
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.error(f"Rate sheet import failed for hotel {hotel_id}, rolled back", exc_info=True)
            raise

        logger.info(f"Hotel {hotel_id}: imported {len(rows)} rate rows")
        return len(rows)

    # -------------------------------------------------
    # TRANSFERS
    # -------------------------------------------------

    def get_transfer_price(self, transfer_id) -> Optional[int]:
        if not transfer_id:
            return None
        cur = self.db.cursor()
        cur.execute("SELECT price FROM transfers WHERE id = %s", (transfer_id,))
        row = cur.fetchone()
        return int(row[0]) if row else None

    # -------------------------------------------------
    # PRICE MATRIX
    # -------------------------------------------------

    def get_package_prices(self, package_id: int) -> List[Dict[str, Any]]:
        cur = self.db.cursor()
        cur.execute(
            f"""SELECT {', '.join(PRICE_ROW_FIELDS)} FROM package_prices
                WHERE package_id = %s
                ORDER BY hotel_name ASC, adults ASC, children ASC, child_ages ASC, flight_block_id ASC""",
            (package_id,)
        )
        return rows_to_dicts(cur, cur.fetchall())

    def replace_package_prices(self, package_id: int, rows: Sequence[Dict[str, Any]]) -> int:
        """Delete and re-insert a package's matrix in one transaction."""
        cur = self.db.cursor()
        try:
            cur.execute("DELETE FROM package_prices WHERE package_id = %s", (package_id,))
            deleted = cur.rowcount
            if rows:
                execute_values(
                    cur,
                    f"INSERT INTO package_prices ({', '.join(PRICE_ROW_FIELDS)}) VALUES %s",
                    [tuple(row[f] for f in PRICE_ROW_FIELDS) for row in rows]
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.error(f"Price matrix replace failed for package {package_id}, rolled back", exc_info=True)
            raise

        logger.info(f"Package {package_id}: replaced {deleted} price rows with {len(rows)}")
        return len(rows)
