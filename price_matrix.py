"""
Package Price Matrix
====================
Builds the precomputed (flight block x hotel x occupancy) price matrix of a
package and answers live quotes with the same pricing path.

Customer-facing search and package pages read the stored matrix; the live
quote is used only for occupancies the matrix does not enumerate and for the
admin preview calculator.
"""

from datetime import date, timedelta
from typing import Dict, List, Any, Optional, Sequence, Tuple
import logging

from pricing_engine import (
    STANDARD_OCCUPANCIES,
    ComponentNotFoundError,
    FlightBlock,
    InvalidConfigurationError,
    Occupancy,
    PriceQuote,
    RateMissingError,
    calculate_package_price,
    cents_to_major,
    find_cached_price,
    format_display_price,
    nights_between,
    select_rate_row,
    stay_window,
)

logger = logging.getLogger(__name__)

SEARCH_WINDOW_DAYS = 3


def hotel_ids_for(package: Dict[str, Any]) -> List[Any]:
    hotel_ids = package.get('hotel_ids') or []
    if not hotel_ids and package.get('hotel_id'):
        hotel_ids = [package['hotel_id']]
    return list(hotel_ids)


def price_row_to_json(row: Dict[str, Any]) -> Dict[str, Any]:
    """Stored price row (cents) -> API representation (major units)."""
    return {
        'packageId': row['package_id'],
        'adults': row['adults'],
        'children': row['children'],
        'childAges': row.get('child_ages') or '',
        'flightPrice': cents_to_major(row['flight_price']),
        'hotelPrice': cents_to_major(row['hotel_price']),
        'transferPrice': cents_to_major(row['transfer_price']),
        'totalPrice': cents_to_major(row['total_price']),
        'displayPrice': format_display_price(row['total_price']),
        'hotelId': row.get('hotel_id'),
        'hotelName': row['hotel_name'],
        'hotelBoard': row.get('hotel_board') or '',
        'roomType': row.get('room_type') or '',
        'flightBlockId': row['flight_block_id'],
        'nights': row['nights'],
    }


def stay_nights(block: FlightBlock) -> Optional[int]:
    """Nights of a block's stay, or None when its flight times are inconsistent."""
    check_in, check_out = stay_window(block)
    try:
        return nights_between(check_in, check_out)
    except InvalidConfigurationError as e:
        logger.warning(f"Flight block {block.block_group_id} has no valid stay: {e}")
        return None


def flight_to_json(flight) -> Dict[str, Any]:
    return {
        'id': flight.id,
        'flightNumber': flight.flight_number,
        'departureTime': flight.departure_time.isoformat(),
        'arrivalTime': flight.arrival_time.isoformat(),
        'pricePerSeat': cents_to_major(flight.price_per_seat),
        'availableSeats': flight.available_seats,
        'totalSeats': flight.total_seats,
    }


def block_summary(block: FlightBlock) -> Dict[str, Any]:
    return {
        'blockGroupId': block.block_group_id,
        'nights': stay_nights(block),
        'flightPrice': cents_to_major(block.round_trip_fare),
        'availableSeats': block.available_seats,
        'outbound': flight_to_json(block.outbound),
        'return': flight_to_json(block.return_flight),
    }


class PriceMatrixBuilder:
    """
    Computes and persists a package's price matrix.

    The repository must provide get_package, get_flight_blocks, get_flight_pair,
    get_hotels, get_rate_rows, get_transfer_price, get_package_prices and
    replace_package_prices (see repository.PackageRepository).
    """

    def __init__(self, repository, occupancies: Sequence[Occupancy] = STANDARD_OCCUPANCIES):
        self.repo = repository
        self.occupancies = tuple(occupancies)

    # -------------------------------------------------
    # INPUTS
    # -------------------------------------------------

    def load_package(self, package_id) -> Dict[str, Any]:
        package = self.repo.get_package(package_id)
        if not package:
            raise ComponentNotFoundError(f"Package {package_id} not found")
        return package

    def flight_blocks_for(self, package: Dict[str, Any]) -> List[FlightBlock]:
        """Listed block groups, else the package's default flight pair."""
        blocks = self.repo.get_flight_blocks(package.get('flight_block_ids') or [])
        if blocks:
            return blocks

        pair = self.repo.get_flight_pair(
            package.get('departure_flight_id'), package.get('return_flight_id')
        )
        return [pair] if pair else []

    def _transfer_price(self, package: Dict[str, Any]) -> Optional[int]:
        if not package.get('includes_transfer'):
            return None
        return self.repo.get_transfer_price(package.get('transfer_id'))

    def _price(
        self,
        package: Dict[str, Any],
        block: Optional[FlightBlock],
        rate,
        occupancy: Occupancy,
        nights: int,
        transfer_price: Optional[int]
    ) -> PriceQuote:
        return calculate_package_price(
            occupancy=occupancy,
            rate=rate,
            block=block,
            nights=nights,
            service_charge=package.get('service_charge') or 0,
            profit_margin=package.get('profit_margin'),
            includes_transfer=bool(package.get('includes_transfer')),
            transfer_price=transfer_price,
        )

    # -------------------------------------------------
    # MATRIX
    # -------------------------------------------------

    def compute_rows(self, package: Dict[str, Any]) -> Tuple[List[Dict[str, Any]], List[FlightBlock]]:
        blocks = self.flight_blocks_for(package)
        hotel_ids = hotel_ids_for(package)
        hotels = self.repo.get_hotels(hotel_ids)
        rates = self.repo.get_rate_rows(hotel_ids)
        transfer_price = self._transfer_price(package)

        rows: List[Dict[str, Any]] = []
        priced_blocks: List[FlightBlock] = []

        for block in blocks:
            nights = stay_nights(block)
            if nights is None:
                logger.warning(f"Package {package['id']}: block {block.block_group_id} skipped")
                continue
            check_in, check_out = stay_window(block)
            priced_blocks.append(block)

            for hotel in hotels:
                rate = select_rate_row(rates.get(hotel['id'], []), check_in, check_out)
                if rate is None:
                    logger.warning(
                        f"Package {package['id']}: no rate for hotel {hotel['name']} "
                        f"({check_in.date()}..{check_out.date()}), skipped"
                    )
                    continue

                for occupancy in self.occupancies:
                    quote = self._price(package, block, rate, occupancy, nights, transfer_price)
                    rows.append({
                        'package_id': package['id'],
                        'adults': occupancy.adults,
                        'children': occupancy.children,
                        'child_ages': occupancy.child_ages_key,
                        'flight_price': quote.flight_price,
                        'hotel_price': quote.hotel_price,
                        'transfer_price': quote.transfer_price,
                        'total_price': quote.total_price,
                        'hotel_id': hotel['id'],
                        'hotel_name': hotel['name'],
                        'hotel_board': rate.board,
                        'room_type': quote.room_type,
                        'flight_block_id': block.block_group_id,
                        'nights': nights,
                    })

        return rows, priced_blocks

    def rebuild(self, package_id) -> Dict[str, Any]:
        """Recompute and atomically replace the stored matrix of one package."""
        package = self.load_package(package_id)
        rows, blocks = self.compute_rows(package)
        count = self.repo.replace_package_prices(package['id'], rows)

        logger.info(
            f"Package {package['id']}: calculated {count} price variations "
            f"across {len(blocks)} flight block(s)"
        )
        return {
            'message': f"Calculated {count} price variations",
            'count': count,
            'calculations': [price_row_to_json(r) for r in rows],
            'flightBlocks': [block_summary(b) for b in blocks],
        }

    # -------------------------------------------------
    # LIVE QUOTE
    # -------------------------------------------------

    def resolve_block(self, package: Dict[str, Any], flight_block_id: Optional[str] = None) -> Optional[FlightBlock]:
        """Requested block of the package (first block when none is given), None without flights."""
        blocks = self.flight_blocks_for(package)
        if not blocks:
            return None
        if not flight_block_id:
            return blocks[0]
        block = next((b for b in blocks if b.block_group_id == flight_block_id), None)
        if block is None:
            raise ComponentNotFoundError(f"Flight block {flight_block_id} not found on package")
        return block

    def resolve_hotel(self, package: Dict[str, Any], hotel_id) -> Dict[str, Any]:
        if hotel_id not in hotel_ids_for(package):
            raise ComponentNotFoundError(f"Hotel {hotel_id} is not offered by package {package['id']}")
        hotels = self.repo.get_hotels([hotel_id])
        if not hotels:
            raise ComponentNotFoundError(f"Hotel {hotel_id} not found")
        return hotels[0]

    def price_combination(
        self,
        package: Dict[str, Any],
        hotel_id,
        occupancy: Occupancy,
        flight_block_id: Optional[str] = None,
        check_in=None,
        check_out=None
    ) -> Tuple[PriceQuote, Dict[str, Any], Any, Optional[FlightBlock]]:
        """
        Price one combination without persisting it.

        Returns (quote, hotel, rate row, flight block). Without any flight
        block for the package the fallback fare applies and the caller must
        supply check_in/check_out explicitly.
        """
        block = self.resolve_block(package, flight_block_id)
        if block is not None:
            check_in, check_out = stay_window(block)
        elif check_in is None or check_out is None:
            raise InvalidConfigurationError("Package has no flight block, checkIn and checkOut are required")

        hotel = self.resolve_hotel(package, hotel_id)
        rate = select_rate_row(self.repo.get_rate_rows([hotel_id]).get(hotel_id, []), check_in, check_out)
        if rate is None:
            raise RateMissingError(f"No rate for hotel {hotel['name']} between {check_in} and {check_out}")

        nights = nights_between(check_in, check_out)
        quote = self._price(package, block, rate, occupancy, nights, self._transfer_price(package))
        return quote, hotel, rate, block

    def quote(
        self,
        package: Dict[str, Any],
        hotel_id,
        occupancy: Occupancy,
        flight_block_id: Optional[str] = None,
        check_in=None,
        check_out=None
    ) -> Dict[str, Any]:
        quote, hotel, rate, block = self.price_combination(
            package, hotel_id, occupancy, flight_block_id, check_in, check_out
        )
        result = quote.to_dict()
        result.update({
            'packageId': package['id'],
            'hotelId': hotel['id'],
            'hotelName': hotel['name'],
            'hotelBoard': rate.board,
            'flightBlockId': block.block_group_id if block else None,
            'fallbackFare': block is None,
            'adults': occupancy.adults,
            'children': occupancy.children,
            'childAges': occupancy.child_ages_key,
        })
        return result

    # -------------------------------------------------
    # SEARCH
    # -------------------------------------------------

    def cheapest_offer(
        self,
        package: Dict[str, Any],
        occupancy: Occupancy,
        travel_date: date
    ) -> Optional[Dict[str, Any]]:
        """
        Cheapest (block, hotel) offer for a search, or None when nothing fits.

        Blocks must depart within SEARCH_WINDOW_DAYS of the travel date and
        have a seat for every passenger. Stored matrix rows are used when the
        occupancy is precomputed, otherwise the combination is priced live.
        """
        window_start = travel_date - timedelta(days=SEARCH_WINDOW_DAYS)
        window_end = travel_date + timedelta(days=SEARCH_WINDOW_DAYS)

        candidates = []
        for block in self.flight_blocks_for(package):
            if not window_start <= block.outbound.departure_time.date() <= window_end:
                continue
            if block.available_seats < occupancy.total_people:
                continue
            nights = stay_nights(block)
            if nights is None:
                continue
            candidates.append((block, nights))
        if not candidates:
            return None

        cached_rows = self.repo.get_package_prices(package['id'])
        hotel_ids = hotel_ids_for(package)
        hotels = self.repo.get_hotels(hotel_ids)
        rates = None
        transfer_price = None

        offers = []
        for block, nights in candidates:
            check_in, check_out = stay_window(block)
            for hotel in hotels:
                cached = find_cached_price(cached_rows, hotel['id'], block.block_group_id, occupancy)
                if cached:
                    offers.append((cached['total_price'], price_row_to_json(cached), block))
                    continue

                if rates is None:
                    rates = self.repo.get_rate_rows(hotel_ids)
                    transfer_price = self._transfer_price(package)
                rate = select_rate_row(rates.get(hotel['id'], []), check_in, check_out)
                if rate is None:
                    continue
                quote = self._price(package, block, rate, occupancy, nights, transfer_price)
                offer = quote.to_dict()
                offer.update({
                    'hotelId': hotel['id'],
                    'hotelName': hotel['name'],
                    'hotelBoard': rate.board,
                    'flightBlockId': block.block_group_id,
                })
                offers.append((quote.total_price, offer, block))

        if not offers:
            return None

        offers.sort(key=lambda o: (o[0], str(o[1]['hotelName']), o[1]['hotelId'], o[2].block_group_id))
        best_total, best, best_block = offers[0]
        hotel_options = {}
        for total, offer, _ in offers:
            hotel_id = offer['hotelId']
            if hotel_id not in hotel_options or total < hotel_options[hotel_id][0]:
                hotel_options[hotel_id] = (total, offer)

        return {
            'id': package['id'],
            'name': package['name'],
            'slug': package.get('slug'),
            'description': package.get('description'),
            'featured': bool(package.get('featured')),
            'nights': best['nights'],
            'flightBlock': block_summary(best_block),
            'hotels': [o for _, o in sorted(hotel_options.values(), key=lambda x: x[0])],
            'hotelPriceFrom': best['hotelPrice'],
            'flightPrice': best['flightPrice'],
            'totalPriceFrom': cents_to_major(best_total),
            'displayPriceFrom': format_display_price(best_total),
            'availableSeats': best_block.available_seats,
        }
