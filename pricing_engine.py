"""
Dynamic Package Pricing Engine
==============================
Core calculation logic for flight + hotel packages:
  - Rate table lookup (seasonal hotel rate rows)
  - Occupancy-based hotel cost (single/double/triple + child age bands)
  - Flight block cost (round-trip fare, infant/child rules)
  - Package aggregation (transfer, service charge, profit margin)
  - Display price rounding and cached price lookup

This is the SINGLE SOURCE OF TRUTH for all package price computation.
Routes, maintenance scripts and the preview calculator MUST call this module,
never re-derive prices themselves.

All amounts inside the engine are integer minor units (cents). Conversion to
major units happens only at the API boundary via cents_to_major().
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Any, Optional, Sequence, Tuple
import math
import logging

logger = logging.getLogger(__name__)

DEFAULT_PROFIT_MARGIN = Decimal('20')

# Legacy flat round-trip fare, used only when no flight block is available.
FALLBACK_FARE_CENTS = 12000

INFANT_MAX_AGE = 1
CHILD_FARE_MAX_AGE = 11


# =====================================================
# EXCEPTIONS
# =====================================================

class PricingEngineError(Exception):
    """Base exception for pricing engine errors"""
    pass

class ComponentNotFoundError(PricingEngineError):
    pass

class RateMissingError(PricingEngineError):
    pass

class InvalidConfigurationError(PricingEngineError):
    pass

class UnsupportedOccupancyError(InvalidConfigurationError):
    pass


class ValidationError(InvalidConfigurationError):
    """Malformed request payload, carries per-field messages."""

    def __init__(self, field_errors: Dict[str, List[str]]):
        self.field_errors = field_errors
        fields = ', '.join(sorted(field_errors))
        super().__init__(f"Invalid input: {fields}")


# =====================================================
# MONEY HELPERS
# =====================================================

def cents_to_major(cents: Optional[int]) -> float:
    """Minor units -> major units for JSON responses."""
    if cents is None:
        return 0.0
    return float((Decimal(int(cents)) / 100).quantize(Decimal('0.01'), ROUND_HALF_UP))


def major_to_cents(amount: Any) -> int:
    """Major units (admin input, e.g. 160 or "89.50") -> minor units."""
    try:
        value = Decimal(str(amount))
    except Exception:
        raise InvalidConfigurationError(f"Not a valid amount: {amount!r}")
    if value < 0:
        raise InvalidConfigurationError(f"Amount must not be negative: {amount!r}")
    return int((value * 100).quantize(Decimal('1'), ROUND_HALF_UP))


def percent_of(amount_cents: int, percent: Decimal) -> int:
    return int((Decimal(amount_cents) * percent / 100).quantize(Decimal('1'), ROUND_HALF_UP))


def parse_age_range(text: str) -> Tuple[int, int]:
    """Parse a paying-children age range such as "7-11"."""
    if not text or '-' not in str(text):
        raise InvalidConfigurationError(f"Invalid age range: {text!r}")
    low, _, high = str(text).partition('-')
    try:
        min_age, max_age = int(low.strip()), int(high.strip())
    except ValueError:
        raise InvalidConfigurationError(f"Invalid age range: {text!r}")
    if min_age < 0 or max_age < min_age:
        raise InvalidConfigurationError(f"Invalid age range: {text!r}")
    return min_age, max_age


# =====================================================
# DATA MODEL
# =====================================================

@dataclass(frozen=True)
class HotelRateRow:
    id: Any
    hotel_id: Any
    valid_from: date
    valid_to: date
    single_rate: int
    double_rate: int
    extra_bed_rate: int
    paying_child_min_age: int
    paying_child_max_age: int
    child_rate: int
    board: str = ''

    @property
    def window_days(self) -> int:
        return (self.valid_to - self.valid_from).days


@dataclass(frozen=True)
class Flight:
    id: Any
    flight_number: str
    departure_time: datetime
    arrival_time: datetime
    price_per_seat: int
    available_seats: int = 0
    total_seats: int = 0


@dataclass(frozen=True)
class FlightBlock:
    block_group_id: str
    outbound: Flight
    return_flight: Flight

    @property
    def round_trip_fare(self) -> int:
        return self.outbound.price_per_seat + self.return_flight.price_per_seat

    @property
    def available_seats(self) -> int:
        return min(self.outbound.available_seats, self.return_flight.available_seats)


@dataclass(frozen=True)
class Occupancy:
    adults: int
    children: int = 0
    child_ages: Tuple[int, ...] = ()

    @property
    def total_people(self) -> int:
        return self.adults + self.children

    @property
    def child_ages_key(self) -> str:
        return ','.join(str(a) for a in self.child_ages)

    @classmethod
    def build(cls, adults: Any, children: Any = 0, child_ages: Any = None) -> 'Occupancy':
        """Validate raw request values and build an Occupancy."""
        errors: Dict[str, List[str]] = {}

        try:
            adults = int(adults)
            if adults < 1:
                errors['adults'] = ['At least 1 adult required']
        except (TypeError, ValueError):
            errors['adults'] = ['Must be an integer']

        try:
            children = int(children or 0)
            if children < 0:
                errors['children'] = ['Must not be negative']
        except (TypeError, ValueError):
            errors['children'] = ['Must be an integer']

        ages: List[int] = []
        if isinstance(child_ages, str):
            child_ages = [a for a in child_ages.split(',') if a.strip()]
        try:
            ages = [int(a) for a in (child_ages or [])]
            if any(a < 0 or a > 17 for a in ages):
                errors['childAges'] = ['Child ages must be between 0 and 17']
        except (TypeError, ValueError):
            errors['childAges'] = ['Child ages must be integers']

        if not errors and len(ages) != children:
            errors['childAges'] = [f"Expected {children} child age(s), got {len(ages)}"]

        if errors:
            raise ValidationError(errors)
        return cls(adults=adults, children=children, child_ages=tuple(ages))


# Fixed enumeration persisted in every package price matrix.
STANDARD_OCCUPANCIES: Tuple[Occupancy, ...] = (
    Occupancy(1, 0, ()),
    Occupancy(1, 1, (5,)),
    Occupancy(2, 0, ()),
    Occupancy(2, 1, (5,)),
    Occupancy(2, 2, (5, 10)),
    Occupancy(3, 0, ()),
)


@dataclass
class PriceQuote:
    flight_price: int
    hotel_price: int
    transfer_price: int
    service_charge: int
    subtotal: int
    profit_amount: int
    total_price: int
    nights: int
    room_type: str = ''
    breakdown: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'flightPrice': cents_to_major(self.flight_price),
            'hotelPrice': cents_to_major(self.hotel_price),
            'transferPrice': cents_to_major(self.transfer_price),
            'serviceCharge': cents_to_major(self.service_charge),
            'subtotal': cents_to_major(self.subtotal),
            'profitAmount': cents_to_major(self.profit_amount),
            'totalPrice': cents_to_major(self.total_price),
            'displayPrice': format_display_price(self.total_price),
            'nights': self.nights,
            'roomType': self.room_type,
        }


# =====================================================
# STAY WINDOW
# =====================================================

def nights_between(check_in: datetime, check_out: datetime) -> int:
    """Whole nights between check-in and check-out, partial days round up."""
    seconds = (check_out - check_in).total_seconds()
    nights = math.ceil(seconds / timedelta(days=1).total_seconds())
    if nights <= 0:
        raise InvalidConfigurationError(
            f"Check-out {check_out.isoformat()} is not after check-in {check_in.isoformat()}"
        )
    return nights


def stay_window(block: FlightBlock) -> Tuple[datetime, datetime]:
    """Check-in is the outbound arrival, check-out the return departure."""
    return block.outbound.arrival_time, block.return_flight.departure_time


def _as_date(value: Any) -> date:
    return value.date() if isinstance(value, datetime) else value


# =====================================================
# RATE TABLE LOOKUP
# =====================================================

def select_rate_row(
    rows: Sequence[HotelRateRow],
    check_in: Any,
    check_out: Any
) -> Optional[HotelRateRow]:
    """
    Pick the rate row covering the whole stay.

    A row qualifies when valid_from <= check_in and valid_to >= check_out.
    When several qualify the narrowest validity window wins, then the latest
    valid_from, then the lowest id. Returns None when nothing qualifies.
    """
    check_in_day = _as_date(check_in)
    check_out_day = _as_date(check_out)

    candidates = [
        r for r in rows
        if r.valid_from <= check_in_day and r.valid_to >= check_out_day
    ]
    if not candidates:
        return None

    candidates.sort(key=lambda r: (r.window_days, -r.valid_from.toordinal(), r.id))
    if len(candidates) > 1:
        logger.info(
            f"Rate lookup: {len(candidates)} rows cover {check_in_day}..{check_out_day} "
            f"for hotel {candidates[0].hotel_id}, using row {candidates[0].id}"
        )
    return candidates[0]


# =====================================================
# OCCUPANCY PRICER
# =====================================================

class OccupancyPricer:
    """Hotel cost for one stay, from a single rate row."""

    ROOM_TYPES = {1: 'Single', 2: 'Double', 3: 'Triple'}

    @staticmethod
    def nightly_room_rate(rate: HotelRateRow, adults: int) -> int:
        if adults == 1:
            return rate.single_rate
        if adults == 2:
            return rate.double_rate
        if adults == 3:
            return rate.double_rate + rate.extra_bed_rate
        # TODO: confirm with product whether 4 adults means two doubles or a family room
        raise UnsupportedOccupancyError(f"Occupancy with {adults} adults is not supported")

    @staticmethod
    def child_charge(rate: HotelRateRow, age: int, nights: int) -> int:
        """Per-child charge: free below the paying band, extra bed above it."""
        if age < rate.paying_child_min_age:
            return 0
        if age <= rate.paying_child_max_age:
            return rate.child_rate * nights
        return rate.extra_bed_rate * nights

    @classmethod
    def room_type(cls, rate: HotelRateRow, adults: int) -> str:
        label = cls.ROOM_TYPES.get(adults, 'Standard')
        return f"{label} ({rate.board})" if rate.board else label

    @classmethod
    def hotel_cost(cls, rate: HotelRateRow, occupancy: Occupancy, nights: int) -> int:
        base = cls.nightly_room_rate(rate, occupancy.adults) * nights
        children = sum(cls.child_charge(rate, age, nights) for age in occupancy.child_ages)
        return base + children


# =====================================================
# FLIGHT COST CALCULATOR
# =====================================================

class FlightCostCalculator:
    """
    Flight cost for a booking on one flight block.

    Every adult pays the round-trip fare (outbound + return seat price).
    Infants (0-1) fly free, children 2-11 and older pay the full fare.
    """

    @staticmethod
    def fare_for_age(fare: int, age: int) -> int:
        if age <= INFANT_MAX_AGE:
            return 0
        return fare

    @classmethod
    def calculate(cls, block: Optional[FlightBlock], occupancy: Occupancy) -> int:
        if block is None:
            fare = FALLBACK_FARE_CENTS
            logger.warning(f"No flight block given, using fallback fare {fare} per person")
        else:
            fare = block.round_trip_fare

        total = fare * occupancy.adults
        total += sum(cls.fare_for_age(fare, age) for age in occupancy.child_ages)
        return total


# =====================================================
# PACKAGE PRICE AGGREGATOR
# =====================================================

def resolve_profit_margin(profit_margin: Any) -> Decimal:
    """None means "not configured" and gets the default; 0 is a real margin."""
    if profit_margin is None:
        return DEFAULT_PROFIT_MARGIN
    return Decimal(str(profit_margin))


def transfer_cost(includes_transfer: bool, transfer_price: Optional[int], total_people: int) -> int:
    if not includes_transfer or transfer_price is None:
        return 0
    return int(transfer_price) * total_people


def calculate_package_price(
    occupancy: Occupancy,
    rate: HotelRateRow,
    block: Optional[FlightBlock],
    nights: int,
    service_charge: int = 0,
    profit_margin: Any = None,
    includes_transfer: bool = False,
    transfer_price: Optional[int] = None,
) -> PriceQuote:
    """
    Price one (flight block x hotel rate x occupancy) combination.

        subtotal = flight + hotel + transfer + service charge
        total    = subtotal + subtotal * margin / 100
    """
    flight_price = FlightCostCalculator.calculate(block, occupancy)
    hotel_price = OccupancyPricer.hotel_cost(rate, occupancy, nights)
    transfer_price_total = transfer_cost(includes_transfer, transfer_price, occupancy.total_people)
    service = int(service_charge or 0)

    margin = resolve_profit_margin(profit_margin)
    subtotal = flight_price + hotel_price + transfer_price_total + service
    profit_amount = percent_of(subtotal, margin)

    return PriceQuote(
        flight_price=flight_price,
        hotel_price=hotel_price,
        transfer_price=transfer_price_total,
        service_charge=service,
        subtotal=subtotal,
        profit_amount=profit_amount,
        total_price=subtotal + profit_amount,
        nights=nights,
        room_type=OccupancyPricer.room_type(rate, occupancy.adults),
        breakdown={
            'profitMargin': float(margin),
            'flightFarePerPerson': cents_to_major(
                block.round_trip_fare if block else FALLBACK_FARE_CENTS
            ),
        },
    )


# =====================================================
# DISPLAY / CACHE HELPERS
# =====================================================

def format_display_price(total_cents: int) -> int:
    """Marketing price in major units: nearest amount ending in 9, at least 99."""
    rounded = int((Decimal(int(total_cents)) / 100).quantize(Decimal('1'), ROUND_HALF_UP))
    last_digit = rounded % 10

    if last_digit == 9:
        adjustment = 0
    elif last_digit < 4:
        adjustment = -(last_digit + 1)
    else:
        adjustment = 9 - last_digit

    return max(99, rounded + adjustment)


def find_cached_price(
    rows: Sequence[Dict[str, Any]],
    hotel_id: Any,
    flight_block_id: str,
    occupancy: Occupancy
) -> Optional[Dict[str, Any]]:
    """Exact match in a stored price matrix, or None when not precomputed."""
    for row in rows:
        if (
            row['adults'] == occupancy.adults
            and row['children'] == occupancy.children
            and (row.get('child_ages') or '') == occupancy.child_ages_key
            and row['hotel_id'] == hotel_id
            and row['flight_block_id'] == flight_block_id
        ):
            return row
    return None
