"""Builders and an in-memory repository shared by the test modules."""

import copy
from dataclasses import replace
from datetime import date, datetime, timezone

from pricing_engine import Flight, FlightBlock, HotelRateRow, InvalidConfigurationError


def utc(year, month, day, hour=0, minute=0):
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


def make_rate(**overrides) -> HotelRateRow:
    values = dict(
        id=1,
        hotel_id=10,
        valid_from=date(2026, 6, 1),
        valid_to=date(2026, 9, 30),
        single_rate=10000,
        double_rate=16000,
        extra_bed_rate=10000,
        paying_child_min_age=7,
        paying_child_max_age=11,
        child_rate=3000,
        board='BB',
    )
    values.update(overrides)
    return HotelRateRow(**values)


def make_block(
    block_group_id='BLK-1',
    outbound_price=12000,
    return_price=12000,
    outbound_departure=None,
    outbound_arrival=None,
    return_departure=None,
    seats=50,
    outbound_id=1,
    return_id=2,
) -> FlightBlock:
    outbound_departure = outbound_departure or utc(2026, 7, 10, 8)
    outbound_arrival = outbound_arrival or utc(2026, 7, 10, 12)
    return_departure = return_departure or utc(2026, 7, 13, 12)
    outbound = Flight(
        id=outbound_id, flight_number='MX101',
        departure_time=outbound_departure, arrival_time=outbound_arrival,
        price_per_seat=outbound_price, available_seats=seats, total_seats=seats,
    )
    return_flight = Flight(
        id=return_id, flight_number='MX102',
        departure_time=return_departure,
        arrival_time=return_departure.replace(hour=(return_departure.hour + 4) % 24),
        price_per_seat=return_price, available_seats=seats, total_seats=seats,
    )
    return FlightBlock(block_group_id=block_group_id, outbound=outbound, return_flight=return_flight)


def make_package(**overrides):
    values = dict(
        id=1,
        name='Malta Summer',
        slug='malta-summer',
        description='Seven days in Malta',
        city_id=5,
        active=True,
        featured=False,
        available_from=date(2026, 6, 1),
        available_to=date(2026, 9, 30),
        hotel_id=10,
        hotel_ids=[10],
        flight_block_ids=['BLK-1'],
        departure_flight_id=None,
        return_flight_id=None,
        includes_transfer=False,
        transfer_id=None,
        service_charge=0,
        profit_margin=20,
    )
    values.update(overrides)
    return values


class FakeRepository:
    """In-memory stand-in for repository.PackageRepository."""

    def __init__(self, packages=(), blocks=(), hotels=(), rates=(), transfers=None, pairs=None):
        self.packages = {p['id']: p for p in packages}
        self.blocks = {b.block_group_id: b for b in blocks}
        self.hotels = {h['id']: h for h in hotels}
        self.rates = list(rates)
        self.transfers = dict(transfers or {})
        self.pairs = dict(pairs or {})
        self.prices = {}
        self.replace_calls = 0
        self.fail_on_replace = False
        self.next_rate_id = 100
        self.next_flight_id = 100
        self.booked_blocks = set()

    def get_package(self, package_id):
        return self.packages.get(package_id)

    def get_package_by_slug(self, slug):
        return next((p for p in self.packages.values() if p['slug'] == slug and p['active']), None)

    def find_packages_for_city(self, city_id, on_date):
        return [
            p for p in self.packages.values()
            if p['city_id'] == city_id and p['active']
            and p['available_from'] <= on_date <= p['available_to']
        ]

    def list_active_package_ids(self):
        return sorted(pid for pid, p in self.packages.items() if p['active'])

    def get_flight_blocks(self, block_group_ids):
        return [self.blocks[b] for b in block_group_ids if b in self.blocks]

    def get_flight_pair(self, departure_flight_id, return_flight_id):
        return self.pairs.get((departure_flight_id, return_flight_id))

    def get_hotel(self, hotel_id):
        return self.hotels.get(hotel_id)

    def get_hotels(self, hotel_ids):
        found = [self.hotels[h] for h in hotel_ids if h in self.hotels]
        return sorted(found, key=lambda h: (h['name'], h['id']))

    def get_rate_rows(self, hotel_ids):
        rates = {h: [] for h in hotel_ids}
        for rate in self.rates:
            if rate.hotel_id in rates:
                rates[rate.hotel_id].append(rate)
        return rates

    def list_rate_rows(self, hotel_id):
        return self.get_rate_rows([hotel_id])[hotel_id]

    def create_rate_row(self, hotel_id, values):
        self.next_rate_id += 1
        self.rates.append(HotelRateRow(id=self.next_rate_id, hotel_id=hotel_id, **values))
        return self.next_rate_id

    def delete_rate_row(self, hotel_id, rate_id):
        before = len(self.rates)
        self.rates = [r for r in self.rates if not (r.id == rate_id and r.hotel_id == hotel_id)]
        return len(self.rates) < before

    def get_transfer_price(self, transfer_id):
        return self.transfers.get(transfer_id)

    def get_package_prices(self, package_id):
        return copy.deepcopy(self.prices.get(package_id, []))

    def replace_package_prices(self, package_id, rows):
        self.replace_calls += 1
        if self.fail_on_replace:
            raise RuntimeError('insert failed')
        self.prices[package_id] = copy.deepcopy(list(rows))
        return len(rows)

    def list_flight_blocks(self):
        return sorted(self.blocks.values(), key=lambda b: b.outbound.departure_time)

    def create_flight_block(self, block_group_id, outbound, return_leg):
        legs = []
        for values in (outbound, return_leg):
            self.next_flight_id += 1
            legs.append(Flight(
                id=self.next_flight_id,
                flight_number=values['flight_number'],
                departure_time=values['departure_time'],
                arrival_time=values['arrival_time'],
                price_per_seat=values['price_per_seat'],
                available_seats=values['total_seats'],
                total_seats=values['total_seats'],
            ))
        self.blocks[block_group_id] = FlightBlock(
            block_group_id=block_group_id, outbound=legs[0], return_flight=legs[1]
        )
        return [f.id for f in legs]

    def update_flight(self, block_group_id, flight_id, values):
        block = self.blocks.get(block_group_id)
        if block is None:
            return False
        leg = 'outbound' if block.outbound.id == flight_id else 'return_flight'
        flight = getattr(block, leg)
        if flight.id != flight_id:
            return False

        booked = flight.total_seats - flight.available_seats
        total_seats = values.get('total_seats', flight.total_seats)
        if total_seats < booked:
            raise InvalidConfigurationError(
                f"Cannot set total seats to {total_seats}, {booked} seats are already booked"
            )
        changes = {k: v for k, v in values.items() if k != 'total_seats'}
        updated = replace(flight, total_seats=total_seats, available_seats=total_seats - booked, **changes)
        self.blocks[block_group_id] = replace(block, **{leg: updated})
        return True

    def delete_flight_block(self, block_group_id):
        if block_group_id in self.booked_blocks:
            raise InvalidConfigurationError(
                f"Cannot delete flight block {block_group_id} with existing bookings"
            )
        return self.blocks.pop(block_group_id, None) is not None

    def replace_rate_rows(self, hotel_id, rows):
        self.rates = [r for r in self.rates if r.hotel_id != hotel_id]
        for values in rows:
            self.create_rate_row(hotel_id, values)
        return len(rows)
