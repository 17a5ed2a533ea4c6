"""
Package Pricing Service: Flask Backend
======================================
HTTP layer over the package pricing engine:

- Customer search and package pages read the precomputed price matrix
- Admin routes rebuild/fetch the matrix and maintain hotel rate sheets
  and flight blocks
- Preview calculator quotes any combination with the same engine
- Soft booking flow holds inventory and is released by the expiry sweep

Money leaves this module in major units (euros); everything below it works
in cents.
"""

from datetime import date, datetime, timezone
from functools import wraps
import csv
import io
import logging
import os
import re
import uuid

from flask import Flask, request, jsonify, session
from flask_cors import CORS

from booking_service import (
    BookingError,
    BookingService,
    BookingStateError,
    InventoryConflictError,
    booking_to_json,
)
from db import LOG_LEVEL, get_db
from price_matrix import PriceMatrixBuilder, block_summary, hotel_ids_for, price_row_to_json
from pricing_engine import (
    PricingEngineError,
    ComponentNotFoundError,
    RateMissingError,
    InvalidConfigurationError,
    ValidationError,
    Occupancy,
    cents_to_major,
    major_to_cents,
    parse_age_range,
)
from repository import PackageRepository

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)

app = Flask(__name__)
app.secret_key = os.environ.get('SECRET_KEY', 'change-me-in-production')
CORS(app)


# =====================================================
# HELPERS
# =====================================================

def _error_response(e: Exception):
    """Map engine/booking exceptions to status codes; everything else is a 500."""
    if isinstance(e, ValidationError):
        return jsonify({'success': False, 'error': 'Invalid input', 'errors': e.field_errors}), 400
    if isinstance(e, ComponentNotFoundError):
        return jsonify({'success': False, 'error': str(e)}), 404
    if isinstance(e, RateMissingError):
        return jsonify({'success': False, 'error': str(e)}), 422
    if isinstance(e, InvalidConfigurationError):
        return jsonify({'success': False, 'error': str(e)}), 400
    if isinstance(e, (InventoryConflictError, BookingStateError)):
        return jsonify({'success': False, 'error': str(e)}), 409

    logger.error(f"Unexpected error: {e}", exc_info=True)
    return jsonify({'success': False, 'error': 'Internal server error'}), 500


def _parse_date(value, field: str) -> date:
    if not value:
        raise ValidationError({field: ['Required']})
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError({field: ['Expected a date in YYYY-MM-DD format']})


def _parse_datetime(value, field: str) -> datetime:
    parsed = _parse_date(value, field)
    return datetime(parsed.year, parsed.month, parsed.day, tzinfo=timezone.utc)


def _parse_int(value, field: str) -> int:
    if value is None or value == '':
        raise ValidationError({field: ['Required']})
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError({field: ['Must be an integer']})


def _occupancy_from(data) -> Occupancy:
    return Occupancy.build(
        data.get('adults', 1),
        data.get('children', 0),
        data.get('childAges'),
    )


def _services(db):
    repo = PackageRepository(db)
    builder = PriceMatrixBuilder(repo)
    return repo, builder


# =====================================================
# AUTHENTICATION
# =====================================================

def admin_login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not session.get('admin_logged_in'):
            return jsonify({'error': 'Unauthorized'}), 401
        return f(*args, **kwargs)
    return decorated_function


@app.route('/admin/login', methods=['POST'])
def admin_login():
    data = request.get_json(silent=True) or request.form
    username = data.get('username', '')
    password = data.get('password', '')
    admin_user = os.environ.get('ADMIN_USER', 'admin')
    admin_pass = os.environ.get('ADMIN_PASS', 'admin123')
    if username == admin_user and password == admin_pass:
        session['admin_logged_in'] = True
        session['admin_username'] = username
        return jsonify({'message': 'Logged in'})
    return jsonify({'error': 'Invalid credentials'}), 401


@app.route('/admin/logout', methods=['POST'])
def admin_logout():
    session.pop('admin_logged_in', None)
    session.pop('admin_username', None)
    return jsonify({'message': 'Logged out'})


# =====================================================
# CUSTOMER SEARCH
# =====================================================

@app.route('/api/packages/search', methods=['GET'])
def search_packages():
    db = None
    try:
        city_id = _parse_int(request.args.get('cityId'), 'cityId')
        travel_date = _parse_date(request.args.get('date'), 'date')
        occupancy = _occupancy_from(request.args)

        db = get_db()
        repo, builder = _services(db)

        results = []
        for package in repo.find_packages_for_city(city_id, travel_date):
            offer = builder.cheapest_offer(package, occupancy, travel_date)
            if offer:
                results.append(offer)
        results.sort(key=lambda r: r['totalPriceFrom'])

        logger.info(
            f"Search city={city_id} date={travel_date} adults={occupancy.adults} "
            f"children={occupancy.children}: {len(results)} package(s)"
        )
        return jsonify({'packages': results, 'totalFound': len(results)})

    except Exception as e:
        return _error_response(e)
    finally:
        if db:
            db.close()


@app.route('/api/public/packages/<slug>', methods=['GET'])
def public_package(slug):
    db = None
    try:
        db = get_db()
        repo, builder = _services(db)

        package = repo.get_package_by_slug(slug)
        if not package:
            raise ComponentNotFoundError('Package not found')

        prices = repo.get_package_prices(package['id'])
        prices.sort(key=lambda r: (r['adults'], r['children']))
        blocks = builder.flight_blocks_for(package)
        hotels = repo.get_hotels(hotel_ids_for(package))

        return jsonify({
            'id': package['id'],
            'name': package['name'],
            'slug': package['slug'],
            'description': package.get('description'),
            'featured': bool(package.get('featured')),
            'includesTransfer': bool(package.get('includes_transfer')),
            'availableHotels': [
                {'id': h['id'], 'name': h['name'], 'slug': h.get('slug')}
                for h in hotels if h.get('active', True)
            ],
            'flightBlocks': [block_summary(b) for b in blocks],
            'packagePrices': [price_row_to_json(r) for r in prices],
        })

    except Exception as e:
        return _error_response(e)
    finally:
        if db:
            db.close()


# =====================================================
# PRICE MATRIX (ADMIN)
# =====================================================

@app.route('/api/admin/packages/<int:package_id>/calculate-prices', methods=['POST'])
@admin_login_required
def calculate_package_prices(package_id):
    db = None
    try:
        db = get_db()
        _, builder = _services(db)
        result = builder.rebuild(package_id)
        return jsonify(result)
    except Exception as e:
        return _error_response(e)
    finally:
        if db:
            db.close()


@app.route('/api/admin/packages/<int:package_id>/calculate-prices', methods=['GET'])
@admin_login_required
def get_package_prices(package_id):
    db = None
    try:
        db = get_db()
        repo, builder = _services(db)
        builder.load_package(package_id)
        prices = repo.get_package_prices(package_id)
        return jsonify([price_row_to_json(r) for r in prices])
    except Exception as e:
        return _error_response(e)
    finally:
        if db:
            db.close()


# =====================================================
# PREVIEW CALCULATOR
# =====================================================

@app.route('/api/price-calculator', methods=['POST'])
def price_calculator():
    """
    Live quote for one package/hotel/flight block/occupancy combination.
    checkIn/checkOut are only used when the package has no flight block.
    """
    db = None
    try:
        data = request.get_json(silent=True) or {}
        package_id = _parse_int(data.get('packageId'), 'packageId')
        hotel_id = _parse_int(data.get('hotelId'), 'hotelId')
        occupancy = _occupancy_from(data)
        check_in = _parse_datetime(data['checkIn'], 'checkIn') if data.get('checkIn') else None
        check_out = _parse_datetime(data['checkOut'], 'checkOut') if data.get('checkOut') else None

        db = get_db()
        _, builder = _services(db)
        package = builder.load_package(package_id)
        result = builder.quote(
            package, hotel_id, occupancy,
            flight_block_id=data.get('flightBlockId'),
            check_in=check_in, check_out=check_out,
        )
        return jsonify({'success': True, **result})

    except Exception as e:
        return _error_response(e)
    finally:
        if db:
            db.close()


# =====================================================
# HOTEL RATE SHEETS (ADMIN)
# =====================================================

def _rate_to_json(rate):
    return {
        'id': rate.id,
        'hotelId': rate.hotel_id,
        'validFrom': rate.valid_from.isoformat(),
        'validTo': rate.valid_to.isoformat(),
        'single': cents_to_major(rate.single_rate),
        'double': cents_to_major(rate.double_rate),
        'extraBed': cents_to_major(rate.extra_bed_rate),
        'payingKidsAge': f"{rate.paying_child_min_age}-{rate.paying_child_max_age}",
        'paymentKids': cents_to_major(rate.child_rate),
        'board': rate.board,
    }


def _rate_values_from(data):
    errors = {}
    values = {}

    for field in ('validFrom', 'validTo'):
        try:
            values[field] = _parse_date(data.get(field), field)
        except ValidationError as e:
            errors.update(e.field_errors)

    for field, column in (
        ('single', 'single_rate'), ('double', 'double_rate'),
        ('extraBed', 'extra_bed_rate'), ('paymentKids', 'child_rate'),
    ):
        if data.get(field) is None:
            errors[field] = ['Required']
            continue
        try:
            values[column] = major_to_cents(data[field])
        except InvalidConfigurationError as e:
            errors[field] = [str(e)]

    try:
        values['paying_child_min_age'], values['paying_child_max_age'] = parse_age_range(
            data.get('payingKidsAge', '')
        )
    except InvalidConfigurationError as e:
        errors['payingKidsAge'] = [str(e)]

    if not errors and values['validTo'] < values['validFrom']:
        errors['validTo'] = ['Must not be before validFrom']
    if errors:
        raise ValidationError(errors)

    values['valid_from'] = values.pop('validFrom')
    values['valid_to'] = values.pop('validTo')
    values['board'] = data.get('board', '')
    return values


@app.route('/api/admin/hotels/<int:hotel_id>/rates', methods=['GET'])
@admin_login_required
def list_hotel_rates(hotel_id):
    db = None
    try:
        db = get_db()
        repo = PackageRepository(db)
        if not repo.get_hotel(hotel_id):
            raise ComponentNotFoundError('Hotel not found')
        return jsonify([_rate_to_json(r) for r in repo.list_rate_rows(hotel_id)])
    except Exception as e:
        return _error_response(e)
    finally:
        if db:
            db.close()


@app.route('/api/admin/hotels/<int:hotel_id>/rates', methods=['POST'])
@admin_login_required
def create_hotel_rate(hotel_id):
    db = None
    try:
        values = _rate_values_from(request.get_json(silent=True) or {})
        db = get_db()
        repo = PackageRepository(db)
        if not repo.get_hotel(hotel_id):
            raise ComponentNotFoundError('Hotel not found')

        rate_id = repo.create_rate_row(hotel_id, values)
        logger.info(f"Created rate {rate_id} for hotel {hotel_id}: {values['valid_from']}..{values['valid_to']}")
        return jsonify({'id': rate_id, 'message': 'Rate created'}), 201
    except Exception as e:
        return _error_response(e)
    finally:
        if db:
            db.close()


@app.route('/api/admin/hotels/<int:hotel_id>/rates/<int:rate_id>', methods=['DELETE'])
@admin_login_required
def delete_hotel_rate(hotel_id, rate_id):
    db = None
    try:
        db = get_db()
        repo = PackageRepository(db)
        if not repo.delete_rate_row(hotel_id, rate_id):
            raise ComponentNotFoundError('Rate not found')
        return jsonify({'message': 'Deleted'})
    except Exception as e:
        return _error_response(e)
    finally:
        if db:
            db.close()


# Normalised spreadsheet header -> rate field
RATE_SHEET_HEADERS = {
    'board': 'board',
    'fromdate': 'validFrom',
    'validfrom': 'validFrom',
    'tilldate': 'validTo',
    'todate': 'validTo',
    'validto': 'validTo',
    'single': 'single',
    'double': 'double',
    'extrabed': 'extraBed',
    'payingkidsage': 'payingKidsAge',
    'paymentkids': 'paymentKids',
}


def _sheet_date(value: str) -> str:
    """DD/MM/YYYY (also with . or -) to ISO; anything else is passed through."""
    parts = re.split(r'[/.\-]', value)
    if len(parts) == 3 and len(parts[0]) <= 2 and len(parts[2]) == 4 and all(p.isdigit() for p in parts):
        day, month, year = parts
        return f"{year}-{int(month):02d}-{int(day):02d}"
    return value


def _rate_sheet_rows(text: str):
    """Parse a CSV rate sheet. Any invalid row rejects the whole sheet."""
    reader = csv.DictReader(io.StringIO(text))
    rows = []
    errors = {}
    for record in reader:
        data = {}
        for header, value in record.items():
            if header is None or value is None:
                continue
            field = RATE_SHEET_HEADERS.get(re.sub(r'[\s_]', '', header.lower()))
            if field and value.strip():
                data[field] = value.strip()
        if not data:
            continue

        for field in ('validFrom', 'validTo'):
            if field in data:
                data[field] = _sheet_date(data[field])
        data['board'] = data.get('board', 'RO').upper()
        data.setdefault('paymentKids', '0')

        try:
            rows.append(_rate_values_from(data))
        except ValidationError as e:
            errors[f"row {reader.line_num}"] = [
                f"{field}: {'; '.join(messages)}" for field, messages in e.field_errors.items()
            ]

    if errors:
        raise ValidationError(errors)
    if not rows:
        raise ValidationError({'file': ['No rate rows found in file']})
    return rows


@app.route('/api/admin/hotels/<int:hotel_id>/rates/import', methods=['POST'])
@admin_login_required
def import_hotel_rates(hotel_id):
    """Replace a hotel's rate sheet with an uploaded CSV (multipart 'file' or raw body)."""
    db = None
    try:
        upload = request.files.get('file')
        if upload is not None:
            if upload.filename and not upload.filename.lower().endswith('.csv'):
                raise ValidationError({'file': ['Only CSV rate sheets are supported']})
            text = upload.read().decode('utf-8-sig')
        else:
            text = request.get_data(as_text=True)
        if not text.strip():
            raise ValidationError({'file': ['No file provided']})

        rows = _rate_sheet_rows(text)

        db = get_db()
        repo = PackageRepository(db)
        if not repo.get_hotel(hotel_id):
            raise ComponentNotFoundError('Hotel not found')

        count = repo.replace_rate_rows(hotel_id, rows)
        return jsonify({'count': count, 'message': f"Imported {count} rate rows"})
    except Exception as e:
        return _error_response(e)
    finally:
        if db:
            db.close()


# =====================================================
# FLIGHT BLOCKS (ADMIN)
# =====================================================

FLIGHT_FIELDS = (
    ('flightNumber', 'flight_number'),
    ('departureTime', 'departure_time'),
    ('arrivalTime', 'arrival_time'),
    ('pricePerSeat', 'price_per_seat'),
    ('totalSeats', 'total_seats'),
)


def _parse_timestamp(value, field: str) -> datetime:
    """ISO 8601 date and time; a naive value is taken as UTC."""
    if not value:
        raise ValidationError({field: ['Required']})
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        raise ValidationError({field: ['Expected an ISO 8601 date and time']})
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _flight_values_from(data, prefix: str = '', partial: bool = False):
    """Validated flight columns plus field errors keyed with the given prefix."""
    values = {}
    errors = {}
    for field, column in FLIGHT_FIELDS:
        key = f"{prefix}{field}"
        raw = data.get(field)
        if raw is None or raw == '':
            if not partial:
                errors[key] = ['Required']
            continue
        try:
            if column in ('departure_time', 'arrival_time'):
                values[column] = _parse_timestamp(raw, key)
            elif column == 'price_per_seat':
                values[column] = major_to_cents(raw)
            elif column == 'total_seats':
                values[column] = _parse_int(raw, key)
                if values[column] < 0:
                    errors[key] = ['Must not be negative']
            else:
                values[column] = str(raw).strip()
        except ValidationError as e:
            errors.update(e.field_errors)
        except InvalidConfigurationError as e:
            errors[key] = [str(e)]

    if 'departure_time' in values and 'arrival_time' in values:
        if values['arrival_time'] <= values['departure_time']:
            errors[f"{prefix}arrivalTime"] = ['Must be after departureTime']
    return values, errors


def _load_block(repo, block_group_id):
    blocks = repo.get_flight_blocks([block_group_id])
    if not blocks:
        raise ComponentNotFoundError(f"Flight block {block_group_id} not found")
    return blocks[0]


@app.route('/api/admin/flight-blocks', methods=['GET'])
@admin_login_required
def list_flight_blocks():
    db = None
    try:
        db = get_db()
        repo = PackageRepository(db)
        return jsonify({'flightBlocks': [block_summary(b) for b in repo.list_flight_blocks()]})
    except Exception as e:
        return _error_response(e)
    finally:
        if db:
            db.close()


@app.route('/api/admin/flight-blocks', methods=['POST'])
@admin_login_required
def create_flight_block():
    db = None
    try:
        data = request.get_json(silent=True) or {}
        outbound, errors = _flight_values_from(data.get('outboundFlight') or {}, 'outboundFlight.')
        return_leg, return_errors = _flight_values_from(data.get('returnFlight') or {}, 'returnFlight.')
        errors.update(return_errors)
        if 'arrival_time' in outbound and 'departure_time' in return_leg:
            if return_leg['departure_time'] <= outbound['arrival_time']:
                errors['returnFlight.departureTime'] = ['Must be after the outbound arrival']
        if errors:
            raise ValidationError(errors)

        block_group_id = data.get('blockGroupId') or f"BLOCK-{uuid.uuid4().hex[:8].upper()}"

        db = get_db()
        repo = PackageRepository(db)
        if repo.get_flight_blocks([block_group_id]):
            raise InvalidConfigurationError(f"Flight block {block_group_id} already exists")

        repo.create_flight_block(block_group_id, outbound, return_leg)
        return jsonify(block_summary(_load_block(repo, block_group_id))), 201
    except Exception as e:
        return _error_response(e)
    finally:
        if db:
            db.close()


@app.route('/api/admin/flight-blocks/<block_group_id>/flights/<int:flight_id>', methods=['PUT'])
@admin_login_required
def update_block_flight(block_group_id, flight_id):
    db = None
    try:
        values, errors = _flight_values_from(request.get_json(silent=True) or {}, partial=True)
        if errors:
            raise ValidationError(errors)

        db = get_db()
        repo = PackageRepository(db)
        block = _load_block(repo, block_group_id)
        if flight_id not in (block.outbound.id, block.return_flight.id):
            raise ComponentNotFoundError(f"Flight {flight_id} is not part of block {block_group_id}")

        # The legs must still leave a positive stay between them.
        is_outbound = flight_id == block.outbound.id
        flight = block.outbound if is_outbound else block.return_flight
        departure = values.get('departure_time', flight.departure_time)
        arrival = values.get('arrival_time', flight.arrival_time)
        if arrival <= departure:
            raise ValidationError({'arrivalTime': ['Must be after departureTime']})
        if is_outbound and arrival >= block.return_flight.departure_time:
            raise ValidationError({'arrivalTime': ['Must be before the return departure']})
        if not is_outbound and departure <= block.outbound.arrival_time:
            raise ValidationError({'departureTime': ['Must be after the outbound arrival']})

        if not repo.update_flight(block_group_id, flight_id, values):
            raise ComponentNotFoundError(f"Flight {flight_id} not found")
        logger.info(f"Updated flight {flight_id} of block {block_group_id}: {sorted(values)}")
        return jsonify(block_summary(_load_block(repo, block_group_id)))
    except Exception as e:
        return _error_response(e)
    finally:
        if db:
            db.close()


@app.route('/api/admin/flight-blocks/<block_group_id>', methods=['DELETE'])
@admin_login_required
def delete_flight_block(block_group_id):
    db = None
    try:
        db = get_db()
        repo = PackageRepository(db)
        if not repo.delete_flight_block(block_group_id):
            raise ComponentNotFoundError(f"Flight block {block_group_id} not found")
        return jsonify({'message': 'Deleted'})
    except Exception as e:
        return _error_response(e)
    finally:
        if db:
            db.close()


# =====================================================
# BOOKINGS
# =====================================================

@app.route('/api/bookings/soft-book', methods=['POST'])
def soft_book():
    db = None
    try:
        data = request.get_json(silent=True) or {}
        errors = {}
        for field in ('packageId', 'hotelId', 'flightBlockId', 'customerName', 'customerEmail'):
            if not data.get(field):
                errors[field] = ['Required']
        if errors:
            raise ValidationError(errors)

        package_id = _parse_int(data['packageId'], 'packageId')
        hotel_id = _parse_int(data['hotelId'], 'hotelId')
        occupancy = _occupancy_from(data)

        db = get_db()
        _, builder = _services(db)
        booking = BookingService(db, builder).create_soft_booking(
            package_id, str(data['flightBlockId']), hotel_id, occupancy,
            customer={'name': data['customerName'], 'email': data['customerEmail']},
            currency=data.get('currency', 'EUR'),
        )
        return jsonify({
            'success': True,
            'message': 'Soft booking created successfully',
            'booking': booking_to_json(booking),
        }), 201

    except Exception as e:
        return _error_response(e)
    finally:
        if db:
            db.close()


def _booking_action(reservation_code, action):
    db = None
    try:
        db = get_db()
        _, builder = _services(db)
        service = BookingService(db, builder)
        if action == 'confirm':
            booking = service.confirm(reservation_code)
        elif action == 'pay':
            booking = service.mark_paid(reservation_code)
        elif action == 'cancel':
            data = request.get_json(silent=True) or {}
            booking = service.cancel(reservation_code, data.get('reason'))
        else:
            booking = service.get_booking(reservation_code)
        return jsonify({'success': True, 'booking': booking_to_json(booking)})
    except Exception as e:
        return _error_response(e)
    finally:
        if db:
            db.close()


@app.route('/api/bookings/<code>', methods=['GET'])
def get_booking(code):
    return _booking_action(code, 'get')


@app.route('/api/bookings/<code>/confirm', methods=['POST'])
def confirm_booking(code):
    return _booking_action(code, 'confirm')


@app.route('/api/bookings/<code>/pay', methods=['POST'])
@admin_login_required
def pay_booking(code):
    return _booking_action(code, 'pay')


@app.route('/api/bookings/<code>/cancel', methods=['POST'])
def cancel_booking(code):
    return _booking_action(code, 'cancel')


@app.route('/api/cron/expire-bookings', methods=['GET', 'POST'])
def expire_bookings():
    cron_secret = os.environ.get('CRON_SECRET')
    if cron_secret and request.headers.get('Authorization') != f"Bearer {cron_secret}":
        return jsonify({'error': 'Unauthorized'}), 401

    db = None
    try:
        db = get_db()
        _, builder = _services(db)
        expired = BookingService(db, builder).expire_soft_bookings()
        if not expired:
            return jsonify({'message': 'No expired bookings found', 'processed': 0})
        return jsonify({
            'message': f"Processed {len(expired)} expired bookings",
            'processed': len(expired),
            'results': expired,
        })
    except (PricingEngineError, BookingError) as e:
        return _error_response(e)
    except Exception as e:
        logger.error(f"Booking expiration job error: {e}", exc_info=True)
        return jsonify({'error': 'Failed to process expired bookings'}), 500
    finally:
        if db:
            db.close()


# =====================================================
# ENTRY POINT
# =====================================================

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=os.environ.get('FLASK_DEBUG') == '1')
