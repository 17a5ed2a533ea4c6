"""HTTP tests for the Flask routes, backed by the in-memory repository."""

from dataclasses import replace
from datetime import date
from unittest.mock import MagicMock
import io

import pytest

import app as app_module
from booking_service import BookingStateError, InventoryConflictError
from price_matrix import PriceMatrixBuilder
from pricing_engine import ComponentNotFoundError
from tests.helpers import make_block, make_package, utc


@pytest.fixture
def client(repo, monkeypatch):
    monkeypatch.setattr(app_module, 'get_db', MagicMock)
    monkeypatch.setattr(app_module, '_services', lambda db: (repo, PriceMatrixBuilder(repo)))
    monkeypatch.setattr(app_module, 'PackageRepository', lambda db: repo)
    app_module.app.config['TESTING'] = True
    with app_module.app.test_client() as client:
        yield client


@pytest.fixture
def admin(client):
    with client.session_transaction() as sess:
        sess['admin_logged_in'] = True
    return client


def _booking_service(**behaviour):
    """BookingService replacement whose methods return or raise what the test asks for."""

    class StubBookingService:
        def __init__(self, db, pricing):
            pass

        def __getattr__(self, name):
            outcome = behaviour[name]

            def call(*args, **kwargs):
                if isinstance(outcome, Exception):
                    raise outcome
                return outcome
            return call

    return StubBookingService


BOOKING_ROW = {
    'id': 55, 'reservation_code': 'MXi-0007', 'status': 'SOFT', 'package_id': 1,
    'flight_block_id': 'BLK-1', 'hotel_id': 10, 'adults': 2, 'children': 0, 'child_ages': '',
    'total_amount': 115200, 'currency': 'EUR',
}


class TestSearch:

    def test_returns_cheapest_offer_per_package(self, client):
        response = client.get('/api/packages/search?cityId=5&date=2026-07-10&adults=2')

        assert response.status_code == 200
        body = response.get_json()
        assert body['totalFound'] == 1
        assert body['packages'][0]['totalPriceFrom'] == 1152.0
        assert body['packages'][0]['displayPriceFrom'] == 1149

    def test_package_with_inconsistent_flight_times_is_left_out(self, client, repo):
        repo.packages[2] = make_package(id=2, slug='malta-broken', flight_block_ids=['BAD'])
        repo.blocks['BAD'] = make_block('BAD', outbound_arrival=utc(2026, 7, 10, 12),
                                        return_departure=utc(2026, 7, 10, 11), outbound_id=3, return_id=4)

        response = client.get('/api/packages/search?cityId=5&date=2026-07-10&adults=2')

        assert response.status_code == 200
        body = response.get_json()
        assert body['totalFound'] == 1
        assert body['packages'][0]['id'] == 1

    def test_missing_city_is_a_field_error(self, client):
        response = client.get('/api/packages/search?date=2026-07-10')

        assert response.status_code == 400
        assert 'cityId' in response.get_json()['errors']

    def test_child_age_count_mismatch(self, client):
        response = client.get('/api/packages/search?cityId=5&date=2026-07-10&children=2&childAges=5')

        assert response.status_code == 400
        assert 'childAges' in response.get_json()['errors']

    def test_no_departures_near_date(self, client):
        response = client.get('/api/packages/search?cityId=5&date=2026-08-20')

        assert response.get_json() == {'packages': [], 'totalFound': 0}


class TestPublicPackage:

    def test_serves_stored_matrix(self, client, repo):
        PriceMatrixBuilder(repo).rebuild(1)

        body = client.get('/api/public/packages/malta-summer').get_json()

        assert len(body['packagePrices']) == 6
        assert body['flightBlocks'][0]['nights'] == 3
        assert [h['name'] for h in body['availableHotels']] == ['Hotel Preluna', 'Seaview Lodge']

    def test_unknown_slug(self, client):
        assert client.get('/api/public/packages/nowhere').status_code == 404


class TestAdminMatrix:

    def test_requires_login(self, client):
        response = client.post('/api/admin/packages/1/calculate-prices')
        assert response.status_code == 401

    def test_login_then_rebuild(self, client, repo):
        login = client.post('/admin/login', json={'username': 'admin', 'password': 'admin123'})
        assert login.status_code == 200

        response = client.post('/api/admin/packages/1/calculate-prices')

        assert response.status_code == 200
        assert response.get_json()['count'] == 6
        assert len(repo.prices[1]) == 6

    def test_wrong_password(self, client):
        response = client.post('/admin/login', json={'username': 'admin', 'password': 'nope'})
        assert response.status_code == 401

    def test_unknown_package(self, admin):
        assert admin.post('/api/admin/packages/404/calculate-prices').status_code == 404

    def test_fetch_stored_rows(self, admin):
        admin.post('/api/admin/packages/1/calculate-prices')
        rows = admin.get('/api/admin/packages/1/calculate-prices').get_json()

        two_adults = next(r for r in rows if r['adults'] == 2 and r['children'] == 0)
        assert two_adults['totalPrice'] == 1152.0


class TestPriceCalculator:

    def test_quote(self, client):
        response = client.post('/api/price-calculator', json={'packageId': 1, 'hotelId': 10, 'adults': 2})

        assert response.status_code == 200
        body = response.get_json()
        assert body['success'] is True
        assert body['totalPrice'] == 1152.0

    def test_missing_rate(self, client):
        response = client.post('/api/price-calculator', json={'packageId': 1, 'hotelId': 11, 'adults': 2})
        assert response.status_code == 422

    def test_unsupported_occupancy(self, client):
        response = client.post('/api/price-calculator', json={'packageId': 1, 'hotelId': 10, 'adults': 4})
        assert response.status_code == 400

    def test_missing_package_id(self, client):
        response = client.post('/api/price-calculator', json={'hotelId': 10})

        assert response.status_code == 400
        assert response.get_json()['errors'] == {'packageId': ['Required']}


class TestRateSheets:

    def test_create_and_list(self, admin):
        response = admin.post('/api/admin/hotels/11/rates', json={
            'validFrom': '2026-06-01', 'validTo': '2026-08-31',
            'single': 90, 'double': '140.50', 'extraBed': 60,
            'paymentKids': 25, 'payingKidsAge': '6-12', 'board': 'HB',
        })
        assert response.status_code == 201

        rates = admin.get('/api/admin/hotels/11/rates').get_json()
        assert rates[0]['double'] == 140.5
        assert rates[0]['payingKidsAge'] == '6-12'

    def test_invalid_rate_reports_fields(self, admin):
        response = admin.post('/api/admin/hotels/11/rates', json={
            'validFrom': '2026-09-01', 'validTo': 'soon', 'single': -5, 'payingKidsAge': '12-6',
        })

        assert response.status_code == 400
        errors = response.get_json()['errors']
        assert {'validTo', 'single', 'double', 'payingKidsAge'} <= set(errors)

    def test_unknown_hotel(self, admin):
        assert admin.get('/api/admin/hotels/99/rates').status_code == 404

    def test_delete(self, admin):
        assert admin.delete('/api/admin/hotels/10/rates/1').status_code == 200
        assert admin.delete('/api/admin/hotels/10/rates/1').status_code == 404


RATE_SHEET = (
    "Board,Room Type,From Date,Till Date,Single,Double,Extra Bed,Paying Kids Age,Payment Kids\n"
    "bb,Standard,01/06/2026,31/08/2026,90,140.50,60,6-12,25\n"
    "HB,Standard,2026-09-01,2026-09-30,95,150,65,6-12,\n"
)


class TestRateSheetImport:

    def test_upload_replaces_the_hotel_sheet(self, admin, repo):
        response = admin.post(
            '/api/admin/hotels/10/rates/import',
            data={'file': (io.BytesIO(RATE_SHEET.encode('utf-8')), 'rates.csv')},
            content_type='multipart/form-data',
        )

        assert response.status_code == 200
        assert response.get_json()['count'] == 2
        rates = repo.list_rate_rows(10)
        assert [r.id for r in rates] == [101, 102]
        assert rates[0].valid_from == date(2026, 6, 1)
        assert rates[0].valid_to == date(2026, 8, 31)
        assert rates[0].double_rate == 14050
        assert rates[0].board == 'BB'
        assert (rates[1].paying_child_min_age, rates[1].child_rate) == (6, 0)

    def test_raw_csv_body(self, admin, repo):
        response = admin.post('/api/admin/hotels/11/rates/import', data=RATE_SHEET, content_type='text/csv')

        assert response.status_code == 200
        assert len(repo.list_rate_rows(11)) == 2

    def test_invalid_row_rejects_the_whole_sheet(self, admin, repo):
        sheet = RATE_SHEET + "BB,Standard,01/10/2026,soon,90,,60,6-12,25\n"

        response = admin.post('/api/admin/hotels/10/rates/import', data=sheet, content_type='text/csv')

        assert response.status_code == 400
        errors = response.get_json()['errors']
        assert list(errors) == ['row 4']
        assert any(message.startswith('double:') for message in errors['row 4'])
        assert any(message.startswith('validTo:') for message in errors['row 4'])
        assert [r.id for r in repo.list_rate_rows(10)] == [1]

    def test_only_csv_files_are_accepted(self, admin):
        response = admin.post(
            '/api/admin/hotels/10/rates/import',
            data={'file': (io.BytesIO(b'not a sheet'), 'rates.xlsx')},
            content_type='multipart/form-data',
        )

        assert response.status_code == 400
        assert 'file' in response.get_json()['errors']

    def test_empty_upload(self, admin):
        response = admin.post('/api/admin/hotels/10/rates/import', data='', content_type='text/csv')
        assert response.status_code == 400

    def test_unknown_hotel(self, admin):
        response = admin.post('/api/admin/hotels/99/rates/import', data=RATE_SHEET, content_type='text/csv')
        assert response.status_code == 404


def _leg(number, departure, arrival, price=100, seats=30):
    return {'flightNumber': number, 'departureTime': departure, 'arrivalTime': arrival,
            'pricePerSeat': price, 'totalSeats': seats}


class TestFlightBlockAdmin:

    def test_requires_login(self, client):
        assert client.get('/api/admin/flight-blocks').status_code == 401

    def test_list(self, admin):
        blocks = admin.get('/api/admin/flight-blocks').get_json()['flightBlocks']

        assert [b['blockGroupId'] for b in blocks] == ['BLK-1']
        assert blocks[0]['nights'] == 3
        assert (blocks[0]['outbound']['id'], blocks[0]['return']['id']) == (1, 2)

    def test_create_pairs_outbound_and_return(self, admin, repo):
        response = admin.post('/api/admin/flight-blocks', json={
            'outboundFlight': _leg('MX201', '2026-08-01T08:00:00Z', '2026-08-01T11:30:00Z', price='99.90'),
            'returnFlight': _leg('MX202', '2026-08-08T11:30:00', '2026-08-08T15:00:00'),
        })

        assert response.status_code == 201
        body = response.get_json()
        assert body['blockGroupId'].startswith('BLOCK-')
        assert body['nights'] == 7
        assert body['flightPrice'] == 199.9
        assert body['availableSeats'] == 30
        assert body['outbound']['pricePerSeat'] == 99.9
        assert body['blockGroupId'] in repo.blocks

    def test_create_validates_each_leg(self, admin):
        response = admin.post('/api/admin/flight-blocks', json={
            'outboundFlight': {'flightNumber': 'MX201', 'departureTime': '2026-08-01T08:00:00Z',
                               'arrivalTime': '2026-08-01T11:30:00Z', 'pricePerSeat': 100},
            'returnFlight': _leg('MX202', '2026-08-01T10:00:00Z', '2026-08-01T09:00:00Z', price=-1),
        })

        assert response.status_code == 400
        errors = response.get_json()['errors']
        assert set(errors) == {
            'outboundFlight.totalSeats', 'returnFlight.pricePerSeat',
            'returnFlight.arrivalTime', 'returnFlight.departureTime',
        }

    def test_create_with_existing_block_id(self, admin):
        response = admin.post('/api/admin/flight-blocks', json={
            'blockGroupId': 'BLK-1',
            'outboundFlight': _leg('MX201', '2026-08-01T08:00:00Z', '2026-08-01T11:30:00Z'),
            'returnFlight': _leg('MX202', '2026-08-08T11:30:00Z', '2026-08-08T15:00:00Z'),
        })
        assert response.status_code == 400

    def test_update_reprices_and_resizes(self, admin):
        response = admin.put('/api/admin/flight-blocks/BLK-1/flights/1', json={'pricePerSeat': 150, 'totalSeats': 60})

        assert response.status_code == 200
        outbound = response.get_json()['outbound']
        assert outbound['pricePerSeat'] == 150.0
        assert (outbound['totalSeats'], outbound['availableSeats']) == (60, 60)

    def test_update_keeps_booked_seats(self, admin, repo):
        block = repo.blocks['BLK-1']
        repo.blocks['BLK-1'] = replace(block, outbound=replace(block.outbound, available_seats=40))

        assert admin.put('/api/admin/flight-blocks/BLK-1/flights/1', json={'totalSeats': 5}).status_code == 400
        response = admin.put('/api/admin/flight-blocks/BLK-1/flights/1', json={'totalSeats': 45})
        assert response.get_json()['outbound']['availableSeats'] == 35

    def test_update_cannot_move_return_before_arrival(self, admin):
        response = admin.put('/api/admin/flight-blocks/BLK-1/flights/2', json={'departureTime': '2026-07-10T11:00:00Z'})

        assert response.status_code == 400
        assert 'departureTime' in response.get_json()['errors']

    def test_update_unknown_flight_or_block(self, admin):
        assert admin.put('/api/admin/flight-blocks/BLK-1/flights/99', json={'totalSeats': 5}).status_code == 404
        assert admin.put('/api/admin/flight-blocks/NOPE/flights/1', json={'totalSeats': 5}).status_code == 404

    def test_delete(self, admin, repo):
        assert admin.delete('/api/admin/flight-blocks/BLK-1').status_code == 200
        assert admin.delete('/api/admin/flight-blocks/BLK-1').status_code == 404

    def test_delete_with_bookings_is_refused(self, admin, repo):
        repo.booked_blocks.add('BLK-1')

        response = admin.delete('/api/admin/flight-blocks/BLK-1')

        assert response.status_code == 400
        assert 'BLK-1' in repo.blocks


class TestBookings:

    def test_soft_book_requires_customer_fields(self, client):
        response = client.post('/api/bookings/soft-book', json={'packageId': 1, 'hotelId': 10})

        assert response.status_code == 400
        assert set(response.get_json()['errors']) == {'flightBlockId', 'customerName', 'customerEmail'}

    def test_soft_book_created(self, client, monkeypatch):
        monkeypatch.setattr(app_module, 'BookingService', _booking_service(create_soft_booking=BOOKING_ROW))

        response = client.post('/api/bookings/soft-book', json={
            'packageId': 1, 'hotelId': 10, 'flightBlockId': 'BLK-1', 'adults': 2,
            'customerName': 'Ana', 'customerEmail': 'ana@example.com',
        })

        assert response.status_code == 201
        assert response.get_json()['booking']['reservationCode'] == 'MXi-0007'

    def test_sold_out_is_a_conflict(self, client, monkeypatch):
        monkeypatch.setattr(
            app_module, 'BookingService',
            _booking_service(create_soft_booking=InventoryConflictError('Not enough available seats')),
        )

        response = client.post('/api/bookings/soft-book', json={
            'packageId': 1, 'hotelId': 10, 'flightBlockId': 'BLK-1',
            'customerName': 'Ana', 'customerEmail': 'ana@example.com',
        })

        assert response.status_code == 409

    def test_confirm_expired_booking_is_a_conflict(self, client, monkeypatch):
        monkeypatch.setattr(
            app_module, 'BookingService', _booking_service(confirm=BookingStateError('expired'))
        )
        assert client.post('/api/bookings/MXi-0007/confirm').status_code == 409

    def test_unknown_booking(self, client, monkeypatch):
        monkeypatch.setattr(
            app_module, 'BookingService', _booking_service(get_booking=ComponentNotFoundError('missing'))
        )
        assert client.get('/api/bookings/MXi-9999').status_code == 404

    def test_pay_requires_admin(self, client):
        assert client.post('/api/bookings/MXi-0007/pay').status_code == 401

    def test_cancel(self, client, monkeypatch):
        cancelled = dict(BOOKING_ROW, status='CANCELLED', cancel_reason='changed plans')
        monkeypatch.setattr(app_module, 'BookingService', _booking_service(cancel=cancelled))

        body = client.post('/api/bookings/MXi-0007/cancel', json={'reason': 'changed plans'}).get_json()

        assert body['booking']['status'] == 'CANCELLED'
        assert body['booking']['cancelReason'] == 'changed plans'


class TestExpiryCron:

    def test_secret_is_enforced(self, client, monkeypatch):
        monkeypatch.setenv('CRON_SECRET', 's3cret')
        monkeypatch.setattr(app_module, 'BookingService', _booking_service(expire_soft_bookings=[]))

        assert client.post('/api/cron/expire-bookings').status_code == 401
        response = client.post('/api/cron/expire-bookings', headers={'Authorization': 'Bearer s3cret'})
        assert response.get_json() == {'message': 'No expired bookings found', 'processed': 0}

    def test_reports_processed_bookings(self, client, monkeypatch):
        monkeypatch.delenv('CRON_SECRET', raising=False)
        expired = [{'id': 1, 'reservationCode': 'MXi-0001', 'status': 'expired'}]
        monkeypatch.setattr(app_module, 'BookingService', _booking_service(expire_soft_bookings=expired))

        body = client.get('/api/cron/expire-bookings').get_json()

        assert body['processed'] == 1
        assert body['results'] == expired

    def test_unexpected_failure(self, client, monkeypatch):
        monkeypatch.delenv('CRON_SECRET', raising=False)
        monkeypatch.setattr(
            app_module, 'BookingService', _booking_service(expire_soft_bookings=RuntimeError('db down'))
        )

        response = client.post('/api/cron/expire-bookings')

        assert response.status_code == 500
        assert response.get_json()['error'] == 'Failed to process expired bookings'


def test_unexpected_errors_are_hidden(client, monkeypatch):
    def broken(db):
        raise RuntimeError('connection refused')

    monkeypatch.setattr(app_module, '_services', broken)
    response = client.get('/api/public/packages/malta-summer')

    assert response.status_code == 500
    assert response.get_json() == {'success': False, 'error': 'Internal server error'}
