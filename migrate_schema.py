"""
Migration: create the package pricing schema
Run once (safe to re-run): python migrate_schema.py

All money columns hold integer minor units (cents).
"""
import logging

from db import get_db

logger = logging.getLogger(__name__)

SQL = """
CREATE TABLE IF NOT EXISTS hotels (
    id SERIAL PRIMARY KEY,
    name VARCHAR(200) NOT NULL,
    slug VARCHAR(200) UNIQUE,
    city_id INTEGER,
    active BOOLEAN NOT NULL DEFAULT TRUE,
    available_rooms INTEGER CHECK (available_rooms IS NULL OR available_rooms >= 0),
    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS hotel_prices (
    id SERIAL PRIMARY KEY,
    hotel_id INTEGER NOT NULL REFERENCES hotels(id) ON DELETE CASCADE,
    valid_from DATE NOT NULL,
    valid_to DATE NOT NULL,
    single_rate INTEGER NOT NULL CHECK (single_rate >= 0),
    double_rate INTEGER NOT NULL CHECK (double_rate >= 0),
    extra_bed_rate INTEGER NOT NULL CHECK (extra_bed_rate >= 0),
    paying_child_min_age INTEGER NOT NULL,
    paying_child_max_age INTEGER NOT NULL,
    child_rate INTEGER NOT NULL CHECK (child_rate >= 0),
    board VARCHAR(50) NOT NULL DEFAULT '',
    CHECK (valid_to >= valid_from),
    CHECK (paying_child_max_age >= paying_child_min_age)
);

CREATE TABLE IF NOT EXISTS flights (
    id SERIAL PRIMARY KEY,
    flight_number VARCHAR(20) NOT NULL,
    block_group_id VARCHAR(64),
    departure_time TIMESTAMPTZ NOT NULL,
    arrival_time TIMESTAMPTZ NOT NULL,
    price_per_seat INTEGER NOT NULL DEFAULT 0 CHECK (price_per_seat >= 0),
    total_seats INTEGER NOT NULL DEFAULT 0,
    available_seats INTEGER NOT NULL DEFAULT 0 CHECK (available_seats >= 0),
    is_block_seat BOOLEAN NOT NULL DEFAULT TRUE
);

CREATE TABLE IF NOT EXISTS transfers (
    id SERIAL PRIMARY KEY,
    name VARCHAR(200) NOT NULL,
    price INTEGER NOT NULL DEFAULT 0 CHECK (price >= 0)
);

CREATE TABLE IF NOT EXISTS packages (
    id SERIAL PRIMARY KEY,
    name VARCHAR(200) NOT NULL,
    slug VARCHAR(200) NOT NULL UNIQUE,
    description TEXT,
    city_id INTEGER,
    active BOOLEAN NOT NULL DEFAULT TRUE,
    featured BOOLEAN NOT NULL DEFAULT FALSE,
    available_from DATE,
    available_to DATE,
    hotel_id INTEGER REFERENCES hotels(id),
    hotel_ids JSONB NOT NULL DEFAULT '[]',
    flight_block_ids JSONB NOT NULL DEFAULT '[]',
    departure_flight_id INTEGER REFERENCES flights(id),
    return_flight_id INTEGER REFERENCES flights(id),
    includes_transfer BOOLEAN NOT NULL DEFAULT FALSE,
    transfer_id INTEGER REFERENCES transfers(id),
    service_charge INTEGER NOT NULL DEFAULT 0,
    profit_margin NUMERIC(6,2)
);

CREATE TABLE IF NOT EXISTS package_prices (
    id SERIAL PRIMARY KEY,
    package_id INTEGER NOT NULL REFERENCES packages(id) ON DELETE CASCADE,
    adults INTEGER NOT NULL,
    children INTEGER NOT NULL DEFAULT 0,
    child_ages VARCHAR(50) NOT NULL DEFAULT '',
    flight_price INTEGER NOT NULL,
    hotel_price INTEGER NOT NULL,
    transfer_price INTEGER NOT NULL DEFAULT 0,
    total_price INTEGER NOT NULL,
    hotel_id INTEGER REFERENCES hotels(id) ON DELETE CASCADE,
    hotel_name VARCHAR(200) NOT NULL,
    hotel_board VARCHAR(50),
    room_type VARCHAR(100),
    flight_block_id VARCHAR(64) NOT NULL,
    nights INTEGER NOT NULL,
    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP
);

CREATE SEQUENCE IF NOT EXISTS reservation_code_seq START 1;

CREATE TABLE IF NOT EXISTS bookings (
    id SERIAL PRIMARY KEY,
    reservation_code VARCHAR(32) NOT NULL UNIQUE,
    status VARCHAR(20) NOT NULL DEFAULT 'SOFT'
        CHECK (status IN ('SOFT', 'CONFIRMED', 'PAID', 'CANCELLED')),
    package_id INTEGER REFERENCES packages(id),
    flight_block_id VARCHAR(64),
    outbound_flight_id INTEGER REFERENCES flights(id),
    return_flight_id INTEGER REFERENCES flights(id),
    hotel_id INTEGER REFERENCES hotels(id),
    adults INTEGER NOT NULL,
    children INTEGER NOT NULL DEFAULT 0,
    child_ages VARCHAR(50) NOT NULL DEFAULT '',
    seats_held INTEGER NOT NULL DEFAULT 0,
    rooms_held INTEGER NOT NULL DEFAULT 0,
    total_amount INTEGER NOT NULL CHECK (total_amount >= 0),
    currency VARCHAR(3) NOT NULL DEFAULT 'EUR',
    customer_name VARCHAR(200),
    customer_email VARCHAR(200),
    expires_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
    confirmed_at TIMESTAMPTZ,
    paid_at TIMESTAMPTZ,
    cancelled_at TIMESTAMPTZ,
    cancel_reason TEXT
);

CREATE INDEX IF NOT EXISTS idx_hotel_prices_hotel ON hotel_prices(hotel_id, valid_from, valid_to);
CREATE INDEX IF NOT EXISTS idx_flights_block_group ON flights(block_group_id) WHERE block_group_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_packages_city ON packages(city_id) WHERE active = TRUE;
CREATE INDEX IF NOT EXISTS idx_package_prices_package ON package_prices(package_id);
CREATE INDEX IF NOT EXISTS idx_bookings_soft_expiry ON bookings(expires_at) WHERE status = 'SOFT';
"""


def migrate(conn) -> None:
    cur = conn.cursor()
    try:
        cur.execute(SQL)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        cur.close()


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    conn = get_db()
    try:
        migrate(conn)
        logger.info("Package pricing schema is up to date.")
    finally:
        conn.close()
