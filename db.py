"""
Database connection and environment configuration shared by the Flask app
and the maintenance scripts.
"""

import os

import psycopg2
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.environ.get('DATABASE_URL')

DB_CONFIG = {
    'host': os.environ.get('DB_HOST', 'localhost'),
    'port': int(os.environ.get('DB_PORT', 5432)),
    'database': os.environ.get('DB_NAME', 'package_pricing'),
    'user': os.environ.get('DB_USER', 'postgres'),
    'password': os.environ.get('DB_PASS', ''),
}

LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()
SOFT_BOOKING_TTL_HOURS = int(os.environ.get('SOFT_BOOKING_TTL_HOURS', 3))
RESERVATION_CODE_PREFIX = os.environ.get('RESERVATION_CODE_PREFIX', 'MXi')


def get_db():
    if DATABASE_URL:
        return psycopg2.connect(DATABASE_URL)
    return psycopg2.connect(**DB_CONFIG)


def row_to_dict(cursor, row):
    if row is None:
        return None
    cols = [d[0] for d in cursor.description]
    return dict(zip(cols, row))


def rows_to_dicts(cursor, rows):
    cols = [d[0] for d in cursor.description]
    return [dict(zip(cols, r)) for r in rows]
