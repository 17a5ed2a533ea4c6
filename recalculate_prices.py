#!/usr/bin/env python3
"""
Rebuild stored package price matrices from the command line.

    python recalculate_prices.py --package 12
    python recalculate_prices.py --all

Uses the same PriceMatrixBuilder as the admin route, so script and HTTP
recalculation always produce identical rows.
"""
import argparse
import logging
import sys

from db import LOG_LEVEL, get_db
from price_matrix import PriceMatrixBuilder
from pricing_engine import PricingEngineError
from repository import PackageRepository

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Recalculate precomputed package prices")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument('--package', type=int, action='append', dest='package_ids',
                        help="Package id to recalculate (repeatable)")
    target.add_argument('--all', action='store_true', help="Recalculate every active package")
    return parser.parse_args(argv)


def recalculate(repository, package_ids):
    """Rebuild each package; returns {package_id: row count or None on failure}."""
    builder = PriceMatrixBuilder(repository)
    results = {}
    for package_id in package_ids:
        try:
            summary = builder.rebuild(package_id)
            results[package_id] = summary['count']
        except PricingEngineError as e:
            logger.error(f"Package {package_id}: recalculation failed: {e}")
            results[package_id] = None
    return results


def main(argv=None) -> int:
    logging.basicConfig(level=LOG_LEVEL)
    args = parse_args(argv)

    conn = get_db()
    try:
        repository = PackageRepository(conn)
        package_ids = repository.list_active_package_ids() if args.all else args.package_ids
        results = recalculate(repository, package_ids)
    finally:
        conn.close()

    failed = [pid for pid, count in results.items() if count is None]
    logger.info(f"Recalculated {len(results) - len(failed)} package(s), {len(failed)} failed")
    return 1 if failed else 0


if __name__ == '__main__':
    sys.exit(main())
