#!/usr/bin/env python3
"""Deliver machines whose recorded movements are older than the retention period.

Meant to be run by hand or from cron; it calls the same engine entry point as
PUT /api/machines/check-delivered.
"""

from __future__ import annotations

import argparse
import logging
import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from machine_stock.services.errors import InvalidRetentionError
from machine_stock.services.machine_service import DEFAULT_RETENTION_YEARS, sweep_retention


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the machine retention sweep.")
    parser.add_argument(
        "--years",
        type=int,
        default=int(os.environ.get("RETENTION_YEARS") or DEFAULT_RETENTION_YEARS),
        help="Retention threshold in years (default RETENTION_YEARS or 5).",
    )
    parser.add_argument(
        "--db-url",
        default=os.environ.get("MACHINE_STOCK_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to MACHINE_STOCK_DB_URL env var.",
    )
    return parser


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    parser = _build_parser()
    args = parser.parse_args()

    if args.years < 0:
        parser.error("--years must be >= 0")
    if not args.db_url:
        parser.error("Missing DB URL. Set MACHINE_STOCK_DB_URL or pass --db-url.")

    engine = create_engine(args.db_url, pool_pre_ping=True, future=True)
    session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)
    with session_factory() as db:
        try:
            result = sweep_retention(db, years=args.years)
        except InvalidRetentionError as exc:
            parser.error(str(exc))

    print(f"OK updated={result['updatedCount']} failed={len(result['failed'])} cutoff={result['cutoff'].isoformat()}")
    for reference in result["machineReferences"]:
        print(f"  delivered {reference}")
    for failure in result["failed"]:
        print(f"  failed {failure['reference']}: {failure['error']}")
    return 1 if result["failed"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
