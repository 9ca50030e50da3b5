#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from machine_stock.db.base import Base
from machine_stock.models import stock_models  # noqa: F401
from machine_stock.services.user_service import ROLES, upsert_user


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create/update one Users record directly from terminal.",
    )
    parser.add_argument("--email", required=True, help="Login email")
    parser.add_argument("--role", choices=list(ROLES), default=None, help="Role; defaults to Viewer for new users")
    parser.add_argument(
        "--password",
        default=None,
        help="Password to set. Required for a new user, optional otherwise.",
    )
    parser.add_argument(
        "--db-url",
        default=os.environ.get("MACHINE_STOCK_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to MACHINE_STOCK_DB_URL env var.",
    )
    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    if not args.db_url:
        parser.error("Missing DB URL. Set MACHINE_STOCK_DB_URL or pass --db-url.")

    engine = create_engine(args.db_url, pool_pre_ping=True, future=True)
    Base.metadata.create_all(bind=engine)
    session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)
    with session_factory() as db:
        try:
            user = upsert_user(db, email=args.email, role=args.role, password=args.password)
        except ValueError as exc:
            parser.error(str(exc))

    print(f"OK user_id={user.UserID} email={user.Email} role={user.Role} has_password={bool(user.PasswordHash)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
