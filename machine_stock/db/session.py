import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from machine_stock.db.base import Base


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


MACHINE_STOCK_DB_URL = _require_env("MACHINE_STOCK_DB_URL")


def _connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": 30}
    return {}


engine_stock = create_engine(
    MACHINE_STOCK_DB_URL,
    connect_args=_connect_args(MACHINE_STOCK_DB_URL),
    pool_pre_ping=True,
    future=True,
)

SessionLocalStock = sessionmaker(
    bind=engine_stock,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)


def init_db() -> None:
    # Registers the tables on Base.metadata before creating them.
    from machine_stock.models import stock_models  # noqa: F401

    Base.metadata.create_all(bind=engine_stock)
