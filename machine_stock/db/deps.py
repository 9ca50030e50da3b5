from collections.abc import Generator

from .session import SessionLocalStock


def get_stock_db() -> Generator:
    db = SessionLocalStock()
    try:
        yield db
    finally:
        db.close()
