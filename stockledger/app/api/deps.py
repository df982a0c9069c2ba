from __future__ import annotations

from typing import Generator

from sqlalchemy.orm import Session

from stockledger.app.db.session import SessionLocal, get_engine


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal(bind=get_engine())
    try:
        yield db
    finally:
        db.close()
