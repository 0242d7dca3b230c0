from sqlalchemy.orm import Session

from autolister.db import SessionLocal


def session_factory() -> Session:
    return SessionLocal()
