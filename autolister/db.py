from collections.abc import Iterator

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker

from autolister.models import Base
from autolister.settings import settings


def _connect_args(url: str) -> dict:
    # SQLite는 FastAPI 스레드풀에서 같은 커넥션을 공유할 수 있어야 함
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    connect_args=_connect_args(settings.database_url),
)

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    expire_on_commit=False,
)


def get_session() -> Iterator[Session]:
    with SessionLocal() as session:
        yield session


def init_db() -> None:
    Base.metadata.create_all(bind=engine)


def check_database_connection() -> bool:
    """DB 연결 상태 확인 (DATABASE_ERROR 복구 전략의 health check)"""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
