import os

from fastapi import Depends, FastAPI
from sqlalchemy import text
from sqlalchemy.orm import Session

from autolister.api.endpoints import jobs, listings, orchestration
from autolister.db import check_database_connection, get_session, init_db
from autolister.services.error_recovery import RecoveryEngine
from autolister.settings import settings

app = FastAPI(title="autolister")

# 프로세스 단위 복구 엔진 (에러 빈도 카운터는 재시작 시 초기화됨)
app.state.recovery = RecoveryEngine(settings, health_check=check_database_connection)

app.include_router(listings.router, prefix="/api/listings", tags=["Listings"])
app.include_router(jobs.router, prefix="/api/jobs", tags=["Jobs"])
app.include_router(orchestration.router, prefix="/api/pipeline", tags=["Pipeline"])


@app.on_event("startup")
def on_startup() -> None:
    # Auto-create tables (Alembic is preferred)
    if os.getenv("DB_AUTO_CREATE_TABLES", "").strip() in ("1", "true", "TRUE", "yes", "YES"):
        init_db()


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/db/ping")
def db_ping(session: Session = Depends(get_session)) -> dict:
    value = session.execute(text("SELECT 1")).scalar_one()
    return {"ok": value == 1}
