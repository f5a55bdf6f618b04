from fastapi import APIRouter, Depends, Response
import redis
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.session import get_db
from app.services.circuit_breaker import get_circuit_breaker


router = APIRouter()


def _check_database(db: Session) -> str | None:
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        return str(e)
    return None


def _check_redis() -> str | None:
    try:
        redis.Redis.from_url(settings.redis_url, socket_connect_timeout=2).ping()
    except redis.RedisError as e:
        return str(e)
    return None


@router.get("/health")
def health() -> dict:
    """Liveness probe - always returns 200 if app is running."""
    return {"status": "ok"}


@router.get("/ready")
def readiness(response: Response, db: Session = Depends(get_db)) -> dict:
    """Readiness probe - 503 when the store or Redis (breaker state) is unreachable."""
    checks = {"database": _check_database(db), "redis": _check_redis()}
    failed = {name: error for name, error in checks.items() if error}
    if failed:
        response.status_code = 503
        return {"status": "not_ready", "errors": failed}
    # an open provider circuit is reported but does not fail readiness
    return {"status": "ready", "provider_circuit": get_circuit_breaker("exotel").current_state}
