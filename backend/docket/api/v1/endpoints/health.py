"""
Health and readiness checks – database connectivity and provider mode.
"""
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from docket.core.config import settings
from docket.core.logger import logger
from docket.db.database import get_db

router = APIRouter()


def _check_database(db: Session) -> tuple[str, str]:
    """Returns (status, detail). Status is 'ok' or 'error'."""
    try:
        db.execute(text("SELECT 1"))
        return "ok", "Database reachable"
    except Exception as e:
        logger.warning("Health check: database unreachable: %s", e)
        return "error", f"Database: {str(e)}"


@router.get("")
def health(db: Session = Depends(get_db)):
    db_status, db_detail = _check_database(db)
    return {
        "status": "healthy" if db_status == "ok" else "degraded",
        "app": settings.APP_NAME,
        "communicationProvider": settings.COMMUNICATION_PROVIDER,
        "checks": {"database": {"status": db_status, "detail": db_detail}},
    }
