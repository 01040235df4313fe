"""
Dependencies for admin authentication, database sessions, and engine services.
"""
from typing import Generator, Optional
from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from accrual_engine import config, database
from accrual_engine.services.accrual_scheduler import AccrualScheduler
from accrual_engine.services.outbox_dispatcher import OutboxDispatcher
from accrual_engine.utils import get_logger

logger = get_logger(__name__)
security = HTTPBearer(auto_error=False)


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.
    Ensures proper session lifecycle management with automatic cleanup.

    Yields:
        Session: SQLAlchemy database session
    """
    db = database.SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error("Database session error", error=str(e), exc_info=True)
        db.rollback()
        raise
    finally:
        db.close()


def require_admin_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """
    Validate the admin bearer token against ``ADMIN_API_TOKEN``.

    The token is read at call time so it can be rotated (or monkeypatched in tests)
    without rebuilding the app. With no token configured every admin call is refused.

    Raises:
        HTTPException: 503 if no token is configured, 401 if missing or wrong
    """
    expected = config.ADMIN_API_TOKEN
    if not expected:
        logger.warning("Admin access refused: ADMIN_API_TOKEN not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API disabled",
        )
    if credentials is None or credentials.credentials != expected:
        provided = credentials.credentials if credentials else None
        logger.warning(
            "Admin authentication failed",
            provided_token_prefix=provided[:6] + "..." if provided and len(provided) > 6 else provided
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return credentials.credentials


def get_scheduler(request: Request) -> AccrualScheduler:
    scheduler = getattr(request.app.state, "accrual_scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Accrual scheduler not available")
    return scheduler


def get_dispatcher(request: Request) -> OutboxDispatcher:
    dispatcher = getattr(request.app.state, "outbox_dispatcher", None)
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="Outbox dispatcher not available")
    return dispatcher


MAX_PAGE_SIZE = 500


def get_pagination_params(limit: int = 50, offset: int = 0) -> dict:
    """Listing window for admin queries; 400 outside 1..500 / negative offset."""
    problem = None
    if not 1 <= limit <= MAX_PAGE_SIZE:
        problem = f"Limit must be between 1 and {MAX_PAGE_SIZE}"
    elif offset < 0:
        problem = "Offset must be >= 0"
    if problem:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=problem)
    return {"limit": limit, "offset": offset}
