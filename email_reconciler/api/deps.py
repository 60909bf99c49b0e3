"""
Dependencies for admin authentication and runtime service handles.
"""
import secrets

from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from email_reconciler import config
from email_reconciler.reconciliation.scheduler import ReconciliationScheduler
from email_reconciler.reconciliation.task_config import SettingsProvider
from email_reconciler.utils import get_logger

logger = get_logger(__name__)
security = HTTPBearer(auto_error=False)


def require_admin(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> str:
    """
    Validate the bearer token against ADMIN_API_TOKEN.

    Returns:
        str: a short, loggable operator identity derived from the token

    Raises:
        HTTPException: 503 if no admin token is configured, 401 if the token is missing or wrong
    """
    expected = config.ADMIN_API_TOKEN
    if not expected:
        logger.warning("Admin endpoint called but ADMIN_API_TOKEN is not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API is not configured",
        )

    if credentials is None or not secrets.compare_digest(credentials.credentials, expected):
        logger.warning("Admin authentication failed")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing admin token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return "admin"


def get_scheduler(request: Request) -> ReconciliationScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Reconciliation scheduler not available")
    return scheduler


def get_settings_store(request: Request) -> SettingsProvider:
    store = getattr(request.app.state, "settings_store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Settings store not available")
    return store
