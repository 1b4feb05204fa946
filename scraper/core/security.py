"""
Shared-secret verification for inbound callbacks and admin routes.

Tokens are compared in constant time. The expected secrets come from required
settings, so an unconfigured secret is a startup error rather than an open
endpoint.
"""
import hmac
import logging
from typing import Optional

from fastapi import Header, HTTPException, Query, status

from scraper.core.config import get_settings

logger = logging.getLogger(__name__)


def tokens_match(provided: Optional[str], expected: str) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def verify_job_webhook_token(token: Optional[str] = Query(None)):
    """Job platform callbacks carry the secret as a `token` query parameter."""
    if not tokens_match(token, get_settings().job_platform_webhook_secret):
        logger.warning("Rejected job webhook with invalid token")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


def verify_internal_token(x_internal_token: Optional[str] = Header(None)):
    """Lifecycle webhooks from the billing/tenant side."""
    if not tokens_match(x_internal_token, get_settings().internal_api_token):
        logger.warning("Rejected lifecycle webhook with invalid token")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


def verify_admin_token(x_admin_token: Optional[str] = Header(None)):
    if not tokens_match(x_admin_token, get_settings().admin_api_token):
        logger.warning("Rejected admin request with invalid token")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
