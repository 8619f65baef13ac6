"""
Security Module
===============

Shared-secret authentication for the mobile client and operator tooling.

Every subscription endpoint and the App Store test-notification endpoints
require the ``X-API-Key`` header. The App Store webhook is authenticated by
its JWS signature instead and never checks this key.
"""

import hmac
import logging
from typing import Optional

from app.config import settings

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"


def verify_api_key(provided: Optional[str], expected: Optional[str] = None) -> bool:
    """
    Compare a presented API key with the configured one in constant time.

    Args:
        provided: Value of the X-API-Key header (may be missing)
        expected: Key to compare against (defaults to settings.API_KEY)

    Returns:
        True only when both keys are non-empty and equal
    """
    expected = settings.API_KEY if expected is None else expected

    if not expected:
        # An unset key would otherwise let every request through
        logger.error("API_KEY is not configured; rejecting authenticated request")
        return False

    if not provided:
        return False

    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
