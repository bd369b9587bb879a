"""
JWT claim helpers for DeskAuth.

Tokens are decoded without signature verification: the client only needs the
expiry claim to schedule refreshes and the identity claims for display.
"""

import logging
import time
from datetime import datetime
from typing import Optional, Dict, Any

from jose import jwt, JWTError

from deskauth_common.models import UserInfo

logger = logging.getLogger(__name__)

# Refresh this long before the access token expires
REFRESH_MARGIN_SECONDS = 1800
# Largest delay a timer accepts (signed 32-bit milliseconds)
MAX_TIMER_DELAY_MS = 2 ** 31 - 1
# Delay used when the computed refresh moment is already in the past
MIN_REFRESH_DELAY_MS = 3000
# Delay used when there is no token to derive an expiry from
FALLBACK_REFRESH_DELAY_MS = 24 * 60 * 60 * 1000


def get_unverified_claims(token: str) -> Dict[str, Any]:
    """Decode the payload of a JWT without verifying it."""
    return jwt.get_unverified_claims(token)


def parse_token_expiration(token: Optional[str]) -> Optional[int]:
    """
    Return the ``exp`` claim of a JWT in epoch seconds.

    Args:
        token: JWT token string

    Returns:
        Expiry timestamp or None if the token is missing, malformed or has no expiry
    """
    if not token:
        return None

    try:
        exp = get_unverified_claims(token).get('exp')
    except JWTError as e:
        logger.warning(f"Failed to parse token expiration: {e}")
        return None

    if exp is None:
        return None

    try:
        return int(exp)
    except (TypeError, ValueError):
        logger.warning(f"Token carries a non-numeric exp claim: {exp!r}")
        return None


def compute_refresh_delay_ms(
    access_token: Optional[str],
    now_ms: Optional[int] = None,
    refresh_margin_seconds: int = REFRESH_MARGIN_SECONDS,
    min_delay_ms: int = MIN_REFRESH_DELAY_MS,
    fallback_delay_ms: int = FALLBACK_REFRESH_DELAY_MS
) -> int:
    """
    Milliseconds until the next refresh of ``access_token``.

    ``min(exp*1000 - margin*1000 - now, MAX_TIMER_DELAY_MS)``, replaced by
    ``min_delay_ms`` when not positive. Without a usable token the fallback
    interval applies.
    """
    if not access_token:
        return fallback_delay_ms

    exp = parse_token_expiration(access_token)
    if exp is None:
        logger.warning("Access token has no usable expiry, using fallback refresh interval")
        return fallback_delay_ms

    if now_ms is None:
        now_ms = int(time.time() * 1000)

    delay = min(exp * 1000 - refresh_margin_seconds * 1000 - now_ms, MAX_TIMER_DELAY_MS)
    return delay if delay > 0 else min_delay_ms


def decode_identity_claims(access_token: Optional[str]) -> Optional[UserInfo]:
    """
    Extract display identity from an access token.

    Returns None when there is no token or it cannot be decoded.
    """
    if not access_token:
        return None

    try:
        claims = get_unverified_claims(access_token)
    except JWTError as e:
        logger.warning(f"Failed to decode identity claims: {e}")
        return None

    properties = claims.get('properties')
    if not isinstance(properties, dict):
        properties = {}
    exp = parse_token_expiration(access_token)
    known = {
        'id', 'displayName', 'email', 'phone', 'organizationName',
        'organizationImageUrl', 'avatar', 'properties', 'exp',
    }

    phone = claims.get('phone')
    return UserInfo(
        id=claims.get('id'),
        name=properties.get('oauth_GitHub_username') or claims.get('displayName'),
        email=claims.get('email'),
        phone=str(phone) if phone is not None else None,
        organization_name=claims.get('organizationName'),
        organization_image_url=claims.get('organizationImageUrl'),
        avatar=claims.get('avatar'),
        expires_at=datetime.fromtimestamp(exp) if exp else None,
        extra={k: v for k, v in claims.items() if k not in known},
    )
