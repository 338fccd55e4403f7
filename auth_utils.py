"""
Authentication utilities: identity-provider session token verification
"""

import logging
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional

import jwt

from config.settings import settings

logger = logging.getLogger(__name__)

# Local/dev tokens are HS256; the hosted identity provider signs with RS256
HS_ALGORITHM = "HS256"
JWKS_ALGORITHMS = ["RS256"]


@lru_cache(maxsize=4)
def _jwks_client(url: str) -> jwt.PyJWKClient:
    return jwt.PyJWKClient(url, cache_keys=True)


def _decode_options() -> dict:
    kwargs = {"options": {"verify_aud": False}}
    if settings.auth_issuer:
        kwargs["issuer"] = settings.auth_issuer
    return kwargs


def decode_session_token(token: str) -> Optional[dict]:
    """
    Verify an identity-provider session token.

    Uses AUTH_JWT_SECRET (HS256) when configured, otherwise the provider's
    JWKS endpoint at AUTH_JWKS_URL.

    Args:
        token: Raw JWT from the session cookie or Bearer header

    Returns:
        Claims dict, or None if the token is invalid or expired

    Raises:
        ValueError: If neither AUTH_JWT_SECRET nor AUTH_JWKS_URL is set
    """
    if settings.auth_jwt_secret:
        try:
            return jwt.decode(token, settings.auth_jwt_secret, algorithms=[HS_ALGORITHM], **_decode_options())
        except jwt.InvalidTokenError as e:
            logger.info(f"Rejected session token: {e}")
            return None

    if not settings.auth_jwks_url:
        raise ValueError("AUTH_JWT_SECRET or AUTH_JWKS_URL must be set to verify session tokens.")

    try:
        signing_key = _jwks_client(settings.auth_jwks_url).get_signing_key_from_jwt(token)
        return jwt.decode(token, signing_key.key, algorithms=JWKS_ALGORITHMS, **_decode_options())
    except jwt.PyJWKClientError as e:
        logger.warning(f"JWKS lookup failed: {e}")
        return None
    except jwt.InvalidTokenError as e:
        logger.info(f"Rejected session token: {e}")
        return None


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    email_verified: bool = False,
    expires_in: timedelta = timedelta(days=7),
) -> str:
    """
    Mint an HS256 session token for local development and tests.

    Args:
        user_id: Value for the ``sub`` claim
        email: Optional ``email`` claim
        email_verified: ``email_verified`` claim
        expires_in: Lifetime; a negative value produces an expired token

    Returns:
        Encoded JWT string

    Raises:
        ValueError: If AUTH_JWT_SECRET is not set
    """
    if not settings.auth_jwt_secret:
        raise ValueError("AUTH_JWT_SECRET is not set. Cannot create session token.")

    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "iat": now,
        "exp": now + expires_in,
        "email_verified": email_verified,
    }
    if email:
        payload["email"] = email
    if settings.auth_issuer:
        payload["iss"] = settings.auth_issuer
    return jwt.encode(payload, settings.auth_jwt_secret, algorithm=HS_ALGORITHM)
