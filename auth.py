"""
Authentication dependencies, page gate middleware and debug routes

Identity lives with the third-party provider; this module only verifies
the provider's session token and exposes the caller's user ID.
"""

import logging
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import RedirectResponse

from auth_utils import decode_session_token
from utils.shared_utils import app_link

logger = logging.getLogger(__name__)

SESSION_COOKIE = "__session"

# Page routes that require a signed-in user
PROTECTED_PREFIXES = ("/deal-calculator", "/cim-analyzer", "/dashboard", "/account")
# Page routes a signed-in user is bounced away from
AUTH_PAGES = ("/login", "/signup")

auth_router = APIRouter(prefix="/api/debug", tags=["auth"])


class CurrentUser(BaseModel):
    user_id: str
    email: Optional[str] = None
    email_verified: bool = False


def _extract_token(session_cookie: Optional[str], authorization: Optional[str]) -> Optional[str]:
    # Cookie first (browser), then Bearer header (API consumers)
    if session_cookie:
        return session_cookie
    if authorization and authorization.startswith("Bearer "):
        return authorization[len("Bearer "):].strip() or None
    return None


def _user_from_claims(claims: dict) -> Optional[CurrentUser]:
    user_id = claims.get("sub")
    if not user_id:
        return None
    return CurrentUser(
        user_id=str(user_id),
        email=claims.get("email"),
        email_verified=bool(claims.get("email_verified", False)),
    )


async def get_current_user(
    session_cookie: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> CurrentUser:
    """
    Dependency function to get the current authenticated user.

    Authentication priority:
    1. ``__session`` cookie set by the identity provider's frontend SDK
    2. Authorization header (Bearer token) for API consumers
    3. Raise 401 if neither is present or the token does not verify
    """
    token = _extract_token(session_cookie, authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Missing authentication token")

    claims = decode_session_token(token)
    if not claims:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user = _user_from_claims(claims)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    return user


async def get_optional_user(
    session_cookie: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> Optional[CurrentUser]:
    """Same as get_current_user but returns None instead of raising 401."""
    token = _extract_token(session_cookie, authorization)
    if not token:
        return None
    claims = decode_session_token(token)
    return _user_from_claims(claims) if claims else None


class AuthGateMiddleware(BaseHTTPMiddleware):
    """
    Redirects page requests based on sign-in state.

    API routes are never redirected; their handlers answer 401 themselves.
    """

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path.startswith("/api") or path.startswith("/data"):
            return await call_next(request)

        is_protected = any(path == p or path.startswith(p + "/") for p in PROTECTED_PREFIXES)
        # exact match; /login/sso-callback must pass through
        is_auth_page = path in AUTH_PAGES
        if not (is_protected or is_auth_page):
            return await call_next(request)

        token = _extract_token(request.cookies.get(SESSION_COOKIE), request.headers.get("authorization"))
        claims = decode_session_token(token) if token else None
        signed_in = bool(claims and claims.get("sub"))

        if is_protected and not signed_in:
            return RedirectResponse(url=app_link(f"/login?redirect_url={quote(path, safe='/')}"), status_code=307)
        if is_auth_page and signed_in:
            return RedirectResponse(url=app_link("/"), status_code=307)

        return await call_next(request)


@auth_router.get("/whoami")
async def whoami(user: Optional[CurrentUser] = Depends(get_optional_user)):
    """Echo the caller's user ID (null when signed out)."""
    return {"userId": user.user_id if user else None}
