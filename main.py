"""
UnderwriteHQ Backend
Small-business acquisition underwriting: deal calculator, CIM analyzer,
industry benchmarks, plans and Stripe billing
"""

from pathlib import Path
import logging
import traceback

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

# Import routers
from auth import AuthGateMiddleware, auth_router
from routers.access_router import access_router
from routers.benchmarks_router import benchmarks_router
from routers.billing_router import billing_router
from routers.cim_router import cim_router
from routers.deal_calculator_router import deal_calculator_router
from routers.deals_router import deals_router
from utils.rate_limit import RateLimiterMiddleware
from database import init_db
from config.settings import settings, BENCHMARK_DIR, IS_PRODUCTION

# ============================================================================
# SHARED UTILITIES
# ============================================================================

# Logging setup - write ALL events to /logs/app.log
LOGS_DIR = Path("./logs")
LOGS_DIR.mkdir(exist_ok=True)
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(LOGS_DIR / "app.log"),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

# ============================================================================
# FASTAPI APP SETUP
# ============================================================================

app = FastAPI(title="UnderwriteHQ")


# Uncaught exception middleware - logs all unhandled exceptions and returns 500
class UncaughtExceptionMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Uncaught exception: {e}\n{traceback.format_exc()}")
            return JSONResponse(
                status_code=500,
                content={"ok": False, "error": "Internal Server Error"}
            )


# Keys the paid features need; missing ones only disable those features
REQUIRED_KEY_MAP = {
    "OPENAI_API_KEY": settings.openai_api_key,
    "STRIPE_SECRET_KEY": settings.stripe_secret_key,
    "STRIPE_WEBHOOK_SECRET": settings.stripe_webhook_secret,
    "STRIPE_PRICE_PRO": settings.stripe_price_pro,
    "STRIPE_PRICE_PRO_PLUS": settings.stripe_price_pro_plus,
}


# Security headers middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses: CSP, HSTS, X-Frame-Options, X-Content-Type-Options"""
    async def dispatch(self, request, call_next):
        response = await call_next(request)

        # Stripe Checkout and the billing portal are full-page redirects, so
        # only Stripe.js needs allowing here
        response.headers["Content-Security-Policy"] = (
            "default-src 'self'; "
            "script-src 'self' 'unsafe-inline' https://js.stripe.com; "
            "style-src 'self' 'unsafe-inline'; "
            "connect-src 'self' https://api.stripe.com; "
            "frame-src https://js.stripe.com; "
            "img-src 'self' data: blob:; "
            "font-src 'self' data:; "
            "object-src 'none'; "
            "base-uri 'self'; "
            "form-action 'self' https://checkout.stripe.com;"
        )

        # HSTS only where HTTPS is guaranteed
        if IS_PRODUCTION:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        # X-Frame-Options: Prevent clickjacking attacks
        response.headers["X-Frame-Options"] = "DENY"

        # X-Content-Type-Options: Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"

        return response


# the last one added runs outermost; the gate sits inside the error envelope
app.add_middleware(AuthGateMiddleware)
app.add_middleware(UncaughtExceptionMiddleware)
app.add_middleware(RateLimiterMiddleware)
app.add_middleware(SecurityHeadersMiddleware)

# CORS MUST be near the bottom
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.app_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Benchmark CSVs are public and served unchanged
if BENCHMARK_DIR.is_dir():
    app.mount("/data", StaticFiles(directory=str(BENCHMARK_DIR)), name="data")
else:
    logger.warning(f"Benchmark data directory not found: {BENCHMARK_DIR}")

# ============================================================================
# STARTUP CHECKS
# ============================================================================
@app.on_event("startup")
async def validate_keys():
    """Validate API keys are present (non-fatal)"""
    missing = [key for key, value in REQUIRED_KEY_MAP.items() if not value]
    if not (settings.auth_jwt_secret or settings.auth_jwks_url):
        missing.append("AUTH_JWT_SECRET or AUTH_JWKS_URL")

    if missing:
        logger.warning(f"Startup check: Missing environment variables: {', '.join(missing)}")
    else:
        logger.info("Startup check: All critical environment variables are set")


# Initialize database on startup
@app.on_event("startup")
async def initialize_database():
    """Create all tables."""
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

# ============================================================================
# INCLUDE ROUTERS
# ============================================================================
app.include_router(billing_router)
app.include_router(auth_router)
app.include_router(access_router)
app.include_router(deal_calculator_router)
app.include_router(cim_router)
app.include_router(deals_router)
app.include_router(benchmarks_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
