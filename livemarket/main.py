import asyncio
import logging
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from livemarket.api import auctions, bids, escrow
from livemarket.config import settings
from livemarket.db_init import init_db
from livemarket.jobs import start_background_jobs
from livemarket.webhooks import stripe_webhook

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("livemarket.startup")

SUPPORTED_DB_SCHEMES = {"sqlite", "postgres", "postgresql", "postgresql+psycopg"}


def _cors_origins() -> list[str]:
    return [origin.strip() for origin in settings.CORS_ORIGINS.split(",") if origin.strip()]


def _validate_database_url_for_runtime(database_url: str) -> None:
    url = urlparse(database_url)
    if not url.scheme:
        raise RuntimeError("DATABASE_URL is missing URL scheme (expected postgresql:// or sqlite://).")
    if url.scheme not in SUPPORTED_DB_SCHEMES:
        raise RuntimeError(f"DATABASE_URL has unsupported scheme '{url.scheme}'.")
    if url.scheme == "sqlite":
        return
    if not url.hostname:
        raise RuntimeError("DATABASE_URL is missing host.")
    if not url.path.lstrip("/"):
        raise RuntimeError("DATABASE_URL is missing database name in path.")


def _db_url_diagnostics(database_url: str) -> str:
    """Connection target without credentials, safe for logs."""
    url = urlparse(database_url)
    return (
        f"scheme={url.scheme or '<missing>'}, host={url.hostname or '<missing>'}, "
        f"port={url.port or '<default>'}, database={url.path.lstrip('/') or '<missing>'}"
    )


def _validate_required_env_for_runtime() -> None:
    problems = []

    if not settings.JWT_SECRET.strip():
        problems.append("JWT_SECRET is required.")

    origins = _cors_origins()
    bad_origins = [o for o in origins if urlparse(o).scheme not in {"http", "https"} or not urlparse(o).hostname]
    if not origins:
        problems.append("CORS_ORIGINS must contain at least one comma-separated origin URL.")
    elif bad_origins:
        problems.append(f"CORS_ORIGINS contains invalid URL(s): {', '.join(bad_origins)}")

    try:
        if not 0 <= settings.PLATFORM_FEE_RATE < 1:
            problems.append("PLATFORM_FEE_RATE must be in [0, 1).")
    except ArithmeticError:
        problems.append("PLATFORM_FEE_RATE must be a decimal number, e.g. 0.08")

    if settings.ESCROW_AUTO_RELEASE_DAYS < 1:
        problems.append("ESCROW_AUTO_RELEASE_DAYS must be at least 1.")

    if not settings.STRIPE_SECRET_KEY:
        logger.warning("STRIPE_SECRET_KEY is not set; escrow endpoints will answer 503.")
    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.warning("STRIPE_WEBHOOK_SECRET is not set; Stripe events will be acknowledged and ignored.")

    if problems:
        raise RuntimeError("Startup environment validation failed: " + " | ".join(problems))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application startup initiated.")
    database_url = settings.DATABASE_URL
    logger.info("Database target: %s", _db_url_diagnostics(database_url))
    try:
        _validate_database_url_for_runtime(database_url)
        _validate_required_env_for_runtime()
        init_db()
    except Exception:
        logger.exception("Startup failed (database target: %s)", _db_url_diagnostics(database_url))
        raise

    jobs = start_background_jobs() if settings.JOBS_ENABLED else []
    logger.info("Application startup completed (background jobs: %s).", "on" if jobs else "off")
    try:
        yield
    finally:
        for job in jobs:
            job.cancel()
        await asyncio.gather(*jobs, return_exceptions=True)


app = FastAPI(
    title="Livemarket API",
    description=(
        "Live-auction bidding engine (proxy bids, anti-snipe extensions) and "
        "escrow-protected checkout. Protected endpoints take a Bearer JWT whose `sub` is the user id."
    ),
    version="1.0.0",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Auctions", "description": "Auction state, lifecycle and bidding."},
        {"name": "Bids", "description": "My bids and max (proxy) bids."},
        {"name": "Escrow", "description": "Authorize, release, refund and dispute escrowed payments."},
        {"name": "Webhooks", "description": "Called by Stripe."},
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(auctions.router, prefix="/api/auctions", tags=["Auctions"])
app.include_router(bids.router, prefix="/api/bids", tags=["Bids"])
app.include_router(escrow.router, prefix="/api/escrow", tags=["Escrow"])
app.include_router(stripe_webhook.router, prefix="/webhooks", tags=["Webhooks"])


@app.get("/")
def root():
    return {"status": "ok", "service": "Livemarket API"}


@app.get("/health")
def health():
    return {"status": "ok"}
