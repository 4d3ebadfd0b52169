"""
StreetEasy Monitor Backend API
FastAPI application that turns forwarded StreetEasy alert emails into
per-user rental listings.
"""

import logging
import os
from typing import List

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from se_monitor.routers import debug, inbound_email
from se_monitor.db import supabase_admin

# Configure logging to output to console
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="StreetEasy Monitor API",
    description="Listing ingestion from forwarded StreetEasy alert emails",
    version="0.1.0",
)


def get_cors_origins() -> List[str]:
    """
    Allowed CORS origins: the dashboard dev server plus any comma-separated
    entries in CORS_ORIGINS, first occurrence wins.
    """
    origins = ["http://localhost:3000"]
    for origin in os.getenv("CORS_ORIGINS", "").split(","):
        if origin.strip():
            origins.append(origin.strip())
    return list(dict.fromkeys(origins))


app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(inbound_email.router, prefix="/api/webhooks", tags=["webhooks"])
app.include_router(debug.router, prefix="/api/debug", tags=["debug"])


def describe_webhook_checks() -> List[str]:
    """Names of the webhook authentication checks currently in force."""
    if os.getenv("SKIP_WEBHOOK_VERIFICATION", "").strip().lower() in ("1", "true", "yes"):
        return []
    checks = []
    if os.getenv("INBOUND_WEBHOOK_SECRET"):
        checks.append("X-Webhook-Secret")
    if os.getenv("MAILGUN_SIGNING_KEY"):
        checks.append("Mailgun signature")
    return checks


@app.on_event("startup")
async def log_webhook_config() -> None:
    """
    Log how the inbound webhook is protected, so an open endpoint in a
    deployed environment shows up in the first lines of output.
    """
    checks = describe_webhook_checks()
    if checks:
        logger.info(f"Inbound email webhook checks: {', '.join(checks)}")
    else:
        logger.warning("Inbound email webhook accepts unauthenticated requests")
    if supabase_admin is None:
        logger.warning("SUPABASE_SERVICE_KEY is not set; ingestion cannot store emails or listings")


@app.get("/")
async def root():
    return {"message": "StreetEasy Monitor API", "version": "0.1.0"}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/health/db")
async def health_db():
    """Probe the listings table through the admin client. 503 when unreachable."""
    if supabase_admin is None:
        raise HTTPException(
            status_code=503,
            detail="Database client unavailable: SUPABASE_SERVICE_KEY is not configured",
        )

    try:
        supabase_admin.table("listings").select("id").limit(1).execute()
    except Exception as exc:
        logger.error(f"Listings table unreachable: {exc}")
        raise HTTPException(status_code=503, detail=f"Database connection failed: {exc}")
    return {"status": "ok", "database": "reachable"}
