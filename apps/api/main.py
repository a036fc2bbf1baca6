from __future__ import annotations

# File: apps/api/main.py
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .database import db
from .invoicing import router as invoicing_router
from .settings import settings


logging.basicConfig(
    level=str(settings.LOG_LEVEL or "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# --- FastAPI App ---

app = FastAPI(title="FreightPower Invoicing API")

app.add_middleware(
    CORSMiddleware,
    # Explicit origins are required when using credentials (Authorization cookies/headers).
    # FRONTEND_BASE_URL is configurable via apps/.env.
    allow_origins=list({
        str(getattr(settings, 'FRONTEND_BASE_URL', '') or '').rstrip('/'),
        'http://localhost:5173',
        'http://127.0.0.1:5173',
        'http://localhost:3000',
        'http://127.0.0.1:3000',
    } - {''}),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(invoicing_router)


@app.get("/health")
def health():
    return {"status": "ok", "firestore": db is not None}


@app.on_event("startup")
def startup_events():
    if db is None:
        logger.warning("Firestore is not configured; invoice endpoints will fail until credentials are provided")
    logger.info(
        "Invoicing API started currency=%s tax_percent=%s webhook=%s",
        settings.DEFAULT_CURRENCY,
        settings.DEFAULT_TAX_PERCENT,
        bool(settings.INVOICE_EVENTS_WEBHOOK_URL),
    )
