from pydantic_settings import BaseSettings
from pydantic import Field
import os
from pathlib import Path
import dotenv

from .models import ADMIN_ROLES

# Always load apps/.env (relative to this file), regardless of where the process is started.
_APPS_DIR = Path(__file__).resolve().parents[1]
dotenv.load_dotenv(dotenv_path=_APPS_DIR / ".env", override=False)


class Settings(BaseSettings):
    APP_HOST: str = Field(default=os.getenv("APP_HOST", "0.0.0.0"))
    APP_PORT: int = Field(default=int(os.getenv("APP_PORT", "8000")))
    FRONTEND_BASE_URL: str = Field(default=os.getenv("FRONTEND_BASE_URL", "http://localhost:5173"))
    LOG_LEVEL: str = Field(default=os.getenv("LOG_LEVEL", "INFO"))

    # Firebase / Firestore (backend of record).
    # Path to a service account JSON; falls back to apps/serviceAccountKey.json.
    FIREBASE_CREDENTIALS_PATH: str = Field(
        default=os.getenv("FIREBASE_CREDENTIALS_PATH", str(_APPS_DIR / "serviceAccountKey.json"))
    )
    FIREBASE_STORAGE_BUCKET: str = Field(default=os.getenv("FIREBASE_STORAGE_BUCKET", ""))

    # Invoicing defaults
    DEFAULT_CURRENCY: str = Field(default=os.getenv("DEFAULT_CURRENCY", "INR"))
    DEFAULT_TAX_PERCENT: str = Field(default=os.getenv("DEFAULT_TAX_PERCENT", "18"))
    DEFAULT_PAYMENT_TERMS: str = Field(default=os.getenv("DEFAULT_PAYMENT_TERMS", "Net 30"))

    # Comma-separated roles allowed to confirm invoice payments.
    ACCOUNTING_ROLES: str = Field(default=os.getenv("ACCOUNTING_ROLES", "admin,super_admin,accounting"))

    # Real-time relay
    # If set, every committed invoice event is also POSTed here (best-effort).
    INVOICE_EVENTS_WEBHOOK_URL: str = Field(default=os.getenv("INVOICE_EVENTS_WEBHOOK_URL", ""))
    # Per-subscriber buffer; events beyond it are dropped (clients re-fetch anyway).
    EVENT_QUEUE_SIZE: int = Field(default=int(os.getenv("EVENT_QUEUE_SIZE", "100")))
    EVENT_HEARTBEAT_SECONDS: float = Field(default=float(os.getenv("EVENT_HEARTBEAT_SECONDS", "15")))

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def accounting_roles(self) -> set[str]:
        return {r.strip().lower() for r in (self.ACCOUNTING_ROLES or "").split(",") if r.strip()}

    @property
    def back_office_roles(self) -> set[str]:
        """Roles that see every invoice with the full admin view."""
        return set(ADMIN_ROLES) | self.accounting_roles


settings = Settings()
