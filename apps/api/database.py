import logging
import os

import firebase_admin
from firebase_admin import credentials, firestore

from .settings import settings

logger = logging.getLogger(__name__)


def _init_firebase() -> bool:
    """Initialize the Firebase app once. Returns False when no credentials are configured."""
    if firebase_admin._apps:
        return True

    options = {}
    if settings.FIREBASE_STORAGE_BUCKET:
        options["storageBucket"] = settings.FIREBASE_STORAGE_BUCKET

    service_account_path = settings.FIREBASE_CREDENTIALS_PATH
    if service_account_path and os.path.exists(service_account_path):
        cred = credentials.Certificate(service_account_path)
        firebase_admin.initialize_app(cred, options or None)
        return True

    # Emulator or ambient Google credentials (Cloud Run, GCE, gcloud auth).
    if os.getenv("FIRESTORE_EMULATOR_HOST") or os.getenv("GOOGLE_APPLICATION_CREDENTIALS"):
        firebase_admin.initialize_app(options=options or None)
        return True

    logger.warning(
        "Firebase credentials not found at %s; Firestore is disabled", service_account_path
    )
    return False


db = firestore.client() if _init_firebase() else None
