# File: apps/api/auth.py
from fastapi import HTTPException, Header, Depends
from firebase_admin import auth as firebase_auth
import asyncio
import logging
import time
from typing import Dict, Any

from .database import db
from .models import Role

logger = logging.getLogger(__name__)


async def _to_thread(fn, timeout_s: float = 25.0):
    """Run blocking SDK calls off the event loop with a soft timeout."""
    return await asyncio.wait_for(asyncio.to_thread(fn), timeout=timeout_s)


# Simple in-memory caches to reduce repeated Admin SDK + Firestore calls.
# These are best-effort and process-local (fine for single-instance dev).
_TOKEN_CACHE: dict[str, tuple[float, dict]] = {}
_USER_CACHE: dict[str, tuple[float, dict]] = {}


def _cache_get(cache: dict, key: str):
    item = cache.get(key)
    if not item:
        return None
    expires_at, value = item
    if expires_at < time.time():
        cache.pop(key, None)
        return None
    return value


def _cache_set(cache: dict, key: str, value: dict, ttl_s: float):
    cache[key] = (time.time() + float(ttl_s), value)


async def user_from_token(token: str) -> Dict[str, Any]:
    """Verify a Firebase ID token and return the Firestore user profile with uid and role."""
    token = str(token or "").strip()
    if not token:
        raise HTTPException(status_code=401, detail="Missing token")
    if db is None:
        raise HTTPException(status_code=503, detail="Firestore is not configured")

    try:
        decoded_token = _cache_get(_TOKEN_CACHE, token)
        if not decoded_token:
            decoded_token = await _to_thread(lambda: firebase_auth.verify_id_token(token), timeout_s=25.0)
            # Cache briefly; tokens are stable but we keep TTL short for safety.
            _cache_set(_TOKEN_CACHE, token, decoded_token, ttl_s=60.0)
        uid = decoded_token.get("uid")
        if not uid:
            raise HTTPException(status_code=401, detail="Invalid token structure")

        user_data = _cache_get(_USER_CACHE, uid)
        if not user_data:
            user_doc = await _to_thread(db.collection("users").document(uid).get, timeout_s=25.0)
            if not user_doc.exists:
                # Treat as unauthorized so clients can cleanly log out.
                raise HTTPException(status_code=401, detail="Account deleted or profile missing")
            user_data = user_doc.to_dict() or {}
            _cache_set(_USER_CACHE, uid, user_data, ttl_s=15.0)

        user_data = dict(user_data)
        user_data["uid"] = uid
        role = str(user_data.get("role") or "").strip().lower()
        if role not in {r.value for r in Role}:
            raise HTTPException(status_code=403, detail="Account has no portal role")
        user_data["role"] = role
        return user_data

    except asyncio.TimeoutError:
        raise HTTPException(
            status_code=503,
            detail="Auth service timeout. Firebase/Firestore is not responding in time.",
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.info("Token verification failed: %s", e)
        raise HTTPException(status_code=401, detail="Invalid or expired token")


async def get_current_user(authorization: str = Header(...)) -> Dict[str, Any]:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header format")
    return await user_from_token(authorization.split(" ", 1)[1])


def require_role(*allowed_roles: Role):
    """Dependency factory to require specific roles for endpoints."""
    async def role_check(user: Dict[str, Any] = Depends(get_current_user)):
        if user.get("role") not in {r.value for r in allowed_roles}:
            raise HTTPException(
                status_code=403,
                detail=f"Access denied. Required roles: {[r.value for r in allowed_roles]}"
            )
        return user
    return role_check


def require_admin(user: Dict[str, Any] = Depends(get_current_user)):
    """Require admin or super_admin role."""
    if user.get("role") not in ["admin", "super_admin"]:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
