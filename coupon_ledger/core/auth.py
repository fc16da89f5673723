import hashlib
import hmac

from fastapi import HTTPException, Request

from coupon_ledger.core.config import settings


def hash_api_key(raw_key: str) -> str:
    """Return the SHA-256 hex digest of an API key."""
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def require_admin(request: Request) -> None:
    """Guard admin endpoints with the configured ``ADMIN_API_KEY``.

    If no key is configured, admin endpoints are open (local development).
    """
    if not settings.ADMIN_API_KEY:
        return

    auth_header = request.headers.get("Authorization")
    if not auth_header:
        raise HTTPException(status_code=401, detail="Authorization header is required")

    if not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Invalid authorization header format")

    raw_key = auth_header[7:]
    if not raw_key:
        raise HTTPException(status_code=401, detail="API key is required")

    if not hmac.compare_digest(hash_api_key(raw_key), hash_api_key(settings.ADMIN_API_KEY)):
        raise HTTPException(status_code=401, detail="Invalid API key")
