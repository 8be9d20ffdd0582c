"""
API Key Authentication
======================

Key format: ``nm_<key_id>_<secret>``
    - key_id: 8-char alphanumeric, indexed for O(1) lookup on ``users``
    - secret: 32-char random, NEVER stored — only the HMAC hash is stored
    - HMAC uses NOSTRMAXI_APIKEY_HMAC_SECRET

HMAC secret auto-generation: if NOSTRMAXI_APIKEY_HMAC_SECRET is not set,
generate one, persist to <data_directory>/.nostrmaxi_hmac_secret, and log WARNING.
"""

import hashlib
import hmac
import logging
import secrets
import string
from pathlib import Path
from typing import Optional, Tuple

from cachetools import TTLCache
from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel

from app.config import settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "nm_"
KEY_ID_LENGTH = 8
_KEY_ID_ALPHABET = string.ascii_lowercase + string.digits


class AuthenticatedUser(BaseModel):
    """Caller identity resolved from the X-API-Key header."""

    user_id: str
    pubkey: str
    is_admin: bool = False


# In-memory cache for validated API keys
api_key_cache = TTLCache(maxsize=1000, ttl=settings.auth_cache_ttl)


# ---------------------------------------------------------------------------
# HMAC secret management
# ---------------------------------------------------------------------------
def _hmac_secret_file() -> Path:
    return Path(settings.data_directory) / ".nostrmaxi_hmac_secret"


def _get_hmac_secret() -> str:
    """Return the HMAC secret for API key hashing.

    Priority:
        1. NOSTRMAXI_APIKEY_HMAC_SECRET env var / settings
        2. Persisted file in the data directory
        3. Auto-generate, persist, and log WARNING
    """
    if settings.apikey_hmac_secret:
        return settings.apikey_hmac_secret

    secret_file = _hmac_secret_file()
    if secret_file.exists():
        stored = secret_file.read_text().strip()
        if stored:
            settings.apikey_hmac_secret = stored
            logger.info("Loaded HMAC secret from %s", secret_file)
            return stored

    generated = secrets.token_hex(32)
    try:
        secret_file.parent.mkdir(parents=True, exist_ok=True)
        secret_file.write_text(generated)
        secret_file.chmod(0o600)
    except OSError as exc:
        logger.warning("Could not persist HMAC secret to %s: %s", secret_file, exc)

    settings.apikey_hmac_secret = generated
    logger.warning(
        "NOSTRMAXI_APIKEY_HMAC_SECRET not set — auto-generated and persisted to %s. "
        "Set NOSTRMAXI_APIKEY_HMAC_SECRET in production for stability across restarts.",
        secret_file,
    )
    return generated


def hmac_hash_secret(secret: str) -> str:
    """HMAC-SHA256 hash a key secret using the configured HMAC secret."""
    hmac_key = _get_hmac_secret().encode()
    return hmac.new(hmac_key, secret.encode(), hashlib.sha256).hexdigest()


def _parse_key(api_key: str) -> Optional[Tuple[str, str]]:
    """Parse a ``nm_<key_id>_<secret>`` key. Returns (key_id, secret) or None."""
    if not api_key.startswith(KEY_PREFIX):
        return None
    parts = api_key.split("_", 2)  # ["nm", key_id, secret]
    if len(parts) != 3 or not parts[1] or not parts[2]:
        return None
    return parts[1], parts[2]


def issue_api_key(user_id: str) -> str:
    """Mint a new key for ``user_id``, replacing any previous one.

    The full key is returned once; only its HMAC hash is stored.
    """
    from app.core.database import get_session_context
    from app.models.user import User

    key_id = "".join(secrets.choice(_KEY_ID_ALPHABET) for _ in range(KEY_ID_LENGTH))
    secret = secrets.token_urlsafe(24)[:32]

    with get_session_context() as session:
        user = session.get(User, user_id)
        if user is None:
            raise ValueError(f"unknown user {user_id}")
        user.api_key_id = key_id
        user.api_key_hash = hmac_hash_secret(secret)
        session.add(user)
        session.commit()

    # Old keys for this user may still be cached
    for cached_key, cached_user in list(api_key_cache.items()):
        if cached_user.user_id == user_id:
            api_key_cache.pop(cached_key, None)

    logger.info("API key issued: user_id=%s key_id=%s", user_id, key_id)
    return f"{KEY_PREFIX}{key_id}_{secret}"


def _validate_key(api_key: str) -> Optional[AuthenticatedUser]:
    parsed = _parse_key(api_key)
    if not parsed:
        return None
    key_id, secret = parsed

    # Lazy import to avoid circular deps
    from app.core.database import get_session_context
    from app.models.user import User
    from sqlmodel import select

    with get_session_context() as session:
        user = session.exec(select(User).where(User.api_key_id == key_id)).first()
        if not user or not user.api_key_hash:
            return None
        if not hmac.compare_digest(user.api_key_hash, hmac_hash_secret(secret)):
            return None
        return AuthenticatedUser(user_id=user.id, pubkey=user.pubkey, is_admin=user.is_admin)


async def get_current_user(request: Request) -> AuthenticatedUser:
    """Authenticate requests via the X-API-Key header."""
    api_key = request.headers.get("X-API-Key")
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-API-Key header is missing.",
        )

    cached_user = api_key_cache.get(api_key)
    if cached_user:
        request.state.user = cached_user
        return cached_user

    validated_user = _validate_key(api_key)
    if not validated_user:
        logger.warning("Invalid API key received: %s...", api_key[:7])
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API Key.",
        )

    api_key_cache[api_key] = validated_user
    request.state.user = validated_user
    return validated_user


async def require_admin(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
    """FastAPI dependency that only lets platform administrators through."""
    if not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user
