"""
Health check endpoints.

- GET /api/health          — cheap: process alive, version, uptime
- GET /api/health/deep     — bounded checks for database and payment providers
"""
import asyncio
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text

from app.auth.api_key_auth import AuthenticatedUser, require_admin
from app.core.database import get_session_context
from app.core.structured_logging import APP_VERSION, SERVICE_NAME, get_uptime_s
from app.services.payment_providers import get_provider_registry

logger = logging.getLogger(__name__)

router = APIRouter()

COMPONENT_TIMEOUT = 2.0  # seconds


# ── Cheap health ─────────────────────────────────────────────────────
@router.get("/health")
async def health_check():
    """Cheap health check — no network calls."""
    return {
        "status": "ok",
        "version": APP_VERSION,
        "service": SERVICE_NAME,
        "uptime_s": round(get_uptime_s(), 1),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ── Deep health (admin only) ───────
@router.get("/health/deep")
async def deep_health_check(_user: AuthenticatedUser = Depends(require_admin)):
    """Deep health check with bounded component checks."""
    results = await asyncio.gather(
        _bounded_check("database", _check_database()),
        _bounded_check("providers", _check_providers()),
        return_exceptions=True,
    )

    components = {}
    for name_result in results:
        if isinstance(name_result, Exception):
            continue
        name, result = name_result
        components[name] = result

    statuses = [c.get("status", "down") for c in components.values()]
    if "down" in statuses:
        overall = "down"
    elif "degraded" in statuses:
        overall = "degraded"
    else:
        overall = "ok"

    return {
        "status": overall,
        "version": APP_VERSION,
        "uptime_s": round(get_uptime_s(), 1),
        "components": components,
    }


async def _bounded_check(name: str, coro):
    try:
        return name, await asyncio.wait_for(coro, timeout=COMPONENT_TIMEOUT)
    except asyncio.TimeoutError:
        return name, {"status": "down", "error": "timeout"}
    except Exception as e:
        logger.warning("Health check %s failed: %s", name, e)
        return name, {"status": "down", "error": str(e)[:200]}


async def _check_database():
    with get_session_context() as session:
        session.connection().execute(text("SELECT 1"))
    return {"status": "ok"}


async def _check_providers():
    providers = get_provider_registry().list()
    if not providers:
        return {"status": "down", "providers": []}
    listed = [{"type": p.type.value, "mode": p.mode.value} for p in providers]
    status = "degraded" if all(p.is_mock for p in providers) else "ok"
    return {"status": status, "providers": listed}
