"""Health check endpoint."""
from __future__ import annotations

import logging

from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import text

from fastapi import APIRouter

from policykit.config import get_settings
from policykit.db import get_engine
from policykit.services.verification import is_valid_address

router = APIRouter(prefix="/health", tags=["health"])
logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x" + "0" * 40


def _db_status() -> str:
    """Return 'ok' if the DB is reachable, 'error' otherwise."""

    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return "ok"
    except Exception:  # noqa: BLE001
        logger.exception("DB health check failed")
        return "error"


def _expected_migration_head() -> str | None:
    try:
        config = Config("alembic.ini")
        script = ScriptDirectory.from_config(config)
        return script.get_current_head()
    except Exception:  # noqa: BLE001
        logger.exception("Failed to load Alembic head revision")
        return None


def _migrations_status() -> tuple[bool, str]:
    expected_head = _expected_migration_head()
    try:
        engine = get_engine()
        with engine.connect() as conn:
            result = conn.execute(text("SELECT version_num FROM alembic_version"))
            current = result.scalar()
        if expected_head and current == expected_head:
            return True, "up_to_date"
        if expected_head is None:
            return False, "unknown"
        return False, "out_of_date"
    except Exception:  # noqa: BLE001
        logger.exception("Migration check failed")
        return False, "unknown"


def _seller_configured(address: str) -> bool:
    return is_valid_address(address) and address.lower() != ZERO_ADDRESS


@router.get("", summary="Health check")
def healthcheck() -> dict[str, object]:
    """Return database, migration and paywall configuration status."""

    settings = get_settings()
    db_status = _db_status()
    db_ok = db_status == "ok"
    if db_ok:
        migration_ok, migration_status = _migrations_status()
    else:
        migration_ok, migration_status = False, "unknown"
    degraded = not (db_ok and migration_ok)
    return {
        "status": "degraded" if degraded else "ok",
        "env": settings.app_env,
        "db_ok": db_ok,
        "db_status": db_status,
        "migrations_ok": migration_ok,
        "migrations_status": migration_status,
        "paywall": {
            "seller_configured": _seller_configured(settings.PAYWALL_SELLER_ADDRESS),
            "chain_id": settings.PAYWALL_DEFAULT_CHAIN_ID,
            "priced_endpoints": len(settings.PAYWALL_PRICING),
            "replay_protection": settings.PAYWALL_CHECK_REPLAY,
        },
    }
