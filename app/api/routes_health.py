import logging
import time
from pathlib import Path
from typing import Any

from alembic.config import Config
from alembic.script import ScriptDirectory
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

router = APIRouter()
logger = logging.getLogger(__name__)

_HEADS_TTL_SECONDS = 60
_heads_cache: dict[str, Any] = {"loaded_at": 0.0, "heads": None}


def _expected_heads() -> list[str] | None:
    """Alembic heads shipped with the code, or None when migrations are not packaged."""
    now = time.monotonic()
    if now - _heads_cache["loaded_at"] < _HEADS_TTL_SECONDS:
        return _heads_cache["heads"]

    repo_root = Path(__file__).resolve().parents[2]
    alembic_ini = repo_root / "alembic.ini"
    script_location = repo_root / "alembic"
    heads: list[str] | None = None
    if alembic_ini.exists() and script_location.exists():
        try:
            cfg = Config(str(alembic_ini))
            cfg.set_main_option("script_location", str(script_location))
            heads = list(ScriptDirectory.from_config(cfg).get_heads())
        except Exception as exc:  # noqa: BLE001
            logger.warning("migrations_heads_unavailable", extra={"extra": {"reason": type(exc).__name__}})
            heads = []
    _heads_cache.update({"loaded_at": now, "heads": heads})
    return heads


async def _current_revision(session) -> str | None:
    try:
        result = await session.execute(text("SELECT version_num FROM alembic_version"))
    except SQLAlchemyError:
        return None
    row = result.first()
    return row[0] if row else None


async def _database_status(request: Request) -> dict[str, Any]:
    session_factory = getattr(request.app.state, "db_session_factory", None)
    if session_factory is None:
        return {"ok": False, "message": "database session factory unavailable", "migrations_current": False}

    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
            current_version = await _current_revision(session)
    except Exception as exc:  # noqa: BLE001
        logger.debug("database_check_failed", exc_info=exc)
        return {
            "ok": False,
            "message": "database check failed",
            "migrations_current": False,
            "error": exc.__class__.__name__,
        }

    expected = _expected_heads()
    if expected is None:
        migrations_current = True
    else:
        migrations_current = bool(expected) and current_version in expected
    return {
        "ok": True,
        "message": "database reachable",
        "migrations_current": migrations_current,
        "current_version": current_version,
        "expected_heads": expected or [],
    }


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(request: Request) -> JSONResponse:
    database = await _database_status(request)
    overall_ok = bool(database.get("ok")) and bool(database.get("migrations_current"))
    return JSONResponse(
        status_code=200 if overall_ok else 503,
        content={"status": "ok" if overall_ok else "unhealthy", "database": database},
    )
