from __future__ import annotations

import os

from fastapi import APIRouter

from settings import settings

router = APIRouter(tags=["health"])

MIGRATION_REVISION = "0001_billing_schema"


def _uses_postgres() -> bool:
    return settings.BILLING_STORE == "postgres"


def _check_db() -> tuple[bool, str | None]:
    if not _uses_postgres():
        return True, None
    try:
        from db import get_conn

        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
                cur.fetchone()
        return True, None
    except Exception as exc:
        return False, f"{type(exc).__name__}: {exc}"


def _check_migrations() -> bool:
    if not _uses_postgres():
        return True
    try:
        from db import get_conn

        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT to_regclass('public.alembic_version');")
                exists = cur.fetchone()[0]
                if not exists:
                    return False
                cur.execute("SELECT version_num FROM alembic_version LIMIT 1;")
                row = cur.fetchone()
                return bool(row and row[0])
    except Exception:
        return False


def _resolve_git_sha() -> str | None:
    return (os.getenv("GIT_SHA") or "").strip() or None


@router.get("/healthz")
def healthz():
    db_ok, db_error = _check_db()
    return {
        "ok": True,
        "version": os.getenv("APP_VERSION", "1.0.0"),
        "git_sha": _resolve_git_sha(),
        "store": settings.BILLING_STORE,
        "db_ok": db_ok,
        "db_error": db_error,
    }


@router.get("/readyz")
def readyz():
    db_ok, db_error = _check_db()
    migrations_ok = _check_migrations()
    ready = bool(db_ok and migrations_ok)
    return {
        "ready": ready,
        "version": os.getenv("APP_VERSION", "1.0.0"),
        "git_sha": _resolve_git_sha(),
        "env": settings.ENV,
        "gateway_mode": settings.GATEWAY_MODE,
        "db_ok": db_ok,
        "db_error": db_error,
        "migrations_ok": migrations_ok,
        "migration_revision": MIGRATION_REVISION,
    }
