from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from psycopg.conninfo import make_conninfo


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


@dataclass(frozen=True)
class StoreConfig:
    db_auto_migrate: bool

    # Postgres connection (either dsn or parts)
    postgres_dsn: Optional[str]
    postgres_host: Optional[str]
    postgres_port: int
    postgres_db: Optional[str]
    postgres_user: Optional[str]
    postgres_password: Optional[str]


def load_store_config() -> StoreConfig:
    dsn = (os.getenv("POSTGRES_DSN") or os.getenv("DATABASE_URL") or "").strip() or None
    host = (os.getenv("POSTGRES_HOST") or "").strip() or None
    port_raw = (os.getenv("POSTGRES_PORT") or "").strip() or "5432"
    try:
        port = int(port_raw)
    except Exception:
        port = 5432

    return StoreConfig(
        db_auto_migrate=_env_bool("DB_AUTO_MIGRATE", False),
        postgres_dsn=dsn,
        postgres_host=host,
        postgres_port=port,
        postgres_db=(os.getenv("POSTGRES_DB") or "").strip() or None,
        postgres_user=(os.getenv("POSTGRES_USER") or "").strip() or None,
        postgres_password=(os.getenv("POSTGRES_PASSWORD") or "").strip() or None,
    )


def build_postgres_dsn(cfg: StoreConfig) -> Optional[str]:
    if cfg.postgres_dsn:
        return cfg.postgres_dsn
    if not (cfg.postgres_host and cfg.postgres_db and cfg.postgres_user and cfg.postgres_password):
        return None
    # make_conninfo quotes/escapes special characters (spaces, quotes) in passwords.
    return make_conninfo(
        host=cfg.postgres_host,
        port=cfg.postgres_port,
        dbname=cfg.postgres_db,
        user=cfg.postgres_user,
        password=cfg.postgres_password,
    )
