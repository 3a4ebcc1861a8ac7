from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from .config import Settings, get_settings


logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None


def _safe_url(url: str) -> str:
    # No exponer credenciales en logs
    return url.split("@")[-1]


def build_engine(database_url: str) -> Engine:
    """Crea un engine SQLAlchemy con pool pre-ping.

    SQLite (tests, entornos locales) no acepta los parámetros de pool.
    """
    if database_url.startswith("sqlite"):
        return create_engine(database_url, future=True)

    return create_engine(
        database_url,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_recycle=300,
        future=True,
    )


def get_engine(settings: Optional[Settings] = None) -> Engine:
    """Engine singleton del proceso."""
    global _engine

    if _engine is not None:
        return _engine

    settings = settings or get_settings()

    logger.info("[DB] Crear engine url=%s", _safe_url(settings.database_url))
    _engine = build_engine(settings.database_url)

    # Test de conexión: ayuda a ver en logs si el servicio realmente llega a la BD
    try:
        with _engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("[DB] Test de conexión OK")
    except Exception:
        logger.exception("[DB] Test de conexión FALLÓ")

    return _engine


def dispose_engine() -> None:
    """Libera el pool (shutdown y tests)."""
    global _engine

    if _engine is not None:
        _engine.dispose()
        _engine = None
