"""Bootstrap mínimo e idempotente del esquema (entornos locales y tests).

Las migraciones de producción viven fuera de este servicio. El DDL es
portable entre PostgreSQL y SQLite: los JSON se guardan como TEXT.
"""

from __future__ import annotations

import logging

from sqlalchemy import text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS sensors (
        hardware_id VARCHAR(128) PRIMARY KEY,
        name VARCHAR(255),
        mqtt_topic VARCHAR(255) NOT NULL,
        field_schema TEXT NOT NULL DEFAULT '{}',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        origin VARCHAR(32) NOT NULL DEFAULT 'manual',
        created_at TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_sensors_mqtt_topic ON sensors (mqtt_topic)",
    """
    CREATE TABLE IF NOT EXISTS devices (
        device_id VARCHAR(128) PRIMARY KEY,
        name VARCHAR(255),
        device_type VARCHAR(64) NOT NULL DEFAULT 'generic',
        control_topic VARCHAR(255),
        state_field VARCHAR(64) NOT NULL DEFAULT 'state',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        last_state BOOLEAN
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sensor_readings (
        sensor_id VARCHAR(128) NOT NULL,
        fields TEXT NOT NULL,
        received_at TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_sensor_readings_sensor_ts ON sensor_readings (sensor_id, received_at)",
    """
    CREATE TABLE IF NOT EXISTS rules (
        id VARCHAR(64) PRIMARY KEY,
        name VARCHAR(255) NOT NULL,
        enabled BOOLEAN NOT NULL DEFAULT TRUE,
        priority INTEGER NOT NULL DEFAULT 3,
        conditions TEXT NOT NULL,
        actions TEXT NOT NULL,
        cooldown_seconds DOUBLE PRECISION,
        last_triggered TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rule_executions (
        id VARCHAR(64) PRIMARY KEY,
        rule_id VARCHAR(64) NOT NULL,
        matched BOOLEAN NOT NULL,
        trigger_sensor_id VARCHAR(128),
        outcomes TEXT NOT NULL,
        error_message TEXT,
        duration_ms DOUBLE PRECISION NOT NULL DEFAULT 0,
        triggered_at TIMESTAMP NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_rule_executions_rule_ts ON rule_executions (rule_id, triggered_at)",
)


def ensure_schema(engine: Engine) -> None:
    """Crea las tablas si no existen. Seguro de llamar varias veces."""
    logger.info("[DB] Ensuring automation schema exists")
    with engine.begin() as conn:
        for statement in SCHEMA_STATEMENTS:
            conn.execute(text(statement))
