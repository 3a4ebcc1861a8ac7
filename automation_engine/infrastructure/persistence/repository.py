"""Colaborador de persistencia del motor.

El motor consume una interfaz (`AutomationRepository`); la implementación
SQL usa SQLAlchemy con SQL explícito, portable entre PostgreSQL y SQLite.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.engine import Engine

from ...core.domain.execution import ExecutionRecord
from ...core.domain.rules import Rule
from ...core.domain.sensor import DeviceIdentity, FieldRange, SensorIdentity, SensorOrigin

logger = logging.getLogger(__name__)


def _to_db_ts(value: datetime) -> datetime:
    """UTC naive: las columnas son TIMESTAMP sin zona."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db_ts(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _load_json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, (dict, list)):
        return value
    return json.loads(value)


class AutomationRepository(ABC):
    """Interfaz de persistencia consumida por el motor."""

    @abstractmethod
    def insert_reading(self, sensor_id: str, fields: Mapping[str, float], timestamp: datetime) -> None:
        """Append de una lectura (duplicados por re-entrega son aceptables)."""

    @abstractmethod
    def upsert_sensor(
        self,
        hardware_id: str,
        topic: str,
        schema: Dict[str, FieldRange],
        origin: SensorOrigin = SensorOrigin.AUTO_DISCOVERED,
        name: Optional[str] = None,
    ) -> Tuple[SensorIdentity, bool]:
        """Creación idempotente por hardware_id. Returns (sensor, created)."""

    @abstractmethod
    def get_sensor(self, hardware_id: str) -> Optional[SensorIdentity]: ...

    @abstractmethod
    def get_sensor_by_topic(self, topic: str) -> Optional[SensorIdentity]: ...

    @abstractmethod
    def list_sensors(self) -> List[SensorIdentity]: ...

    @abstractmethod
    def get_device(self, device_id: str) -> Optional[DeviceIdentity]: ...

    @abstractmethod
    def list_devices(self) -> List[DeviceIdentity]: ...

    @abstractmethod
    def upsert_device(self, device: DeviceIdentity) -> None: ...

    @abstractmethod
    def set_device_state(self, device_id: str, state: bool) -> bool:
        """Guarda el último estado conocido. False si el dispositivo no existe."""

    @abstractmethod
    def list_enabled_rules(self) -> List[dict]:
        """Filas crudas de reglas habilitadas (el motor las valida)."""

    @abstractmethod
    def list_rules(self) -> List[dict]: ...

    @abstractmethod
    def get_rule(self, rule_id: str) -> Optional[dict]: ...

    @abstractmethod
    def save_rule(self, rule: Rule) -> None: ...

    @abstractmethod
    def mark_rule_triggered(self, rule_id: str, triggered_at: datetime) -> None: ...

    @abstractmethod
    def append_execution_record(self, record: ExecutionRecord) -> None: ...

    @abstractmethod
    def get_rule_stats(self, rule_id: str, start: datetime, end: datetime) -> dict: ...


class SqlAutomationRepository(AutomationRepository):
    """Implementación SQL sobre un Engine SQLAlchemy."""

    def __init__(self, engine: Engine):
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine

    # ------------------------------------------------------------------
    # Lecturas
    # ------------------------------------------------------------------

    def insert_reading(self, sensor_id: str, fields: Mapping[str, float], timestamp: datetime) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    "INSERT INTO sensor_readings (sensor_id, fields, received_at) "
                    "VALUES (:sensor_id, :fields, :received_at)"
                ),
                {
                    "sensor_id": sensor_id,
                    "fields": json.dumps(dict(fields)),
                    "received_at": _to_db_ts(timestamp),
                },
            )

    def count_readings(self, sensor_id: str) -> int:
        with self._engine.connect() as conn:
            return int(
                conn.execute(
                    text("SELECT COUNT(*) FROM sensor_readings WHERE sensor_id = :sensor_id"),
                    {"sensor_id": sensor_id},
                ).scalar_one()
            )

    # ------------------------------------------------------------------
    # Sensores
    # ------------------------------------------------------------------

    _SENSOR_COLUMNS = "hardware_id, name, mqtt_topic, field_schema, is_active, origin, created_at"

    @staticmethod
    def _row_to_sensor(row: Mapping) -> SensorIdentity:
        return SensorIdentity(
            hardware_id=row["hardware_id"],
            name=row["name"],
            topic=row["mqtt_topic"],
            schema=SensorIdentity.schema_from_dict(_load_json(row["field_schema"], {})),
            active=bool(row["is_active"]),
            origin=SensorOrigin(row["origin"]),
            created_at=_from_db_ts(row["created_at"]),
        )

    def upsert_sensor(
        self,
        hardware_id: str,
        topic: str,
        schema: Dict[str, FieldRange],
        origin: SensorOrigin = SensorOrigin.AUTO_DISCOVERED,
        name: Optional[str] = None,
    ) -> Tuple[SensorIdentity, bool]:
        with self._engine.begin() as conn:
            result = conn.execute(
                text(
                    "INSERT INTO sensors (hardware_id, name, mqtt_topic, field_schema, is_active, origin, created_at) "
                    "VALUES (:hardware_id, :name, :topic, :schema, :active, :origin, :created_at) "
                    "ON CONFLICT (hardware_id) DO NOTHING"
                ),
                {
                    "hardware_id": hardware_id,
                    "name": name,
                    "topic": topic,
                    "schema": json.dumps({k: v.to_dict() for k, v in schema.items()}),
                    "active": True,
                    "origin": origin.value,
                    "created_at": _to_db_ts(datetime.now(timezone.utc)),
                },
            )
            created = result.rowcount == 1
            row = conn.execute(
                text(f"SELECT {self._SENSOR_COLUMNS} FROM sensors WHERE hardware_id = :hardware_id"),
                {"hardware_id": hardware_id},
            ).mappings().one()
        return self._row_to_sensor(row), created

    def get_sensor(self, hardware_id: str) -> Optional[SensorIdentity]:
        with self._engine.connect() as conn:
            row = conn.execute(
                text(f"SELECT {self._SENSOR_COLUMNS} FROM sensors WHERE hardware_id = :hardware_id"),
                {"hardware_id": hardware_id},
            ).mappings().first()
        return self._row_to_sensor(row) if row else None

    def get_sensor_by_topic(self, topic: str) -> Optional[SensorIdentity]:
        with self._engine.connect() as conn:
            row = conn.execute(
                text(
                    f"SELECT {self._SENSOR_COLUMNS} FROM sensors "
                    "WHERE LOWER(mqtt_topic) = LOWER(:topic) ORDER BY created_at"
                ),
                {"topic": topic},
            ).mappings().first()
        return self._row_to_sensor(row) if row else None

    def list_sensors(self) -> List[SensorIdentity]:
        with self._engine.connect() as conn:
            rows = conn.execute(
                text(f"SELECT {self._SENSOR_COLUMNS} FROM sensors ORDER BY hardware_id")
            ).mappings().all()
        return [self._row_to_sensor(r) for r in rows]

    # ------------------------------------------------------------------
    # Dispositivos
    # ------------------------------------------------------------------

    _DEVICE_COLUMNS = "device_id, name, device_type, control_topic, state_field, is_active, last_state"

    @staticmethod
    def _row_to_device(row: Mapping) -> DeviceIdentity:
        return DeviceIdentity(
            device_id=row["device_id"],
            name=row["name"],
            device_type=row["device_type"],
            control_topic=row["control_topic"],
            state_field=row["state_field"],
            active=bool(row["is_active"]),
            state=None if row["last_state"] is None else bool(row["last_state"]),
        )

    def get_device(self, device_id: str) -> Optional[DeviceIdentity]:
        with self._engine.connect() as conn:
            row = conn.execute(
                text(f"SELECT {self._DEVICE_COLUMNS} FROM devices WHERE device_id = :device_id"),
                {"device_id": device_id},
            ).mappings().first()
        return self._row_to_device(row) if row else None

    def list_devices(self) -> List[DeviceIdentity]:
        with self._engine.connect() as conn:
            rows = conn.execute(
                text(f"SELECT {self._DEVICE_COLUMNS} FROM devices ORDER BY device_id")
            ).mappings().all()
        return [self._row_to_device(r) for r in rows]

    def upsert_device(self, device: DeviceIdentity) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    "INSERT INTO devices "
                    "(device_id, name, device_type, control_topic, state_field, is_active, last_state) "
                    "VALUES (:device_id, :name, :device_type, :control_topic, :state_field, :active, :state) "
                    "ON CONFLICT (device_id) DO UPDATE SET "
                    "name = excluded.name, device_type = excluded.device_type, "
                    "control_topic = excluded.control_topic, state_field = excluded.state_field, "
                    "is_active = excluded.is_active"
                ),
                {
                    "device_id": device.device_id,
                    "name": device.name,
                    "device_type": device.device_type,
                    "control_topic": device.control_topic,
                    "state_field": device.state_field,
                    "active": device.active,
                    "state": device.state,
                },
            )

    def set_device_state(self, device_id: str, state: bool) -> bool:
        with self._engine.begin() as conn:
            result = conn.execute(
                text("UPDATE devices SET last_state = :state WHERE device_id = :device_id"),
                {"device_id": device_id, "state": state},
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Reglas
    # ------------------------------------------------------------------

    _RULE_COLUMNS = "id, name, enabled, priority, conditions, actions, cooldown_seconds, last_triggered"

    @staticmethod
    def _row_to_rule_data(row: Mapping) -> dict:
        return {
            "id": row["id"],
            "name": row["name"],
            "enabled": bool(row["enabled"]),
            "priority": row["priority"],
            "conditions": _load_json(row["conditions"], []),
            "actions": _load_json(row["actions"], []),
            "cooldown_seconds": row["cooldown_seconds"],
            "last_triggered_at": _from_db_ts(row["last_triggered"]),
        }

    def list_enabled_rules(self) -> List[dict]:
        with self._engine.connect() as conn:
            rows = conn.execute(
                text(
                    f"SELECT {self._RULE_COLUMNS} FROM rules "
                    "WHERE enabled = :enabled ORDER BY priority ASC, id ASC"
                ),
                {"enabled": True},
            ).mappings().all()
        return [self._row_to_rule_data(r) for r in rows]

    def list_rules(self) -> List[dict]:
        with self._engine.connect() as conn:
            rows = conn.execute(
                text(f"SELECT {self._RULE_COLUMNS} FROM rules ORDER BY priority ASC, id ASC")
            ).mappings().all()
        return [self._row_to_rule_data(r) for r in rows]

    def get_rule(self, rule_id: str) -> Optional[dict]:
        with self._engine.connect() as conn:
            row = conn.execute(
                text(f"SELECT {self._RULE_COLUMNS} FROM rules WHERE id = :id"),
                {"id": rule_id},
            ).mappings().first()
        return self._row_to_rule_data(row) if row else None

    def save_rule(self, rule: Rule) -> None:
        row = rule.to_row()
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    "INSERT INTO rules (id, name, enabled, priority, conditions, actions, cooldown_seconds) "
                    "VALUES (:id, :name, :enabled, :priority, :conditions, :actions, :cooldown_seconds) "
                    "ON CONFLICT (id) DO UPDATE SET "
                    "name = excluded.name, enabled = excluded.enabled, priority = excluded.priority, "
                    "conditions = excluded.conditions, actions = excluded.actions, "
                    "cooldown_seconds = excluded.cooldown_seconds"
                ),
                {
                    **row,
                    "conditions": json.dumps(row["conditions"]),
                    "actions": json.dumps(row["actions"]),
                },
            )

    def mark_rule_triggered(self, rule_id: str, triggered_at: datetime) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text("UPDATE rules SET last_triggered = :ts WHERE id = :id"),
                {"ts": _to_db_ts(triggered_at), "id": rule_id},
            )

    # ------------------------------------------------------------------
    # Ejecuciones
    # ------------------------------------------------------------------

    def append_execution_record(self, record: ExecutionRecord) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    "INSERT INTO rule_executions "
                    "(id, rule_id, matched, trigger_sensor_id, outcomes, error_message, duration_ms, triggered_at) "
                    "VALUES (:id, :rule_id, :matched, :trigger_sensor_id, :outcomes, :error, :duration_ms, :triggered_at)"
                ),
                {
                    "id": record.id,
                    "rule_id": record.rule_id,
                    "matched": record.matched,
                    "trigger_sensor_id": record.trigger_sensor_id,
                    "outcomes": json.dumps([o.to_dict() for o in record.outcomes]),
                    "error": record.error,
                    "duration_ms": record.duration_ms,
                    "triggered_at": _to_db_ts(record.triggered_at),
                },
            )

    def list_execution_records(self, rule_id: str) -> List[dict]:
        with self._engine.connect() as conn:
            rows = conn.execute(
                text(
                    "SELECT id, rule_id, matched, trigger_sensor_id, outcomes, error_message, "
                    "duration_ms, triggered_at FROM rule_executions "
                    "WHERE rule_id = :rule_id ORDER BY triggered_at"
                ),
                {"rule_id": rule_id},
            ).mappings().all()
        return [
            {
                **dict(r),
                "matched": bool(r["matched"]),
                "outcomes": _load_json(r["outcomes"], []),
                "triggered_at": _from_db_ts(r["triggered_at"]),
            }
            for r in rows
        ]

    def get_rule_stats(self, rule_id: str, start: datetime, end: datetime) -> dict:
        with self._engine.connect() as conn:
            row = conn.execute(
                text(
                    "SELECT "
                    "COUNT(*) AS total_executions, "
                    "COUNT(CASE WHEN matched = :true AND error_message IS NULL THEN 1 END) AS successful_executions, "
                    "COUNT(CASE WHEN error_message IS NOT NULL THEN 1 END) AS failed_executions, "
                    "MAX(triggered_at) AS last_execution "
                    "FROM rule_executions "
                    "WHERE rule_id = :rule_id AND triggered_at >= :start AND triggered_at <= :end"
                ),
                {"true": True, "rule_id": rule_id, "start": _to_db_ts(start), "end": _to_db_ts(end)},
            ).mappings().one()
        return {
            "total_executions": int(row["total_executions"]),
            "successful_executions": int(row["successful_executions"]),
            "failed_executions": int(row["failed_executions"]),
            "last_execution": _from_db_ts(row["last_execution"]),
        }
