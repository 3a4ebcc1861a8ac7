"""Fixtures compartidas de la suite."""

from __future__ import annotations

import dataclasses
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from automation_engine.cache.latest_reading import InMemoryLatestReadingCache
from automation_engine.core.domain.execution import DeliveryOutcome, ExecutionRecord
from automation_engine.core.domain.rules import Rule
from automation_engine.core.domain.sensor import DeviceIdentity, FieldRange, SensorIdentity, SensorOrigin
from automation_engine.infrastructure.persistence.repository import AutomationRepository, SqlAutomationRepository
from automation_engine.infrastructure.persistence.schema import ensure_schema


# =============================================================================
# DOBLES DE PRUEBA
# =============================================================================

class FakeRepository(AutomationRepository):
    """Repositorio en memoria, thread-safe."""

    def __init__(self):
        self.sensors: Dict[str, SensorIdentity] = {}
        self.devices: Dict[str, DeviceIdentity] = {}
        self.rules: Dict[str, dict] = {}
        self.readings: List[Tuple[str, dict, datetime]] = []
        self.records: List[ExecutionRecord] = []
        self.triggered: List[Tuple[str, datetime]] = []
        self.upsert_calls = 0
        self._lock = threading.Lock()

    def insert_reading(self, sensor_id, fields, timestamp):
        with self._lock:
            self.readings.append((sensor_id, dict(fields), timestamp))

    def upsert_sensor(self, hardware_id, topic, schema, origin=SensorOrigin.AUTO_DISCOVERED, name=None):
        with self._lock:
            self.upsert_calls += 1
            existing = self.sensors.get(hardware_id)
            if existing is not None:
                return existing, False
            sensor = SensorIdentity(
                hardware_id=hardware_id, topic=topic, schema=dict(schema), origin=origin, name=name
            )
            self.sensors[hardware_id] = sensor
            return sensor, True

    def add_sensor(self, hardware_id, topic, schema=None, active=True):
        sensor = SensorIdentity(hardware_id=hardware_id, topic=topic, schema=schema or {}, active=active)
        self.sensors[hardware_id] = sensor
        return sensor

    def get_sensor(self, hardware_id):
        return self.sensors.get(hardware_id)

    def get_sensor_by_topic(self, topic):
        with self._lock:
            for sensor in self.sensors.values():
                if sensor.topic.lower() == topic.lower():
                    return sensor
        return None

    def list_sensors(self):
        return list(self.sensors.values())

    def get_device(self, device_id):
        return self.devices.get(device_id)

    def list_devices(self):
        return list(self.devices.values())

    def upsert_device(self, device):
        self.devices[device.device_id] = device

    def set_device_state(self, device_id, state):
        device = self.devices.get(device_id)
        if device is None:
            return False
        self.devices[device_id] = dataclasses.replace(device, state=state)
        return True

    def list_enabled_rules(self):
        return [dict(r) for r in self.rules.values() if r.get("enabled", True)]

    def list_rules(self):
        return [dict(r) for r in self.rules.values()]

    def get_rule(self, rule_id):
        row = self.rules.get(rule_id)
        return dict(row) if row else None

    def save_rule(self, rule: Rule):
        self.rules[rule.id] = rule.to_row()

    def mark_rule_triggered(self, rule_id, triggered_at):
        self.triggered.append((rule_id, triggered_at))

    def append_execution_record(self, record):
        with self._lock:
            self.records.append(record)

    def get_rule_stats(self, rule_id, start, end):
        records = [r for r in self.records if r.rule_id == rule_id and start <= r.triggered_at <= end]
        return {
            "total_executions": len(records),
            "successful_executions": sum(1 for r in records if r.matched and r.error is None),
            "failed_executions": sum(1 for r in records if r.error is not None),
            "last_execution": max((r.triggered_at for r in records), default=None),
        }


class FakeClock:
    """Reloj controlable para cooldowns."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingSink:
    """Destino de jobs que solo los acumula."""

    def __init__(self):
        self.jobs = []

    def submit(self, rule, record, reading=None):
        self.jobs.append((rule, record, reading))


class InlineSink:
    """Ejecuta las acciones en el hilo que evalúa (flujos deterministas)."""

    def __init__(self, executor):
        self._executor = executor

    def submit(self, rule, record, reading=None):
        self._executor.execute(rule, record, reading)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def inline_sink():
    return InlineSink


@pytest.fixture
def fake_repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_cache() -> InMemoryLatestReadingCache:
    return InMemoryLatestReadingCache(ttl_seconds=300)


@pytest.fixture
def sqlite_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    ensure_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def sql_repository(sqlite_engine) -> SqlAutomationRepository:
    return SqlAutomationRepository(sqlite_engine)


@pytest.fixture
def publisher() -> MagicMock:
    """Publicador MQTT simulado (publish OK)."""
    return MagicMock()


@pytest.fixture
def ok_dispatcher() -> MagicMock:
    """Dispatcher de notificaciones que siempre entrega."""
    dispatcher = MagicMock()
    dispatcher.dispatch.side_effect = lambda request: [
        DeliveryOutcome(transport=name.strip(), success=True, attempts=1)
        for name in request.target_channel.split(",")
    ]
    return dispatcher


@pytest.fixture
def ph_schema() -> Dict[str, FieldRange]:
    return {
        "ph": FieldRange(5.5, 8.5),
        "ec": FieldRange(0.0, None),
        "ppm": FieldRange(0.0, None),
        "temp": FieldRange(None, None),
    }
