"""Flujo completo: mensaje MQTT → ingesta → regla → acciones → auditoría.

Usa SQLite en memoria, cache en memoria, despacho inline y reloj controlado.
"""

import dataclasses
import json
import logging
from unittest.mock import MagicMock, patch

import pytest
import redis

from automation_engine.actions.executor import ActionExecutor
from automation_engine.core.domain.sensor import DeviceIdentity, SensorOrigin
from automation_engine.core.transport.message_handler import MessageHandler
from automation_engine.infrastructure.audit.execution_log import ExecutionLog
from automation_engine.ingest.ingestion import TelemetryIngestion
from automation_engine.ingest.sensor_resolver import SensorResolver
from automation_engine.rules.evaluator import RuleEvaluator
from automation_engine.rules.service import RuleService
from automation_engine.service import AutomationService
from common.config import get_settings


PH_TOPIC = "Invernadero/PH/data"

PH_RULE = {
    "id": "r-ph",
    "name": "pH bajo",
    "priority": 1,
    "cooldownSeconds": 60,
    "conditions": [{"sensorId": "ph-1", "field": "ph", "operator": "<", "threshold": 5.5}],
    "actions": [
        {"type": "DEVICE_CONTROL", "deviceId": "bomba-acido", "command": "on"},
        {"type": "NOTIFY", "template": "pH {{ph}} en {{sensor_id}}", "priority": "high"},
    ],
}


def _msg(**fields):
    return json.dumps(fields).encode()


@pytest.fixture
def pipeline(sql_repository, memory_cache, clock, publisher, ok_dispatcher, ph_schema, inline_sink):
    sql_repository.upsert_sensor("ph-1", PH_TOPIC, ph_schema, origin=SensorOrigin.MANUAL)
    sql_repository.upsert_device(DeviceIdentity(device_id="bomba-acido", state_field="bomba"))

    execution_log = ExecutionLog(sql_repository)
    executor = ActionExecutor(
        repository=sql_repository,
        publisher=publisher,
        dispatcher=ok_dispatcher,
        execution_log=execution_log,
    )
    evaluator = RuleEvaluator(
        repository=sql_repository,
        cache=memory_cache,
        sink=inline_sink(executor),
        execution_log=execution_log,
        clock=clock,
    )
    ingestion = TelemetryIngestion(
        resolver=SensorResolver(sql_repository),
        cache=memory_cache,
        repository=sql_repository,
        evaluator=evaluator,
    )
    rules = RuleService(sql_repository, evaluator)
    return MessageHandler(ingestion), rules


class TestPhScenario:

    def test_low_ph_triggers_once_within_cooldown(self, pipeline, sql_repository, publisher, ok_dispatcher, clock):
        handler, rules = pipeline
        rules.create_rule(PH_RULE)

        handler.handle(PH_TOPIC, _msg(ph=6.0, ec=1200, ppm=900, temp=20))
        assert sql_repository.list_execution_records("r-ph") == []

        handler.handle(PH_TOPIC, _msg(ph=5.0, ec=1200, ppm=900, temp=20))
        fired_at = clock.now
        clock.advance(1)
        handler.handle(PH_TOPIC, _msg(ph=4.8, ec=1200, ppm=900, temp=20))

        records = sql_repository.list_execution_records("r-ph")
        assert len(records) == 1
        assert records[0]["matched"] is True
        assert [o["action_type"] for o in records[0]["outcomes"]] == ["DEVICE_CONTROL", "NOTIFY"]
        assert all(o["success"] for o in records[0]["outcomes"])

        publisher.publish.assert_called_once_with("Invernadero/bomba-acido/sw", {"bomba": True}, qos=1, timeout=5.0)
        request = ok_dispatcher.dispatch.call_args[0][0]
        assert request.message == "pH 5 en ph-1"
        assert request.priority == "high"

        assert sql_repository.count_readings("ph-1") == 3
        assert sql_repository.get_rule("r-ph")["last_triggered_at"] == fired_at

    def test_fires_again_after_cooldown(self, pipeline, sql_repository, clock):
        handler, rules = pipeline
        rules.create_rule(PH_RULE)

        handler.handle(PH_TOPIC, _msg(ph=5.0))
        clock.advance(61)
        handler.handle(PH_TOPIC, _msg(ph=5.1))

        assert len(sql_repository.list_execution_records("r-ph")) == 2

    def test_missing_field_is_soft_issue(self, pipeline, sql_repository, caplog):
        handler, rules = pipeline
        rules.create_rule(
            {
                **PH_RULE,
                "id": "r-ec",
                "conditions": {
                    "operator": "AND",
                    "conditions": [
                        {"sensorId": "ph-1", "field": "ph", "operator": "<", "threshold": 7},
                        {"sensorId": "ph-1", "field": "ec", "operator": ">", "threshold": 2.0},
                    ],
                },
            }
        )
        caplog.set_level(logging.INFO, logger="automation_engine.rules.evaluator")

        handler.handle(PH_TOPIC, _msg(ph=6.0))

        assert sql_repository.list_execution_records("r-ec") == []
        assert "soft issue rule=r-ec" in caplog.text
        assert handler.stats.processed == 1
        assert handler.stats.failed == 0

    def test_unknown_topic_is_auto_discovered(self, pipeline, sql_repository):
        handler, _ = pipeline
        handler.handle("Invernadero/Nuevo/data", _msg(temperatura=19.5))

        sensor = sql_repository.get_sensor("invernadero-nuevo")
        assert sensor.origin is SensorOrigin.AUTO_DISCOVERED
        assert sql_repository.count_readings("invernadero-nuevo") == 1


# =============================================================================
# SERVICIO ENSAMBLADO
# =============================================================================

class TestAutomationService:

    @pytest.fixture
    def service(self, sqlite_engine):
        settings = dataclasses.replace(
            get_settings(),
            cache_backend="memory",
            dispatch_workers=1,
            rules_refresh_seconds=0,
            bootstrap_schema=True,
        )
        mqtt_client = MagicMock()
        mqtt_client.connect.return_value = True
        mqtt_client.is_connected = True
        mqtt_client.reconnect_count = 0
        return AutomationService(settings, engine=sqlite_engine, mqtt_client=mqtt_client), mqtt_client

    def test_start_wires_components(self, service):
        svc, mqtt_client = service

        assert svc.start() is True
        mqtt_client.set_message_handler.assert_called_once_with(svc.handler.handle)
        assert svc.stats["cache_backend"] == "InMemoryLatestReadingCache"
        assert svc.stats["dispatch"]["workers"] == 1
        assert svc.stats["dispatch"]["running"] is True
        health = svc.health_check()
        assert health["healthy"] is True
        assert health["cache"] == {"backend": "InMemoryLatestReadingCache", "reachable": None}

        svc.stop()
        mqtt_client.disconnect.assert_called_once()
        assert svc.is_running is False

    def test_message_through_service_publishes_command(self, service):
        svc, mqtt_client = service
        svc.start()
        svc.repository.upsert_sensor("ph-1", PH_TOPIC, {}, origin=SensorOrigin.MANUAL)
        svc.repository.upsert_device(DeviceIdentity(device_id="bomba-acido", state_field="bomba"))
        svc.rule_service.create_rule({**PH_RULE, "actions": PH_RULE["actions"][:1]})

        svc.handler.handle(PH_TOPIC, _msg(ph=5.0))
        svc.stop()

        topic, payload = mqtt_client.publish.call_args[0]
        assert topic == "Invernadero/bomba-acido/sw"
        assert payload == {"bomba": True}

    def test_start_fails_when_mqtt_unavailable(self, service):
        svc, mqtt_client = service
        mqtt_client.connect.return_value = False
        assert svc.start() is False
        assert svc.is_running is False

    def test_redis_down_at_start_reports_degraded(self, sqlite_engine):
        settings = dataclasses.replace(
            get_settings(),
            cache_backend="redis",
            redis_url="redis://cache.invalid:6379/0",
            rules_refresh_seconds=0,
            bootstrap_schema=True,
        )
        mqtt_client = MagicMock()
        mqtt_client.connect.return_value = True
        mqtt_client.is_connected = True
        svc = AutomationService(settings, engine=sqlite_engine, mqtt_client=mqtt_client)

        with patch("automation_engine.core.redis.connection.redis.Redis") as redis_cls:
            redis_cls.return_value.ping.side_effect = redis.ConnectionError("refused")
            assert svc.start() is True

        health = svc.health_check()
        assert health["healthy"] is True
        assert health["degraded"] is True
        assert health["cache"] == {"backend": "InMemoryLatestReadingCache", "reachable": False}
        svc.stop()
