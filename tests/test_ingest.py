"""Tests de la ruta de ingesta: decoder, resolver y orquestación.

Ejecutar:
    pytest tests/test_ingest.py -v
"""

import json
import threading
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from automation_engine.core.domain.sensor import DeviceIdentity, FieldRange, SensorOrigin
from automation_engine.core.transport.message_handler import MessageHandler
from automation_engine.errors import DecodeError
from automation_engine.ingest.decoder import TelemetryDecoder
from automation_engine.ingest.ingestion import TelemetryIngestion, parse_payload
from automation_engine.ingest.sensor_resolver import (
    AUTO_DEVICE_TYPE,
    SensorResolver,
    control_device_id,
    derive_hardware_id,
    infer_schema,
)


# =============================================================================
# DECODER
# =============================================================================

class TestTelemetryDecoder:
    """Validación de payloads contra el esquema del sensor."""

    def setup_method(self):
        self.decoder = TelemetryDecoder()
        self.schema = {"temperatura": FieldRange(), "humedad": FieldRange(0, 100)}

    def test_declared_fields_are_parsed(self):
        fields = self.decoder.decode({"temperatura": 21.5, "humedad": 60}, self.schema)
        assert fields == {"temperatura": 21.5, "humedad": 60.0}

    def test_numeric_strings_accepted(self):
        fields = self.decoder.decode({"temperatura": "21.5"}, self.schema)
        assert fields == {"temperatura": 21.5}

    def test_boolean_in_declared_field_rejected(self):
        with pytest.raises(DecodeError):
            self.decoder.decode({"temperatura": True}, self.schema)

    def test_non_numeric_declared_field_rejected(self):
        with pytest.raises(DecodeError):
            self.decoder.decode({"temperatura": "caliente"}, self.schema)

    def test_undeclared_numeric_fields_kept_and_metadata_ignored(self):
        fields = self.decoder.decode(
            {"temperatura": 20, "co2": 410, "device": "esp32", "online": True},
            self.schema,
        )
        assert fields == {"temperatura": 20.0, "co2": 410.0}

    def test_payload_without_numeric_fields_rejected(self):
        with pytest.raises(DecodeError):
            self.decoder.decode({"device": "esp32"}, self.schema)

    def test_non_object_payload_rejected(self):
        with pytest.raises(DecodeError):
            self.decoder.decode([1, 2, 3], self.schema)

    def test_out_of_range_is_informational(self):
        fields = self.decoder.decode({"humedad": 140}, self.schema)
        assert fields == {"humedad": 140.0}
        assert self.decoder.out_of_range(fields, self.schema) == ("humedad",)

    def test_field_names_that_are_not_identifiers(self):
        schema = {"temp-1": FieldRange(), "_raw": FieldRange()}
        fields = self.decoder.decode({"temp-1": 3, "_raw": 4}, schema)
        assert fields == {"temp-1": 3.0, "_raw": 4.0}

    def test_invalid_json(self):
        with pytest.raises(DecodeError):
            parse_payload(b"{not json", topic="Invernadero/x/data")


# =============================================================================
# RESOLVER
# =============================================================================

class TestDeriveHardwareId:

    @pytest.mark.parametrize(
        "topic,expected",
        [
            ("Invernadero/TemHum1/data", "invernadero-temhum1"),
            ("Invernadero/Agua/sw", "invernadero-agua"),
            ("Invernadero/pH Sensor#2/data", "invernadero-phsensor2"),
            ("greenhouse/zone_a/control", "greenhouse-zonea"),
        ],
    )
    def test_derivation(self, topic, expected):
        assert derive_hardware_id(topic) == expected

    def test_schema_inference_uses_known_ranges(self):
        schema = infer_schema({"ph": 6.5, "temperatura": 20, "device": "x"})
        assert schema["ph"] == FieldRange(0.0, 14.0)
        assert schema["temperatura"] == FieldRange()
        assert "device" not in schema


class TestSensorResolver:

    def test_first_sight_registers_sensor(self, fake_repository):
        resolver = SensorResolver(fake_repository)
        sensor = resolver.resolve("Invernadero/TemHum1/data", {"temperatura": 20, "humedad": 55})

        assert sensor.hardware_id == "invernadero-temhum1"
        assert sensor.origin is SensorOrigin.AUTO_DISCOVERED
        assert set(sensor.schema) == {"temperatura", "humedad"}
        assert "invernadero-temhum1" in fake_repository.sensors

    def test_existing_mapping_returned_unchanged(self, fake_repository):
        existing = fake_repository.add_sensor(
            "manual-ph", "Invernadero/PH/data", {"ph": FieldRange(5.5, 8.5)}
        )
        resolver = SensorResolver(fake_repository)

        sensor = resolver.resolve("Invernadero/PH/data", {"ph": 7, "extra": 1})

        assert sensor is existing
        assert fake_repository.upsert_calls == 0

    def test_hot_path_skips_repository(self, fake_repository):
        resolver = SensorResolver(fake_repository)
        resolver.resolve("Invernadero/A/data", {"t": 1})
        fake_repository.get_sensor_by_topic = MagicMock(side_effect=AssertionError("should not hit DB"))

        assert resolver.resolve("Invernadero/A/data", {"t": 2}).hardware_id == "invernadero-a"

    def test_concurrent_first_sight_yields_one_record(self, fake_repository):
        resolver = SensorResolver(fake_repository)
        barrier = threading.Barrier(8)
        results = []

        def worker():
            barrier.wait()
            results.append(resolver.resolve("Invernadero/Nuevo/data", {"temperatura": 20}))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(fake_repository.sensors) == 1
        assert {s.hardware_id for s in results} == {"invernadero-nuevo"}

    def test_concurrent_first_sight_on_sql_repository(self, sql_repository):
        resolver_a = SensorResolver(sql_repository)
        resolver_b = SensorResolver(sql_repository)

        a = resolver_a.resolve("Invernadero/Zona1/data", {"ph": 6})
        b = resolver_b.resolve("Invernadero/Zona1/data", {"ph": 6})

        assert a.hardware_id == b.hardware_id
        assert len(sql_repository.list_sensors()) == 1

    def test_topic_without_identity_rejected(self, fake_repository):
        resolver = SensorResolver(fake_repository)
        with pytest.raises(DecodeError):
            resolver.resolve("data/sw", {"t": 1})

    def test_first_payload_without_numbers_registers_nothing(self, fake_repository):
        resolver = SensorResolver(fake_repository)
        with pytest.raises(DecodeError, match="no numeric fields"):
            resolver.resolve("Invernadero/Puerta/data", {"estado": "abierta", "ok": True})

        assert fake_repository.sensors == {}
        assert fake_repository.upsert_calls == 0

    @pytest.mark.parametrize(
        "topic, expected",
        [
            ("Invernadero/bomba01/sw", "bomba01"),
            ("greenhouse/Fan/control", "Fan"),
            ("Invernadero/bomba01/data", None),
            ("sw", None),
        ],
    )
    def test_control_device_id(self, topic, expected):
        assert control_device_id(topic) == expected

    def test_unknown_control_topic_registers_device(self, fake_repository):
        resolver = SensorResolver(fake_repository)

        device = resolver.resolve_device("Invernadero/Ventilador2/sw", {"ventilador": False})

        assert device.device_id == "ventilador2"
        assert device.device_type == AUTO_DEVICE_TYPE
        assert device.control_topic == "Invernadero/Ventilador2/sw"
        assert device.state_field == "ventilador"
        assert fake_repository.devices == {"ventilador2": device}

    def test_control_topic_without_boolean_ignored(self, fake_repository):
        resolver = SensorResolver(fake_repository)
        assert resolver.resolve_device("Invernadero/x/sw", {"level": 3}) is None
        assert fake_repository.devices == {}


# =============================================================================
# INGESTA
# =============================================================================

@pytest.fixture
def evaluator():
    ev = MagicMock()
    ev.on_reading.return_value = []
    return ev


@pytest.fixture
def ingestion(fake_repository, memory_cache, evaluator):
    return TelemetryIngestion(
        resolver=SensorResolver(fake_repository),
        cache=memory_cache,
        repository=fake_repository,
        evaluator=evaluator,
    )


class TestTelemetryIngestion:

    def test_valid_message_flows_to_cache_storage_and_rules(
        self, ingestion, fake_repository, memory_cache, evaluator
    ):
        result = ingestion.ingest("Invernadero/TemHum1/data", json.dumps({"temperatura": 21.0}).encode())

        assert result == []
        reading = memory_cache.get("invernadero-temhum1")
        assert reading.get("temperatura") == 21.0
        assert fake_repository.readings[0][0] == "invernadero-temhum1"
        evaluator.on_reading.assert_called_once_with(reading)

    def test_malformed_message_dropped(self, ingestion, evaluator):
        assert ingestion.ingest("Invernadero/TemHum1/data", b"\xff\xfe") is None
        assert ingestion.ingest("Invernadero/TemHum1/data", b"[1, 2]") is None
        evaluator.on_reading.assert_not_called()

    def test_inactive_sensor_dropped(self, ingestion, fake_repository, evaluator):
        fake_repository.add_sensor("off", "Invernadero/Off/data", {"t": FieldRange()}, active=False)
        assert ingestion.ingest("Invernadero/Off/data", b'{"t": 1}') is None
        evaluator.on_reading.assert_not_called()

    def test_out_of_range_reading_still_evaluated(self, ingestion, fake_repository, evaluator, ph_schema):
        fake_repository.add_sensor("ph-1", "Invernadero/PH/data", ph_schema)
        ingestion.ingest("Invernadero/PH/data", b'{"ph": 5.0}')

        reading = evaluator.on_reading.call_args[0][0]
        assert reading.out_of_range == ("ph",)

    def test_undecodable_first_message_leaves_no_sensor(self, ingestion, fake_repository, evaluator):
        assert ingestion.ingest("Invernadero/Puerta/data", b'{"estado": "abierta"}') is None
        assert fake_repository.sensors == {}
        evaluator.on_reading.assert_not_called()

    def test_own_command_echo_is_ignored(self, ingestion, fake_repository, evaluator):
        device = DeviceIdentity(device_id="bomba01", state_field="bomba", state=True)
        fake_repository.upsert_device(device)

        assert ingestion.ingest("Invernadero/bomba01/sw", b'{"bomba": true}') == []

        assert fake_repository.sensors == {}
        assert fake_repository.devices == {"bomba01": device}
        evaluator.on_reading.assert_not_called()

    def test_control_topic_report_updates_device_state(self, ingestion, fake_repository, evaluator):
        fake_repository.upsert_device(DeviceIdentity(device_id="bomba01", state_field="bomba", state=True))

        ingestion.ingest("Invernadero/bomba01/sw", b'{"bomba": false}')
        assert fake_repository.devices["bomba01"].state is False

        ingestion.ingest("Invernadero/bomba01/sw", b'{"bomba": "off"}')
        assert fake_repository.devices["bomba01"].state is False
        evaluator.on_reading.assert_not_called()

    def test_unknown_actuator_becomes_device_not_sensor(self, ingestion, fake_repository, evaluator):
        assert ingestion.ingest("Invernadero/bomba02/sw", b'{"state": true}') == []

        assert fake_repository.sensors == {}
        assert fake_repository.devices["bomba02"].control_topic == "Invernadero/bomba02/sw"
        assert fake_repository.devices["bomba02"].state is True
        evaluator.on_reading.assert_not_called()

    def test_registered_sensor_on_control_topic_is_telemetry(self, ingestion, fake_repository, evaluator):
        fake_repository.add_sensor("riego", "Invernadero/Riego/sw", {"caudal": FieldRange()})

        ingestion.ingest("Invernadero/Riego/sw", b'{"caudal": 3.5}')

        assert evaluator.on_reading.call_args[0][0].get("caudal") == 3.5
        assert fake_repository.devices == {}

    def test_storage_failure_does_not_block_evaluation(self, ingestion, fake_repository, evaluator):
        fake_repository.insert_reading = MagicMock(side_effect=OperationalError("INSERT", {}, Exception("db down")))
        ingestion.ingest("Invernadero/T/data", b'{"t": 1}')
        evaluator.on_reading.assert_called_once()


class TestMessageHandler:

    def test_counts_processed_dropped_failed(self):
        ingestion = MagicMock()
        ingestion.ingest.side_effect = [[], None, RuntimeError("boom")]
        handler = MessageHandler(ingestion)

        handler.handle("a", b"{}")
        handler.handle("a", b"{}")
        handler.handle("b", b"{}")

        assert handler.stats.received == 3
        assert handler.stats.processed == 1
        assert handler.stats.dropped == 1
        assert handler.stats.failed == 1
        assert handler.stats.in_flight == 0
        assert handler.stats.to_dict()["last_topic"] == "b"
