"""Tests del sondeo de salud del motor."""

from unittest.mock import MagicMock

from sqlalchemy.exc import OperationalError

from automation_engine.core.monitoring.health import HealthChecker


def _broken_engine():
    engine = MagicMock()
    engine.connect.side_effect = OperationalError("SELECT 1", {}, Exception("down"))
    return engine


class TestHealthChecker:

    def test_memory_cache_is_not_checked(self, sqlite_engine):
        health = HealthChecker(sqlite_engine).check(
            mqtt_connected=True,
            cache_backend="InMemoryLatestReadingCache",
            rules_active=2,
            dispatch_pending=1,
        )

        data = health.to_dict()
        assert data["healthy"] is True
        assert data["degraded"] is False
        assert data["cache"] == {"backend": "InMemoryLatestReadingCache", "reachable": None}
        assert data["rules_active"] == 2
        assert data["dispatch_pending"] == 1

    def test_database_down_is_unhealthy(self):
        health = HealthChecker(_broken_engine()).check(mqtt_connected=True, cache_backend="x")
        assert health.database_reachable is False
        assert health.healthy is False

    def test_mqtt_down_is_unhealthy(self, sqlite_engine):
        health = HealthChecker(sqlite_engine).check(mqtt_connected=False, cache_backend="x")
        assert health.healthy is False

    def test_redis_down_degrades(self, sqlite_engine):
        redis_conn = MagicMock()
        redis_conn.ping.return_value = False

        health = HealthChecker(sqlite_engine, redis_conn).check(
            mqtt_connected=True, cache_backend="RedisLatestReadingCache", readings_processed=7
        )

        assert health.healthy is True
        assert health.degraded is True
        assert health.to_dict()["readings"] == {"processed": 7, "failed": 0}
