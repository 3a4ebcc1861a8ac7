"""Métricas Prometheus del motor de automatización."""

from __future__ import annotations

from prometheus_client import Counter, Gauge

READINGS_TOTAL = Counter(
    "automation_readings_total",
    "Telemetry messages handled by the ingestion path",
    ["status"],  # processed, dropped, failed
)

DECODE_ERRORS_TOTAL = Counter(
    "automation_decode_errors_total",
    "Telemetry payloads rejected by the decoder",
)

SENSORS_DISCOVERED_TOTAL = Counter(
    "automation_sensors_discovered_total",
    "Sensors created by auto-discovery",
)

DEVICES_DISCOVERED_TOTAL = Counter(
    "automation_devices_discovered_total",
    "Devices created by auto-discovery on control topics",
)

RULE_MATCHES_TOTAL = Counter(
    "automation_rule_matches_total",
    "Rule evaluations that matched and fired",
)

ACTIONS_TOTAL = Counter(
    "automation_actions_total",
    "Executed rule actions",
    ["type", "status"],
)

DELIVERIES_TOTAL = Counter(
    "automation_deliveries_total",
    "Notification deliveries per transport",
    ["transport", "status"],
)

DISPATCH_DROPPED_TOTAL = Counter(
    "automation_dispatch_dropped_total",
    "Pending action jobs dropped because the dispatch backlog was full",
)

DISPATCH_QUEUE_SIZE = Gauge(
    "automation_dispatch_queue_size",
    "Pending action jobs in the dispatch backlog",
)
