"""Ejecución de las acciones de una regla disparada.

Cada acción corre aislada: el fallo de una (dispositivo inexistente,
timeout de MQTT, webhook caído) queda en su ActionOutcome y no impide
las siguientes. Al terminar, el registro completo va al Execution Log.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError

from common.config import Settings

from ..core.domain.execution import ActionOutcome, ExecutionRecord
from ..core.domain.notification import NotificationRequest
from ..core.domain.reading import Reading
from ..core.domain.rules import DeviceControlAction, NotifyAction, Rule
from ..core.monitoring.metrics import ACTIONS_TOTAL
from ..errors import AutomationError, DeviceNotFound
from ..infrastructure.audit.execution_log import ExecutionLog
from ..infrastructure.persistence.repository import AutomationRepository
from ..notifications.dispatcher import NotificationDispatcher
from ..notifications.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_CONTROL_TOPIC_PREFIX = "Invernadero"
_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_.]+)\s*\}\}")


class CommandPublisher(Protocol):
    def publish(self, topic: str, payload: dict, qos: int = 1, timeout: float = 5.0) -> None: ...


@dataclass(frozen=True)
class NotificationDefaults:
    """Valores por defecto de canal y mecanismo de entrega."""
    channel: str = "telegram"
    target_channel: str = "webhook"

    @classmethod
    def from_settings(cls, settings: Settings) -> "NotificationDefaults":
        return cls(
            channel=settings.notify_default_channel,
            target_channel=settings.notify_default_target_channel,
        )


def render_template(template: str, variables: Mapping[str, Any]) -> str:
    """Sustituye `{{var}}`; los placeholders desconocidos quedan intactos."""

    def replace(match: re.Match) -> str:
        name = match.group(1)
        if name in variables and variables[name] is not None:
            value = variables[name]
            if isinstance(value, float):
                return f"{value:g}"
            return str(value)
        return match.group(0)

    return _PLACEHOLDER.sub(replace, template)


def build_context(rule: Rule, reading: Optional[Reading], record: ExecutionRecord) -> Dict[str, Any]:
    context: Dict[str, Any] = {}
    if reading is not None:
        context.update(reading.fields)
    context.update(
        {
            "rule_id": rule.id,
            "rule_name": rule.name,
            "sensor_id": record.trigger_sensor_id,
            "timestamp": record.triggered_at.isoformat(),
        }
    )
    return context


def build_notification_request(
    action: NotifyAction,
    rule: Rule,
    context: Mapping[str, Any],
    defaults: NotificationDefaults,
    reading: Optional[Reading] = None,
) -> NotificationRequest:
    """Único punto donde se aplican los defaults de channel/target_channel."""
    template = action.template or f"Regla '{rule.name}' activada"
    title = render_template(action.title, context) if action.title else None

    metadata: Dict[str, Any] = {
        "rule_id": rule.id,
        "rule_name": rule.name,
        "rule_priority": rule.priority,
        "sensor_id": context.get("sensor_id"),
    }
    if reading is not None:
        metadata["values"] = dict(reading.fields)

    return NotificationRequest(
        message=render_template(template, context),
        title=title,
        priority=action.priority,
        channel=action.channel or defaults.channel,
        target_channel=action.target_channel or defaults.target_channel,
        metadata=metadata,
    )


class ActionExecutor:
    """Ejecuta las acciones de una regla en orden."""

    def __init__(
        self,
        repository: AutomationRepository,
        publisher: CommandPublisher,
        dispatcher: NotificationDispatcher,
        execution_log: ExecutionLog,
        defaults: Optional[NotificationDefaults] = None,
        control_topic_prefix: str = DEFAULT_CONTROL_TOPIC_PREFIX,
        publish_timeout: float = 5.0,
        publish_retry: Optional[RetryPolicy] = None,
    ):
        self._repository = repository
        self._publisher = publisher
        self._dispatcher = dispatcher
        self._execution_log = execution_log
        self._defaults = defaults or NotificationDefaults()
        self._control_topic_prefix = control_topic_prefix.rstrip("/")
        self._publish_timeout = publish_timeout
        self._publish_retry = publish_retry or RetryPolicy()

    def execute(self, rule: Rule, record: ExecutionRecord, reading: Optional[Reading] = None) -> ExecutionRecord:
        started = time.perf_counter()
        context = build_context(rule, reading, record)

        for index, action in enumerate(rule.actions):
            outcome = self._run_action(index, action, rule, context, reading)
            record.outcomes.append(outcome)
            ACTIONS_TOTAL.labels(
                type=outcome.action_type, status="success" if outcome.success else "failed"
            ).inc()

        record.duration_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "[ACTIONS] rule=%s executed: %d ok, %d failed (%.0fms)",
            rule.id,
            record.actions_succeeded,
            record.actions_failed,
            record.duration_ms,
        )
        self._execution_log.append(record)
        return record

    def _run_action(
        self,
        index: int,
        action: Any,
        rule: Rule,
        context: Mapping[str, Any],
        reading: Optional[Reading],
    ) -> ActionOutcome:
        started = time.perf_counter()
        if isinstance(action, DeviceControlAction):
            outcome = ActionOutcome(index=index, action_type=action.type, target=action.device_id, success=False)
        elif isinstance(action, NotifyAction):
            outcome = ActionOutcome(index=index, action_type=action.type, target=None, success=False)
        else:
            return ActionOutcome(
                index=index,
                action_type=type(action).__name__,
                target=None,
                success=False,
                error="unsupported action",
            )

        try:
            if isinstance(action, DeviceControlAction):
                self._control_device(action)
                outcome.success = True
            else:
                request = build_notification_request(action, rule, context, self._defaults, reading)
                outcome.target = request.target_channel
                outcome.deliveries = self._dispatcher.dispatch(request)
                failed = [d for d in outcome.deliveries if not d.success]
                outcome.success = not failed
                if failed:
                    outcome.error = "; ".join(f"{d.transport}: {d.error}" for d in failed)
        except AutomationError as e:
            outcome.error = str(e)
            logger.warning("[ACTIONS] rule=%s action #%d %s failed: %s", rule.id, index, action.type, e)
        except Exception as e:
            outcome.error = f"unexpected error: {e}"
            logger.exception("[ACTIONS] rule=%s action #%d %s crashed", rule.id, index, action.type)

        outcome.latency_ms = (time.perf_counter() - started) * 1000
        return outcome

    def control_topic(self, device_id: str, control_topic: Optional[str]) -> str:
        return control_topic or f"{self._control_topic_prefix}/{device_id}/sw"

    def _control_device(self, action: DeviceControlAction) -> None:
        """Raises:
            DeviceNotFound: dispositivo inexistente o inactivo
            TransportTimeout / TransportError: publicación MQTT fallida tras agotar los reintentos
        """
        device = self._repository.get_device(action.device_id)
        if device is None or not device.active:
            raise DeviceNotFound(action.device_id)

        topic = self.control_topic(device.device_id, device.control_topic)
        payload = {device.state_field: action.state}
        self._publish_retry.run(
            lambda: self._publisher.publish(topic, payload, qos=1, timeout=self._publish_timeout),
            label=f"control:{device.device_id}",
        )
        logger.info("[ACTIONS] device=%s -> %s topic=%s", device.device_id, action.command, topic)
        try:
            self._repository.set_device_state(device.device_id, action.state)
        except SQLAlchemyError as e:
            # El comando ya se publicó; la acción no falla por esto
            logger.error("[ACTIONS] Failed to persist state device=%s: %s", device.device_id, e)
