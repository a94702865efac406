"""
AMQP Bus: message bus integration using RabbitMQ + CloudEvents

Connects:
- RabbitMQ (via pika): message transport
- CloudEvents (via cloudevents): message envelope format
- Pydantic models: payload validation

Routing keys:
    task.{role}.{target}     tasks for a role ('any' = whichever worker takes it)
    evt.{topic}.{suffix}     lifecycle events
    ctl.{target}.{type}      control signals
RESULT and ERROR go straight to the task's reply_to queue.
"""

import logging
import os
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

import pika
from cloudevents.http import CloudEvent, from_json, to_json
from pydantic import ValidationError

from personaflow.config import config_dir, ensure_dotenv, load_section
from personaflow.exceptions import RemoteTaskError

from .models import (
    CONTROL,
    ERROR,
    EVENT,
    RESULT,
    TASK,
    validate_message_data,
)

logger = logging.getLogger(__name__)

Callback = Callable[[Dict[str, Any], Dict[str, Any]], None]


class BusConfig:
    """Configuration for the AMQP bus (config/bus.yaml, section 'bus')."""

    DEFAULTS = {
        "rabbitmq": {
            "host": "localhost",
            "port": 5672,
            "username_env": "RABBITMQ_USER",
            "password_env": "RABBITMQ_PASSWORD",
            "default_username": "guest",
            "default_password": "guest",
        },
        "exchange": {"name": "personaflow", "type": "topic"},
        "priorities": {"control": 255, "task": 50, "result": 50, "error": 50, "event": 10},
        "validation": {"strict_mode": True},
        "connection": {
            "heartbeat_seconds": 300,
            "blocked_connection_timeout_seconds": 300,
        },
        "rpc": {"poll_interval_seconds": 0.5},
    }

    def __init__(self, config_path: Optional[str] = None):
        ensure_dotenv()
        if config_path is None:
            config_path = str(config_dir() / "bus.yaml")
        self._bus = load_section(config_path, "bus", self.DEFAULTS)

    @property
    def rabbitmq_host(self) -> str:
        return self._bus["rabbitmq"]["host"]

    @property
    def rabbitmq_port(self) -> int:
        return self._bus["rabbitmq"]["port"]

    @property
    def rabbitmq_username(self) -> str:
        rabbitmq = self._bus["rabbitmq"]
        return os.getenv(rabbitmq["username_env"], rabbitmq["default_username"])

    @property
    def rabbitmq_password(self) -> str:
        rabbitmq = self._bus["rabbitmq"]
        return os.getenv(rabbitmq["password_env"], rabbitmq["default_password"])

    @property
    def exchange_name(self) -> str:
        return self._bus["exchange"]["name"]

    @property
    def exchange_type(self) -> str:
        return self._bus["exchange"]["type"]

    def get_priority(self, message_type: str) -> int:
        # personaflow.task -> task
        suffix = message_type.split(".")[-1]
        return self._bus["priorities"].get(suffix, 20)

    @property
    def validation_strict_mode(self) -> bool:
        return self._bus["validation"]["strict_mode"]

    @property
    def connection_heartbeat_seconds(self) -> int:
        return self._bus["connection"]["heartbeat_seconds"]

    @property
    def connection_blocked_timeout_seconds(self) -> int:
        return self._bus["connection"]["blocked_connection_timeout_seconds"]

    @property
    def rpc_poll_interval_seconds(self) -> float:
        return self._bus["rpc"]["poll_interval_seconds"]


class AmqpBus:
    """
    The messaging backbone between the orchestrator and role workers.

    Not thread-safe (pika BlockingConnection): use one AmqpBus per thread.

    Usage:
        bus = AmqpBus()
        bus.connect()

        # Orchestrator side: request/response
        result = bus.call("architect", task_data, timeout=300)

        # Worker side
        bus.subscribe("task.architect.#", on_task)
        bus.start_consuming()
    """

    def __init__(self, config_path: Optional[str] = None, config: Optional[BusConfig] = None):
        self.config = config or BusConfig(config_path)
        self._connection: Optional[pika.BlockingConnection] = None
        self._channel = None
        self._callbacks: Dict[str, Callable] = {}

    @property
    def is_connected(self) -> bool:
        return bool(self._connection and self._connection.is_open)

    def connect(self) -> None:
        """Establish connection to RabbitMQ and declare the exchange."""
        credentials = pika.PlainCredentials(
            self.config.rabbitmq_username,
            self.config.rabbitmq_password,
        )
        parameters = pika.ConnectionParameters(
            host=self.config.rabbitmq_host,
            port=self.config.rabbitmq_port,
            credentials=credentials,
            heartbeat=self.config.connection_heartbeat_seconds,
            blocked_connection_timeout=self.config.connection_blocked_timeout_seconds,
        )
        self._connection = pika.BlockingConnection(parameters)
        self._channel = self._connection.channel()
        self._channel.exchange_declare(
            exchange=self.config.exchange_name,
            exchange_type=self.config.exchange_type,
            durable=True,
        )
        logger.info(f"Connected to RabbitMQ at {self.config.rabbitmq_host}:{self.config.rabbitmq_port}")

    def disconnect(self) -> None:
        if self._connection and self._connection.is_open:
            self._connection.close()
            logger.info("Disconnected from RabbitMQ")

    def __enter__(self) -> "AmqpBus":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.disconnect()

    # =========================================================================
    # Publishing
    # =========================================================================

    def _build(
        self,
        event_type: str,
        source: str,
        data: Dict[str, Any],
        subject: Optional[str] = None,
    ):
        """Validate data and wrap it in a CloudEvent. Returns (event_id, body)."""
        try:
            validated = validate_message_data(event_type, data)
        except ValidationError as e:
            logger.error(f"Payload validation failed: {e}")
            raise ValueError(f"Message data validation failed: {e}") from e

        attributes = {
            "type": event_type,
            "source": source,
            "time": datetime.utcnow().isoformat() + "Z",
        }
        if subject:
            attributes["subject"] = subject
        event = CloudEvent(attributes, validated.model_dump(mode="json"))
        return event["id"], to_json(event)

    def _publish(
        self,
        event_type: str,
        source: str,
        data: Dict[str, Any],
        routing_key: str,
        exchange: Optional[str] = None,
        subject: Optional[str] = None,
        correlation_id: Optional[str] = None,
        reply_to: Optional[str] = None,
    ) -> str:
        event_id, body = self._build(event_type, source, data, subject)
        properties = pika.BasicProperties(
            content_type="application/json",
            delivery_mode=2,
            priority=self.config.get_priority(event_type),
            correlation_id=correlation_id or event_id,
            message_id=event_id,
            reply_to=reply_to,
        )
        self._channel.basic_publish(
            exchange=self.config.exchange_name if exchange is None else exchange,
            routing_key=routing_key,
            body=body,
            properties=properties,
        )
        logger.info(f"Sent {event_type} to {routing_key} (id={event_id})")
        return event_id

    def send_task(
        self,
        data: Dict[str, Any],
        source: str,
        target: str = "any",
        reply_to: Optional[str] = None,
    ) -> str:
        """
        Send a TASK to the role named in data['role'].

        Args:
            data: TaskData payload.
            source: Who is sending (CloudEvents source).
            target: Specific worker id or 'any'.
            reply_to: Queue for the RESULT/ERROR response.

        Returns:
            Event ID (also the correlation id)
        """
        role = str(data.get("role", "")).replace(".", "_")
        return self._publish(
            TASK,
            source,
            data,
            routing_key=f"task.{role}.{target}",
            subject=data.get("run_id"),
            reply_to=reply_to,
        )

    def send_result(
        self,
        output: Dict[str, Any],
        execution_time_ms: int,
        source: str,
        reply_to: str,
        correlation_id: str,
        subject: Optional[str] = None,
        metrics: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Send a RESULT straight to the reply_to queue of the task."""
        data = {"status": "SUCCESS", "output": output, "execution_time_ms": execution_time_ms}
        if metrics:
            data["metrics"] = metrics
        return self._publish(
            RESULT,
            source,
            data,
            routing_key=reply_to,
            exchange="",
            subject=subject,
            correlation_id=correlation_id,
        )

    def send_error(
        self,
        code: str,
        message: str,
        retryable: bool,
        source: str,
        reply_to: str,
        correlation_id: str,
        subject: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        execution_time_ms: Optional[int] = None,
    ) -> str:
        """Send an ERROR straight to the reply_to queue of the task."""
        data: Dict[str, Any] = {"error": {"code": code, "message": message, "retryable": retryable}}
        if details:
            data["error"]["details"] = details
        if execution_time_ms is not None:
            data["execution_time_ms"] = execution_time_ms
        return self._publish(
            ERROR,
            source,
            data,
            routing_key=reply_to,
            exchange="",
            subject=subject,
            correlation_id=correlation_id,
        )

    def send_event(
        self,
        topic: str,
        event_type_suffix: str,
        event_data: Dict[str, Any],
        source: str,
        subject: Optional[str] = None,
        severity: str = "INFO",
        tags: Optional[list] = None,
    ) -> str:
        """
        Publish an EVENT.

        Example:
            bus.send_event("stage", "completed", {"stage": "design"}, source="orchestrator")
            # -> routing_key = 'evt.stage.completed'
        """
        data = {
            "event_type": f"{topic}.{event_type_suffix}",
            "event_data": event_data,
            "severity": severity,
        }
        if tags:
            data["tags"] = tags
        return self._publish(
            EVENT,
            source,
            data,
            routing_key=f"evt.{topic}.{event_type_suffix}",
            subject=subject,
        )

    def send_control(
        self,
        control_type: str,
        target: str = "all",
        source: str = "operator",
        reason: Optional[str] = None,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Send a CONTROL signal (highest priority)."""
        data: Dict[str, Any] = {"control_type": control_type}
        if reason:
            data["reason"] = reason
        if parameters:
            data["parameters"] = parameters
        return self._publish(CONTROL, source, data, routing_key=f"ctl.{target}.{control_type}")

    # =========================================================================
    # Consuming
    # =========================================================================

    @staticmethod
    def _event_dict(event, properties) -> Dict[str, Any]:
        return {
            "id": event["id"],
            "type": event["type"],
            "source": event["source"],
            "subject": event.get("subject"),
            "time": event.get("time"),
            "correlation_id": getattr(properties, "correlation_id", None),
            "reply_to": getattr(properties, "reply_to", None),
        }

    def subscribe(
        self,
        routing_pattern: str,
        callback: Callback,
        queue_name: Optional[str] = None,
    ) -> str:
        """
        Subscribe to messages matching a routing pattern.

        Args:
            routing_pattern: AMQP routing key pattern (e.g. "task.architect.#")
            callback: Called with (event_dict, validated_data)
            queue_name: Optional queue name (auto-generated if not provided)

        Returns:
            Queue name
        """
        if queue_name is None:
            slug = routing_pattern.replace("*", "any").replace("#", "all").replace(".", "_")
            queue_name = f"personaflow.{slug}.{uuid4().hex[:8]}"

        self._channel.queue_declare(queue=queue_name, durable=True)
        self._channel.queue_bind(
            exchange=self.config.exchange_name,
            queue=queue_name,
            routing_key=routing_pattern,
        )

        def on_message(ch, method, properties, body):
            try:
                event = from_json(body)
                data = event.data
                if self.config.validation_strict_mode:
                    data = validate_message_data(event["type"], data).model_dump(mode="json")
                callback(self._event_dict(event, properties), data)
                ch.basic_ack(delivery_tag=method.delivery_tag)
            except ValidationError as e:
                logger.error(f"Validation failed for incoming message: {e}")
                self._nack(ch, method)
            except Exception as e:
                logger.error(f"Error processing message: {e}")
                self._nack(ch, method)

        self._channel.basic_consume(queue=queue_name, on_message_callback=on_message)
        self._callbacks[routing_pattern] = callback
        logger.info(f"Subscribed to {routing_pattern} via queue {queue_name}")
        return queue_name

    @staticmethod
    def _nack(ch, method) -> None:
        # Without requeue the message goes to the dead letter queue
        try:
            ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
        except Exception as e:
            logger.warning(f"Failed to NACK message (channel may be closed): {e}")

    def start_consuming(self) -> None:
        """Start consuming messages (blocking)."""
        logger.info("Starting to consume messages...")
        try:
            self._channel.start_consuming()
        except KeyboardInterrupt:
            self._channel.stop_consuming()
            logger.info("Stopped consuming messages")

    def stop_consuming(self) -> None:
        if self._channel:
            self._channel.stop_consuming()

    # =========================================================================
    # Request / response
    # =========================================================================

    def call(
        self,
        role: str,
        data: Dict[str, Any],
        timeout: float,
        source: str = "personaflow.orchestrator",
        target: str = "any",
    ) -> Dict[str, Any]:
        """
        Send a TASK and wait for its RESULT.

        An exclusive, server-named reply queue receives the response; the
        correlation id links it to the task.

        Returns:
            Validated ResultData as a dict.

        Raises:
            ValueError: If the task payload is invalid.
            RemoteTaskError: If the role answers with an ERROR.
            TimeoutError: If no response arrives in time.
        """
        data = {**data, "role": role}
        declared = self._channel.queue_declare(queue="", exclusive=True, auto_delete=True)
        reply_queue = declared.method.queue
        responses: Dict[str, Any] = {}

        def on_response(ch, method, properties, body):
            try:
                if properties.correlation_id == responses.get("correlation_id"):
                    event = from_json(body)
                    responses["type"] = event["type"]
                    responses["data"] = event.data
                ch.basic_ack(delivery_tag=method.delivery_tag)
            except Exception as e:
                logger.error(f"Error processing RPC response: {e}")
                self._nack(ch, method)

        consumer_tag = self._channel.basic_consume(
            queue=reply_queue, on_message_callback=on_response
        )
        try:
            responses["correlation_id"] = self.send_task(
                data, source=source, target=target, reply_to=reply_queue
            )
            deadline = time.monotonic() + timeout
            while "type" not in responses:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError(
                        f"No response from role '{role}' within {timeout}s"
                    )
                self._connection.process_data_events(
                    time_limit=min(remaining, self.config.rpc_poll_interval_seconds)
                )
        finally:
            try:
                self._channel.basic_cancel(consumer_tag)
            except Exception as e:
                logger.warning(f"Failed to cancel reply consumer: {e}")

        if responses["type"] == ERROR:
            error = validate_message_data(ERROR, responses["data"]).error
            raise RemoteTaskError(error.code, error.message, error.retryable, error.details)
        return validate_message_data(RESULT, responses["data"]).model_dump(mode="json")
