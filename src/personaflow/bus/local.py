"""
Local Bus: in-process event bus with AMQP topic semantics.

Used when no RabbitMQ broker is configured (tests, CLI runs, the API
gateway). Events are validated and wrapped in CloudEvents exactly as on the
AMQP bus; subscribers are called synchronously in subscription order.
"""

import logging
import threading
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from cloudevents.http import CloudEvent
from pydantic import ValidationError

from .models import EVENT, validate_message_data

logger = logging.getLogger(__name__)

Callback = Callable[[Dict[str, Any], Dict[str, Any]], None]


def topic_matches(pattern: str, routing_key: str) -> bool:
    """
    AMQP topic matching: '*' matches exactly one word, '#' zero or more.

    >>> topic_matches("evt.stage.*", "evt.stage.completed")
    True
    >>> topic_matches("evt.#", "evt")
    True
    """
    return _match(pattern.split("."), routing_key.split("."))


def _match(pattern: List[str], words: List[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match(rest, words[1:])
    return False


class LocalBus:
    """
    In-process event bus.

    Usage:
        bus = LocalBus()
        bus.subscribe("evt.stage.*", lambda event, data: print(data["event_type"]))
        bus.send_event("stage", "completed", {"stage": "design"}, source="orchestrator")
    """

    def __init__(self, history_limit: int = 1000):
        self._subscriptions: Dict[str, Tuple[str, Callback]] = {}
        self._history: List[Dict[str, Any]] = []
        self._history_limit = history_limit
        self._lock = threading.RLock()

    def connect(self) -> None:
        """No-op; present so LocalBus and AmqpBus are interchangeable."""

    def disconnect(self) -> None:
        """No-op; present so LocalBus and AmqpBus are interchangeable."""

    def subscribe(self, routing_pattern: str, callback: Callback) -> str:
        """Subscribe to events matching an AMQP topic pattern. Returns a subscription id."""
        subscription_id = f"local.{uuid.uuid4().hex[:8]}"
        with self._lock:
            self._subscriptions[subscription_id] = (routing_pattern, callback)
        logger.debug(f"Subscribed to {routing_pattern} ({subscription_id})")
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        with self._lock:
            return self._subscriptions.pop(subscription_id, None) is not None

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
        Publish an event with routing key evt.{topic}.{suffix}.

        Returns:
            Event ID

        Raises:
            ValueError: If the event data does not validate.
        """
        data = {
            "event_type": f"{topic}.{event_type_suffix}",
            "event_data": event_data,
            "severity": severity,
        }
        if tags:
            data["tags"] = tags

        try:
            validated = validate_message_data(EVENT, data).model_dump(mode="json")
        except ValidationError as e:
            logger.error(f"Event validation failed: {e}")
            raise ValueError(f"Message data validation failed: {e}") from e

        event = CloudEvent(
            {
                "type": EVENT,
                "source": source,
                "subject": subject,
                "time": datetime.utcnow().isoformat() + "Z",
            },
            validated,
        )
        routing_key = f"evt.{topic}.{event_type_suffix}"
        event_dict = {
            "id": event["id"],
            "type": event["type"],
            "source": event["source"],
            "subject": subject,
            "time": event["time"],
            "routing_key": routing_key,
        }

        with self._lock:
            self._history.append({**event_dict, "data": validated})
            if len(self._history) > self._history_limit:
                del self._history[: len(self._history) - self._history_limit]
            targets = [
                callback
                for pattern, callback in self._subscriptions.values()
                if topic_matches(pattern, routing_key)
            ]

        for callback in targets:
            try:
                callback(event_dict, validated)
            except Exception as e:
                logger.error(f"Error in subscriber for {routing_key}: {e}")

        logger.debug(f"Sent {EVENT} to {routing_key} (id={event_dict['id']})")
        return event_dict["id"]

    def history(self, routing_pattern: str = "#") -> List[Dict[str, Any]]:
        """Published events (oldest first) whose routing key matches the pattern."""
        with self._lock:
            return [e for e in self._history if topic_matches(routing_pattern, e["routing_key"])]

    def event_types(self) -> List[str]:
        """Event types of the history, e.g. ['run.started', 'stage.started', ...]."""
        return [e["data"]["event_type"] for e in self.history()]
