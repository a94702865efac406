"""
Message bus: CloudEvents payload models, an in-process bus and the
RabbitMQ-backed AMQP bus.
"""

from .core import AmqpBus, BusConfig
from .local import LocalBus, topic_matches
from .models import (
    CONTROL,
    ERROR,
    EVENT,
    MESSAGE_TYPE_TO_MODEL,
    RESULT,
    TASK,
    ControlData,
    ErrorData,
    ErrorInfo,
    EventData,
    ResultData,
    TaskData,
    validate_message_data,
)

__all__ = [
    "AmqpBus",
    "BusConfig",
    "LocalBus",
    "topic_matches",
    "CONTROL",
    "ERROR",
    "EVENT",
    "MESSAGE_TYPE_TO_MODEL",
    "RESULT",
    "TASK",
    "ControlData",
    "ErrorData",
    "ErrorInfo",
    "EventData",
    "ResultData",
    "TaskData",
    "validate_message_data",
]
