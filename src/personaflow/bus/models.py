"""
Bus Message Models: Pydantic schemas for the payload of every bus message.

Five message types travel over the bus, each wrapped in a CloudEvents 1.0
envelope (handled by the cloudevents library):

    personaflow.task     orchestrator -> role     (routing key task.{role}.{target})
    personaflow.result   role -> orchestrator     (RPC reply-to)
    personaflow.error    role -> orchestrator     (RPC reply-to)
    personaflow.event    anyone -> subscribers    (routing key evt.{topic}.{suffix})
    personaflow.control  operator -> roles        (routing key ctl.{target}.{type})

These models validate the 'data' field only.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

# Standard error codes from google.rpc.Code (gRPC error model)
ErrorCode = Literal[
    "OK",
    "CANCELLED",
    "UNKNOWN",
    "INVALID_ARGUMENT",
    "DEADLINE_EXCEEDED",
    "NOT_FOUND",
    "ALREADY_EXISTS",
    "PERMISSION_DENIED",
    "RESOURCE_EXHAUSTED",
    "FAILED_PRECONDITION",
    "ABORTED",
    "OUT_OF_RANGE",
    "UNIMPLEMENTED",
    "INTERNAL",
    "UNAVAILABLE",
    "DATA_LOSS",
    "UNAUTHENTICATED",
]

Severity = Literal["INFO", "WARNING", "ERROR", "CRITICAL"]

ControlType = Literal["stop", "pause", "resume", "shutdown", "cancel"]

TASK = "personaflow.task"
RESULT = "personaflow.result"
ERROR = "personaflow.error"
EVENT = "personaflow.event"
CONTROL = "personaflow.control"


# =============================================================================
# TASK: work for one role in one stage
# =============================================================================

class TaskData(BaseModel):
    """Data field of personaflow.task messages."""

    role: str = Field(min_length=1, max_length=100, description="Role asked to act")
    stage: str = Field(min_length=1, max_length=64, description="Stage the task belongs to")
    run_id: str = Field(min_length=1, description="Workflow run ID")
    action: str = Field(min_length=1, max_length=100, description="Action to execute")
    params: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(
        default_factory=dict,
        description="Shared context view for the role",
    )
    inbox: List[Dict[str, Any]] = Field(
        default_factory=list,
        description="Messages from other roles delivered with this task",
    )
    attempt: int = Field(default=1, ge=1)
    timeout_seconds: Optional[int] = Field(None, ge=1, le=3600)


# =============================================================================
# RESULT / ERROR: RPC responses
# =============================================================================

class ResultData(BaseModel):
    """
    Data field of personaflow.result messages.

    RESULT contains only successful executions; failures are ERROR messages.
    """

    status: Literal["SUCCESS"] = "SUCCESS"
    output: Dict[str, Any] = Field(default_factory=dict, description="Role output")
    execution_time_ms: int = Field(ge=0)
    metrics: Optional[Dict[str, Any]] = None


class ErrorInfo(BaseModel):
    """Error information following the gRPC error model."""

    code: ErrorCode
    message: str = Field(min_length=1)
    retryable: bool
    details: Optional[Dict[str, Any]] = None


class ErrorData(BaseModel):
    """Data field of personaflow.error messages."""

    error: ErrorInfo
    execution_time_ms: Optional[int] = Field(None, ge=0)


# =============================================================================
# EVENT / CONTROL
# =============================================================================

class EventData(BaseModel):
    """Data field of personaflow.event messages (pub/sub notifications)."""

    event_type: str = Field(
        min_length=1,
        max_length=100,
        description="Format topic.suffix, e.g. 'stage.completed'",
    )
    event_data: Dict[str, Any] = Field(default_factory=dict)
    severity: Severity = "INFO"
    tags: Optional[List[str]] = None


class ControlData(BaseModel):
    """Data field of personaflow.control messages."""

    control_type: ControlType
    reason: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None


# =============================================================================
# Type mapping for validation
# =============================================================================

MESSAGE_TYPE_TO_MODEL = {
    TASK: TaskData,
    RESULT: ResultData,
    ERROR: ErrorData,
    EVENT: EventData,
    CONTROL: ControlData,
}


def validate_message_data(event_type: str, data: Dict[str, Any]) -> BaseModel:
    """
    Validate message data against the schema of its type.

    Raises:
        ValueError: If event_type is unknown
        ValidationError: If data doesn't match the schema
    """
    model_class = MESSAGE_TYPE_TO_MODEL.get(event_type)
    if model_class is None:
        raise ValueError(f"Unknown event type: {event_type}")
    return model_class.model_validate(data)
