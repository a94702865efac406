"""
Models used by the orchestrator at runtime.

RoleOutput lives with the shared context it is merged into and is
re-exported here because agents and dispatchers produce it.
"""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from personaflow.context.models import RoleOutput

BROADCAST = "*"


class RoleMessage(BaseModel):
    """
    A message from one role to another inside a run.

    Delivered in the recipient's inbox together with its next task.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    stage: str
    sender: str
    recipient: str
    content: str
    created_at: datetime = Field(default_factory=datetime.utcnow)
    delivered: bool = False
    delivered_in: Optional[str] = Field(None, description="Stage in which it was delivered")

    def inbox_view(self) -> dict:
        return {
            "id": self.id,
            "sender": self.sender,
            "stage": self.stage,
            "content": self.content,
        }


__all__ = ["BROADCAST", "RoleMessage", "RoleOutput"]
