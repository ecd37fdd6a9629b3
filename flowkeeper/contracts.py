"""Message contracts exchanged with job workers."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

DEFAULT_QUEUE = "flowkeeper"


class QueueConfig(BaseModel):
    """Where and how a step's jobs are submitted."""

    queue: Optional[str] = None
    connection: Optional[str] = None
    delay_seconds: int = 0
    timeout_seconds: Optional[int] = None

    def topic(self, default_queue: str = DEFAULT_QUEUE) -> str:
        return self.queue or default_queue


class JobMessage(BaseModel):
    """
    Envelope published to the transport for every unit of work. Workers
    report back through the job lifecycle, poll or compensation callbacks
    using ``job_uuid`` or ``compensation_run_id``.
    """

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: Literal["step", "poll", "compensation"] = "step"
    job_uuid: str
    job_name: str
    workflow_id: str
    step_key: str
    step_run_id: Optional[str] = None
    compensation_run_id: Optional[str] = None
    attempt: int = 1
    arguments: Dict[str, Any] = Field(default_factory=dict)
    connection: Optional[str] = None
    delay_seconds: int = 0
    timeout_seconds: Optional[int] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    spec_version: str = "1.0"

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "JobMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)
