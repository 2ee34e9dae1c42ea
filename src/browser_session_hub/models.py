"""Shared models used across the session hub."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class SessionStatus(str, enum.Enum):
    """Persisted lifecycle states of an automation session."""

    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ActionStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"


class ActionType(str, enum.Enum):
    """Kind tag stored on every audit record."""

    NLP = "nlp"
    EXTRACT = "extract"


class ActionOutcome(BaseModel):
    """Result of one dispatched instruction. A failure is data, not an exception."""

    success: bool
    message: str


class ExtractionOutcome(ActionOutcome):
    data: Optional[dict[str, Any]] = None


class UserRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: Optional[str] = None
    created_at: datetime


class ProjectRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    user_id: str
    created_at: datetime
    updated_at: datetime


class ProjectSummary(ProjectRecord):
    session_count: int = 0


class SessionRecord(BaseModel):
    """Persisted view of a session row."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    project_id: str
    status: SessionStatus
    start_url: Optional[str] = None
    container_id: Optional[str] = None
    created_at: datetime
    last_used_at: datetime


class SessionActionRecord(BaseModel):
    """Immutable audit entry for one executed instruction."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    session_id: str
    action_type: str
    details: Optional[str] = None
    status: ActionStatus
    message: Optional[str] = None
    created_at: datetime


class BrowserActionType(str, enum.Enum):
    """Primitive browser commands a natural-language instruction is planned into."""

    NAVIGATE = "navigate"
    CLICK = "click"
    TYPE = "type"
    PRESS = "press"
    WAIT_FOR_SELECTOR = "wait_for_selector"
    WAIT = "wait"
    SCROLL = "scroll"


class BrowserAction(BaseModel):
    """A single primitive step for the browser to execute."""

    type: BrowserActionType
    selector: Optional[str] = None
    text: Optional[str] = None
    url: Optional[str] = None
    key: Optional[str] = None
    seconds: Optional[float] = None
    timeout: Optional[float] = Field(default=None, description="Optional timeout for waits")
    scroll_by: Optional[int] = Field(
        default=None,
        description="Number of pixels to scroll vertically (positive = down).",
    )


class ActionPlan(BaseModel):
    """Structured response from the planner for one instruction."""

    success: bool = True
    actions: list[BrowserAction] = Field(default_factory=list)
    message: Optional[str] = Field(default=None, description="Human-readable summary of the step.")
    failure_reason: Optional[str] = None
