"""Request, response and collaborator messages at the runtime boundary."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from copilot.models.audit_record import ToolCallRecord
from copilot.models.classification import SignalSnapshot
from copilot.models.contribution import Challenge
from copilot.models.conversation_session import PendingDraft
from copilot.models.persona import ConversationMode, PersonaId
from copilot.models.policy_decision import AutonomyMode


class InvokeRequest(BaseModel):
    """Caller request for one conversational turn."""

    session_id: Optional[str] = Field(None, description="Existing session, absent to create one")
    input: str = Field(..., min_length=1, max_length=20000, description="User input text")
    autonomy_mode: Optional[AutonomyMode] = Field(None, description="Autonomy mode override")
    project_id: Optional[str] = Field(None, description="Project scope")
    is_background: bool = Field(default=False, description="Scheduled background invocation")
    signals: SignalSnapshot = Field(default_factory=SignalSnapshot)

    @field_validator('input')
    @classmethod
    def validate_input(cls, v):
        """Reject whitespace-only input."""
        if not v.strip():
            raise ValueError("input cannot be empty")
        return v

    @field_validator('session_id')
    @classmethod
    def validate_session_id(cls, v):
        """Validate session ID format when provided."""
        if v is not None and not v.strip():
            raise ValueError("session_id cannot be blank")
        return v


class DeniedAttempt(BaseModel):
    """A proposed call that policy refused to run."""

    tool_name: str
    reason: str
    record_id: str = Field(..., description="ToolCallRecord for the denial")
    proposed_by: List[PersonaId] = Field(default_factory=list)


class InvokeResponse(BaseModel):
    """Result of one runtime invocation."""

    session_id: str = Field(..., description="Session identity (new or existing)")
    turn_id: str
    text: str
    mode: ConversationMode
    cited_personas: List[PersonaId] = Field(default_factory=list)
    executed: List[ToolCallRecord] = Field(default_factory=list)
    held: List[PendingDraft] = Field(default_factory=list)
    denied: List[DeniedAttempt] = Field(default_factory=list)
    unresolved_challenges: List[Challenge] = Field(default_factory=list)
    show_attribution: bool = False


class HealthStatus(str, Enum):
    """Overall runtime health."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class CollaboratorHealth(BaseModel):
    """Reachability of one dependent collaborator."""

    reachable: bool
    detail: Optional[str] = None
    latency_ms: Optional[int] = None


class HealthResponse(BaseModel):
    """Liveness report; producing it never mutates state."""

    status: HealthStatus
    version: str
    uptime_seconds: float
    active_sessions: int
    collaborators: Dict[str, CollaboratorHealth] = Field(default_factory=dict)
    checked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ToolExecutionContext(BaseModel):
    """Context handed to the tool executor with each allowed call."""

    session_id: str
    project_id: Optional[str] = None
    is_background: bool = False
    user_approved: bool = False
    acting_persona: Optional[str] = None


class ToolResult(BaseModel):
    """Executor outcome passed through verbatim."""

    tool_name: str
    success: bool
    payload: Optional[Any] = None
    error: Optional[str] = None
