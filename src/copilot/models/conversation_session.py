"""Session state models: turns, pending drafts and the session aggregate."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from copilot.models.audit_record import ToolCallRecord
from copilot.models.contribution import CopilotResponse
from copilot.models.policy_decision import AutonomyMode
from copilot.models.tool_definition import ToolCall


class DraftStatus(str, Enum):
    """PendingDraft lifecycle states."""

    PROPOSED = "proposed"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    EXPIRED = "expired"


TERMINAL_DRAFT_STATES = (DraftStatus.CONFIRMED, DraftStatus.REJECTED, DraftStatus.EXPIRED)


class PendingDraft(BaseModel):
    """A held tool call awaiting explicit resolution.

    The draft_id is the confirmation handle given to the caller.
    """

    draft_id: str = Field(default_factory=lambda: str(uuid4()))
    session_id: str = Field(..., description="Owning session")
    tool_call: ToolCall = Field(..., description="The held call")
    reason: str = Field(..., description="Why the call was held")
    risk_tier: Optional[str] = Field(None, description="Risk tier of the held tool")
    status: DraftStatus = Field(default=DraftStatus.PROPOSED)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: Optional[datetime] = Field(None, description="When the draft expires if unresolved")
    resolved_at: Optional[datetime] = Field(None)
    resolution_note: Optional[str] = Field(None)
    diff_preview: Optional[str] = Field(None, description="Artefact diff for review, when available")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_DRAFT_STATES

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check whether the inactivity window has elapsed."""
        if self.expires_at is None or self.is_terminal:
            return False
        return (now or datetime.now(timezone.utc)) >= self.expires_at

    def transition_to(self, new_status: DraftStatus, note: Optional[str] = None) -> bool:
        """Transition to a terminal status; returns False for an invalid transition."""
        valid_transitions = {
            DraftStatus.PROPOSED: [DraftStatus.CONFIRMED, DraftStatus.REJECTED, DraftStatus.EXPIRED],
            DraftStatus.CONFIRMED: [],
            DraftStatus.REJECTED: [],
            DraftStatus.EXPIRED: []
        }

        if new_status not in valid_transitions.get(self.status, []):
            return False

        self.status = new_status
        self.resolved_at = datetime.now(timezone.utc)
        self.resolution_note = note
        return True


class ConversationTurn(BaseModel):
    """One request/response exchange. Never mutated after creation."""

    turn_id: str = Field(default_factory=lambda: str(uuid4()))
    sequence: int = Field(..., ge=1, description="1-based position in the session history")
    input: str = Field(..., description="User input for the turn")
    response: CopilotResponse = Field(..., description="Synthesised response")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    class Config:
        """Pydantic configuration."""

        frozen = True


class SessionState(BaseModel):
    """Per-conversation state, owned and mutated only by the SessionManager."""

    session_id: str = Field(
        default_factory=lambda: str(uuid4()),
        description="Conversation identity"
    )
    autonomy_mode: AutonomyMode = Field(default=AutonomyMode.ASSISTED)
    project_id: Optional[str] = Field(None, description="Project the conversation is scoped to")
    turns: List[ConversationTurn] = Field(default_factory=list, description="Ordered turn history")
    pending_drafts: Dict[str, PendingDraft] = Field(default_factory=dict)
    resolved_drafts: List[PendingDraft] = Field(
        default_factory=list,
        description="Drafts that reached a terminal state, in resolution order"
    )
    tool_call_records: List[ToolCallRecord] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_activity_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_challenge_at: Optional[datetime] = Field(None, description="Last time the dissent persona was triggered")
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('session_id')
    @classmethod
    def validate_session_id(cls, v):
        """Validate session ID is not empty."""
        if not v.strip():
            raise ValueError("session_id cannot be empty")
        return v.strip()

    @property
    def has_pending_draft(self) -> bool:
        return bool(self.pending_drafts)

    def recent_turns(self, limit: int) -> List[ConversationTurn]:
        """Return the last ``limit`` turns in order."""
        if limit <= 0:
            return []
        return self.turns[-limit:]

    def touch(self) -> None:
        self.last_activity_at = datetime.now(timezone.utc)

    def summary(self) -> Dict[str, Any]:
        """Compact listing entry."""
        return {
            "session_id": self.session_id,
            "autonomy_mode": self.autonomy_mode.value,
            "project_id": self.project_id,
            "turn_count": len(self.turns),
            "pending_drafts": len(self.pending_drafts),
            "tool_calls": len(self.tool_call_records),
            "created_at": self.created_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat()
        }
