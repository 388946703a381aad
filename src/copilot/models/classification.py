"""Inputs and outputs of conversation mode classification."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from copilot.models.conversation_session import ConversationTurn
from copilot.models.persona import ConversationMode


class SignalSnapshot(BaseModel):
    """Normalized delivery signals supplied by the signal pipeline."""

    velocity_gap_percent: Optional[float] = Field(
        None, description="Gap between required and observed velocity"
    )
    stalest_blocker_days: Optional[float] = Field(
        None, ge=0.0, description="Age of the oldest open blocker"
    )
    scope_added_without_tradeoff: Optional[int] = Field(
        None, ge=0, description="Tickets added to scope without a matching removal"
    )
    pending_escalations: int = Field(default=0, ge=0)


class ClassificationContext(BaseModel):
    """Everything the mode classifier may look at."""

    user_message: str = Field(..., description="Current user input")
    is_background: bool = Field(default=False)
    has_pending_draft: bool = Field(default=False)
    recent_turns: List[ConversationTurn] = Field(default_factory=list)
    signals: SignalSnapshot = Field(default_factory=SignalSnapshot)
    last_challenge_at: Optional[datetime] = Field(None)
    now: Optional[datetime] = Field(None, description="Evaluation time; defaults to the current time")


class ModeClassification(BaseModel):
    """Result of mode classification."""

    mode: ConversationMode
    confidence: float = Field(..., ge=0.0, le=1.0)
    reason: str
