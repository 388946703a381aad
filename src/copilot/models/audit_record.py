"""ToolCallRecord model: the audit trail of evaluated tool calls."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from copilot.models.policy_decision import Decision


class ToolOutcome(str, Enum):
    """What happened to an evaluated tool call."""

    EXECUTED = "executed"
    FAILED = "failed"
    HELD = "held"
    DENIED = "denied"


_OUTCOMES_BY_DECISION = {
    Decision.ALLOW: (ToolOutcome.EXECUTED, ToolOutcome.FAILED),
    Decision.HOLD: (ToolOutcome.HELD,),
    Decision.DENY: (ToolOutcome.DENIED,),
}

SENSITIVE_KEYS = [
    'password', 'token', 'secret', 'credential', 'api_key',
    'authorization', 'cookie'
]


def redact_sensitive(value: Any) -> Any:
    """Recursively replace values stored under sensitive keys."""
    if not isinstance(value, dict):
        return value

    sanitized = {}
    for key, item in value.items():
        key_lower = str(key).lower()
        if any(sensitive in key_lower for sensitive in SENSITIVE_KEYS):
            sanitized[key] = "[REDACTED]"
        else:
            sanitized[key] = redact_sensitive(item)

    return sanitized


class ToolCallRecord(BaseModel):
    """
    Immutable audit entry for one evaluated tool call.

    Records are append-only and are created for every evaluation, including
    holds and denials. The outcome must agree with the policy decision.
    """

    record_id: str = Field(default_factory=lambda: str(uuid4()), description="Unique record identifier")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    session_id: str = Field(..., description="Session the call belongs to")
    tool_name: str = Field(..., description="Evaluated tool")
    arguments: Dict[str, Any] = Field(default_factory=dict, description="Call arguments (sanitized)")
    decision: Decision = Field(..., description="Policy decision")
    reason: str = Field(..., description="Policy reason")
    outcome: ToolOutcome = Field(..., description="Execution outcome")
    result: Optional[Any] = Field(None, description="Payload returned by the executor")
    error: Optional[str] = Field(None, description="Executor error, if the call failed")
    acting_persona: Optional[str] = Field(None, description="First persona that proposed the call")
    autonomy_mode: str = Field(..., description="Autonomy mode in effect")
    risk_tier: Optional[str] = Field(None, description="Risk tier of the tool")
    duration_ms: Optional[int] = Field(None, ge=0, description="Execution time in milliseconds")
    draft_id: Optional[str] = Field(None, description="PendingDraft this record relates to")

    class Config:
        """Pydantic configuration."""

        frozen = True

    @field_validator('arguments')
    @classmethod
    def sanitize_sensitive_data(cls, v):
        """Redact credentials from recorded arguments."""
        return redact_sensitive(v)

    @model_validator(mode='after')
    def validate_outcome_matches_decision(self):
        """An allowed call never carries a denied record, and so on."""
        if self.outcome not in _OUTCOMES_BY_DECISION[self.decision]:
            raise ValueError(
                f"Outcome {self.outcome.value} is inconsistent with decision {self.decision.value}"
            )
        return self
