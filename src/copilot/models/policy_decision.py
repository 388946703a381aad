"""Autonomy modes and policy decision models."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class AutonomyMode(str, Enum):
    """Trust level attached to a session."""

    MANUAL = "manual"
    ASSISTED = "assisted"
    SUPERVISED_AUTO = "supervised_auto"
    FULL_AUTO = "full_auto"


class Decision(str, Enum):
    """Outcome of a policy evaluation."""

    ALLOW = "allow"
    HOLD = "hold"
    DENY = "deny"


class PolicyContext(BaseModel):
    """Invocation context that can tighten or unlock a decision."""

    is_background: bool = Field(default=False, description="Scheduled background invocation")
    user_confirmed: bool = Field(default=False, description="User explicitly confirmed this call")
    project_id: Optional[str] = Field(None, description="Project scope of the invocation")


class PolicyDecision(BaseModel):
    """Decision for one proposed tool call."""

    decision: Decision = Field(..., description="allow, hold or deny")
    reason: str = Field(..., description="Human-readable justification")
    tool_name: str = Field(..., description="Evaluated tool")
    autonomy_mode: str = Field(..., description="Autonomy mode the call was evaluated under")
    risk_tier: Optional[str] = Field(None, description="Risk tier of the tool, if known")

    class Config:
        """Pydantic configuration."""

        frozen = True

    @property
    def allowed(self) -> bool:
        return self.decision == Decision.ALLOW
