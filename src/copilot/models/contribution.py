"""Deliberation models: contributions, challenges and the synthesised response."""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from copilot.models.persona import ConversationMode, PersonaId
from copilot.models.tool_definition import ToolCall


class Stance(str, Enum):
    """Polarity of a contribution's recommendation."""

    SUPPORT = "support"
    OPPOSE = "oppose"
    NEUTRAL = "neutral"


class ChallengeKind(str, Enum):
    """How a disagreement between contributions was detected."""

    ACTION_CONFLICT = "action_conflict"
    OPPOSING_RECOMMENDATION = "opposing_recommendation"


class ResolutionStrategy(str, Enum):
    """How the final response text was produced."""

    DIRECT_MERGE = "direct_merge"
    SYNTHESISED = "synthesised"
    DISCLOSED = "disclosed"


class Contribution(BaseModel):
    """One persona's output for one deliberation."""

    persona_id: PersonaId = Field(..., description="Contributing persona")
    succeeded: bool = Field(..., description="Whether the reasoning call produced a result")
    text: str = Field(default="", description="Proposed response text")
    proposed_actions: List[ToolCall] = Field(default_factory=list, description="Proposed tool calls")
    confidence: float = Field(default=0.0, ge=0.0, le=1.0, description="Self-reported or estimated confidence")
    latency_ms: int = Field(default=0, ge=0, description="Wall time spent on the call, retries included")
    attempts: int = Field(default=0, ge=0, description="Reasoning calls issued")
    stance: Stance = Field(default=Stance.NEUTRAL, description="Recommendation polarity")
    dissent_reason: Optional[str] = Field(None, description="First sentence carrying a challenge")
    error: Optional[str] = Field(None, description="Failure description for failed contributions")

    class Config:
        """Pydantic configuration."""

        frozen = True


class Challenge(BaseModel):
    """A detected disagreement between two or more contributions."""

    challenge_id: str = Field(default_factory=lambda: str(uuid4()))
    kind: ChallengeKind = Field(..., description="Detection rule that fired")
    personas: List[PersonaId] = Field(..., min_length=2, description="Personas in disagreement")
    topic: str = Field(..., description="What the disagreement is about")
    description: str = Field(..., description="Disclosure text naming each side")
    conflicting_actions: List[ToolCall] = Field(default_factory=list)
    resolved: bool = Field(default=False)
    resolution: Optional[str] = Field(None, description="How the challenge was handled")


class Deliberation(BaseModel):
    """Working unit of one turn: contributions, challenges and resolution."""

    deliberation_id: str = Field(default_factory=lambda: str(uuid4()))
    session_id: str = Field(..., description="Session the deliberation ran for")
    mode: ConversationMode = Field(..., description="Classified conversation mode")
    mode_reason: str = Field(default="", description="Why the mode was chosen")
    active_personas: List[PersonaId] = Field(default_factory=list)
    sceptic_trigger: Optional[str] = Field(None, description="Why the dissent persona was added")
    contributions: List[Contribution] = Field(default_factory=list)
    challenges: List[Challenge] = Field(default_factory=list)
    resolution_strategy: ResolutionStrategy = Field(default=ResolutionStrategy.DIRECT_MERGE)
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    duration_ms: int = Field(default=0, ge=0)

    @property
    def successful_contributions(self) -> List[Contribution]:
        return [c for c in self.contributions if c.succeeded]

    @property
    def failed_contributions(self) -> List[Contribution]:
        return [c for c in self.contributions if not c.succeeded]


class CopilotResponse(BaseModel):
    """Synthesised output of a deliberation, returned to the runtime."""

    text: str = Field(..., description="Final response text")
    mode: ConversationMode = Field(..., description="Conversation mode of the turn")
    cited_personas: List[PersonaId] = Field(
        default_factory=list,
        description="Successful contributors in priority order"
    )
    proposed_actions: List[ToolCall] = Field(
        default_factory=list,
        description="Deduplicated, non-conflicting tool calls with provenance"
    )
    unresolved_challenges: List[Challenge] = Field(default_factory=list)
    show_attribution: bool = Field(default=False, description="Render persona attribution to the user")
    deliberation: Deliberation = Field(..., description="Full deliberation record")
