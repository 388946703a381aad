"""Persona and ensemble configuration models."""

from enum import Enum
from typing import Dict, Tuple

from pydantic import BaseModel, Field, field_validator


class PersonaId(str, Enum):
    """Closed set of reasoning personas."""

    OPERATOR = "operator"
    ANALYST = "analyst"
    SCEPTIC = "sceptic"
    ADVOCATE = "advocate"
    HISTORIAN = "historian"
    SYNTHESISER = "synthesiser"


class ConversationMode(str, Enum):
    """Conversation mode derived for a single invocation."""

    QUICK_QUERY = "quick_query"
    ANALYSIS = "analysis"
    DECISION = "decision"
    ACTION = "action"
    PRE_MORTEM = "pre_mortem"
    RETROSPECTIVE = "retrospective"


DEFAULT_MODE_PERSONAS: Dict[ConversationMode, Tuple[PersonaId, ...]] = {
    ConversationMode.QUICK_QUERY: (PersonaId.OPERATOR,),
    ConversationMode.ANALYSIS: (PersonaId.ANALYST, PersonaId.HISTORIAN),
    ConversationMode.DECISION: (
        PersonaId.ANALYST,
        PersonaId.SCEPTIC,
        PersonaId.ADVOCATE,
        PersonaId.HISTORIAN,
        PersonaId.SYNTHESISER,
    ),
    ConversationMode.ACTION: (PersonaId.OPERATOR, PersonaId.ADVOCATE),
    ConversationMode.PRE_MORTEM: (
        PersonaId.SCEPTIC,
        PersonaId.ANALYST,
        PersonaId.HISTORIAN,
        PersonaId.SYNTHESISER,
    ),
    ConversationMode.RETROSPECTIVE: (
        PersonaId.ANALYST,
        PersonaId.HISTORIAN,
        PersonaId.SYNTHESISER,
    ),
}


class PersonaConfig(BaseModel):
    """Definition of one reasoning persona.

    Personas are data, not subclasses: identity, prompt fragment, priority
    and activation modes fully describe how the orchestrator treats them.
    """

    persona_id: PersonaId = Field(..., description="Persona identity")
    name: str = Field(..., min_length=1, description="Display name used in attribution")
    role: str = Field(..., description="One-line role description")
    mandate: str = Field(..., description="What the persona is responsible for")
    voice: str = Field(default="", description="Tone guidance")
    activation_modes: Tuple[ConversationMode, ...] = Field(
        default_factory=tuple,
        description="Modes in which the persona is active by default"
    )
    prompt_fragment: str = Field(..., description="System prompt fragment for the persona")
    priority: int = Field(..., ge=1, description="Ordering priority, lower runs first")
    is_dissent: bool = Field(default=False, description="Dedicated dissent/risk reviewer")
    is_synthesiser: bool = Field(default=False, description="Integrates other perspectives")

    class Config:
        """Pydantic configuration."""

        frozen = True


class ScepticThresholds(BaseModel):
    """Signal thresholds that activate the dissent persona outside its modes."""

    velocity_gap_percent: float = Field(default=20.0, ge=0.0)
    stale_blocker_days: float = Field(default=3.0, ge=0.0)
    scope_creep_ticket_count: int = Field(default=3, ge=1)
    low_confidence_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    low_confidence_lookback_turns: int = Field(default=3, ge=0)
    challenge_cooldown_seconds: float = Field(default=600.0, ge=0.0)

    class Config:
        """Pydantic configuration."""

        frozen = True


class EnsembleConfig(BaseModel):
    """Deployment-wide ensemble settings, loaded once at startup."""

    mode_personas: Dict[ConversationMode, Tuple[PersonaId, ...]] = Field(
        default_factory=lambda: dict(DEFAULT_MODE_PERSONAS),
        description="Eligible personas per conversation mode"
    )
    synthesis_modes: Tuple[ConversationMode, ...] = Field(
        default=(
            ConversationMode.DECISION,
            ConversationMode.PRE_MORTEM,
            ConversationMode.RETROSPECTIVE,
        ),
        description="Modes that always end with a synthesiser pass"
    )
    per_call_timeout_seconds: float = Field(default=10.0, gt=0)
    max_deliberation_seconds: float = Field(default=30.0, gt=0)
    max_concurrent_calls: int = Field(default=6, ge=1)
    retry_attempts: int = Field(default=2, ge=1, le=5, description="Attempts per persona call")
    retry_base_delay: float = Field(default=0.25, ge=0.0)
    retry_max_delay: float = Field(default=2.0, ge=0.0)
    challenge_confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    sceptic_thresholds: ScepticThresholds = Field(default_factory=ScepticThresholds)
    memory_lookup_limit: int = Field(default=5, ge=0)
    history_window: int = Field(default=10, ge=0)

    class Config:
        """Pydantic configuration."""

        frozen = True

    @field_validator('mode_personas')
    @classmethod
    def validate_mode_personas(cls, v):
        """Reject duplicate personas within a mode."""
        for mode, personas in v.items():
            if len(set(personas)) != len(personas):
                raise ValueError(f"Duplicate personas mapped to mode {mode}")
        return v
