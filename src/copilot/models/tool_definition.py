"""Tool definition and tool call models."""

import json
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from copilot.models.persona import PersonaId


class RiskTier(str, Enum):
    """Declared risk tier of a tool."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ToolCategory(str, Enum):
    """Tool grouping used for catalogue listings."""

    JIRA = "jira"
    OUTLOOK = "outlook"
    ARTEFACT = "artefact"
    NOTIFICATION = "notification"
    ANALYSIS = "analysis"
    PROJECT = "project"


# Argument names that identify what a call acts on.
TARGET_ARGUMENT_KEYS = ("project_id", "artefact_type", "issue_key", "message_id", "board_id")


class McpToolDefinition(BaseModel):
    """Invocable tool as published by the tool provider."""

    name: str = Field(..., min_length=1, description="Unique tool identifier")
    description: str = Field(default="", description="Description for persona tool selection")
    category: ToolCategory = Field(..., description="Tool category")
    readonly: bool = Field(default=False, description="Tool has no side effects")
    risk_tier: str = Field(..., description="Declared risk tier (low, medium, high)")
    input_schema: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        description="JSON Schema for tool arguments"
    )
    background_allowed: bool = Field(
        default=True,
        description="Tool may run during background invocations"
    )
    exclusive: bool = Field(
        default=False,
        description="Calls replace state at their target, so two different calls on one target cannot both apply"
    )

    class Config:
        """Pydantic configuration."""

        frozen = True

    @property
    def required_arguments(self) -> List[str]:
        return list(self.input_schema.get("required", []))


class ToolCall(BaseModel):
    """A tool invocation proposed by one or more personas."""

    tool_name: str = Field(..., min_length=1, description="Tool to invoke")
    arguments: Dict[str, Any] = Field(default_factory=dict, description="Tool arguments")
    rationale: Optional[str] = Field(None, description="Why the call was proposed")
    proposed_by: List[PersonaId] = Field(
        default_factory=list,
        description="Personas that proposed this call (provenance)"
    )

    @field_validator('tool_name')
    @classmethod
    def validate_tool_name(cls, v):
        """Normalise surrounding whitespace."""
        if not v.strip():
            raise ValueError("tool_name cannot be empty")
        return v.strip()

    @property
    def target(self) -> str:
        """Collision key: the tool plus the arguments naming what it acts on."""
        parts = [
            f"{key}={self.arguments[key]}"
            for key in TARGET_ARGUMENT_KEYS
            if key in self.arguments
        ]
        if not parts:
            return self.tool_name
        return f"{self.tool_name}:{','.join(parts)}"

    @property
    def fingerprint(self) -> str:
        """Identity of the call for deduplication (tool and exact arguments)."""
        return f"{self.tool_name}|{json.dumps(self.arguments, sort_keys=True, default=str)}"

    def describe(self) -> str:
        """Short human-readable rendering used in disclosures."""
        rendered = ", ".join(
            f"{key}={json.dumps(value, default=str)}"
            for key, value in sorted(self.arguments.items())
        )
        return f"{self.tool_name}({rendered})"
