"""Abstract interface for the reasoning-call collaborator.

The reasoning model is a black box with latency and failure modes; the
orchestrator only relies on this contract.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ReasoningError(Exception):
    """Transient reasoning-call failure (network, throttling, timeout upstream)."""
    pass


class ProposedToolCall(BaseModel):
    """A tool call as returned by the reasoning service."""

    tool_name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    rationale: Optional[str] = None


class ReasoningResult(BaseModel):
    """Output of one reasoning call."""

    text: str = Field(..., description="Generated text")
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0, description="Self-reported confidence")
    tool_calls: List[ProposedToolCall] = Field(default_factory=list)


class IReasoningService(ABC):
    """Interface for persona reasoning calls."""

    @abstractmethod
    async def call(self, prompt: str, context: Dict[str, Any]) -> ReasoningResult:
        """Run one reasoning call.

        Raises:
            ReasoningError: On transient failure
        """
        pass

    @abstractmethod
    async def ping(self) -> bool:
        """Check reachability without consuming a reasoning call."""
        pass
