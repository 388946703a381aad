"""MemoryRecord model."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


class MemoryType(str, Enum):
    """Kinds of retrievable memory."""

    SEMANTIC = "semantic"
    EPISODIC = "episodic"
    SUMMARY = "summary"
    PREFERENCE = "preference"


class MemoryRecord(BaseModel):
    """A retrievable fact or snippet used to enrich persona prompts."""

    key: str = Field(default_factory=lambda: str(uuid4()), description="Record key")
    content: str = Field(..., min_length=1, description="Fact, decision or summary text")
    memory_type: MemoryType = Field(default=MemoryType.SEMANTIC)
    project_id: Optional[str] = Field(None, description="Project scope, if any")
    relevance_score: Optional[float] = Field(None, ge=0.0, le=1.0, description="Set by retrieval")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = Field(default_factory=dict)
