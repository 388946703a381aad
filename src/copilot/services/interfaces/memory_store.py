"""Abstract interface for memory store backends."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from copilot.models.memory_record import MemoryRecord


class IMemoryStore(ABC):
    """Keyed store of retrievable context records.

    Backends may evict under their own retention policy, so retrieval can
    return fewer records than requested.
    """

    @abstractmethod
    async def retrieve_relevant(
        self,
        query: str,
        limit: int = 5,
        project_id: Optional[str] = None
    ) -> List[MemoryRecord]:
        """Return up to ``limit`` records ordered by relevance."""
        pass

    @abstractmethod
    async def get_last_session_summary(self, project_id: Optional[str] = None) -> Optional[MemoryRecord]:
        """Return the most recent summary record, if any."""
        pass

    @abstractmethod
    async def record_event(
        self,
        event_type: str,
        content: str,
        project_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> MemoryRecord:
        """Append an episodic record."""
        pass

    @abstractmethod
    async def add(self, record: MemoryRecord) -> None:
        """Append a record."""
        pass

    @abstractmethod
    async def ping(self) -> bool:
        """Check backend reachability."""
        pass
