"""In-process memory store with keyword relevance scoring."""

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional

from copilot.models.memory_record import MemoryRecord, MemoryType
from copilot.services.interfaces.memory_store import IMemoryStore


logger = logging.getLogger(__name__)

_NON_WORD = re.compile(r"[^\w\s]")


def _terms(text: str) -> List[str]:
    return [term for term in _NON_WORD.sub("", text.lower()).split() if term]


class InMemoryStore(IMemoryStore):
    """Default memory backend.

    Records are append-only. When ``max_records`` is exceeded the oldest
    records are evicted, so retrieval may return fewer records than requested.
    """

    def __init__(self, max_records: int = 10000):
        if max_records < 1:
            raise ValueError("max_records must be at least 1")
        self.max_records = max_records
        self._records: List[MemoryRecord] = []
        self._lock = asyncio.Lock()

    async def add(self, record: MemoryRecord) -> None:
        async with self._lock:
            self._records.append(record)
            overflow = len(self._records) - self.max_records
            if overflow > 0:
                del self._records[:overflow]
                logger.debug(f"Evicted {overflow} oldest memory records")

    async def record_event(
        self,
        event_type: str,
        content: str,
        project_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> MemoryRecord:
        record = MemoryRecord(
            content=content,
            memory_type=MemoryType.EPISODIC,
            project_id=project_id,
            metadata={"event_type": event_type, **(metadata or {})}
        )
        await self.add(record)
        return record

    async def retrieve_relevant(
        self,
        query: str,
        limit: int = 5,
        project_id: Optional[str] = None
    ) -> List[MemoryRecord]:
        """Score records by the share of query terms they contain.

        Records scoped to another project are skipped; unscoped records match
        every project. Ties go to the most recent record.
        """
        if limit <= 0:
            return []

        query_terms = _terms(query)
        if not query_terms:
            return []

        scored = []
        for index, record in enumerate(list(self._records)):
            if project_id and record.project_id and record.project_id != project_id:
                continue
            content = record.content.lower()
            matches = sum(1 for term in query_terms if term in content)
            if matches:
                scored.append((matches / len(query_terms), index, record))

        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [
            record.model_copy(update={"relevance_score": score})
            for score, _, record in scored[:limit]
        ]

    async def get_last_session_summary(self, project_id: Optional[str] = None) -> Optional[MemoryRecord]:
        for record in reversed(self._records):
            if record.memory_type != MemoryType.SUMMARY:
                continue
            if project_id and record.project_id and record.project_id != project_id:
                continue
            return record
        return None

    async def ping(self) -> bool:
        return True

    def events(self) -> List[MemoryRecord]:
        """Episodic records in insertion order."""
        return [r for r in self._records if r.memory_type == MemoryType.EPISODIC]

    def __len__(self) -> int:
        return len(self._records)
