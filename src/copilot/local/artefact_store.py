"""In-memory artefact service with one-deep undo."""

import asyncio
import difflib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from copilot.services.interfaces.artefact_service import IArtefactService


logger = logging.getLogger(__name__)


class ArtefactNotFoundError(Exception):
    """No artefact (or no previous version) exists for the key."""
    pass


def _render(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    return json.dumps(content, indent=2, sort_keys=True, default=str)


class InMemoryArtefactService(IArtefactService):
    """Versioned artefacts keyed by (project, artefact type).

    Only the current and the immediately previous version are kept, so a
    revert can be applied once per update.
    """

    def __init__(self):
        self._current: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._previous: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    def get(self, project_id: str, artefact_type: str) -> Optional[Dict[str, Any]]:
        artefact = self._current.get((project_id, artefact_type))
        return dict(artefact) if artefact is not None else None

    async def merge_artefact(
        self,
        project_id: str,
        artefact_type: str,
        content: Any,
        reason: str
    ) -> Dict[str, Any]:
        key = (project_id, artefact_type)
        async with self._lock:
            current = self._current.get(key)
            version = (current["version"] + 1) if current else 1
            if current is not None:
                self._previous[key] = current

            artefact = {
                "project_id": project_id,
                "artefact_type": artefact_type,
                "version": version,
                "content": content,
                "reason": reason,
                "updated_at": datetime.now(timezone.utc).isoformat()
            }
            self._current[key] = artefact

        logger.info(f"Artefact {artefact_type} for {project_id} updated to version {version}")
        return dict(artefact)

    async def calculate_diff(self, project_id: str, artefact_type: str, content: Any) -> str:
        current = self._current.get((project_id, artefact_type))
        before = _render(current["content"]) if current else ""
        diff = difflib.unified_diff(
            before.splitlines(),
            _render(content).splitlines(),
            fromfile=f"{artefact_type} (current)",
            tofile=f"{artefact_type} (proposed)",
            lineterm=""
        )
        return "\n".join(diff)

    async def revert_artefact(self, project_id: str, artefact_type: str) -> Dict[str, Any]:
        key = (project_id, artefact_type)
        async with self._lock:
            previous = self._previous.pop(key, None)
            if previous is None:
                raise ArtefactNotFoundError(
                    f"No previous version of {artefact_type} for project {project_id}"
                )
            self._current[key] = previous

        logger.info(f"Artefact {artefact_type} for {project_id} reverted to version {previous['version']}")
        return dict(previous)
