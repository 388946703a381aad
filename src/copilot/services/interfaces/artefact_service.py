"""Abstract interface for artefact storage with merge and diff semantics."""

from abc import ABC, abstractmethod
from typing import Any, Dict


class IArtefactService(ABC):
    """External artefact collaborator used for artefact drafts."""

    @abstractmethod
    async def merge_artefact(
        self,
        project_id: str,
        artefact_type: str,
        content: Any,
        reason: str
    ) -> Dict[str, Any]:
        """Merge new content into the stored artefact.

        Returns:
            Dictionary with at least the new ``version``
        """
        pass

    @abstractmethod
    async def calculate_diff(self, project_id: str, artefact_type: str, content: Any) -> str:
        """Describe what merging ``content`` would change."""
        pass

    @abstractmethod
    async def revert_artefact(self, project_id: str, artefact_type: str) -> Dict[str, Any]:
        """Revert the artefact to its previous version."""
        pass
