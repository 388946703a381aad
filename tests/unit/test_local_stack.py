"""
Unit tests for the local development collaborators.
"""

import pytest

from copilot.local import build_local_runtime
from copilot.local.artefact_store import ArtefactNotFoundError, InMemoryArtefactService
from copilot.local.canned_reasoning import DEFAULT_RESPONSES, CannedReasoningService
from copilot.local.mock_tools import MockToolExecutor
from copilot.models.persona import ConversationMode, PersonaId
from copilot.models.runtime_messages import HealthStatus, ToolExecutionContext
from copilot.models.tool_definition import ToolCall
from copilot.services.interfaces.reasoning_service import ReasoningError, ReasoningResult


class TestArtefactService:
    """Test InMemoryArtefactService versioning and diffs."""

    @pytest.mark.asyncio
    async def test_versions_increment(self):
        """Test each merge produces a new version."""
        service = InMemoryArtefactService()

        first = await service.merge_artefact("atlas", "raid_log", {"risks": 1}, "initial")
        second = await service.merge_artefact("atlas", "raid_log", {"risks": 2}, "new risk")

        assert (first["version"], second["version"]) == (1, 2)
        assert service.get("atlas", "raid_log")["content"] == {"risks": 2}
        assert service.get("atlas", "delivery_state") is None

    @pytest.mark.asyncio
    async def test_revert_is_one_deep(self):
        """Test a revert restores the previous version once."""
        service = InMemoryArtefactService()
        await service.merge_artefact("atlas", "raid_log", {"risks": 1}, "initial")
        await service.merge_artefact("atlas", "raid_log", {"risks": 2}, "new risk")

        reverted = await service.revert_artefact("atlas", "raid_log")

        assert reverted["version"] == 1
        assert service.get("atlas", "raid_log")["content"] == {"risks": 1}
        with pytest.raises(ArtefactNotFoundError):
            await service.revert_artefact("atlas", "raid_log")

    @pytest.mark.asyncio
    async def test_diff_against_current(self):
        """Test diffs compare the proposal with the current version."""
        service = InMemoryArtefactService()
        await service.merge_artefact("atlas", "delivery_state", "status: green", "initial")

        diff = await service.calculate_diff("atlas", "delivery_state", "status: amber")

        assert "--- delivery_state (current)" in diff
        assert "+++ delivery_state (proposed)" in diff
        assert "-status: green" in diff
        assert "+status: amber" in diff

    @pytest.mark.asyncio
    async def test_diff_for_new_artefact(self):
        """Test a first version diffs against nothing."""
        diff = await InMemoryArtefactService().calculate_diff("atlas", "raid_log", {"risks": []})

        assert '+  "risks": []' in diff


class TestCannedReasoning:
    """Test CannedReasoningService behaviour."""

    @pytest.mark.asyncio
    async def test_default_responses(self):
        """Test every persona has a canned answer."""
        service = CannedReasoningService()

        result = await service.call("prompt", {"persona_id": "historian"})

        assert result.text == DEFAULT_RESPONSES[PersonaId.HISTORIAN]
        assert service.calls_for(PersonaId.HISTORIAN)[0]["prompt"] == "prompt"

    @pytest.mark.asyncio
    async def test_injected_failures(self):
        """Test leading failures are consumed before success."""
        service = CannedReasoningService(failures={"analyst": 1})

        with pytest.raises(ReasoningError):
            await service.call("p", {"persona_id": "analyst"})
        assert (await service.call("p", {"persona_id": "analyst"})).text == DEFAULT_RESPONSES[PersonaId.ANALYST]

    @pytest.mark.asyncio
    async def test_responses_are_copies(self):
        """Test callers cannot mutate the canned table."""
        service = CannedReasoningService(responses={"operator": ReasoningResult(text="Done.", confidence=0.9)})

        result = await service.call("p", {"persona_id": "operator"})
        result.text = "changed"

        assert service.responses[PersonaId.OPERATOR].text == "Done."

    @pytest.mark.asyncio
    async def test_ping(self):
        """Test reachability is configurable."""
        assert await CannedReasoningService().ping()
        assert not await CannedReasoningService(reachable=False).ping()


class TestMockToolExecutor:
    """Test MockToolExecutor recording."""

    @pytest.mark.asyncio
    async def test_records_and_returns_payloads(self):
        """Test calls are recorded with their context."""
        executor = MockToolExecutor(payloads={"jira_get_issue": {"key": "ATLAS-1"}}, failing_tools=["jira_add_comment"])
        context = ToolExecutionContext(session_id="session-1")

        ok = await executor.execute(ToolCall(tool_name="jira_get_issue"), context)
        failed = await executor.execute(ToolCall(tool_name="jira_add_comment"), context)

        assert ok.success and ok.payload == {"key": "ATLAS-1"}
        assert not failed.success and failed.error == "jira_add_comment failed"
        assert executor.executed_tools() == ["jira_get_issue", "jira_add_comment"]


class TestLocalRuntime:
    """Test build_local_runtime wiring."""

    @pytest.mark.asyncio
    async def test_runtime_answers_and_is_healthy(self):
        """Test the local stack runs a turn end to end."""
        runtime = await build_local_runtime()
        try:
            response = await runtime.invoke({"input": "hi there"})
            report = await runtime.health()
        finally:
            await runtime.shutdown()

        assert response.mode == ConversationMode.QUICK_QUERY
        assert response.cited_personas == [PersonaId.OPERATOR]
        assert report.status == HealthStatus.HEALTHY
        assert report.active_sessions == 1
        assert len(runtime.memory_store) == 4

    @pytest.mark.asyncio
    async def test_without_seed_memory(self):
        """Test memory seeding can be skipped."""
        runtime = await build_local_runtime(seed_memory=False)

        assert len(runtime.memory_store) == 0
