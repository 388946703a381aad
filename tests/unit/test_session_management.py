"""
Unit tests for session state management.

Tests the SessionManager for session lifecycle, per-session serialization,
draft resolution, expiry and JSON persistence.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from copilot.lib.config import SessionConfig
from copilot.models.audit_record import ToolCallRecord, ToolOutcome
from copilot.models.contribution import CopilotResponse, Deliberation
from copilot.models.conversation_session import DraftStatus
from copilot.models.persona import ConversationMode
from copilot.models.policy_decision import AutonomyMode, Decision
from copilot.models.tool_definition import ToolCall
from copilot.services.session_manager import (
    DraftNotFoundError,
    DraftResolutionError,
    SessionCapacityError,
    SessionError,
    SessionManager,
    SessionNotFoundError,
)


@pytest.fixture
def session_manager():
    """SessionManager with persistence disabled."""
    return SessionManager(SessionConfig())


def _response(text: str = "Done.") -> CopilotResponse:
    deliberation = Deliberation(session_id="unused", mode=ConversationMode.QUICK_QUERY)
    return CopilotResponse(text=text, mode=ConversationMode.QUICK_QUERY, deliberation=deliberation)


def _comment_call() -> ToolCall:
    return ToolCall(tool_name="jira_add_comment", arguments={"issue_key": "ATLAS-1", "body": "ping"})


def _record(session_id: str) -> ToolCallRecord:
    return ToolCallRecord(
        session_id=session_id,
        tool_name="jira_get_issue",
        decision=Decision.ALLOW,
        reason="Low-risk tool allowed in assisted mode",
        outcome=ToolOutcome.EXECUTED,
        autonomy_mode="assisted"
    )


class TestSessionLifecycle:
    """Test opening, creating and reading sessions."""

    @pytest.mark.asyncio
    async def test_open_creates_session(self, session_manager):
        """Test a new session is created with the requested settings."""
        async with session_manager.open(autonomy_mode=AutonomyMode.MANUAL, project_id="atlas") as tx:
            session_id = tx.session_id
            assert tx.autonomy_mode == AutonomyMode.MANUAL

        state = await session_manager.get_session(session_id)
        assert state.project_id == "atlas"
        assert session_manager.active_count == 1

    @pytest.mark.asyncio
    async def test_explicit_unknown_id_is_created(self, session_manager):
        """Test an unknown id is adopted when creation is allowed."""
        async with session_manager.open("session-42") as tx:
            assert tx.session_id == "session-42"

        assert await session_manager.get_session("session-42") is not None

    @pytest.mark.asyncio
    async def test_unknown_session_without_create(self, session_manager):
        """Test lookup-only opens fail for unknown sessions."""
        with pytest.raises(SessionNotFoundError):
            async with session_manager.open("missing", create=False):
                pass

        with pytest.raises(SessionNotFoundError):
            async with session_manager.open(None, create=False):
                pass

        assert session_manager.active_count == 0

    @pytest.mark.asyncio
    async def test_capacity_limit(self):
        """Test new sessions beyond the cap are refused."""
        manager = SessionManager(SessionConfig(max_active_sessions=1))
        async with manager.open("first"):
            pass

        with pytest.raises(SessionCapacityError):
            async with manager.open("second"):
                pass

        async with manager.open("first") as tx:
            assert tx.session_id == "first"

    @pytest.mark.asyncio
    async def test_snapshots_are_copies(self, session_manager):
        """Test readers cannot mutate session state."""
        async with session_manager.open("session-1") as tx:
            tx.append_turn("Hello", _response())

        snapshot = await session_manager.get_session("session-1")
        snapshot.turns.clear()

        assert len((await session_manager.get_session("session-1")).turns) == 1

    @pytest.mark.asyncio
    async def test_list_sessions(self, session_manager):
        """Test summaries with pagination."""
        for session_id in ("a", "b", "c"):
            async with session_manager.open(session_id):
                pass

        assert len(await session_manager.list_sessions()) == 3
        assert len(await session_manager.list_sessions(limit=2)) == 2
        assert len(await session_manager.list_sessions(offset=2)) == 1


class TestTransactions:
    """Test SessionTransaction mutation rules."""

    @pytest.mark.asyncio
    async def test_turns_are_append_only(self, session_manager):
        """Test turn sequence numbers grow monotonically."""
        async with session_manager.open("session-1") as tx:
            first = tx.append_turn("One", _response("1"))
            second = tx.append_turn("Two", _response("2"))

        assert (first.sequence, second.sequence) == (1, 2)
        state = await session_manager.get_session("session-1")
        assert [t.input for t in state.turns] == ["One", "Two"]

    @pytest.mark.asyncio
    async def test_closed_transaction_rejects_mutation(self, session_manager):
        """Test handles cannot be used after the lock is released."""
        async with session_manager.open("session-1") as tx:
            pass

        with pytest.raises(SessionError):
            tx.append_turn("Late", _response())

    @pytest.mark.asyncio
    async def test_record_for_other_session_rejected(self, session_manager):
        """Test records stay in their own session."""
        async with session_manager.open("session-1") as tx:
            tx.record_tool_call(_record("session-1"))
            with pytest.raises(SessionError):
                tx.record_tool_call(_record("session-2"))

        state = await session_manager.get_session("session-1")
        assert len(state.tool_call_records) == 1

    @pytest.mark.asyncio
    async def test_same_session_is_serialized(self, session_manager):
        """Test concurrent opens on one session never interleave."""
        events = []

        async def worker(name):
            async with session_manager.open("session-1") as tx:
                events.append(f"{name}:start")
                await asyncio.sleep(0.02)
                tx.append_turn(name, _response())
                events.append(f"{name}:end")

        await asyncio.gather(worker("a"), worker("b"))

        assert events in (
            ["a:start", "a:end", "b:start", "b:end"],
            ["b:start", "b:end", "a:start", "a:end"],
        )
        assert [t.sequence for t in (await session_manager.get_session("session-1")).turns] == [1, 2]

    @pytest.mark.asyncio
    async def test_set_autonomy_mode(self, session_manager):
        """Test autonomy changes persist on the session."""
        async with session_manager.open("session-1") as tx:
            tx.set_autonomy_mode("full_auto")

        assert (await session_manager.get_session("session-1")).autonomy_mode == AutonomyMode.FULL_AUTO


class TestDrafts:
    """Test PendingDraft resolution through the session manager."""

    @pytest.mark.asyncio
    async def test_draft_resolves_once(self, session_manager):
        """Test a draft reaches one terminal state only."""
        async with session_manager.open("session-1") as tx:
            draft = tx.add_draft(_comment_call(), "Assisted mode holds medium-risk tools", risk_tier="medium")
            assert draft.expires_at is not None

        async with session_manager.open("session-1") as tx:
            resolved = tx.resolve_draft(draft.draft_id, DraftStatus.CONFIRMED, "approved")
            assert resolved.status == DraftStatus.CONFIRMED

            with pytest.raises(DraftResolutionError):
                tx.resolve_draft(draft.draft_id, DraftStatus.REJECTED)

        state = await session_manager.get_session("session-1")
        assert state.pending_drafts == {}
        assert [d.draft_id for d in state.resolved_drafts] == [draft.draft_id]

    @pytest.mark.asyncio
    async def test_unknown_draft(self, session_manager):
        """Test unknown drafts are reported as not found."""
        async with session_manager.open("session-1") as tx:
            with pytest.raises(DraftNotFoundError):
                tx.get_draft("missing")

    @pytest.mark.asyncio
    async def test_non_terminal_resolution_rejected(self, session_manager):
        """Test drafts can only be resolved to a terminal state."""
        async with session_manager.open("session-1") as tx:
            draft = tx.add_draft(_comment_call(), "held")
            with pytest.raises(DraftResolutionError):
                tx.resolve_draft(draft.draft_id, DraftStatus.PROPOSED)

    @pytest.mark.asyncio
    async def test_drafts_expire_on_open(self, session_manager):
        """Test elapsed drafts expire the next time the session is opened."""
        async with session_manager.open("session-1") as tx:
            draft = tx.add_draft(_comment_call(), "held")
            draft.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)

        async with session_manager.open("session-1") as tx:
            with pytest.raises(DraftResolutionError, match="expired"):
                tx.get_draft(draft.draft_id)

    @pytest.mark.asyncio
    async def test_idle_sessions_are_evicted(self):
        """Test cleanup expires drafts and evicts idle sessions."""
        manager = SessionManager(SessionConfig(session_timeout=60))
        async with manager.open("session-1") as tx:
            draft = tx.add_draft(_comment_call(), "held")
        manager._sessions["session-1"].last_activity_at = datetime.now(timezone.utc) - timedelta(hours=1)

        assert await manager.cleanup_expired_sessions() == 1
        assert await manager.get_session("session-1") is None
        assert draft.status == DraftStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_eviction_waits_for_queued_turn(self):
        """Test a turn queued on an idle session runs before the session is evicted."""
        manager = SessionManager(SessionConfig(session_timeout=60))
        async with manager.open("session-1"):
            pass
        state = manager._sessions["session-1"]
        seen = []

        async def queued_turn():
            async with manager.open("session-1", create=False) as tx:
                seen.append(manager._sessions.get(tx.session_id) is state)

        async with manager.open("session-1", create=False):
            waiter = asyncio.create_task(queued_turn())
            await asyncio.sleep(0)
            state.last_activity_at = datetime.now(timezone.utc) - timedelta(hours=1)

        # The lock is free but its waiter has not run yet
        evicted = await manager.cleanup_expired_sessions()
        await waiter

        assert seen == [True]
        assert evicted == 1
        assert await manager.get_session("session-1") is None


class TestPersistence:
    """Test JSON persistence through aiofiles."""

    @pytest.mark.asyncio
    async def test_sessions_survive_restart(self, tmp_path):
        """Test sessions are reloaded from storage."""
        config = SessionConfig(enable_persistence=True, storage_directory=str(tmp_path))
        manager = SessionManager(config)
        await manager.initialize()

        async with manager.open("session-1", project_id="atlas") as tx:
            tx.append_turn("Hello", _response())
            tx.record_tool_call(_record("session-1"))
        await manager.shutdown()

        assert (tmp_path / "session-1.json").exists()

        restarted = SessionManager(config)
        await restarted.initialize()
        state = await restarted.get_session("session-1")

        assert state.project_id == "atlas"
        assert len(state.turns) == 1
        assert state.tool_call_records[0].tool_name == "jira_get_issue"

    def test_statistics(self, session_manager):
        """Test statistics reporting."""
        stats = session_manager.get_statistics()

        assert stats["total_sessions_in_memory"] == 0
        assert stats["persistence_enabled"] is False
