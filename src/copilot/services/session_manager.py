"""Session manager: the single authority for session mutation."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import aiofiles

from copilot.lib.config import SessionConfig
from copilot.lib.logging_config import AuditLogger, get_audit_logger
from copilot.lib.metrics import MetricsCollector
from copilot.models.audit_record import ToolCallRecord
from copilot.models.contribution import CopilotResponse
from copilot.models.conversation_session import (
    ConversationTurn,
    DraftStatus,
    PendingDraft,
    SessionState,
    TERMINAL_DRAFT_STATES,
)
from copilot.models.policy_decision import AutonomyMode
from copilot.models.tool_definition import ToolCall


logger = logging.getLogger(__name__)


class SessionError(Exception):
    """Base class for session errors."""
    pass


class SessionNotFoundError(SessionError):
    """Session identity is unknown."""
    pass


class SessionCapacityError(SessionError):
    """No room for another active session."""
    pass


class DraftNotFoundError(SessionError):
    """Draft identity is unknown in this session."""
    pass


class DraftResolutionError(SessionError):
    """Draft is already resolved or the requested transition is invalid."""
    pass


class SessionTransaction:
    """Mutation handle for one session, valid while its lock is held.

    Obtained from SessionManager.open(). Turns and tool call records are only
    ever appended; drafts move one way from proposed to a terminal state.
    """

    def __init__(self, manager: "SessionManager", state: SessionState):
        self._manager = manager
        self._state = state
        self._closed = False

    @property
    def session_id(self) -> str:
        return self._state.session_id

    @property
    def autonomy_mode(self) -> AutonomyMode:
        return self._state.autonomy_mode

    @property
    def project_id(self) -> Optional[str]:
        return self._state.project_id

    def _check_open(self) -> None:
        if self._closed:
            raise SessionError(f"Transaction for session {self.session_id} is closed")

    def snapshot(self) -> SessionState:
        """Deep copy of the current state for read-only collaborators."""
        return self._state.model_copy(deep=True)

    def append_turn(self, user_input: str, response: CopilotResponse) -> ConversationTurn:
        self._check_open()
        turn = ConversationTurn(
            sequence=len(self._state.turns) + 1,
            input=user_input,
            response=response
        )
        self._state.turns.append(turn)
        self._state.touch()
        return turn

    def add_draft(
        self,
        tool_call: ToolCall,
        reason: str,
        risk_tier: Optional[str] = None,
        diff_preview: Optional[str] = None
    ) -> PendingDraft:
        """Hold a tool call for explicit resolution."""
        self._check_open()
        now = datetime.now(timezone.utc)
        draft = PendingDraft(
            session_id=self.session_id,
            tool_call=tool_call,
            reason=reason,
            risk_tier=risk_tier,
            created_at=now,
            expires_at=now + timedelta(seconds=self._manager.config.draft_expiry_seconds),
            diff_preview=diff_preview
        )
        self._state.pending_drafts[draft.draft_id] = draft
        self._manager.audit_logger.log_draft_event(
            "proposed", self.session_id, draft.draft_id, tool_call.tool_name, draft.status.value
        )
        return draft

    def get_draft(self, draft_id: str) -> PendingDraft:
        """Get a pending draft.

        Raises:
            DraftResolutionError: If the draft already reached a terminal state
            DraftNotFoundError: If the draft is unknown
        """
        self._check_open()
        draft = self._state.pending_drafts.get(draft_id)
        if draft is not None:
            return draft

        for resolved in self._state.resolved_drafts:
            if resolved.draft_id == draft_id:
                raise DraftResolutionError(
                    f"Draft {draft_id} was already {resolved.status.value}"
                )

        raise DraftNotFoundError(f"Draft {draft_id} not found in session {self.session_id}")

    def resolve_draft(self, draft_id: str, status: DraftStatus, note: Optional[str] = None) -> PendingDraft:
        """Move a pending draft to a terminal state exactly once."""
        self._check_open()
        status = DraftStatus(status)
        if status not in TERMINAL_DRAFT_STATES:
            raise DraftResolutionError(f"{status.value} is not a terminal draft state")

        draft = self.get_draft(draft_id)
        if not draft.transition_to(status, note):
            raise DraftResolutionError(
                f"Cannot transition draft {draft_id} from {draft.status.value} to {status.value}"
            )

        self._manager._retire_draft(self._state, draft)
        self._state.touch()
        return draft

    def record_tool_call(self, record: ToolCallRecord) -> ToolCallRecord:
        """Append an audit record. Records are never removed or replaced."""
        self._check_open()
        if record.session_id != self.session_id:
            raise SessionError(
                f"Record for session {record.session_id} cannot be added to {self.session_id}"
            )
        self._state.tool_call_records.append(record)
        self._manager.audit_logger.log_tool_event(
            record_id=record.record_id,
            session_id=record.session_id,
            tool_name=record.tool_name,
            decision=record.decision.value,
            outcome=record.outcome.value,
            acting_persona=record.acting_persona,
            duration_ms=record.duration_ms,
            error=record.error
        )
        return record

    def set_autonomy_mode(self, autonomy_mode: AutonomyMode) -> None:
        self._check_open()
        autonomy_mode = AutonomyMode(autonomy_mode)
        if autonomy_mode != self._state.autonomy_mode:
            logger.info(
                f"Session {self.session_id} autonomy mode "
                f"{self._state.autonomy_mode.value} -> {autonomy_mode.value}"
            )
            self._state.autonomy_mode = autonomy_mode

    def mark_challenge(self, at: Optional[datetime] = None) -> None:
        """Start the dissent cooldown window."""
        self._check_open()
        self._state.last_challenge_at = at or datetime.now(timezone.utc)


class SessionManager:
    """Owns SessionState and serializes mutation per session identity.

    Every mutation happens through a SessionTransaction while the session's
    lock is held, so concurrent invocations on one session are queued and
    never interleave. Reads return deep-copied snapshots.
    """

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        audit_logger: Optional[AuditLogger] = None,
        metrics_collector: Optional[MetricsCollector] = None
    ):
        """Initialize session manager.

        Args:
            config: Session configuration
            audit_logger: Audit trail for session and draft events
            metrics_collector: Optional metrics sink
        """
        self.config = config or SessionConfig()
        self.audit_logger = audit_logger or get_audit_logger()
        self.metrics_collector = metrics_collector
        self.storage_path = Path(self.config.storage_directory).expanduser()

        # In-memory session cache
        self._sessions: Dict[str, SessionState] = {}
        self._session_locks: Dict[str, asyncio.Lock] = {}

        self._cleanup_task: Optional[asyncio.Task] = None

    async def initialize(self) -> None:
        """Load persisted sessions and start periodic cleanup."""
        logger.info("Initializing session manager")

        if self.config.enable_persistence:
            self.storage_path.mkdir(parents=True, exist_ok=True)
            await self._load_sessions_from_storage()

        if self.config.auto_cleanup_enabled:
            self._cleanup_task = asyncio.create_task(self._periodic_cleanup())

        logger.info(f"Session manager initialized with {len(self._sessions)} sessions")

    @asynccontextmanager
    async def open(
        self,
        session_id: Optional[str] = None,
        create: bool = True,
        autonomy_mode: Optional[AutonomyMode] = None,
        project_id: Optional[str] = None
    ) -> AsyncIterator[SessionTransaction]:
        """Acquire a session for mutation.

        Args:
            session_id: Session identity, absent to create a new session
            create: Create the session if it does not exist
            autonomy_mode: Initial autonomy mode for a new session
            project_id: Project scope for a new session

        Raises:
            SessionNotFoundError: If the session is unknown and create is False
            SessionCapacityError: If a new session would exceed max_active_sessions
        """
        if session_id is None:
            if not create:
                raise SessionNotFoundError("A session id is required")
            session_id = SessionState().session_id

        lock = await self._acquire(session_id)
        try:
            state = self._sessions.get(session_id)
            if state is None and self.config.enable_persistence:
                state = await self._load_session_from_storage(session_id)
                if state is not None:
                    self._sessions[session_id] = state

            if state is None:
                if not create:
                    self._discard_unused_lock(session_id, lock)
                    raise SessionNotFoundError(f"Session {session_id} not found")
                try:
                    state = self._create_session(session_id, autonomy_mode, project_id)
                except SessionCapacityError:
                    self._discard_unused_lock(session_id, lock)
                    raise

            self._expire_drafts(state)

            transaction = SessionTransaction(self, state)
            try:
                yield transaction
            finally:
                transaction._closed = True
                if self.config.enable_persistence:
                    await self._save_session_to_storage(state)
        finally:
            lock.release()

    async def _acquire(self, session_id: str) -> asyncio.Lock:
        """Hold the current lock for a session id.

        A lock retired by eviction while a caller waited on it is released
        again and the caller queues on the lock that replaced it.
        """
        while True:
            lock = self._session_locks.setdefault(session_id, asyncio.Lock())
            await lock.acquire()
            if self._session_locks.get(session_id) is lock:
                return lock
            lock.release()

    def _create_session(
        self,
        session_id: str,
        autonomy_mode: Optional[AutonomyMode],
        project_id: Optional[str]
    ) -> SessionState:
        if len(self._sessions) >= self.config.max_active_sessions:
            raise SessionCapacityError(
                f"Active session limit reached ({self.config.max_active_sessions})"
            )

        state = SessionState(
            session_id=session_id,
            autonomy_mode=autonomy_mode or self.config.default_autonomy_mode,
            project_id=project_id
        )
        self._sessions[session_id] = state

        self.audit_logger.log_session_event(
            "created", session_id, result="success",
            metadata={"autonomy_mode": state.autonomy_mode.value, "project_id": project_id}
        )
        if self.metrics_collector:
            self.metrics_collector.record_session_created()

        logger.info(f"Created session {session_id}")
        return state

    def _discard_unused_lock(self, session_id: str, lock: asyncio.Lock) -> None:
        if session_id not in self._sessions and self._session_locks.get(session_id) is lock:
            self._session_locks.pop(session_id, None)

    def _expire_drafts(self, state: SessionState, now: Optional[datetime] = None) -> List[PendingDraft]:
        """Expire drafts whose inactivity window has elapsed."""
        now = now or datetime.now(timezone.utc)
        expired = []
        for draft in list(state.pending_drafts.values()):
            if draft.is_expired(now) and draft.transition_to(DraftStatus.EXPIRED, "inactivity window elapsed"):
                self._retire_draft(state, draft)
                expired.append(draft)

        if expired:
            logger.info(f"Expired {len(expired)} drafts in session {state.session_id}")
        return expired

    def _retire_draft(self, state: SessionState, draft: PendingDraft) -> None:
        state.pending_drafts.pop(draft.draft_id, None)
        state.resolved_drafts.append(draft)

        self.audit_logger.log_draft_event(
            draft.status.value, state.session_id, draft.draft_id,
            draft.tool_call.tool_name, draft.status.value, draft.resolution_note
        )
        if self.metrics_collector:
            self.metrics_collector.record_draft_resolution(draft.tool_call.tool_name, draft.status.value)

    async def get_session(self, session_id: str) -> Optional[SessionState]:
        """Snapshot of a session, or None if unknown."""
        state = self._sessions.get(session_id)
        if state is None and self.config.enable_persistence:
            state = await self._load_session_from_storage(session_id)
        return state.model_copy(deep=True) if state is not None else None

    async def list_sessions(self, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        """Session summaries, most recently active first."""
        summaries = [state.summary() for state in self._sessions.values()]
        summaries.sort(key=lambda s: s["last_activity_at"], reverse=True)
        return summaries[offset:offset + limit]

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    async def cleanup_expired_sessions(self) -> int:
        """Evict sessions idle beyond the session timeout.

        Sessions currently held by a transaction are skipped. An eviction
        takes the session lock itself, so a turn queued on the session runs
        first and the idle check is repeated afterwards. Pending drafts of an
        evicted session are expired first so none is left unresolved.

        Returns:
            Number of sessions evicted
        """
        cutoff_time = datetime.now(timezone.utc) - timedelta(seconds=self.config.session_timeout)
        evicted = 0

        for session_id in list(self._sessions.keys()):
            lock = self._session_locks.get(session_id)
            if lock is not None and lock.locked():
                continue

            idle = self._sessions.get(session_id)
            if idle is None or idle.last_activity_at >= cutoff_time:
                continue

            lock = await self._acquire(session_id)
            try:
                state = self._sessions.get(session_id)
                if state is None or state.last_activity_at >= cutoff_time:
                    continue

                for draft in list(state.pending_drafts.values()):
                    if draft.transition_to(DraftStatus.EXPIRED, "session evicted"):
                        self._retire_draft(state, draft)

                if self.config.enable_persistence:
                    await self._save_session_to_storage(state)

                self._sessions.pop(session_id, None)
                self._session_locks.pop(session_id, None)
            finally:
                lock.release()

            self.audit_logger.log_session_event("evicted", session_id, result="success")
            evicted += 1

        if evicted:
            logger.info(f"Evicted {evicted} idle sessions")
            if self.metrics_collector:
                self.metrics_collector.record_session_evicted(evicted)

        return evicted

    async def _save_session_to_storage(self, state: SessionState) -> None:
        session_file = self.storage_path / f"{state.session_id}.json"
        try:
            async with aiofiles.open(session_file, 'w') as f:
                await f.write(state.model_dump_json(indent=2))
        except OSError as e:
            logger.error(f"Failed to persist session {state.session_id}: {e}")

    async def _load_session_from_storage(self, session_id: str) -> Optional[SessionState]:
        session_file = self.storage_path / f"{session_id}.json"
        if not session_file.exists():
            return None

        try:
            async with aiofiles.open(session_file, 'r') as f:
                content = await f.read()
            return SessionState.model_validate_json(content)
        except Exception as e:
            logger.error(f"Failed to load session {session_id}: {e}")
            return None

    async def _load_sessions_from_storage(self) -> None:
        loaded_count = 0
        for session_file in sorted(self.storage_path.glob("*.json")):
            state = await self._load_session_from_storage(session_file.stem)
            if state is not None:
                self._sessions[state.session_id] = state
                loaded_count += 1

        if loaded_count > 0:
            logger.info(f"Loaded {loaded_count} sessions from storage")

    async def _periodic_cleanup(self) -> None:
        """Periodic cleanup task for idle sessions."""
        while True:
            try:
                await asyncio.sleep(self.config.cleanup_interval_seconds)
                await self.cleanup_expired_sessions()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in periodic cleanup: {e}")

    async def shutdown(self) -> None:
        """Stop cleanup and flush sessions to storage."""
        logger.info("Shutting down session manager")

        if self._cleanup_task and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass

        if self.config.enable_persistence:
            for state in self._sessions.values():
                await self._save_session_to_storage(state)

        logger.info("Session manager shut down")

    def get_statistics(self) -> Dict[str, Any]:
        """Get session manager statistics."""
        return {
            "total_sessions_in_memory": len(self._sessions),
            "pending_drafts": sum(len(s.pending_drafts) for s in self._sessions.values()),
            "persistence_enabled": self.config.enable_persistence,
            "storage_path": str(self.storage_path),
            "auto_cleanup_enabled": self.config.auto_cleanup_enabled,
            "cleanup_interval_seconds": self.config.cleanup_interval_seconds,
            "session_timeout_seconds": self.config.session_timeout
        }
