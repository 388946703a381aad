"""Copilot runtime: the entry point for conversational turns."""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from copilot import __version__
from copilot.lib.metrics import MetricsCollector
from copilot.lib.observability import get_tracer
from copilot.models.audit_record import ToolCallRecord, ToolOutcome
from copilot.models.conversation_session import DraftStatus, PendingDraft, SessionState
from copilot.models.policy_decision import AutonomyMode, Decision, PolicyContext, PolicyDecision
from copilot.models.runtime_messages import (
    CollaboratorHealth,
    DeniedAttempt,
    HealthResponse,
    HealthStatus,
    InvokeRequest,
    InvokeResponse,
    ToolExecutionContext,
    ToolResult,
)
from copilot.models.tool_definition import ToolCall
from copilot.services.ensemble_orchestrator import EnsembleOrchestrator
from copilot.services.interfaces.artefact_service import IArtefactService
from copilot.services.interfaces.memory_store import IMemoryStore
from copilot.services.interfaces.tool_executor import IToolExecutor
from copilot.services.policy_engine import AutonomyPolicyEngine
from copilot.services.session_manager import SessionManager, SessionNotFoundError, SessionTransaction


logger = logging.getLogger(__name__)

ARTEFACT_UPDATE_TOOL = "artefact_update"
ARTEFACT_REVERT_TOOL = "artefact_revert"


class InvalidRequestError(Exception):
    """Malformed request. Nothing was attempted and nothing is recorded."""

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []


class CopilotRuntime:
    """Drives one turn: session, deliberation, policy, execution, history.

    The runtime performs no I/O of its own; tool side effects go through the
    injected executor (and artefact service, when one is configured) and only
    for calls the policy engine allowed.
    """

    def __init__(
        self,
        orchestrator: EnsembleOrchestrator,
        policy_engine: AutonomyPolicyEngine,
        session_manager: SessionManager,
        tool_executor: IToolExecutor,
        memory_store: Optional[IMemoryStore] = None,
        artefact_service: Optional[IArtefactService] = None,
        metrics_collector: Optional[MetricsCollector] = None,
        health_check_timeout: float = 2.0
    ):
        self.orchestrator = orchestrator
        self.policy_engine = policy_engine
        self.session_manager = session_manager
        self.tool_executor = tool_executor
        self.memory_store = memory_store if memory_store is not None else orchestrator.memory_store
        self.artefact_service = artefact_service
        self.metrics_collector = metrics_collector
        self.health_check_timeout = health_check_timeout
        self._started = time.monotonic()

    @staticmethod
    def _validate_request(request: Union[InvokeRequest, Dict[str, Any]]) -> InvokeRequest:
        if isinstance(request, InvokeRequest):
            return request
        if not isinstance(request, dict):
            raise InvalidRequestError(f"Unsupported request type: {type(request).__name__}")

        try:
            return InvokeRequest.model_validate(request)
        except ValidationError as e:
            raise InvalidRequestError(
                "Invalid invoke request",
                errors=e.errors(include_url=False, include_context=False)
            ) from e

    async def invoke(self, request: Union[InvokeRequest, Dict[str, Any]]) -> InvokeResponse:
        """Run one conversational turn.

        Args:
            request: InvokeRequest or its dictionary form

        Returns:
            InvokeResponse with executed, held and denied actions

        Raises:
            InvalidRequestError: If the request is malformed
            EnsembleExhaustedError: If every persona failed
        """
        request = self._validate_request(request)

        with get_tracer().start_as_current_span("runtime.invoke") as span:
            async with self.session_manager.open(
                request.session_id,
                autonomy_mode=request.autonomy_mode,
                project_id=request.project_id
            ) as txn:
                span.set_attribute("copilot.session_id", txn.session_id)
                if request.autonomy_mode is not None:
                    txn.set_autonomy_mode(request.autonomy_mode)

                response = await self.orchestrator.deliberate(
                    txn.snapshot(),
                    request.input,
                    is_background=request.is_background,
                    signals=request.signals
                )
                if response.deliberation.sceptic_trigger:
                    txn.mark_challenge()

                policy_context = PolicyContext(
                    is_background=request.is_background,
                    project_id=txn.project_id or request.project_id
                )

                executed: List[ToolCallRecord] = []
                held: List[PendingDraft] = []
                denied: List[DeniedAttempt] = []

                for call in response.proposed_actions:
                    decision = self.policy_engine.evaluate(call, txn.autonomy_mode, policy_context)

                    if decision.decision == Decision.ALLOW:
                        executed.append(await self._execute(txn, call, decision, policy_context))

                    elif decision.decision == Decision.HOLD:
                        draft = txn.add_draft(
                            call,
                            decision.reason,
                            risk_tier=decision.risk_tier,
                            diff_preview=await self._diff_preview(call)
                        )
                        txn.record_tool_call(self.policy_engine.create_tool_call_record(
                            call, decision, txn.session_id, draft_id=draft.draft_id
                        ))
                        held.append(draft.model_copy(deep=True))

                    else:
                        record = txn.record_tool_call(
                            self.policy_engine.create_tool_call_record(call, decision, txn.session_id)
                        )
                        denied.append(DeniedAttempt(
                            tool_name=call.tool_name,
                            reason=decision.reason,
                            record_id=record.record_id,
                            proposed_by=call.proposed_by
                        ))

                turn = txn.append_turn(request.input, response)

                span.set_attribute("copilot.executed", len(executed))
                span.set_attribute("copilot.held", len(held))
                span.set_attribute("copilot.denied", len(denied))

                return InvokeResponse(
                    session_id=txn.session_id,
                    turn_id=turn.turn_id,
                    text=response.text,
                    mode=response.mode,
                    cited_personas=response.cited_personas,
                    executed=executed,
                    held=held,
                    denied=denied,
                    unresolved_challenges=response.unresolved_challenges,
                    show_attribution=response.show_attribution
                )

    async def confirm_draft(self, session_id: str, draft_id: str) -> ToolCallRecord:
        """Confirm a held call: exactly one execution attempt and one record.

        Policy is re-evaluated with the user's confirmation. A call that has
        since become denied (e.g. hard-denied) does not run: the draft is
        resolved as rejected with the deny reason and a denial is recorded.

        Raises:
            SessionNotFoundError: If the session is unknown
            DraftNotFoundError: If the draft is unknown
            DraftResolutionError: If the draft was already resolved
        """
        async with self.session_manager.open(session_id, create=False) as txn:
            draft = txn.get_draft(draft_id)
            policy_context = PolicyContext(user_confirmed=True, project_id=txn.project_id)
            decision = self.policy_engine.evaluate(draft.tool_call, txn.autonomy_mode, policy_context)

            if decision.allowed:
                txn.resolve_draft(draft_id, DraftStatus.CONFIRMED, note="confirmed by user")
                return await self._execute(txn, draft.tool_call, decision, policy_context, draft_id=draft_id)

            txn.resolve_draft(draft_id, DraftStatus.REJECTED, note=decision.reason)
            logger.warning(f"Confirmed draft {draft_id} was denied on re-evaluation: {decision.reason}")
            return txn.record_tool_call(self.policy_engine.create_tool_call_record(
                draft.tool_call, decision, txn.session_id, draft_id=draft_id
            ))

    async def reject_draft(self, session_id: str, draft_id: str, note: Optional[str] = None) -> PendingDraft:
        """Reject a held call. Nothing is executed and no record is added."""
        async with self.session_manager.open(session_id, create=False) as txn:
            draft = txn.resolve_draft(draft_id, DraftStatus.REJECTED, note=note or "rejected by user")
            return draft.model_copy(deep=True)

    async def _execute(
        self,
        txn: SessionTransaction,
        call: ToolCall,
        decision: PolicyDecision,
        policy_context: PolicyContext,
        draft_id: Optional[str] = None
    ) -> ToolCallRecord:
        """Dispatch an allowed call and append its record.

        A dispatched call is shielded from cancellation of the turn: it runs to
        completion and its record is appended before the cancellation
        propagates.
        """
        context = ToolExecutionContext(
            session_id=txn.session_id,
            project_id=policy_context.project_id,
            is_background=policy_context.is_background,
            user_approved=policy_context.user_confirmed,
            acting_persona=call.proposed_by[0].value if call.proposed_by else None
        )

        start = time.monotonic()
        task = asyncio.ensure_future(self._dispatch(call, context))
        try:
            result = await asyncio.shield(task)
        except asyncio.CancelledError:
            result = await task
            self._record_execution(txn, call, decision, result, start, draft_id)
            raise

        return self._record_execution(txn, call, decision, result, start, draft_id)

    def _record_execution(
        self,
        txn: SessionTransaction,
        call: ToolCall,
        decision: PolicyDecision,
        result: ToolResult,
        start: float,
        draft_id: Optional[str]
    ) -> ToolCallRecord:
        outcome = ToolOutcome.EXECUTED if result.success else ToolOutcome.FAILED
        if self.metrics_collector:
            self.metrics_collector.record_tool_execution(call.tool_name, outcome.value)

        return txn.record_tool_call(self.policy_engine.create_tool_call_record(
            call,
            decision,
            txn.session_id,
            outcome=outcome,
            result=result.payload,
            error=result.error,
            duration_ms=int((time.monotonic() - start) * 1000),
            draft_id=draft_id
        ))

    async def _dispatch(self, call: ToolCall, context: ToolExecutionContext) -> ToolResult:
        """Invoke the collaborator; failures become unsuccessful results."""
        try:
            if self.artefact_service is not None and call.tool_name == ARTEFACT_UPDATE_TOOL:
                payload = await self.artefact_service.merge_artefact(
                    call.arguments["project_id"],
                    call.arguments["artefact_type"],
                    call.arguments["content"],
                    call.arguments.get("reason", "")
                )
                return ToolResult(tool_name=call.tool_name, success=True, payload=payload)

            if self.artefact_service is not None and call.tool_name == ARTEFACT_REVERT_TOOL:
                payload = await self.artefact_service.revert_artefact(
                    call.arguments["project_id"],
                    call.arguments["artefact_type"]
                )
                return ToolResult(tool_name=call.tool_name, success=True, payload=payload)

            return await self.tool_executor.execute(call, context)

        except Exception as e:
            logger.error(f"Tool {call.tool_name} failed in session {context.session_id}: {e}")
            return ToolResult(tool_name=call.tool_name, success=False, error=str(e) or type(e).__name__)

    async def _diff_preview(self, call: ToolCall) -> Optional[str]:
        if self.artefact_service is None or call.tool_name != ARTEFACT_UPDATE_TOOL:
            return None

        try:
            return await self.artefact_service.calculate_diff(
                call.arguments["project_id"],
                call.arguments["artefact_type"],
                call.arguments["content"]
            )
        except Exception as e:
            logger.warning(f"Could not compute diff preview for {call.describe()}: {e}")
            return None

    async def health(self) -> HealthResponse:
        """Probe collaborators. Never mutates state."""
        probes: Dict[str, Callable[[], Awaitable[bool]]] = {
            "reasoning": self.orchestrator.reasoning_service.ping,
            "tool_executor": self.tool_executor.ping
        }
        if self.memory_store is not None:
            probes["memory_store"] = self.memory_store.ping

        names = list(probes.keys())
        results = await asyncio.gather(*(self._probe(probes[name]) for name in names))
        collaborators = dict(zip(names, results))

        if not collaborators["reasoning"].reachable:
            status = HealthStatus.UNHEALTHY
        elif not all(c.reachable for c in collaborators.values()):
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY

        return HealthResponse(
            status=status,
            version=__version__,
            uptime_seconds=round(time.monotonic() - self._started, 3),
            active_sessions=self.session_manager.active_count,
            collaborators=collaborators
        )

    async def _probe(self, ping: Callable[[], Awaitable[bool]]) -> CollaboratorHealth:
        start = time.monotonic()
        try:
            reachable = bool(await asyncio.wait_for(ping(), timeout=self.health_check_timeout))
            detail = None if reachable else "ping returned false"
        except asyncio.TimeoutError:
            reachable, detail = False, f"no response within {self.health_check_timeout}s"
        except Exception as e:
            reachable, detail = False, str(e) or type(e).__name__

        return CollaboratorHealth(
            reachable=reachable,
            detail=detail,
            latency_ms=int((time.monotonic() - start) * 1000)
        )

    async def get_session(self, session_id: str) -> SessionState:
        session = await self.session_manager.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session

    async def list_sessions(self, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        return await self.session_manager.list_sessions(limit=limit, offset=offset)

    def describe_capabilities(self, autonomy_mode: Union[AutonomyMode, str], is_background: bool = False) -> Dict[str, Any]:
        """Capability disclosure for an autonomy mode.

        Raises:
            InvalidRequestError: If the autonomy mode is unknown
        """
        try:
            mode = AutonomyMode(autonomy_mode)
        except ValueError:
            raise InvalidRequestError(f"Unknown autonomy mode: {autonomy_mode}")

        return {
            "autonomy_mode": mode.value,
            "is_background": is_background,
            "tools": self.policy_engine.describe_autonomy_capabilities(mode, is_background),
            "personas": self.orchestrator.registry.describe()
        }

    async def shutdown(self) -> None:
        await self.session_manager.shutdown()
