"""Ensemble orchestrator: concurrent persona deliberation and synthesis."""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

from copilot.lib.logging_config import AuditLogger, get_audit_logger
from copilot.lib.metrics import MetricsCollector, RetryConfig, RetryError, RetryHandler
from copilot.lib.observability import get_tracer
from copilot.models.classification import ClassificationContext, ModeClassification, SignalSnapshot
from copilot.models.contribution import (
    Challenge,
    ChallengeKind,
    Contribution,
    CopilotResponse,
    Deliberation,
    ResolutionStrategy,
)
from copilot.models.conversation_session import SessionState
from copilot.models.memory_record import MemoryRecord
from copilot.models.persona import ConversationMode, EnsembleConfig, PersonaConfig, PersonaId
from copilot.services import deliberation as delib
from copilot.services import prompt_builder
from copilot.services.interfaces.memory_store import IMemoryStore
from copilot.services.interfaces.reasoning_service import IReasoningService, ReasoningError
from copilot.services.mode_classifier import classify, detect_sceptic_trigger
from copilot.services.persona_registry import PersonaRegistry
from copilot.services.tool_catalogue import ToolCatalogue


logger = logging.getLogger(__name__)

ATTRIBUTED_MODES = (ConversationMode.DECISION, ConversationMode.PRE_MORTEM)
DEADLINE_EXCEEDED = "deliberation deadline exceeded"


def _remaining(deadline: float) -> float:
    return max(0.0, deadline - time.monotonic())


class EnsembleExhaustedError(Exception):
    """Every persona failed; there is nothing to respond with."""

    def __init__(self, deliberation: Deliberation):
        self.deliberation = deliberation
        failures = ", ".join(
            f"{c.persona_id.value}: {c.error}" for c in deliberation.contributions
        )
        super().__init__(f"All personas failed for mode {deliberation.mode.value} ({failures})")


class EnsembleOrchestrator:
    """Runs one deliberation per turn.

    Personas are invoked concurrently, each bounded by a per-call timeout and
    a bounded retry. One deliberation deadline bounds the fan-out and the
    synthesis pass together. Results are always aggregated in persona-priority order, never
    in completion order. The orchestrator reads session snapshots but never
    mutates session state.
    """

    def __init__(
        self,
        reasoning_service: IReasoningService,
        registry: Optional[PersonaRegistry] = None,
        catalogue: Optional[ToolCatalogue] = None,
        memory_store: Optional[IMemoryStore] = None,
        config: Optional[EnsembleConfig] = None,
        metrics_collector: Optional[MetricsCollector] = None,
        audit_logger: Optional[AuditLogger] = None
    ):
        self.reasoning_service = reasoning_service
        self.config = config or EnsembleConfig()
        self.registry = registry or PersonaRegistry(mode_personas=self.config.mode_personas)
        self.catalogue = catalogue or ToolCatalogue()
        self.memory_store = memory_store
        self.metrics_collector = metrics_collector
        self.audit_logger = audit_logger or get_audit_logger()

        self._retry_handler = RetryHandler(
            RetryConfig(
                max_attempts=self.config.retry_attempts,
                base_delay=self.config.retry_base_delay,
                max_delay=self.config.retry_max_delay,
                retryable_exceptions=(ReasoningError, asyncio.TimeoutError)
            ),
            metrics_collector
        )

    def resolve_active_personas(
        self,
        mode: ConversationMode,
        sceptic_trigger: Optional[str] = None
    ) -> List[PersonaId]:
        """Mode personas plus the dissent persona (and synthesiser) when triggered."""
        active = list(self.registry.personas_for_mode(mode))
        if sceptic_trigger:
            active.append(self.registry.dissent_persona.persona_id)
            active.append(self.registry.synthesiser_persona.persona_id)
        return self.registry.order(active)

    async def deliberate(
        self,
        session: SessionState,
        user_input: str,
        is_background: bool = False,
        signals: Optional[SignalSnapshot] = None,
        now: Optional[datetime] = None
    ) -> CopilotResponse:
        """Run a full deliberation for one user input.

        Args:
            session: Read-only snapshot of the session
            user_input: Current user message
            is_background: Scheduled background invocation
            signals: Delivery signals for dissent activation
            now: Evaluation time for cooldowns

        Returns:
            CopilotResponse with the full Deliberation attached

        Raises:
            EnsembleExhaustedError: If no persona produced a contribution
        """
        started_at = datetime.now(timezone.utc)
        start = time.monotonic()
        # One budget covers the fan-out and the synthesis pass
        deadline = start + self.config.max_deliberation_seconds

        context = ClassificationContext(
            user_message=user_input,
            is_background=is_background,
            has_pending_draft=session.has_pending_draft,
            recent_turns=session.recent_turns(self.config.history_window),
            signals=signals or SignalSnapshot(),
            last_challenge_at=session.last_challenge_at,
            now=now
        )
        classification = classify(context)
        trigger = detect_sceptic_trigger(
            context, classification.mode, self.config, mode_personas=self.registry.mode_personas
        )
        active = self.resolve_active_personas(classification.mode, trigger)

        deliberation_id = str(uuid4())

        with get_tracer().start_as_current_span("ensemble.deliberate") as span:
            span.set_attribute("copilot.session_id", session.session_id)
            span.set_attribute("copilot.mode", classification.mode.value)
            span.set_attribute("copilot.personas", [p.value for p in active])
            if trigger:
                span.set_attribute("copilot.sceptic_trigger", trigger)

            memory_context = await self._load_memory_context(user_input, session.project_id)
            conversation_context = prompt_builder.format_conversation_history(
                session.recent_turns(self.config.history_window)
            )
            tool_descriptions = self.catalogue.describe_for_prompt(is_background)

            synthesiser_id = self.registry.synthesiser_persona.persona_id
            contributors = [p for p in active if p != synthesiser_id]

            prompts = {
                persona_id: prompt_builder.build_persona_prompt(
                    self.registry.get(persona_id),
                    classification.mode,
                    user_input,
                    memory_context=memory_context,
                    conversation_context=conversation_context,
                    tool_descriptions=tool_descriptions,
                    is_background=is_background
                )
                for persona_id in contributors
            }
            base_context = {
                "session_id": session.session_id,
                "deliberation_id": deliberation_id,
                "mode": classification.mode.value,
                "user_input": user_input,
                "is_background": is_background
            }

            contributions = await self._gather_contributions(contributors, prompts, base_context, deadline)

            deliberation = Deliberation(
                deliberation_id=deliberation_id,
                session_id=session.session_id,
                mode=classification.mode,
                mode_reason=classification.reason,
                active_personas=active,
                sceptic_trigger=trigger,
                contributions=contributions,
                started_at=started_at
            )

            if not deliberation.successful_contributions:
                deliberation.duration_ms = int((time.monotonic() - start) * 1000)
                span.set_attribute("copilot.ensemble_exhausted", True)
                logger.error(f"Ensemble exhausted for session {session.session_id} in mode {classification.mode.value}")
                if self.metrics_collector:
                    self.metrics_collector.record_ensemble_exhausted(classification.mode.value)
                raise EnsembleExhaustedError(deliberation)

            challenges = delib.detect_challenges(
                contributions,
                self.registry,
                self.catalogue,
                self.config.challenge_confidence_threshold
            )

            response = await self._resolve(
                deliberation,
                challenges,
                classification,
                user_input,
                memory_context,
                base_context,
                deadline,
                synthesise=bool(challenges) or synthesiser_id in active
            )

            deliberation.duration_ms = int((time.monotonic() - start) * 1000)
            span.set_attribute("copilot.challenges", len(challenges))
            span.set_attribute("copilot.strategy", deliberation.resolution_strategy.value)

        self._observe(deliberation)
        await self._record_memory_event(session, deliberation, user_input)
        return response

    async def _load_memory_context(self, user_input: str, project_id: Optional[str]) -> str:
        """Memory lookups degrade to an empty context on failure."""
        if self.memory_store is None or self.config.memory_lookup_limit == 0:
            return ""

        try:
            memories: List[MemoryRecord] = await self.memory_store.retrieve_relevant(
                user_input,
                limit=self.config.memory_lookup_limit,
                project_id=project_id
            )
            summary = await self.memory_store.get_last_session_summary(project_id)
        except Exception as e:
            logger.warning(f"Memory lookup failed, continuing without memory context: {e}")
            return ""

        return prompt_builder.format_memory_context(memories, summary)

    async def _gather_contributions(
        self,
        persona_ids: Sequence[PersonaId],
        prompts: Dict[PersonaId, str],
        base_context: Dict[str, Any],
        deadline: float
    ) -> List[Contribution]:
        """Fan out persona calls and join them under the deliberation deadline."""
        semaphore = asyncio.Semaphore(self.config.max_concurrent_calls)
        started = time.monotonic()

        tasks: Dict[PersonaId, asyncio.Task] = {
            persona_id: asyncio.create_task(
                self._run_persona(
                    self.registry.get(persona_id),
                    prompts[persona_id],
                    {**base_context, "persona_id": persona_id.value, "is_synthesis": False},
                    semaphore
                ),
                name=f"persona-{persona_id.value}"
            )
            for persona_id in persona_ids
        }

        try:
            _, pending = await asyncio.wait(
                tasks.values(),
                timeout=_remaining(deadline)
            )
        except asyncio.CancelledError:
            for task in tasks.values():
                task.cancel()
            await asyncio.gather(*tasks.values(), return_exceptions=True)
            raise

        if pending:
            logger.warning(f"Deliberation deadline reached with {len(pending)} persona calls pending")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        contributions = []
        for persona_id, task in tasks.items():
            if task in pending or task.cancelled():
                contribution = delib.failed_contribution(persona_id, DEADLINE_EXCEEDED, latency_ms=elapsed_ms)
            elif task.exception() is not None:
                contribution = delib.failed_contribution(persona_id, str(task.exception()), latency_ms=elapsed_ms)
            else:
                contribution = task.result()
            contributions.append(contribution)

            if self.metrics_collector:
                self.metrics_collector.record_persona_call(
                    persona_id.value, contribution.succeeded, contribution.latency_ms, contribution.attempts
                )

        return sorted(contributions, key=lambda c: self.registry.sort_key(c.persona_id))

    async def _run_persona(
        self,
        persona: PersonaConfig,
        prompt: str,
        context: Dict[str, Any],
        semaphore: Optional[asyncio.Semaphore] = None
    ) -> Contribution:
        """One persona call with timeout and bounded retry; failures become contributions."""
        attempts = 0
        start = time.monotonic()

        async def attempt():
            nonlocal attempts
            attempts += 1
            return await asyncio.wait_for(
                self.reasoning_service.call(prompt, context),
                timeout=self.config.per_call_timeout_seconds
            )

        operation_name = f"persona_{persona.persona_id.value}"
        try:
            with get_tracer().start_as_current_span("persona.call") as span:
                span.set_attribute("copilot.persona", persona.persona_id.value)
                span.set_attribute("copilot.is_synthesis", bool(context.get("is_synthesis")))
                if semaphore is None:
                    result = await self._retry_handler.call(attempt, operation_name=operation_name)
                else:
                    async with semaphore:
                        result = await self._retry_handler.call(attempt, operation_name=operation_name)
                span.set_attribute("copilot.attempts", attempts)
        except RetryError as e:
            reason = str(e.last_exception) or type(e.last_exception).__name__
            logger.warning(f"Persona {persona.persona_id.value} failed after {e.attempts} attempts: {reason}")
            return delib.failed_contribution(
                persona.persona_id, reason, int((time.monotonic() - start) * 1000), attempts
            )
        except Exception as e:
            logger.warning(f"Persona {persona.persona_id.value} failed: {e}")
            return delib.failed_contribution(
                persona.persona_id, str(e) or type(e).__name__, int((time.monotonic() - start) * 1000), attempts
            )

        return delib.build_contribution(
            persona, result, int((time.monotonic() - start) * 1000), attempts
        )

    async def _resolve(
        self,
        deliberation: Deliberation,
        challenges: List[Challenge],
        classification: ModeClassification,
        user_input: str,
        memory_context: str,
        base_context: Dict[str, Any],
        deadline: float,
        synthesise: bool
    ) -> CopilotResponse:
        """Pick the resolution strategy and build the response."""
        mode = classification.mode
        contributions = list(deliberation.contributions)
        show_attribution = mode in ATTRIBUTED_MODES or bool(challenges)
        proposed, deferred = delib.merge_actions(contributions, challenges, self.registry)
        if deferred:
            logger.info(f"Deferred {len(deferred)} contested actions to the user")

        synthesis: Optional[Contribution] = None
        if synthesise:
            synthesis = await self._run_synthesis(
                mode, user_input, contributions, challenges, memory_context, base_context, deadline
            )
            deliberation.contributions.append(synthesis)

        synthesised = synthesis is not None and synthesis.succeeded
        disclosure = delib.build_disclosure(challenges)

        if synthesised:
            text = f"{disclosure}\n\n{synthesis.text}" if disclosure else synthesis.text
            strategy = ResolutionStrategy.SYNTHESISED
        else:
            merged = delib.merge_texts(contributions, self.registry, with_attribution=show_attribution)
            text = f"{disclosure}\n\n{merged}" if disclosure else merged
            strategy = ResolutionStrategy.DISCLOSED if challenges else ResolutionStrategy.DIRECT_MERGE

        for challenge in challenges:
            challenge.resolution = delib.resolution_note(challenge, synthesised)
            challenge.resolved = synthesised and challenge.kind != ChallengeKind.ACTION_CONFLICT

        deliberation.challenges = challenges
        deliberation.resolution_strategy = strategy

        return CopilotResponse(
            text=text,
            mode=mode,
            cited_personas=delib.cited_personas(deliberation.contributions, self.registry),
            proposed_actions=proposed,
            unresolved_challenges=[c for c in challenges if not c.resolved],
            show_attribution=show_attribution,
            deliberation=deliberation
        )

    async def _run_synthesis(
        self,
        mode: ConversationMode,
        user_input: str,
        contributions: List[Contribution],
        challenges: List[Challenge],
        memory_context: str,
        base_context: Dict[str, Any],
        deadline: float
    ) -> Contribution:
        synthesiser = self.registry.synthesiser_persona
        budget = _remaining(deadline)
        if budget <= 0:
            logger.warning("Deliberation deadline spent before synthesis, disclosing contributions directly")
            return delib.failed_contribution(synthesiser.persona_id, DEADLINE_EXCEEDED)

        prompt = prompt_builder.build_synthesis_prompt(
            self.registry,
            mode,
            user_input,
            [c for c in contributions if c.succeeded],
            challenges,
            memory_context
        )
        context = {**base_context, "persona_id": synthesiser.persona_id.value, "is_synthesis": True}

        try:
            synthesis = await asyncio.wait_for(
                self._run_persona(synthesiser, prompt, context),
                timeout=budget
            )
        except asyncio.TimeoutError:
            synthesis = delib.failed_contribution(synthesiser.persona_id, DEADLINE_EXCEEDED)

        if self.metrics_collector:
            self.metrics_collector.record_persona_call(
                synthesiser.persona_id.value, synthesis.succeeded, synthesis.latency_ms, synthesis.attempts
            )
        if not synthesis.succeeded:
            logger.warning(f"Synthesis failed, disclosing contributions directly: {synthesis.error}")

        # Synthesis output is narrative only; contested actions stay deferred.
        return synthesis.model_copy(update={"proposed_actions": []})

    def _observe(self, deliberation: Deliberation) -> None:
        try:
            self.audit_logger.log_deliberation_event(
                session_id=deliberation.session_id,
                deliberation_id=deliberation.deliberation_id,
                mode=deliberation.mode.value,
                personas={c.persona_id.value: c.succeeded for c in deliberation.contributions},
                challenge_count=len(deliberation.challenges),
                strategy=deliberation.resolution_strategy.value,
                duration_ms=deliberation.duration_ms
            )
            if self.metrics_collector:
                self.metrics_collector.record_deliberation(
                    deliberation.mode.value,
                    deliberation.resolution_strategy.value,
                    deliberation.duration_ms,
                    tuple(c.kind.value for c in deliberation.challenges)
                )
        except Exception as e:
            logger.warning(f"Failed to record deliberation {deliberation.deliberation_id}: {e}")

    async def _record_memory_event(self, session: SessionState, deliberation: Deliberation, user_input: str) -> None:
        if self.memory_store is None:
            return

        try:
            await self.memory_store.record_event(
                "deliberation",
                f"{deliberation.mode.value}: {user_input[:200]}",
                project_id=session.project_id,
                metadata={
                    "session_id": session.session_id,
                    "deliberation_id": deliberation.deliberation_id,
                    "challenges": len(deliberation.challenges),
                    "strategy": deliberation.resolution_strategy.value
                }
            )
        except Exception as e:
            logger.warning(f"Failed to record deliberation memory event: {e}")
