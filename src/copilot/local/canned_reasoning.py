"""Deterministic reasoning service for local development and tests."""

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from copilot.models.persona import PersonaId
from copilot.services.interfaces.reasoning_service import IReasoningService, ReasoningError, ReasoningResult


logger = logging.getLogger(__name__)

CannedResponse = Union[str, ReasoningResult]

DEFAULT_RESPONSES: Dict[PersonaId, str] = {
    PersonaId.OPERATOR: "Here is the short answer based on the current project state.",
    PersonaId.ANALYST: "The sprint data shows 14 of 20 points completed with two open blockers.",
    PersonaId.SCEPTIC: "Which assumption in this plan has not been tested against last sprint's numbers?",
    PersonaId.ADVOCATE: "The sponsor and the engineering lead will both want to hear this early.",
    PersonaId.HISTORIAN: "A similar slip happened in March and was absorbed by trimming scope.",
    PersonaId.SYNTHESISER: "Taking the perspectives together, the next step is yours to choose.",
}


class CannedReasoningService(IReasoningService):
    """Reasoning service that answers from a per-persona table.

    Supports injected latency and failures so that timeouts, retries and
    ensemble exhaustion can be exercised without a model provider. Every call
    is recorded in ``calls``.
    """

    def __init__(
        self,
        responses: Optional[Mapping[Union[PersonaId, str], CannedResponse]] = None,
        latencies: Optional[Mapping[Union[PersonaId, str], float]] = None,
        failures: Optional[Mapping[Union[PersonaId, str], int]] = None,
        always_fail: Optional[Iterable[Union[PersonaId, str]]] = None,
        reachable: bool = True
    ):
        """Initialize the canned service.

        Args:
            responses: Text or full ReasoningResult per persona
            latencies: Seconds to sleep before answering, per persona
            failures: Number of leading calls that raise ReasoningError, per persona
            always_fail: Personas whose every call raises ReasoningError
            reachable: Value returned by ping()
        """
        self.responses: Dict[PersonaId, ReasoningResult] = {
            persona_id: ReasoningResult(text=text) for persona_id, text in DEFAULT_RESPONSES.items()
        }
        for persona_id, response in (responses or {}).items():
            self.set_response(persona_id, response)

        self.latencies = {PersonaId(k): v for k, v in (latencies or {}).items()}
        self._failures_remaining = {PersonaId(k): v for k, v in (failures or {}).items()}
        self.always_fail = {PersonaId(p) for p in (always_fail or ())}
        self.reachable = reachable
        self.calls: List[Dict[str, Any]] = []

    def set_response(self, persona_id: Union[PersonaId, str], response: CannedResponse) -> None:
        if isinstance(response, str):
            response = ReasoningResult(text=response)
        self.responses[PersonaId(persona_id)] = response

    def calls_for(self, persona_id: Union[PersonaId, str]) -> List[Dict[str, Any]]:
        persona_id = PersonaId(persona_id)
        return [call for call in self.calls if call["persona_id"] == persona_id]

    async def call(self, prompt: str, context: Dict[str, Any]) -> ReasoningResult:
        persona_id = PersonaId(context["persona_id"])
        self.calls.append({
            "persona_id": persona_id,
            "is_synthesis": bool(context.get("is_synthesis")),
            "prompt": prompt,
            "context": dict(context)
        })

        latency = self.latencies.get(persona_id)
        if latency:
            await asyncio.sleep(latency)

        if persona_id in self.always_fail:
            raise ReasoningError(f"{persona_id.value} reasoning unavailable")

        remaining = self._failures_remaining.get(persona_id, 0)
        if remaining > 0:
            self._failures_remaining[persona_id] = remaining - 1
            raise ReasoningError(f"{persona_id.value} transient failure")

        response = self.responses.get(persona_id)
        if response is None:
            raise ReasoningError(f"No canned response for {persona_id.value}")

        logger.debug(f"Canned response for {persona_id.value} ({len(response.text)} chars)")
        return response.model_copy(deep=True)

    async def ping(self) -> bool:
        return self.reachable
