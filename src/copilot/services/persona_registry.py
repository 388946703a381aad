"""Persona registry: the frozen catalogue of reasoning personas."""

import logging
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from copilot.models.persona import (
    DEFAULT_MODE_PERSONAS,
    ConversationMode,
    PersonaConfig,
    PersonaId,
)


logger = logging.getLogger(__name__)


OPERATOR = PersonaConfig(
    persona_id=PersonaId.OPERATOR,
    name="The Operator",
    role="Get things done. Efficiently. Now.",
    mandate=(
        "Execute the user's intent with minimal friction. Draft the email, update the "
        "artefact, pull the data. The default mode: fast, competent, action-oriented."
    ),
    voice="Direct, concise. No preamble. Action-first.",
    activation_modes=(ConversationMode.QUICK_QUERY, ConversationMode.ACTION),
    prompt_fragment=(
        "You are the Operator perspective. Your job is efficient execution.\n"
        "- Respond directly and concisely\n"
        "- Prefer action over discussion\n"
        "- Result first, details only if needed"
    ),
    priority=1
)

ANALYST = PersonaConfig(
    persona_id=PersonaId.ANALYST,
    name="The Analyst",
    role="What does the data actually say?",
    mandate=(
        "Present evidence without spin. Surface patterns, trends and anomalies. "
        "Separate observed facts from inference and speculation."
    ),
    voice="Measured, precise. Numbers before narratives.",
    activation_modes=(
        ConversationMode.ANALYSIS,
        ConversationMode.DECISION,
        ConversationMode.PRE_MORTEM,
        ConversationMode.RETROSPECTIVE,
    ),
    prompt_fragment=(
        "You are the Analyst perspective. Your job is evidence-based assessment.\n"
        "- Present data before interpretation and cite specific numbers\n"
        "- Label statements as FACT, INFERENCE or SPECULATION\n"
        "- Flag when data is insufficient to draw conclusions"
    ),
    priority=2
)

SCEPTIC = PersonaConfig(
    persona_id=PersonaId.SCEPTIC,
    name="The Sceptic",
    role="What could go wrong? What are you not seeing?",
    mandate=(
        "Find weaknesses in the current plan and challenge comfortable assumptions. "
        "Ask the questions a hostile steering committee would ask, before they do."
    ),
    voice="Probing, respectful, relentless. Questions, not accusations.",
    activation_modes=(ConversationMode.DECISION, ConversationMode.PRE_MORTEM),
    prompt_fragment=(
        "You are the Sceptic perspective. Your job is adversarial challenge.\n"
        "- Challenge assumptions with evidence, framed as questions\n"
        "- Identify compound risks and irreversible steps\n"
        "- If the plan is sound, say so. One challenge per decision cycle."
    ),
    priority=3,
    is_dissent=True
)

ADVOCATE = PersonaConfig(
    persona_id=PersonaId.ADVOCATE,
    name="The Advocate",
    role="What do the stakeholders need?",
    mandate=(
        "Represent the people who are not in the room: the sponsor, the engineering "
        "lead, the end user. Make sure decisions account for all affected parties."
    ),
    voice="Empathetic, representative. Speaks for others.",
    activation_modes=(ConversationMode.DECISION, ConversationMode.ACTION),
    prompt_fragment=(
        "You are the Advocate perspective. Your job is stakeholder representation.\n"
        "- Frame communications from the recipient's perspective\n"
        "- Surface whose interests are not represented\n"
        "- Flag decisions that may surprise an unconsulted stakeholder"
    ),
    priority=4
)

HISTORIAN = PersonaConfig(
    persona_id=PersonaId.HISTORIAN,
    name="The Historian",
    role="What happened before? What did we learn?",
    mandate=(
        "Surface relevant precedents, past decisions and learned patterns so the "
        "team does not repeat its mistakes."
    ),
    voice="Contextual, grounding. Connects present to past.",
    activation_modes=(
        ConversationMode.ANALYSIS,
        ConversationMode.DECISION,
        ConversationMode.PRE_MORTEM,
        ConversationMode.RETROSPECTIVE,
    ),
    prompt_fragment=(
        "You are the Historian perspective. Your job is precedent and pattern recall.\n"
        "- Reference specific dates, decisions and outcomes from memory\n"
        "- State parallels with past situations explicitly\n"
        "- Flag when the current approach differs from what worked before"
    ),
    priority=5
)

SYNTHESISER = PersonaConfig(
    persona_id=PersonaId.SYNTHESISER,
    name="The Synthesiser",
    role="What is the best path forward, all things considered?",
    mandate=(
        "Integrate the other perspectives into one coherent recommendation, explain "
        "the trade-offs and defer the final call to the user."
    ),
    voice="Balanced, decisive. Shows its working.",
    activation_modes=(
        ConversationMode.DECISION,
        ConversationMode.PRE_MORTEM,
        ConversationMode.RETROSPECTIVE,
    ),
    prompt_fragment=(
        "You are the Synthesiser perspective. Your job is balanced recommendation.\n"
        "- Attribute each point to the perspective it came from\n"
        "- When perspectives conflict, name both sides and explain the trade-off\n"
        "- Never apply a contested change; recommend, then defer to the user"
    ),
    priority=6,
    is_synthesiser=True
)

ALL_PERSONAS: Tuple[PersonaConfig, ...] = (
    OPERATOR,
    ANALYST,
    SCEPTIC,
    ADVOCATE,
    HISTORIAN,
    SYNTHESISER,
)


class RegistryConfigurationError(Exception):
    """Persona registry or mode mapping is misconfigured. Raised at startup only."""
    pass


class PersonaRegistry:
    """Process-wide, read-only catalogue of personas and their mode mapping."""

    def __init__(
        self,
        personas: Sequence[PersonaConfig] = ALL_PERSONAS,
        mode_personas: Optional[Mapping[ConversationMode, Sequence[PersonaId]]] = None
    ):
        """Validate and freeze the registry.

        Args:
            personas: Persona definitions in declaration order
            mode_personas: Eligible personas per conversation mode

        Raises:
            RegistryConfigurationError: If the catalogue or mapping is inconsistent
        """
        mode_personas = DEFAULT_MODE_PERSONAS if mode_personas is None else mode_personas

        self._validate(personas, mode_personas)

        self._personas: Mapping[PersonaId, PersonaConfig] = MappingProxyType(
            {persona.persona_id: persona for persona in personas}
        )
        self._declaration_index: Mapping[PersonaId, int] = MappingProxyType(
            {persona.persona_id: index for index, persona in enumerate(personas)}
        )
        self._mode_personas: Mapping[ConversationMode, Tuple[PersonaId, ...]] = MappingProxyType(
            {mode: self._sorted(mode_personas[mode]) for mode in ConversationMode}
        )

        dissent = [p for p in personas if p.is_dissent]
        synthesisers = [p for p in personas if p.is_synthesiser]
        self._dissent_id = dissent[0].persona_id
        self._synthesiser_id = synthesisers[0].persona_id

        logger.info(f"Persona registry loaded with {len(self._personas)} personas")

    @staticmethod
    def _validate(
        personas: Sequence[PersonaConfig],
        mode_personas: Mapping[ConversationMode, Sequence[PersonaId]]
    ) -> None:
        """Check catalogue consistency before freezing."""
        if not personas:
            raise RegistryConfigurationError("Persona registry is empty")

        ids = [p.persona_id for p in personas]
        if len(set(ids)) != len(ids):
            raise RegistryConfigurationError("Duplicate persona identities in registry")

        if sum(1 for p in personas if p.is_dissent) != 1:
            raise RegistryConfigurationError("Registry must declare exactly one dissent persona")

        if sum(1 for p in personas if p.is_synthesiser) != 1:
            raise RegistryConfigurationError("Registry must declare exactly one synthesiser persona")

        known = set(ids)
        for mode in ConversationMode:
            mapped = list(mode_personas.get(mode, ()))
            if not mapped:
                raise RegistryConfigurationError(f"No personas mapped to mode {mode.value}")

            unknown = [persona_id for persona_id in mapped if persona_id not in known]
            if unknown:
                raise RegistryConfigurationError(
                    f"Mode {mode.value} maps unknown personas: {[str(p) for p in unknown]}"
                )

            synthesis_only = all(
                p.is_synthesiser for p in personas if p.persona_id in mapped
            )
            if synthesis_only:
                raise RegistryConfigurationError(
                    f"Mode {mode.value} maps only the synthesiser; nothing to synthesise"
                )

    def sort_key(self, persona_id: PersonaId) -> Tuple[int, int]:
        """Priority first, then declaration order."""
        return (self._personas[persona_id].priority, self._declaration_index[persona_id])

    def _sorted(self, persona_ids: Iterable[PersonaId]) -> Tuple[PersonaId, ...]:
        unique = list(dict.fromkeys(PersonaId(p) for p in persona_ids))
        return tuple(sorted(unique, key=self.sort_key))

    def order(self, persona_ids: Iterable[PersonaId]) -> List[PersonaId]:
        """Order persona identities deterministically by priority."""
        return list(self._sorted(persona_ids))

    def get(self, persona_id: PersonaId) -> PersonaConfig:
        """Get a persona definition.

        Raises:
            KeyError: If the persona is not registered
        """
        return self._personas[PersonaId(persona_id)]

    def __contains__(self, persona_id: object) -> bool:
        return persona_id in self._personas

    def all(self) -> List[PersonaConfig]:
        """All personas in priority order."""
        return [self._personas[p] for p in self._sorted(self._personas.keys())]

    def personas_for_mode(self, mode: ConversationMode) -> Tuple[PersonaId, ...]:
        return self._mode_personas[ConversationMode(mode)]

    @property
    def mode_personas(self) -> Mapping[ConversationMode, Tuple[PersonaId, ...]]:
        return self._mode_personas

    @property
    def dissent_persona(self) -> PersonaConfig:
        return self._personas[self._dissent_id]

    @property
    def synthesiser_persona(self) -> PersonaConfig:
        return self._personas[self._synthesiser_id]

    def describe(self) -> Dict[str, Dict[str, object]]:
        """Summaries keyed by persona id, for capability listings."""
        return {
            persona.persona_id.value: {
                "name": persona.name,
                "role": persona.role,
                "priority": persona.priority,
                "activation_modes": [mode.value for mode in persona.activation_modes]
            }
            for persona in self.all()
        }
