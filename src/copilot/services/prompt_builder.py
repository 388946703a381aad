"""Prompt assembly for persona and synthesis reasoning calls."""

from typing import List, Optional, Sequence

from copilot.models.contribution import Challenge, Contribution
from copilot.models.conversation_session import ConversationTurn
from copilot.models.memory_record import MemoryRecord
from copilot.models.persona import ConversationMode, PersonaConfig
from copilot.services.persona_registry import PersonaRegistry


TURN_EXCERPT_CHARS = 500

BEHAVIOURAL_RULES = """IMPORTANT BEHAVIOURAL RULES:
- Use British English spelling (organisation, colour, analyse)
- Be concise. Every word must earn its place.
- Use active voice: "Velocity declined 15%" not "There has been a decline in velocity"
- Never use first person for stakeholder-facing content
- When citing data, include the specific number and its source
- Propose tool calls when action is warranted; never claim an action was taken"""

BACKGROUND_CONSTRAINTS = """BACKGROUND CYCLE CONSTRAINTS:
- Observe and record only
- Do NOT propose external communications
- Artefact updates and escalations are permitted"""

MODE_INSTRUCTIONS = {
    ConversationMode.QUICK_QUERY: "Answer directly. One or two sentences unless detail is asked for.",
    ConversationMode.ANALYSIS: "Lead with data, then interpretation. Flag gaps in the evidence.",
    ConversationMode.DECISION: (
        "Lay out 2-4 options with pros, cons and downstream impact, "
        "then recommend one. The user decides."
    ),
    ConversationMode.ACTION: "Draft the action concretely. It will be held for review where policy requires.",
    ConversationMode.PRE_MORTEM: (
        "Imagine the milestone has failed. Rank failure modes by probability "
        "with warning signs visible today and mitigations available now."
    ),
    ConversationMode.RETROSPECTIVE: "Identify what went well, what went wrong and what to repeat or change.",
}


def format_memory_context(memories: Sequence[MemoryRecord], session_summary: Optional[MemoryRecord] = None) -> str:
    """Render memory records as a prompt context block."""
    parts = []

    if session_summary is not None:
        parts.append(f"Last session: {session_summary.content}")

    if memories:
        ordered = sorted(memories, key=lambda m: m.relevance_score or 0.0, reverse=True)
        lines = "\n".join(f"- [{m.memory_type.value}] {m.content}" for m in ordered)
        parts.append(f"Relevant memories:\n{lines}")

    return "\n\n".join(parts)


def format_conversation_history(turns: Sequence[ConversationTurn]) -> str:
    lines = []
    for turn in turns:
        lines.append(f"User: {turn.input[:TURN_EXCERPT_CHARS]}")
        lines.append(f"Copilot: {turn.response.text[:TURN_EXCERPT_CHARS]}")
    return "\n".join(lines)


def build_persona_prompt(
    persona: PersonaConfig,
    mode: ConversationMode,
    user_input: str,
    memory_context: str = "",
    conversation_context: str = "",
    tool_descriptions: str = "",
    is_background: bool = False
) -> str:
    """Build the full prompt for one persona's reasoning call."""
    sections = [
        "You are PM Copilot, a personal project management assistant.",
        persona.prompt_fragment,
        BEHAVIOURAL_RULES,
        f"MODE ({mode.value}): {MODE_INSTRUCTIONS[mode]}",
    ]

    if is_background:
        sections.append(BACKGROUND_CONSTRAINTS)
    if memory_context:
        sections.append(f"MEMORY CONTEXT (relevant knowledge from past sessions):\n{memory_context}")
    if conversation_context:
        sections.append(f"CONVERSATION SO FAR:\n{conversation_context}")
    if tool_descriptions:
        sections.append(f"AVAILABLE TOOLS (propose, do not execute):\n{tool_descriptions}")

    sections.append(f"USER: {user_input}")
    return "\n\n".join(sections)


def build_synthesis_prompt(
    registry: PersonaRegistry,
    mode: ConversationMode,
    user_input: str,
    contributions: Sequence[Contribution],
    challenges: Sequence[Challenge],
    memory_context: str = ""
) -> str:
    """Build the Synthesiser prompt from the other personas' contributions."""
    synthesiser = registry.synthesiser_persona

    perspectives: List[str] = []
    for contribution in contributions:
        name = registry.get(contribution.persona_id).name
        dissent = f" [DISSENTS: {contribution.dissent_reason}]" if contribution.dissent_reason else ""
        perspectives.append(
            f"**{name}** (confidence: {contribution.confidence:.2f}):{dissent}\n{contribution.text}"
        )

    sections = [
        "You are PM Copilot, a personal project management assistant.",
        synthesiser.prompt_fragment,
        BEHAVIOURAL_RULES,
        f"MODE ({mode.value}): {MODE_INSTRUCTIONS[mode]}",
    ]
    if memory_context:
        sections.append(f"MEMORY CONTEXT:\n{memory_context}")

    sections.append(f'User asked: "{user_input}"')
    sections.append("PERSPECTIVES GATHERED:\n\n" + "\n\n".join(perspectives))

    if challenges:
        conflict_lines = "\n".join(f"- {challenge.description}" for challenge in challenges)
        sections.append(
            f"CONFLICTS:\n{conflict_lines}\n\n"
            "Name both sides of every conflict. Do not apply a contested action; "
            "recommend and defer the final call to the user."
        )

    sections.append(
        "Synthesise these perspectives into a single, balanced recommendation. "
        "Show attribution: reference which perspective contributed what."
    )
    return "\n\n".join(sections)
