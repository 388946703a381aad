"""Contribution parsing, challenge detection and action merging.

Everything here is a pure function of its inputs so that a deliberation is
reproducible from its contributions regardless of completion timing.
"""

import re
from collections import OrderedDict
from typing import Dict, List, Optional, Sequence, Tuple

from copilot.models.contribution import Challenge, ChallengeKind, Contribution, Stance
from copilot.models.persona import PersonaConfig, PersonaId
from copilot.models.tool_definition import ToolCall
from copilot.services.interfaces.reasoning_service import ReasoningResult
from copilot.services.persona_registry import PersonaRegistry
from copilot.services.tool_catalogue import ToolCatalogue


HIGH_CONFIDENCE = re.compile(r"clearly|strongly|data shows|evidence (supports|confirms)", re.IGNORECASE)
LOW_CONFIDENCE = re.compile(r"uncertain|insufficient data|unclear|might|possibly|speculative", re.IGNORECASE)

OPPOSITION_MARKERS = re.compile(
    r"\b(recommend against|should not|shouldn't|do not proceed|advise against|hold off|oppose"
    # "delay" and "reject" only count as recommendations, never as descriptions
    r"|(?:recommend|suggest|propose)(?: that)? we (?:delay|reject)|should (?:delay|reject))\b",
    re.IGNORECASE
)
SUPPORT_MARKERS = re.compile(
    r"\b(recommend|should proceed|go ahead|in favour|support|endorse|approve)\b",
    re.IGNORECASE
)
DISSENT_MARKERS = re.compile(
    r"however|but I (must|need to) (flag|raise|point out)|counter to|against this|risks? (of|with|here)",
    re.IGNORECASE
)
CHALLENGE_SENTENCE = re.compile(r"however|but|risk|concern|challenge|unlikely|gap|miss|against|should not", re.IGNORECASE)
SENTENCE_SPLIT = re.compile(r"[.!?]+")

DISSENT_REASON_CHARS = 200


def estimate_confidence(text: str) -> float:
    """Estimate confidence from hedging language when none was reported."""
    if HIGH_CONFIDENCE.search(text):
        return 0.85
    if LOW_CONFIDENCE.search(text):
        return 0.5
    return 0.7


def detect_stance(text: str, is_dissent: bool = False) -> Stance:
    """Classify recommendation polarity. Opposition wins over support."""
    if OPPOSITION_MARKERS.search(text):
        return Stance.OPPOSE
    if is_dissent and DISSENT_MARKERS.search(text):
        return Stance.OPPOSE
    if SUPPORT_MARKERS.search(text):
        return Stance.SUPPORT
    return Stance.NEUTRAL


def extract_dissent_reason(text: str) -> str:
    """First sentence carrying a challenge marker, truncated."""
    for sentence in SENTENCE_SPLIT.split(text):
        if sentence.strip() and CHALLENGE_SENTENCE.search(sentence):
            return sentence.strip()[:DISSENT_REASON_CHARS]
    return "Perspective disagreement"


def build_contribution(
    persona: PersonaConfig,
    result: ReasoningResult,
    latency_ms: int,
    attempts: int
) -> Contribution:
    """Turn a reasoning result into an immutable successful contribution."""
    stance = detect_stance(result.text, persona.is_dissent)
    confidence = result.confidence if result.confidence is not None else estimate_confidence(result.text)

    return Contribution(
        persona_id=persona.persona_id,
        succeeded=True,
        text=result.text,
        proposed_actions=[
            ToolCall(
                tool_name=call.tool_name,
                arguments=call.arguments,
                rationale=call.rationale,
                proposed_by=[persona.persona_id]
            )
            for call in result.tool_calls
        ],
        confidence=confidence,
        latency_ms=latency_ms,
        attempts=attempts,
        stance=stance,
        dissent_reason=extract_dissent_reason(result.text) if stance == Stance.OPPOSE else None
    )


def failed_contribution(persona_id: PersonaId, error: str, latency_ms: int = 0, attempts: int = 0) -> Contribution:
    return Contribution(
        persona_id=persona_id,
        succeeded=False,
        latency_ms=latency_ms,
        attempts=attempts,
        error=error
    )


def _is_exclusive(call: ToolCall, catalogue: ToolCatalogue) -> bool:
    # Additive and unknown tools merge side by side; policy decides each call later.
    definition = catalogue.get(call.tool_name)
    return definition is not None and definition.exclusive and not definition.readonly


def _merge_provenance(calls: Sequence[ToolCall], registry: PersonaRegistry) -> ToolCall:
    proposed_by = registry.order(p for call in calls for p in call.proposed_by)
    return calls[0].model_copy(update={"proposed_by": proposed_by})


def _persona_names(persona_ids: Sequence[PersonaId], registry: PersonaRegistry) -> str:
    names = [registry.get(p).name for p in persona_ids]
    if len(names) <= 2:
        return " and ".join(names)
    return ", ".join(names[:-1]) + f" and {names[-1]}"


def _action_conflicts(
    contributions: Sequence[Contribution],
    registry: PersonaRegistry,
    catalogue: ToolCatalogue
) -> List[Challenge]:
    by_target: Dict[str, "OrderedDict[str, List[ToolCall]]"] = OrderedDict()
    for contribution in contributions:
        for call in contribution.proposed_actions:
            if not _is_exclusive(call, catalogue):
                continue
            by_fingerprint = by_target.setdefault(call.target, OrderedDict())
            by_fingerprint.setdefault(call.fingerprint, []).append(call)

    challenges = []
    for target, by_fingerprint in by_target.items():
        if len(by_fingerprint) < 2:
            continue

        proposals = [_merge_provenance(calls, registry) for calls in by_fingerprint.values()]
        personas = registry.order(p for proposal in proposals for p in proposal.proposed_by)
        if len(personas) < 2:
            continue

        sides = "; ".join(
            f"{_persona_names(proposal.proposed_by, registry)} proposes {proposal.describe()}"
            for proposal in proposals
        )
        challenges.append(Challenge(
            kind=ChallengeKind.ACTION_CONFLICT,
            personas=personas,
            topic=target,
            description=f"Conflicting proposals for {target}: {sides}.",
            conflicting_actions=proposals
        ))

    return challenges


def _opposing_recommendations(
    contributions: Sequence[Contribution],
    registry: PersonaRegistry,
    threshold: float
) -> List[Challenge]:
    supporters = [
        c for c in contributions
        if c.stance == Stance.SUPPORT and c.confidence >= threshold
    ]
    opposers = [
        c for c in contributions
        if c.stance == Stance.OPPOSE and c.confidence >= threshold
    ]
    if not supporters or not opposers:
        return []

    support_ids = [c.persona_id for c in supporters]
    oppose_ids = [c.persona_id for c in opposers]
    reasons = "; ".join(c.dissent_reason for c in opposers if c.dissent_reason)

    description = (
        f"{_persona_names(support_ids, registry)} recommend proceeding; "
        f"{_persona_names(oppose_ids, registry)} advise against"
    )
    if reasons:
        description += f" ({reasons})"

    return [Challenge(
        kind=ChallengeKind.OPPOSING_RECOMMENDATION,
        personas=registry.order(support_ids + oppose_ids),
        topic="recommendation",
        description=description + "."
    )]


def detect_challenges(
    contributions: Sequence[Contribution],
    registry: PersonaRegistry,
    catalogue: ToolCatalogue,
    confidence_threshold: float = 0.6
) -> List[Challenge]:
    """Find disagreements among successful contributions.

    Two rules fire independently:
    - action conflict: calls to an exclusive (state-replacing) tool on the
      same target with different arguments, proposed by at least two
      personas. Additive calls such as new issues or comments never collide
    - opposing recommendation: a supporting and an opposing stance, both at
      or above the confidence threshold
    """
    successful = sorted(
        (c for c in contributions if c.succeeded),
        key=lambda c: registry.sort_key(c.persona_id)
    )
    return (
        _action_conflicts(successful, registry, catalogue)
        + _opposing_recommendations(successful, registry, confidence_threshold)
    )


def merge_actions(
    contributions: Sequence[Contribution],
    challenges: Sequence[Challenge],
    registry: PersonaRegistry
) -> Tuple[List[ToolCall], List[ToolCall]]:
    """Deduplicate proposed actions and hold back contested ones.

    Returns:
        (proposed, deferred): identical calls merged with a provenance union,
        in persona-priority order; calls on a contested target are deferred
    """
    contested = {
        action.target
        for challenge in challenges
        if challenge.kind == ChallengeKind.ACTION_CONFLICT
        for action in challenge.conflicting_actions
    }

    grouped: "OrderedDict[str, List[ToolCall]]" = OrderedDict()
    successful = sorted(
        (c for c in contributions if c.succeeded),
        key=lambda c: registry.sort_key(c.persona_id)
    )
    for contribution in successful:
        for call in contribution.proposed_actions:
            grouped.setdefault(call.fingerprint, []).append(call)

    proposed: List[ToolCall] = []
    deferred: List[ToolCall] = []
    for calls in grouped.values():
        merged = _merge_provenance(calls, registry)
        (deferred if merged.target in contested else proposed).append(merged)

    return proposed, deferred


def build_disclosure(challenges: Sequence[Challenge]) -> str:
    """Narrate every disagreement so no side is silently dropped."""
    if not challenges:
        return ""

    lines = ["Perspectives disagreed on this request:"]
    for challenge in challenges:
        lines.append(f"- {challenge.description}")
        if challenge.kind == ChallengeKind.ACTION_CONFLICT:
            lines.append("  None of these changes has been applied; choose one to proceed.")
    return "\n".join(lines)


def merge_texts(
    contributions: Sequence[Contribution],
    registry: PersonaRegistry,
    with_attribution: bool = False
) -> str:
    """Join successful contribution texts in persona-priority order."""
    successful = sorted(
        (c for c in contributions if c.succeeded and c.text.strip()),
        key=lambda c: registry.sort_key(c.persona_id)
    )
    if len(successful) == 1 and not with_attribution:
        return successful[0].text

    if with_attribution:
        return "\n\n".join(f"**{registry.get(c.persona_id).name}**: {c.text}" for c in successful)
    return "\n\n".join(c.text for c in successful)


def cited_personas(contributions: Sequence[Contribution], registry: PersonaRegistry) -> List[PersonaId]:
    """Successful contributors in deterministic priority order."""
    return registry.order(c.persona_id for c in contributions if c.succeeded)


def resolution_note(challenge: Challenge, synthesised: bool) -> Optional[str]:
    if challenge.kind == ChallengeKind.ACTION_CONFLICT:
        return "deferred to user"
    if synthesised:
        return "addressed by synthesis"
    return None
