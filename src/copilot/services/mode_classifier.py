"""Conversation mode classification and dissent-persona activation.

Both entry points are deterministic over their inputs and fail closed: an
internal error yields the most conservative mode and activates the Sceptic.
"""

import logging
import re
from datetime import datetime, timezone
from typing import List, Mapping, Optional, Pattern, Sequence, Tuple

from copilot.models.classification import ClassificationContext, ModeClassification
from copilot.models.persona import ConversationMode, EnsembleConfig, PersonaId


logger = logging.getLogger(__name__)

# Mode returned whenever classification cannot be trusted; it never implies autonomous action.
FAIL_CLOSED_MODE = ConversationMode.ANALYSIS

QUICK_QUERY_MAX_WORDS = 8

# Checked in priority order, first match wins.
MODE_PATTERNS: List[Tuple[ConversationMode, str, List[Pattern]]] = [
    (
        ConversationMode.PRE_MORTEM,
        "Explicit request for adversarial analysis",
        [re.compile(p, re.IGNORECASE) for p in (
            r"pre[- ]?mortem",
            r"stress[- ]?test",
            r"what could go wrong",
            r"devil'?s?\s+advocate",
            r"what am i (not seeing|missing)",
            r"challenge (this|the|my)",
            r"poke holes",
            r"worst[- ]?case",
        )]
    ),
    (
        ConversationMode.RETROSPECTIVE,
        "Request for structured reflection",
        [re.compile(p, re.IGNORECASE) for p in (
            r"retro(spective)?(\s+on)?",
            r"what (did we|have we) learn",
            r"lessons?\s+learn",
            r"what went (well|wrong)",
            r"post[- ]?mortem",
            r"look(ing)? back (on|at)",
        )]
    ),
    (
        ConversationMode.DECISION,
        "Decision or structured options requested",
        [re.compile(p, re.IGNORECASE) for p in (
            r"should (we|i|the team)",
            r"decide (between|on|whether)",
            r"what('s| is) the best (approach|option|path|way)",
            r"trade[- ]?offs?\s+(between|for|of)",
            r"recommend(ation)?",
            r"options?\s*(a|b|c|1|2|3)\b",
            r"push (the|to) (launch|deadline|date|milestone)",
            r"rescope|replan|descope",
            r"escalat(e|ion)",
            r"how should (i|we) handle",
        )]
    ),
    (
        ConversationMode.ACTION,
        "External action requested",
        [re.compile(p, re.IGNORECASE) for p in (
            r"draft (a |an |the )?(email|message|response|reply|update|comm)",
            r"send (a |an |the )?(email|message|notification)",
            r"create (a |an |the )?(ticket|issue|story|task|risk|item)",
            r"update (the )?(raid|delivery|backlog|decision|artefact|status)",
            r"add (a |an )?(comment|note|risk|issue|item|dependency)",
            r"transition|move (the )?ticket",
            r"chase (up|email)",
            r"follow[- ]?up (with|on|email)",
            r"approve|cancel|reject",
        )]
    ),
    (
        ConversationMode.ANALYSIS,
        "Data synthesis or project assessment requested",
        [re.compile(p, re.IGNORECASE) for p in (
            r"what('s| is) the (state|status|health|progress)",
            r"how('s| is) (the project|it going|things|progress)",
            r"show (me )?(the )?(velocity|trend|metric|burn|sprint|risk|raid)",
            r"summar(y|ise|ize)",
            r"catch (me )?up",
            r"what (happened|changed|did i miss)",
            r"risk (landscape|assessment|analysis|review)",
            r"backlog (health|audit|quality|review)",
            r"dependency (map|analysis|check)",
            r"prep(are)? (me )?(for )?(the |a )?(meeting|standup|steering|review)",
            r"weekly (status|report)",
            r"briefing",
            r"how many (open |active )?(blocker|risk|issue|ticket)",
            r"cross[- ]?project",
        )]
    ),
]

APPROVAL_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"^(yes|yep|yeah|approve|approved|lgtm|go ahead|send it|looks good)",
    r"^ok(ay)?$",
    r"^do it$",
    r"^confirm",
)]

CONFIDENCE_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"we('ll| will| can) (make|hit|meet|deliver)",
    r"on track",
    r"no problem",
    r"confident",
    r"should be (fine|okay|ok)",
    r"we('re| are) (good|fine)",
    r"i think we('ll| will) make it",
)]

IRREVERSIBLE_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"\bsend\b.*\b(email|message|announcement)\b",
    r"\b(delete|remove|drop|purge)\b",
    r"\b(revert|roll ?back)\b",
    r"\b(cancel|terminate)\b",
    r"\b(publish|announce)\b",
    r"\bcommit to\b",
    r"\bsign[- ]?off\b",
    r"\birreversibl[ey]\b",
    r"\bcan'?t (be )?undo(ne)?\b",
)]


def is_approval_response(message: str) -> bool:
    """Check whether a message approves a pending draft."""
    text = message.strip()
    return any(pattern.search(text) for pattern in APPROVAL_PATTERNS)


def expresses_confidence(message: str) -> bool:
    return any(pattern.search(message) for pattern in CONFIDENCE_PATTERNS)


def mentions_irreversible_action(message: str) -> bool:
    return any(pattern.search(message) for pattern in IRREVERSIBLE_PATTERNS)


def _classify(context: ClassificationContext) -> ModeClassification:
    if context.is_background:
        return ModeClassification(
            mode=ConversationMode.ANALYSIS,
            confidence=1.0,
            reason="Background monitoring cycle"
        )

    if context.has_pending_draft and is_approval_response(context.user_message):
        return ModeClassification(
            mode=ConversationMode.ACTION,
            confidence=0.95,
            reason="Responding to pending draft action"
        )

    for mode, description, patterns in MODE_PATTERNS:
        if any(pattern.search(context.user_message) for pattern in patterns):
            return ModeClassification(mode=mode, confidence=0.85, reason=description)

    word_count = len(context.user_message.split())
    if word_count <= QUICK_QUERY_MAX_WORDS:
        return ModeClassification(
            mode=ConversationMode.QUICK_QUERY,
            confidence=0.7,
            reason="Short message, defaulting to quick query"
        )

    return ModeClassification(
        mode=ConversationMode.ANALYSIS,
        confidence=0.6,
        reason="Longer message, defaulting to analysis"
    )


def classify(context: ClassificationContext) -> ModeClassification:
    """Classify the conversation mode with confidence and reason.

    Args:
        context: Current input, history and signals

    Returns:
        ModeClassification; on internal error the fail-closed mode
    """
    try:
        return _classify(context)
    except Exception as e:
        logger.error(f"Mode classification failed, defaulting to {FAIL_CLOSED_MODE.value}: {e}")
        return ModeClassification(
            mode=FAIL_CLOSED_MODE,
            confidence=0.0,
            reason="Classification error, failing closed"
        )


def classify_mode(context: ClassificationContext) -> ConversationMode:
    """Pure mode classification."""
    return classify(context).mode


def _low_confidence_in_history(context: ClassificationContext, config: EnsembleConfig) -> bool:
    thresholds = config.sceptic_thresholds
    if thresholds.low_confidence_lookback_turns <= 0:
        return False

    for turn in context.recent_turns[-thresholds.low_confidence_lookback_turns:]:
        for contribution in turn.response.deliberation.contributions:
            if contribution.succeeded and contribution.confidence < thresholds.low_confidence_threshold:
                return True
    return False


def _detect_trigger(
    context: ClassificationContext,
    mode: ConversationMode,
    config: EnsembleConfig,
    mode_personas: Mapping[ConversationMode, Sequence[PersonaId]]
) -> Optional[str]:
    if PersonaId.SCEPTIC in mode_personas.get(mode, ()):
        return None

    thresholds = config.sceptic_thresholds
    now = context.now or datetime.now(timezone.utc)

    if context.last_challenge_at is not None:
        elapsed = (now - context.last_challenge_at).total_seconds()
        if elapsed < thresholds.challenge_cooldown_seconds:
            return None

    if mentions_irreversible_action(context.user_message):
        return "irreversible_action"

    if _low_confidence_in_history(context, config):
        return "low_confidence_history"

    signals = context.signals
    if (
        signals.velocity_gap_percent is not None
        and signals.velocity_gap_percent > thresholds.velocity_gap_percent
        and expresses_confidence(context.user_message)
    ):
        return "timeline_confidence"

    if signals.stalest_blocker_days is not None and signals.stalest_blocker_days > thresholds.stale_blocker_days:
        return "stale_blocker"

    if (
        signals.scope_added_without_tradeoff is not None
        and signals.scope_added_without_tradeoff >= thresholds.scope_creep_ticket_count
    ):
        return "scope_creep"

    return None


def detect_sceptic_trigger(
    context: ClassificationContext,
    mode: ConversationMode,
    config: Optional[EnsembleConfig] = None,
    mode_personas: Optional[Mapping[ConversationMode, Sequence[PersonaId]]] = None
) -> Optional[str]:
    """Name the reason the Sceptic should join, or None to stay quiet.

    ``mode_personas`` is the mapping the caller actually activates from,
    normally the persona registry's; it defaults to ``config.mode_personas``.

    Returns "evaluation_error" when the check itself fails, which activates
    the Sceptic rather than silencing it.
    """
    try:
        config = config or EnsembleConfig()
        if mode_personas is None:
            mode_personas = config.mode_personas
        return _detect_trigger(context, mode, config, mode_personas)
    except Exception as e:
        logger.error(f"Sceptic activation check failed, activating dissent: {e}")
        return "evaluation_error"


def should_activate_sceptic(
    context: ClassificationContext,
    mode: ConversationMode,
    config: Optional[EnsembleConfig] = None,
    mode_personas: Optional[Mapping[ConversationMode, Sequence[PersonaId]]] = None
) -> bool:
    """Decide whether the dissent persona joins outside its default modes."""
    return detect_sceptic_trigger(context, mode, config, mode_personas) is not None
