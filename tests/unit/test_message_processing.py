"""
Unit tests for conversation mode classification and dissent activation.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from copilot.models.classification import ClassificationContext, SignalSnapshot
from copilot.models.contribution import Contribution, CopilotResponse, Deliberation
from copilot.models.conversation_session import ConversationTurn
from copilot.models.persona import ConversationMode, PersonaId
from copilot.services.mode_classifier import (
    FAIL_CLOSED_MODE,
    classify,
    classify_mode,
    detect_sceptic_trigger,
    is_approval_response,
    should_activate_sceptic,
)


NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _context(message: str, **kwargs) -> ClassificationContext:
    kwargs.setdefault("now", NOW)
    return ClassificationContext(user_message=message, **kwargs)


def _turn_with_confidence(sequence: int, confidence: float) -> ConversationTurn:
    deliberation = Deliberation(
        session_id="session-1",
        mode=ConversationMode.ANALYSIS,
        contributions=[
            Contribution(persona_id=PersonaId.ANALYST, succeeded=True, text="Unclear", confidence=confidence)
        ]
    )
    response = CopilotResponse(text="Unclear", mode=ConversationMode.ANALYSIS, deliberation=deliberation)
    return ConversationTurn(sequence=sequence, input="How are we doing?", response=response)


class TestModeClassification:
    """Test classify and classify_mode."""

    def test_background_is_analysis(self):
        """Test background cycles always analyse."""
        result = classify(_context("Send the weekly email to the sponsor", is_background=True))

        assert result.mode == ConversationMode.ANALYSIS
        assert result.confidence == 1.0

    def test_approval_with_pending_draft_is_action(self):
        """Test an approval phrase while a draft is pending."""
        result = classify(_context("yes, send it", has_pending_draft=True))

        assert result.mode == ConversationMode.ACTION
        assert result.confidence == 0.95

    def test_approval_without_pending_draft_is_not_action(self):
        """Test approval phrasing alone does not imply an action."""
        assert classify_mode(_context("yes")) == ConversationMode.QUICK_QUERY

    @pytest.mark.parametrize("message,expected", [
        ("Let's run a pre-mortem on the beta launch", ConversationMode.PRE_MORTEM),
        ("What could go wrong if we cut the QA phase?", ConversationMode.PRE_MORTEM),
        ("Can we do a retrospective on sprint 14?", ConversationMode.RETROSPECTIVE),
        ("What did we learn from the March release?", ConversationMode.RETROSPECTIVE),
        ("Should we push the launch to May?", ConversationMode.DECISION),
        ("Draft an email to the sponsor about the vendor slip", ConversationMode.ACTION),
        ("Create a ticket for the login bug", ConversationMode.ACTION),
        ("What's the status of the project?", ConversationMode.ANALYSIS),
        ("Prepare me for the steering meeting tomorrow", ConversationMode.ANALYSIS),
    ])
    def test_pattern_groups(self, message, expected):
        """Test the first matching pattern group wins."""
        result = classify(_context(message))

        assert result.mode == expected
        assert result.confidence == 0.85

    def test_pre_mortem_beats_decision(self):
        """Test priority order when several groups match."""
        assert classify_mode(_context("Should we ship? Give me a pre-mortem first")) == ConversationMode.PRE_MORTEM

    def test_short_message_is_quick_query(self):
        """Test short unmatched messages."""
        result = classify(_context("Who owns ATLAS-42?"))

        assert result.mode == ConversationMode.QUICK_QUERY
        assert result.confidence == 0.7

    def test_long_message_defaults_to_analysis(self):
        """Test long unmatched messages."""
        message = "I have been thinking about how the team collaborates across time zones lately"

        result = classify(_context(message))

        assert result.mode == ConversationMode.ANALYSIS
        assert result.confidence == 0.6

    def test_internal_error_fails_closed(self):
        """Test classification errors fall back to analysis."""
        with patch("copilot.services.mode_classifier._classify", side_effect=RuntimeError("boom")):
            result = classify(_context("Send it now"))

        assert result.mode == FAIL_CLOSED_MODE == ConversationMode.ANALYSIS
        assert result.confidence == 0.0

    def test_classification_is_deterministic(self):
        """Test the same context always yields the same mode."""
        context = _context("Should we descope the reporting epic?")

        assert {classify_mode(context) for _ in range(5)} == {ConversationMode.DECISION}

    @pytest.mark.parametrize("message", ["yes", "Approved", "LGTM", "go ahead", "ok", "confirm"])
    def test_approval_phrases(self, message):
        """Test recognised approval phrases."""
        assert is_approval_response(message)


class TestScepticActivation:
    """Test detect_sceptic_trigger and should_activate_sceptic."""

    def test_modes_with_sceptic_do_not_trigger(self):
        """Test no trigger when the mode already includes the sceptic."""
        context = _context("Delete the old backlog items")

        assert detect_sceptic_trigger(context, ConversationMode.DECISION) is None
        assert detect_sceptic_trigger(context, ConversationMode.PRE_MORTEM) is None

    def test_supplied_mode_mapping_wins(self):
        """Test the sceptic check follows the mapping the caller activates from."""
        context = _context("Delete the old backlog items")
        without_sceptic = {ConversationMode.DECISION: (PersonaId.ANALYST, PersonaId.SYNTHESISER)}

        assert detect_sceptic_trigger(
            context, ConversationMode.DECISION, mode_personas=without_sceptic
        ) == "irreversible_action"
        assert should_activate_sceptic(context, ConversationMode.DECISION, mode_personas=without_sceptic)

    def test_irreversible_action(self):
        """Test irreversible language activates dissent."""
        context = _context("Delete the old backlog items")

        assert detect_sceptic_trigger(context, ConversationMode.ACTION) == "irreversible_action"
        assert should_activate_sceptic(context, ConversationMode.ACTION)

    def test_cooldown_suppresses_trigger(self):
        """Test a recent challenge silences the sceptic."""
        context = _context("Delete the old backlog items", last_challenge_at=NOW - timedelta(seconds=60))

        assert detect_sceptic_trigger(context, ConversationMode.ACTION) is None

    def test_cooldown_elapsed(self):
        """Test the sceptic returns once the cooldown has passed."""
        context = _context("Delete the old backlog items", last_challenge_at=NOW - timedelta(hours=1))

        assert detect_sceptic_trigger(context, ConversationMode.ACTION) == "irreversible_action"

    def test_low_confidence_history(self):
        """Test low-confidence contributions in recent turns."""
        context = _context("And the vendor?", recent_turns=[_turn_with_confidence(1, 0.3)])

        assert detect_sceptic_trigger(context, ConversationMode.QUICK_QUERY) == "low_confidence_history"

    def test_confident_history_does_not_trigger(self):
        """Test confident history stays quiet."""
        context = _context("And the vendor?", recent_turns=[_turn_with_confidence(1, 0.9)])

        assert detect_sceptic_trigger(context, ConversationMode.QUICK_QUERY) is None

    def test_timeline_confidence_against_velocity_gap(self):
        """Test optimism while velocity lags."""
        context = _context(
            "We're on track for the beta",
            signals=SignalSnapshot(velocity_gap_percent=35.0)
        )

        assert detect_sceptic_trigger(context, ConversationMode.ANALYSIS) == "timeline_confidence"

    def test_velocity_gap_without_optimism(self):
        """Test a velocity gap alone does not trigger."""
        context = _context("How is the beta going?", signals=SignalSnapshot(velocity_gap_percent=35.0))

        assert detect_sceptic_trigger(context, ConversationMode.ANALYSIS) is None

    def test_stale_blocker(self):
        """Test stale blockers activate dissent."""
        context = _context("How is the beta going?", signals=SignalSnapshot(stalest_blocker_days=6))

        assert detect_sceptic_trigger(context, ConversationMode.ANALYSIS) == "stale_blocker"

    def test_scope_creep(self):
        """Test scope added without trade-off activates dissent."""
        context = _context("How is the beta going?", signals=SignalSnapshot(scope_added_without_tradeoff=3))

        assert detect_sceptic_trigger(context, ConversationMode.ANALYSIS) == "scope_creep"

    def test_quiet_context(self):
        """Test no trigger without any signal."""
        context = _context("How is the beta going?")

        assert detect_sceptic_trigger(context, ConversationMode.ANALYSIS) is None
        assert not should_activate_sceptic(context, ConversationMode.ANALYSIS)

    def test_evaluation_error_activates_sceptic(self):
        """Test the check fails closed by activating dissent."""
        with patch("copilot.services.mode_classifier._detect_trigger", side_effect=RuntimeError("boom")):
            trigger = detect_sceptic_trigger(_context("Hello"), ConversationMode.QUICK_QUERY)

        assert trigger == "evaluation_error"
