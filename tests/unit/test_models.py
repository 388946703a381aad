"""
Unit tests for data models and the persona registry.

Covers model validation, draft lifecycle transitions, tool call identity
and registry consistency checks.
"""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from copilot.models.contribution import CopilotResponse, Deliberation
from copilot.models.conversation_session import ConversationTurn, DraftStatus, PendingDraft, SessionState
from copilot.models.persona import ConversationMode, EnsembleConfig, PersonaId
from copilot.models.policy_decision import AutonomyMode
from copilot.models.runtime_messages import InvokeRequest
from copilot.models.tool_definition import ToolCall
from copilot.services.persona_registry import (
    ALL_PERSONAS,
    OPERATOR,
    SCEPTIC,
    PersonaRegistry,
    RegistryConfigurationError,
)
from copilot.services.tool_catalogue import ToolCatalogue


def _turn(sequence: int = 1) -> ConversationTurn:
    deliberation = Deliberation(session_id="session-1", mode=ConversationMode.QUICK_QUERY)
    response = CopilotResponse(text="Done.", mode=ConversationMode.QUICK_QUERY, deliberation=deliberation)
    return ConversationTurn(sequence=sequence, input="Who owns ATLAS-42?", response=response)


def _draft(**kwargs) -> PendingDraft:
    return PendingDraft(
        session_id="session-1",
        tool_call=ToolCall(tool_name="jira_add_comment", arguments={"issue_key": "ATLAS-1", "body": "ping"}),
        reason="Assisted mode holds medium-risk tools",
        **kwargs
    )


class TestPersonaRegistry:
    """Test PersonaRegistry ordering and validation."""

    def test_default_registry(self):
        """Test the default catalogue loads six personas in priority order."""
        registry = PersonaRegistry()

        assert [p.persona_id for p in registry.all()] == [
            PersonaId.OPERATOR,
            PersonaId.ANALYST,
            PersonaId.SCEPTIC,
            PersonaId.ADVOCATE,
            PersonaId.HISTORIAN,
            PersonaId.SYNTHESISER,
        ]
        assert registry.dissent_persona.persona_id == PersonaId.SCEPTIC
        assert registry.synthesiser_persona.persona_id == PersonaId.SYNTHESISER

    def test_order_is_by_priority(self):
        """Test ordering ignores input order and drops duplicates."""
        registry = PersonaRegistry()

        ordered = registry.order([PersonaId.HISTORIAN, PersonaId.OPERATOR, PersonaId.SCEPTIC, PersonaId.OPERATOR])

        assert ordered == [PersonaId.OPERATOR, PersonaId.SCEPTIC, PersonaId.HISTORIAN]

    def test_mode_mapping_is_sorted(self):
        """Test mode mappings are stored in priority order."""
        registry = PersonaRegistry()

        assert registry.personas_for_mode(ConversationMode.PRE_MORTEM) == (
            PersonaId.ANALYST,
            PersonaId.SCEPTIC,
            PersonaId.HISTORIAN,
            PersonaId.SYNTHESISER,
        )
        assert registry.personas_for_mode(ConversationMode.QUICK_QUERY) == (PersonaId.OPERATOR,)

    def test_lookup_by_string(self):
        """Test personas can be looked up by their string identity."""
        registry = PersonaRegistry()

        assert registry.get("analyst").name == "The Analyst"
        assert PersonaId.ANALYST in registry

    def test_describe(self):
        """Test capability summaries."""
        summary = PersonaRegistry().describe()

        assert list(summary) == ["operator", "analyst", "sceptic", "advocate", "historian", "synthesiser"]
        assert summary["sceptic"]["priority"] == 3

    def test_empty_registry_rejected(self):
        """Test an empty catalogue fails at startup."""
        with pytest.raises(RegistryConfigurationError):
            PersonaRegistry(personas=())

    def test_duplicate_personas_rejected(self):
        """Test duplicate identities fail at startup."""
        with pytest.raises(RegistryConfigurationError, match="Duplicate"):
            PersonaRegistry(personas=ALL_PERSONAS + (OPERATOR,))

    def test_missing_dissent_persona_rejected(self):
        """Test exactly one dissent persona is required."""
        personas = tuple(p for p in ALL_PERSONAS if p.persona_id != SCEPTIC.persona_id)

        with pytest.raises(RegistryConfigurationError, match="dissent"):
            PersonaRegistry(personas=personas)

    def test_unmapped_mode_rejected(self):
        """Test every mode needs at least one persona."""
        mapping = {mode: (PersonaId.ANALYST,) for mode in ConversationMode if mode != ConversationMode.ACTION}

        with pytest.raises(RegistryConfigurationError, match="action"):
            PersonaRegistry(mode_personas=mapping)

    def test_unknown_persona_in_mapping_rejected(self):
        """Test mappings may only name registered personas."""
        mapping = {mode: (PersonaId.ANALYST,) for mode in ConversationMode}
        mapping[ConversationMode.ANALYSIS] = ("oracle",)

        with pytest.raises(RegistryConfigurationError, match="unknown personas"):
            PersonaRegistry(mode_personas=mapping)

    def test_synthesiser_only_mode_rejected(self):
        """Test a mode cannot map only the synthesiser."""
        mapping = {mode: (PersonaId.ANALYST,) for mode in ConversationMode}
        mapping[ConversationMode.DECISION] = (PersonaId.SYNTHESISER,)

        with pytest.raises(RegistryConfigurationError, match="synthesiser"):
            PersonaRegistry(mode_personas=mapping)


class TestEnsembleConfig:
    """Test EnsembleConfig validation."""

    def test_defaults(self):
        """Test default deliberation limits."""
        config = EnsembleConfig()

        assert config.retry_attempts == 2
        assert config.challenge_confidence_threshold == 0.6
        assert config.sceptic_thresholds.challenge_cooldown_seconds == 600.0
        assert set(config.mode_personas) == set(ConversationMode)

    def test_duplicate_personas_in_mode_rejected(self):
        """Test a persona cannot be mapped twice to one mode."""
        with pytest.raises(ValidationError, match="Duplicate"):
            EnsembleConfig(mode_personas={ConversationMode.QUICK_QUERY: (PersonaId.OPERATOR, PersonaId.OPERATOR)})

    def test_config_is_frozen(self):
        """Test configuration cannot change after load."""
        config = EnsembleConfig()

        with pytest.raises(ValidationError):
            config.retry_attempts = 3


class TestInvokeRequest:
    """Test InvokeRequest validation."""

    def test_valid_request(self):
        """Test a minimal request."""
        request = InvokeRequest(input="What's the status?", autonomy_mode="full_auto")

        assert request.session_id is None
        assert request.autonomy_mode == AutonomyMode.FULL_AUTO
        assert request.is_background is False

    @pytest.mark.parametrize("payload", [
        {"input": ""},
        {"input": "   "},
        {"input": "hello", "session_id": "  "},
        {"input": "hello", "autonomy_mode": "yolo"},
        {},
    ])
    def test_malformed_requests(self, payload):
        """Test malformed requests fail validation."""
        with pytest.raises(ValidationError):
            InvokeRequest(**payload)


class TestPendingDraft:
    """Test PendingDraft lifecycle."""

    def test_single_transition(self):
        """Test a draft leaves PROPOSED exactly once."""
        draft = _draft()

        assert draft.transition_to(DraftStatus.CONFIRMED, "approved")
        assert draft.status == DraftStatus.CONFIRMED
        assert draft.resolved_at is not None
        assert draft.resolution_note == "approved"

        assert not draft.transition_to(DraftStatus.REJECTED)
        assert draft.status == DraftStatus.CONFIRMED

    def test_expiry(self):
        """Test drafts expire once their window has elapsed."""
        now = datetime.now(timezone.utc)
        draft = _draft(expires_at=now - timedelta(seconds=1))

        assert draft.is_expired(now)
        assert not _draft(expires_at=now + timedelta(hours=1)).is_expired(now)
        assert not _draft().is_expired(now)

    def test_terminal_draft_never_expires(self):
        """Test resolved drafts are not reported as expired."""
        now = datetime.now(timezone.utc)
        draft = _draft(expires_at=now - timedelta(seconds=1))
        draft.transition_to(DraftStatus.REJECTED)

        assert draft.is_terminal
        assert not draft.is_expired(now)


class TestToolCall:
    """Test ToolCall identity."""

    def test_target_uses_identifying_arguments(self):
        """Test the collision key names what the call acts on."""
        call = ToolCall(
            tool_name="artefact_update",
            arguments={"content": {"status": "amber"}, "artefact_type": "raid_log", "project_id": "atlas"}
        )

        assert call.target == "artefact_update:project_id=atlas,artefact_type=raid_log"

    def test_target_without_identifying_arguments(self):
        """Test calls without target arguments fall back to the tool name."""
        assert ToolCall(tool_name="jira_search_issues", arguments={"jql": "x"}).target == "jira_search_issues"

    def test_fingerprint_ignores_argument_order(self):
        """Test identical calls share a fingerprint."""
        first = ToolCall(tool_name="jira_get_issue", arguments={"issue_key": "ATLAS-1", "expand": "comments"})
        second = ToolCall(tool_name="jira_get_issue", arguments={"expand": "comments", "issue_key": "ATLAS-1"})

        assert first.fingerprint == second.fingerprint

    def test_tool_name_is_normalised(self):
        """Test surrounding whitespace is stripped and blanks rejected."""
        assert ToolCall(tool_name=" jira_get_issue ").tool_name == "jira_get_issue"

        with pytest.raises(ValidationError):
            ToolCall(tool_name="   ")

    def test_only_state_replacing_tools_are_exclusive(self):
        """Test which catalogue tools contest a shared target."""
        exclusive = sorted(d.name for d in ToolCatalogue().all() if d.exclusive)

        assert exclusive == [
            "artefact_revert", "artefact_update", "jira_transition_issue", "jira_update_fields"
        ]


class TestSessionState:
    """Test SessionState and ConversationTurn."""

    def test_turn_is_frozen(self):
        """Test turns cannot be edited after creation."""
        turn = _turn()

        with pytest.raises(ValidationError):
            turn.input = "edited"

    def test_recent_turns(self):
        """Test the history window."""
        session = SessionState(turns=[_turn(1), _turn(2), _turn(3)])

        assert [t.sequence for t in session.recent_turns(2)] == [2, 3]
        assert session.recent_turns(0) == []

    def test_summary(self):
        """Test listing summaries."""
        session = SessionState(session_id=" session-9 ", project_id="atlas", turns=[_turn()])

        summary = session.summary()

        assert summary["session_id"] == "session-9"
        assert summary["autonomy_mode"] == "assisted"
        assert summary["turn_count"] == 1
        assert summary["pending_drafts"] == 0
