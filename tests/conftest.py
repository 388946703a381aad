"""Shared builders for wiring the copilot core against local collaborators."""

from typing import Dict, Iterable, Optional, Tuple

import pytest

from copilot.lib.config import SessionConfig
from copilot.local.artefact_store import InMemoryArtefactService
from copilot.local.canned_reasoning import CannedReasoningService
from copilot.local.mock_tools import MockToolExecutor
from copilot.models.persona import DEFAULT_MODE_PERSONAS, ConversationMode, EnsembleConfig, PersonaId
from copilot.services.copilot_runtime import CopilotRuntime
from copilot.services.ensemble_orchestrator import EnsembleOrchestrator
from copilot.services.memory_store import InMemoryStore
from copilot.services.persona_registry import PersonaRegistry
from copilot.services.policy_engine import AutonomyPolicyEngine
from copilot.services.session_manager import SessionManager
from copilot.services.tool_catalogue import ToolCatalogue


def fast_config(
    mode_overrides: Optional[Dict[ConversationMode, Tuple[PersonaId, ...]]] = None,
    **overrides
) -> EnsembleConfig:
    """Ensemble config with no retry backoff, for quick deterministic tests."""
    mode_personas = dict(DEFAULT_MODE_PERSONAS)
    mode_personas.update(mode_overrides or {})
    settings = {
        "mode_personas": mode_personas,
        "per_call_timeout_seconds": 2.0,
        "max_deliberation_seconds": 5.0,
        "retry_attempts": 2,
        "retry_base_delay": 0.0,
        "retry_max_delay": 0.0,
    }
    settings.update(overrides)
    return EnsembleConfig(**settings)


def build_orchestrator(
    reasoning: Optional[CannedReasoningService] = None,
    config: Optional[EnsembleConfig] = None,
    memory_store: Optional[InMemoryStore] = None
) -> EnsembleOrchestrator:
    config = config or fast_config()
    return EnsembleOrchestrator(
        reasoning or CannedReasoningService(),
        registry=PersonaRegistry(mode_personas=config.mode_personas),
        catalogue=ToolCatalogue(),
        memory_store=memory_store,
        config=config
    )


def build_runtime(
    reasoning: Optional[CannedReasoningService] = None,
    executor: Optional[MockToolExecutor] = None,
    config: Optional[EnsembleConfig] = None,
    session_config: Optional[SessionConfig] = None,
    hard_deny_tools: Iterable[str] = (),
    full_auto_allow_list: Iterable[str] = (),
    memory_store: Optional[InMemoryStore] = None,
    artefact_service: Optional[InMemoryArtefactService] = None
) -> CopilotRuntime:
    """Wire a runtime synchronously; session persistence and cleanup stay off."""
    memory_store = memory_store or InMemoryStore()
    orchestrator = build_orchestrator(reasoning, config, memory_store)
    policy_engine = AutonomyPolicyEngine(
        catalogue=orchestrator.catalogue,
        hard_deny_tools=hard_deny_tools,
        full_auto_allow_list=full_auto_allow_list
    )
    return CopilotRuntime(
        orchestrator,
        policy_engine,
        SessionManager(session_config or SessionConfig()),
        executor or MockToolExecutor(),
        memory_store=memory_store,
        artefact_service=artefact_service or InMemoryArtefactService()
    )


@pytest.fixture
def reasoning():
    return CannedReasoningService()


@pytest.fixture
def executor():
    return MockToolExecutor()


@pytest.fixture
def make_config():
    return fast_config


@pytest.fixture
def make_orchestrator():
    return build_orchestrator


@pytest.fixture
def make_runtime():
    return build_runtime
