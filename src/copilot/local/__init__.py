"""Local development stack: canned collaborators wired into a full runtime."""

from typing import Optional

from copilot.lib.config import CopilotConfig
from copilot.lib.metrics import MetricsCollector
from copilot.local.artefact_store import InMemoryArtefactService
from copilot.local.canned_reasoning import CannedReasoningService
from copilot.local.mock_tools import MockToolExecutor
from copilot.models.memory_record import MemoryRecord, MemoryType
from copilot.services.copilot_runtime import CopilotRuntime
from copilot.services.ensemble_orchestrator import EnsembleOrchestrator
from copilot.services.interfaces.reasoning_service import IReasoningService
from copilot.services.interfaces.tool_executor import IToolExecutor
from copilot.services.memory_store import InMemoryStore
from copilot.services.persona_registry import PersonaRegistry
from copilot.services.policy_engine import AutonomyPolicyEngine
from copilot.services.session_manager import SessionManager
from copilot.services.tool_catalogue import ToolCatalogue


SEED_MEMORIES = [
    MemoryRecord(
        content="Last session: agreed to hold the beta launch date and revisit after the next sprint review.",
        memory_type=MemoryType.SUMMARY
    ),
    MemoryRecord(
        content="March release slipped two weeks after late scope additions without a trade-off.",
        memory_type=MemoryType.EPISODIC
    ),
    MemoryRecord(
        content="The sponsor prefers risks raised in writing before the steering meeting.",
        memory_type=MemoryType.PREFERENCE
    ),
]


async def build_local_runtime(
    config: Optional[CopilotConfig] = None,
    reasoning_service: Optional[IReasoningService] = None,
    tool_executor: Optional[IToolExecutor] = None,
    metrics_collector: Optional[MetricsCollector] = None,
    seed_memory: bool = True
) -> CopilotRuntime:
    """Wire a runtime against canned, in-process collaborators.

    Args:
        config: Copilot configuration; defaults when omitted
        reasoning_service: Reasoning collaborator, canned by default
        tool_executor: Tool executor, a recording mock by default
        metrics_collector: Optional metrics sink
        seed_memory: Pre-load a few memory records

    Returns:
        Initialized CopilotRuntime
    """
    config = config or CopilotConfig()
    ensemble_config = config.ensemble.to_ensemble_config()

    memory_store = InMemoryStore()
    if seed_memory:
        for record in SEED_MEMORIES:
            await memory_store.add(record.model_copy(deep=True))

    catalogue = ToolCatalogue()
    orchestrator = EnsembleOrchestrator(
        reasoning_service or CannedReasoningService(),
        registry=PersonaRegistry(mode_personas=ensemble_config.mode_personas),
        catalogue=catalogue,
        memory_store=memory_store,
        config=ensemble_config,
        metrics_collector=metrics_collector
    )
    policy_engine = AutonomyPolicyEngine(
        catalogue=catalogue,
        hard_deny_tools=config.policy.hard_deny_tools,
        full_auto_allow_list=config.policy.full_auto_allow_list,
        metrics_collector=metrics_collector
    )
    session_manager = SessionManager(config.session, metrics_collector=metrics_collector)
    await session_manager.initialize()

    return CopilotRuntime(
        orchestrator,
        policy_engine,
        session_manager,
        tool_executor or MockToolExecutor(),
        memory_store=memory_store,
        artefact_service=InMemoryArtefactService(),
        metrics_collector=metrics_collector
    )


__all__ = [
    "CannedReasoningService",
    "InMemoryArtefactService",
    "MockToolExecutor",
    "build_local_runtime",
]
