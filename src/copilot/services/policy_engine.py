"""Autonomy policy engine: decides whether a proposed tool call runs, waits or is blocked."""

import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from copilot.lib.logging_config import AuditLogger, get_audit_logger
from copilot.lib.metrics import MetricsCollector
from copilot.lib.observability import get_tracer
from copilot.models.audit_record import ToolCallRecord, ToolOutcome
from copilot.models.policy_decision import AutonomyMode, Decision, PolicyContext, PolicyDecision
from copilot.models.tool_definition import McpToolDefinition, RiskTier, ToolCall
from copilot.services.tool_catalogue import ToolCatalogue


logger = logging.getLogger(__name__)


# Default stance per (risk tier, autonomy mode). High risk under full_auto
# depends on the allow-list and is resolved in _table_decision.
DECISION_TABLE: Dict[RiskTier, Dict[AutonomyMode, Decision]] = {
    RiskTier.LOW: {
        AutonomyMode.MANUAL: Decision.HOLD,
        AutonomyMode.ASSISTED: Decision.ALLOW,
        AutonomyMode.SUPERVISED_AUTO: Decision.ALLOW,
        AutonomyMode.FULL_AUTO: Decision.ALLOW,
    },
    RiskTier.MEDIUM: {
        AutonomyMode.MANUAL: Decision.HOLD,
        AutonomyMode.ASSISTED: Decision.HOLD,
        AutonomyMode.SUPERVISED_AUTO: Decision.ALLOW,
        AutonomyMode.FULL_AUTO: Decision.ALLOW,
    },
    RiskTier.HIGH: {
        AutonomyMode.MANUAL: Decision.HOLD,
        AutonomyMode.ASSISTED: Decision.HOLD,
        AutonomyMode.SUPERVISED_AUTO: Decision.HOLD,
        AutonomyMode.FULL_AUTO: Decision.DENY,
    },
}


class AutonomyPolicyEngine:
    """Stateless policy evaluation over the tool catalogue.

    Every rule that cannot be evaluated confidently denies. The engine never
    executes anything; it only decides and builds audit records.
    """

    def __init__(
        self,
        catalogue: Optional[ToolCatalogue] = None,
        hard_deny_tools: Optional[Iterable[str]] = None,
        full_auto_allow_list: Optional[Iterable[str]] = None,
        audit_logger: Optional[AuditLogger] = None,
        metrics_collector: Optional[MetricsCollector] = None
    ):
        """Initialize the policy engine.

        Args:
            catalogue: Tool definitions used by evaluate() lookups
            hard_deny_tools: Tools denied under every autonomy mode
            full_auto_allow_list: High-risk tools that full_auto may run unattended
            audit_logger: Audit trail for decisions
            metrics_collector: Optional metrics sink
        """
        self.catalogue = catalogue or ToolCatalogue()
        self.hard_deny_tools = frozenset(hard_deny_tools or ())
        self.full_auto_allow_list = frozenset(full_auto_allow_list or ())
        self.audit_logger = audit_logger or get_audit_logger()
        self.metrics_collector = metrics_collector

    def evaluate_policy(
        self,
        tool_call: ToolCall,
        autonomy_mode: Union[AutonomyMode, str],
        tool_definition: Optional[McpToolDefinition],
        context: Optional[PolicyContext] = None
    ) -> PolicyDecision:
        """Decide allow, hold or deny for one proposed call.

        Args:
            tool_call: Proposed call
            autonomy_mode: Autonomy mode in effect for the session
            tool_definition: Catalogue definition of the tool, None if unknown
            context: Background and confirmation flags

        Returns:
            PolicyDecision; deny whenever the call cannot be evaluated safely
        """
        mode_value = getattr(autonomy_mode, "value", str(autonomy_mode))
        tool_name = getattr(tool_call, "tool_name", "<unknown>")

        try:
            with get_tracer().start_as_current_span("policy.evaluate") as span:
                span.set_attribute("copilot.tool", str(tool_name))
                span.set_attribute("copilot.autonomy_mode", mode_value)
                decision = self._evaluate(tool_call, mode_value, tool_definition, context or PolicyContext())
                span.set_attribute("copilot.decision", decision.decision.value)
        except Exception as e:
            logger.error(f"Policy evaluation failed for {tool_name}, denying: {e}")
            decision = PolicyDecision(
                decision=Decision.DENY,
                reason=f"Policy evaluation error: {e}",
                tool_name=str(tool_name),
                autonomy_mode=mode_value,
                risk_tier=getattr(tool_definition, "risk_tier", None)
            )

        self._observe(decision, context)
        return decision

    def evaluate(
        self,
        tool_call: ToolCall,
        autonomy_mode: Union[AutonomyMode, str],
        context: Optional[PolicyContext] = None
    ) -> PolicyDecision:
        """Evaluate a call using the engine's own catalogue for the definition."""
        return self.evaluate_policy(
            tool_call,
            autonomy_mode,
            self.catalogue.get(tool_call.tool_name),
            context
        )

    def _evaluate(
        self,
        tool_call: ToolCall,
        mode_value: str,
        definition: Optional[McpToolDefinition],
        context: PolicyContext
    ) -> PolicyDecision:
        tool_name = tool_call.tool_name
        risk_tier = getattr(definition, "risk_tier", None)

        def deny(reason: str) -> PolicyDecision:
            return PolicyDecision(
                decision=Decision.DENY,
                reason=reason,
                tool_name=tool_name,
                autonomy_mode=mode_value,
                risk_tier=risk_tier
            )

        if definition is None:
            return deny(f"Unknown tool: {tool_name}")

        if definition.name != tool_name:
            return deny(f"Tool definition {definition.name} does not match call {tool_name}")

        if tool_name in self.hard_deny_tools:
            return deny(f"Tool {tool_name} is on the hard-deny list")

        try:
            tier = RiskTier(definition.risk_tier)
        except ValueError:
            return deny(f"Unknown risk tier: {definition.risk_tier}")

        try:
            mode = AutonomyMode(mode_value)
        except ValueError:
            return deny(f"Unknown autonomy mode: {mode_value}")

        if context.is_background and not definition.background_allowed:
            return deny(f"Tool {tool_name} requires the user to be present")

        missing = ToolCatalogue.missing_required_arguments(definition, tool_call)
        if missing:
            return deny(f"Missing required arguments: {', '.join(missing)}")

        if context.user_confirmed:
            return PolicyDecision(
                decision=Decision.ALLOW,
                reason="Explicitly confirmed by the user",
                tool_name=tool_name,
                autonomy_mode=mode.value,
                risk_tier=tier.value
            )

        decision, reason = self._table_decision(tool_name, tier, mode)
        return PolicyDecision(
            decision=decision,
            reason=reason,
            tool_name=tool_name,
            autonomy_mode=mode.value,
            risk_tier=tier.value
        )

    def _table_decision(self, tool_name: str, tier: RiskTier, mode: AutonomyMode):
        if tier == RiskTier.HIGH and mode == AutonomyMode.FULL_AUTO:
            if tool_name in self.full_auto_allow_list:
                return Decision.ALLOW, f"High-risk tool {tool_name} is allow-listed for full_auto"
            return Decision.DENY, f"High-risk tool {tool_name} is not allow-listed for full_auto"

        decision = DECISION_TABLE[tier][mode]
        if decision == Decision.ALLOW:
            return decision, f"{tier.value} risk tool permitted under {mode.value}"
        if mode == AutonomyMode.MANUAL:
            return decision, "Manual mode requires confirmation for every action"
        return decision, f"{tier.value} risk tool requires confirmation under {mode.value}"

    def _observe(self, decision: PolicyDecision, context: Optional[PolicyContext]) -> None:
        """Audit and count a decision. Never affects the outcome."""
        try:
            self.audit_logger.log_policy_event(
                tool_name=decision.tool_name,
                decision=decision.decision.value,
                reason=decision.reason,
                autonomy_mode=decision.autonomy_mode,
                risk_tier=decision.risk_tier,
                metadata={
                    "is_background": bool(context and context.is_background),
                    "user_confirmed": bool(context and context.user_confirmed)
                }
            )
            if self.metrics_collector:
                self.metrics_collector.record_policy_decision(
                    decision.tool_name, decision.decision.value, decision.autonomy_mode
                )
        except Exception as e:
            logger.warning(f"Failed to record policy decision for {decision.tool_name}: {e}")

    def create_tool_call_record(
        self,
        tool_call: ToolCall,
        decision: PolicyDecision,
        session_id: str,
        outcome: Optional[ToolOutcome] = None,
        result: Optional[Any] = None,
        error: Optional[str] = None,
        duration_ms: Optional[int] = None,
        draft_id: Optional[str] = None
    ) -> ToolCallRecord:
        """Build the immutable audit entry for an evaluated call.

        Held and denied calls get their outcome from the decision. Allowed
        calls must state whether execution succeeded.
        """
        if outcome is None:
            if decision.decision == Decision.HOLD:
                outcome = ToolOutcome.HELD
            elif decision.decision == Decision.DENY:
                outcome = ToolOutcome.DENIED
            else:
                raise ValueError("Allowed calls must be recorded with an execution outcome")

        return ToolCallRecord(
            session_id=session_id,
            tool_name=tool_call.tool_name,
            arguments=tool_call.arguments,
            decision=decision.decision,
            reason=decision.reason,
            outcome=outcome,
            result=result,
            error=error,
            acting_persona=tool_call.proposed_by[0].value if tool_call.proposed_by else None,
            autonomy_mode=decision.autonomy_mode,
            risk_tier=decision.risk_tier,
            duration_ms=duration_ms,
            draft_id=draft_id
        )

    def describe_autonomy_capabilities(
        self,
        autonomy_mode: Union[AutonomyMode, str],
        is_background: bool = False
    ) -> Dict[str, List[str]]:
        """List which catalogue tools would be allowed, held or denied.

        Pure introspection: nothing is audited or counted.
        """
        mode_value = getattr(autonomy_mode, "value", str(autonomy_mode))
        context = PolicyContext(is_background=is_background)
        capabilities: Dict[str, List[str]] = {d.value: [] for d in Decision}

        for definition in self.catalogue.all():
            probe = ToolCall(
                tool_name=definition.name,
                arguments={name: "" for name in definition.required_arguments}
            )
            try:
                decision = self._evaluate(probe, mode_value, definition, context).decision
            except Exception as e:
                logger.warning(f"Capability probe for {definition.name} failed: {e}")
                decision = Decision.DENY
            capabilities[decision.value].append(definition.name)

        return capabilities
