"""Catalogue of invocable tools and their declared risk tiers.

Tools are grouped by category:
- jira: ticket search and updates
- outlook: mail search and outbound email
- artefact: PM artefact reads, updates and one-deep revert
- notification: notices to the copilot's own user
- analysis: read-only analysis with no side effects
- project: projects, activity events, escalations and held actions
"""

import logging
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional

from copilot.models.tool_definition import McpToolDefinition, RiskTier, ToolCall, ToolCategory


logger = logging.getLogger(__name__)

ARTEFACT_TYPES = ["delivery_state", "raid_log", "backlog_summary", "decision_log"]


def _schema(properties: Dict[str, Any], required: Iterable[str] = ()) -> Dict[str, Any]:
    return {"type": "object", "properties": properties, "required": list(required)}


_STRING = {"type": "string"}
_ARTEFACT_TYPE = {"type": "string", "enum": ARTEFACT_TYPES}


TOOL_DEFINITIONS: List[McpToolDefinition] = [
    # Jira
    McpToolDefinition(
        name="jira_search_issues",
        description="Search Jira tickets using JQL. Returns key fields for sprint queries and blocker searches.",
        category=ToolCategory.JIRA,
        readonly=True,
        risk_tier=RiskTier.LOW.value,
        input_schema=_schema({
            "jql": _STRING,
            "max_results": {"type": "integer", "minimum": 1, "maximum": 100, "default": 50},
            "fields": {"type": "array", "items": _STRING}
        }, required=["jql"])
    ),
    McpToolDefinition(
        name="jira_get_issue",
        description="Fetch full detail for a single Jira issue including comments and changelog.",
        category=ToolCategory.JIRA,
        readonly=True,
        risk_tier=RiskTier.LOW.value,
        input_schema=_schema({"issue_key": _STRING}, required=["issue_key"])
    ),
    McpToolDefinition(
        name="jira_get_sprint",
        description="Get the active sprint for a Jira board with its issue breakdown by status.",
        category=ToolCategory.JIRA,
        readonly=True,
        risk_tier=RiskTier.LOW.value,
        input_schema=_schema({"board_id": {"type": "integer"}}, required=["board_id"])
    ),
    McpToolDefinition(
        name="jira_add_comment",
        description="Add a comment to a Jira issue for decisions, concerns or context.",
        category=ToolCategory.JIRA,
        risk_tier=RiskTier.MEDIUM.value,
        input_schema=_schema({"issue_key": _STRING, "body": _STRING}, required=["issue_key", "body"])
    ),
    McpToolDefinition(
        name="jira_transition_issue",
        description="Change the workflow status of a Jira issue.",
        category=ToolCategory.JIRA,
        risk_tier=RiskTier.MEDIUM.value,
        input_schema=_schema({
            "issue_key": _STRING,
            "transition_id": _STRING,
            "comment": _STRING
        }, required=["issue_key", "transition_id"]),
        background_allowed=False,
        exclusive=True
    ),
    McpToolDefinition(
        name="jira_create_issue",
        description="Create a new Jira issue with type, summary and optional priority and labels.",
        category=ToolCategory.JIRA,
        risk_tier=RiskTier.HIGH.value,
        input_schema=_schema({
            "project_key": _STRING,
            "issue_type": {"type": "string", "enum": ["Story", "Task", "Bug", "Epic", "Sub-task"]},
            "summary": _STRING,
            "description": _STRING,
            "priority": {"type": "string", "enum": ["Highest", "High", "Medium", "Low", "Lowest"]},
            "labels": {"type": "array", "items": _STRING}
        }, required=["project_key", "issue_type", "summary"]),
        background_allowed=False
    ),
    McpToolDefinition(
        name="jira_update_fields",
        description="Update fields on an existing Jira issue.",
        category=ToolCategory.JIRA,
        risk_tier=RiskTier.MEDIUM.value,
        input_schema=_schema({"issue_key": _STRING, "fields": {"type": "object"}},
                             required=["issue_key", "fields"]),
        background_allowed=False,
        exclusive=True
    ),
    # Outlook
    McpToolDefinition(
        name="outlook_search_mail",
        description="Search the mailbox by sender, subject, date range or body content.",
        category=ToolCategory.OUTLOOK,
        readonly=True,
        risk_tier=RiskTier.LOW.value,
        input_schema=_schema({
            "query": _STRING,
            "max_results": {"type": "integer", "minimum": 1, "maximum": 50, "default": 20},
            "folder": {"type": "string", "enum": ["inbox", "sent", "drafts", "all"]}
        }, required=["query"])
    ),
    McpToolDefinition(
        name="outlook_read_message",
        description="Read the full content of one email by id.",
        category=ToolCategory.OUTLOOK,
        readonly=True,
        risk_tier=RiskTier.LOW.value,
        input_schema=_schema({"message_id": _STRING}, required=["message_id"])
    ),
    McpToolDefinition(
        name="outlook_list_recent",
        description="List emails received since the last checkpoint. Used by background cycles.",
        category=ToolCategory.OUTLOOK,
        readonly=True,
        risk_tier=RiskTier.LOW.value,
        input_schema=_schema({
            "delta_token": _STRING,
            "max_results": {"type": "integer", "minimum": 1, "maximum": 50, "default": 20}
        })
    ),
    McpToolDefinition(
        name="outlook_send_email",
        description="Send an email to stakeholders. Outbound mail always needs the user present.",
        category=ToolCategory.OUTLOOK,
        risk_tier=RiskTier.HIGH.value,
        input_schema=_schema({
            "to": {"type": "array", "items": _STRING, "minItems": 1},
            "cc": {"type": "array", "items": _STRING},
            "subject": _STRING,
            "body": _STRING,
            "importance": {"type": "string", "enum": ["low", "normal", "high"]}
        }, required=["to", "subject", "body"]),
        background_allowed=False
    ),
    # Artefacts
    McpToolDefinition(
        name="artefact_get",
        description="Read a PM artefact (delivery_state, raid_log, backlog_summary, decision_log) for a project.",
        category=ToolCategory.ARTEFACT,
        readonly=True,
        risk_tier=RiskTier.LOW.value,
        input_schema=_schema({"project_id": _STRING, "artefact_type": _ARTEFACT_TYPE},
                             required=["project_id", "artefact_type"])
    ),
    McpToolDefinition(
        name="artefact_update",
        description="Update a PM artefact. The previous version is kept for one-deep undo.",
        category=ToolCategory.ARTEFACT,
        risk_tier=RiskTier.MEDIUM.value,
        input_schema=_schema({
            "project_id": _STRING,
            "artefact_type": _ARTEFACT_TYPE,
            "content": {},
            "reason": _STRING
        }, required=["project_id", "artefact_type", "content", "reason"]),
        exclusive=True
    ),
    McpToolDefinition(
        name="artefact_revert",
        description="Revert an artefact to its previous version. One-deep undo only.",
        category=ToolCategory.ARTEFACT,
        risk_tier=RiskTier.HIGH.value,
        input_schema=_schema({"project_id": _STRING, "artefact_type": _ARTEFACT_TYPE},
                             required=["project_id", "artefact_type"]),
        background_allowed=False,
        exclusive=True
    ),
    # Project and events
    McpToolDefinition(
        name="project_list",
        description="List active projects with status and autonomy level.",
        category=ToolCategory.PROJECT,
        readonly=True,
        risk_tier=RiskTier.LOW.value,
        input_schema=_schema({})
    ),
    McpToolDefinition(
        name="project_get",
        description="Get project configuration and recent activity.",
        category=ToolCategory.PROJECT,
        readonly=True,
        risk_tier=RiskTier.LOW.value,
        input_schema=_schema({"project_id": _STRING}, required=["project_id"])
    ),
    McpToolDefinition(
        name="event_log",
        description="Write an event to the activity feed.",
        category=ToolCategory.PROJECT,
        risk_tier=RiskTier.LOW.value,
        input_schema=_schema({
            "project_id": _STRING,
            "event_type": _STRING,
            "severity": {"type": "string", "enum": ["info", "warning", "error", "critical"]},
            "summary": _STRING,
            "detail": _STRING
        }, required=["project_id", "event_type", "severity", "summary"])
    ),
    McpToolDefinition(
        name="escalation_create",
        description="Create an escalation that needs a user decision, with options and trade-offs.",
        category=ToolCategory.PROJECT,
        risk_tier=RiskTier.MEDIUM.value,
        input_schema=_schema({
            "project_id": _STRING,
            "title": _STRING,
            "context": _STRING,
            "options": {"type": "array", "items": {"type": "object"}},
            "urgency": {"type": "string", "enum": ["low", "medium", "high", "critical"]}
        }, required=["project_id", "title", "context", "urgency"])
    ),
    McpToolDefinition(
        name="held_action_create",
        description="Queue an action for user review before it runs.",
        category=ToolCategory.PROJECT,
        risk_tier=RiskTier.MEDIUM.value,
        input_schema=_schema({
            "project_id": _STRING,
            "action_type": _STRING,
            "summary": _STRING,
            "detail": {},
            "hold_minutes": {"type": "integer", "minimum": 1, "maximum": 1440}
        }, required=["project_id", "action_type", "summary", "hold_minutes"])
    ),
    # Notifications
    McpToolDefinition(
        name="ses_send_notification",
        description="Send a digest, alert or escalation notice to the user. Not for stakeholder mail.",
        category=ToolCategory.NOTIFICATION,
        risk_tier=RiskTier.MEDIUM.value,
        input_schema=_schema({
            "subject": _STRING,
            "body_text": _STRING,
            "body_html": _STRING,
            "importance": {"type": "string", "enum": ["low", "normal", "high"]}
        }, required=["subject", "body_text"])
    ),
    # Analysis
    McpToolDefinition(
        name="analyse_backlog_health",
        description="Scan the backlog for missing acceptance criteria, stale tickets and scope creep.",
        category=ToolCategory.ANALYSIS,
        readonly=True,
        risk_tier=RiskTier.LOW.value,
        input_schema=_schema({
            "project_id": _STRING,
            "board_id": {"type": "integer"},
            "stale_days": {"type": "integer", "default": 30}
        }, required=["project_id"])
    ),
    McpToolDefinition(
        name="analyse_raid_coherence",
        description="Check the RAID log for stale items, conflicts and closure candidates.",
        category=ToolCategory.ANALYSIS,
        readonly=True,
        risk_tier=RiskTier.LOW.value,
        input_schema=_schema({"project_id": _STRING}, required=["project_id"])
    ),
    McpToolDefinition(
        name="analyse_delivery_risk",
        description="Cross-reference signals against milestones to estimate delivery risk.",
        category=ToolCategory.ANALYSIS,
        readonly=True,
        risk_tier=RiskTier.LOW.value,
        input_schema=_schema({"project_id": _STRING, "milestone_id": _STRING}, required=["project_id"])
    ),
]


class ToolCatalogue:
    """Read-only lookup over tool definitions, keyed by name."""

    def __init__(self, definitions: Optional[Iterable[McpToolDefinition]] = None):
        definitions = list(TOOL_DEFINITIONS if definitions is None else definitions)

        by_name: Dict[str, McpToolDefinition] = {}
        for definition in definitions:
            if definition.name in by_name:
                raise ValueError(f"Duplicate tool definition: {definition.name}")
            by_name[definition.name] = definition

        self._definitions: Mapping[str, McpToolDefinition] = MappingProxyType(by_name)
        logger.debug(f"Tool catalogue loaded with {len(by_name)} tools")

    def get(self, tool_name: str) -> Optional[McpToolDefinition]:
        return self._definitions.get(tool_name)

    def __contains__(self, tool_name: object) -> bool:
        return tool_name in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)

    def names(self) -> List[str]:
        return list(self._definitions.keys())

    def all(self) -> List[McpToolDefinition]:
        return list(self._definitions.values())

    def available_tools(self, is_background: bool = False) -> List[McpToolDefinition]:
        """Tools a persona may propose in the given invocation context."""
        if not is_background:
            return self.all()
        return [d for d in self._definitions.values() if d.background_allowed]

    def describe_for_prompt(self, is_background: bool = False) -> str:
        """Render available tools as prompt lines."""
        lines = []
        for definition in self.available_tools(is_background):
            required = ", ".join(definition.required_arguments) or "none"
            access = "read-only" if definition.readonly else f"{definition.risk_tier} risk"
            lines.append(
                f"- {definition.name} ({access}; required: {required}): {definition.description}"
            )
        return "\n".join(lines)

    @staticmethod
    def missing_required_arguments(definition: McpToolDefinition, call: ToolCall) -> List[str]:
        """Required argument names absent from the call."""
        return [name for name in definition.required_arguments if call.arguments.get(name) is None]
