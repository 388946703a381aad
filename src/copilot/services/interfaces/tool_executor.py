"""Abstract interface for the injected tool executor."""

from abc import ABC, abstractmethod

from copilot.models.runtime_messages import ToolExecutionContext, ToolResult
from copilot.models.tool_definition import ToolCall


class IToolExecutor(ABC):
    """Performs allowed tool calls against external systems."""

    @abstractmethod
    async def execute(self, call: ToolCall, context: ToolExecutionContext) -> ToolResult:
        """Execute one allowed tool call and pass through its result."""
        pass

    async def ping(self) -> bool:
        """Check reachability; executors without a health probe report reachable."""
        return True
