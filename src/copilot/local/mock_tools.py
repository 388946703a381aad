"""Recording tool executor for local development and tests."""

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from copilot.models.runtime_messages import ToolExecutionContext, ToolResult
from copilot.models.tool_definition import ToolCall
from copilot.services.interfaces.tool_executor import IToolExecutor


logger = logging.getLogger(__name__)


class MockToolExecutor(IToolExecutor):
    """Executes nothing; records every call and returns canned payloads."""

    def __init__(
        self,
        payloads: Optional[Mapping[str, Any]] = None,
        failing_tools: Optional[Iterable[str]] = None,
        latency: float = 0.0,
        reachable: bool = True
    ):
        self.payloads = dict(payloads or {})
        self.failing_tools = set(failing_tools or ())
        self.latency = latency
        self.reachable = reachable
        self.executions: List[Tuple[ToolCall, ToolExecutionContext]] = []

    def executed_tools(self) -> List[str]:
        return [call.tool_name for call, _ in self.executions]

    async def execute(self, call: ToolCall, context: ToolExecutionContext) -> ToolResult:
        self.executions.append((call, context))
        if self.latency:
            await asyncio.sleep(self.latency)

        if call.tool_name in self.failing_tools:
            logger.info(f"Mock failure for {call.tool_name}")
            return ToolResult(tool_name=call.tool_name, success=False, error=f"{call.tool_name} failed")

        payload: Dict[str, Any] = self.payloads.get(call.tool_name, {"status": "ok"})
        return ToolResult(tool_name=call.tool_name, success=True, payload=payload)

    async def ping(self) -> bool:
        return self.reachable
