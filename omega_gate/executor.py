"""Tool executor registry.

Executors are async callables ``fn(request, *, dry_run)`` returning a
``ToolResult`` or a ``{"summary", "artifacts"}`` dict. ``dry_run`` is set when
the gate only wants a proposal; executors with real effects must not act then.
Only the side-effect-free tools are built in; the host binds the rest.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List

from .allowlist import ToolId, get_tool_entry
from .validation import GateRequest

logger = logging.getLogger(__name__)


@dataclass
class ToolResult:
    summary: str
    artifacts: List[Any] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"summary": self.summary, "artifacts": list(self.artifacts)}


ToolFn = Callable[..., Awaitable[Any]]


async def _mcp_tick(request: GateRequest, *, dry_run: bool = False) -> ToolResult:
    return ToolResult(
        "Omega Gate round-trip OK",
        [{"ok": True, "call_id": request.call_id, "echo": request.inputs}],
    )


async def _plan_simulate(request: GateRequest, *, dry_run: bool = False) -> ToolResult:
    return ToolResult(
        "Simulation stub: would evaluate plan without side effects",
        [{"simulated": True, "intent": request.intent, "inputs": request.inputs}],
    )


def _proposal(label: str, proposal_type: str):
    async def propose(request: GateRequest, *, dry_run: bool = False) -> ToolResult:
        return ToolResult(
            "%s: %s" % (label, request.intent),
            [{
                "proposal_type": proposal_type,
                "summary": request.inputs.get("summary") or request.intent,
                "inputs": request.inputs,
            }],
        )
    return propose


BUILTIN_EXECUTORS: Dict[ToolId, ToolFn] = {
    ToolId.MCP_TICK: _mcp_tick,
    ToolId.PLAN_SIMULATE: _plan_simulate,
    ToolId.PLAN_PROPOSE: _proposal("Plan proposal", "plan"),
    ToolId.PLAN_PROPOSE_PATCH: _proposal("Plan patch proposal", "plan_patch"),
    ToolId.STATE_PROPOSE_PATCH: _proposal("State patch proposal", "state_patch"),
    ToolId.ACTION_PROPOSE: _proposal("Action proposal", "action"),
}


class ToolExecutor:
    def __init__(self, include_builtins: bool = True):
        self._executors: Dict[ToolId, ToolFn] = dict(BUILTIN_EXECUTORS) if include_builtins else {}

    def bind(self, tool: str, fn: ToolFn) -> None:
        entry = get_tool_entry(tool)
        if entry is None:
            raise ValueError("cannot bind executor for tool outside the allowlist: %s" % tool)
        self._executors[entry.tool] = fn

    def bound_tools(self) -> List[str]:
        return sorted(t.value for t in self._executors)

    async def execute(self, request: GateRequest, *, dry_run: bool = False) -> ToolResult:
        """Run the bound executor. Exceptions propagate to the gate."""
        entry = get_tool_entry(request.tool)
        fn = self._executors.get(entry.tool) if entry else None
        if fn is None:
            return ToolResult("No executor for tool: %s" % request.tool, [])
        raw = await fn(request, dry_run=dry_run)
        if isinstance(raw, ToolResult):
            return raw
        if isinstance(raw, dict):
            return ToolResult(str(raw.get("summary", "")), list(raw.get("artifacts") or []))
        raise TypeError("executor for %s returned %s" % (request.tool, type(raw).__name__))
