"""
Closed tool allowlist.

Every tool the gate will ever route is listed here with the scopes a caller
must hold, how far its effect reaches, and a description for introspection.
The table is checked once at import; a malformed entry fails startup rather
than a call.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Optional


class ToolId(str, Enum):
    MCP_TICK = "mcp.tick"
    OBSERVER_QUERY = "observer.query"
    STATE_INSPECT = "state.inspect"
    STATE_SIGNALS = "state.signals"
    STATE_DRAFTS = "state.drafts"
    STATE_OUTCOMES = "state.outcomes"
    MEMORY_LIST = "memory.list"
    MEMORY_SEARCH = "memory.search"
    DECISION_LIST = "decision.list"
    TRUST_STATE = "trust.state"
    CONTEXT_CURRENT = "context.current"
    PLAN_SIMULATE = "plan.simulate"
    PLAN_PROPOSE = "plan.propose"
    PLAN_PROPOSE_PATCH = "plan.propose_patch"
    STATE_PROPOSE_PATCH = "state.propose_patch"
    ACTION_PROPOSE = "action.propose"
    MEMORY_ADD = "memory.add"
    DECISION_RECORD = "decision.record"
    TRIGGER_UPSERT = "trigger.upsert"
    TRUST_STATE_SET = "trust.state_set"
    ACTION_EXECUTE = "action.execute"
    SYSTEM_SMOKE_TEST = "system.smoke_test"


class EffectKind(str, Enum):
    READ = "read"
    SIMULATE = "simulate"
    PROPOSE = "propose"
    WRITE = "write"
    EXECUTE = "execute"


SCOPE_READ = "omega:read"
SCOPE_PROPOSE = "omega:propose"
SCOPE_WRITE = "omega:write"
SCOPE_EXECUTE = "omega:execute"
SCOPE_SYSTEM = "omega:system"

KNOWN_SCOPES = frozenset({SCOPE_READ, SCOPE_PROPOSE, SCOPE_WRITE, SCOPE_EXECUTE, SCOPE_SYSTEM})


@dataclass(frozen=True)
class ToolEntry:
    tool: ToolId
    scopes: FrozenSet[str]
    effect: EffectKind
    description: str

    @property
    def is_propose(self) -> bool:
        return self.effect == EffectKind.PROPOSE

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.tool.value,
            "scopes": sorted(self.scopes),
            "effect": self.effect.value,
            "description": self.description,
        }


def _entry(tool: ToolId, scopes, effect: EffectKind, description: str) -> ToolEntry:
    return ToolEntry(tool=tool, scopes=frozenset(scopes), effect=effect, description=description)


ALLOWLIST: Dict[ToolId, ToolEntry] = {
    e.tool: e
    for e in (
        # diagnostics
        _entry(ToolId.MCP_TICK, {SCOPE_READ}, EffectKind.READ, "Round-trip check through the gate"),
        _entry(ToolId.SYSTEM_SMOKE_TEST, {SCOPE_SYSTEM}, EffectKind.READ, "Run the system smoke test"),
        # read
        _entry(ToolId.OBSERVER_QUERY, {SCOPE_READ}, EffectKind.READ, "Query observer events"),
        _entry(ToolId.STATE_INSPECT, {SCOPE_READ}, EffectKind.READ, "Snapshot of signals, drafts and outcomes"),
        _entry(ToolId.STATE_SIGNALS, {SCOPE_READ}, EffectKind.READ, "List recent signals"),
        _entry(ToolId.STATE_DRAFTS, {SCOPE_READ}, EffectKind.READ, "List drafts"),
        _entry(ToolId.STATE_OUTCOMES, {SCOPE_READ}, EffectKind.READ, "List recorded outcomes"),
        _entry(ToolId.MEMORY_LIST, {SCOPE_READ}, EffectKind.READ, "List memory events"),
        _entry(ToolId.MEMORY_SEARCH, {SCOPE_READ}, EffectKind.READ, "Search memory"),
        _entry(ToolId.DECISION_LIST, {SCOPE_READ}, EffectKind.READ, "List recorded decisions"),
        _entry(ToolId.TRUST_STATE, {SCOPE_READ}, EffectKind.READ, "Current trust and autonomy level"),
        _entry(ToolId.CONTEXT_CURRENT, {SCOPE_READ}, EffectKind.READ, "Current user context snapshot"),
        # simulate / propose
        _entry(ToolId.PLAN_SIMULATE, {SCOPE_READ}, EffectKind.SIMULATE, "Evaluate a plan without side effects"),
        _entry(ToolId.PLAN_PROPOSE, {SCOPE_PROPOSE}, EffectKind.PROPOSE, "Propose a plan for human review"),
        _entry(ToolId.PLAN_PROPOSE_PATCH, {SCOPE_PROPOSE}, EffectKind.PROPOSE, "Propose a change to an existing plan"),
        _entry(ToolId.STATE_PROPOSE_PATCH, {SCOPE_PROPOSE}, EffectKind.PROPOSE, "Propose a state change"),
        _entry(ToolId.ACTION_PROPOSE, {SCOPE_PROPOSE}, EffectKind.PROPOSE, "Propose an external action"),
        # write
        _entry(ToolId.MEMORY_ADD, {SCOPE_WRITE}, EffectKind.WRITE, "Add a memory event"),
        _entry(ToolId.DECISION_RECORD, {SCOPE_WRITE}, EffectKind.WRITE, "Record a decision"),
        _entry(ToolId.TRIGGER_UPSERT, {SCOPE_WRITE}, EffectKind.WRITE, "Create or update a trigger"),
        _entry(ToolId.TRUST_STATE_SET, {SCOPE_WRITE, SCOPE_SYSTEM}, EffectKind.WRITE, "Set trust and autonomy level"),
        # execute
        _entry(ToolId.ACTION_EXECUTE, {SCOPE_EXECUTE}, EffectKind.EXECUTE, "Execute an approved external action"),
    )
}


class AllowlistError(Exception):
    pass


def validate_allowlist(allowlist: Optional[Dict[ToolId, ToolEntry]] = None) -> None:
    table = ALLOWLIST if allowlist is None else allowlist
    missing = [t.value for t in ToolId if t not in table]
    if missing:
        raise AllowlistError("tools without allowlist entries: %s" % ", ".join(missing))
    for tool, entry in table.items():
        if entry.tool != tool:
            raise AllowlistError("entry for %s is keyed as %s" % (entry.tool.value, tool.value))
        if not entry.scopes:
            raise AllowlistError("%s requires no scope" % tool.value)
        unknown = entry.scopes - KNOWN_SCOPES
        if unknown:
            raise AllowlistError("%s uses unknown scopes %s" % (tool.value, sorted(unknown)))
        if not entry.description:
            raise AllowlistError("%s has no description" % tool.value)


def get_tool_entry(name: str) -> Optional[ToolEntry]:
    try:
        return ALLOWLIST[ToolId(name)]
    except ValueError:
        return None


def list_tools() -> List[Dict[str, object]]:
    return [entry.to_dict() for entry in ALLOWLIST.values()]


validate_allowlist()
