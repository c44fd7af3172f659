import itertools
import os
import sys
import time

import pytest
import pytest_asyncio

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from action_service.storage import get_exec_logs
from omega_gate.allowlist import list_tools
from omega_gate.executor import ToolExecutor, ToolResult
from omega_gate.gate import OmegaGate
from omega_gate.ledger import EffectLedger, ProposalNotFound, ProposalStateError
from omega_gate.replay import InMemoryNonceStore
from omega_gate.validation import validate_gate_request

_nonces = itertools.count(1)


class CountingLedger(EffectLedger):
    def __init__(self, sessionmaker):
        super().__init__(sessionmaker)
        self.proposed_writes = 0
        self.completion_writes = 0

    async def record_proposed(self, **kw):
        self.proposed_writes += 1
        return await super().record_proposed(**kw)

    async def complete(self, effect_id, status, **kw):
        self.completion_writes += 1
        return await super().complete(effect_id, status, **kw)


class SpyExecutor(ToolExecutor):
    def __init__(self):
        super().__init__()
        self.calls = []

    async def execute(self, request, *, dry_run=False):
        self.calls.append((request.tool, dry_run))
        return await super().execute(request, dry_run=dry_run)


def gate_headers(scope="omega:read omega:propose omega:write", nonce=None, key="test-gate-key", **extra):
    h = {
        "X-Omega-Key": key,
        "X-Omega-Agent": "planner-agent",
        "X-Omega-Scope": scope,
        "X-Omega-Nonce": nonce or "nonce-%08d" % next(_nonces),
        "X-Omega-Timestamp": str(int(time.time() * 1000)),
    }
    h.update(extra)
    return h


def call_body(tool="mcp.tick", intent="check the gate round trip", inputs=None, call_id="call-1"):
    return {"call_id": call_id, "tool": tool, "intent": intent, "inputs": {"q": 1} if inputs is None else inputs}


@pytest_asyncio.fixture
async def gate_env(db, settings):
    ledger = CountingLedger(db)
    executor = SpyExecutor()
    gate = OmegaGate(ledger, executor=executor, nonce_store=InMemoryNonceStore(), settings=settings)
    yield gate, ledger, executor
    await gate.tracker.drain(timeout=5)


async def only_effect(ledger, call_id):
    effects = await ledger.effects_for_call(call_id)
    assert len(effects) == 1
    return effects[0]


@pytest.mark.asyncio
async def test_high_confidence_call_executes(gate_env):
    gate, ledger, executor = gate_env
    resp = await gate.handle_call(gate_headers(), call_body())

    assert resp.http_status == 200
    assert resp.body["status"] == "executed"
    assert resp.body["call_id"] == "call-1"
    assert resp.body["confidence"] == pytest.approx(0.95)
    assert resp.body["result"]["summary"] == "Omega Gate round-trip OK"
    assert resp.body["result"]["artifacts"][0]["echo"] == {"q": 1}
    assert executor.calls == [("mcp.tick", False)]

    effect = await only_effect(ledger, "call-1")
    assert resp.body["audit_ref"] == effect["id"]
    assert effect["verdict"] == "allow"
    assert effect["status"] == "executed"
    assert effect["executed"] is True
    assert effect["completed_at"] is not None
    assert (ledger.proposed_writes, ledger.completion_writes) == (1, 1)


@pytest.mark.asyncio
async def test_unknown_tool_rejected_but_audited(gate_env):
    gate, ledger, executor = gate_env
    resp = await gate.handle_call(gate_headers(scope="omega:read omega:system"), call_body(tool="shell.exec"))

    assert resp.http_status == 403
    assert resp.body["status"] == "denied"
    assert resp.body["error"] == "unknown_tool"
    assert resp.body["confidence"] == 0
    assert executor.calls == []

    effect = await only_effect(ledger, "call-1")
    assert effect["tool"] == "shell.exec"
    assert effect["status"] == "denied"
    assert effect["executed"] is False
    assert resp.body["audit_ref"] == effect["id"]
    assert (ledger.proposed_writes, ledger.completion_writes) == (1, 1)


@pytest.mark.asyncio
async def test_replayed_nonce_rejected(gate_env):
    gate, ledger, executor = gate_env
    h = gate_headers(nonce="nonce-replay-0001")
    first = await gate.handle_call(h, call_body(call_id="first"))
    second = await gate.handle_call(dict(h), call_body(call_id="second"))

    assert first.status == "executed"
    assert second.http_status == 409
    assert second.body["error"] == "replayed_nonce"
    assert len(executor.calls) == 1
    assert (await only_effect(ledger, "second"))["status"] == "denied"


@pytest.mark.asyncio
async def test_insufficient_scope(gate_env):
    gate, ledger, executor = gate_env
    resp = await gate.handle_call(gate_headers(scope="omega:read"), call_body(tool="memory.add"))
    assert resp.http_status == 403
    assert resp.body["error"] == "insufficient_scope"
    assert executor.calls == []


@pytest.mark.asyncio
async def test_bad_credential(gate_env):
    gate, ledger, executor = gate_env
    resp = await gate.handle_call(gate_headers(key="nope"), call_body())
    assert resp.http_status == 401
    assert resp.body["error"] == "bad_credential"
    assert resp.body["result"]["artifacts"] == []


@pytest.mark.asyncio
async def test_missing_header_and_malformed_body(gate_env):
    gate, ledger, executor = gate_env
    h = gate_headers()
    del h["X-Omega-Timestamp"]
    resp = await gate.handle_call(h, call_body(call_id="no-ts"))
    assert resp.http_status == 400
    assert resp.body["error"] == "missing_header"
    assert resp.body["call_id"] == "no-ts"

    resp = await gate.handle_call(gate_headers(), None)
    assert resp.http_status == 400
    assert resp.body["error"] == "malformed_body"
    assert resp.body["call_id"] == "unknown"
    assert executor.calls == []


@pytest.mark.asyncio
async def test_propose_tool_creates_proposal(gate_env):
    gate, ledger, executor = gate_env
    resp = await gate.handle_call(
        gate_headers(), call_body(tool="plan.propose", intent="move the weekly review to friday"),
    )

    assert resp.http_status == 202
    assert resp.body["status"] == "proposed"
    assert resp.body["result"]["summary"] == "Plan proposal: move the weekly review to friday"
    assert resp.body["result"]["artifacts"][0]["proposal_type"] == "plan"
    assert executor.calls == [("plan.propose", True)]

    proposal = await ledger.get_proposal(resp.body["proposal_id"])
    assert proposal["status"] == "pending"
    assert proposal["effect_id"] == resp.body["audit_ref"]
    assert proposal["summary"] == resp.body["result"]["summary"]

    effect = await only_effect(ledger, "call-1")
    assert effect["verdict"] == "require_human"
    assert effect["status"] == "require_human"
    assert effect["executed"] is False


@pytest.mark.asyncio
async def test_middle_band_non_propose_tool_asks_for_confirmation(gate_env):
    gate, ledger, executor = gate_env
    resp = await gate.handle_call(gate_headers(), call_body(tool="memory.add", intent="remember", inputs={"text": "x"}))

    assert resp.http_status == 202
    assert resp.body["status"] == "proposed"
    assert "proposal_id" not in resp.body
    assert resp.body["result"]["summary"].startswith("Requires human confirmation:")
    assert executor.calls == []
    assert await ledger.list_proposals() == []
    assert (await only_effect(ledger, "call-1"))["status"] == "require_human"


@pytest.mark.asyncio
async def test_low_confidence_never_executes(gate_env):
    gate, ledger, executor = gate_env
    resp = await gate.handle_call(gate_headers(), call_body(inputs={"confidence": 0.1}))

    assert resp.http_status == 403
    assert resp.body["status"] == "denied"
    assert resp.body["error"] == "low_confidence"
    assert resp.body["confidence"] == pytest.approx(0.1)
    assert resp.body["result"]["summary"].startswith("Denied:")
    assert executor.calls == []
    effect = await only_effect(ledger, "call-1")
    assert effect["verdict"] == "deny"
    assert effect["status"] == "denied"


@pytest.mark.asyncio
async def test_executor_exception_completes_effect(gate_env):
    gate, ledger, executor = gate_env

    async def failing_write(request, *, dry_run=False):
        raise RuntimeError("memory backend unavailable")

    executor.bind("memory.add", failing_write)
    resp = await gate.handle_call(
        gate_headers(), call_body(tool="memory.add", intent="remember the dentist appointment", inputs={"text": "x"}),
    )

    assert resp.http_status == 500
    assert resp.body["status"] == "denied"
    assert resp.body["error"] == "internal"
    assert "memory backend unavailable" in resp.body["result"]["summary"]

    effect = await only_effect(ledger, "call-1")
    assert resp.body["audit_ref"] == effect["id"]
    assert effect["status"] == "denied"
    assert effect["executed"] is False
    assert effect["error"] == "memory backend unavailable"
    assert (ledger.proposed_writes, ledger.completion_writes) == (1, 1)


@pytest.mark.asyncio
@pytest.mark.parametrize("scope,body", [
    ("omega:read", call_body()),
    ("omega:read", call_body(inputs={"confidence": 0.2})),
    ("omega:propose", call_body(tool="plan.propose", intent="draft a new plan")),
    ("omega:write", call_body(tool="memory.add", intent="remember")),
    ("omega:read", call_body(tool="not.a.tool")),
    ("omega:read", call_body(tool="memory.add")),
])
async def test_one_preflight_and_one_completion_per_call(gate_env, scope, body):
    gate, ledger, executor = gate_env
    await gate.handle_call(gate_headers(scope=scope), body)
    assert (ledger.proposed_writes, ledger.completion_writes) == (1, 1)
    effect = await only_effect(ledger, "call-1")
    assert effect["status"] != "proposed"
    assert effect["completed_at"] is not None


@pytest.mark.asyncio
async def test_unbound_tool_reports_missing_executor(gate_env):
    gate, ledger, executor = gate_env
    resp = await gate.handle_call(gate_headers(), call_body(tool="state.signals", intent="list the newest signals"))
    assert resp.status == "executed"
    assert resp.body["result"]["summary"] == "No executor for tool: state.signals"


@pytest.mark.asyncio
async def test_tool_execution_is_logged_in_background(gate_env, db):
    gate, ledger, executor = gate_env
    await gate.handle_call(gate_headers(), call_body(call_id="logged"))
    await gate.tracker.drain(timeout=5)

    logs = await get_exec_logs(db, message="gate:tool_executed")
    assert len(logs) == 1
    assert logs[0]["trace_id"] == "logged"
    assert logs[0]["meta"]["tool"] == "mcp.tick"
    assert logs[0]["meta"]["status"] == "ok"
    assert [t.status for t in gate.tracker.tasks()] == ["succeeded"]


@pytest.mark.asyncio
async def test_proposal_decided_exactly_once(gate_env):
    gate, ledger, executor = gate_env
    resp = await gate.handle_call(gate_headers(), call_body(tool="action.propose", intent="email the landlord"))
    proposal_id = resp.body["proposal_id"]

    decided = await ledger.decide_proposal(proposal_id, True, "owner-1", reason="looks right")
    assert decided["status"] == "approved"
    assert decided["decided_by"] == "owner-1"
    assert decided["decided_at"] is not None

    with pytest.raises(ProposalStateError):
        await ledger.decide_proposal(proposal_id, False, "owner-1")
    with pytest.raises(ProposalNotFound):
        await ledger.decide_proposal("missing", True, "owner-1")

    assert [p["id"] for p in await ledger.list_proposals(status="approved")] == [proposal_id]
    assert await ledger.list_proposals(status="pending") == []


@pytest.mark.asyncio
async def test_completion_is_written_once(gate_env):
    gate, ledger, executor = gate_env
    effect_id = await ledger.record_proposed(
        call_id="manual", tool="mcp.tick", agent="a", scope="omega:read", intent="i",
        confidence=0.9, verdict="allow",
    )
    assert await ledger.complete(effect_id, "executed", executed=True) is True
    assert await ledger.complete(effect_id, "denied") is False
    assert (await ledger.get_effect(effect_id))["status"] == "executed"


def test_gate_lists_allowlist(settings):
    gate = OmegaGate(EffectLedger(None), settings=settings)
    assert gate.list_tools() == list_tools()


@pytest.mark.asyncio
async def test_dict_results_from_bound_executors(gate_env):
    gate, ledger, executor = gate_env

    async def signals(request, *, dry_run=False):
        return {"summary": "Retrieved 2 signals", "artifacts": [{"id": 1}, {"id": 2}]}

    executor.bind("state.signals", signals)
    resp = await gate.handle_call(gate_headers(), call_body(tool="state.signals", intent="list the newest signals"))
    assert resp.body["result"] == {"summary": "Retrieved 2 signals", "artifacts": [{"id": 1}, {"id": 2}]}
    direct = await executor.execute(validate_gate_request(call_body()))
    assert isinstance(direct, ToolResult)
    assert direct.summary == "Omega Gate round-trip OK"


@pytest.mark.asyncio
async def test_injected_nonce_store_is_used(db, settings):
    store = InMemoryNonceStore(max_entries=7)
    gate = OmegaGate(EffectLedger(db), nonce_store=store, settings=settings)
    assert gate._nonces is store


@pytest.mark.asyncio
async def test_full_nonce_store_fails_closed_without_forgetting(db, settings):
    ledger = CountingLedger(db)
    executor = SpyExecutor()
    gate = OmegaGate(ledger, executor=executor, nonce_store=InMemoryNonceStore(max_entries=2), settings=settings)

    replayed = gate_headers(nonce="nonce-replay-0001")
    assert (await gate.handle_call(replayed, call_body(call_id="first"))).status == "executed"
    assert (await gate.handle_call(gate_headers(), call_body(call_id="other"))).status == "executed"

    full = await gate.handle_call(gate_headers(), call_body(call_id="full"))
    assert full.http_status == 503
    assert full.body["error"] == "replay_store_unavailable"
    assert (await only_effect(ledger, "full"))["status"] == "denied"

    replay = await gate.handle_call(dict(replayed), call_body(call_id="replay"))
    assert replay.http_status == 409
    assert replay.body["error"] == "replayed_nonce"
    assert executor.calls == [("mcp.tick", False), ("mcp.tick", False)]
    await gate.tracker.drain(timeout=5)


class CrashingNonceStore(InMemoryNonceStore):
    async def check_and_add(self, nonce, ttl_seconds):
        raise RuntimeError("nonce table corrupted")


@pytest.mark.asyncio
async def test_unexpected_error_before_preflight_is_still_audited(db, settings):
    ledger = CountingLedger(db)
    executor = SpyExecutor()
    gate = OmegaGate(ledger, executor=executor, nonce_store=CrashingNonceStore(), settings=settings)

    resp = await gate.handle_call(gate_headers(), call_body(call_id="crash"))

    assert resp.http_status == 500
    assert resp.body["status"] == "denied"
    assert resp.body["error"] == "internal"
    assert executor.calls == []
    effect = await only_effect(ledger, "crash")
    assert resp.body["audit_ref"] == effect["id"]
    assert effect["status"] == "denied"
    assert effect["error"] == "internal"
    assert "nonce table corrupted" in effect["reason"]
    assert (ledger.proposed_writes, ledger.completion_writes) == (1, 1)


@pytest.mark.asyncio
async def test_misordered_thresholds_rejected_when_gate_is_built(db, settings):
    settings.GATE_DENY_THRESHOLD = 0.9
    with pytest.raises(ValueError):
        OmegaGate(EffectLedger(db), settings=settings)


class LostCompletionLedger(CountingLedger):
    """Fails the first successful-execution completion write."""

    def __init__(self, sessionmaker):
        super().__init__(sessionmaker)
        self.failed_once = False

    async def complete(self, effect_id, status, **kw):
        if status == "executed" and not self.failed_once:
            self.failed_once = True
            self.completion_writes += 1
            raise RuntimeError("database is locked")
        return await super().complete(effect_id, status, **kw)


@pytest.mark.asyncio
async def test_effect_that_ran_is_recorded_as_executed_when_completion_fails(db, settings):
    ledger = LostCompletionLedger(db)
    executor = SpyExecutor()
    gate = OmegaGate(ledger, executor=executor, nonce_store=InMemoryNonceStore(), settings=settings)

    resp = await gate.handle_call(gate_headers(), call_body())

    assert resp.http_status == 500
    assert resp.body["status"] == "executed"
    assert resp.body["error"] == "internal"
    assert executor.calls == [("mcp.tick", False)]
    effect = await only_effect(ledger, "call-1")
    assert effect["status"] == "executed"
    assert effect["executed"] is True
    assert effect["error"] == "database is locked"
    await gate.tracker.drain(timeout=5)
