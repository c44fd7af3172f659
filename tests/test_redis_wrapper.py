import sys, os
import time

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from omega_gate.gate import OmegaGate
from omega_gate.ledger import EffectLedger
from omega_gate.replay import RedisNonceStore
from utils.redis_wrapper import RedisOpFailed, RedisUnavailable, redis_op


class Flaky:
    def __init__(self, fail_first=1):
        self._fail_first = fail_first

    async def incr(self, key):
        if self._fail_first > 0:
            self._fail_first -= 1
            raise Exception('boom')
        return 1


class Owner:
    """Connection owner in the shape redis_op expects."""

    def __init__(self, client=None, reconnect_to=None):
        self._redis = client
        self._reconnect_to = reconnect_to
        self.ensure_calls = 0

    async def _ensure_redis(self):
        self.ensure_calls += 1
        if self._reconnect_to is not None:
            self._redis = self._reconnect_to


@pytest.fixture
def no_jitter(settings):
    settings.REDIS_RECONNECT_JITTER_MS = 0
    return settings


@pytest.mark.asyncio
async def test_redis_op_retries(no_jitter):
    client = Flaky(fail_first=1)
    owner = Owner(client)
    res = await redis_op(owner, lambda r, k: r.incr(k), 'k')
    assert res == {"ok": True, "value": 1}
    assert owner.ensure_calls == 1


@pytest.mark.asyncio
async def test_redis_op_connects_lazily(no_jitter):
    owner = Owner(reconnect_to=Flaky(fail_first=0))
    res = await redis_op(owner, lambda r, k: r.incr(k), 'k')
    assert res['value'] == 1
    assert owner.ensure_calls == 1


@pytest.mark.asyncio
async def test_redis_op_unavailable(no_jitter):
    with pytest.raises(RedisUnavailable):
        await redis_op(Owner(), lambda r: r.incr('k'))


@pytest.mark.asyncio
async def test_redis_op_gives_up_after_retries(no_jitter):
    owner = Owner(Flaky(fail_first=5))
    with pytest.raises(RedisOpFailed):
        await redis_op(owner, lambda r, k: r.incr(k), 'k', retries=2)
    assert owner._redis._fail_first == 2


@pytest.mark.asyncio
async def test_redis_op_respects_open_circuit(no_jitter):
    owner = Owner(Flaky(fail_first=0))
    owner._redis_circuit_open_until = time.time() + 60
    with pytest.raises(RedisUnavailable):
        await redis_op(owner, lambda r, k: r.incr(k), 'k')


class DeadNonceStore(RedisNonceStore):
    async def _ensure_redis(self):
        self._redis = None


@pytest.mark.asyncio
async def test_gate_fails_closed_without_nonce_store(db, no_jitter):
    ledger = EffectLedger(db)
    gate = OmegaGate(ledger, nonce_store=DeadNonceStore("redis://127.0.0.1:1"), settings=no_jitter)
    headers = {
        "X-Omega-Key": "test-gate-key",
        "X-Omega-Agent": "planner-agent",
        "X-Omega-Scope": "omega:read",
        "X-Omega-Nonce": "nonce-redis-down",
        "X-Omega-Timestamp": str(int(time.time())),
    }
    resp = await gate.handle_call(headers, {
        "call_id": "c-redis", "tool": "mcp.tick", "intent": "check the gate round trip", "inputs": {"q": 1},
    })
    assert resp.http_status == 503
    assert resp.body['error'] == 'replay_store_unavailable'
    [effect] = await ledger.effects_for_call("c-redis")
    assert effect['status'] == 'denied'
    assert effect['executed'] is False
