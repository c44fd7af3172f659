"""
Omega gate: the single boundary for externally-effecting tool calls.

Per call:
    headers -> replay guard -> body -> scope -> confidence
    -> pre-flight effect write -> deny | require_human | allow
    -> effect completion

Every call, including rejected ones, leaves exactly one effect row that is
written before any tool runs and completed exactly once. Every call returns a
structured body; nothing escapes ``handle_call``.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from action_service import metrics
from action_service.background import TaskTracker
from action_service.config import get_settings
from action_service.exec_log import exec_log
from action_service.storage import EffectStatus
from utils.redis_wrapper import RedisOpFailed, RedisUnavailable

from .allowlist import list_tools
from .confidence import ConfidenceResult, Verdict, evaluate_confidence, validate_thresholds
from .executor import ToolExecutor, ToolResult
from .ledger import EffectLedger
from .replay import InMemoryNonceStore, NonceStore, NonceStoreFull
from .validation import (
    HEADER_AGENT,
    HEADER_SCOPE,
    GateError,
    GateHeaders,
    GateRequest,
    authorize_scope,
    parse_gate_headers,
    validate_gate_request,
)

logger = logging.getLogger(__name__)

STATUS_EXECUTED = "executed"
STATUS_PROPOSED = "proposed"
STATUS_DENIED = "denied"


@dataclass
class GateResponse:
    http_status: int
    body: Dict[str, Any]

    @property
    def status(self) -> str:
        return self.body["status"]


def _body(call_id, status, confidence, summary, artifacts=None, audit_ref=None, **extra) -> Dict[str, Any]:
    body = {
        "call_id": call_id,
        "status": status,
        "confidence": confidence,
        "result": {"summary": summary, "artifacts": list(artifacts or [])},
        "audit_ref": audit_ref,
    }
    body.update(extra)
    return body


class OmegaGate:
    def __init__(
        self,
        ledger: EffectLedger,
        executor: Optional[ToolExecutor] = None,
        nonce_store: Optional[NonceStore] = None,
        settings=None,
        tracker: Optional[TaskTracker] = None,
        clock=time.time,
    ):
        self._settings = settings or get_settings()
        validate_thresholds(self._settings.GATE_ALLOW_THRESHOLD, self._settings.GATE_DENY_THRESHOLD)
        self._ledger = ledger
        self._executor = executor if executor is not None else ToolExecutor()
        if nonce_store is None:
            nonce_store = InMemoryNonceStore(max_entries=self._settings.NONCE_MAX_ENTRIES)
        self._nonces = nonce_store
        self._tracker = tracker or TaskTracker()
        self._clock = clock

    @property
    def tracker(self) -> TaskTracker:
        return self._tracker

    def list_tools(self) -> List[Dict[str, Any]]:
        return list_tools()

    async def close(self):
        await self._nonces.close()

    async def handle_call(self, headers: Mapping[str, Optional[str]], body: Any) -> GateResponse:
        call_id = body.get("call_id") if isinstance(body, dict) and isinstance(body.get("call_id"), str) else "unknown"
        effect_id = None
        tool_ran = False
        try:
            try:
                gate_headers = await self._check_headers(headers)
                request = validate_gate_request(body)
                call_id = request.call_id
                entry = authorize_scope(request.tool, gate_headers.scopes)
            except GateError as e:
                return await self._reject(e, headers, body, call_id)

            logger.info("gate call received call_id=%s tool=%s agent=%s", call_id, request.tool, gate_headers.agent)
            confidence = evaluate_confidence(
                request,
                entry,
                allow_threshold=self._settings.GATE_ALLOW_THRESHOLD,
                deny_threshold=self._settings.GATE_DENY_THRESHOLD,
            )
            metrics.gate_confidence.observe(confidence.score)

            effect_id = await self._ledger.record_proposed(
                call_id=call_id,
                tool=request.tool,
                agent=gate_headers.agent,
                scope=gate_headers.scope,
                intent=request.intent,
                confidence=confidence.score,
                verdict=confidence.verdict.value,
                reason=confidence.reason,
            )

            if confidence.verdict == Verdict.DENY:
                await self._ledger.complete(effect_id, EffectStatus.DENIED)
                logger.info("gate denied call_id=%s tool=%s: %s", call_id, request.tool, confidence.reason)
                return self._respond(403, _body(
                    call_id, STATUS_DENIED, confidence.score, "Denied: %s" % confidence.reason,
                    audit_ref=effect_id, error="low_confidence",
                ))

            if confidence.verdict == Verdict.REQUIRE_HUMAN:
                return await self._require_human(request, gate_headers, entry.is_propose, confidence, effect_id)

            result = await self._run_tool(request, gate_headers, effect_id, dry_run=False)
            tool_ran = True
            await self._ledger.complete(effect_id, EffectStatus.EXECUTED, executed=True)
            logger.info("gate executed call_id=%s tool=%s", call_id, request.tool)
            return self._respond(200, _body(
                call_id, STATUS_EXECUTED, confidence.score, result.summary, result.artifacts, audit_ref=effect_id,
            ))
        except Exception as e:
            logger.exception("gate internal error call_id=%s", call_id)
            error = str(e) or type(e).__name__
            try:
                if effect_id is None:
                    effect_id = await self._record_rejection(headers, body, call_id, "internal", error)
                elif tool_ran:
                    # the effect happened; the ledger must say so
                    await self._ledger.complete(effect_id, EffectStatus.EXECUTED, executed=True, error=error)
                else:
                    await self._ledger.complete(effect_id, EffectStatus.DENIED, error=error)
            except Exception:
                logger.exception("could not audit internal error for call_id=%s", call_id)
            return self._respond(500, _body(
                call_id, STATUS_EXECUTED if tool_ran else STATUS_DENIED, 0, "Internal gate error: %s" % error,
                audit_ref=effect_id, error="internal",
            ))

    async def _check_headers(self, headers) -> GateHeaders:
        window = self._settings.GATE_TIMESTAMP_WINDOW_SECONDS
        gate_headers = parse_gate_headers(
            headers, self._settings.GATE_API_KEY, window_seconds=window, now=self._clock(),
        )
        # a timestamp is valid for +/- window, so the nonce must outlive both sides
        try:
            fresh = await self._nonces.check_and_add(gate_headers.nonce, ttl_seconds=2 * window)
        except (RedisUnavailable, RedisOpFailed, NonceStoreFull) as e:
            raise GateError(503, "replay_store_unavailable", "nonce store unavailable: %s" % e)
        if not fresh:
            raise GateError(409, "replayed_nonce", "nonce already used")
        return gate_headers

    async def _require_human(self, request: GateRequest, gate_headers: GateHeaders, is_propose: bool,
                             confidence: ConfidenceResult, effect_id: str) -> GateResponse:
        if is_propose:
            result = await self._run_tool(request, gate_headers, effect_id, dry_run=True)
            proposal_id = await self._ledger.persist_proposal(
                effect_id,
                call_id=request.call_id,
                tool=request.tool,
                agent=gate_headers.agent,
                intent=request.intent,
                summary=result.summary,
                artifacts=result.artifacts,
            )
            await self._ledger.complete(effect_id, EffectStatus.REQUIRE_HUMAN)
            logger.info("gate proposal created call_id=%s proposal_id=%s", request.call_id, proposal_id)
            return self._respond(202, _body(
                request.call_id, STATUS_PROPOSED, confidence.score, result.summary, result.artifacts,
                audit_ref=effect_id, proposal_id=proposal_id,
            ))
        await self._ledger.complete(effect_id, EffectStatus.REQUIRE_HUMAN)
        return self._respond(202, _body(
            request.call_id, STATUS_PROPOSED, confidence.score,
            "Requires human confirmation: %s" % confidence.reason, audit_ref=effect_id,
        ))

    async def _run_tool(self, request: GateRequest, gate_headers: GateHeaders, effect_id: str, *, dry_run: bool) -> ToolResult:
        started = time.monotonic()
        status = "error"
        try:
            result = await self._executor.execute(request, dry_run=dry_run)
            status = "ok"
            return result
        finally:
            self._tracker.submit(
                "gate:tool_executed",
                self._log_tool_execution(request, gate_headers.agent, effect_id, status, dry_run,
                                         int((time.monotonic() - started) * 1000)),
            )

    async def _log_tool_execution(self, request: GateRequest, agent: str, effect_id: str, status: str,
                                  dry_run: bool, duration_ms: int):
        async with self._ledger.sessionmaker() as session:
            await exec_log(
                session,
                agent,
                "gate:tool_executed",
                trace_id=request.call_id,
                level="info" if status == "ok" else "error",
                meta={
                    "tool": request.tool,
                    "effect_id": effect_id,
                    "status": status,
                    "dry_run": dry_run,
                    "duration_ms": duration_ms,
                },
            )
            await session.commit()

    async def _reject(self, err: GateError, headers, body, call_id: str) -> GateResponse:
        metrics.gate_rejections_total.labels(code=err.code).inc()
        logger.warning("gate rejection call_id=%s code=%s: %s", call_id, err.code, err.message)
        effect_id = await self._record_rejection(headers, body, call_id, err.code, err.message)
        return self._respond(err.http_status, _body(
            call_id, STATUS_DENIED, 0, err.message, audit_ref=effect_id, error=err.code,
        ))

    async def _record_rejection(self, headers, body, call_id: str, code: str, message: str) -> str:
        lowered = {str(k).lower(): v for k, v in (headers or {}).items()}
        raw = body if isinstance(body, dict) else {}
        tool = raw.get("tool") if isinstance(raw.get("tool"), str) and raw.get("tool") else "unknown"
        intent = raw.get("intent") if isinstance(raw.get("intent"), str) else None
        effect_id = await self._ledger.record_proposed(
            call_id=call_id,
            tool=tool,
            agent=lowered.get(HEADER_AGENT),
            scope=lowered.get(HEADER_SCOPE),
            intent=intent,
            confidence=0.0,
            verdict=Verdict.DENY.value,
            reason="%s: %s" % (code, message),
        )
        await self._ledger.complete(effect_id, EffectStatus.DENIED, error=code)
        return effect_id

    def _respond(self, http_status: int, body: Dict[str, Any]) -> GateResponse:
        metrics.gate_calls_total.labels(status=body["status"]).inc()
        return GateResponse(http_status=http_status, body=body)
