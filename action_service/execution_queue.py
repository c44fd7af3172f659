"""
Execution queue and worker.

Executions are claimed with a compare-and-swap on ``status`` so that any number
of workers (or overlapping trigger requests) can poll the same table without
locks. A failed attempt is rescheduled by writing ``next_retry_at``; nothing
sleeps waiting for the retry, the next poll that sees the row due runs it.

Lifecycle:
    queued -> claimed -> running -> succeeded
                                 -> queued (retry scheduled, attempts < max)
                                 -> failed (attempts exhausted)
"""

import datetime
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.future import select

from . import metrics
from .config import get_settings
from .exec_log import exec_log, link_artifact
from .handlers import HandlerRegistry, HandlerResult
from .storage import Execution, ExecutionRun, ExecutionStatus, row_to_dict, utcnow

logger = logging.getLogger(__name__)


def compute_backoff(base_seconds: float, attempts: int) -> float:
    """Delay before retry number ``attempts``: base, 2*base, 4*base, ..."""
    return float(base_seconds) * (2 ** (max(attempts, 1) - 1))


async def enqueue_execution(
    sessionmaker,
    owner: str,
    kind: str,
    payload: Optional[Dict[str, Any]] = None,
    *,
    priority: int = 0,
    run_at: Optional[datetime.datetime] = None,
    max_attempts: Optional[int] = None,
    idempotency_key: Optional[str] = None,
) -> Tuple[Dict[str, Any], bool]:
    """Insert a queued execution.

    Returns ``(execution, created)``. With an ``idempotency_key`` that already
    exists the existing row is returned and ``created`` is False.
    """
    cfg = get_settings()
    if max_attempts is None:
        max_attempts = cfg.DEFAULT_MAX_ATTEMPTS
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    row = Execution(
        owner=owner,
        kind=kind,
        payload=dict(payload or {}),
        status=ExecutionStatus.QUEUED,
        priority=priority,
        run_at=run_at or utcnow(),
        max_attempts=max_attempts,
        idempotency_key=idempotency_key,
    )
    async with sessionmaker() as session:
        session.add(row)
        try:
            await session.commit()
            return row_to_dict(row), True
        except IntegrityError:
            await session.rollback()
            if not idempotency_key:
                raise
    async with sessionmaker() as session:
        result = await session.execute(select(Execution).where(Execution.idempotency_key == idempotency_key))
        existing = result.scalars().first()
        if existing is None:
            raise RuntimeError("idempotency key conflict without a matching execution: %s" % idempotency_key)
        return row_to_dict(existing), False


@dataclass(frozen=True)
class ClaimedExecution:
    execution_id: str
    owner: str
    kind: str
    payload: Dict[str, Any]
    attempt: int
    max_attempts: int
    execution_run_id: str
    trace_id: str


@dataclass
class WorkerResult:
    ok: bool
    ran: bool
    execution_id: Optional[str] = None
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if not self.ok:
            return {"ok": False, "ran": self.ran, "execution_id": self.execution_id, "error": self.error}
        return {"ok": True, "ran": self.ran, "execution_id": self.execution_id, "output": self.output}


class ExecutionWorker:
    """Claims one due execution per call and runs its handler."""

    def __init__(
        self,
        sessionmaker,
        handlers: HandlerRegistry,
        clock: Callable[[], datetime.datetime] = utcnow,
        settings=None,
    ):
        self._sessionmaker = sessionmaker
        self._handlers = handlers
        self._clock = clock
        self._settings = settings or get_settings()

    async def claim_next(self, owner: Optional[str] = None) -> Optional[ClaimedExecution]:
        """Claim the highest-priority due execution.

        A lost race returns None; the next candidate is left for the next poll.
        """
        now = self._clock()
        async with self._sessionmaker() as session:
            query = select(Execution).where(
                Execution.status == ExecutionStatus.QUEUED,
                Execution.run_at <= now,
                or_(Execution.next_retry_at.is_(None), Execution.next_retry_at <= now),
                Execution.attempts < Execution.max_attempts,
            )
            if owner:
                query = query.where(Execution.owner == owner)
            query = query.order_by(Execution.priority.desc(), Execution.run_at.asc()).limit(
                self._settings.WORKER_CANDIDATE_LIMIT
            )
            candidates = (await session.execute(query)).scalars().all()
            if not candidates:
                return None
            top = candidates[0]
            execution_id, exec_owner = top.id, top.owner

            res = await session.execute(
                update(Execution)
                .where(Execution.id == execution_id, Execution.status == ExecutionStatus.QUEUED)
                .values(status=ExecutionStatus.CLAIMED, updated_at=now)
            )
            if res.rowcount != 1:
                await session.rollback()
                metrics.execution_claim_races_total.inc()
                await exec_log(session, exec_owner, "worker:claim_lost", execution_id=execution_id, level="debug")
                await session.commit()
                return None
            # claimed -> running, counted as one attempt; both transitions commit together
            await session.execute(
                update(Execution)
                .where(Execution.id == execution_id, Execution.status == ExecutionStatus.CLAIMED)
                .values(status=ExecutionStatus.RUNNING, attempts=Execution.attempts + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            execution = await session.get(Execution, execution_id, populate_existing=True)
            trace_id = str(uuid.uuid4())
            run = ExecutionRun(
                execution_id=execution_id,
                owner=execution.owner,
                attempt=execution.attempts,
                status=ExecutionStatus.RUNNING,
                trace_id=trace_id,
                started_at=now,
            )
            session.add(run)
            await session.flush()
            link_artifact(
                session, execution.owner, "execution", execution_id, "spawned", "execution_run",
                to_id=run.id, trace_id=trace_id, execution_id=execution_id, execution_run_id=run.id,
            )
            link_artifact(
                session, execution.owner, "execution_run", run.id, "has_trace", "trace",
                to_key=trace_id, trace_id=trace_id, execution_id=execution_id, execution_run_id=run.id,
            )
            run_meta = {"run_id": run.id, "attempt": execution.attempts}
            await exec_log(
                session, execution.owner, "worker:claimed", execution_id=execution_id, trace_id=trace_id, meta=run_meta,
            )
            await session.flush()
            await exec_log(
                session,
                execution.owner,
                "worker:run_started",
                execution_id=execution_id,
                trace_id=trace_id,
                meta=dict(run_meta, kind=execution.kind),
            )
            await session.commit()
            metrics.executions_claimed_total.inc()
            return ClaimedExecution(
                execution_id=execution_id,
                owner=execution.owner,
                kind=execution.kind,
                payload=dict(execution.payload or {}),
                attempt=execution.attempts,
                max_attempts=execution.max_attempts,
                execution_run_id=run.id,
                trace_id=trace_id,
            )

    async def run_claimed(self, claimed: ClaimedExecution) -> WorkerResult:
        payload = dict(claimed.payload)
        payload.update(
            owner=claimed.owner,
            trace_id=claimed.trace_id,
            execution_run_id=claimed.execution_run_id,
        )
        started = time.monotonic()
        result: HandlerResult = await self._handlers.run(claimed.kind, claimed.execution_id, payload)
        metrics.execution_duration_seconds.labels(kind=claimed.kind).observe(time.monotonic() - started)
        if result.ok:
            await self._record_success(claimed, result)
            return WorkerResult(ok=True, ran=True, execution_id=claimed.execution_id, output=result.output)
        await self._record_failure(claimed, result.error or "unknown error")
        return WorkerResult(ok=False, ran=True, execution_id=claimed.execution_id, error=result.error)

    async def run_once(self, owner: Optional[str] = None) -> WorkerResult:
        claimed = await self.claim_next(owner)
        if claimed is None:
            return WorkerResult(ok=True, ran=False)
        return await self.run_claimed(claimed)

    async def _record_success(self, claimed: ClaimedExecution, result: HandlerResult):
        now = self._clock()
        async with self._sessionmaker() as session:
            await session.execute(
                update(Execution)
                .where(Execution.id == claimed.execution_id, Execution.status == ExecutionStatus.RUNNING)
                .values(status=ExecutionStatus.SUCCEEDED, last_error=None, next_retry_at=None, updated_at=now)
            )
            await session.execute(
                update(ExecutionRun)
                .where(ExecutionRun.id == claimed.execution_run_id, ExecutionRun.status == ExecutionStatus.RUNNING)
                .values(status=ExecutionStatus.SUCCEEDED, output=result.output, finished_at=now)
            )
            await exec_log(
                session,
                claimed.owner,
                "worker:succeeded",
                execution_id=claimed.execution_id,
                trace_id=claimed.trace_id,
                meta={"run_id": claimed.execution_run_id, "attempt": claimed.attempt},
            )
            await session.commit()
        metrics.executions_finished_total.labels(status=ExecutionStatus.SUCCEEDED).inc()

    async def _record_failure(self, claimed: ClaimedExecution, error: str):
        now = self._clock()
        next_retry_at = None
        if claimed.attempt < claimed.max_attempts:
            status = ExecutionStatus.QUEUED
            delay = compute_backoff(self._settings.RETRY_BASE_DELAY_SECONDS, claimed.attempt)
            next_retry_at = now + datetime.timedelta(seconds=delay)
        else:
            status = ExecutionStatus.FAILED
        async with self._sessionmaker() as session:
            await session.execute(
                update(Execution)
                .where(Execution.id == claimed.execution_id, Execution.status == ExecutionStatus.RUNNING)
                .values(status=status, next_retry_at=next_retry_at, last_error=error, updated_at=now)
            )
            await session.execute(
                update(ExecutionRun)
                .where(ExecutionRun.id == claimed.execution_run_id, ExecutionRun.status == ExecutionStatus.RUNNING)
                .values(status=ExecutionStatus.FAILED, error=error, finished_at=now)
            )
            await exec_log(
                session,
                claimed.owner,
                "worker:failed",
                execution_id=claimed.execution_id,
                trace_id=claimed.trace_id,
                level="error",
                meta={
                    "run_id": claimed.execution_run_id,
                    "attempt": claimed.attempt,
                    "error": error,
                    "next_retry_at": next_retry_at.isoformat() if next_retry_at else None,
                },
            )
            await session.commit()
        metrics.executions_finished_total.labels(status=status).inc()
