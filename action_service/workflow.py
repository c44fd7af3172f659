"""
Workflow state machine.

A workflow run is an ordered plan of steps, each backed by one execution on the
queue. ``WorkflowEngine.tick`` makes at most one step of progress per call and
is safe to call repeatedly and concurrently:

- the queued -> running transition is a CAS on status
- each step's execution carries the idempotency key ``wf_{run_id}_step_{index}``
- advancing is a CAS on ``current_step_index``

Advancing past a succeeded step and starting the next one happen on separate
ticks.

Step events are written against ``parent_run_id`` so a workflow shares an event
stream with whatever started it.
"""

import datetime
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.future import select

from . import metrics
from .config import get_settings
from .execution_queue import enqueue_execution
from .storage import (
    Execution,
    ExecutionStatus,
    RunEvent,
    WorkflowRun,
    WorkflowStatus,
    new_id,
    row_to_dict,
    utcnow,
)

logger = logging.getLogger(__name__)

RISK_CLASSES = ("low", "medium", "high")
MOBILE_PLATFORMS = ("ios", "android")

STEP_STARTED = "WORKFLOW_STEP_STARTED"
STEP_COMPLETED = "WORKFLOW_STEP_COMPLETED"
WORKFLOW_SUCCEEDED = "WORKFLOW_SUCCEEDED"
WORKFLOW_FAILED = "WORKFLOW_FAILED"
WORKFLOW_PAUSED_MOBILE = "WORKFLOW_PAUSED_MOBILE"
WORKFLOW_RESUMED = "WORKFLOW_RESUMED"


class WorkflowStateError(Exception):
    pass


@dataclass(frozen=True)
class Step:
    step_id: str
    executor_kind: str
    risk: str = "low"
    mobile_allowed: bool = True
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Step":
        return cls(
            step_id=str(data["step_id"]),
            executor_kind=str(data["executor_kind"]),
            risk=data.get("risk", "low"),
            mobile_allowed=bool(data.get("mobile_allowed", True)),
            payload=dict(data.get("payload") or {}),
        )


def step_idempotency_key(workflow_run_id: str, index: int) -> str:
    return "wf_%s_step_%d" % (workflow_run_id, index)


def validate_plan(plan: List[Any]) -> List[Step]:
    if not plan:
        raise ValueError("workflow plan must contain at least one step")
    steps = []
    seen = set()
    for raw in plan:
        try:
            step = raw if isinstance(raw, Step) else Step.from_dict(raw)
        except (KeyError, TypeError) as e:
            raise ValueError("invalid step %r: %s" % (raw, e))
        if not step.step_id or not step.executor_kind:
            raise ValueError("step_id and executor_kind are required")
        if step.step_id in seen:
            raise ValueError("duplicate step_id: %s" % step.step_id)
        if step.risk not in RISK_CLASSES:
            raise ValueError("unknown risk class %r for step %s" % (step.risk, step.step_id))
        seen.add(step.step_id)
        steps.append(step)
    return steps


async def create_workflow_run(
    sessionmaker,
    owner: str,
    plan: List[Any],
    *,
    parent_run_id: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    steps = validate_plan(plan)
    run_id = new_id()
    row = WorkflowRun(
        id=run_id,
        parent_run_id=parent_run_id or run_id,
        owner=owner,
        status=WorkflowStatus.QUEUED,
        plan=[asdict(s) for s in steps],
        current_step_index=0,
        context=dict(context or {}),
    )
    async with sessionmaker() as session:
        session.add(row)
        await session.commit()
        return row_to_dict(row)


def _blocked_on_mobile(step: Step, context: Dict[str, Any]) -> bool:
    platform = str((context or {}).get("client_platform") or "").lower()
    return platform in MOBILE_PLATFORMS and not step.mobile_allowed


@dataclass
class TickResult:
    action: str
    workflow_run_id: str
    status: Optional[str] = None
    step_index: Optional[int] = None
    execution_id: Optional[str] = None

    def to_dict(self):
        return asdict(self)


class WorkflowEngine:
    def __init__(self, sessionmaker, clock: Callable[[], datetime.datetime] = utcnow, settings=None):
        self._sessionmaker = sessionmaker
        self._clock = clock
        self._settings = settings or get_settings()

    def _event(self, session, run: WorkflowRun, event_type: str, payload: Dict[str, Any]):
        body = {"workflow_run_id": run.id}
        body.update(payload)
        session.add(RunEvent(run_id=run.parent_run_id, owner=run.owner, event_type=event_type, payload=body, created_at=self._clock()))

    def _result(self, action: str, run: WorkflowRun, **kw) -> TickResult:
        metrics.workflow_ticks_total.labels(action=action).inc()
        return TickResult(action=action, workflow_run_id=run.id, **kw)

    async def tick(self, workflow_run_id: str) -> TickResult:
        async with self._sessionmaker() as session:
            run = await session.get(WorkflowRun, workflow_run_id)
            if run is None:
                metrics.workflow_ticks_total.labels(action="not_found").inc()
                return TickResult(action="not_found", workflow_run_id=workflow_run_id)
            if run.status not in WorkflowStatus.RUNNABLE:
                return self._result("noop", run, status=run.status, step_index=run.current_step_index)

            if run.status == WorkflowStatus.QUEUED:
                res = await session.execute(
                    update(WorkflowRun)
                    .where(WorkflowRun.id == run.id, WorkflowRun.status == WorkflowStatus.QUEUED)
                    .values(status=WorkflowStatus.RUNNING, updated_at=self._clock())
                )
                await session.commit()
                if res.rowcount != 1:
                    return self._result("noop", run, status=run.status, step_index=run.current_step_index)
                await session.refresh(run)
                return await self._start_step(session, run, 0)

            plan = [Step.from_dict(s) for s in run.plan]
            index = run.current_step_index
            if index >= len(plan):
                # index already past the plan; only the status write was lost
                await self._finish(session, run, WorkflowStatus.SUCCEEDED)
                return self._result("succeeded", run, status=WorkflowStatus.SUCCEEDED, step_index=index)

            result = await session.execute(
                select(Execution).where(Execution.idempotency_key == step_idempotency_key(run.id, index))
            )
            child = result.scalars().first()
            if child is None:
                return await self._start_step(session, run, index)
            if child.status == ExecutionStatus.SUCCEEDED:
                return await self._advance(session, run, plan, index, child)
            if child.status == ExecutionStatus.FAILED:
                return await self._fail(session, run, plan[index], index, child)
            return self._result("waiting", run, status=run.status, step_index=index, execution_id=child.id)

    async def _start_step(self, session, run: WorkflowRun, index: int) -> TickResult:
        step = Step.from_dict(run.plan[index])
        if _blocked_on_mobile(step, run.context):
            res = await session.execute(
                update(WorkflowRun)
                .where(WorkflowRun.id == run.id, WorkflowRun.status == WorkflowStatus.RUNNING)
                .values(
                    status=WorkflowStatus.PAUSED,
                    error={"code": "MOBILE_SUSPENDED", "step_id": step.step_id,
                           "client_platform": run.context.get("client_platform")},
                    updated_at=self._clock(),
                )
            )
            if res.rowcount != 1:
                await session.rollback()
                return self._result("noop", run, status=run.status, step_index=index)
            self._event(session, run, WORKFLOW_PAUSED_MOBILE, {"step_id": step.step_id, "step_index": index})
            await session.commit()
            logger.info("workflow %s paused at step %s for mobile client", run.id, step.step_id)
            return self._result("paused", run, status=WorkflowStatus.PAUSED, step_index=index)

        payload = dict(step.payload)
        payload.update(workflow_run_id=run.id, step_id=step.step_id, step_index=index)
        execution, created = await enqueue_execution(
            self._sessionmaker,
            run.owner,
            step.executor_kind,
            payload,
            idempotency_key=step_idempotency_key(run.id, index),
        )
        if not created:
            return self._result("waiting", run, status=run.status, step_index=index, execution_id=execution["id"])
        self._event(session, run, STEP_STARTED, {
            "step_id": step.step_id,
            "step_index": index,
            "execution_id": execution["id"],
            "risk": step.risk,
        })
        await session.commit()
        return self._result("started", run, status=WorkflowStatus.RUNNING, step_index=index, execution_id=execution["id"])

    async def _advance(self, session, run: WorkflowRun, plan: List[Step], index: int, child: Execution) -> TickResult:
        new_index = index + 1
        done = new_index == len(plan)
        values = {"current_step_index": new_index, "updated_at": self._clock()}
        if done:
            values["status"] = WorkflowStatus.SUCCEEDED
        res = await session.execute(
            update(WorkflowRun)
            .where(
                WorkflowRun.id == run.id,
                WorkflowRun.status == WorkflowStatus.RUNNING,
                WorkflowRun.current_step_index == index,
            )
            .values(**values)
        )
        if res.rowcount != 1:
            await session.rollback()
            return self._result("noop", run, status=run.status, step_index=index)
        self._event(session, run, STEP_COMPLETED, {
            "step_id": plan[index].step_id,
            "step_index": index,
            "execution_id": child.id,
        })
        if done:
            self._event(session, run, WORKFLOW_SUCCEEDED, {"steps": len(plan)})
        await session.commit()
        if done:
            return self._result("succeeded", run, status=WorkflowStatus.SUCCEEDED, step_index=new_index)
        return self._result("advanced", run, status=WorkflowStatus.RUNNING, step_index=new_index)

    async def _fail(self, session, run: WorkflowRun, step: Step, index: int, child: Execution) -> TickResult:
        res = await session.execute(
            update(WorkflowRun)
            .where(
                WorkflowRun.id == run.id,
                WorkflowRun.status == WorkflowStatus.RUNNING,
                WorkflowRun.current_step_index == index,
            )
            .values(
                status=WorkflowStatus.FAILED,
                error={"code": "STEP_FAILED", "step_id": step.step_id,
                       "execution_id": child.id, "message": child.last_error},
                updated_at=self._clock(),
            )
        )
        if res.rowcount != 1:
            await session.rollback()
            return self._result("noop", run, status=run.status, step_index=index)
        self._event(session, run, WORKFLOW_FAILED, {
            "step_id": step.step_id,
            "step_index": index,
            "execution_id": child.id,
            "error": child.last_error,
        })
        await session.commit()
        logger.warning("workflow %s failed at step %s: %s", run.id, step.step_id, child.last_error)
        return self._result("failed", run, status=WorkflowStatus.FAILED, step_index=index, execution_id=child.id)

    async def _finish(self, session, run: WorkflowRun, status: str):
        await session.execute(
            update(WorkflowRun)
            .where(WorkflowRun.id == run.id, WorkflowRun.status == WorkflowStatus.RUNNING)
            .values(status=status, updated_at=self._clock())
        )
        await session.commit()

    async def tick_next(self) -> Optional[TickResult]:
        """Tick runnable workflows oldest first until one makes progress.

        Candidates are fetched a page at a time; runs already ticked in this call
        are excluded from later pages so idle runs cannot hide newer ones.
        """
        visited: List[str] = []
        last = None
        while True:
            async with self._sessionmaker() as session:
                query = select(WorkflowRun.id).where(WorkflowRun.status.in_(WorkflowStatus.RUNNABLE))
                if visited:
                    query = query.where(WorkflowRun.id.notin_(visited))
                result = await session.execute(
                    query.order_by(WorkflowRun.updated_at.asc()).limit(self._settings.WORKER_CANDIDATE_LIMIT)
                )
                candidate_ids = list(result.scalars().all())
            if not candidate_ids:
                return last
            for run_id in candidate_ids:
                visited.append(run_id)
                last = await self.tick(run_id)
                if last.action not in ("noop", "waiting"):
                    return last

    async def resume_workflow(self, workflow_run_id: str, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Move a paused workflow back to running; the next tick retries the step."""
        async with self._sessionmaker() as session:
            run = await session.get(WorkflowRun, workflow_run_id)
            if run is None:
                raise WorkflowStateError("workflow run not found: %s" % workflow_run_id)
            values = {"status": WorkflowStatus.RUNNING, "error": None, "updated_at": self._clock()}
            if context is not None:
                values["context"] = dict(context)
            res = await session.execute(
                update(WorkflowRun)
                .where(WorkflowRun.id == workflow_run_id, WorkflowRun.status == WorkflowStatus.PAUSED)
                .values(**values)
            )
            if res.rowcount != 1:
                await session.rollback()
                raise WorkflowStateError("workflow %s is %s, not paused" % (workflow_run_id, run.status))
            self._event(session, run, WORKFLOW_RESUMED, {"step_index": run.current_step_index})
            await session.commit()
            await session.refresh(run)
            return row_to_dict(run)
