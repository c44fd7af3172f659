import asyncio
import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from action_service.background import FAILED, SUCCEEDED, TaskTracker
from action_service.execution_queue import ExecutionWorker, WorkerResult, enqueue_execution
from action_service.handlers import HandlerRegistry
from action_service.scheduler import Ticker
from action_service.storage import get_execution, get_workflow_run
from action_service.workflow import WorkflowEngine, create_workflow_run


class FakeWorker:
    def __init__(self, fail=False):
        self.calls = 0
        self.fail = fail

    async def run_once(self, owner=None):
        self.calls += 1
        if self.fail:
            raise RuntimeError("db gone")
        return WorkerResult(ok=True, ran=False)


class FakeWorkflows:
    def __init__(self):
        self.calls = 0

    async def tick_next(self):
        self.calls += 1
        return None


@pytest.mark.asyncio
async def test_iteration_survives_worker_errors(caplog):
    worker, workflows = FakeWorker(fail=True), FakeWorkflows()
    ticker = Ticker(worker, workflows, interval=0)
    await ticker.run_iteration()
    assert worker.calls == 1
    assert workflows.calls == 1
    assert ticker.iterations == 1
    assert "ticker worker iteration failed" in caplog.text


@pytest.mark.asyncio
async def test_start_and_stop():
    worker, workflows = FakeWorker(), FakeWorkflows()
    ticker = Ticker(worker, workflows, interval=0.01)
    ticker.start()
    await asyncio.sleep(0.05)
    await ticker.stop()
    assert ticker.iterations >= 1
    calls = worker.calls
    await asyncio.sleep(0.03)
    assert worker.calls == calls


@pytest.mark.asyncio
async def test_ticker_drives_workflow_to_completion(db, clock, settings):
    registry = HandlerRegistry()

    @registry.register("noop")
    async def noop(execution_id, payload):
        return {"ok": True}

    worker = ExecutionWorker(db, registry, clock=clock, settings=settings)
    workflows = WorkflowEngine(db, clock=clock, settings=settings)
    ticker = Ticker(worker, workflows, interval=0)
    run = await create_workflow_run(db, "owner-1", [
        {"step_id": "a", "executor_kind": "noop"},
        {"step_id": "b", "executor_kind": "noop"},
    ])
    standalone, _ = await enqueue_execution(db, "owner-1", "noop")

    for _ in range(10):
        clock.advance(1)
        await ticker.run_iteration()

    assert (await get_workflow_run(db, run["id"]))["status"] == "succeeded"
    assert (await get_execution(db, standalone["id"]))["status"] == "succeeded"


@pytest.mark.asyncio
async def test_tracker_records_outcomes():
    tracker = TaskTracker()

    async def ok():
        return 1

    async def boom():
        raise ValueError("nope")

    good = tracker.submit("good", ok())
    bad = tracker.submit("bad", boom())
    await tracker.drain(timeout=1)

    assert tracker.get(good.id).status == SUCCEEDED
    assert tracker.get(bad.id).status == FAILED
    assert tracker.get(bad.id).error == "nope"
    assert [t.name for t in tracker.tasks(FAILED)] == ["bad"]


@pytest.mark.asyncio
async def test_tracker_history_is_bounded():
    tracker = TaskTracker(max_history=2)

    async def ok():
        return None

    for i in range(4):
        tracker.submit("t%d" % i, ok())
        await tracker.drain(timeout=1)
    assert len(tracker.tasks()) <= 3
    assert tracker.tasks()[-1].name == "t3"
