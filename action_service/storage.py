"""
Persistence for the action engine.

Relations:
- executions / execution_runs: queue units and their per-attempt rows
- workflow_runs / run_events: multi-step plans and the event stream keyed by parent run
- delegation_contracts: standing, bounded grants of autonomy
- effects / proposals: the omega gate ledger
- artifact_links: lineage graph (execution -> run -> trace -> downstream artifacts)
- exec_logs: structured worker/gate log sink

Every state transition that can race is a single conditional UPDATE whose
rowcount tells the caller whether it won.
"""

import datetime
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.future import select
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def utcnow() -> datetime.datetime:
    """Naive UTC timestamp; the sqlite driver does not keep tzinfo."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class ExecutionStatus:
    QUEUED = "queued"
    CLAIMED = "claimed"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TERMINAL = (SUCCEEDED, FAILED)


class WorkflowStatus:
    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TERMINAL = (SUCCEEDED, FAILED)
    RUNNABLE = (QUEUED, RUNNING)


class EffectStatus:
    PROPOSED = "proposed"
    EXECUTED = "executed"
    REQUIRE_HUMAN = "require_human"
    DENIED = "denied"


class ProposalStatus:
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Execution(Base):
    __tablename__ = "executions"
    id = Column(String, primary_key=True, default=new_id)
    owner = Column(String, nullable=False, index=True)
    kind = Column(String, nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(String, nullable=False, default=ExecutionStatus.QUEUED, index=True)
    priority = Column(Integer, nullable=False, default=0)
    run_at = Column(DateTime, nullable=False, default=utcnow)
    next_retry_at = Column(DateTime, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)
    last_error = Column(Text, nullable=True)
    idempotency_key = Column(String, nullable=True, unique=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class ExecutionRun(Base):
    __tablename__ = "execution_runs"
    id = Column(String, primary_key=True, default=new_id)
    execution_id = Column(String, ForeignKey("executions.id"), nullable=False, index=True)
    owner = Column(String, nullable=False)
    attempt = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=ExecutionStatus.RUNNING)
    trace_id = Column(String, nullable=False, index=True)
    output = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    started_at = Column(DateTime, default=utcnow)
    finished_at = Column(DateTime, nullable=True)


class WorkflowRun(Base):
    __tablename__ = "workflow_runs"
    id = Column(String, primary_key=True, default=new_id)
    parent_run_id = Column(String, nullable=True, index=True)
    owner = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default=WorkflowStatus.QUEUED, index=True)
    plan = Column(JSON, nullable=False)
    current_step_index = Column(Integer, nullable=False, default=0)
    context = Column(JSON, nullable=False, default=dict)
    error = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class RunEvent(Base):
    __tablename__ = "run_events"
    id = Column(String, primary_key=True, default=new_id)
    run_id = Column(String, nullable=False, index=True)
    owner = Column(String, nullable=False)
    event_type = Column(String, nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=utcnow)


class DelegationContract(Base):
    __tablename__ = "delegation_contracts"
    id = Column(String, primary_key=True, default=new_id)
    owner = Column(String, nullable=False)
    intent_type = Column(String, nullable=False)
    workflow_template_id = Column(String, nullable=False)
    max_executions = Column(Integer, nullable=False, default=0)  # 0 = unlimited
    current_executions = Column(Integer, nullable=False, default=0)
    granted_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    revoked_at = Column(DateTime, nullable=True)
    revoked_reason = Column(Text, nullable=True)

    __table_args__ = (
        Index(
            "uq_delegation_active_tuple",
            "owner",
            "intent_type",
            "workflow_template_id",
            unique=True,
            sqlite_where=revoked_at.is_(None),
            postgresql_where=revoked_at.is_(None),
        ),
    )


class Effect(Base):
    __tablename__ = "effects"
    id = Column(String, primary_key=True, default=new_id)
    call_id = Column(String, nullable=False, index=True)
    agent = Column(String, nullable=True)
    tool = Column(String, nullable=False)
    scope = Column(String, nullable=True)
    intent = Column(Text, nullable=True)
    confidence = Column(Float, nullable=False, default=0.0)
    verdict = Column(String, nullable=False)
    reason = Column(Text, nullable=True)
    status = Column(String, nullable=False, default=EffectStatus.PROPOSED)
    executed = Column(Boolean, nullable=False, default=False)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)


class Proposal(Base):
    __tablename__ = "proposals"
    id = Column(String, primary_key=True, default=new_id)
    effect_id = Column(String, ForeignKey("effects.id"), nullable=False, index=True)
    call_id = Column(String, nullable=False)
    agent = Column(String, nullable=True)
    tool = Column(String, nullable=False)
    intent = Column(Text, nullable=True)
    summary = Column(Text, nullable=False)
    artifacts = Column(JSON, nullable=False, default=list)
    status = Column(String, nullable=False, default=ProposalStatus.PENDING, index=True)
    decided_by = Column(String, nullable=True)
    decision_reason = Column(Text, nullable=True)
    decided_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class ArtifactLink(Base):
    __tablename__ = "artifact_links"
    id = Column(String, primary_key=True, default=new_id)
    owner = Column(String, nullable=False)
    trace_id = Column(String, nullable=True, index=True)
    execution_id = Column(String, nullable=True, index=True)
    execution_run_id = Column(String, nullable=True)
    from_type = Column(String, nullable=False)
    from_id = Column(String, nullable=False)
    relation = Column(String, nullable=False)
    to_type = Column(String, nullable=False)
    to_id = Column(String, nullable=True)
    to_key = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class ExecLog(Base):
    __tablename__ = "exec_logs"
    id = Column(String, primary_key=True, default=new_id)
    owner = Column(String, nullable=False)
    execution_id = Column(String, nullable=True, index=True)
    trace_id = Column(String, nullable=True)
    level = Column(String, nullable=False, default="info")
    message = Column(String, nullable=False)
    meta = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=utcnow)


def row_to_dict(row) -> Dict[str, Any]:
    return {c.name: getattr(row, c.name) for c in row.__table__.columns}


def _engine_kwargs(dsn: str) -> Dict[str, Any]:
    # An in-memory sqlite database only exists per connection; share one.
    if dsn.startswith("sqlite") and ":memory:" in dsn:
        return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    return {}


async def create_engine_and_sessionmaker(dsn=None):
    dsn = dsn or "sqlite+aiosqlite:///./actions.db"
    engine = create_async_engine(dsn, echo=False, future=True, **_engine_kwargs(dsn))
    async_session = sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    return engine, async_session


async def init_models(engine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# ============================================================================
# READ HELPERS
# ============================================================================

async def get_execution(sessionmaker, execution_id: str) -> Optional[dict]:
    async with sessionmaker() as session:
        row = await session.get(Execution, execution_id)
        return row_to_dict(row) if row else None


async def get_execution_runs(sessionmaker, execution_id: str) -> List[dict]:
    async with sessionmaker() as session:
        result = await session.execute(
            select(ExecutionRun)
            .where(ExecutionRun.execution_id == execution_id)
            .order_by(ExecutionRun.attempt.asc())
        )
        return [row_to_dict(r) for r in result.scalars().all()]


async def get_workflow_run(sessionmaker, workflow_run_id: str) -> Optional[dict]:
    async with sessionmaker() as session:
        row = await session.get(WorkflowRun, workflow_run_id)
        return row_to_dict(row) if row else None


async def get_run_events(sessionmaker, run_id: str, event_type: Optional[str] = None) -> List[dict]:
    async with sessionmaker() as session:
        query = select(RunEvent).where(RunEvent.run_id == run_id)
        if event_type:
            query = query.where(RunEvent.event_type == event_type)
        result = await session.execute(query.order_by(RunEvent.created_at.asc()))
        return [row_to_dict(r) for r in result.scalars().all()]


async def get_artifact_links(sessionmaker, execution_id: str) -> List[dict]:
    async with sessionmaker() as session:
        result = await session.execute(
            select(ArtifactLink)
            .where(ArtifactLink.execution_id == execution_id)
            .order_by(ArtifactLink.created_at.asc())
        )
        return [row_to_dict(r) for r in result.scalars().all()]


async def get_exec_logs(sessionmaker, execution_id: Optional[str] = None, message: Optional[str] = None) -> List[dict]:
    async with sessionmaker() as session:
        query = select(ExecLog)
        if execution_id:
            query = query.where(ExecLog.execution_id == execution_id)
        if message:
            query = query.where(ExecLog.message == message)
        result = await session.execute(query.order_by(ExecLog.created_at.asc()))
        return [row_to_dict(r) for r in result.scalars().all()]
