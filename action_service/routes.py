import datetime
import hmac
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from slowapi import Limiter
from slowapi.util import get_remote_address

from omega_gate.ledger import ProposalNotFound, ProposalStateError

from .config import get_settings
from .execution_queue import enqueue_execution
from .storage import get_execution, get_execution_runs
from .workflow import WorkflowStateError, create_workflow_run

logger = logging.getLogger(__name__)

executions_router = APIRouter()
workflows_router = APIRouter()
gate_router = APIRouter()

limiter = Limiter(key_func=get_remote_address)


def _services(request: Request):
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="services not started")
    return services


def _token_ok(expected: str, given: Optional[str]) -> bool:
    if not expected:
        return True
    return bool(given) and hmac.compare_digest(given.encode(), expected.encode())


def _naive_utc(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(datetime.timezone.utc).replace(tzinfo=None)


# ============================================================================
# EXECUTIONS
# ============================================================================

class EnqueueBody(BaseModel):
    owner: str = Field(min_length=1)
    kind: str = Field(min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    run_at: Optional[datetime.datetime] = None
    max_attempts: Optional[int] = Field(default=None, ge=1)
    idempotency_key: Optional[str] = None


class WorkerBody(BaseModel):
    owner: Optional[str] = None


@executions_router.post("")
async def create_execution(body: EnqueueBody, request: Request):
    services = _services(request)
    execution, created = await enqueue_execution(
        services.sessionmaker,
        body.owner,
        body.kind,
        body.payload,
        priority=body.priority,
        run_at=_naive_utc(body.run_at),
        max_attempts=body.max_attempts,
        idempotency_key=body.idempotency_key,
    )
    return JSONResponse(
        status_code=201 if created else 200,
        content=jsonable_encoder({"execution": execution, "created": created}),
    )


@executions_router.post("/worker")
async def trigger_worker(
    request: Request,
    body: Optional[WorkerBody] = Body(default=None),
    x_worker_secret: str = Header(None, alias="X-Worker-Secret"),
):
    services = _services(request)
    if not _token_ok(services.settings.WORKER_SECRET, x_worker_secret):
        return JSONResponse(status_code=401, content={"ok": False, "error": "unauthorized"})
    owner = body.owner if body else None
    try:
        result = await services.worker.run_once(owner)
    except Exception as e:
        logger.exception("worker trigger failed")
        return JSONResponse(status_code=500, content={"ok": False, "error": str(e) or type(e).__name__})
    return result.to_dict()


@executions_router.get("/{execution_id}")
async def read_execution(execution_id: str, request: Request):
    services = _services(request)
    execution = await get_execution(services.sessionmaker, execution_id)
    if execution is None:
        raise HTTPException(status_code=404, detail="execution not found")
    runs = await get_execution_runs(services.sessionmaker, execution_id)
    return {"execution": execution, "runs": runs}


# ============================================================================
# WORKFLOWS
# ============================================================================

class WorkflowBody(BaseModel):
    owner: str = Field(min_length=1)
    plan: List[Dict[str, Any]]
    parent_run_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class ResumeBody(BaseModel):
    context: Optional[Dict[str, Any]] = None


@workflows_router.post("")
async def create_workflow(body: WorkflowBody, request: Request):
    services = _services(request)
    try:
        run = await create_workflow_run(
            services.sessionmaker, body.owner, body.plan, parent_run_id=body.parent_run_id, context=body.context,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return JSONResponse(status_code=201, content=jsonable_encoder(run))


@workflows_router.post("/tick")
async def tick_next_workflow(request: Request):
    services = _services(request)
    result = await services.workflows.tick_next()
    if result is None:
        return {"action": "idle"}
    return result.to_dict()


@workflows_router.post("/{workflow_run_id}/tick")
async def tick_workflow(workflow_run_id: str, request: Request):
    services = _services(request)
    result = await services.workflows.tick(workflow_run_id)
    if result.action == "not_found":
        raise HTTPException(status_code=404, detail="workflow run not found")
    return result.to_dict()


@workflows_router.post("/{workflow_run_id}/resume")
async def resume_workflow(workflow_run_id: str, request: Request, body: Optional[ResumeBody] = Body(default=None)):
    services = _services(request)
    try:
        run = await services.workflows.resume_workflow(workflow_run_id, context=body.context if body else None)
    except WorkflowStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return run


# ============================================================================
# OMEGA GATE
# ============================================================================

class DecisionBody(BaseModel):
    approve: bool
    decided_by: str = Field(min_length=1)
    reason: Optional[str] = None


@gate_router.post("/call")
@limiter.limit(lambda: get_settings().GATE_RATE_LIMIT)
async def gate_call(request: Request):
    services = _services(request)
    try:
        body = await request.json()
    except ValueError:
        body = None
    response = await services.gate.handle_call(request.headers, body)
    return JSONResponse(status_code=response.http_status, content=response.body)


@gate_router.get("/tools")
async def gate_tools(request: Request):
    return _services(request).gate.list_tools()


@gate_router.get("/proposals")
async def gate_proposals(request: Request, status: Optional[str] = None, max_items: int = 100):
    services = _services(request)
    items = await services.ledger.list_proposals(status=status, limit=max_items)
    return {"count": len(items), "items": items}


@gate_router.post("/proposals/{proposal_id}/decision")
async def gate_proposal_decision(
    proposal_id: str,
    body: DecisionBody,
    request: Request,
    x_admin_token: str = Header(None, alias="X-Admin-Token"),
):
    services = _services(request)
    if not _token_ok(services.settings.ADMIN_TOKEN, x_admin_token):
        raise HTTPException(status_code=401, detail="unauthorized")
    try:
        proposal = await services.ledger.decide_proposal(proposal_id, body.approve, body.decided_by, body.reason)
    except ProposalNotFound:
        raise HTTPException(status_code=404, detail="proposal not found")
    except ProposalStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return proposal


@gate_router.get("/effects/{effect_id}")
async def gate_effect(effect_id: str, request: Request):
    effect = await _services(request).ledger.get_effect(effect_id)
    if effect is None:
        raise HTTPException(status_code=404, detail="effect not found")
    return effect
