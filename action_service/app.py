import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

import sentry_sdk
from fastapi import FastAPI
from sentry_sdk.integrations.fastapi import FastApiIntegration
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from omega_gate.executor import ToolExecutor
from omega_gate.gate import OmegaGate
from omega_gate.ledger import EffectLedger
from omega_gate.replay import NonceStore, build_nonce_store

from .background import TaskTracker
from .config import get_settings
from .execution_queue import ExecutionWorker
from .handlers import HandlerRegistry
from .metrics import start_metrics_server_if_enabled
from .routes import executions_router, gate_router, limiter, workflows_router
from .scheduler import Ticker
from .storage import create_engine_and_sessionmaker, init_models
from .workflow import WorkflowEngine

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Any
    engine: Any
    sessionmaker: Any
    worker: ExecutionWorker
    workflows: WorkflowEngine
    ledger: EffectLedger
    gate: OmegaGate
    tracker: TaskTracker


def _handler_registry(handlers: Union[HandlerRegistry, Dict[str, Callable], None]) -> HandlerRegistry:
    if isinstance(handlers, HandlerRegistry):
        return handlers
    registry = HandlerRegistry()
    for kind, fn in (handlers or {}).items():
        registry.register(kind, fn)
    return registry


def _tool_executor(tools: Union[ToolExecutor, Dict[str, Callable], None]) -> ToolExecutor:
    if isinstance(tools, ToolExecutor):
        return tools
    executor = ToolExecutor()
    for name, fn in (tools or {}).items():
        executor.bind(name, fn)
    return executor


async def build_services(settings, dsn=None, handlers=None, tools=None, nonce_store: Optional[NonceStore] = None) -> Services:
    engine, sessionmaker = await create_engine_and_sessionmaker(dsn or settings.DATABASE_URL)
    await init_models(engine)
    tracker = TaskTracker()
    ledger = EffectLedger(sessionmaker)
    gate = OmegaGate(
        ledger,
        executor=_tool_executor(tools),
        nonce_store=nonce_store if nonce_store is not None else build_nonce_store(settings),
        settings=settings,
        tracker=tracker,
    )
    return Services(
        settings=settings,
        engine=engine,
        sessionmaker=sessionmaker,
        worker=ExecutionWorker(sessionmaker, _handler_registry(handlers), settings=settings),
        workflows=WorkflowEngine(sessionmaker, settings=settings),
        ledger=ledger,
        gate=gate,
        tracker=tracker,
    )


def create_app(settings=None, dsn=None, handlers=None, tools=None, nonce_store=None):
    settings = settings or get_settings()

    if settings.SENTRY_DSN:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            integrations=[FastApiIntegration()],
            traces_sample_rate=0.5,
            environment=settings.ENV,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = await build_services(settings, dsn=dsn, handlers=handlers, tools=tools, nonce_store=nonce_store)
        app.state.services = services
        start_metrics_server_if_enabled()
        ticker = None
        if settings.TICKER_ENABLED:
            ticker = Ticker(services.worker, services.workflows, interval=settings.TICK_INTERVAL_SECONDS)
            ticker.start()
        logger.info("action service started (db=%s)", dsn or settings.DATABASE_URL)
        try:
            yield
        finally:
            if ticker is not None:
                await ticker.stop()
            await services.tracker.drain(timeout=5)
            await services.gate.close()
            await services.engine.dispose()
            app.state.services = None

    app = FastAPI(title="Action Service", lifespan=lifespan)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.include_router(executions_router, prefix="/executions")
    app.include_router(workflows_router, prefix="/workflows")
    app.include_router(gate_router, prefix="/gate")
    return app


# convenience for running locally
if __name__ == '__main__':
    import uvicorn

    from .logging_setup import close_logging, setup_logging

    setup_logging()
    try:
        uvicorn.run(create_app(), host='0.0.0.0', port=8001)
    finally:
        close_logging()
