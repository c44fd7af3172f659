"""Prometheus metrics shared by the worker, workflow engine, delegation gate and omega gate."""

from __future__ import annotations
import logging

from prometheus_client import Counter, Histogram, start_http_server

from .config import get_settings

logger = logging.getLogger(__name__)


# Execution queue
executions_claimed_total = Counter("executions_claimed_total", "Executions claimed by a worker")
execution_claim_races_total = Counter("execution_claim_races_total", "Claims lost to a concurrent worker")
executions_finished_total = Counter("executions_finished_total", "Execution attempts finished", ["status"])
execution_duration_seconds = Histogram("execution_duration_seconds", "Handler wall time", ["kind"])

# Workflows
workflow_ticks_total = Counter("workflow_ticks_total", "Workflow tick outcomes", ["action"])

# Delegation
delegation_decisions_total = Counter("delegation_decisions_total", "Delegation checks", ["decision"])

# Omega gate
gate_calls_total = Counter("gate_calls_total", "Gate calls by final status", ["status"])
gate_rejections_total = Counter("gate_rejections_total", "Gate validation rejections", ["code"])
gate_confidence = Histogram(
    "gate_confidence",
    "Confidence scores assigned by the gate",
    buckets=(0.1, 0.25, 0.5, 0.6, 0.7, 0.8, 0.85, 0.9, 0.95, 1.0),
)

# Redis
redis_op_errors_total = Counter("redis_op_errors_total", "Redis operation errors")
redis_op_retries_total = Counter("redis_op_retries_total", "Redis operation retries")
redis_op_calls_total = Counter("redis_op_calls_total", "Redis operation calls")


def start_metrics_server_if_enabled():
    cfg = get_settings()
    try:
        if cfg.METRICS_PORT:
            start_http_server(cfg.METRICS_PORT)
    except Exception:
        logger.exception("failed to start metrics server")
