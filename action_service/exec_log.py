"""Structured execution log sink and artifact lineage links.

Each event is emitted to ``logging`` and persisted to ``exec_logs`` so tests and
operators can reconstruct what a worker did for a given execution.
"""

import logging
from typing import Any, Dict, Optional

from .storage import ArtifactLink, ExecLog

logger = logging.getLogger(__name__)

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


async def exec_log(
    session,
    owner: str,
    message: str,
    *,
    execution_id: Optional[str] = None,
    trace_id: Optional[str] = None,
    level: str = "info",
    meta: Optional[Dict[str, Any]] = None,
) -> None:
    """Add a log row to ``session`` (caller commits) and mirror it to the logger."""
    meta = dict(meta or {})
    logger.log(
        _LEVELS.get(level, logging.INFO),
        "%s execution=%s trace=%s meta=%s",
        message,
        execution_id,
        trace_id,
        meta,
    )
    session.add(
        ExecLog(
            owner=owner,
            execution_id=execution_id,
            trace_id=trace_id,
            level=level,
            message=message,
            meta=meta,
        )
    )


def link_artifact(
    session,
    owner: str,
    from_type: str,
    from_id: str,
    relation: str,
    to_type: str,
    *,
    to_id: Optional[str] = None,
    to_key: Optional[str] = None,
    trace_id: Optional[str] = None,
    execution_id: Optional[str] = None,
    execution_run_id: Optional[str] = None,
) -> ArtifactLink:
    link = ArtifactLink(
        owner=owner,
        trace_id=trace_id,
        execution_id=execution_id,
        execution_run_id=execution_run_id,
        from_type=from_type,
        from_id=from_id,
        relation=relation,
        to_type=to_type,
        to_id=to_id,
        to_key=to_key,
    )
    session.add(link)
    return link
