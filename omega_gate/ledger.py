"""
Effect and proposal ledger.

An effect row is written before a tool runs and completed exactly once after.
Completion is a conditional update on ``status == 'proposed'`` so a second
completion attempt changes nothing.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.future import select

from action_service.storage import (
    Effect,
    EffectStatus,
    Proposal,
    ProposalStatus,
    row_to_dict,
    utcnow,
)

logger = logging.getLogger(__name__)


class ProposalStateError(Exception):
    """The proposal was already decided."""


class ProposalNotFound(LookupError):
    pass


class EffectLedger:
    def __init__(self, sessionmaker, clock=utcnow):
        self._sessionmaker = sessionmaker
        self._clock = clock

    @property
    def sessionmaker(self):
        return self._sessionmaker

    async def record_proposed(
        self,
        *,
        call_id: str,
        tool: str,
        agent: Optional[str],
        scope: Optional[str],
        intent: Optional[str],
        confidence: float,
        verdict: str,
        reason: Optional[str] = None,
    ) -> str:
        row = Effect(
            call_id=call_id,
            tool=tool,
            agent=agent,
            scope=scope,
            intent=intent,
            confidence=confidence,
            verdict=verdict,
            reason=reason,
            status=EffectStatus.PROPOSED,
            executed=False,
            created_at=self._clock(),
        )
        async with self._sessionmaker() as session:
            session.add(row)
            await session.commit()
            return row.id

    async def complete(self, effect_id: str, status: str, *, executed: bool = False, error: Optional[str] = None) -> bool:
        async with self._sessionmaker() as session:
            res = await session.execute(
                update(Effect)
                .where(Effect.id == effect_id, Effect.status == EffectStatus.PROPOSED)
                .values(status=status, executed=executed, error=error, completed_at=self._clock())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if res.rowcount != 1:
            logger.warning("effect %s already completed, %s ignored", effect_id, status)
            return False
        return True

    async def persist_proposal(
        self,
        effect_id: str,
        *,
        call_id: str,
        tool: str,
        agent: Optional[str],
        intent: Optional[str],
        summary: str,
        artifacts: List[Any],
    ) -> str:
        row = Proposal(
            effect_id=effect_id,
            call_id=call_id,
            tool=tool,
            agent=agent,
            intent=intent,
            summary=summary,
            artifacts=list(artifacts or []),
            status=ProposalStatus.PENDING,
            created_at=self._clock(),
        )
        async with self._sessionmaker() as session:
            session.add(row)
            await session.commit()
            return row.id

    async def decide_proposal(
        self,
        proposal_id: str,
        approve: bool,
        decided_by: str,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Approve or reject a pending proposal. A decision is final."""
        if not decided_by:
            raise ValueError("decided_by is required")
        status = ProposalStatus.APPROVED if approve else ProposalStatus.REJECTED
        async with self._sessionmaker() as session:
            res = await session.execute(
                update(Proposal)
                .where(Proposal.id == proposal_id, Proposal.status == ProposalStatus.PENDING)
                .values(status=status, decided_by=decided_by, decision_reason=reason, decided_at=self._clock())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            row = await session.get(Proposal, proposal_id, populate_existing=True)
        if row is None:
            raise ProposalNotFound(proposal_id)
        if res.rowcount != 1:
            raise ProposalStateError("proposal %s already %s" % (proposal_id, row.status))
        logger.info("proposal %s %s by %s", proposal_id, status, decided_by)
        return row_to_dict(row)

    async def get_effect(self, effect_id: str) -> Optional[Dict[str, Any]]:
        async with self._sessionmaker() as session:
            row = await session.get(Effect, effect_id)
            return row_to_dict(row) if row else None

    async def get_proposal(self, proposal_id: str) -> Optional[Dict[str, Any]]:
        async with self._sessionmaker() as session:
            row = await session.get(Proposal, proposal_id)
            return row_to_dict(row) if row else None

    async def effects_for_call(self, call_id: str) -> List[Dict[str, Any]]:
        async with self._sessionmaker() as session:
            result = await session.execute(select(Effect).where(Effect.call_id == call_id).order_by(Effect.created_at.asc()))
            return [row_to_dict(r) for r in result.scalars().all()]

    async def list_proposals(self, status: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        async with self._sessionmaker() as session:
            query = select(Proposal)
            if status:
                query = query.where(Proposal.status == status)
            result = await session.execute(query.order_by(Proposal.created_at.desc()).limit(limit))
            return [row_to_dict(r) for r in result.scalars().all()]
