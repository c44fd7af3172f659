"""
Delegation contracts: standing, bounded grants of autonomy for an
(owner, intent_type, workflow_template_id) tuple.

- at most one active (unrevoked) contract per tuple, enforced by a partial
  unique index
- revocation is one-way; re-granting creates a new row so grant history stays
- usage is counted with a conditional in-database increment, never a
  read-modify-write
"""

import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.future import select

from . import metrics
from .policy import PolicyOutcome
from .storage import DelegationContract, row_to_dict, utcnow

logger = logging.getLogger(__name__)


class DelegationDecision(str, Enum):
    ALLOW = "ALLOW"
    DENY = "DENY"
    ESCALATE = "ESCALATE"

    @property
    def outcome(self) -> PolicyOutcome:
        return {
            DelegationDecision.ALLOW: PolicyOutcome.PROCEED,
            DelegationDecision.ESCALATE: PolicyOutcome.DEFER,
            DelegationDecision.DENY: PolicyOutcome.REFUSE,
        }[self]


class DelegationConflict(Exception):
    """An active contract already exists for the tuple."""


def _result(decision: DelegationDecision, reason: Optional[str] = None, contract_id: Optional[str] = None):
    metrics.delegation_decisions_total.labels(decision=decision.value).inc()
    return {"decision": decision, "reason": reason, "contract_id": contract_id}


async def _active_contract(session, owner: str, intent_type: str, workflow_template_id: str):
    result = await session.execute(
        select(DelegationContract).where(
            DelegationContract.owner == owner,
            DelegationContract.intent_type == intent_type,
            DelegationContract.workflow_template_id == workflow_template_id,
            DelegationContract.revoked_at.is_(None),
        )
    )
    return result.scalars().first()


async def check_delegation(
    sessionmaker,
    owner: str,
    intent_type: str,
    workflow_template_id: str,
    context: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Return ``{decision, reason, contract_id}`` for the tuple.

    ``context`` is accepted for callers that carry request metadata; it does not
    influence the decision.
    """
    async with sessionmaker() as session:
        contract = await _active_contract(session, owner, intent_type, workflow_template_id)
    if contract is None:
        return _result(DelegationDecision.DENY, "no active delegation contract")
    if contract.max_executions <= 0 or contract.current_executions < contract.max_executions:
        return _result(DelegationDecision.ALLOW, contract_id=contract.id)
    return _result(
        DelegationDecision.ESCALATE,
        "execution budget exhausted (%d/%d), a new grant is required"
        % (contract.current_executions, contract.max_executions),
        contract_id=contract.id,
    )


async def record_delegation_usage(sessionmaker, contract_id: str) -> bool:
    """Count one confirmed execution against the contract.

    Returns False when the contract is revoked or its budget is already spent.
    """
    async with sessionmaker() as session:
        res = await session.execute(
            update(DelegationContract)
            .where(
                DelegationContract.id == contract_id,
                DelegationContract.revoked_at.is_(None),
                or_(
                    DelegationContract.max_executions <= 0,
                    DelegationContract.current_executions < DelegationContract.max_executions,
                ),
            )
            .values(current_executions=DelegationContract.current_executions + 1)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    if res.rowcount != 1:
        logger.warning("delegation usage not recorded for contract %s", contract_id)
        return False
    return True


async def grant_delegation(
    sessionmaker,
    owner: str,
    intent_type: str,
    workflow_template_id: str,
    max_executions: int = 0,
    granted_by: Optional[str] = None,
) -> Dict[str, Any]:
    if max_executions < 0:
        raise ValueError("max_executions must be >= 0")
    row = DelegationContract(
        owner=owner,
        intent_type=intent_type,
        workflow_template_id=workflow_template_id,
        max_executions=max_executions,
        current_executions=0,
        granted_by=granted_by,
    )
    async with sessionmaker() as session:
        session.add(row)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            raise DelegationConflict(
                "active contract exists for %s/%s/%s" % (owner, intent_type, workflow_template_id)
            )
        logger.info("delegation granted %s for %s/%s/%s", row.id, owner, intent_type, workflow_template_id)
        return row_to_dict(row)


async def revoke_delegation(sessionmaker, contract_id: str, reason: Optional[str] = None) -> bool:
    """Revoke an active contract. Returns False if it was already revoked or unknown."""
    async with sessionmaker() as session:
        res = await session.execute(
            update(DelegationContract)
            .where(and_(DelegationContract.id == contract_id, DelegationContract.revoked_at.is_(None)))
            .values(revoked_at=utcnow(), revoked_reason=reason)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    return res.rowcount == 1


async def list_contracts(sessionmaker, owner: str, include_revoked: bool = True) -> List[Dict[str, Any]]:
    async with sessionmaker() as session:
        query = select(DelegationContract).where(DelegationContract.owner == owner)
        if not include_revoked:
            query = query.where(DelegationContract.revoked_at.is_(None))
        result = await session.execute(query.order_by(DelegationContract.created_at.asc()))
        return [row_to_dict(r) for r in result.scalars().all()]
