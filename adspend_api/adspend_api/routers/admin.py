"""Operator endpoints: daily billing run, grace sweep, account holds and corrections.

All routes require the ``X-Admin-Token`` header.
"""

from __future__ import annotations

import logging

from adspend_core.models.account import ReconciliationReport
from fastapi import APIRouter, Depends

from adspend_api.dependencies import DailyJobDep, OrchestratorDep, require_admin
from adspend_api.schemas import AccountResponse, AdjustRequest, DailyRunRequest, GraceSweepResponse, SuspendRequest
from adspend_api.services.daily_billing_job import DailyBillingSummary

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/billing", tags=["admin"], dependencies=[Depends(require_admin)])


@router.post("/daily-run", response_model=DailyBillingSummary)
async def run_daily_billing(body: DailyRunRequest, job: DailyJobDep) -> DailyBillingSummary:
    """Bill the reported spend for ``period`` across all billable accounts."""
    logger.info("Daily billing run requested for %s (%d customers reported)", body.period, len(body.spend))
    return await job.run(body.period, body.spend)


@router.post("/sweep-grace", response_model=GraceSweepResponse)
async def sweep_grace_periods(job: DailyJobDep) -> GraceSweepResponse:
    marked = await job.sweep_expired_grace_periods()
    return GraceSweepResponse(expired=len(marked), account_ids=[a.account_id for a in marked])


@router.post("/accounts/{account_id}/suspend", response_model=AccountResponse)
async def suspend_account(account_id: str, body: SuspendRequest, orchestrator: OrchestratorDep) -> AccountResponse:
    account = await orchestrator.suspend(account_id, body.reason)
    return AccountResponse.from_account(account)


@router.post("/accounts/{account_id}/lift-suspension", response_model=AccountResponse)
async def lift_suspension(account_id: str, orchestrator: OrchestratorDep) -> AccountResponse:
    account = await orchestrator.lift_suspension(account_id)
    return AccountResponse.from_account(account)


@router.post("/accounts/{account_id}/reconcile", response_model=ReconciliationReport)
async def reconcile_account(account_id: str, orchestrator: OrchestratorDep) -> ReconciliationReport:
    """Replay the ledger; a clean replay also lifts an integrity hold."""
    return await orchestrator.reconcile(account_id)


@router.post("/accounts/{account_id}/adjust", response_model=AccountResponse)
async def adjust_balance(account_id: str, body: AdjustRequest, orchestrator: OrchestratorDep) -> AccountResponse:
    account = await orchestrator.adjust(account_id, body.amount, body.description, metadata=body.metadata or None)
    return AccountResponse.from_account(account)
