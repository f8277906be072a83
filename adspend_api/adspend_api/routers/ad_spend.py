"""Customer-facing ad-spend credit endpoints.

The caller is identified by the ``X-Customer-ID`` header, which the
upstream gateway sets after authenticating the user.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query, status

from adspend_api.dependencies import CustomerIdDep, OrchestratorDep, RecoveryDep
from adspend_api.schemas import (
    AccountResponse,
    AddCreditRequest,
    BalanceResponse,
    OpenAccountRequest,
    PaymentResponse,
    TransactionListResponse,
    TransactionResponse,
)
from adspend_api.services.recovery_service import RecoveryResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing/ad-spend", tags=["ad-spend"])


def _payment_required(result: RecoveryResult) -> HTTPException:
    """402 carrying an actionable message and the amount to try next."""
    return HTTPException(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        detail={
            "message": result.message,
            "error": result.charge.error,
            "suggested_top_up": str(result.suggested_top_up) if result.suggested_top_up is not None else None,
        },
    )


def _payment_response(result: RecoveryResult) -> PaymentResponse:
    account = result.account
    return PaymentResponse(
        success=result.success,
        message=result.message,
        amount=result.amount,
        new_balance=account.current_balance if account else None,
        charge_id=result.charge.charge_id,
        payment_status=account.payment_status if account else None,
    )


@router.post("/account", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
async def open_account(
    body: OpenAccountRequest,
    customer_id: CustomerIdDep,
    recovery: RecoveryDep,
) -> AccountResponse:
    """Charge the opening credit and open the caller's account.

    Each customer has at most one.  A declined charge is a 402 and leaves
    no account behind.
    """
    result = await recovery.open_account(customer_id, body.daily_budget, body.days)
    if not result.success or result.account is None:
        raise _payment_required(result)
    return AccountResponse.from_account(result.account)


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(customer_id: CustomerIdDep, orchestrator: OrchestratorDep) -> BalanceResponse:
    """Balance, health and the budget multiplier campaigns should apply."""
    account = await orchestrator.get_account_by_customer(customer_id)
    snapshot = await orchestrator.snapshot(account.account_id)
    current = snapshot.account
    return BalanceResponse(
        account_id=current.account_id,
        current_balance=current.current_balance,
        initial_credit_amount=current.initial_credit_amount,
        status=current.effective_status,
        payment_status=current.payment_status,
        budget_multiplier=snapshot.budget_multiplier,
        can_run_campaigns=snapshot.can_run_campaigns,
        is_in_grace_period=snapshot.is_in_grace_period,
        grace_period_ends_at=current.grace_period_ends_at,
        average_daily_spend=snapshot.average_daily_spend,
        days_remaining=snapshot.days_remaining,
        last_successful_charge_at=current.last_successful_charge_at,
    )


@router.get("/transactions", response_model=TransactionListResponse)
async def list_transactions(
    customer_id: CustomerIdDep,
    orchestrator: OrchestratorDep,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> TransactionListResponse:
    """Ledger history, newest first."""
    account = await orchestrator.get_account_by_customer(customer_id)
    entries, total = await orchestrator.list_transactions(account.account_id, limit, offset)
    return TransactionListResponse(
        transactions=[TransactionResponse.from_entry(e) for e in entries],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post("/add-credit", response_model=PaymentResponse)
async def add_credit(
    body: AddCreditRequest,
    customer_id: CustomerIdDep,
    orchestrator: OrchestratorDep,
    recovery: RecoveryDep,
) -> PaymentResponse:
    """Charge the saved payment method and credit the balance."""
    account = await orchestrator.get_account_by_customer(customer_id)
    result = await recovery.top_up(account.account_id, body.amount)
    if not result.success:
        raise _payment_required(result)
    return _payment_response(result)


@router.post("/retry-payment", response_model=PaymentResponse)
async def retry_payment(
    customer_id: CustomerIdDep,
    orchestrator: OrchestratorDep,
    recovery: RecoveryDep,
) -> PaymentResponse:
    """Retry a failed payment with the suggested replenishment amount."""
    account = await orchestrator.get_account_by_customer(customer_id)
    result = await recovery.retry_payment(account.account_id)
    if not result.success:
        raise _payment_required(result)
    return _payment_response(result)
