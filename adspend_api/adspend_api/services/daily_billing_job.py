"""Daily ad-spend billing run and grace-period sweep.

The run is driven by the spend figures the ad networks report for the
previous day, keyed by customer id.  Accounts are processed one at a time;
an exception on one account is logged and counted as a failure, and the run
moves on to the next account.
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from enum import Enum

from adspend_core.billing import risk_policy
from adspend_core.billing.account_state import days_remaining, to_money
from adspend_core.billing.errors import BillingError
from adspend_core.billing.orchestrator import BillingOrchestrator
from adspend_core.models.account import CreditAccount, PaymentStatus
from pydantic import BaseModel, Field

from adspend_api.services.recovery_service import RecoveryService

logger = logging.getLogger(__name__)


class BillingAction(str, Enum):
    """What the daily run did for one account."""

    NO_SPEND = "no_spend"
    SKIPPED_PAUSED = "skipped_paused"
    DEDUCTED = "deducted"
    DEDUCTED_AND_REPLENISHED = "deducted_and_replenished"
    REPLENISHED_AND_DEDUCTED = "replenished_and_deducted"
    PAYMENT_FAILED = "payment_failed"
    ERROR = "error"


class AccountBillingOutcome(BaseModel):
    account_id: str
    customer_id: str
    success: bool
    action: BillingAction
    spend: Decimal = Decimal("0")
    deducted: Decimal = Decimal("0")
    error: str | None = None


class DailyBillingSummary(BaseModel):
    """Aggregate result of one daily billing run."""

    period: date
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    total_spend: Decimal = Decimal("0")
    outcomes: list[AccountBillingOutcome] = Field(default_factory=list)

    def record(self, outcome: AccountBillingOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.action in (BillingAction.NO_SPEND, BillingAction.SKIPPED_PAUSED):
            self.skipped += 1
            return
        self.processed += 1
        self.total_spend += outcome.deducted
        if outcome.success:
            self.successful += 1
        else:
            self.failed += 1


class DailyBillingJob:
    """Deduct yesterday's spend from every billable account.

    Parameters
    ----------
    orchestrator:
        Transactional billing core.
    recovery:
        Charge flows used for replenishment and escalation.
    """

    def __init__(self, orchestrator: BillingOrchestrator, recovery: RecoveryService) -> None:
        self._orchestrator = orchestrator
        self._recovery = recovery

    async def run(self, period: date, spend_by_customer: dict[str, Decimal]) -> DailyBillingSummary:
        """Bill *period*'s spend.

        Parameters
        ----------
        period:
            The day whose spend is being billed; used in ledger descriptions.
        spend_by_customer:
            Reported spend per customer id.  Customers absent from the
            mapping are treated as having no spend.

        Returns
        -------
        DailyBillingSummary
            Counts and per-account outcomes.  Paused and zero-spend
            accounts count as skipped.
        """
        summary = DailyBillingSummary(period=period)
        accounts = await self._orchestrator.list_billable_accounts()
        logger.info("Daily billing run for %s starting over %d accounts", period.isoformat(), len(accounts))

        for account in accounts:
            spend = to_money(spend_by_customer.get(account.customer_id, Decimal("0")))
            try:
                outcome = await self._bill_account(account, spend, period)
            except Exception as exc:
                logger.error(
                    "Daily billing failed for account %s (customer %s): %s",
                    account.account_id,
                    account.customer_id,
                    exc,
                    exc_info=True,
                )
                outcome = AccountBillingOutcome(
                    account_id=account.account_id,
                    customer_id=account.customer_id,
                    success=False,
                    action=BillingAction.ERROR,
                    spend=spend,
                    error=str(exc),
                )
            summary.record(outcome)

        logger.info(
            "Daily billing run for %s complete: processed=%d successful=%d failed=%d skipped=%d total_spend=%s",
            period.isoformat(),
            summary.processed,
            summary.successful,
            summary.failed,
            summary.skipped,
            summary.total_spend,
        )
        return summary

    async def _bill_account(self, account: CreditAccount, spend: Decimal, period: date) -> AccountBillingOutcome:
        outcome = AccountBillingOutcome(
            account_id=account.account_id,
            customer_id=account.customer_id,
            success=True,
            action=BillingAction.NO_SPEND,
            spend=spend,
        )
        if account.payment_status == PaymentStatus.PAUSED:
            return outcome.model_copy(update={"action": BillingAction.SKIPPED_PAUSED})
        if spend <= 0:
            return outcome

        description = f"Daily ad spend - {period.isoformat()}"
        if await self._orchestrator.deduct(account.account_id, spend, description):
            replenished = await self._replenish_if_low(account.account_id)
            action = BillingAction.DEDUCTED_AND_REPLENISHED if replenished else BillingAction.DEDUCTED
            return outcome.model_copy(update={"action": action, "deducted": spend})

        return await self._cover_shortfall(account, spend, description, outcome)

    async def _replenish_if_low(self, account_id: str) -> bool:
        policy = self._orchestrator.policy
        average = await self._orchestrator.average_daily_spend(account_id)
        account = await self._orchestrator.get_account(account_id)
        remaining = days_remaining(account.current_balance, average)
        if remaining is None or not (0 < remaining < policy.low_balance_threshold_days):
            return False
        amount = risk_policy.calculate_initial_credit(average, policy.prepaid_days)
        result = await self._recovery.auto_replenish(account_id, amount)
        return result.success

    async def _cover_shortfall(
        self,
        account: CreditAccount,
        spend: Decimal,
        description: str,
        outcome: AccountBillingOutcome,
    ) -> AccountBillingOutcome:
        current = await self._orchestrator.get_account(account.account_id)
        shortfall = spend - current.current_balance
        amount = shortfall + await self._recovery.suggested_top_up(account.account_id)

        result = await self._recovery.replenish_scheduled(account.account_id, amount)
        if result.success:
            if not await self._orchestrator.deduct(account.account_id, spend, description):
                # A concurrent deduction consumed the new credit.
                return outcome.model_copy(
                    update={
                        "success": False,
                        "action": BillingAction.ERROR,
                        "error": "Balance changed during replenishment",
                    }
                )
            return outcome.model_copy(update={"action": BillingAction.REPLENISHED_AND_DEDUCTED, "deducted": spend})

        # Bill what the balance still covers; the rest stays with the escalated account.
        deducted = Decimal("0")
        available = (await self._orchestrator.get_account(account.account_id)).current_balance
        if available > 0 and await self._orchestrator.deduct(
            account.account_id, available, f"{description} (partial)"
        ):
            deducted = available
        return outcome.model_copy(
            update={
                "success": False,
                "action": BillingAction.PAYMENT_FAILED,
                "deducted": deducted,
                "error": f"Payment failed: {result.charge.error}",
            }
        )

    async def sweep_expired_grace_periods(self) -> list[CreditAccount]:
        """Mark FAILED every account whose grace period has elapsed."""
        expired = await self._orchestrator.list_expired_grace_periods()
        marked: list[CreditAccount] = []
        for account in expired:
            try:
                updated = await self._orchestrator.expire_grace_period(account.account_id)
            except BillingError as exc:
                logger.error("Could not expire grace period for %s: %s", account.account_id, exc)
                continue
            if updated is not None:
                marked.append(updated)
        if marked:
            logger.warning("Grace period sweep marked %d account(s) FAILED", len(marked))
        return marked
