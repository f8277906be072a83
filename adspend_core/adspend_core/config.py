"""Explicit billing policy values consumed by the core engine.

The core never reads global or cached settings.  Callers (the API layer,
tests, scripts) build a :class:`BillingPolicy` once and hand it to the
orchestrator and the services that need it.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Self

from pydantic import BaseModel, Field, model_validator

logger = logging.getLogger(__name__)


class BillingPolicy(BaseModel):
    """Tuneable parameters for balance health and payment recovery."""

    model_config = {"frozen": True}

    grace_period_hours: int = Field(
        default=24,
        ge=1,
        description="Length of the grace period entered after a failed charge.",
    )
    low_balance_threshold_days: Decimal = Field(
        default=Decimal("3"),
        gt=0,
        description="Accounts with fewer days of spend remaining are LOW_BALANCE.",
    )
    spend_window_days: int = Field(
        default=7,
        ge=1,
        description="Trailing window used to compute the average daily spend.",
    )
    prepaid_days: int = Field(
        default=7,
        ge=1,
        description="Days of budget captured up front and on each replenishment.",
    )
    min_top_up: Decimal = Field(
        default=Decimal("50"),
        gt=0,
        description="Smallest accepted top-up and replenishment charge.",
    )
    max_top_up: Decimal = Field(
        default=Decimal("10000"),
        gt=0,
        description="Largest accepted manual top-up.",
    )

    @model_validator(mode="after")
    def _validate_top_up_bounds(self) -> Self:
        if self.min_top_up > self.max_top_up:
            raise ValueError(
                f"min_top_up ({self.min_top_up}) must not exceed max_top_up ({self.max_top_up})"
            )
        return self


def load_policy(**overrides: object) -> BillingPolicy:
    """Build a policy from defaults, with optional overrides for testing."""
    policy = BillingPolicy(**overrides)  # type: ignore[arg-type]
    logger.debug("Loaded billing policy: %s", policy.model_dump())
    return policy
