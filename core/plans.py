"""Plan catalog and billing period arithmetic."""
import calendar
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from integrations.cardcom_client import CardcomOperation


class PlanError(Exception):
    """Raised for unknown plan identifiers."""

    pass


class PlanType(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"
    VIP = "vip"


@dataclass(frozen=True)
class Plan:
    """
    A purchasable plan.

    ``signup_amount_cents`` is what the hosted page charges when the plan is
    bought; ``price_cents`` is what each renewal charges.
    """

    plan_type: PlanType
    name: str
    price_cents: int
    signup_amount_cents: int
    operation: CardcomOperation
    j_validate_type: int
    trial_days: int = 0
    period_months: Optional[int] = None

    @property
    def recurring(self) -> bool:
        return self.period_months is not None

    @property
    def token_only(self) -> bool:
        return self.operation == CardcomOperation.CREATE_TOKEN_ONLY


PLANS: Dict[PlanType, Plan] = {
    PlanType.MONTHLY: Plan(
        plan_type=PlanType.MONTHLY,
        name="מנוי חודשי",
        price_cents=37100,
        signup_amount_cents=0,
        operation=CardcomOperation.CREATE_TOKEN_ONLY,
        j_validate_type=2,
        trial_days=30,
        period_months=1,
    ),
    PlanType.ANNUAL: Plan(
        plan_type=PlanType.ANNUAL,
        name="מנוי שנתי",
        price_cents=337100,
        signup_amount_cents=337100,
        operation=CardcomOperation.CHARGE_AND_CREATE_TOKEN,
        j_validate_type=5,
        period_months=12,
    ),
    PlanType.VIP: Plan(
        plan_type=PlanType.VIP,
        name="מנוי VIP",
        price_cents=1312100,
        signup_amount_cents=1312100,
        operation=CardcomOperation.CHARGE_ONLY,
        j_validate_type=5,
    ),
}

PLAN_LABELS = {
    PlanType.MONTHLY: "חודשי",
    PlanType.ANNUAL: "שנתי",
    PlanType.VIP: "VIP",
}


def get_plan(plan_id: str) -> Plan:
    """
    Look up a plan by id.

    Raises:
        PlanError: If the plan id is unknown
    """
    try:
        return PLANS[PlanType(str(plan_id).lower())]
    except ValueError:
        raise PlanError(f"Unknown plan: {plan_id}")


def plan_from_amount(amount: float) -> PlanType:
    """
    Infer the plan from a charged amount in major units (shekels).

    Token-only trial sign-ups report an amount of 0 or 1. Any other amount
    maps to the plan whose price is closest to it.
    """
    if amount <= 1:
        return PlanType.MONTHLY
    amount_cents = round(amount * 100)
    closest = min(PLANS.values(), key=lambda plan: abs(plan.price_cents - amount_cents))
    return closest.plan_type


def plan_label(plan_id: str) -> str:
    try:
        return PLAN_LABELS[PlanType(plan_id)]
    except ValueError:
        return plan_id


def add_months(dt: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the end of the target month."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def next_period_end(plan_id: str, start: datetime) -> Optional[datetime]:
    """End of the billing period starting at ``start``; None for lifetime plans."""
    plan = get_plan(plan_id)
    if plan.period_months is None:
        return None
    return add_months(start, plan.period_months)
