"""
Subscription plan catalog.

Prices are in whole rubles; gateways convert to their own minor units.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List

from core.exceptions import UnknownPlanError


@dataclass(frozen=True)
class Plan:
    id: str
    title: str
    days: int
    price_rub: int

    @property
    def price_minor(self) -> int:
        """Price in kopecks."""
        return self.price_rub * 100


PLANS: Dict[str, Plan] = {
    "week": Plan(id="week", title="Subscription for 1 week", days=7, price_rub=159),
    "month": Plan(id="month", title="Subscription for 1 month", days=30, price_rub=399),
    "80days": Plan(id="80days", title="Full course (80 days)", days=80, price_rub=999),
}


def get_plan(plan_id: str) -> Plan:
    plan = PLANS.get((plan_id or "").strip())
    if plan is None:
        raise UnknownPlanError(plan_id)
    return plan


def list_plans() -> List[Plan]:
    return sorted(PLANS.values(), key=lambda p: p.days)


def describe_duration(days: int) -> str:
    if days == 7:
        return "1 week"
    if days == 30:
        return "1 month"
    return f"{days} days"
