"""
services/alerts.py
------------------
Threshold evaluation for budgets and their category lines.

Zero limits: nothing spent reads as 0 % used; anything spent against a zero
limit is treated as already exceeded.
"""

import math
from typing import Optional

from config import OVERALL_ALERT_PERCENT
from models.budget import Alert, Budget, BudgetCategory
from utils.messages import t


def percentage_used(spent: int, limit: int) -> float:
    if limit <= 0:
        return 0.0 if spent <= 0 else math.inf
    return spent / limit * 100


def overall_alert(budget: Budget) -> Optional[Alert]:
    pct = percentage_used(budget.total_spent, budget.total_budget)
    if pct < OVERALL_ALERT_PERCENT:
        return None
    return Alert(
        type="overall",
        budget_id=budget.id,
        budget_name=budget.name,
        percentage=pct,
        severity="high" if pct >= 100 else "medium",
    )


def category_alert(budget: Budget, category: BudgetCategory) -> Optional[Alert]:
    if not category.notifications.enabled:
        return None
    pct = percentage_used(category.spent, category.limit)
    if pct < category.notifications.threshold:
        return None
    return Alert(
        type="category",
        budget_id=budget.id,
        budget_name=budget.name,
        category=category.name,
        percentage=pct,
        severity="high" if category.spent > category.limit else "medium",
    )


def evaluate_budget(budget: Budget, only_category: Optional[str] = None) -> list[Alert]:
    """
    All alerts a budget currently raises.

    Args:
        only_category: Restrict category alerts to this line (used right after a
            delta touched it; the overall alert is always evaluated).
    """
    alerts = []
    overall = overall_alert(budget)
    if overall:
        alerts.append(overall)
    for category in budget.categories:
        if only_category is not None and not category.matches(only_category):
            continue
        alert = category_alert(budget, category)
        if alert:
            alerts.append(alert)
    return alerts


def format_alert(alert: Alert, language: str) -> str:
    pct = alert.percentage if math.isfinite(alert.percentage) else 100.0
    key = f"alert_{alert.type}_{alert.severity}"
    return t(language, key, budget=alert.budget_name, category=alert.category, pct=pct)
