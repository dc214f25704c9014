"""Budget goal status transitions.

    active ──(goal reached)──▶ completed
    active/completed ──(cancel)──▶ cancelled
    cancelled/completed ──(reactivate)──▶ active
    completed ──(any withdrawal)──▶ active

Contribution math never moves a budget out of ``cancelled``.
"""

from decimal import Decimal
from typing import Optional

from errors import InvalidOperation
from models import BudgetStatus

ALLOWED_TRANSITIONS: dict[BudgetStatus, frozenset[BudgetStatus]] = {
    BudgetStatus.active: frozenset({BudgetStatus.completed, BudgetStatus.cancelled}),
    BudgetStatus.completed: frozenset({BudgetStatus.active, BudgetStatus.cancelled}),
    BudgetStatus.cancelled: frozenset({BudgetStatus.active}),
}


def can_transition(current: BudgetStatus, target: BudgetStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def transition(current: BudgetStatus, target: BudgetStatus) -> BudgetStatus:
    if current == target:
        raise InvalidOperation(f"Budget is already {current.value}")
    if not can_transition(current, target):
        raise InvalidOperation(
            f"Budget cannot move from {current.value} to {target.value}"
        )
    return target


def is_goal_reached(current_amount: Decimal, target_amount: Optional[Decimal]) -> bool:
    if target_amount is None or target_amount <= 0:
        return False
    return current_amount >= target_amount


def ensure_accepts_contribution(status: BudgetStatus) -> None:
    if status == BudgetStatus.completed:
        raise InvalidOperation("Cannot contribute to a completed budget")
    if status == BudgetStatus.cancelled:
        raise InvalidOperation("Cannot contribute to a cancelled budget")


def ensure_accepts_withdrawal(status: BudgetStatus) -> None:
    if status == BudgetStatus.cancelled:
        raise InvalidOperation("Cannot withdraw from a cancelled budget")


def status_after_contribution(
    status: BudgetStatus,
    current_amount: Decimal,
    target_amount: Optional[Decimal],
) -> BudgetStatus:
    if status == BudgetStatus.active and is_goal_reached(current_amount, target_amount):
        return BudgetStatus.completed
    return status


def status_after_withdrawal(status: BudgetStatus) -> BudgetStatus:
    # Any withdrawal reopens the budget, even if the goal is still met.
    ensure_accepts_withdrawal(status)
    return BudgetStatus.active
