from dataclasses import dataclass

WARNING_PERCENTAGE = 90.0


@dataclass(frozen=True)
class BudgetStatus:
    percentage: float
    status: str  # "ok" | "warning" | "over"
    remaining_cents: int


def budget_status(amount_cents: int, actual_spend_cents: int) -> BudgetStatus:
    percentage = (actual_spend_cents / amount_cents) * 100 if amount_cents > 0 else 0.0
    if actual_spend_cents >= amount_cents:
        status = "over"
    elif percentage >= WARNING_PERCENTAGE:
        status = "warning"
    else:
        status = "ok"
    return BudgetStatus(
        percentage=round(percentage, 2),
        status=status,
        remaining_cents=max(0, amount_cents - actual_spend_cents),
    )
