"""Milestone arithmetic shared by the services and the ledger backend."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

# A deal finishes when the milestone at this index is approved.
FINAL_MILESTONE_INDEX = 6

LEDGER_AMOUNT_QUANTUM = Decimal("0.000001")


def quantize_amount(amount: Decimal) -> Decimal:
    """Round an IOU amount to six decimal places."""
    return amount.quantize(LEDGER_AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)


def format_amount(amount: Decimal) -> str:
    return f"{quantize_amount(amount):f}"


def milestone_payout(balance: Decimal, percentage: int | Decimal) -> Decimal:
    """Amount released for one milestone: ``round(balance * pct / 100, 6)``.

    ``balance`` is the vault balance at payout time, not the initial deposit,
    so each percentage applies to what is left after earlier milestones.
    """
    return quantize_amount(balance * Decimal(percentage) / Decimal(100))


def is_final_milestone(index: int) -> bool:
    return index == FINAL_MILESTONE_INDEX


def approval_message(milestone_index: int, deal_reference: str | int) -> str:
    """Canonical text a buyer signs to approve a milestone advance."""
    return f"Approve milestone {milestone_index} of deal {deal_reference}"
