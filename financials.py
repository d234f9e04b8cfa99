"""
Per-currency financial totals over a set of (already visible) tasks.

Each task carries three independent (amount, currency) pairs. Totals are kept
per currency; ``grandTotal`` is official settlement plus motivation (the
initial demand is a claim, not money paid).
"""
from typing import Dict, Iterable

from pydantic import BaseModel

from schemas import Task


class FinancialTotals(BaseModel):
    totalInitialDemand: float = 0.0
    totalOfficialPayment: float = 0.0
    totalMotivation: float = 0.0
    grandTotal: float = 0.0


def summarize(tasks: Iterable[Task]) -> Dict[str, FinancialTotals]:
    summary: Dict[str, FinancialTotals] = {}

    def bucket(currency: str) -> FinancialTotals:
        return summary.setdefault(currency or "USD", FinancialTotals())

    for t in tasks:
        if t.initialDemand:
            bucket(t.initialDemandCurrency).totalInitialDemand += t.initialDemand
        if t.officialSettlement:
            bucket(t.officialSettlementCurrency).totalOfficialPayment += t.officialSettlement
        if t.motivation:
            bucket(t.motivationCurrency).totalMotivation += t.motivation

    for totals in summary.values():
        totals.grandTotal = totals.totalOfficialPayment + totals.totalMotivation

    if not summary:
        summary["USD"] = FinancialTotals()
    return dict(sorted(summary.items()))
