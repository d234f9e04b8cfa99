from financials import summarize
from schemas import Task


def test_totals_are_kept_per_currency():
    tasks = [
        Task(id="T-001", initialDemand=1000, officialSettlement=800, motivation=50),
        Task(
            id="T-002",
            initialDemand=300,
            initialDemandCurrency="EUR",
            officialSettlement=200,
            officialSettlementCurrency="EUR",
            motivation=25,
        ),
    ]
    summary = summarize(tasks)
    assert list(summary) == ["EUR", "USD"]
    assert summary["USD"].totalInitialDemand == 1000
    assert summary["USD"].totalMotivation == 75
    assert summary["USD"].grandTotal == 875
    assert summary["EUR"].totalOfficialPayment == 200
    assert summary["EUR"].grandTotal == 200


def test_empty_summary_has_usd_row():
    summary = summarize([])
    assert list(summary) == ["USD"]
    assert summary["USD"].grandTotal == 0
