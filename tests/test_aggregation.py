from datetime import date
from decimal import Decimal
from typing import Optional

from aggregation import (
    Summary,
    amount_to_cents,
    breakdown_by_category,
    combine,
    summarize,
    trend,
)
from models import Category, Transaction, TransactionType
from periods import Granularity, enumerate_buckets


def _txn(
    amount_cents: int,
    type: TransactionType = TransactionType.expense,
    category_id: Optional[int] = None,
    on: date = date(2025, 1, 10),
) -> Transaction:
    return Transaction(
        user_id=1,
        date=on,
        type=type,
        amount_cents=amount_cents,
        category_id=category_id,
    )


def test_summarize_empty_is_all_zero() -> None:
    summary = summarize([])
    assert summary == Summary(0, 0, 0)
    assert summary.as_payload() == {
        "totalIncome": 0,
        "totalExpenses": 0,
        "netIncome": 0,
        "transactionCount": 0,
    }


def test_summarize_is_additive_over_disjoint_sets() -> None:
    first = [
        _txn(200_000, TransactionType.income),
        _txn(1_299),
        _txn(5_000),
    ]
    second = [_txn(15_000), _txn(30_000, TransactionType.income)]

    assert summarize(first + second) == combine(summarize(first), summarize(second))
    assert summarize(first + second).net_cents == 230_000 - 21_299


def test_summation_does_not_drift() -> None:
    txns = [_txn(10, TransactionType.income) for _ in range(1000)]
    payload = summarize(txns).as_payload()
    assert payload["totalIncome"] == 100.0
    assert payload["netIncome"] == 100.0


def test_amount_to_cents_rounds_half_up() -> None:
    assert amount_to_cents(Decimal("0.1")) == 10
    assert amount_to_cents(Decimal("12.345")) == 1235
    assert amount_to_cents(Decimal("2000")) == 200_000


def test_breakdown_groups_by_category_with_uncategorized_entry() -> None:
    food = Category(id=1, name="Food", amount_cents=80_000, color="#ff0000")
    txns = [
        _txn(1_000, category_id=1),
        _txn(1_000, category_id=1),
        _txn(1_001, category_id=1),
        _txn(250_000, TransactionType.income),
        _txn(700, category_id=99),
    ]

    breakdown = breakdown_by_category(txns, {1: food})

    assert [entry["category"] for entry in breakdown] == [
        None,
        {"id": 1, "name": "Food", "color": "#ff0000", "amount": 800.0},
        {"id": 99, "name": None, "color": None, "amount": None},
    ]
    food_entry = breakdown[1]
    assert food_entry["totalAmount"] == 30.01
    assert food_entry["transactionCount"] == 3
    assert food_entry["averageAmount"] == 10.0
    assert breakdown[0]["averageAmount"] == 2500.0


def test_breakdown_by_type_splits_a_category() -> None:
    txns = [
        _txn(5_000, TransactionType.expense, category_id=1),
        _txn(2_000, TransactionType.income, category_id=1),
    ]

    breakdown = breakdown_by_category(txns, {}, by_type=True)

    assert [(e["type"], e["totalAmount"]) for e in breakdown] == [
        ("EXPENSE", 50.0),
        ("INCOME", 20.0),
    ]


def test_breakdown_of_nothing_is_empty() -> None:
    assert breakdown_by_category([], {}) == []


def test_trend_reports_every_bucket_even_when_empty() -> None:
    buckets = enumerate_buckets(date(2025, 3, 15), 12, Granularity.monthly)
    points = trend([], buckets, Granularity.monthly)

    assert len(points) == len(buckets)
    assert all(p.income_cents == 0 and p.expense_cents == 0 for p in points)


def test_trend_sums_per_bucket_and_ignores_out_of_window() -> None:
    buckets = enumerate_buckets(date(2025, 1, 15), 3, Granularity.weekly)
    txns = [
        _txn(10_000, TransactionType.income, on=date(2024, 12, 29)),
        _txn(2_500, on=date(2025, 1, 4)),
        _txn(1_000, on=date(2025, 1, 12)),
        _txn(9_999, on=date(2024, 12, 1)),
        _txn(9_999, on=date(2025, 1, 19)),
    ]

    points = trend(txns, buckets, Granularity.weekly)

    assert [p.bucket.key for p in points] == ["2024-12-29", "2025-01-05", "2025-01-12"]
    assert points[0].amounts() == {"income": 100.0, "expenses": 25.0, "net": 75.0}
    assert points[1].amounts() == {"income": 0.0, "expenses": 0.0, "net": 0.0}
    assert points[2].amounts() == {"income": 0.0, "expenses": 10.0, "net": -10.0}
