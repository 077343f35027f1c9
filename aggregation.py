"""Pure aggregation over already-fetched transactions.

Amounts are summed as integer cents and only converted to two-decimal numbers
when a payload is built, so long sums never accumulate float error.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Mapping, Optional, Sequence

from models import Category, Transaction, TransactionType
from periods import Bucket, Granularity, bucket_key_for

CENT = Decimal("0.01")


def cents_to_amount(cents: int) -> float:
    return cents / 100


def amount_to_cents(amount: Decimal) -> int:
    return int(
        (Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    )


def average_amount(total_cents: int, count: int) -> float:
    if count <= 0:
        return 0.0
    mean = (Decimal(total_cents) / Decimal(count) / 100).quantize(
        CENT, rounding=ROUND_HALF_UP
    )
    return float(mean)


@dataclass(frozen=True)
class Summary:
    income_cents: int = 0
    expense_cents: int = 0
    count: int = 0

    @property
    def net_cents(self) -> int:
        return self.income_cents - self.expense_cents

    def as_payload(self) -> dict[str, object]:
        return {
            "totalIncome": cents_to_amount(self.income_cents),
            "totalExpenses": cents_to_amount(self.expense_cents),
            "netIncome": cents_to_amount(self.net_cents),
            "transactionCount": self.count,
        }


def summarize(transactions: Iterable[Transaction]) -> Summary:
    income = 0
    expense = 0
    count = 0
    for txn in transactions:
        count += 1
        if txn.type == TransactionType.income:
            income += txn.amount_cents
        elif txn.type == TransactionType.expense:
            expense += txn.amount_cents
    return Summary(income_cents=income, expense_cents=expense, count=count)


def combine(first: Summary, second: Summary) -> Summary:
    return Summary(
        income_cents=first.income_cents + second.income_cents,
        expense_cents=first.expense_cents + second.expense_cents,
        count=first.count + second.count,
    )


def category_payload(
    category_id: Optional[int], categories: Mapping[int, Category]
) -> Optional[dict[str, object]]:
    if category_id is None:
        return None
    category = categories.get(category_id)
    if category is None:
        # Metadata could not be loaded; report the raw id only.
        return {"id": category_id, "name": None, "color": None, "amount": None}
    return {
        "id": category.id,
        "name": category.name,
        "color": category.color,
        "amount": cents_to_amount(category.amount_cents),
    }


def breakdown_by_category(
    transactions: Iterable[Transaction],
    categories: Mapping[int, Category],
    *,
    by_type: bool = False,
) -> list[dict[str, object]]:
    groups: dict[tuple[Optional[int], Optional[str]], list[int]] = {}
    for txn in transactions:
        type_key = txn.type.value if by_type else None
        totals = groups.setdefault((txn.category_id, type_key), [0, 0])
        totals[0] += txn.amount_cents
        totals[1] += 1

    ordered = sorted(
        groups.items(),
        key=lambda item: (
            -item[1][0],
            item[0][0] is None,
            item[0][0] or 0,
            item[0][1] or "",
        ),
    )

    breakdown: list[dict[str, object]] = []
    for (category_id, type_key), (total, count) in ordered:
        entry: dict[str, object] = {
            "category": category_payload(category_id, categories),
            "totalAmount": cents_to_amount(total),
            "transactionCount": count,
            "averageAmount": average_amount(total, count),
        }
        if by_type:
            entry["type"] = type_key
        breakdown.append(entry)
    return breakdown


@dataclass(frozen=True)
class TrendPoint:
    bucket: Bucket
    income_cents: int
    expense_cents: int

    @property
    def net_cents(self) -> int:
        return self.income_cents - self.expense_cents

    def amounts(self) -> dict[str, float]:
        return {
            "income": cents_to_amount(self.income_cents),
            "expenses": cents_to_amount(self.expense_cents),
            "net": cents_to_amount(self.net_cents),
        }


def trend(
    transactions: Iterable[Transaction],
    buckets: Sequence[Bucket],
    granularity: Granularity,
) -> list[TrendPoint]:
    totals: dict[str, list[int]] = {bucket.key: [0, 0] for bucket in buckets}
    for txn in transactions:
        slot = totals.get(bucket_key_for(txn.date, granularity))
        if slot is None:
            continue
        if txn.type == TransactionType.income:
            slot[0] += txn.amount_cents
        elif txn.type == TransactionType.expense:
            slot[1] += txn.amount_cents

    return [
        TrendPoint(
            bucket=bucket,
            income_cents=totals[bucket.key][0],
            expense_cents=totals[bucket.key][1],
        )
        for bucket in buckets
    ]
