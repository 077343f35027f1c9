from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, Mapping, Optional

from sqlalchemy import case, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from aggregation import (
    amount_to_cents,
    breakdown_by_category,
    cents_to_amount,
    summarize,
    trend,
)
from cache import ANALYTICS, TRANSACTIONS, CacheFacade, build_key, owner_tag
from config import Settings, get_settings
from models import Category, Role, Transaction, TransactionType, User
from periods import (
    DEFAULT_LOOKBACK,
    Granularity,
    enumerate_buckets,
    local_today,
)
from schemas import CategoryIn, CategoryUpdate, TransactionIn, TransactionUpdate

logger = logging.getLogger(__name__)

DASHBOARD_TREND_MONTHS = 6
OVERVIEW_MONTHS = 12
RECENT_LIMIT = 5
MAX_TREND_BUCKETS = 366


class NotFoundError(ValueError):
    pass


class PermissionDenied(ValueError):
    pass


class CategoryInUse(ValueError):
    pass


@dataclass(frozen=True)
class Identity:
    id: int
    role: Role
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.admin

    @property
    def can_write(self) -> bool:
        return self.role in (Role.admin, Role.user)


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    start: Optional[date] = None
    end: Optional[date] = None
    search: Optional[str] = None


def transaction_payload(
    txn: Transaction, categories: Optional[Mapping[int, Category]] = None
) -> dict[str, object]:
    """Serialize a transaction.

    With ``categories`` the embedded category comes from that map instead of the
    relationship; an id missing from the map is reported without metadata.
    """
    if categories is None:
        category = txn.category
    elif txn.category_id is not None:
        category = categories.get(txn.category_id)
    else:
        category = None
    if category is not None:
        category_data = {
            "id": category.id,
            "name": category.name,
            "color": category.color,
        }
    elif txn.category_id is not None and categories is not None:
        category_data = {"id": txn.category_id, "name": None, "color": None}
    else:
        category_data = None
    return {
        "id": txn.id,
        "amount": cents_to_amount(txn.amount_cents),
        "type": txn.type.value,
        "categoryId": txn.category_id,
        "category": category_data,
        "note": txn.note,
        "date": txn.date.isoformat(),
        "userId": txn.user_id,
    }


def category_row_payload(
    category: Category, total_cents: int = 0, count: int = 0
) -> dict[str, object]:
    return {
        "id": category.id,
        "name": category.name,
        "amount": cents_to_amount(category.amount_cents),
        "color": category.color,
        "createdAt": category.created_at.isoformat() if category.created_at else None,
        "updatedAt": category.updated_at.isoformat() if category.updated_at else None,
        "totalAmount": cents_to_amount(total_cents),
        "transactionCount": count,
    }


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[dict[str, object]]:
        users = self.session.scalars(select(User).order_by(User.id)).all()
        return [
            {
                "id": user.id,
                "email": user.email,
                "name": user.name,
                "role": user.role.value,
                "createdAt": user.created_at.isoformat() if user.created_at else None,
            }
            for user in users
        ]


class CategoryService:
    def __init__(self, session: Session, cache: Optional[CacheFacade] = None) -> None:
        self.session = session
        self.cache = cache

    def list_all(self) -> list[dict[str, object]]:
        is_expense = Transaction.type == TransactionType.expense
        stmt = (
            select(
                Category,
                func.coalesce(
                    func.sum(case((is_expense, Transaction.amount_cents), else_=0)), 0
                ).label("total"),
                func.coalesce(func.sum(case((is_expense, 1), else_=0)), 0).label(
                    "count"
                ),
            )
            .outerjoin(Transaction, Transaction.category_id == Category.id)
            .group_by(Category.id)
            .order_by(Category.name)
        )
        return [
            category_row_payload(row[0], int(row.total or 0), int(row.count or 0))
            for row in self.session.execute(stmt).all()
        ]

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFoundError("Category not found")
        return category

    def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Category.id).where(func.lower(Category.name) == name.lower())
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if self._name_taken(name):
            raise ValueError("Category with this name already exists")
        category = Category(
            name=name,
            amount_cents=amount_to_cents(data.amount),
            color=data.color,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        category = self.get(category_id)
        if data.name is not None:
            name = data.name.strip()
            if name != category.name and self._name_taken(name, category.id):
                raise ValueError("Category with this name already exists")
            category.name = name
        if data.amount is not None:
            category.amount_cents = amount_to_cents(data.amount)
        if data.color is not None:
            category.color = data.color
        self.session.commit()
        self.session.refresh(category)
        self._invalidate_enrichment()
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        in_use = int(
            self.session.execute(
                select(func.count(Transaction.id)).where(
                    Transaction.category_id == category.id
                )
            ).scalar_one()
            or 0
        )
        if in_use:
            raise CategoryInUse(
                f"Cannot delete category. It is being used by {in_use} transaction(s)."
            )
        self.session.delete(category)
        self.session.commit()
        self._invalidate_enrichment()

    def _invalidate_enrichment(self) -> None:
        # Categories are global, so every user's analytics may embed them.
        if self.cache is not None:
            self.cache.invalidate(f"{ANALYTICS}:user:*")


class TransactionService:
    def __init__(
        self,
        session: Session,
        identity: Identity,
        cache: Optional[CacheFacade] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.identity = identity
        self.cache = cache
        self.settings = settings or get_settings()

    def _require_write(self) -> None:
        if not self.identity.can_write:
            raise PermissionDenied("Forbidden")

    def _check_category(self, category_id: Optional[int]) -> None:
        if category_id is not None and not self.session.get(Category, category_id):
            raise NotFoundError("Category not found")

    def _invalidate(self, user_id: int) -> None:
        if self.cache is not None:
            self.cache.invalidate_user(user_id)

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(Transaction.id == transaction_id)
        )
        if not self.identity.is_admin:
            stmt = stmt.where(Transaction.user_id == self.identity.id)
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def list(
        self,
        filters: TransactionFilters,
        *,
        page: int = 1,
        limit: int = 20,
        user_id: Optional[int] = None,
    ) -> dict[str, object]:
        if filters.start and filters.end and filters.start > filters.end:
            raise ValueError("Start date must be before end date")
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        if self.identity.is_admin:
            owner = user_id
        else:
            owner = self.identity.id

        def compute() -> dict[str, object]:
            return self._query_page(filters, page, limit, owner)

        if owner is None or self.cache is None:
            return compute()
        key = build_key(
            TRANSACTIONS,
            owner,
            "list",
            page=page,
            limit=limit,
            type=filters.type,
            category=filters.category_id,
            start=filters.start,
            end=filters.end,
            search=filters.search,
        )
        return self.cache.get_or_compute(
            key,
            self.settings.ttl_transactions_secs,
            compute,
            tags=(owner_tag(TRANSACTIONS, owner),),
        )

    def _query_page(
        self,
        filters: TransactionFilters,
        page: int,
        limit: int,
        owner: Optional[int],
    ) -> dict[str, object]:
        conditions = []
        if owner is not None:
            conditions.append(Transaction.user_id == owner)
        if filters.type:
            conditions.append(Transaction.type == filters.type)
        if filters.category_id:
            conditions.append(Transaction.category_id == filters.category_id)
        if filters.start:
            conditions.append(Transaction.date >= filters.start)
        if filters.end:
            conditions.append(Transaction.date <= filters.end)
        if filters.search:
            like = f"%{filters.search.lower()}%"
            conditions.append(
                func.lower(func.coalesce(Transaction.note, "")).like(like)
            )

        total = int(
            self.session.execute(
                select(func.count(Transaction.id)).where(*conditions)
            ).scalar_one()
            or 0
        )
        items = self.session.scalars(
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(*conditions)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        return {
            "items": [transaction_payload(txn) for txn in items],
            "total": total,
            "page": page,
            "limit": limit,
            "pages": math.ceil(total / limit),
        }

    def create(self, data: TransactionIn) -> Transaction:
        self._require_write()
        self._check_category(data.category_id)
        txn = Transaction(
            user_id=self.identity.id,
            date=data.date or local_today(),
            type=data.type,
            amount_cents=amount_to_cents(data.amount),
            category_id=data.category_id,
            note=data.note,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        logger.info(f"transaction_created: id={txn.id} user_id={txn.user_id}")
        self._invalidate(txn.user_id)
        return txn

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        self._require_write()
        txn = self.get(transaction_id)
        changes = data.model_dump(exclude_unset=True)
        if "category_id" in changes:
            self._check_category(changes["category_id"])
            txn.category_id = changes["category_id"]
        if changes.get("amount") is not None:
            txn.amount_cents = amount_to_cents(changes["amount"])
        if changes.get("type") is not None:
            txn.type = changes["type"]
        if "note" in changes:
            txn.note = changes["note"]
        if changes.get("date") is not None:
            txn.date = changes["date"]
        self.session.commit()
        self.session.refresh(txn)
        logger.info(f"transaction_updated: id={txn.id} user_id={txn.user_id}")
        self._invalidate(txn.user_id)
        return txn

    def delete(self, transaction_id: int) -> None:
        self._require_write()
        txn = self.get(transaction_id)
        owner = txn.user_id
        self.session.delete(txn)
        self.session.commit()
        logger.info(f"transaction_deleted: id={transaction_id} user_id={owner}")
        self._invalidate(owner)


class AnalyticsService:
    def __init__(
        self,
        session: Session,
        cache: CacheFacade,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.cache = cache
        self.settings = settings or get_settings()

    def _transactions(
        self,
        user_id: int,
        *,
        start: Optional[date] = None,
        end: Optional[date] = None,
        before: Optional[date] = None,
        transaction_type: Optional[TransactionType] = None,
        category_id: Optional[int] = None,
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.date.asc(), Transaction.id.asc())
        )
        if start is not None:
            stmt = stmt.where(Transaction.date >= start)
        if end is not None:
            stmt = stmt.where(Transaction.date <= end)
        if before is not None:
            stmt = stmt.where(Transaction.date < before)
        if transaction_type is not None:
            stmt = stmt.where(Transaction.type == transaction_type)
        if category_id is not None:
            stmt = stmt.where(Transaction.category_id == category_id)
        return list(self.session.scalars(stmt).all())

    def _category_lookup(
        self, transactions: Iterable[Transaction]
    ) -> dict[int, Category]:
        ids = {t.category_id for t in transactions if t.category_id is not None}
        if not ids:
            return {}
        # The savepoint keeps the outer transaction usable if the lookup fails.
        try:
            with self.session.begin_nested():
                rows = self.session.scalars(
                    select(Category).where(Category.id.in_(ids))
                ).all()
        except SQLAlchemyError as exc:
            logger.warning(f"category_lookup_failed: ids={sorted(ids)} error={exc}")
            return {}
        return {category.id: category for category in rows}

    def _recent(self, user_id: int) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(RECENT_LIMIT)
        )
        return list(self.session.scalars(stmt).all())

    def _monthly_trends(
        self, user_id: int, today: date, months: int
    ) -> list[dict[str, object]]:
        buckets = enumerate_buckets(today, months, Granularity.monthly)
        txns = self._transactions(
            user_id, start=buckets[0].start, before=buckets[-1].end
        )
        return [
            {"month": point.bucket.start.strftime("%Y-%m"), **point.amounts()}
            for point in trend(txns, buckets, Granularity.monthly)
        ]

    def dashboard(
        self, user_id: int, period_days: int = 30, *, today: Optional[date] = None
    ) -> dict[str, object]:
        if period_days < 1:
            raise ValueError("Period must be at least one day")
        today = today or local_today()
        key = build_key(
            ANALYTICS, user_id, "dashboard", period=period_days, asof=today
        )

        def compute() -> dict[str, object]:
            since = today - timedelta(days=period_days)
            txns = self._transactions(user_id, start=since)
            recent = self._recent(user_id)
            categories = self._category_lookup([*txns, *recent])
            return {
                "summary": summarize(txns).as_payload(),
                "categoryBreakdown": breakdown_by_category(
                    txns, categories, by_type=True
                ),
                "recentTransactions": [
                    transaction_payload(txn, categories) for txn in recent
                ],
                # Always the trailing six months, independent of period_days.
                "monthlyTrends": self._monthly_trends(
                    user_id, today, DASHBOARD_TREND_MONTHS
                ),
                "period": period_days,
            }

        return self.cache.get_or_compute(
            key,
            self.settings.ttl_dashboard_secs,
            compute,
            tags=(owner_tag(ANALYTICS, user_id),),
        )

    def category_analytics(
        self,
        user_id: int,
        *,
        start: Optional[date] = None,
        end: Optional[date] = None,
        transaction_type: Optional[TransactionType] = None,
    ) -> list[dict[str, object]]:
        """Per-category totals, counts and averages.

        All filters are combined with AND; both date bounds are inclusive.
        Without filters the user's whole history is covered.
        """
        if start and end and start > end:
            raise ValueError("Start date must be before end date")
        key = build_key(
            ANALYTICS,
            user_id,
            "category",
            start=start,
            end=end,
            type=transaction_type,
        )

        def compute() -> list[dict[str, object]]:
            txns = self._transactions(
                user_id, start=start, end=end, transaction_type=transaction_type
            )
            return breakdown_by_category(txns, self._category_lookup(txns))

        return self.cache.get_or_compute(
            key,
            self.settings.ttl_category_secs,
            compute,
            tags=(owner_tag(ANALYTICS, user_id),),
        )

    def spending_trends(
        self,
        user_id: int,
        granularity: Granularity = Granularity.monthly,
        *,
        category_id: Optional[int] = None,
        periods: Optional[int] = None,
        today: Optional[date] = None,
    ) -> list[dict[str, object]]:
        count = periods or DEFAULT_LOOKBACK[granularity]
        if count < 1 or count > MAX_TREND_BUCKETS:
            raise ValueError(f"Periods must be between 1 and {MAX_TREND_BUCKETS}")
        today = today or local_today()
        key = build_key(
            ANALYTICS,
            user_id,
            "trends",
            granularity=granularity,
            category=category_id,
            periods=count,
            asof=today,
        )

        def compute() -> list[dict[str, object]]:
            buckets = enumerate_buckets(today, count, granularity)
            txns = self._transactions(
                user_id,
                start=buckets[0].start,
                before=buckets[-1].end,
                category_id=category_id,
            )
            return [
                {"period": point.bucket.key, **point.amounts()}
                for point in trend(txns, buckets, granularity)
            ]

        return self.cache.get_or_compute(
            key,
            self.settings.ttl_trends_secs,
            compute,
            tags=(owner_tag(ANALYTICS, user_id),),
        )

    def monthly_overview(
        self, user_id: int, *, today: Optional[date] = None
    ) -> dict[str, list]:
        today = today or local_today()
        key = build_key(ANALYTICS, user_id, "monthly", asof=today)

        def compute() -> dict[str, list]:
            buckets = enumerate_buckets(today, OVERVIEW_MONTHS, Granularity.monthly)
            txns = self._transactions(
                user_id, start=buckets[0].start, before=buckets[-1].end
            )
            points = trend(txns, buckets, Granularity.monthly)
            return {
                "labels": [p.bucket.key for p in points],
                "incomes": [cents_to_amount(p.income_cents) for p in points],
                "expenses": [cents_to_amount(p.expense_cents) for p in points],
            }

        return self.cache.get_or_compute(
            key,
            self.settings.ttl_trends_secs,
            compute,
            tags=(owner_tag(ANALYTICS, user_id),),
        )

    def expense_by_category(self, user_id: int) -> dict[str, list]:
        key = build_key(ANALYTICS, user_id, "expense-category")

        def compute() -> dict[str, list]:
            txns = self._transactions(
                user_id, transaction_type=TransactionType.expense
            )
            labels: list[str] = []
            values: list[float] = []
            for entry in breakdown_by_category(txns, self._category_lookup(txns)):
                category = entry["category"]
                if category is None:
                    labels.append("Uncategorized")
                else:
                    labels.append(category["name"] or f"#{category['id']}")
                values.append(entry["totalAmount"])
            return {"labels": labels, "values": values}

        return self.cache.get_or_compute(
            key,
            self.settings.ttl_trends_secs,
            compute,
            tags=(owner_tag(ANALYTICS, user_id),),
        )
