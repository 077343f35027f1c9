from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from cache import CacheFacade, MemoryCacheStore
from database import Base
from models import Category, Role, Transaction, TransactionType, User
from schemas import CategoryIn, CategoryUpdate, TransactionIn, TransactionUpdate
from services import (
    AnalyticsService,
    CategoryInUse,
    CategoryService,
    Identity,
    NotFoundError,
    PermissionDenied,
    TransactionFilters,
    TransactionService,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def seed(session) -> None:
    session.add_all(
        [
            User(id=1, email="ana@example.com", role=Role.user),
            User(id=2, email="ben@example.com", role=Role.user),
        ]
    )
    session.commit()


def test_category_in_use_cannot_be_deleted() -> None:
    session = make_session()
    seed(session)
    categories = CategoryService(session)
    food = categories.create(CategoryIn(name="Food", amount=Decimal("300")))
    session.add(
        Transaction(
            user_id=1,
            date=date(2025, 1, 1),
            type=TransactionType.expense,
            amount_cents=500,
            category_id=food.id,
        )
    )
    session.commit()

    with pytest.raises(CategoryInUse) as excinfo:
        categories.delete(food.id)
    assert "used by 1 transaction(s)" in str(excinfo.value)
    assert session.get(Category, food.id) is not None


def test_unused_category_is_deleted() -> None:
    session = make_session()
    categories = CategoryService(session)
    travel = categories.create(CategoryIn(name="Travel"))

    categories.delete(travel.id)

    assert session.get(Category, travel.id) is None
    with pytest.raises(NotFoundError):
        categories.delete(travel.id)


def test_category_names_are_unique_ignoring_case() -> None:
    session = make_session()
    categories = CategoryService(session)
    categories.create(CategoryIn(name="Food"))
    other = categories.create(CategoryIn(name="Fuel"))

    with pytest.raises(ValueError, match="already exists"):
        categories.create(CategoryIn(name="  fOOd "))
    with pytest.raises(ValueError, match="already exists"):
        categories.update(other.id, CategoryUpdate(name="FOOD"))

    renamed = categories.update(other.id, CategoryUpdate(name="Fuel & Parking"))
    assert renamed.name == "Fuel & Parking"


def test_category_listing_totals_only_count_expenses() -> None:
    session = make_session()
    seed(session)
    categories = CategoryService(session)
    food = categories.create(CategoryIn(name="Food", amount=Decimal("250.50")))
    categories.create(CategoryIn(name="Empty"))
    for txn_type, cents in [
        (TransactionType.expense, 1_200),
        (TransactionType.expense, 800),
        (TransactionType.income, 10_000),
    ]:
        session.add(
            Transaction(
                user_id=1,
                date=date(2025, 2, 1),
                type=txn_type,
                amount_cents=cents,
                category_id=food.id,
            )
        )
    session.commit()

    rows = {row["name"]: row for row in categories.list_all()}

    assert rows["Food"]["amount"] == 250.5
    assert rows["Food"]["totalAmount"] == 20.0
    assert rows["Food"]["transactionCount"] == 2
    assert rows["Empty"]["totalAmount"] == 0
    assert rows["Empty"]["transactionCount"] == 0


def test_category_update_refreshes_cached_analytics() -> None:
    session = make_session()
    seed(session)
    cache = CacheFacade(MemoryCacheStore())
    categories = CategoryService(session, cache)
    food = categories.create(CategoryIn(name="Food"))
    session.add(
        Transaction(
            user_id=1,
            date=date(2025, 1, 1),
            type=TransactionType.expense,
            amount_cents=500,
            category_id=food.id,
        )
    )
    session.commit()
    analytics = AnalyticsService(session, cache)

    assert analytics.category_analytics(1)[0]["category"]["name"] == "Food"
    categories.update(food.id, CategoryUpdate(name="Groceries"))
    assert analytics.category_analytics(1)[0]["category"]["name"] == "Groceries"


def test_read_only_identity_cannot_write() -> None:
    session = make_session()
    seed(session)
    service = TransactionService(session, Identity(id=1, role=Role.read_only))

    with pytest.raises(PermissionDenied):
        service.create(TransactionIn(amount=Decimal("1"), type=TransactionType.expense))


def test_users_only_see_their_own_transactions() -> None:
    session = make_session()
    seed(session)
    ana = TransactionService(session, Identity(id=1, role=Role.user))
    ben = TransactionService(session, Identity(id=2, role=Role.user))
    admin = TransactionService(session, Identity(id=99, role=Role.admin))
    txn = ana.create(
        TransactionIn(amount=Decimal("12.30"), type=TransactionType.expense, note="Taxi")
    )

    with pytest.raises(NotFoundError):
        ben.get(txn.id)
    with pytest.raises(NotFoundError):
        ben.update(txn.id, TransactionUpdate(note="mine now"))

    updated = admin.update(txn.id, TransactionUpdate(note="Airport taxi"))
    assert updated.note == "Airport taxi"
    assert updated.user_id == 1
    assert updated.amount_cents == 1_230


def test_transaction_with_unknown_category_is_rejected() -> None:
    session = make_session()
    seed(session)
    service = TransactionService(session, Identity(id=1, role=Role.user))

    with pytest.raises(NotFoundError):
        service.create(
            TransactionIn(amount=Decimal("3"), type=TransactionType.expense, categoryId=42)
        )


def test_transaction_listing_filters_and_paginates() -> None:
    session = make_session()
    seed(session)
    service = TransactionService(
        session, Identity(id=1, role=Role.user), CacheFacade(MemoryCacheStore())
    )
    for day in range(1, 6):
        service.create(
            TransactionIn(
                amount=Decimal(day),
                type=TransactionType.expense,
                note=f"Coffee {day}" if day % 2 else "Bus",
                date=date(2025, 1, day),
            )
        )

    page = service.list(TransactionFilters(search="coffee"), page=1, limit=2)

    assert page["total"] == 3
    assert page["pages"] == 2
    assert [item["date"] for item in page["items"]] == ["2025-01-05", "2025-01-03"]

    bounded = service.list(
        TransactionFilters(start=date(2025, 1, 2), end=date(2025, 1, 4))
    )
    assert bounded["total"] == 3

    with pytest.raises(ValueError):
        service.list(TransactionFilters(start=date(2025, 2, 1), end=date(2025, 1, 1)))
