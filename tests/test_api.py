import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from cache import CacheFacade, MemoryCacheStore, get_cache
from database import Base, get_session
from main import app
from models import Role, User

ADMIN = {"X-User-Id": "9", "X-User-Role": "ADMIN"}
ANA = {"X-User-Id": "1", "X-User-Role": "USER"}
VIEWER = {"X-User-Id": "1", "X-User-Role": "READ_ONLY"}


@pytest.fixture
def client():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with SessionLocal() as session:
        session.add_all(
            [
                User(id=1, email="ana@example.com", role=Role.user),
                User(id=9, email="admin@example.com", role=Role.admin),
            ]
        )
        session.commit()

    def override_session():
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()

    cache = CacheFacade(MemoryCacheStore())
    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_cache] = lambda: cache
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_requests_without_identity_are_rejected(client) -> None:
    assert client.get("/api/analytics/dashboard").status_code == 401
    bad = client.get("/api/analytics/dashboard", headers={"X-User-Id": "abc"})
    assert bad.status_code == 401


def test_health_reports_cache_state(client) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"ok": True, "cache": True}


def test_transaction_flow_feeds_analytics(client) -> None:
    created = client.post(
        "/api/categories", json={"name": "Food", "color": "#ff0000"}, headers=ADMIN
    )
    assert created.status_code == 200
    category_id = created.json()["id"]

    empty = client.get("/api/analytics/dashboard", headers=ANA).json()
    assert empty["summary"]["transactionCount"] == 0

    response = client.post(
        "/api/transactions",
        json={"amount": 12.5, "type": "EXPENSE", "categoryId": category_id},
        headers=ANA,
    )
    assert response.status_code == 201
    txn = response.json()["transaction"]
    assert txn["amount"] == 12.5
    assert txn["category"]["name"] == "Food"

    dashboard = client.get("/api/analytics/dashboard?period=7", headers=ANA).json()
    assert dashboard["summary"]["totalExpenses"] == 12.5
    assert dashboard["period"] == 7
    assert len(dashboard["monthlyTrends"]) == 6

    stats = client.get("/api/analytics/category?type=expense", headers=ANA).json()
    assert stats["categoryAnalytics"][0]["category"]["name"] == "Food"

    listing = client.get("/api/transactions", headers=ANA).json()
    assert listing["total"] == 1


def test_trends_endpoint_uses_granularity_lookback(client) -> None:
    weekly = client.get("/api/analytics/trends?period=weekly", headers=ANA)
    assert weekly.status_code == 200
    assert len(weekly.json()["trends"]) == 12

    daily = client.get("/api/analytics/trends?period=daily&periods=3", headers=ANA)
    assert len(daily.json()["trends"]) == 3

    assert client.get("/api/analytics/trends?period=hourly", headers=ANA).status_code == 422


def test_invalid_filters_are_client_errors(client) -> None:
    bad_date = client.get("/api/analytics/category?startDate=not-a-date", headers=ANA)
    assert bad_date.status_code == 400

    reversed_range = client.get(
        "/api/analytics/category?startDate=2025-02-01&endDate=2025-01-01", headers=ANA
    )
    assert reversed_range.status_code == 400

    bad_type = client.get("/api/analytics/category?type=refund", headers=ANA)
    assert bad_type.status_code == 400


def test_category_writes_require_admin_and_guard_deletion(client) -> None:
    forbidden = client.post("/api/categories", json={"name": "Rent"}, headers=ANA)
    assert forbidden.status_code == 403

    category_id = client.post(
        "/api/categories", json={"name": "Rent"}, headers=ADMIN
    ).json()["id"]
    client.post(
        "/api/transactions",
        json={"amount": 900, "type": "EXPENSE", "categoryId": category_id},
        headers=ANA,
    )

    refused = client.delete(f"/api/categories/{category_id}", headers=ADMIN)
    assert refused.status_code == 400
    assert "being used by 1 transaction(s)" in refused.json()["detail"]


def test_read_only_identity_cannot_create_transactions(client) -> None:
    response = client.post(
        "/api/transactions", json={"amount": 5, "type": "INCOME"}, headers=VIEWER
    )
    assert response.status_code == 403

    missing = client.get("/api/transactions/12345", headers=VIEWER)
    assert missing.status_code == 404


def test_user_listing_is_admin_only(client) -> None:
    assert client.get("/api/users", headers=ANA).status_code == 403

    response = client.get("/api/users", headers=ADMIN)
    assert response.status_code == 200
    users = response.json()
    assert [(u["id"], u["email"], u["role"]) for u in users] == [
        (1, "ana@example.com", "USER"),
        (9, "admin@example.com", "ADMIN"),
    ]
    assert "password" not in users[0]
