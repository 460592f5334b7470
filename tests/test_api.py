from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from auth import issue_session_token
from config import get_settings
from database import Base
from main import app, get_db


def _client() -> TestClient:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


def _create_card(client: TestClient) -> int:
    response = client.post(
        "/api/credit-cards",
        json={
            "name": "Nubank",
            "brand": "Mastercard",
            "bank": "Nu",
            "limit_cents": 500000,
            "closing_day": 5,
            "due_day": 12,
        },
    )
    assert response.status_code == 201
    return response.json()["id"]


def test_installment_lifecycle_over_http():
    client = _client()
    card_id = _create_card(client)

    response = client.post(
        "/api/transactions",
        json={
            "description": "Laptop",
            "amount_cents": 30000,
            "date": "2024-01-15",
            "kind": "expense",
            "credit_card_id": card_id,
            "installments": 3,
        },
    )
    assert response.status_code == 201
    rows = response.json()
    assert [(r["installment_number"], r["date"]) for r in rows] == [
        (1, "2024-01-15"),
        (2, "2024-02-15"),
        (3, "2024-03-15"),
    ]
    assert rows[0]["amount_display"] == "R$ 100,00"
    assert {r["group_key"] for r in rows} == {rows[0]["id"]}
    assert {r["group_kind"] for r in rows} == {"installment"}

    card = client.get(f"/api/credit-cards/{card_id}").json()
    assert card["current_used_cents"] == 30000

    response = client.put(
        f"/api/transactions/{rows[1]['id']}?scope=all",
        json={"amount_cents": 60000},
    )
    assert response.status_code == 200
    assert [r["amount_cents"] for r in response.json()] == [20000, 20000, 20000]

    response = client.delete(f"/api/transactions/{rows[0]['id']}?scope=all")
    assert response.json() == {"deleted": 3}
    assert client.get(f"/api/transactions/{rows[2]['id']}").status_code == 404
    assert client.get(f"/api/credit-cards/{card_id}").json()["current_used_cents"] == 0
    app.dependency_overrides.clear()


def test_create_errors_map_to_status_codes():
    client = _client()
    card_id = _create_card(client)
    base = {
        "description": "Phone",
        "amount_cents": 10000,
        "date": "2024-01-15",
        "kind": "expense",
        "credit_card_id": card_id,
    }

    response = client.post(
        "/api/transactions", json={**base, "installments": 3, "is_recurring": True}
    )
    assert response.status_code == 409

    response = client.post("/api/transactions", json={**base, "installments": 30})
    assert response.status_code == 422

    response = client.post(
        "/api/transactions",
        json={**base, "credit_card_id": None, "payment_method": "credit"},
    )
    assert response.status_code == 400

    response = client.post("/api/transactions", json={**base, "credit_card_id": 999})
    assert response.status_code == 404

    response = client.post(
        "/api/transactions", json={"amount_cents": 100, "kind": "expense"}
    )
    assert response.status_code == 422
    locations = {tuple(err["loc"]) for err in response.json()["detail"]}
    assert ("body", "description") in locations
    assert ("body", "date") in locations
    app.dependency_overrides.clear()


def test_summary_and_history_apply_card_carve_out():
    client = _client()
    card_id = _create_card(client)
    client.post(
        "/api/transactions",
        json={
            "description": "Groceries",
            "amount_cents": 10000,
            "date": "2024-05-03",
            "kind": "expense",
            "payment_method": "debit",
        },
    )
    client.post(
        "/api/transactions",
        json={
            "description": "Restaurant",
            "amount_cents": 5000,
            "date": "2024-05-04",
            "kind": "expense",
            "credit_card_id": card_id,
        },
    )

    summary = client.get("/api/financial-summary?year=2024&month=5").json()
    assert summary["total_expenses_cents"] == 15000
    assert summary["current_balance_cents"] == -15000

    history = client.get("/api/transactions").json()
    assert [item["description"] for item in history["items"]] == ["Groceries"]
    assert history["has_more"] is False

    series = client.get("/api/financial-series?year=2024&month=5&months=12").json()
    assert len(series) == 12
    assert series[-1]["total_expenses_cents"] == 15000
    assert client.get("/api/financial-series?months=7").status_code == 400
    app.dependency_overrides.clear()


def test_recurring_projection_over_http():
    client = _client()
    created = client.post(
        "/api/transactions",
        json={
            "description": "Salary",
            "amount_cents": 500000,
            "date": "2024-03-05",
            "kind": "income",
            "is_recurring": True,
        },
    ).json()
    anchor_id = created[0]["id"]
    assert created[0]["group_kind"] == "recurring"

    summary = client.get(
        "/api/financial-summary?year=2024&month=4&include_projections=true"
    ).json()
    assert summary["total_income_cents"] == 500000
    assert summary["projected_count"] == 1
    assert summary["projected_recurring"][0]["date"] == "2024-04-05"

    response = client.post(f"/api/transactions/{anchor_id}/occurrences?year=2024&month=4")
    assert response.status_code == 201
    assert response.json()["parent_transaction_id"] == anchor_id

    summary = client.get(
        "/api/financial-summary?year=2024&month=4&include_projections=true"
    ).json()
    assert summary["total_income_cents"] == 500000
    assert summary["projected_count"] == 0
    assert summary["projected_recurring"] == []

    series = client.get("/api/financial-series?year=2024&month=7&months=6").json()
    assert [p["total_income_cents"] for p in series] == [0, 500000, 500000, 500000, 500000, 500000]
    app.dependency_overrides.clear()


def test_date_change_with_scope_all_is_rejected():
    client = _client()
    anchor = client.post(
        "/api/transactions",
        json={
            "description": "Rent",
            "amount_cents": 150000,
            "date": "2024-03-10",
            "kind": "expense",
            "payment_method": "instant_transfer",
            "is_recurring": True,
        },
    ).json()[0]
    response = client.put(
        f"/api/transactions/{anchor['id']}?scope=all", json={"date": "2024-03-12"}
    )
    assert response.status_code == 400
    assert "date" in response.json()["detail"]

    response = client.put(
        f"/api/transactions/{anchor['id']}?scope=sometimes", json={"amount_cents": 1}
    )
    assert response.status_code == 422
    app.dependency_overrides.clear()


def test_session_requires_valid_credentials():
    client = _client()
    response = client.post(
        "/api/users", json={"email": "Bia@example.com", "password": "correct horse"}
    )
    assert response.status_code == 201
    user_id = response.json()["id"]

    duplicate = client.post(
        "/api/users", json={"email": "bia@example.com", "password": "another one"}
    )
    assert duplicate.status_code == 409

    wrong = client.post(
        "/api/session", json={"email": "bia@example.com", "password": "wrong horse"}
    )
    assert wrong.status_code == 401
    unknown = client.post(
        "/api/session", json={"email": "nobody@example.com", "password": "correct horse"}
    )
    assert unknown.status_code == 401

    response = client.post(
        "/api/session", json={"email": "bia@example.com", "password": "correct horse"}
    )
    assert response.status_code == 200
    body = response.json()
    assert body["user_id"] == user_id
    headers = {"Authorization": f"Bearer {body['token']}"}

    categories = client.get("/api/categories", headers=headers).json()
    assert len(categories) == 15

    other = {"Authorization": f"Bearer {issue_session_token(user_id + 1)}"}
    assert client.get("/api/categories", headers=other).json() == []

    bad = client.get("/api/categories", headers={"Authorization": "Bearer nope"})
    assert bad.status_code == 401
    app.dependency_overrides.clear()


def test_anonymous_requests_rejected_when_disabled(monkeypatch):
    client = _client()
    monkeypatch.setattr(get_settings(), "allow_anonymous", False)
    assert client.get("/api/categories").status_code == 401

    token = issue_session_token(1)
    response = client.get(
        "/api/categories", headers={"Authorization": f"Bearer {token}"}
    )
    assert response.status_code == 200
    app.dependency_overrides.clear()


def test_budget_endpoints():
    client = _client()
    category = client.post(
        "/api/categories",
        json={"name": "Food", "icon": "🍔", "color": "#ef4444", "type": "expense"},
    ).json()
    response = client.post(
        "/api/budgets",
        json={"category_id": category["id"], "amount_cents": 20000, "month": 5, "year": 2024},
    )
    assert response.status_code == 201
    client.post(
        "/api/transactions",
        json={
            "description": "Market",
            "amount_cents": 5000,
            "date": "2024-05-02",
            "kind": "expense",
            "category_id": category["id"],
            "payment_method": "cash",
        },
    )
    progress = client.get("/api/budgets/progress?year=2024&month=5").json()
    assert progress[0]["spent_cents"] == 5000
    assert progress[0]["remaining_cents"] == 15000

    assert client.delete(f"/api/budgets/{response.json()['id']}").status_code == 204
    assert client.get("/api/budgets?year=2024&month=5").json() == []
    assert client.delete("/api/budgets/999").status_code == 404
    app.dependency_overrides.clear()


def test_invoice_endpoints():
    client = _client()
    card_id = _create_card(client)
    client.post(
        "/api/transactions",
        json={
            "description": "Laptop",
            "amount_cents": 30000,
            "date": "2024-01-15",
            "kind": "expense",
            "credit_card_id": card_id,
            "installments": 3,
        },
    )

    invoice = client.get(f"/api/credit-card-invoices/{card_id}/2024-02-12").json()
    assert invoice["total_cents"] == 10000
    assert invoice["status"] == "pending"

    response = client.put(
        f"/api/credit-card-invoices/{invoice['id']}/pay", json={"amount_cents": 4000}
    )
    assert response.status_code == 200
    assert response.json()["status"] == "partial"
    assert client.get(f"/api/credit-cards/{card_id}").json()["current_used_cents"] == 26000

    assert (
        client.put(
            f"/api/credit-card-invoices/{invoice['id']}/pay", json={"amount_cents": 0}
        ).status_code
        == 422
    )
    assert (
        client.put("/api/credit-card-invoices/999/pay", json={"amount_cents": 100}).status_code
        == 404
    )
    assert client.get("/api/credit-card-invoices/999/2024-02-12").status_code == 404
    app.dependency_overrides.clear()
