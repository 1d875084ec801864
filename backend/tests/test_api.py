from types import SimpleNamespace

import pytest

from coloc_ledger import create_app
from coloc_ledger.api.routes import MEMORY_REPO_KEY
from coloc_ledger.domain.models import LedgerSnapshot

COLOC = "flat-1"
BASE = f"/api/colocations/{COLOC}"


def as_member(member_id):
    return {"X-Member-Id": member_id}


@pytest.fixture()
def app():
    app = create_app({"DATABASE_URL": "", "LOG_JSON": False, "TESTING": True})
    repo = app.extensions[MEMORY_REPO_KEY]
    for member in ("alice", "bob", "carol"):
        repo.add_member(colocation_id=COLOC, member_id=member)
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def create_rent(client, amount=3000):
    r = client.post(f"{BASE}/expenses", json={"title": "Rent", "amount": amount}, headers=as_member("alice"))
    assert r.status_code == 201
    return r.get_json()


def test_health(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    assert r.get_json() == {"status": "ok"}


def test_equal_expense_shows_in_balances(client):
    expense = create_rent(client)
    assert expense["paid_by"] == "alice"
    assert expense["split_type"] == "equal"
    assert expense["splits"] == [
        {"user_id": "alice", "amount": 1000},
        {"user_id": "bob", "amount": 1000},
        {"user_id": "carol", "amount": 1000},
    ]

    r = client.get(f"{BASE}/balances", headers=as_member("bob"))
    assert r.status_code == 200
    body = r.get_json()
    assert body["currency"] == "EUR"
    assert body["balances"] == [
        {"user_id": "alice", "total_paid": 3000, "total_owed": 1000, "net_balance": 2000},
        {"user_id": "bob", "total_paid": 0, "total_owed": 1000, "net_balance": -1000},
        {"user_id": "carol", "total_paid": 0, "total_owed": 1000, "net_balance": -1000},
    ]


def test_confirmed_payment_settles_simplified_debts(client):
    create_rent(client)

    r = client.get(f"{BASE}/balances/simplified", headers=as_member("carol"))
    assert r.get_json()["debts"] == [
        {"from_user_id": "bob", "to_user_id": "alice", "amount": 1000},
        {"from_user_id": "carol", "to_user_id": "alice", "amount": 1000},
    ]

    r = client.post(f"{BASE}/payments", json={"to_user_id": "alice", "amount": "10.00"}, headers=as_member("bob"))
    assert r.status_code == 201
    payment = r.get_json()
    assert payment["status"] == "pending"
    assert payment["amount"] == 1000

    r = client.post(f"{BASE}/payments/{payment['id']}/confirm", headers=as_member("alice"))
    assert r.status_code == 200
    assert r.get_json()["status"] == "confirmed"

    r = client.get(f"{BASE}/balances/simplified", headers=as_member("carol"))
    assert r.get_json()["debts"] == [{"from_user_id": "carol", "to_user_id": "alice", "amount": 1000}]


def test_percentage_expense_with_decimal_string_percentages(client):
    r = client.post(
        f"{BASE}/expenses",
        json={
            "title": "Internet",
            "amount": 100,
            "split_type": "percentage",
            "splits": [
                {"user_id": "alice", "percentage": "33.33"},
                {"user_id": "bob", "percentage": "33.33"},
                {"user_id": "carol", "percentage": "33.34"},
            ],
        },
        headers=as_member("bob"),
    )
    assert r.status_code == 201
    assert [s["amount"] for s in r.get_json()["splits"]] == [33, 33, 34]


def test_missing_member_header_is_unauthenticated(client):
    r = client.get(f"{BASE}/balances")
    assert r.status_code == 401
    assert r.get_json()["error"]["code"] == "unauthenticated"


def test_non_member_is_forbidden(client):
    r = client.get(f"{BASE}/balances", headers=as_member("mallory"))
    assert r.status_code == 403
    assert r.get_json()["error"]["code"] == "forbidden"


def test_custom_split_mismatch_is_unprocessable(client):
    r = client.post(
        f"{BASE}/expenses",
        json={
            "title": "Groceries",
            "amount": 1000,
            "split_type": "custom",
            "splits": [{"user_id": "alice", "amount": 500}, {"user_id": "bob", "amount": 499}],
        },
        headers=as_member("alice"),
    )
    assert r.status_code == 422
    assert r.get_json()["error"]["code"] == "invalid_split"


@pytest.mark.parametrize(
    "payload, code",
    [
        ({"title": "Rent", "amount": 12.5}, "bad_request"),
        ({"title": "", "amount": 100}, "bad_request"),
        ({"title": "Rent", "amount": "1,234.56"}, "invalid_amount"),
        ({"title": "Rent", "amount": 100, "split_type": "weird"}, "bad_request"),
    ],
)
def test_invalid_expense_payloads(client, payload, code):
    r = client.post(f"{BASE}/expenses", json=payload, headers=as_member("alice"))
    assert r.status_code == 400
    assert r.get_json()["error"]["code"] == code


def test_settled_payment_cannot_be_confirmed_twice(client):
    r = client.post(f"{BASE}/payments", json={"to_user_id": "alice", "amount": 500}, headers=as_member("bob"))
    payment_id = r.get_json()["id"]

    assert client.post(f"{BASE}/payments/{payment_id}/reject", headers=as_member("alice")).status_code == 200
    r = client.post(f"{BASE}/payments/{payment_id}/confirm", headers=as_member("alice"))
    assert r.status_code == 409
    assert r.get_json()["error"]["code"] == "invalid_transition"


def test_only_sender_cancels_payment(client):
    r = client.post(f"{BASE}/payments", json={"to_user_id": "alice", "amount": 500}, headers=as_member("bob"))
    payment_id = r.get_json()["id"]

    r = client.delete(f"{BASE}/payments/{payment_id}", headers=as_member("alice"))
    assert r.status_code == 403

    r = client.delete(f"{BASE}/payments/{payment_id}", headers=as_member("bob"))
    assert r.status_code == 200
    assert r.get_json()["status"] == "cancelled"

    r = client.get(f"{BASE}/payments", query_string={"status": "cancelled"}, headers=as_member("carol"))
    assert r.get_json()["total"] == 1


def test_unknown_records_are_not_found(client):
    r = client.get(f"{BASE}/expenses/nope", headers=as_member("alice"))
    assert r.status_code == 404
    assert r.get_json()["error"]["code"] == "not_found"

    r = client.post(f"{BASE}/payments/nope/confirm", headers=as_member("alice"))
    assert r.status_code == 404


def test_update_and_delete_expense(client):
    expense = create_rent(client)
    url = f"{BASE}/expenses/{expense['id']}"

    r = client.put(url, json={"amount": 3001}, headers=as_member("bob"))
    assert r.status_code == 403

    r = client.put(url, json={"amount": 3001}, headers=as_member("alice"))
    assert r.status_code == 200
    assert [s["amount"] for s in r.get_json()["splits"]] == [1001, 1000, 1000]

    r = client.put(url, json={"splits": [{"user_id": "bob"}]}, headers=as_member("alice"))
    assert r.status_code == 400

    assert client.delete(url, headers=as_member("alice")).status_code == 204
    assert client.get(url, headers=as_member("alice")).status_code == 404


def test_list_expenses_pagination(client):
    for _ in range(3):
        create_rent(client, amount=300)
    r = client.get(f"{BASE}/expenses", query_string={"page_size": 2}, headers=as_member("bob"))
    body = r.get_json()
    assert (body["total"], body["page"], body["page_size"], len(body["expenses"])) == (3, 1, 2, 2)

    r = client.get(f"{BASE}/expenses", query_string={"page": 0}, headers=as_member("bob"))
    assert r.status_code == 400


def test_balance_history_endpoint(client):
    create_rent(client)
    r = client.get(f"{BASE}/balances/history", headers=as_member("carol"))
    assert r.status_code == 200
    history = r.get_json()["history"]
    assert [(h["event_type"], h["amount"], h["running_balance"]) for h in history] == [("expense", -1000, -1000)]

    r = client.get(f"{BASE}/balances/history", query_string={"start": "yesterday"}, headers=as_member("carol"))
    assert r.status_code == 400


def test_unbalanced_ledger_fails_closed(client, monkeypatch):
    broken = SimpleNamespace(
        payer_id="alice",
        amount_cents=1000,
        splits=(SimpleNamespace(member_id="alice", share_cents=500), SimpleNamespace(member_id="bob", share_cents=499)),
    )

    class FakeRepo:
        enabled = True

        def is_member(self, *, colocation_id, member_id):
            return True

        def load_snapshot(self, *, colocation_id):
            return LedgerSnapshot(colocation_id=colocation_id, members=("alice", "bob"), expenses=(broken,))

    monkeypatch.setattr("coloc_ledger.api.routes._repo", lambda: FakeRepo())

    r = client.get(f"{BASE}/balances/simplified", headers=as_member("alice"))
    assert r.status_code == 500
    assert r.get_json()["error"] == {"code": "ledger_unbalanced", "message": "Ledger integrity check failed."}


def test_overflowing_percentage_is_unprocessable(client):
    r = client.post(
        f"{BASE}/expenses",
        json={
            "title": "Internet",
            "amount": 1000,
            "split_type": "percentage",
            "splits": [
                {"user_id": "alice", "percentage": "1e999999999"},
                {"user_id": "bob", "percentage": "0"},
            ],
        },
        headers=as_member("alice"),
    )
    assert r.status_code == 422
    assert r.get_json()["error"]["code"] == "invalid_split"


@pytest.mark.parametrize(
    "payload",
    [
        {"title": "Rent", "amount": 10 ** 19},
        {
            "title": "Rent",
            "amount": 1000,
            "split_type": "custom",
            "splits": [{"user_id": "alice", "amount": 10 ** 19}, {"user_id": "bob", "amount": 0}],
        },
    ],
)
def test_integer_amounts_share_the_safety_limit(client, payload):
    r = client.post(f"{BASE}/expenses", json=payload, headers=as_member("alice"))
    assert r.status_code == 400
    assert r.get_json()["error"]["code"] == "invalid_amount"


def test_non_uuid_ids_never_reach_postgres():
    # nothing listens on this port; any query would fail with db_error
    app = create_app({"DATABASE_URL": "postgresql://ledger@127.0.0.1:1/ledger", "LOG_JSON": False})
    client = app.test_client()

    r = client.get(f"{BASE}/balances", headers=as_member("alice"))
    assert r.status_code == 403
    assert r.get_json()["error"]["code"] == "forbidden"

    r = client.get(
        "/api/colocations/flat-1/expenses", headers=as_member("0b6f1a52-8a0e-4c1e-9d0a-3f7e2c1b9a11")
    )
    assert r.status_code == 403
