from __future__ import annotations

import uuid
from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_api.core.config import get_settings
from crm_api.core.database import Base, get_db
from crm_api.main import app
from crm_api.middleware.rate_limit import reset_rate_limiter
from crm_api.store.models import ActivityLog, AppUser, Deal, UserAssignment


PASSWORD = "Str0ng!Passw0rd"


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("IDENTITY_BACKEND", "local")
    monkeypatch.setenv("PASSWORD_HASH_ROUNDS", "4")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def sign_up(client: TestClient) -> Callable[[str, str], dict[str, str]]:
    """Registers a user with the given role and returns its auth headers and id."""

    def _sign_up(email: str, role: str) -> dict[str, str]:
        response = client.post(
            "/api/auth/register",
            json={"email": email, "password": PASSWORD, "firstName": role.title(), "lastName": "User", "role": role},
        )
        assert response.status_code == 201
        body = response.json()
        return {"Authorization": f"Bearer {body['session']['access_token']}", "id": body["user"]["id"]}

    return _sign_up


def _headers(identity: dict[str, str]) -> dict[str, str]:
    return {"Authorization": identity["Authorization"]}


def _create_customer(client: TestClient, headers: dict[str, str], name: str = "Acme Corp") -> dict:
    response = client.post("/api/customers", json={"company_name": name, "industry": "Tools"}, headers=headers)
    assert response.status_code == 201
    return response.json()


def test_customer_crud(client: TestClient, sign_up: Callable[[str, str], dict[str, str]], db_session: Session) -> None:
    headers = _headers(sign_up("agent@example.com", "agent"))
    customer = _create_customer(client, headers)
    assert customer["company_name"] == "Acme Corp"

    listed = client.get("/api/customers", headers=headers)
    assert listed.status_code == 200
    assert [item["id"] for item in listed.json()] == [customer["id"]]

    updated = client.put(
        f"/api/customers/{customer['id']}",
        json={"company_name": "Acme Holdings", "industry": None, "phone": "+1 555 0100"},
        headers=headers,
    )
    assert updated.status_code == 200
    assert updated.json()["company_name"] == "Acme Holdings"
    assert updated.json()["industry"] is None

    deleted = client.delete(f"/api/customers/{customer['id']}", headers=headers)
    assert deleted.status_code == 204
    assert client.get("/api/customers", headers=headers).json() == []

    actions = db_session.scalars(select(ActivityLog.action).order_by(ActivityLog.created_at)).all()
    assert actions == ["create customer", "update customer", "delete customer"]


def test_customer_missing_required_field_is_rejected(
    client: TestClient,
    sign_up: Callable[[str, str], dict[str, str]],
) -> None:
    headers = _headers(sign_up("agent@example.com", "agent"))
    response = client.post("/api/customers", json={"industry": "Tools"}, headers=headers)
    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "ValidationError"
    assert body["message"] == "Missing required field: company_name"
    assert body["details"][0]["field"] == "company_name"


def test_unknown_fields_are_rejected(client: TestClient, sign_up: Callable[[str, str], dict[str, str]]) -> None:
    headers = _headers(sign_up("agent@example.com", "agent"))
    response = client.post("/api/customers", json={"company_name": "A", "owner": "me"}, headers=headers)
    assert response.status_code == 400
    assert response.json()["code"] == "ValidationError"


def test_update_of_unknown_record_is_not_found(
    client: TestClient,
    sign_up: Callable[[str, str], dict[str, str]],
) -> None:
    headers = _headers(sign_up("agent@example.com", "agent"))
    response = client.put(f"/api/customers/{uuid.uuid4()}", json={"company_name": "Nobody"}, headers=headers)
    assert response.status_code == 404
    assert response.json()["code"] == "NotFound"


def test_contacts_are_listed_with_company_name(
    client: TestClient,
    sign_up: Callable[[str, str], dict[str, str]],
) -> None:
    headers = _headers(sign_up("agent@example.com", "agent"))
    customer = _create_customer(client, headers)

    created = client.post(
        "/api/contacts",
        json={"first_name": "Jane", "last_name": "Doe", "position": "CTO", "customer_id": customer["id"]},
        headers=headers,
    )
    assert created.status_code == 201
    orphan = client.post("/api/contacts", json={"first_name": "Solo", "last_name": "Contact"}, headers=headers)
    assert orphan.status_code == 201

    listed = {item["first_name"]: item for item in client.get("/api/contacts", headers=headers).json()}
    assert listed["Jane"]["customers"] == {"company_name": "Acme Corp"}
    assert listed["Solo"]["customers"] is None

    bad_reference = client.post(
        "/api/contacts",
        json={"first_name": "Lost", "last_name": "Contact", "customer_id": str(uuid.uuid4())},
        headers=headers,
    )
    assert bad_reference.status_code == 400
    assert bad_reference.json()["code"] == "InvalidReference"


def test_deal_create_joins_company_name(
    client: TestClient,
    sign_up: Callable[[str, str], dict[str, str]],
) -> None:
    agent = sign_up("agent@example.com", "agent")
    headers = _headers(agent)
    customer = _create_customer(client, headers)

    response = client.post(
        "/api/deals",
        json={"title": "Annual licence", "customer_id": customer["id"], "expected_close_date": "2026-12-31"},
        headers=headers,
    )
    assert response.status_code == 201
    deal = response.json()
    assert deal["customers"]["company_name"] == customer["company_name"]
    assert deal["status"] == "LEAD"
    assert deal["value"] == 0
    assert deal["created_by"] == agent["id"]

    listed = client.get("/api/deals", headers=headers).json()
    assert listed[0]["customers"] == {"company_name": "Acme Corp"}


def test_deal_with_unknown_customer_is_rejected_without_insert(
    client: TestClient,
    sign_up: Callable[[str, str], dict[str, str]],
    db_session: Session,
) -> None:
    headers = _headers(sign_up("agent@example.com", "agent"))
    response = client.post("/api/deals", json={"title": "Ghost", "customer_id": str(uuid.uuid4())}, headers=headers)

    assert response.status_code == 400
    assert response.json()["code"] == "InvalidReference"
    assert db_session.scalar(select(func.count()).select_from(Deal)) == 0


def test_deal_status_must_be_in_enum(client: TestClient, sign_up: Callable[[str, str], dict[str, str]]) -> None:
    headers = _headers(sign_up("agent@example.com", "agent"))
    customer = _create_customer(client, headers)
    response = client.post(
        "/api/deals",
        json={"title": "Bad", "customer_id": customer["id"], "status": "WON"},
        headers=headers,
    )
    assert response.status_code == 400
    assert response.json()["code"] == "ValidationError"


def test_deal_update_and_delete(client: TestClient, sign_up: Callable[[str, str], dict[str, str]]) -> None:
    headers = _headers(sign_up("agent@example.com", "agent"))
    customer = _create_customer(client, headers)
    deal = client.post("/api/deals", json={"title": "Pilot", "customer_id": customer["id"]}, headers=headers).json()

    updated = client.put(
        f"/api/deals/{deal['id']}",
        json={"title": "Pilot", "customer_id": customer["id"], "status": "PROPOSAL", "value": 1250.5},
        headers=headers,
    )
    assert updated.status_code == 200
    assert updated.json()["status"] == "PROPOSAL"
    assert updated.json()["value"] == 1250.5

    assert client.delete(f"/api/deals/{deal['id']}", headers=headers).status_code == 204
    assert client.get("/api/deals", headers=headers).json() == []


def test_user_management_is_admin_only(
    client: TestClient,
    sign_up: Callable[[str, str], dict[str, str]],
) -> None:
    agent = _headers(sign_up("agent@example.com", "agent"))
    payload = {"email": "new@example.com", "password": PASSWORD, "first_name": "New", "last_name": "Hire"}

    response = client.post("/api/users", json=payload, headers=agent)
    assert response.status_code == 403
    assert response.json()["code"] == "InsufficientPermissions"

    listed = client.get("/api/users", headers=agent)
    assert listed.status_code == 200
    assert set(listed.json()[0]) == {"id", "first_name", "last_name", "email", "role", "is_active"}


def test_admin_creates_updates_toggles_and_deletes_users(
    client: TestClient,
    sign_up: Callable[[str, str], dict[str, str]],
    db_session: Session,
) -> None:
    admin = _headers(sign_up("admin@example.com", "admin"))

    created = client.post(
        "/api/users",
        json={"email": "new@example.com", "password": PASSWORD, "first_name": "New", "last_name": "Hire"},
        headers=admin,
    )
    assert created.status_code == 201
    user = created.json()
    assert user["role"] == "agent"
    assert user["is_active"] is True

    login = client.post("/api/auth/login", json={"email": "new@example.com", "password": PASSWORD})
    assert login.status_code == 200

    updated = client.put(
        f"/api/users/{user['id']}",
        json={"email": "new@example.com", "first_name": "Newer", "last_name": "Hire", "role": "manager"},
        headers=admin,
    )
    assert updated.status_code == 200
    assert updated.json()["role"] == "manager"

    toggled = client.patch(f"/api/users/{user['id']}/toggle-status", headers=admin)
    assert toggled.status_code == 200
    assert toggled.json()["is_active"] is False

    deleted = client.delete(f"/api/users/{user['id']}", headers=admin)
    assert deleted.status_code == 204
    assert db_session.get(AppUser, uuid.UUID(user["id"])) is None

    gone = client.post("/api/auth/login", json={"email": "new@example.com", "password": PASSWORD})
    assert gone.status_code == 401


def test_user_update_changes_sign_in_credentials(
    client: TestClient,
    sign_up: Callable[[str, str], dict[str, str]],
) -> None:
    admin = _headers(sign_up("admin@example.com", "admin"))
    agent = sign_up("agent@example.com", "agent")

    updated = client.put(
        f"/api/users/{agent['id']}",
        json={
            "email": "renamed@example.com",
            "first_name": "Agent",
            "last_name": "User",
            "role": "agent",
            "password": "n3w-Passw0rd!",
        },
        headers=admin,
    )
    assert updated.status_code == 200
    assert updated.json()["email"] == "renamed@example.com"

    old_password = client.post("/api/auth/login", json={"email": "renamed@example.com", "password": PASSWORD})
    assert old_password.status_code == 401
    old_email = client.post("/api/auth/login", json={"email": "agent@example.com", "password": "n3w-Passw0rd!"})
    assert old_email.status_code == 401
    login = client.post("/api/auth/login", json={"email": "renamed@example.com", "password": "n3w-Passw0rd!"})
    assert login.status_code == 200
    assert login.json()["user"]["id"] == agent["id"]


def test_user_update_without_password_keeps_credentials(
    client: TestClient,
    sign_up: Callable[[str, str], dict[str, str]],
) -> None:
    admin = _headers(sign_up("admin@example.com", "admin"))
    agent = sign_up("agent@example.com", "agent")

    updated = client.put(
        f"/api/users/{agent['id']}",
        json={"email": "agent@example.com", "first_name": "Renamed", "last_name": "User", "role": "agent", "password": ""},
        headers=admin,
    )
    assert updated.status_code == 200

    login = client.post("/api/auth/login", json={"email": "agent@example.com", "password": PASSWORD})
    assert login.status_code == 200


def test_user_email_conflict_is_duplicate_record(
    client: TestClient,
    sign_up: Callable[[str, str], dict[str, str]],
) -> None:
    admin = sign_up("admin@example.com", "admin")
    agent = sign_up("agent@example.com", "agent")

    response = client.put(
        f"/api/users/{agent['id']}",
        json={"email": "admin@example.com", "first_name": "Agent", "last_name": "User", "role": "agent"},
        headers=_headers(admin),
    )
    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "DuplicateRecord"
    assert body["message"] == "Duplicate record"


def test_assignments_require_admin_or_manager(
    client: TestClient,
    sign_up: Callable[[str, str], dict[str, str]],
    db_session: Session,
) -> None:
    manager = sign_up("manager@example.com", "manager")
    agent = sign_up("agent@example.com", "agent")
    customer = _create_customer(client, _headers(agent))
    deal = client.post(
        "/api/deals",
        json={"title": "Renewal", "customer_id": customer["id"], "value": 900},
        headers=_headers(agent),
    ).json()

    refused = client.post(
        "/api/assignments",
        json={"user_id": agent["id"], "deal_id": deal["id"]},
        headers=_headers(agent),
    )
    assert refused.status_code == 403

    created = client.post(
        "/api/assignments",
        json={"user_id": agent["id"], "deal_id": deal["id"]},
        headers=_headers(manager),
    )
    assert created.status_code == 201
    assignment = created.json()
    assert assignment["deal"]["title"] == "Renewal"
    assert assignment["deal"]["customers"] == {"company_name": "Acme Corp"}
    assert assignment["user"] == {"first_name": "Agent", "last_name": "User"}
    assert assignment["assigned_by"] == {"first_name": "Manager", "last_name": "User"}

    row = db_session.scalar(select(UserAssignment))
    assert row is not None
    assert str(row.assigned_by) == manager["id"]

    listed = client.get("/api/assignments", headers=_headers(agent))
    assert listed.status_code == 200
    assert [item["id"] for item in listed.json()] == [assignment["id"]]


def test_assignment_with_unknown_deal_is_invalid_reference(
    client: TestClient,
    sign_up: Callable[[str, str], dict[str, str]],
) -> None:
    admin = sign_up("admin@example.com", "admin")
    response = client.post(
        "/api/assignments",
        json={"user_id": admin["id"], "deal_id": str(uuid.uuid4())},
        headers=_headers(admin),
    )
    assert response.status_code == 400
    assert response.json()["code"] == "InvalidReference"


def test_health_reports_database(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "database": "connected"}


def test_customer_with_deals_cannot_be_deleted(
    client: TestClient,
    sign_up: Callable[[str, str], dict[str, str]],
) -> None:
    headers = _headers(sign_up("keeper@example.com", "agent"))
    customer = _create_customer(client, headers, "Keeper Ltd")
    contact = client.post(
        "/api/contacts",
        json={"first_name": "Kim", "last_name": "Keeper", "customer_id": customer["id"]},
        headers=headers,
    ).json()
    deal = client.post("/api/deals", json={"title": "Renewal", "customer_id": customer["id"]}, headers=headers).json()

    blocked = client.delete(f"/api/customers/{customer['id']}", headers=headers)
    assert blocked.status_code == 409
    assert blocked.json()["code"] == "RecordInUse"

    assert client.delete(f"/api/deals/{deal['id']}", headers=headers).status_code == 204
    assert client.delete(f"/api/customers/{customer['id']}", headers=headers).status_code == 204

    contacts = client.get("/api/contacts", headers=headers).json()
    assert [(item["id"], item["customer_id"], item["customers"]) for item in contacts] == [(contact["id"], None, None)]
