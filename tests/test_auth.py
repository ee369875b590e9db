import crud
from conftest import bearer
from models import User


def login(client, email, password):
    return client.post("/token", data={"username": email, "password": password})


def test_login_and_profile(client, agent):
    response = login(client, "agent@agence.ma", "secret123")
    assert response.status_code == 200
    token = response.json()["access_token"]

    me = client.get("/users/me/", headers={"Authorization": f"Bearer {token}"}).json()
    assert me["email"] == "agent@agence.ma"
    assert me["role"] == "agent"
    assert me["providers"] == ["password"]
    assert me["canChangePassword"] is True


def test_wrong_password(client, agent):
    assert login(client, "agent@agence.ma", "wrong-password").status_code == 401


def test_invalid_token(client):
    response = client.get("/users/me/", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


def test_change_password(client, agent, agent_headers):
    response = client.post("/users/me/password", json={"currentPassword": "secret123",
                                                       "newPassword": "nouveau456"},
                           headers=agent_headers)
    assert response.status_code == 200
    assert login(client, "agent@agence.ma", "nouveau456").status_code == 200


def test_change_password_requires_current_password(client, agent, agent_headers):
    response = client.post("/users/me/password", json={"currentPassword": "nope",
                                                       "newPassword": "nouveau456"},
                           headers=agent_headers)
    assert response.status_code == 422
    assert response.json()["field"] == "currentPassword"


def test_federated_account_cannot_change_password(client, db):
    user = User(email="google@agence.ma", display_name="Google", providers=["google.com"])
    db.add(user)
    db.commit()
    response = client.post("/users/me/password", json={"currentPassword": "whatever",
                                                       "newPassword": "nouveau456"},
                           headers=bearer(user))
    assert response.status_code == 409
    assert login(client, "google@agence.ma", "whatever").status_code == 401


def test_only_admins_create_users(client, agent_headers, admin_headers):
    payload = {"email": "nouvel.agent@agence.ma", "password": "secret123", "displayName": "Nouvel Agent"}
    assert client.post("/users/", json=payload, headers=agent_headers).status_code == 403

    created = client.post("/users/", json=payload, headers=admin_headers)
    assert created.status_code == 200
    assert created.json()["displayName"] == "Nouvel Agent"
    assert client.post("/users/", json=payload, headers=admin_headers).status_code == 422


def test_bootstrap_admin_only_when_no_users(db):
    admin = crud.ensure_admin(db, "boss@agence.ma", "secret123")
    assert admin.role == "admin"
    assert crud.ensure_admin(db, "other@agence.ma", "secret123") is None
