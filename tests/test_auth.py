from fastapi import status
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import auth
import crud
import models

SIGNUP = {"email": "Owner@Example.com", "password": "s3cret-pass", "name": "Sam Carter", "companyName": "Carter Labs"}


def test_password_hashing():
    hashed = auth.hash_password("hunter2")
    assert hashed != "hunter2"
    assert auth.verify_password("hunter2", hashed)
    assert not auth.verify_password("hunter3", hashed)
    assert not auth.verify_password("hunter2", "not-a-bcrypt-hash")


def test_signup_sets_session_cookie(test_client: TestClient, db_session: Session):
    response = test_client.post("/api/auth/signup", json=SIGNUP)

    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert body["success"] is True
    assert body["user"]["email"] == "owner@example.com"
    assert "session-token" in response.cookies
    assert db_session.query(models.AuthSession).count() == 1

    me = test_client.get("/api/auth/me")
    assert me.json()["authenticated"] is True
    assert me.json()["user"]["name"] == "Sam Carter"


def test_signup_closed_after_first_user(test_client: TestClient):
    assert test_client.post("/api/auth/signup", json=SIGNUP).status_code == status.HTTP_200_OK

    second = test_client.post(
        "/api/auth/signup", json={"email": "other@example.com", "password": "pw", "name": "Other"}
    )
    assert second.status_code == status.HTTP_403_FORBIDDEN
    assert second.json()["success"] is False


def test_signup_missing_fields(test_client: TestClient):
    response = test_client.post("/api/auth/signup", json={"email": "owner@example.com"})
    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert "password" in response.json()["fields"]


def test_login_and_logout(test_client: TestClient, make_user, db_session: Session):
    make_user(email="owner@example.com", password="s3cret-pass")

    bad = test_client.post("/api/auth/login", json={"email": "owner@example.com", "password": "wrong"})
    assert bad.status_code == status.HTTP_400_BAD_REQUEST
    assert bad.json()["error"] == "Invalid email or password"

    good = test_client.post("/api/auth/login", json={"email": "OWNER@example.com", "password": "s3cret-pass"})
    assert good.status_code == status.HTTP_200_OK
    assert test_client.get("/api/auth/me").json()["authenticated"] is True

    logout = test_client.post("/api/auth/logout")
    assert logout.status_code == status.HTTP_200_OK
    assert db_session.query(models.AuthSession).count() == 0
    assert test_client.get("/api/auth/me").json()["authenticated"] is False


def test_protected_endpoint_requires_login(test_client: TestClient):
    response = test_client.get("/api/prompts")
    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    assert response.json() == {"success": False, "error": "Please login first"}


def test_bearer_token_is_accepted(test_client: TestClient, make_user, db_session: Session):
    user = make_user()
    token = auth.start_session(db_session, user)

    response = test_client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert response.json()["authenticated"] is True


def test_token_without_session_row_is_rejected(test_client: TestClient, make_user, db_session: Session):
    user = make_user()
    token = auth.start_session(db_session, user)
    crud.delete_session(db_session, token)

    response = test_client.get("/api/prompts", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == status.HTTP_401_UNAUTHORIZED


def test_two_sessions_get_distinct_tokens(make_user, db_session: Session):
    user = make_user()
    assert auth.start_session(db_session, user) != auth.start_session(db_session, user)
