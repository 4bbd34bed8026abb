import pytest
from fastapi import HTTPException

from . import users
from .config import settings
from .models import AuditLog, Role
from .security import AuthError, create_access_token, decode_access_token, hash_password, verify_password


class TestSecurity:
    def test_password_round_trip(self):
        hashed = hash_password("s3cret-pass")
        assert verify_password("s3cret-pass", hashed)
        assert not verify_password("wrong", hashed)

    def test_malformed_hash_does_not_verify(self):
        assert verify_password("anything", "not-a-bcrypt-hash") is False

    def test_token_carries_subject_and_roles(self):
        payload = decode_access_token(create_access_token("alice", ["accountant"]))
        assert payload["sub"] == "alice"
        assert payload["roles"] == ["accountant"]

    def test_expired_token(self):
        token = create_access_token("alice", [], expires_minutes=-1)
        with pytest.raises(AuthError, match="expired"):
            decode_access_token(token)

    def test_garbage_token(self):
        with pytest.raises(AuthError):
            decode_access_token("not.a.token")


class TestUsers:
    def test_roles_and_admin_are_seeded(self, db, admin):
        assert {r.name for r in users.list_roles(db)} >= {"admin", "accountant", "registrar", "timetabler", "teacher"}
        assert admin.role_names == ["admin"]

    def test_login(self, db):
        token, user = users.login_user(db, username=settings.admin_username, password=settings.admin_password)
        assert decode_access_token(token)["sub"] == user.username

    def test_login_with_wrong_password(self, db):
        with pytest.raises(HTTPException) as exc:
            users.login_user(db, username=settings.admin_username, password="nope")
        assert exc.value.status_code == 401
        assert exc.value.detail == "Invalid credentials"

    def test_register_user(self, db, admin):
        user = users.register_user(db, username="bursar", password="password123", roles=["accountant"],
                                   actor_user_id=admin.id)

        assert user.role_names == ["accountant"]
        audit = db.query(AuditLog).filter(AuditLog.table_name == "users").one()
        assert audit.user_id == admin.id
        assert audit.new_values["username"] == "bursar"

    def test_duplicate_username(self, db):
        with pytest.raises(HTTPException) as exc:
            users.register_user(db, username="admin", password="password123")
        assert exc.value.status_code == 409

    def test_unknown_role(self, db):
        with pytest.raises(HTTPException) as exc:
            users.register_user(db, username="someone", password="password123", roles=["wizard"])
        assert exc.value.detail == "Unknown roles: wizard"

    def test_change_password(self, db, admin):
        users.change_password(db, admin, current_password=settings.admin_password, new_password="new-password-1")

        assert verify_password("new-password-1", admin.password_hash)
        with pytest.raises(HTTPException) as exc:
            users.change_password(db, admin, current_password="wrong", new_password="whatever-123")
        assert exc.value.status_code == 400

    def test_role_lifecycle(self, db):
        role = users.create_role(db, name="Librarian", description="Books")
        assert role.name == "librarian"

        with pytest.raises(HTTPException):
            users.create_role(db, name="librarian")

        users.delete_role(db, role.id)
        assert db.query(Role).filter(Role.name == "librarian").first() is None

    def test_cannot_delete_assigned_role(self, db):
        admin_role = db.query(Role).filter(Role.name == "admin").one()
        with pytest.raises(HTTPException) as exc:
            users.delete_role(db, admin_role.id)
        assert exc.value.status_code == 400


class TestAuthApi:
    def test_login_and_me(self, client):
        login = client.post("/api/auth/login",
                            json={"username": settings.admin_username, "password": settings.admin_password})
        assert login.status_code == 200
        body = login.json()
        assert body["token_type"] == "bearer"
        assert body["roles"] == ["admin"]

        me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {body['access_token']}"})
        assert me.json()["username"] == settings.admin_username

    def test_bad_scheme(self, client):
        response = client.get("/api/auth/me", headers={"Authorization": "Token abc"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid auth scheme"

    def test_token_for_unknown_user(self, client):
        token = create_access_token("ghost", ["admin"])
        assert client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"}).status_code == 401

    def test_user_admin_is_admin_only(self, client, make_user, admin_headers):
        headers = make_user("acc", "accountant")

        assert client.get("/api/users", headers=headers).status_code == 403
        created = client.post("/api/users", headers=admin_headers,
                              json={"username": "clerk", "password": "password123", "roles": ["registrar"]})
        assert created.status_code == 201
        assert created.json()["role_names"] == ["registrar"]

        audit = client.get("/api/audit", params={"table_name": "users"}, headers=admin_headers)
        assert audit.json()[0]["action"] == "CREATE"

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"


class TestAcademicsApi:
    def test_crud_flow(self, client, make_user):
        headers = make_user("reg", "registrar")

        teacher = client.post("/api/employees", headers=headers,
                              json={"employee_id": "E010", "full_name": "Grace Moyo"})
        subject = client.post("/api/subjects", headers=headers, json={"code": "PHY", "name": "Physics"})
        klass = client.post("/api/classes", headers=headers, json={"name": "Form 3", "stream": "B"})
        assert {teacher.status_code, subject.status_code, klass.status_code} == {201}

        sc = client.post("/api/subject-classes", headers=headers, json={
            "subject_id": subject.json()["id"],
            "employee_number": "E010",
            "gradelevel_class_id": klass.json()["id"],
            "periods_per_week": 4,
        })
        assert sc.status_code == 201
        assert sc.json()["subject_name"] == "Physics"
        assert sc.json()["teacher_name"] == "Grace Moyo"
        assert sc.json()["class_name"] == "Form 3"

        blocked = client.delete(f"/api/employees/{teacher.json()['id']}", headers=headers)
        assert blocked.status_code == 400

    def test_duplicates_and_missing_references(self, client, admin_headers):
        client.post("/api/subjects", headers=admin_headers, json={"code": "BIO", "name": "Biology"})

        again = client.post("/api/subjects", headers=admin_headers, json={"code": "BIO", "name": "Biology"})
        orphan = client.post("/api/subject-classes", headers=admin_headers,
                             json={"subject_id": 999, "employee_number": "E999"})

        assert again.status_code == 409
        assert orphan.status_code == 404
        assert orphan.json()["detail"] == "Subject not found"

    def test_any_user_can_read(self, client, make_user):
        headers = make_user("teach", "teacher")

        assert client.get("/api/subjects", headers=headers).status_code == 200
        assert client.post("/api/subjects", headers=headers, json={"code": "X", "name": "X"}).status_code == 403
