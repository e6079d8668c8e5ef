import storage
from app import get_db
from tests.conftest import add_document


def test_admin_dashboard_requires_login(client):
    response = client.get("/admin")

    assert response.status_code == 302
    assert response.headers["Location"].endswith("/auth")


def test_admin_dashboard_forbidden_for_plain_users(student_client):
    assert student_client.get("/admin").status_code == 403
    assert student_client.post("/admin/roles", data={"email": "x@example.com", "role": "admin"}).status_code == 403


def test_admin_dashboard_stats(app, admin_client):
    add_document(app, title="Stacks", filename="stacks.pdf")
    add_document(app, kind="pyqs", title="2023 Paper", filename="paper.pdf")
    with app.app_context():
        db = get_db()
        db.execute("INSERT INTO donations (name, amount) VALUES ('A', 500), ('B', 250.5)")
        db.commit()

    response = admin_client.get("/admin")

    assert response.status_code == 200
    assert b"Stacks" in response.data
    assert b"2023 Paper" in response.data
    assert b"750.50" in response.data


def test_assign_role_by_email(app, admin_client, student):
    response = admin_client.post(
        "/admin/roles",
        data={"email": "student@example.com", "role": "moderator"},
        follow_redirects=True,
    )

    assert b"Role moderator assigned successfully" in response.data
    with app.app_context():
        roles = {
            row["role"]
            for row in get_db().execute("SELECT role FROM user_roles WHERE user_id = ?", (student,))
        }
    assert roles == {"user", "moderator"}


def test_assign_role_unknown_email(admin_client):
    response = admin_client.post(
        "/admin/roles",
        data={"email": "ghost@example.com", "role": "admin"},
        follow_redirects=True,
    )

    assert b"No user found with that email" in response.data


def test_assign_invalid_role(admin_client, student):
    response = admin_client.post(
        "/admin/roles",
        data={"email": "student@example.com", "role": "superuser"},
        follow_redirects=True,
    )

    assert b"Invalid role selected." in response.data


def test_assign_existing_role(admin_client, student):
    response = admin_client.post(
        "/admin/roles",
        data={"email": "student@example.com", "role": "user"},
        follow_redirects=True,
    )

    assert b"User already has the user role" in response.data


def test_remove_role(app, admin_client, student):
    with app.app_context():
        role_id = get_db().execute(
            "SELECT id FROM user_roles WHERE user_id = ? AND role = 'user'", (student,)
        ).fetchone()["id"]

    response = admin_client.post(f"/admin/roles/{role_id}/delete", follow_redirects=True)

    assert b"Role removed successfully" in response.data
    with app.app_context():
        assert get_db().execute("SELECT 1 FROM user_roles WHERE id = ?", (role_id,)).fetchone() is None


def test_admin_cannot_remove_own_admin_role(app, admin_client, admin):
    with app.app_context():
        role_id = get_db().execute(
            "SELECT id FROM user_roles WHERE user_id = ? AND role = 'admin'", (admin,)
        ).fetchone()["id"]

    response = admin_client.post(f"/admin/roles/{role_id}/delete", follow_redirects=True)

    assert b"Admin cannot remove own admin role." in response.data


def test_delete_note_removes_stored_file(app, admin_client):
    doc_id, file_url = add_document(app)

    response = admin_client.post(f"/admin/notes/{doc_id}/delete", follow_redirects=True)

    assert b"Note deleted successfully" in response.data
    bucket, object_path = storage.parse_public_url(file_url)
    with app.app_context():
        db = get_db()
        assert db.execute("SELECT 1 FROM notes WHERE id = ?", (doc_id,)).fetchone() is None
        assert db.execute(
            "SELECT 1 FROM storage_objects WHERE bucket = ? AND path = ?", (bucket, object_path)
        ).fetchone() is None


def test_delete_missing_document(admin_client):
    assert admin_client.post("/admin/pyqs/999/delete").status_code == 404


def test_create_batch(app, admin_client):
    response = admin_client.post(
        "/admin/batches",
        data={"name": "Crash Course", "schedule": "Sun", "price": "999", "max_students": "5"},
        follow_redirects=True,
    )

    assert b"Batch created." in response.data
    with app.app_context():
        row = get_db().execute("SELECT * FROM batches WHERE name = 'Crash Course'").fetchone()
    assert row["max_students"] == 5
    assert row["current_students"] == 0
