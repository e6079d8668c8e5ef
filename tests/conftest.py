"""
StudyHub - test configuration and fixtures
"""
import os
import tempfile

# app.py initialises its database at import time
os.environ["DATABASE_PATH"] = os.path.join(tempfile.mkdtemp(), "import.db")
os.environ.pop("ADMIN_EMAIL", None)
os.environ.pop("ADMIN_PASSWORD", None)

import pytest

import storage
from app import app as flask_app
from app import create_account, get_db, init_db

PASSWORD = "secret123"


@pytest.fixture
def app(tmp_path):
    flask_app.config.update(
        TESTING=True,
        SECRET_KEY="test-secret-key",
        DATABASE=str(tmp_path / "portal.db"),
    )
    with flask_app.app_context():
        init_db()
    yield flask_app


@pytest.fixture
def client(app):
    return app.test_client()


def make_user(app, email, full_name="Test Student", roles=()):
    with app.app_context():
        db = get_db()
        user_id = create_account(db, email, PASSWORD, full_name, "9999999999")
        for role in roles:
            db.execute("INSERT INTO user_roles (user_id, role) VALUES (?, ?)", (user_id, role))
        db.commit()
    return user_id


def login(client, email, password=PASSWORD):
    return client.post("/auth", data={"mode": "login", "email": email, "password": password})


def add_document(app, kind="notes", content=b"%PDF-1.4 test", filename="unit1.pdf", **fields):
    """Store a file and insert a notes/pyqs row pointing at its public URL."""
    row = {
        "title": "Unit 1",
        "branch": "computer-science",
        "semester": "3",
        "subject": "Data Structures",
        "year": "2024",
        "category": "Engineering",
    }
    row.update(fields)
    with app.app_context():
        db = get_db()
        object_path = f"1/{filename}"
        storage.upload(db, kind, object_path, content)
        file_url = storage.public_url(kind, object_path, "https://cdn.example.com")
        cursor = db.execute(
            f"""
            INSERT INTO {kind} (title, branch, semester, subject, year, category, file_url, file_name)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                row["title"],
                row["branch"],
                row["semester"],
                row["subject"],
                row["year"],
                row["category"],
                file_url,
                filename,
            ),
        )
        db.commit()
        return cursor.lastrowid, file_url


@pytest.fixture
def student(app):
    return make_user(app, "student@example.com")


@pytest.fixture
def admin(app):
    return make_user(app, "admin@example.com", full_name="Portal Admin", roles=("admin",))


@pytest.fixture
def student_client(client, student):
    login(client, "student@example.com")
    return client


@pytest.fixture
def admin_client(client, admin):
    login(client, "admin@example.com")
    return client
