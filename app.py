from __future__ import annotations

import io
import logging
import math
import os
import sqlite3
from datetime import date
from functools import wraps
from typing import Any

from flask import (
    Flask,
    Response,
    abort,
    flash,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    send_file,
    session,
    url_for,
)
from werkzeug.security import check_password_hash, generate_password_hash
from werkzeug.utils import secure_filename

import storage
from drilldown import breadcrumbs, drill_down

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
IS_VERCEL = bool(os.environ.get("VERCEL"))
DB_PATH = os.environ.get(
    "DATABASE_PATH",
    "/tmp/portal.db" if IS_VERCEL else os.path.join(BASE_DIR, "portal.db"),
)
STORAGE_PUBLIC_URL = os.environ.get("STORAGE_PUBLIC_URL", "")
ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL", "").strip().lower()
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "")

ATTENDANCE_THRESHOLD = 75
MAX_UPLOAD_BYTES = 8 * 1024 * 1024
MIN_PASSWORD_LENGTH = 6
RECENT_NOTES_LIMIT = 10

UPLOAD_EXTENSIONS = {".pdf", ".png", ".jpg", ".jpeg", ".webp"}

ROLES = ("admin", "moderator", "user")
DEFAULT_ROLE = "user"

DOCUMENT_KINDS = {
    "notes": {"label": "Notes", "singular": "Note", "bucket": "notes"},
    "pyqs": {"label": "Previous Year Questions", "singular": "PYQ", "bucket": "pyqs"},
}

BRANCHES = [
    ("computer-science", "Computer Science"),
    ("civil-engineering", "Civil Engineering"),
    ("mechanical-engineering", "Mechanical Engineering"),
    ("ece", "Electronics & Communication"),
    ("electrical-engineering", "Electrical Engineering"),
    ("chemical-engineering", "Chemical Engineering"),
]
BRANCH_NAMES = dict(BRANCHES)
SEMESTERS = [str(n) for n in range(1, 9)]

DONATION_PRESETS = [100, 500, 1000, 2500, 5000, 10000]

COURSES = [
    {"id": 1, "title": "Engineering - Complete Course", "category": "Engineering", "price": 4999},
    {"id": 2, "title": "Class 10th - All Subjects", "category": "Class 10", "price": 2999},
    {"id": 3, "title": "Class 12th - Science Stream", "category": "Class 12", "price": 3499},
]

BLOGS = [
    {"id": 1, "title": "How to Prepare for Engineering Exams", "category": "Engineering", "date": "2025-01-15"},
    {"id": 2, "title": "Top Tips for Board Exams", "category": "Boards", "date": "2025-01-10"},
    {"id": 3, "title": "Time Management for Students", "category": "Study Tips", "date": "2025-01-05"},
]

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}

NAV_MAP = {
    "index": "home",
    "courses": "courses",
    "batches": "batches",
    "join_batch": "batches",
    "notes_page": "notes",
    "preview": "notes",
    "upload_content": "notes",
    "blogs": "blogs",
    "about": "about",
    "contact": "contact",
    "attendance": "attendance",
    "donate": "donate",
    "profile": "profile",
    "admin_dashboard": "admin",
}

logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())

app = Flask(__name__)
app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-change-me")
app.config["MAX_CONTENT_LENGTH"] = MAX_UPLOAD_BYTES
app.config["DATABASE"] = DB_PATH


def get_db() -> sqlite3.Connection:
    if "db" not in g:
        g.db = sqlite3.connect(app.config["DATABASE"])
        g.db.row_factory = sqlite3.Row
        g.db.execute("PRAGMA foreign_keys = ON")
    return g.db


@app.teardown_appcontext
def close_db(_error: Any) -> None:
    db = g.pop("db", None)
    if db is not None:
        db.close()


def seed_demo_batches(db: sqlite3.Connection) -> None:
    existing = db.execute("SELECT COUNT(*) AS c FROM batches").fetchone()["c"]
    if existing:
        return

    demo_batches = [
        ("Morning Batch - Engineering", "Engineering core subjects", "Mon-Fri, 8 AM - 10 AM", 2999, 50),
        ("Evening Batch - Class 10th", "All Class 10 subjects", "Mon-Fri, 5 PM - 7 PM", 1999, 40),
        ("Weekend Batch - Class 12th", "Science stream revision", "Sat-Sun, 10 AM - 2 PM", 1499, 30),
    ]
    db.executemany(
        """
        INSERT INTO batches (name, description, schedule, price, max_students)
        VALUES (?, ?, ?, ?, ?)
        """,
        demo_batches,
    )


def seed_admin(db: sqlite3.Connection) -> None:
    if not ADMIN_EMAIL or not ADMIN_PASSWORD:
        return

    row = db.execute("SELECT id FROM users WHERE email = ?", (ADMIN_EMAIL,)).fetchone()
    if row:
        user_id = row["id"]
    else:
        user_id = create_account(db, ADMIN_EMAIL, ADMIN_PASSWORD, "Portal Admin", "")
        logging.info(f"Seeded admin account {ADMIN_EMAIL}")

    db.execute(
        "INSERT OR IGNORE INTO user_roles (user_id, role) VALUES (?, 'admin')",
        (user_id,),
    )


def init_db() -> None:
    db = get_db()
    db.executescript(
        """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT NOT NULL UNIQUE,
            password_hash TEXT NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS profiles (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL UNIQUE,
            full_name TEXT NOT NULL DEFAULT '',
            phone TEXT NOT NULL DEFAULT '',
            grade TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS user_roles (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            role TEXT NOT NULL CHECK(role IN ('admin', 'moderator', 'user')),
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE (user_id, role),
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS notes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            title TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            branch TEXT NOT NULL,
            semester TEXT NOT NULL,
            subject TEXT NOT NULL,
            year TEXT NOT NULL DEFAULT '',
            category TEXT NOT NULL DEFAULT '',
            file_url TEXT NOT NULL DEFAULT '',
            file_name TEXT NOT NULL DEFAULT '',
            uploaded_by INTEGER,
            view_count INTEGER NOT NULL DEFAULT 0,
            download_count INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (uploaded_by) REFERENCES users(id) ON DELETE SET NULL
        );

        CREATE TABLE IF NOT EXISTS pyqs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            title TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            branch TEXT NOT NULL,
            semester TEXT NOT NULL,
            subject TEXT NOT NULL,
            year TEXT NOT NULL DEFAULT '',
            category TEXT NOT NULL DEFAULT '',
            file_url TEXT NOT NULL DEFAULT '',
            file_name TEXT NOT NULL DEFAULT '',
            uploaded_by INTEGER,
            view_count INTEGER NOT NULL DEFAULT 0,
            download_count INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (uploaded_by) REFERENCES users(id) ON DELETE SET NULL
        );

        CREATE TABLE IF NOT EXISTS batches (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            schedule TEXT NOT NULL DEFAULT '',
            price INTEGER NOT NULL DEFAULT 0,
            current_students INTEGER NOT NULL DEFAULT 0,
            max_students INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS batch_enrollments (
            batch_id INTEGER NOT NULL,
            user_id INTEGER NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (batch_id, user_id),
            FOREIGN KEY (batch_id) REFERENCES batches(id) ON DELETE CASCADE,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS subjects (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE (user_id, name),
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS attendance (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            subject TEXT NOT NULL,
            date TEXT NOT NULL,
            present INTEGER NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
        );

        CREATE UNIQUE INDEX IF NOT EXISTS attendance_user_subject_date
            ON attendance (user_id, subject, date);

        CREATE TABLE IF NOT EXISTS donations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER,
            name TEXT NOT NULL DEFAULT '',
            email TEXT NOT NULL DEFAULT '',
            amount REAL NOT NULL CHECK(amount > 0),
            message TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE SET NULL
        );

        CREATE TABLE IF NOT EXISTS storage_objects (
            bucket TEXT NOT NULL,
            path TEXT NOT NULL,
            content BLOB NOT NULL,
            content_type TEXT NOT NULL,
            owner_id INTEGER,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (bucket, path)
        );
        """
    )

    seed_demo_batches(db)
    seed_admin(db)
    db.commit()


def create_account(db: sqlite3.Connection, email: str, password: str, full_name: str, phone: str) -> int:
    cursor = db.execute(
        "INSERT INTO users (email, password_hash) VALUES (?, ?)",
        (email, generate_password_hash(password)),
    )
    user_id = cursor.lastrowid
    db.execute(
        "INSERT INTO profiles (user_id, full_name, phone) VALUES (?, ?, ?)",
        (user_id, full_name, phone),
    )
    db.execute(
        "INSERT INTO user_roles (user_id, role) VALUES (?, ?)",
        (user_id, DEFAULT_ROLE),
    )
    return user_id


def current_user() -> sqlite3.Row | None:
    if "current_user" in g:
        return g.current_user

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return None

    user = get_db().execute("SELECT id, email, created_at FROM users WHERE id = ?", (user_id,)).fetchone()
    if user is None:
        session.clear()
    g.current_user = user
    return user


def current_profile() -> sqlite3.Row | None:
    if "current_profile" in g:
        return g.current_profile

    user = current_user()
    profile_row = None
    if user:
        profile_row = get_db().execute(
            "SELECT * FROM profiles WHERE user_id = ?",
            (user["id"],),
        ).fetchone()
    g.current_profile = profile_row
    return profile_row


def current_roles() -> set[str]:
    if "current_roles" in g:
        return g.current_roles

    user = current_user()
    roles: set[str] = set()
    if user:
        rows = get_db().execute(
            "SELECT role FROM user_roles WHERE user_id = ?",
            (user["id"],),
        ).fetchall()
        roles = {row["role"] for row in rows}
    g.current_roles = roles
    return roles


def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not current_user():
            flash("Please login first.", "warning")
            return redirect(url_for("auth"))
        return view(*args, **kwargs)

    return wrapped


def role_required(*roles):
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if not current_user():
                flash("Please login first.", "warning")
                return redirect(url_for("auth"))
            if not current_roles().intersection(roles):
                abort(403)
            return view(*args, **kwargs)

        return wrapped

    return decorator


def read_uploaded_file(field_name: str, allowed_extensions: set[str]) -> tuple[str | None, bytes | None, str | None]:
    uploaded = request.files.get(field_name)
    if not uploaded or not uploaded.filename:
        return None, None, "Please choose a file to upload."

    filename = secure_filename(uploaded.filename)
    ext = os.path.splitext(filename)[1].lower()
    if ext not in allowed_extensions:
        return None, None, "Invalid file format. Upload a PDF or an image."

    blob = uploaded.read()
    if not blob:
        return None, None, "Uploaded file is empty."

    if len(blob) > MAX_UPLOAD_BYTES:
        return None, None, f"File too large. Max size is {MAX_UPLOAD_BYTES // (1024 * 1024)} MB."

    return filename, blob, None


def fetch_documents(kind: str) -> list[sqlite3.Row]:
    return get_db().execute(
        f"SELECT * FROM {kind} ORDER BY created_at DESC, id DESC"
    ).fetchall()


def get_document(kind: str, doc_id: int) -> sqlite3.Row | None:
    return get_db().execute(f"SELECT * FROM {kind} WHERE id = ?", (doc_id,)).fetchone()


def increment_counter(kind: str, doc_id: int, column: str) -> bool:
    if column not in {"view_count", "download_count"}:
        raise ValueError(f"Unknown counter: {column}")

    db = get_db()
    cursor = db.execute(
        f"UPDATE {kind} SET {column} = {column} + 1 WHERE id = ?",
        (doc_id,),
    )
    db.commit()
    return cursor.rowcount > 0


def proxy_url(file_url: str, mode: str = "view") -> str:
    return url_for("download_note_proxy", file_url=file_url, mode=mode)


def attendance_summary(user_id: int) -> list[dict[str, Any]]:
    rows = get_db().execute(
        """
        SELECT
            subject,
            SUM(CASE WHEN present = 1 THEN 1 ELSE 0 END) AS present_count,
            COUNT(*) AS total_count
        FROM attendance
        WHERE user_id = ?
        GROUP BY subject
        ORDER BY subject ASC
        """,
        (user_id,),
    ).fetchall()

    summary: list[dict[str, Any]] = []
    for row in rows:
        total = row["total_count"] or 0
        present = row["present_count"] or 0
        percent = round(present * 100.0 / total, 2) if total else 0
        summary.append(
            {
                "subject": row["subject"],
                "present": present,
                "total": total,
                "percent": percent,
                "is_shortage": percent < ATTENDANCE_THRESHOLD,
            }
        )

    return summary


def overall_attendance(summary_rows: list[dict[str, Any]]) -> dict[str, Any]:
    total = sum(row["total"] for row in summary_rows)
    present = sum(row["present"] for row in summary_rows)
    percent = round(present * 100.0 / total, 2) if total else 0
    return {"present": present, "total": total, "percent": percent}


def mark_attendance(db: sqlite3.Connection, user_id: int, subject: str, day: str, present: bool) -> tuple[bool, str]:
    existing = db.execute(
        "SELECT 1 FROM attendance WHERE user_id = ? AND subject = ? AND date = ?",
        (user_id, subject, day),
    ).fetchone()
    if existing:
        return False, f"Attendance already marked for {day}!"

    try:
        db.execute(
            "INSERT INTO attendance (user_id, subject, date, present) VALUES (?, ?, ?, ?)",
            (user_id, subject, day, 1 if present else 0),
        )
    except sqlite3.IntegrityError:
        # lost the race against a concurrent insert for the same day
        return False, f"Attendance already marked for {day}!"

    db.commit()
    return True, f"Marked {'Present' if present else 'Absent'} for {subject}"


def parse_donation_amount(preset: str, custom: str) -> float | None:
    raw = (custom or "").strip() or (preset or "").strip()
    if not raw:
        return None
    try:
        amount = float(raw)
    except ValueError:
        return None
    if not math.isfinite(amount) or amount <= 0:
        return None
    return amount


def format_amount(amount: float) -> str:
    return f"{amount:.0f}" if float(amount).is_integer() else f"{amount:.2f}"


def render_page(template_name: str, **context: Any):
    return render_template(template_name, **context)


@app.context_processor
def inject_globals() -> dict[str, Any]:
    roles = current_roles()
    return {
        "current_user": current_user(),
        "current_profile": current_profile(),
        "is_admin": "admin" in roles,
        "active_nav": NAV_MAP.get(request.endpoint or "", ""),
        "branch_names": BRANCH_NAMES,
        "document_kinds": DOCUMENT_KINDS,
        "format_amount": format_amount,
    }


@app.route("/")
def index():
    db = get_db()
    recent_notes = db.execute(
        "SELECT * FROM notes ORDER BY created_at DESC, id DESC LIMIT 3"
    ).fetchall()
    batches_list = db.execute("SELECT * FROM batches ORDER BY id LIMIT 3").fetchall()
    return render_page(
        "index.html",
        page_title="StudyHub",
        recent_notes=recent_notes,
        batches=batches_list,
    )


@app.route("/auth", methods=["GET", "POST"])
def auth():
    if current_user():
        return redirect(url_for("index"))

    mode = request.values.get("mode", "login")
    if mode not in {"login", "signup"}:
        mode = "login"

    if request.method == "POST":
        email = request.form.get("email", "").strip().lower()
        password = request.form.get("password", "")
        db = get_db()

        if mode == "login":
            user = db.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
            if not user or not check_password_hash(user["password_hash"], password):
                flash("Invalid login credentials", "danger")
                return render_page("auth.html", page_title="Login", mode=mode, email=email)

            session.clear()
            session["user_id"] = user["id"]
            logging.info(f"User {user['id']} signed in")
            flash("Logged in successfully!", "success")
            return redirect(url_for("index"))

        full_name = request.form.get("full_name", "").strip()
        phone = request.form.get("phone", "").strip()

        if not email or "@" not in email:
            flash("Please enter a valid email address.", "danger")
            return render_page("auth.html", page_title="Sign Up", mode=mode, email=email)

        if len(password) < MIN_PASSWORD_LENGTH:
            flash(f"Password should be at least {MIN_PASSWORD_LENGTH} characters.", "danger")
            return render_page("auth.html", page_title="Sign Up", mode=mode, email=email)

        existing = db.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone()
        if existing:
            flash("User already registered", "danger")
            return render_page("auth.html", page_title="Sign Up", mode=mode, email=email)

        user_id = create_account(db, email, password, full_name, phone)
        db.commit()
        logging.info(f"Created account {user_id} for {email}")
        flash("Account created! Please log in.", "success")
        return redirect(url_for("auth", mode="login"))

    return render_page(
        "auth.html",
        page_title="Login" if mode == "login" else "Sign Up",
        mode=mode,
        email="",
    )


@app.route("/logout", methods=["GET", "POST"])
def logout():
    session.clear()
    flash("Logged out successfully", "info")
    return redirect(url_for("index"))


@app.route("/profile", methods=["GET", "POST"])
@login_required
def profile():
    user = current_user()
    db = get_db()

    if request.method == "POST":
        full_name = request.form.get("full_name", "").strip()
        phone = request.form.get("phone", "").strip()
        grade = request.form.get("grade", "").strip()

        db.execute(
            """
            INSERT INTO profiles (user_id, full_name, phone, grade)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                full_name = excluded.full_name,
                phone = excluded.phone,
                grade = excluded.grade,
                updated_at = CURRENT_TIMESTAMP
            """,
            (user["id"], full_name, phone, grade),
        )
        db.commit()
        g.pop("current_profile", None)
        flash("Profile updated successfully", "success")
        return redirect(url_for("profile"))

    return render_page(
        "profile.html",
        page_title="My Profile",
        profile_row=current_profile(),
        roles=sorted(current_roles()),
    )


@app.route("/courses")
def courses():
    return render_page("courses.html", page_title="Courses", courses=COURSES)


@app.route("/blogs")
def blogs():
    return render_page("blogs.html", page_title="Blogs", blogs=BLOGS)


@app.route("/about")
def about():
    return render_page("about.html", page_title="About")


@app.route("/contact")
def contact():
    return render_page("contact.html", page_title="Contact")


@app.route("/terms")
def terms():
    return render_page("terms.html", page_title="Terms of Service")


@app.route("/privacy")
def privacy():
    return render_page("privacy.html", page_title="Privacy Policy")


def browse_context(kind: str) -> dict[str, Any]:
    view = drill_down(
        fetch_documents(kind),
        branch=request.args.get("branch"),
        semester=request.args.get("semester"),
        subject=request.args.get("subject"),
    )
    view["kind"] = kind
    view["label"] = DOCUMENT_KINDS[kind]["label"]
    view["trail"] = breadcrumbs(view["selection"])
    return view


@app.route("/notes")
def notes_page():
    try:
        browser = browse_context("notes")
    except sqlite3.Error as exc:
        logging.error(f"Failed to load notes: {exc}")
        flash("Failed to load notes", "danger")
        return redirect(url_for("index"))

    return render_page("notes.html", page_title="Notes", browser=browser)


@app.route("/batches")
def batches():
    db = get_db()
    try:
        batch_rows = db.execute("SELECT * FROM batches ORDER BY created_at, id").fetchall()
        browser = browse_context("pyqs")
    except sqlite3.Error as exc:
        logging.error(f"Failed to load batches: {exc}")
        flash("Failed to load batches", "danger")
        return redirect(url_for("index"))

    enrolled: set[int] = set()
    user = current_user()
    if user:
        rows = db.execute(
            "SELECT batch_id FROM batch_enrollments WHERE user_id = ?",
            (user["id"],),
        ).fetchall()
        enrolled = {row["batch_id"] for row in rows}

    return render_page(
        "batches.html",
        page_title="Batches & PYQs",
        batches=batch_rows,
        enrolled=enrolled,
        browser=browser,
    )


@app.route("/batches/<int:batch_id>/join", methods=["POST"])
@login_required
def join_batch(batch_id: int):
    user = current_user()
    db = get_db()

    batch = db.execute("SELECT id, name FROM batches WHERE id = ?", (batch_id,)).fetchone()
    if not batch:
        abort(404)

    enrolled = db.execute(
        "SELECT 1 FROM batch_enrollments WHERE batch_id = ? AND user_id = ?",
        (batch_id, user["id"]),
    ).fetchone()
    if enrolled:
        flash("Already enrolled in this batch", "info")
        return redirect(url_for("batches"))

    cursor = db.execute(
        """
        UPDATE batches
        SET current_students = current_students + 1
        WHERE id = ? AND current_students < max_students
        """,
        (batch_id,),
    )
    if cursor.rowcount == 0:
        db.rollback()
        flash("Batch is full", "warning")
        return redirect(url_for("batches"))

    try:
        db.execute(
            "INSERT INTO batch_enrollments (batch_id, user_id) VALUES (?, ?)",
            (batch_id, user["id"]),
        )
    except sqlite3.IntegrityError:
        db.rollback()
        flash("Already enrolled in this batch", "info")
        return redirect(url_for("batches"))

    db.commit()
    flash(f"Joined {batch['name']}", "success")
    return redirect(url_for("batches"))


@app.route("/api/<any(notes, pyqs):kind>/browse")
def browse_api(kind: str):
    browser = browse_context(kind)
    return jsonify(
        {
            "kind": kind,
            "selection": browser["selection"],
            "level": browser["level"],
            "options": browser["options"],
            "documents": [dict(row) for row in browser["documents"]],
            "is_empty": browser["is_empty"],
        }
    )


@app.route("/upload", methods=["GET", "POST"])
@app.route("/upload-content", methods=["GET", "POST"])
@login_required
def upload_content():
    user = current_user()

    if request.method == "POST":
        kind = request.form.get("kind", "notes")
        title = request.form.get("title", "").strip()
        description = request.form.get("description", "").strip()
        branch = request.form.get("branch", "").strip()
        semester = request.form.get("semester", "").strip()
        subject = request.form.get("subject", "").strip()
        year = request.form.get("year", "").strip()
        category = request.form.get("category", "").strip()

        if kind not in DOCUMENT_KINDS:
            flash("Choose notes or PYQ.", "danger")
            return redirect(url_for("upload_content"))

        if not title or not branch or not semester or not subject:
            flash("Please fill title, branch, semester and subject.", "danger")
            return redirect(url_for("upload_content"))

        file_name, file_blob, file_error = read_uploaded_file("file", UPLOAD_EXTENSIONS)
        if file_error:
            flash(file_error, "danger")
            return redirect(url_for("upload_content"))

        db = get_db()
        bucket = DOCUMENT_KINDS[kind]["bucket"]
        object_path = storage.object_path_for(user["id"], file_name)
        try:
            storage.upload(db, bucket, object_path, file_blob, owner_id=user["id"])
        except storage.StorageError as exc:
            db.rollback()
            logging.error(f"Upload to {bucket} failed: {exc}")
            flash(str(exc), "danger")
            return redirect(url_for("upload_content"))

        file_url = storage.public_url(bucket, object_path, STORAGE_PUBLIC_URL)
        db.execute(
            f"""
            INSERT INTO {kind} (
                title, description, branch, semester, subject, year, category,
                file_url, file_name, uploaded_by
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (title, description, branch, semester, subject, year, category, file_url, file_name, user["id"]),
        )
        db.commit()
        logging.info(f"User {user['id']} uploaded {kind} '{title}' to {bucket}/{object_path}")
        flash(f"{DOCUMENT_KINDS[kind]['singular']} uploaded successfully.", "success")
        return redirect(url_for("notes_page" if kind == "notes" else "batches"))

    return render_page(
        "upload.html",
        page_title="Upload Content",
        branches=BRANCHES,
        semesters=SEMESTERS,
    )


@app.route("/<any(notes, pyqs):kind>/<int:doc_id>/download")
def download_document(kind: str, doc_id: int):
    doc = get_document(kind, doc_id)
    if not doc or not doc["file_url"]:
        abort(404)

    increment_counter(kind, doc_id, "download_count")
    return redirect(proxy_url(doc["file_url"], mode="download"))


@app.route("/preview")
def preview():
    file_url = request.args.get("file", "").strip()
    doc_id = request.args.get("id", type=int)
    kind = request.args.get("kind", "notes")
    title = request.args.get("title", "").strip() or "Preview"

    if not file_url:
        flash("Could not load preview", "danger")
        return redirect(url_for("notes_page"))

    if doc_id and kind in DOCUMENT_KINDS:
        try:
            increment_counter(kind, doc_id, "view_count")
        except sqlite3.Error as exc:
            logging.warning(f"Could not count view for {kind}/{doc_id}: {exc}")

    try:
        _bucket, object_path = storage.parse_public_url(file_url)
        content_type = storage.content_type_for(object_path)
    except storage.InvalidStorageURL:
        content_type = storage.content_type_for(file_url)

    return render_page(
        "preview.html",
        page_title=f"{title} | Preview",
        file_url=file_url,
        title=title,
        view_url=proxy_url(file_url, mode="view"),
        download_url=(
            url_for("download_document", kind=kind, doc_id=doc_id)
            if doc_id and kind in DOCUMENT_KINDS
            else proxy_url(file_url, mode="download")
        ),
        is_pdf="pdf" in content_type,
        is_image=content_type.startswith("image/"),
    )


def proxy_error(message: str, status: int):
    return jsonify({"error": message}), status, CORS_HEADERS


@app.route("/functions/v1/download-note", methods=["GET", "OPTIONS"])
def download_note_proxy():
    if request.method == "OPTIONS":
        return Response(status=200, headers=CORS_HEADERS)

    try:
        file_url = request.args.get("file_url")
        mode = request.args.get("mode") or "view"

        if not file_url:
            return proxy_error("Missing file_url", 400)

        try:
            bucket, object_path = storage.parse_public_url(file_url)
        except storage.InvalidStorageURL as exc:
            return proxy_error(str(exc), 400)

        try:
            content, _stored_type = storage.download(get_db(), bucket, object_path)
        except storage.StorageError as exc:
            logging.error(f"download-note error: {exc}")
            return proxy_error(str(exc) or "Download failed", 400)

        filename = storage.filename_of(object_path)
        disposition = "attachment" if mode == "download" else "inline"
        headers = {
            **CORS_HEADERS,
            "Content-Type": storage.content_type_for(filename),
            "Content-Disposition": f'{disposition}; filename="{filename}"',
        }
        return Response(content, status=200, headers=headers)
    except Exception:
        logging.exception("download-note exception")
        return proxy_error("Unexpected error", 500)


@app.route("/storage/v1/object/public/<bucket>/<path:object_path>")
def public_object(bucket: str, object_path: str):
    try:
        content, content_type = storage.download(get_db(), bucket, object_path)
    except storage.StorageError:
        abort(404)

    return send_file(
        io.BytesIO(content),
        mimetype=content_type,
        as_attachment=False,
        download_name=storage.filename_of(object_path),
    )


@app.route("/attendance", methods=["GET", "POST"])
@login_required
def attendance():
    user = current_user()
    db = get_db()

    if request.method == "POST":
        subject = request.form.get("subject", "").strip()
        status = request.form.get("status", "").strip().lower()
        class_date = request.form.get("date", "").strip() or date.today().isoformat()

        if status not in {"present", "absent"}:
            flash("Invalid attendance status.", "danger")
            return redirect(url_for("attendance"))

        if not subject:
            flash("Please select a subject.", "danger")
            return redirect(url_for("attendance"))

        try:
            class_date = date.fromisoformat(class_date).isoformat()
        except ValueError:
            flash("Invalid date.", "danger")
            return redirect(url_for("attendance"))

        ok, message = mark_attendance(db, user["id"], subject, class_date, status == "present")
        flash(message, "success" if ok else "danger")
        return redirect(url_for("attendance"))

    subjects = db.execute(
        "SELECT id, name FROM subjects WHERE user_id = ? ORDER BY name",
        (user["id"],),
    ).fetchall()
    records = db.execute(
        """
        SELECT id, subject, date, present
        FROM attendance
        WHERE user_id = ?
        ORDER BY date DESC, subject ASC
        """,
        (user["id"],),
    ).fetchall()
    rows = attendance_summary(user["id"])

    return render_page(
        "attendance.html",
        page_title="Attendance Tracker",
        subjects=subjects,
        records=records,
        rows=rows,
        overall=overall_attendance(rows),
        today=date.today().isoformat(),
        threshold=ATTENDANCE_THRESHOLD,
    )


@app.route("/attendance/subjects", methods=["POST"])
@login_required
def add_subject():
    user = current_user()
    name = request.form.get("name", "").strip()
    if not name:
        flash("Subject name is required.", "danger")
        return redirect(url_for("attendance"))

    db = get_db()
    try:
        db.execute(
            "INSERT INTO subjects (user_id, name) VALUES (?, ?)",
            (user["id"], name),
        )
    except sqlite3.IntegrityError:
        flash("Subject already exists.", "warning")
        return redirect(url_for("attendance"))

    db.commit()
    flash(f"Added subject {name}.", "success")
    return redirect(url_for("attendance"))


@app.route("/attendance/subjects/<int:subject_id>/delete", methods=["POST"])
@login_required
def delete_subject(subject_id: int):
    user = current_user()
    db = get_db()
    cursor = db.execute(
        "DELETE FROM subjects WHERE id = ? AND user_id = ?",
        (subject_id, user["id"]),
    )
    if cursor.rowcount == 0:
        abort(404)
    db.commit()
    flash("Subject removed.", "info")
    return redirect(url_for("attendance"))


@app.route("/donate", methods=["GET", "POST"])
def donate():
    if request.method == "POST":
        amount = parse_donation_amount(
            request.form.get("amount", ""),
            request.form.get("custom_amount", ""),
        )
        if amount is None:
            flash("Please select or enter an amount", "danger")
            return redirect(url_for("donate"))

        user = current_user()
        db = get_db()
        db.execute(
            """
            INSERT INTO donations (user_id, name, email, amount, message)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                user["id"] if user else None,
                request.form.get("name", "").strip(),
                request.form.get("email", "").strip(),
                amount,
                request.form.get("message", "").strip(),
            ),
        )
        db.commit()
        logging.info(f"Recorded donation of {amount}")
        flash(f"Thank you for your generous donation of ₹{format_amount(amount)}!", "success")
        return redirect(url_for("donate"))

    return render_page("donate.html", page_title="Donate", presets=DONATION_PRESETS)


@app.route("/admin")
@role_required("admin")
def admin_dashboard():
    db = get_db()

    def count(table: str) -> int:
        return db.execute(f"SELECT COUNT(*) AS c FROM {table}").fetchone()["c"]

    stats = {
        "total_users": count("profiles"),
        "total_notes": count("notes"),
        "total_pyqs": count("pyqs"),
        "total_batches": count("batches"),
        "total_donations": db.execute(
            "SELECT COALESCE(SUM(amount), 0) AS s FROM donations"
        ).fetchone()["s"],
    }
    totals = db.execute(
        """
        SELECT COALESCE(SUM(view_count), 0) AS views, COALESCE(SUM(download_count), 0) AS downloads
        FROM notes
        """
    ).fetchone()
    stats["total_views"] = totals["views"]
    stats["total_downloads"] = totals["downloads"]

    recent_notes = db.execute(
        "SELECT * FROM notes ORDER BY created_at DESC, id DESC LIMIT ?",
        (RECENT_NOTES_LIMIT,),
    ).fetchall()
    recent_pyqs = db.execute(
        "SELECT * FROM pyqs ORDER BY created_at DESC, id DESC LIMIT ?",
        (RECENT_NOTES_LIMIT,),
    ).fetchall()
    user_roles = db.execute(
        """
        SELECT r.id, r.user_id, r.role, r.created_at, u.email, p.full_name, p.phone
        FROM user_roles r
        JOIN users u ON u.id = r.user_id
        LEFT JOIN profiles p ON p.user_id = r.user_id
        ORDER BY r.created_at DESC, r.id DESC
        """
    ).fetchall()

    return render_page(
        "admin.html",
        page_title="Admin Dashboard",
        stats=stats,
        recent_notes=recent_notes,
        recent_pyqs=recent_pyqs,
        user_roles=user_roles,
        roles=ROLES,
    )


@app.route("/admin/roles", methods=["POST"])
@role_required("admin")
def add_user_role():
    email = request.form.get("email", "").strip().lower()
    role = request.form.get("role", DEFAULT_ROLE).strip().lower()

    if not email:
        flash("Please enter an email address", "danger")
        return redirect(url_for("admin_dashboard"))

    if role not in ROLES:
        flash("Invalid role selected.", "danger")
        return redirect(url_for("admin_dashboard"))

    db = get_db()
    target = db.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone()
    if not target:
        flash("No user found with that email", "danger")
        return redirect(url_for("admin_dashboard"))

    try:
        db.execute(
            "INSERT INTO user_roles (user_id, role) VALUES (?, ?)",
            (target["id"], role),
        )
    except sqlite3.IntegrityError:
        flash(f"User already has the {role} role", "warning")
        return redirect(url_for("admin_dashboard"))

    db.commit()
    logging.info(f"Granted {role} to user {target['id']}")
    flash(f"Role {role} assigned successfully", "success")
    return redirect(url_for("admin_dashboard"))


@app.route("/admin/roles/<int:role_id>/delete", methods=["POST"])
@role_required("admin")
def remove_user_role(role_id: int):
    viewer = current_user()
    db = get_db()

    row = db.execute("SELECT id, user_id, role FROM user_roles WHERE id = ?", (role_id,)).fetchone()
    if not row:
        abort(404)

    if row["user_id"] == viewer["id"] and row["role"] == "admin":
        flash("Admin cannot remove own admin role.", "danger")
        return redirect(url_for("admin_dashboard"))

    db.execute("DELETE FROM user_roles WHERE id = ?", (role_id,))
    db.commit()
    logging.info(f"Removed {row['role']} from user {row['user_id']}")
    flash("Role removed successfully", "info")
    return redirect(url_for("admin_dashboard"))


@app.route("/admin/<any(notes, pyqs):kind>/<int:doc_id>/delete", methods=["POST"])
@role_required("admin")
def delete_document(kind: str, doc_id: int):
    db = get_db()
    doc = get_document(kind, doc_id)
    if not doc:
        abort(404)

    db.execute(f"DELETE FROM {kind} WHERE id = ?", (doc_id,))
    if doc["file_url"]:
        try:
            bucket, object_path = storage.parse_public_url(doc["file_url"])
            storage.remove(db, bucket, object_path)
        except storage.InvalidStorageURL:
            logging.warning(f"{kind}/{doc_id} points outside storage: {doc['file_url']}")
    db.commit()

    logging.info(f"Deleted {kind}/{doc_id}")
    flash(f"{DOCUMENT_KINDS[kind]['singular']} deleted successfully", "info")
    return redirect(url_for("admin_dashboard"))


@app.route("/admin/batches", methods=["POST"])
@role_required("admin")
def create_batch():
    name = request.form.get("name", "").strip()
    schedule = request.form.get("schedule", "").strip()
    description = request.form.get("description", "").strip()
    price = request.form.get("price", type=int)
    max_students = request.form.get("max_students", type=int)

    if not name or price is None or price < 0 or not max_students or max_students < 1:
        flash("Please provide name, price and a positive seat count.", "danger")
        return redirect(url_for("admin_dashboard"))

    db = get_db()
    db.execute(
        """
        INSERT INTO batches (name, description, schedule, price, max_students)
        VALUES (?, ?, ?, ?, ?)
        """,
        (name, description, schedule, price, max_students),
    )
    db.commit()
    flash("Batch created.", "success")
    return redirect(url_for("admin_dashboard"))


@app.errorhandler(403)
def forbidden(_error):
    return render_page("error.html", code=403, message="You do not have permission for this page."), 403


@app.errorhandler(404)
def not_found(_error):
    return render_page("error.html", code=404, message="The page you requested was not found."), 404


@app.errorhandler(413)
def too_large(_error):
    return render_page(
        "error.html",
        code=413,
        message=f"Request too large. Max upload size is {MAX_UPLOAD_BYTES // (1024 * 1024)} MB.",
    ), 413


with app.app_context():
    init_db()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", "5050"))
    app.run(host="0.0.0.0", port=port, debug=True)
