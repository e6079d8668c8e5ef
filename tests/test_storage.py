import pytest

import storage
from app import get_db


def test_content_type_for_known_extensions():
    assert storage.content_type_for("notes.PDF") == "application/pdf"
    assert storage.content_type_for("scan.jpeg") == "image/jpeg"
    assert storage.content_type_for("scan.jpg") == "image/jpeg"
    assert storage.content_type_for("diagram.png") == "image/png"
    assert storage.content_type_for("photo.webp") == "image/webp"
    assert storage.content_type_for("archive.zip") == "application/octet-stream"
    assert storage.content_type_for("README") == "application/octet-stream"


def test_public_url_round_trip_with_spaces():
    url = storage.public_url("notes", "7/unit 1 notes.pdf", "https://cdn.example.com/")
    assert url == "https://cdn.example.com/storage/v1/object/public/notes/7/unit%201%20notes.pdf"
    assert storage.parse_public_url(url) == ("notes", "7/unit 1 notes.pdf")


def test_parse_relative_public_url():
    assert storage.parse_public_url("/storage/v1/object/public/pyqs/2/paper.pdf") == ("pyqs", "2/paper.pdf")


def test_parse_rejects_non_storage_url():
    with pytest.raises(storage.InvalidStorageURL, match="Invalid storage public URL"):
        storage.parse_public_url("https://example.com/files/paper.pdf")


def test_parse_rejects_missing_path():
    with pytest.raises(storage.InvalidStorageURL, match="Invalid bucket or path"):
        storage.parse_public_url("https://cdn.example.com/storage/v1/object/public/notes/")


def test_object_path_is_user_scoped():
    path = storage.object_path_for(42, "../My Notes.pdf")
    user_part, file_part = path.split("/", 1)
    assert user_part == "42"
    assert file_part.endswith("_My_Notes.pdf")


def test_upload_download_remove(app):
    with app.app_context():
        db = get_db()
        storage.upload(db, "notes", "1/a.pdf", b"pdf-bytes")
        assert storage.download(db, "notes", "1/a.pdf") == (b"pdf-bytes", "application/pdf")

        with pytest.raises(storage.StorageError):
            storage.upload(db, "notes", "1/a.pdf", b"again")

        assert storage.remove(db, "notes", "1/a.pdf") is True
        assert storage.remove(db, "notes", "1/a.pdf") is False
        with pytest.raises(storage.StorageError, match="Object not found"):
            storage.download(db, "notes", "1/a.pdf")


def test_upload_rejects_empty_content(app):
    with app.app_context():
        with pytest.raises(storage.StorageError):
            storage.upload(get_db(), "notes", "1/empty.pdf", b"")
