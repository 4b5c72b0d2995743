"""
tests/test_uploads.py
"""
from __future__ import annotations

import io
from pathlib import Path

import pytest

CSRF = "test-token"


def _snippet_form(**extra) -> dict:
    return {
        "title": "Fizz",
        "slug": "fizz",
        "code": "print('fizz')",
        "published": "on",
        "csrf": CSRF,
        **extra,
    }


def _file(payload: bytes = b"print('hi')\n", name: str = "fizz buzz.py"):
    return (io.BytesIO(payload), name)


@pytest.fixture
def upload_dir(app) -> Path:
    return Path(app.config["UPLOAD_DIR"])


def test_upload_is_stored_and_served(admin, store, upload_dir):
    rv = admin.post(
        "/admin/code",
        data=_snippet_form(file=_file()),
        content_type="multipart/form-data",
    )
    assert rv.status_code == 302

    file_path = store.get_snippet_by_slug("fizz")["file_path"]
    assert file_path.startswith("/uploads/")
    name = file_path.rsplit("/", 1)[1]
    stamp, _, base = name.partition("-")
    assert stamp.isdigit()
    assert base == "fizz_buzz.py"
    assert (upload_dir / name).read_bytes() == b"print('hi')\n"

    rv = admin.get(file_path)
    assert rv.status_code == 200
    assert rv.data == b"print('hi')\n"
    assert file_path.encode() in admin.get("/code/fizz").data


def test_edit_without_file_keeps_the_attachment(admin, store):
    admin.post(
        "/admin/code",
        data=_snippet_form(file=_file()),
        content_type="multipart/form-data",
    )
    row = store.get_snippet_by_slug("fizz")

    rv = admin.post(
        "/admin/code",
        data=_snippet_form(id=str(row["id"]), code="print('changed')"),
        content_type="multipart/form-data",
    )
    assert rv.status_code == 302
    after = store.get_snippet(row["id"])
    assert after["code"] == "print('changed')"
    assert after["file_path"] == row["file_path"]


def test_snippet_without_file_has_no_path(admin, store):
    admin.post("/admin/code", data=_snippet_form())
    assert store.get_snippet_by_slug("fizz")["file_path"] is None


def test_two_files_are_rejected(admin, store, upload_dir):
    rv = admin.post(
        "/admin/code",
        data=_snippet_form(file=[_file(name="a.py"), _file(name="b.py")]),
        content_type="multipart/form-data",
    )
    assert rv.status_code == 400
    assert store.get_snippet_by_slug("fizz", published_only=False) is None
    assert not upload_dir.exists() or not any(upload_dir.iterdir())


def test_oversized_body_is_413(app, admin, store):
    app.config["MAX_CONTENT_LENGTH"] = 1024
    rv = admin.post(
        "/admin/code",
        data=_snippet_form(file=_file(b"x" * 4096)),
        content_type="multipart/form-data",
    )
    assert rv.status_code == 413
    assert store.get_snippet_by_slug("fizz", published_only=False) is None


def test_default_limit_is_ten_mib(app):
    assert app.config["MAX_CONTENT_LENGTH"] == 10 * 1024 * 1024


def test_slug_clash_discards_the_upload(admin, store, upload_dir):
    store.create_snippet({"title": "Old", "slug": "fizz", "code": "x"})
    rv = admin.post(
        "/admin/code",
        data=_snippet_form(file=_file()),
        content_type="multipart/form-data",
    )
    assert rv.status_code == 400
    assert list(upload_dir.iterdir()) == []


def test_upload_route_stays_inside_the_directory(client):
    assert client.get("/uploads/../web.py").status_code == 404
    assert client.get("/uploads/missing.txt").status_code == 404
