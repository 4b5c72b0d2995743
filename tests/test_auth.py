"""
tests/test_auth.py
"""
from __future__ import annotations

import itertools
from contextlib import contextmanager
from typing import Iterator

import pytest
from flask.testing import FlaskClient

from cybersite import web
from cybersite.web import (
    DEFAULT_PASSWORD,
    DEFAULT_USERNAME,
    InvalidCredentials,
    RATE_LIMIT_MESSAGE,
    hash_password,
    login,
    verify_password,
)


# ───────────────────────── helpers ────────────────────────────────────
def _csrf(client: FlaskClient) -> str:
    """GET /login so the session holds a token, then read it back."""
    client.get("/login")
    with client.session_transaction() as sess:
        return sess["csrf"]


def _login(client: FlaskClient, username: str, password: str, follow=False):
    return client.post(
        "/login",
        data={"username": username, "password": password, "csrf": _csrf(client)},
        follow_redirects=follow,
    )


_ip_counter = itertools.count(1)


@contextmanager
def _new_client(app) -> Iterator[FlaskClient]:
    """A client with its own REMOTE_ADDR, so rate limits never overlap."""
    with app.test_client() as c:
        c.environ_base["REMOTE_ADDR"] = f"10.0.0.{next(_ip_counter)}"
        yield c


# ───────────────────────── passwords ──────────────────────────────────
def test_password_hash_roundtrip():
    h = hash_password("s3cret")
    assert h != "s3cret"
    assert verify_password("s3cret", h)
    assert not verify_password("nope", h)


def test_default_user_is_seeded_once(store):
    user = store.get_user_by_username(DEFAULT_USERNAME)
    assert user is not None
    assert verify_password(DEFAULT_PASSWORD, user["password"])
    assert store.init() is None          # second run seeds nothing
    n = store.db.execute("SELECT COUNT(*) FROM users").fetchone()[0]
    assert n == 1


def test_unknown_user_and_bad_password_raise_the_same_error(app, store):
    with app.test_request_context("/login", method="POST"):
        with pytest.raises(InvalidCredentials) as unknown:
            login(store, "nobody", DEFAULT_PASSWORD)
        with pytest.raises(InvalidCredentials) as wrong:
            login(store, DEFAULT_USERNAME, "wrong")
    assert str(unknown.value) == str(wrong.value)


# ───────────────────────── login / logout ─────────────────────────────
def test_successful_login_redirects_to_admin(client):
    rv = _login(client, DEFAULT_USERNAME, DEFAULT_PASSWORD)
    assert rv.status_code == 302
    assert rv.headers["Location"] == "/admin"
    with client.session_transaction() as sess:
        assert sess["user_id"] == 1
        assert sess["username"] == DEFAULT_USERNAME


def test_login_issues_a_new_session_cookie(client):
    client.get("/login")
    before = client.get_cookie("session").value
    _login(client, DEFAULT_USERNAME, DEFAULT_PASSWORD)
    assert client.get_cookie("session").value != before


def test_session_cookie_is_http_only(client):
    rv = client.get("/login")
    cookie = rv.headers["Set-Cookie"]
    assert "HttpOnly" in cookie
    assert "SameSite=Lax" in cookie


@pytest.mark.parametrize(
    "username,password",
    [("nobody", DEFAULT_PASSWORD), (DEFAULT_USERNAME, "wrong")],
)
def test_failed_login_rerenders_the_form(client, username, password):
    old = _csrf(client)
    rv = _login(client, username, password)
    assert rv.status_code == 200
    assert b"Invalid credentials" in rv.data
    with client.session_transaction() as sess:
        assert "user_id" not in sess
        assert sess["csrf"] != old        # fresh token for the retry
        assert sess["csrf"].encode() in rv.data


def test_login_page_redirects_when_already_logged_in(admin):
    rv = admin.get("/login")
    assert rv.status_code == 302
    assert rv.headers["Location"] == "/admin"


def test_logout_clears_the_session(client):
    _login(client, DEFAULT_USERNAME, DEFAULT_PASSWORD)
    rv = client.get("/logout")
    assert rv.status_code == 302
    assert rv.headers["Location"] == "/"
    assert client.get("/admin").status_code == 302


def test_tampered_session_cookie_is_ignored(client):
    _login(client, DEFAULT_USERNAME, DEFAULT_PASSWORD)
    value = client.get_cookie("session").value
    client.set_cookie("session", "x" + value)     # sid no longer matches its signature
    rv = client.get("/admin")
    assert rv.status_code == 302


# ───────────────────────── guard ──────────────────────────────────────
@pytest.mark.parametrize(
    "path",
    ["/notes", "/admin", "/admin/blog/new", "/admin/code/new", "/admin/notes/new"],
)
def test_private_pages_redirect_to_login(client, path):
    rv = client.get(path)
    assert rv.status_code == 302
    assert rv.headers["Location"] == "/login"


# ───────────────────────── CSRF ───────────────────────────────────────
def test_login_post_without_token_is_forbidden(client):
    rv = client.post(
        "/login", data={"username": DEFAULT_USERNAME, "password": DEFAULT_PASSWORD}
    )
    assert rv.status_code == 403
    with client.session_transaction() as sess:
        assert "user_id" not in sess


def test_admin_post_with_wrong_token_never_reaches_the_store(admin, store):
    rv = admin.post(
        "/admin/blog",
        data={"title": "X", "slug": "x", "content": "y", "csrf": "forged"},
    )
    assert rv.status_code == 403
    assert store.get_post_by_slug("x", published_only=False) is None


def test_token_in_header_is_accepted(admin):
    rv = admin.post(
        "/admin/notes",
        data={"title": "T", "content": "C"},
        headers={"X-CSRFToken": "test-token"},
    )
    assert rv.status_code == 302


# ───────────────────────── rate limit ─────────────────────────────────
def test_sixth_attempt_is_rejected(app, monkeypatch):
    now = 1_000_000.0
    monkeypatch.setattr(web, "time", lambda: now)

    with _new_client(app) as c:
        for _ in range(5):
            rv = _login(c, DEFAULT_USERNAME, "wrong")
            assert rv.status_code == 200

        rv = _login(c, DEFAULT_USERNAME, "wrong")
        assert rv.status_code == 429
        assert rv.data.decode() == RATE_LIMIT_MESSAGE
        assert "Retry-After" not in rv.headers

        # even the right password is refused inside the window
        rv = _login(c, DEFAULT_USERNAME, DEFAULT_PASSWORD)
        assert rv.status_code == 429


def test_successful_login_does_not_reset_the_window(app, monkeypatch):
    monkeypatch.setattr(web, "time", lambda: 1_000_000.0)

    with _new_client(app) as c:
        for _ in range(4):
            _login(c, DEFAULT_USERNAME, "wrong")
        assert _login(c, DEFAULT_USERNAME, DEFAULT_PASSWORD).status_code == 302
        c.get("/logout")
        assert _login(c, DEFAULT_USERNAME, "wrong").status_code == 429


def test_window_slides(app, monkeypatch):
    clock = {"now": 1_000_000.0}
    monkeypatch.setattr(web, "time", lambda: clock["now"])

    with _new_client(app) as c:
        for _ in range(5):
            _login(c, DEFAULT_USERNAME, "wrong")
        assert _login(c, DEFAULT_USERNAME, "wrong").status_code == 429

        clock["now"] += 15 * 60 + 1
        assert _login(c, DEFAULT_USERNAME, "wrong").status_code == 200


def test_forwarded_header_does_not_reset_the_limit(app, monkeypatch):
    monkeypatch.setattr(web, "time", lambda: 1_000_000.0)

    with _new_client(app) as c:
        codes = []
        for i in range(6):
            rv = c.post(
                "/login",
                data={"username": DEFAULT_USERNAME, "password": "wrong", "csrf": _csrf(c)},
                headers={"X-Forwarded-For": f"203.0.113.{i}"},
            )
            codes.append(rv.status_code)
        assert codes == [200] * 5 + [429]


def test_behind_a_proxy_only_the_trusted_hop_counts(tmp_path, monkeypatch):
    monkeypatch.setattr(web, "time", lambda: 1_000_000.0)
    app = web.create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret",
            "PROXY_HOPS": 1,
            "DATABASE": str(tmp_path / "content.sqlite3"),
            "SESSION_DATABASE": str(tmp_path / "sessions.sqlite3"),
            "UPLOAD_DIR": str(tmp_path / "uploads"),
        }
    )
    with _new_client(app) as c:
        codes = []
        for i in range(6):
            rv = c.post(
                "/login",
                data={"username": DEFAULT_USERNAME, "password": "wrong", "csrf": _csrf(c)},
                # the client-written part varies; the proxy-appended hop does not
                headers={"X-Forwarded-For": f"203.0.113.{i}, 198.51.100.7"},
            )
            codes.append(rv.status_code)
        assert codes == [200] * 5 + [429]



def test_idle_clients_are_forgotten(monkeypatch):
    clock = {"now": 1_000_000.0}
    monkeypatch.setattr(web, "time", lambda: clock["now"])
    limiter = web.LoginLimiter()

    for i in range(3):
        assert limiter.hit(f"10.1.0.{i}")
    assert len(limiter) == 3

    clock["now"] += web.LOGIN_WINDOW_SEC + 1
    assert limiter.hit("10.1.0.99")
    assert len(limiter) == 1


def test_limit_is_per_client(app, monkeypatch):
    monkeypatch.setattr(web, "time", lambda: 1_000_000.0)

    with _new_client(app) as c1:
        for _ in range(6):
            _login(c1, DEFAULT_USERNAME, "wrong")
    with _new_client(app) as c2:
        assert _login(c2, DEFAULT_USERNAME, "wrong").status_code == 200
