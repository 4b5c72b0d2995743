"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
from pathlib import Path
from typing import Generator

import pytest
from flask import Flask
from flask.testing import FlaskClient

from cybersite import web
from cybersite.web import Store, create_app, current_site

CSRF = "test-token"          # shared constant so the token matches the session


@pytest.fixture(autouse=True)
def _fast_clock(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Every call to utc_now() returns a strictly later timestamp, so rows
    created back-to-back still sort deterministically.
    """
    counter = itertools.count()
    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)
    monkeypatch.setattr(
        web, "utc_now", lambda: base + _dt.timedelta(seconds=next(counter))
    )


@pytest.fixture
def app(tmp_path: Path) -> Flask:
    """A fresh site on throw-away databases for every test."""
    return create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret",
            "DATABASE": str(tmp_path / "content.sqlite3"),
            "SESSION_DATABASE": str(tmp_path / "sessions.sqlite3"),
            "UPLOAD_DIR": str(tmp_path / "uploads"),
        }
    )


@pytest.fixture
def client(app: Flask) -> Generator[FlaskClient, None, None]:
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture
def store(client: FlaskClient) -> Store:
    """The content store of the app behind ``client``."""
    return current_site().store


def login_as_admin(client: FlaskClient) -> None:
    with client.session_transaction() as sess:
        sess["user_id"] = 1
        sess["username"] = "admin"
        sess["csrf"] = CSRF


@pytest.fixture
def admin(client: FlaskClient) -> FlaskClient:
    """``client`` with an authenticated session."""
    login_as_admin(client)
    return client
