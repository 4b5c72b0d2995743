#!/usr/bin/env python3
"""
A single-file personal site: public blog, code snippets, private notes
and a small admin panel.
"""

import json
import os
import re
import secrets
import sqlite3
import unicodedata
from collections import defaultdict, deque
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import wraps
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time
from typing import DefaultDict

import click
import markdown
from flask import (
    Blueprint,
    Flask,
    Response,
    abort,
    current_app,
    flash,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    send_from_directory,
    session,
    url_for,
)
from flask.sessions import SessionInterface, SessionMixin
from itsdangerous import BadSignature, Signer
from jinja2 import DictLoader
from markdown.extensions import Extension
from markupsafe import Markup
from werkzeug.datastructures import CallbackDict
from werkzeug.exceptions import BadRequest, Forbidden
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash, generate_password_hash
from werkzeug.utils import secure_filename

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"

SITE_NAME = "cyber-site"
DEFAULT_USERNAME = "admin"
DEFAULT_PASSWORD = "ChangeMe123!"
DEFAULT_EMAIL = "admin@example.com"

UPLOAD_MAX_BYTES = 10 * 1024 * 1024  # one file, 10 MiB
LOGIN_MAX_ATTEMPTS = 5
LOGIN_WINDOW_SEC = 15 * 60
RATE_LIMIT_MESSAGE = "Too many login attempts, please try again later."
SESSION_LIFETIME = timedelta(hours=24)

TEASER_LIMIT = 3
DASHBOARD_LIMIT = 5
SUGGEST_LIMIT = 5
TRUNCATE_DEFAULT = 150

OWNER_KINDS = ("blog", "code")
OWNER_TABLES = {"blog": "blog_posts", "code": "code_snippets"}

_SLUG_STRIP_RE = re.compile(r"[^\w\s-]")
_SLUG_DASH_RE = re.compile(r"[-\s]+")

try:
    __version__ = version("cybersite")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# Configuration
################################################################################
def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip().strip("\"'")
    return env


def _persisted_secret() -> str:
    """Reuse the secret from a previous run so sessions survive restarts."""
    if SECRET_FILE.exists():
        return SECRET_FILE.read_text().strip()
    key = secrets.token_hex(32)
    SECRET_FILE.write_text(key)
    return key


def load_config(environ=None) -> dict:
    """
    Resolve settings from the process environment, falling back to the
    ``.env`` file that sits next to this module.
    """
    env = {**_read_env_file(), **(os.environ if environ is None else environ)}
    production = env.get("CYBERSITE_ENV", "development").lower() == "production"
    return {
        "PORT": int(env.get("PORT", "3000")),
        "SECRET_KEY": env.get("SESSION_SECRET") or None,
        "PRODUCTION": production,
        "DATABASE": env.get("DATABASE", str(ROOT / "database.db")),
        "SESSION_DATABASE": env.get("SESSION_DATABASE", str(ROOT / "sessions.db")),
        "UPLOAD_DIR": env.get("UPLOAD_DIR", str(ROOT / "public" / "uploads")),
        "LOG_LEVEL": env.get("LOG_LEVEL", "INFO").upper(),
        "PROXY_HOPS": int(env.get("PROXY_HOPS", "0")),
    }


# -------------------------------------------------------------------------
# Time + text helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def _now_iso() -> str:
    return utc_now().isoformat(timespec="seconds")


def slugify(text: str | None) -> str:
    """ASCII, lower-case, dash-separated."""
    text = unicodedata.normalize("NFKD", text or "")
    text = text.encode("ascii", "ignore").decode()
    text = _SLUG_STRIP_RE.sub("", text).strip().lower()
    return _SLUG_DASH_RE.sub("-", text).strip("-")


def _like(term: str) -> str:
    """Substring pattern for ``LIKE ? ESCAPE '\\'``."""
    term = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{term}%"


def tag_list(tags: str | None) -> list[str]:
    return [t.strip() for t in (tags or "").split(",") if t.strip()]


################################################################################
# Database helpers
################################################################################
SCHEMA = """
------------------------------------------------------------
-- 1.  Accounts
------------------------------------------------------------
CREATE TABLE IF NOT EXISTS users (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    username    TEXT UNIQUE NOT NULL,
    password    TEXT NOT NULL,
    email       TEXT,
    created_at  TEXT NOT NULL
);

------------------------------------------------------------
-- 2.  Public content
------------------------------------------------------------
CREATE TABLE IF NOT EXISTS blog_posts (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    title       TEXT NOT NULL,
    slug        TEXT UNIQUE NOT NULL,
    content     TEXT NOT NULL,
    excerpt     TEXT,
    tags        TEXT,
    published   BOOLEAN NOT NULL DEFAULT 1,
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS code_snippets (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    title       TEXT NOT NULL,
    slug        TEXT UNIQUE NOT NULL,
    description TEXT,
    code        TEXT NOT NULL,
    language    TEXT,
    tags        TEXT,
    file_path   TEXT,
    published   BOOLEAN NOT NULL DEFAULT 1,
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);

------------------------------------------------------------
-- 3.  Private content
------------------------------------------------------------
CREATE TABLE IF NOT EXISTS private_comments (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    item_type   TEXT NOT NULL,
    item_id     INTEGER NOT NULL,
    comment     TEXT NOT NULL,
    created_at  TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_comment_owner
    ON private_comments(item_type, item_id);

CREATE TABLE IF NOT EXISTS notes (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    title       TEXT NOT NULL,
    content     TEXT NOT NULL,
    tags        TEXT,
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);
"""

POST_FIELDS = ("title", "slug", "content", "excerpt", "tags", "published")
SNIPPET_FIELDS = (
    "title",
    "slug",
    "description",
    "code",
    "language",
    "tags",
    "published",
)
NOTE_FIELDS = ("title", "content", "tags")


class SlugTaken(Exception):
    """Another row of the same kind already owns this slug."""

    def __init__(self, slug: str):
        super().__init__(f"The slug {slug!r} is already in use.")
        self.slug = slug


@dataclass(frozen=True)
class Owner:
    """Weak reference from a private comment to a post or a snippet."""

    kind: str
    id: int

    def __post_init__(self):
        if self.kind not in OWNER_KINDS:
            raise ValueError(f"unknown owner kind: {self.kind!r}")


class Store:
    """
    All SQL lives here. One connection per application context, each
    write committed on its own.
    """

    def __init__(self, path: str):
        self.path = path

    @property
    def db(self) -> sqlite3.Connection:
        if "db" not in g:
            g.db = sqlite3.connect(self.path)
            g.db.row_factory = sqlite3.Row
        return g.db

    def init(self) -> str | None:
        """
        Create missing tables and seed the default account when there is
        none. Returns the seeded username, or ``None`` if nothing was seeded.
        """
        self.db.executescript(SCHEMA)
        self.db.commit()
        if self.db.execute("SELECT 1 FROM users LIMIT 1").fetchone():
            return None
        self.db.execute(
            "INSERT INTO users (username, password, email, created_at) "
            "VALUES (?,?,?,?)",
            (
                DEFAULT_USERNAME,
                hash_password(DEFAULT_PASSWORD),
                DEFAULT_EMAIL,
                _now_iso(),
            ),
        )
        self.db.commit()
        return DEFAULT_USERNAME

    # ── generic helpers ────────────────────────────────────────────
    def _write(self, sql: str, params, fields: dict) -> sqlite3.Cursor:
        try:
            cur = self.db.execute(sql, params)
        except sqlite3.IntegrityError as exc:
            self.db.rollback()
            if "UNIQUE" in str(exc) and ".slug" in str(exc):
                raise SlugTaken(fields.get("slug") or "") from exc
            raise
        self.db.commit()
        return cur

    def _insert(self, table: str, cols: tuple[str, ...], fields: dict) -> int:
        now = _now_iso()
        names = cols + ("created_at", "updated_at")
        values = tuple(_column_value(fields, c) for c in cols) + (now, now)
        sql = (
            f"INSERT INTO {table} ({', '.join(names)}) "
            f"VALUES ({', '.join('?' * len(names))})"
        )
        return self._write(sql, values, fields).lastrowid

    def _update(
        self, table: str, row_id: int, cols: tuple[str, ...], fields: dict, *, extra=""
    ) -> bool:
        assigns = ", ".join(f"{c} = ?" for c in cols)
        params = [_column_value(fields, c) for c in cols]
        if extra:
            assigns += f", {extra}"
            params.append(fields.get("file_path"))
        sql = f"UPDATE {table} SET {assigns}, updated_at = ? WHERE id = ?"
        cur = self._write(sql, (*params, _now_iso(), row_id), fields)
        return cur.rowcount > 0

    def _get(self, table: str, row_id: int):
        return self.db.execute(
            f"SELECT * FROM {table} WHERE id = ?", (row_id,)
        ).fetchone()

    def _by_slug(self, table: str, slug: str, published_only: bool):
        sql = f"SELECT * FROM {table} WHERE slug = ?"
        if published_only:
            sql += " AND published = 1"
        return self.db.execute(sql, (slug,)).fetchone()

    def _list(
        self,
        table: str,
        body_col: str,
        *,
        search: str = "",
        tag: str = "",
        published_only: bool = True,
        limit: int | None = None,
    ) -> list[sqlite3.Row]:
        sql = f"SELECT * FROM {table} WHERE 1 = 1"
        params: list = []
        if published_only:
            sql += " AND published = 1"
        if search:
            sql += f" AND (title LIKE ? ESCAPE '\\' OR {body_col} LIKE ? ESCAPE '\\')"
            params += [_like(search), _like(search)]
        if tag:
            sql += " AND tags LIKE ? ESCAPE '\\'"
            params.append(_like(tag))
        sql += " ORDER BY created_at DESC, id DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        return self.db.execute(sql, params).fetchall()

    def _delete_owner(self, owner: Owner) -> bool:
        cur = self.db.execute(
            f"DELETE FROM {OWNER_TABLES[owner.kind]} WHERE id = ?", (owner.id,)
        )
        self.db.commit()
        # second statement, no surrounding transaction
        self.delete_comments_for(owner)
        return cur.rowcount > 0

    # ── blog posts ─────────────────────────────────────────────────
    def create_post(self, fields: dict) -> int:
        return self._insert("blog_posts", POST_FIELDS, fields)

    def update_post(self, post_id: int, fields: dict) -> bool:
        return self._update("blog_posts", post_id, POST_FIELDS, fields)

    def get_post(self, post_id: int):
        return self._get("blog_posts", post_id)

    def get_post_by_slug(self, slug: str, *, published_only: bool = True):
        return self._by_slug("blog_posts", slug, published_only)

    def list_posts(self, search: str = "", tag: str = "", **kw):
        return self._list("blog_posts", "content", search=search, tag=tag, **kw)

    def delete_post(self, post_id: int) -> bool:
        return self._delete_owner(Owner("blog", post_id))

    # ── code snippets ──────────────────────────────────────────────
    def create_snippet(self, fields: dict) -> int:
        return self._insert("code_snippets", SNIPPET_FIELDS + ("file_path",), fields)

    def update_snippet(self, snippet_id: int, fields: dict) -> bool:
        """A ``None`` file_path keeps the previously uploaded file."""
        return self._update(
            "code_snippets",
            snippet_id,
            SNIPPET_FIELDS,
            fields,
            extra="file_path = COALESCE(?, file_path)",
        )

    def get_snippet(self, snippet_id: int):
        return self._get("code_snippets", snippet_id)

    def get_snippet_by_slug(self, slug: str, *, published_only: bool = True):
        return self._by_slug("code_snippets", slug, published_only)

    def list_snippets(self, search: str = "", tag: str = "", **kw):
        return self._list("code_snippets", "description", search=search, tag=tag, **kw)

    def delete_snippet(self, snippet_id: int) -> bool:
        return self._delete_owner(Owner("code", snippet_id))

    # ── notes ──────────────────────────────────────────────────────
    def create_note(self, fields: dict) -> int:
        return self._insert("notes", NOTE_FIELDS, fields)

    def update_note(self, note_id: int, fields: dict) -> bool:
        return self._update("notes", note_id, NOTE_FIELDS, fields)

    def get_note(self, note_id: int):
        return self._get("notes", note_id)

    def list_notes(self, *, limit: int | None = None) -> list[sqlite3.Row]:
        sql = "SELECT * FROM notes ORDER BY updated_at DESC, id DESC"
        if limit:
            return self.db.execute(sql + " LIMIT ?", (limit,)).fetchall()
        return self.db.execute(sql).fetchall()

    def delete_note(self, note_id: int) -> bool:
        cur = self.db.execute("DELETE FROM notes WHERE id = ?", (note_id,))
        self.db.commit()
        return cur.rowcount > 0

    # ── private comments ───────────────────────────────────────────
    def get_owner(self, owner: Owner):
        return self._get(OWNER_TABLES[owner.kind], owner.id)

    def add_comment(self, owner: Owner, text: str) -> int:
        cur = self.db.execute(
            "INSERT INTO private_comments (item_type, item_id, comment, created_at) "
            "VALUES (?,?,?,?)",
            (owner.kind, owner.id, text, _now_iso()),
        )
        self.db.commit()
        return cur.lastrowid

    def comments_for(self, owner: Owner) -> list[sqlite3.Row]:
        return self.db.execute(
            "SELECT * FROM private_comments WHERE item_type = ? AND item_id = ? "
            "ORDER BY created_at, id",
            (owner.kind, owner.id),
        ).fetchall()

    def delete_comments_for(self, owner: Owner) -> int:
        cur = self.db.execute(
            "DELETE FROM private_comments WHERE item_type = ? AND item_id = ?",
            (owner.kind, owner.id),
        )
        self.db.commit()
        return cur.rowcount

    # ── users ──────────────────────────────────────────────────────
    def get_user_by_username(self, username: str):
        return self.db.execute(
            "SELECT * FROM users WHERE username = ?", (username,)
        ).fetchone()

    def set_password(self, username: str, password_hash: str) -> bool:
        cur = self.db.execute(
            "UPDATE users SET password = ? WHERE username = ?",
            (password_hash, username),
        )
        self.db.commit()
        return cur.rowcount > 0

    # ── live search ────────────────────────────────────────────────
    def suggest(self, kind: str, q: str, limit: int = SUGGEST_LIMIT) -> list[dict]:
        """Published ``{id, title, slug}`` rows whose title contains *q*."""
        table = OWNER_TABLES.get(kind)
        if table is None:
            return []
        rows = self.db.execute(
            f"SELECT id, title, slug FROM {table} "
            "WHERE published = 1 AND title LIKE ? ESCAPE '\\' "
            "ORDER BY created_at DESC, id DESC LIMIT ?",
            (_like(q or ""), limit),
        ).fetchall()
        return [dict(r) for r in rows]


def _column_value(fields: dict, col: str):
    if col == "published":
        return 1 if fields.get("published", 1) else 0
    return fields.get(col)


def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


################################################################################
# Sessions (server side)
################################################################################
class SessionStore:
    """Session payloads keyed by an opaque id, in their own SQLite file."""

    def __init__(self, path: str):
        self.path = path

    def _connect(self) -> sqlite3.Connection:
        db = sqlite3.connect(self.path)
        db.row_factory = sqlite3.Row
        return db

    def init(self) -> None:
        with closing(self._connect()) as db:
            db.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    sid        TEXT PRIMARY KEY,
                    data       TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                )
                """
            )
            db.commit()

    def load(self, sid: str) -> dict | None:
        with closing(self._connect()) as db:
            row = db.execute(
                "SELECT data FROM sessions WHERE sid = ? AND expires_at > ?",
                (sid, _now_iso()),
            ).fetchone()
        return json.loads(row["data"]) if row else None

    def save(self, sid: str, data: dict, expires_at: datetime) -> None:
        with closing(self._connect()) as db:
            db.execute(
                "INSERT INTO sessions (sid, data, expires_at) VALUES (?,?,?) "
                "ON CONFLICT(sid) DO UPDATE SET "
                "data = excluded.data, expires_at = excluded.expires_at",
                (sid, json.dumps(data), expires_at.isoformat(timespec="seconds")),
            )
            db.execute("DELETE FROM sessions WHERE expires_at <= ?", (_now_iso(),))
            db.commit()

    def delete(self, sid: str) -> None:
        with closing(self._connect()) as db:
            db.execute("DELETE FROM sessions WHERE sid = ?", (sid,))
            db.commit()


def _new_sid() -> str:
    return secrets.token_urlsafe(32)


class ServerSession(CallbackDict, SessionMixin):
    def __init__(self, initial=None, sid: str | None = None, new: bool = False):
        def on_update(self):
            self.modified = True

        super().__init__(initial, on_update)
        self.sid = sid or _new_sid()
        self.new = new
        self.rotate = False
        self.modified = False

    def regenerate(self) -> None:
        """Issue a new id on save (login must not reuse the anonymous one)."""
        self.rotate = True
        self.modified = True


class SqliteSessionInterface(SessionInterface):
    """The cookie only carries a signed, random session id."""

    salt = "cybersite-session"

    def __init__(self, store: SessionStore):
        self.store = store

    def _signer(self, app) -> Signer:
        return Signer(app.secret_key, salt=self.salt)

    def open_session(self, app, request):
        cookie = request.cookies.get(self.get_cookie_name(app))
        if cookie:
            try:
                sid = self._signer(app).unsign(cookie).decode()
            except BadSignature:
                sid = None
            if sid:
                data = self.store.load(sid)
                if data is not None:
                    return ServerSession(data, sid=sid)
        return ServerSession(new=True)

    def save_session(self, app, session, response):
        name = self.get_cookie_name(app)
        domain = self.get_cookie_domain(app)
        path = self.get_cookie_path(app)

        if not session:
            if session.modified and not session.new:
                self.store.delete(session.sid)
                response.delete_cookie(name, domain=domain, path=path)
            return
        if not session.modified:
            return

        if session.rotate:
            self.store.delete(session.sid)
            session.sid = _new_sid()
            session.rotate = False

        expires = utc_now() + app.permanent_session_lifetime
        self.store.save(session.sid, dict(session), expires)
        response.set_cookie(
            name,
            self._signer(app).sign(session.sid).decode(),
            expires=expires,
            httponly=self.get_cookie_httponly(app),
            domain=domain,
            path=path,
            secure=self.get_cookie_secure(app),
            samesite=self.get_cookie_samesite(app),
        )


################################################################################
# Site context
################################################################################
class LoginLimiter:
    """Sliding window of login attempts per client."""

    def __init__(self, max_attempts: int = LOGIN_MAX_ATTEMPTS, window: int = LOGIN_WINDOW_SEC):
        self.max_attempts = max_attempts
        self.window = window
        self._hits: DefaultDict[str, deque] = defaultdict(deque)

    def _prune(self, now: float) -> None:
        for key in list(self._hits):
            dq = self._hits[key]
            while dq and now - dq[0] > self.window:
                dq.popleft()
            if not dq:
                del self._hits[key]

    def hit(self, key: str) -> bool:
        """Record an attempt; ``False`` once the window is full."""
        now = time()
        self._prune(now)
        dq = self._hits[key]
        if len(dq) >= self.max_attempts:
            return False
        dq.append(now)
        return True

    def __len__(self) -> int:
        return len(self._hits)


@dataclass
class Site:
    store: Store
    sessions: SessionStore
    limiter: LoginLimiter
    upload_dir: Path


def current_site() -> Site:
    return current_app.extensions["cybersite"]


def client_ip() -> str:
    """The peer address; ProxyFix has already swapped in the trusted hop."""
    return request.remote_addr or "unknown"


################################################################################
# Authentication
################################################################################
class AuthError(Exception):
    pass


class InvalidCredentials(AuthError):
    def __init__(self):
        super().__init__("Invalid credentials")


class CsrfMismatch(Forbidden):
    description = "CSRF token missing or invalid."


def hash_password(plain: str) -> str:
    return generate_password_hash(plain)


def verify_password(plain: str, password_hash: str) -> bool:
    return check_password_hash(password_hash, plain)


_DUMMY_HASH = hash_password(secrets.token_hex(8))


def login(store: Store, username: str, password: str):
    """
    Check the credentials and open an authenticated session.

    An unknown user and a wrong password raise the same error; the dummy
    hash keeps both paths equally slow.
    """
    user = store.get_user_by_username(username)
    if user is None:
        verify_password(password, _DUMMY_HASH)
        raise InvalidCredentials()
    if not verify_password(password, user["password"]):
        raise InvalidCredentials()

    session.clear()
    session.regenerate()
    session["user_id"] = user["id"]
    session["username"] = user["username"]
    session["csrf"] = secrets.token_hex(16)
    return user


def logout() -> None:
    session.clear()


def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not session.get("user_id"):
            return redirect(url_for("site.login"))
        return view(*args, **kwargs)

    return wrapped


def limit_logins(view):
    """Count every POST, successful or not, against the client's window."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        if request.method == "POST":
            ip = client_ip()
            if not current_site().limiter.hit(ip):
                current_app.logger.warning("Login rate limit hit for %s", ip)
                return Response(RATE_LIMIT_MESSAGE, status=429, mimetype="text/plain")
        return view(*args, **kwargs)

    return wrapped


SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


def csrf_token() -> str:
    """One token per session, minted by the first form that needs it."""
    token = session.get("csrf")
    if not token:
        token = session["csrf"] = secrets.token_hex(16)
    return token


################################################################################
# Uploads
################################################################################
class TooManyFiles(BadRequest):
    description = "Only one file can be uploaded per request."


def save_upload(files, upload_dir: Path) -> str | None:
    """
    Persist the single uploaded file (if any) and return its public path.
    """
    uploads = [f for _, f in files.items(multi=True) if f and f.filename]
    if len(uploads) > 1:
        raise TooManyFiles()
    if not uploads:
        return None

    f = uploads[0]
    base = secure_filename(f.filename) or "upload"
    upload_dir.mkdir(parents=True, exist_ok=True)
    stamp = int(time() * 1000)
    name = f"{stamp}-{base}"
    while (upload_dir / name).exists():
        stamp += 1
        name = f"{stamp}-{base}"
    f.save(upload_dir / name)
    current_app.logger.info("Stored upload %s", name)
    return f"/uploads/{name}"


def discard_upload(public_path: str | None, upload_dir: Path) -> None:
    if public_path:
        (upload_dir / Path(public_path).name).unlink(missing_ok=True)


################################################################################
# Template filters
################################################################################
MD_EXTENSION_CONFIGS = {
    "pymdownx.highlight": {
        "guess_lang": False,
        "noclasses": True,
        "pygments_style": "monokai",
    },
}
BASE_MD_EXTENSIONS = [
    "pymdownx.extra",
    "pymdownx.magiclink",
    "pymdownx.tilde",
    "pymdownx.highlight",
    "pymdownx.saneheaders",
]


class EscapeHtmlExtension(Extension):
    """Raw HTML in the source is rendered as text, never passed through."""

    def extendMarkdown(self, md):
        md.preprocessors.deregister("html_block")
        md.inlinePatterns.deregister("html")


def _markdown_renderer():
    return markdown.Markdown(
        extensions=BASE_MD_EXTENSIONS + [EscapeHtmlExtension()],
        extension_configs=MD_EXTENSION_CONFIGS,
    )


md = _markdown_renderer()


def markdown_filter(text: str | None) -> Markup:
    md.reset()
    return Markup(md.convert(text or ""))


def truncate_filter(text: str | None, length: int = TRUNCATE_DEFAULT) -> str:
    if not text:
        return ""
    return text[:length] + "..." if len(text) > length else text


def date_filter(value) -> str:
    """'2026-10-19T08:00:00+00:00' → '19 October 2026'."""
    if not value:
        return ""
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value))
        except ValueError:
            return str(value)
    return f"{dt.day} {dt:%B %Y}"


def _template_context() -> dict:
    return {
        "is_authenticated": bool(session.get("user_id")),
        "current_path": request.path,
    }


################################################################################
# Views
################################################################################
bp = Blueprint("site", __name__, cli_group=None)


@bp.before_app_request
def csrf_protect():
    if request.method in SAFE_METHODS:
        return
    token = session.get("csrf", "")
    sent = request.form.get("csrf") or request.headers.get("X-CSRFToken", "")
    if not token or not secrets.compare_digest(token.encode(), sent.encode()):
        raise CsrfMismatch()


@bp.after_app_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
            "Content-Security-Policy": (
                "default-src 'self'; "
                "style-src 'self' 'unsafe-inline' https://cdnjs.cloudflare.com; "
                "script-src 'self' https://cdnjs.cloudflare.com; "
                "img-src 'self' data: https:"
            ),
        }
    )
    return resp


# ──── public pages ──────────────────────────────────────────────
@bp.route("/")
def index():
    store = current_site().store
    posts = store.list_posts(limit=TEASER_LIMIT)
    snippets = store.list_snippets(limit=TEASER_LIMIT)
    return render_template("index.html", posts=posts, snippets=snippets)


@bp.route("/blog")
def blog():
    search = request.args.get("search", "").strip()
    tag = request.args.get("tag", "").strip()
    posts = current_site().store.list_posts(search, tag)
    return render_template(
        "blog.html", title="Blog", posts=posts, search=search, tag=tag
    )


@bp.route("/blog/<slug>")
def blog_post(slug):
    post = current_site().store.get_post_by_slug(slug)
    if post is None:
        abort(404)
    return render_template("blog-post.html", title=post["title"], post=post)


@bp.route("/code")
def code():
    search = request.args.get("search", "").strip()
    tag = request.args.get("tag", "").strip()
    snippets = current_site().store.list_snippets(search, tag)
    return render_template(
        "code.html", title="Code", snippets=snippets, search=search, tag=tag
    )


@bp.route("/code/<slug>")
def code_detail(slug):
    snippet = current_site().store.get_snippet_by_slug(slug)
    if snippet is None:
        abort(404)
    return render_template("code-detail.html", title=snippet["title"], snippet=snippet)


@bp.route("/about")
def about():
    return render_template("about.html", title="About")


@bp.route("/uploads/<path:name>")
def uploaded_file(name):
    return send_from_directory(current_site().upload_dir, name)


@bp.route("/notes")
@login_required
def notes():
    return render_template(
        "notes.html", title="Notes", notes=current_site().store.list_notes()
    )


# ──── login / logout ────────────────────────────────────────────
@bp.route("/login", methods=["GET", "POST"], endpoint="login")
@limit_logins
def login_page():
    if request.method == "GET" and session.get("user_id"):
        return redirect(url_for(".admin"))

    error = None
    if request.method == "POST":
        username = request.form.get("username", "").strip()
        try:
            login(current_site().store, username, request.form.get("password", ""))
        except InvalidCredentials as exc:
            current_app.logger.warning("Failed login for %r from %s", username, client_ip())
            session["csrf"] = secrets.token_hex(16)
            error = str(exc)
        else:
            current_app.logger.info("User %r logged in", username)
            return redirect(url_for(".admin"))

    return render_template("login.html", title="Login", error=error)


@bp.route("/logout")
def logout_page():
    if session.get("username"):
        current_app.logger.info("User %r logged out", session["username"])
    logout()
    return redirect(url_for(".index"))


# ──── admin ─────────────────────────────────────────────────────
def _form_id() -> int | None:
    raw = request.form.get("id", "").strip()
    if not raw:
        return None
    if not raw.isdigit():
        abort(400)
    return int(raw)


STRIPPED_FIELDS = {"title", "slug", "tags", "language"}


def _form_fields(names: tuple[str, ...]) -> dict:
    """Body fields (code, content, ...) are stored exactly as sent."""
    fields = {}
    for n in names:
        if n == "published":
            continue
        value = request.form.get(n, "")
        fields[n] = value.strip() if n in STRIPPED_FIELDS else value
    if "published" in names:
        fields["published"] = 1 if request.form.get("published") == "on" else 0
    if "slug" in fields and not fields["slug"]:
        fields["slug"] = slugify(fields.get("title"))
    return fields


def _missing(fields: dict, required: tuple[str, ...]) -> str | None:
    absent = [r for r in required if not (fields.get(r) or "").strip()]
    if absent:
        return "Required: " + ", ".join(absent)
    return None


@bp.route("/admin")
@login_required
def admin():
    store = current_site().store
    return render_template(
        "admin/dashboard.html",
        title="Admin",
        posts=store.list_posts(published_only=False, limit=DASHBOARD_LIMIT),
        snippets=store.list_snippets(published_only=False, limit=DASHBOARD_LIMIT),
        notes=store.list_notes(limit=DASHBOARD_LIMIT),
    )


# blog posts
@bp.route("/admin/blog/new")
@login_required
def new_post():
    return render_template("admin/edit-post.html", title="New post", post=None, comments=[])


@bp.route("/admin/blog/<int:post_id>")
@login_required
def edit_post(post_id):
    store = current_site().store
    post = store.get_post(post_id)
    if post is None:
        abort(404)
    comments = store.comments_for(Owner("blog", post_id))
    return render_template(
        "admin/edit-post.html", title="Edit post", post=post, comments=comments
    )


@bp.route("/admin/blog", methods=["POST"])
@login_required
def save_post():
    store = current_site().store
    post_id = _form_id()
    fields = _form_fields(POST_FIELDS)
    error = _missing(fields, ("title", "slug", "content"))

    if error is None:
        try:
            if post_id is None:
                post_id = store.create_post(fields)
            elif not store.update_post(post_id, fields):
                abort(404)
        except SlugTaken as exc:
            error = str(exc)
        else:
            flash("Post saved.")
            return redirect(url_for(".admin"))

    return (
        render_template(
            "admin/edit-post.html",
            title="Edit post",
            post={**fields, "id": post_id},
            comments=store.comments_for(Owner("blog", post_id)) if post_id else [],
            error=error,
        ),
        400,
    )


@bp.route("/admin/blog/<int:post_id>/delete", methods=["POST"])
@login_required
def delete_post(post_id):
    if not current_site().store.delete_post(post_id):
        abort(404)
    flash("Post deleted.")
    return redirect(url_for(".admin"))


# code snippets
@bp.route("/admin/code/new")
@login_required
def new_snippet():
    return render_template(
        "admin/edit-code.html", title="New snippet", snippet=None, comments=[]
    )


@bp.route("/admin/code/<int:snippet_id>")
@login_required
def edit_snippet(snippet_id):
    store = current_site().store
    snippet = store.get_snippet(snippet_id)
    if snippet is None:
        abort(404)
    comments = store.comments_for(Owner("code", snippet_id))
    return render_template(
        "admin/edit-code.html", title="Edit snippet", snippet=snippet, comments=comments
    )


@bp.route("/admin/code", methods=["POST"])
@login_required
def save_snippet():
    site = current_site()
    snippet_id = _form_id()
    fields = _form_fields(SNIPPET_FIELDS)
    error = _missing(fields, ("title", "slug", "code"))

    if error is None:
        fields["file_path"] = save_upload(request.files, site.upload_dir)
        try:
            if snippet_id is None:
                snippet_id = site.store.create_snippet(fields)
            elif not site.store.update_snippet(snippet_id, fields):
                discard_upload(fields["file_path"], site.upload_dir)
                abort(404)
        except SlugTaken as exc:
            discard_upload(fields["file_path"], site.upload_dir)
            error = str(exc)
        else:
            flash("Snippet saved.")
            return redirect(url_for(".admin"))

    previous = site.store.get_snippet(snippet_id) if snippet_id else None
    fields["file_path"] = previous["file_path"] if previous else None
    return (
        render_template(
            "admin/edit-code.html",
            title="Edit snippet",
            snippet={**fields, "id": snippet_id},
            comments=site.store.comments_for(Owner("code", snippet_id))
            if snippet_id
            else [],
            error=error,
        ),
        400,
    )


@bp.route("/admin/code/<int:snippet_id>/delete", methods=["POST"])
@login_required
def delete_snippet(snippet_id):
    if not current_site().store.delete_snippet(snippet_id):
        abort(404)
    flash("Snippet deleted.")
    return redirect(url_for(".admin"))


# private comments
@bp.route("/admin/comment", methods=["POST"])
@login_required
def add_comment():
    store = current_site().store
    kind = request.form.get("item_type", "")
    item_id = request.form.get("item_id", type=int)
    text = request.form.get("comment", "").strip()
    if kind not in OWNER_KINDS or item_id is None or not text:
        abort(400)

    owner = Owner(kind, item_id)
    if store.get_owner(owner) is None:
        abort(404)
    store.add_comment(owner, text)
    if kind == "blog":
        return redirect(url_for(".edit_post", post_id=item_id))
    return redirect(url_for(".edit_snippet", snippet_id=item_id))


# notes
@bp.route("/admin/notes/new")
@login_required
def new_note():
    return render_template("admin/edit-note.html", title="New note", note=None)


@bp.route("/admin/notes/<int:note_id>")
@login_required
def edit_note(note_id):
    note = current_site().store.get_note(note_id)
    if note is None:
        abort(404)
    return render_template("admin/edit-note.html", title="Edit note", note=note)


@bp.route("/admin/notes", methods=["POST"])
@login_required
def save_note():
    store = current_site().store
    note_id = _form_id()
    fields = _form_fields(NOTE_FIELDS)
    error = _missing(fields, ("title", "content"))
    if error is None:
        if note_id is None:
            store.create_note(fields)
        elif not store.update_note(note_id, fields):
            abort(404)
        flash("Note saved.")
        return redirect(url_for(".notes"))

    return (
        render_template(
            "admin/edit-note.html",
            title="Edit note",
            note={**fields, "id": note_id},
            error=error,
        ),
        400,
    )


@bp.route("/admin/notes/<int:note_id>/delete", methods=["POST"])
@login_required
def delete_note(note_id):
    if not current_site().store.delete_note(note_id):
        abort(404)
    flash("Note deleted.")
    return redirect(url_for(".notes"))


# ──── JSON ──────────────────────────────────────────────────────
@bp.route("/api/search")
def api_search():
    q = request.args.get("q", "")
    kind = request.args.get("type", "")
    return jsonify(current_site().store.suggest(kind, q))


# ──── errors ────────────────────────────────────────────────────
@bp.app_errorhandler(404)
def not_found(exc):
    return render_template("404.html", title="Not found"), 404


@bp.app_errorhandler(500)
def internal_error(exc):
    """Flask has already logged the traceback through app.logger."""
    return render_template("500.html", title="Error"), 500


################################################################################
# CLI
################################################################################
@bp.cli.command("init-db")
def cli_init_db():
    """Create the tables and seed the default account if needed."""
    seeded = current_site().store.init()
    click.secho(f"\n✅  Database ready: {current_app.config['DATABASE']}", fg="green")
    if seeded:
        click.echo(f"Default login: {DEFAULT_USERNAME} / {DEFAULT_PASSWORD}")


@bp.cli.command("passwd")
@click.option("--username", default=DEFAULT_USERNAME, show_default=True)
@click.password_option()
def cli_passwd(username: str, password: str):
    """Replace a user's password."""
    if not current_site().store.set_password(username, hash_password(password)):
        raise click.ClickException(f"No such user: {username}")
    click.secho(f"\n🔑  Password updated for {username}.", fg="green")


################################################################################
# Templates
################################################################################
def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title ~ ' · ' if title }}{{ site_name }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<style>
:root{--bg:#0d1117;--bg-card:#161b22;--border:#30363d;--fg:#c9d1d9;--accent:#39d353;--radius:6px;--shadow-lg:0 8px 24px rgba(0,0,0,.4)}
body{font-family:ui-monospace,SFMono-Regular,Menlo,Consolas,monospace;background:var(--bg);color:var(--fg);max-width:60rem;margin:2rem auto;padding:0 1rem;line-height:1.6}
a{color:var(--accent);text-decoration:none}a:hover{text-decoration:underline}
.nav-links{display:flex;gap:1.25rem;flex-wrap:wrap;border-bottom:1px solid var(--border);padding-bottom:.75rem;margin-bottom:2rem}
.nav-links a.active,.nav-links a[aria-current=page]{color:#fff;border-bottom:2px solid var(--accent)}
.card{background:var(--bg-card);border:1px solid var(--border);border-radius:var(--radius);padding:1rem 1.25rem;margin-bottom:1rem}
.tag{display:inline-block;padding:0 .5em;margin-right:.3em;border:1px solid var(--border);border-radius:1em;font-size:.8em}
.meta{color:#8b949e;font-size:.85em}
.error{color:#f85149}
pre{background:var(--bg-card);border:1px solid var(--border);padding:1rem;overflow-x:auto}
input,textarea,select{width:100%;box-sizing:border-box;background:var(--bg-card);color:var(--fg);border:1px solid var(--border);border-radius:var(--radius);padding:.4rem .6rem;margin-bottom:.75rem;font:inherit}
input[type=checkbox]{width:auto}
button{background:var(--accent);color:#000;border:0;border-radius:var(--radius);padding:.4rem 1rem;cursor:pointer;font:inherit}
button.danger{background:#da3633;color:#fff}
table{width:100%;border-collapse:collapse}td,th{padding:.35rem;border-bottom:1px solid var(--border);text-align:left}
.code-block{position:relative}.code-block .copy-btn{position:absolute;top:.5rem;right:.5rem;font-size:.75em}
.toast{position:fixed;top:1rem;right:1rem;background:var(--bg-card);border:1px solid var(--border);border-radius:var(--radius);padding:.75rem 1rem;box-shadow:var(--shadow-lg);z-index:999}
</style>
<body>
<nav class="nav-links" aria-label="Primary">
    <a href="{{ url_for('site.index') }}" {% if current_path == '/' %}aria-current="page"{% endif %}>~/home</a>
    <a href="{{ url_for('site.blog') }}" {% if current_path.startswith('/blog') %}aria-current="page"{% endif %}>blog</a>
    <a href="{{ url_for('site.code') }}" {% if current_path.startswith('/code') %}aria-current="page"{% endif %}>code</a>
    <a href="{{ url_for('site.about') }}" {% if current_path == '/about' %}aria-current="page"{% endif %}>about</a>
    {% if is_authenticated %}
    <a href="{{ url_for('site.notes') }}" {% if current_path == '/notes' %}aria-current="page"{% endif %}>notes</a>
    <a href="{{ url_for('site.admin') }}" {% if current_path.startswith('/admin') %}aria-current="page"{% endif %}>admin</a>
    <a href="{{ url_for('site.logout_page') }}">logout</a>
    {% else %}
    <a href="{{ url_for('site.login') }}" {% if current_path == '/login' %}aria-current="page"{% endif %}>login</a>
    {% endif %}
</nav>
{% with msgs = get_flashed_messages() %}
{% if msgs %}
<div class="toast" role="status" aria-live="polite">
    {% for m in msgs %}{{ m }}{% if not loop.last %}<br>{% endif %}{% endfor %}
</div>
{% endif %}
{% endwith %}
<main id="main-content" role="main">
"""

TEMPL_EPILOG = """
</main>
<footer class="meta" style="margin-top:3rem;border-top:1px solid var(--border);padding-top:1rem;">
    {{ site_name }} v{{ version }}
</footer>
<script src="{{ url_for('static', filename='main.js') }}"></script>
</body>
</html>
"""

TEMPL_POST_CARD = """
<article class="card">
    <h3 style="margin:0;"><a href="{{ url_for('site.blog_post', slug=post.slug) }}">{{ post.title }}</a></h3>
    <div class="meta">{{ post.created_at|date }}</div>
    <p>{{ (post.excerpt or post.content)|truncate }}</p>
    {% for t in tag_list(post.tags) %}<a class="tag" href="{{ url_for('site.blog', tag=t) }}">#{{ t }}</a>{% endfor %}
</article>
"""

TEMPL_SNIPPET_CARD = """
<article class="card">
    <h3 style="margin:0;"><a href="{{ url_for('site.code_detail', slug=snippet.slug) }}">{{ snippet.title }}</a></h3>
    <div class="meta">{{ snippet.language or 'text' }} · {{ snippet.created_at|date }}</div>
    <p>{{ snippet.description|truncate }}</p>
    {% for t in tag_list(snippet.tags) %}<a class="tag" href="{{ url_for('site.code', tag=t) }}">#{{ t }}</a>{% endfor %}
</article>
"""

TEMPL_FILTER_FORM = """
<form method="get" style="display:flex;gap:.5rem;">
    <input type="search" id="searchInput" name="search" value="{{ search }}"
           placeholder="search" list="suggestions" data-type="{{ search_type }}">
    <datalist id="suggestions"></datalist>
    <input name="tag" value="{{ tag }}" placeholder="tag" style="max-width:12rem;">
    <button>filter</button>
</form>
"""

TEMPL_DELETE_FORM = """
<form method="post" action="{{ action }}" style="display:inline;">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <button class="danger">delete</button>
</form>
"""

TEMPL_INDEX = wrap("""
{% block body %}
<section id="intro">
    <h1>Hi, I build and break things.</h1>
    <p>Notes on security, systems and the code in between.</p>
</section>
<section id="latest-posts">
    <h2>Latest posts</h2>
    {% for post in posts %}""" + TEMPL_POST_CARD + """{% else %}
    <p class="meta">Nothing here yet.</p>
    {% endfor %}
</section>
<section id="latest-code">
    <h2>Latest code</h2>
    {% for snippet in snippets %}""" + TEMPL_SNIPPET_CARD + """{% else %}
    <p class="meta">Nothing here yet.</p>
    {% endfor %}
</section>
{% endblock %}
""")

TEMPL_BLOG = wrap("""
{% block body %}
<h1>Blog</h1>
{% set search_type = 'blog' %}""" + TEMPL_FILTER_FORM + """
{% for post in posts %}""" + TEMPL_POST_CARD + """{% else %}
<p class="meta">No posts found.</p>
{% endfor %}
{% endblock %}
""")

TEMPL_BLOG_POST = wrap("""
{% block body %}
<article>
    <h1>{{ post.title }}</h1>
    <div class="meta">
        {{ post.created_at|date }}
        {% if post.updated_at != post.created_at %} · updated {{ post.updated_at|date }}{% endif %}
    </div>
    {% for t in tag_list(post.tags) %}<a class="tag" href="{{ url_for('site.blog', tag=t) }}">#{{ t }}</a>{% endfor %}
    <div class="content">{{ post.content|markdown }}</div>
</article>
<p><a href="{{ url_for('site.blog') }}">← all posts</a></p>
{% endblock %}
""")

TEMPL_CODE = wrap("""
{% block body %}
<h1>Code</h1>
{% set search_type = 'code' %}""" + TEMPL_FILTER_FORM + """
{% for snippet in snippets %}""" + TEMPL_SNIPPET_CARD + """{% else %}
<p class="meta">No snippets found.</p>
{% endfor %}
{% endblock %}
""")

TEMPL_CODE_DETAIL = wrap("""
{% block body %}
<article>
    <h1>{{ snippet.title }}</h1>
    <div class="meta">{{ snippet.language or 'text' }} · {{ snippet.created_at|date }}</div>
    {% for t in tag_list(snippet.tags) %}<a class="tag" href="{{ url_for('site.code', tag=t) }}">#{{ t }}</a>{% endfor %}
    {% if snippet.description %}<div class="content">{{ snippet.description|markdown }}</div>{% endif %}
    <div class="code-block">
        <button type="button" class="copy-btn">Copy</button>
        <pre><code class="language-{{ snippet.language or 'text' }}">{{ snippet.code }}</code></pre>
    </div>
    {% if snippet.file_path %}
    <p><a href="{{ snippet.file_path }}" download>⬇ download file</a></p>
    {% endif %}
</article>
<p><a href="{{ url_for('site.code') }}">← all snippets</a></p>
{% endblock %}
""")

TEMPL_ABOUT = wrap("""
{% block body %}
<h1>About</h1>
<p>This is a personal site: a blog, a shelf of code snippets, and a few
private notes kept behind a login.</p>
<p>Everything here is written by one person and served by a small Flask app.</p>
{% endblock %}
""")

TEMPL_NOTES = wrap("""
{% block body %}
<h1>Notes</h1>
<p><a href="{{ url_for('site.new_note') }}">+ new note</a></p>
{% for note in notes %}
<article class="card">
    <h3 style="margin:0;">{{ note.title }}</h3>
    <div class="meta">updated {{ note.updated_at|date }}</div>
    <div class="content">{{ note.content|markdown }}</div>
    {% for t in tag_list(note.tags) %}<span class="tag">#{{ t }}</span>{% endfor %}
    <div>
        <a href="{{ url_for('site.edit_note', note_id=note.id) }}">edit</a>
        {% set action = url_for('site.delete_note', note_id=note.id) %}""" + TEMPL_DELETE_FORM + """
    </div>
</article>
{% else %}
<p class="meta">No notes yet.</p>
{% endfor %}
{% endblock %}
""")

TEMPL_LOGIN = wrap("""
{% block body %}
<h1>Login</h1>
{% if error %}<p class="error">{{ error }}</p>{% endif %}
<form method="post" style="max-width:24rem;">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    <label for="username">username</label>
    <input id="username" name="username" autocomplete="username" required>
    <label for="password">password</label>
    <input id="password" name="password" type="password" autocomplete="current-password" required>
    <button>Sign in</button>
</form>
{% endblock %}
""")

TEMPL_DASHBOARD = wrap("""
{% block body %}
<h1>Dashboard</h1>
<section>
    <h2>Posts <small><a href="{{ url_for('site.new_post') }}">+ new</a></small></h2>
    <table>
    {% for post in posts %}
        <tr>
            <td><a href="{{ url_for('site.edit_post', post_id=post.id) }}">{{ post.title }}</a></td>
            <td class="meta">{{ 'published' if post.published else 'draft' }}</td>
            <td class="meta">{{ post.created_at|date }}</td>
            <td>{% set action = url_for('site.delete_post', post_id=post.id) %}""" + TEMPL_DELETE_FORM + """</td>
        </tr>
    {% endfor %}
    </table>
</section>
<section>
    <h2>Code <small><a href="{{ url_for('site.new_snippet') }}">+ new</a></small></h2>
    <table>
    {% for snippet in snippets %}
        <tr>
            <td><a href="{{ url_for('site.edit_snippet', snippet_id=snippet.id) }}">{{ snippet.title }}</a></td>
            <td class="meta">{{ 'published' if snippet.published else 'draft' }}</td>
            <td class="meta">{{ snippet.created_at|date }}</td>
            <td>{% set action = url_for('site.delete_snippet', snippet_id=snippet.id) %}""" + TEMPL_DELETE_FORM + """</td>
        </tr>
    {% endfor %}
    </table>
</section>
<section>
    <h2>Notes <small><a href="{{ url_for('site.new_note') }}">+ new</a></small></h2>
    <table>
    {% for note in notes %}
        <tr>
            <td><a href="{{ url_for('site.edit_note', note_id=note.id) }}">{{ note.title }}</a></td>
            <td class="meta">{{ note.updated_at|date }}</td>
            <td>{% set action = url_for('site.delete_note', note_id=note.id) %}""" + TEMPL_DELETE_FORM + """</td>
        </tr>
    {% endfor %}
    </table>
</section>
{% endblock %}
""")

TEMPL_COMMENTS = """
{% if item and item.id %}
<section>
    <h2>Private comments</h2>
    {% for c in comments %}
    <div class="card"><div class="meta">{{ c.created_at|date }}</div>{{ c.comment }}</div>
    {% endfor %}
    <form method="post" action="{{ url_for('site.add_comment') }}">
        <input type="hidden" name="csrf" value="{{ csrf_token() }}">
        <input type="hidden" name="item_type" value="{{ item_type }}">
        <input type="hidden" name="item_id" value="{{ item.id }}">
        <textarea name="comment" rows="3" required></textarea>
        <button>add comment</button>
    </form>
</section>
{% endif %}
"""

TEMPL_EDIT_POST = wrap("""
{% block body %}
<h1>{{ 'Edit' if post and post.id else 'New' }} post</h1>
{% if error %}<p class="error">{{ error }}</p>{% endif %}
<form method="post" action="{{ url_for('site.save_post') }}">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    {% if post and post.id %}<input type="hidden" name="id" value="{{ post.id }}">{% endif %}
    <label for="title">title</label>
    <input id="title" name="title" type="text" value="{{ post.title if post }}" required>
    <label for="slug">slug</label>
    <input id="slug" name="slug" type="text" value="{{ post.slug if post }}" placeholder="derived from the title when empty">
    <label for="excerpt">excerpt</label>
    <input id="excerpt" name="excerpt" type="text" value="{{ post.excerpt or '' if post }}">
    <label for="content">content (markdown)</label>
    <textarea id="content" name="content" rows="18" required>{{ post.content if post }}</textarea>
    <label for="tags">tags (comma separated)</label>
    <input id="tags" name="tags" type="text" value="{{ post.tags or '' if post }}">
    <label><input type="checkbox" name="published" {% if not post or post.published %}checked{% endif %}> published</label>
    <button>save</button>
</form>
{% set item, item_type = post, 'blog' %}""" + TEMPL_COMMENTS + """
{% endblock %}
""")

TEMPL_EDIT_CODE = wrap("""
{% block body %}
<h1>{{ 'Edit' if snippet and snippet.id else 'New' }} snippet</h1>
{% if error %}<p class="error">{{ error }}</p>{% endif %}
<form method="post" action="{{ url_for('site.save_snippet') }}" enctype="multipart/form-data">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    {% if snippet and snippet.id %}<input type="hidden" name="id" value="{{ snippet.id }}">{% endif %}
    <label for="title">title</label>
    <input id="title" name="title" type="text" value="{{ snippet.title if snippet }}" required>
    <label for="slug">slug</label>
    <input id="slug" name="slug" type="text" value="{{ snippet.slug if snippet }}" placeholder="derived from the title when empty">
    <label for="description">description (markdown)</label>
    <textarea id="description" name="description" rows="4">{{ snippet.description or '' if snippet }}</textarea>
    <label for="code">code</label>
    <textarea id="code" name="code" rows="18" required>{{ snippet.code if snippet }}</textarea>
    <label for="language">language</label>
    <input id="language" name="language" type="text" value="{{ snippet.language or '' if snippet }}">
    <label for="tags">tags (comma separated)</label>
    <input id="tags" name="tags" type="text" value="{{ snippet.tags or '' if snippet }}">
    <label for="file">attachment (max 10 MiB)</label>
    {% if snippet and snippet.file_path %}<p class="meta">current: <a href="{{ snippet.file_path }}">{{ snippet.file_path }}</a></p>{% endif %}
    <input id="file" name="file" type="file">
    <label><input type="checkbox" name="published" {% if not snippet or snippet.published %}checked{% endif %}> published</label>
    <button>save</button>
</form>
{% set item, item_type = snippet, 'code' %}""" + TEMPL_COMMENTS + """
{% endblock %}
""")

TEMPL_EDIT_NOTE = wrap("""
{% block body %}
<h1>{{ 'Edit' if note and note.id else 'New' }} note</h1>
{% if error %}<p class="error">{{ error }}</p>{% endif %}
<form method="post" action="{{ url_for('site.save_note') }}">
    <input type="hidden" name="csrf" value="{{ csrf_token() }}">
    {% if note and note.id %}<input type="hidden" name="id" value="{{ note.id }}">{% endif %}
    <label for="title">title</label>
    <input id="title" name="title" type="text" value="{{ note.title if note }}" required>
    <label for="content">content (markdown)</label>
    <textarea id="content" name="content" rows="14" required>{{ note.content if note }}</textarea>
    <label for="tags">tags (comma separated)</label>
    <input id="tags" name="tags" type="text" value="{{ note.tags or '' if note }}">
    <button>save</button>
</form>
{% endblock %}
""")

TEMPL_404 = wrap("""
{% block body %}
<h1>404</h1>
<p>Page not found. <a href="{{ url_for('site.index') }}">Back home</a>.</p>
{% endblock %}
""")

TEMPL_500 = wrap("""
{% block body %}
<h1>Internal Server Error</h1>
<p>Something broke on our side. Please try again in a minute.</p>
{% endblock %}
""")

TEMPLATES = {
    "index.html": TEMPL_INDEX,
    "blog.html": TEMPL_BLOG,
    "blog-post.html": TEMPL_BLOG_POST,
    "code.html": TEMPL_CODE,
    "code-detail.html": TEMPL_CODE_DETAIL,
    "about.html": TEMPL_ABOUT,
    "notes.html": TEMPL_NOTES,
    "login.html": TEMPL_LOGIN,
    "admin/dashboard.html": TEMPL_DASHBOARD,
    "admin/edit-post.html": TEMPL_EDIT_POST,
    "admin/edit-code.html": TEMPL_EDIT_CODE,
    "admin/edit-note.html": TEMPL_EDIT_NOTE,
    "404.html": TEMPL_404,
    "500.html": TEMPL_500,
}


################################################################################
# App factory
################################################################################
def create_app(config: dict | None = None) -> Flask:
    app = Flask(__name__)
    app.url_map.strict_slashes = False
    app.config.update(load_config())
    if config:
        app.config.update(config)
    if not app.config.get("SECRET_KEY"):
        app.config["SECRET_KEY"] = _persisted_secret()

    production = app.config["PRODUCTION"]
    app.config.update(
        SESSION_COOKIE_HTTPONLY=True,
        SESSION_COOKIE_SAMESITE="Lax",
        SESSION_COOKIE_SECURE=production,  # plain http in development
        PERMANENT_SESSION_LIFETIME=SESSION_LIFETIME,
        TEMPLATES_AUTO_RELOAD=not production,
    )
    if app.config.get("MAX_CONTENT_LENGTH") is None:
        app.config["MAX_CONTENT_LENGTH"] = UPLOAD_MAX_BYTES
    app.logger.setLevel(app.config["LOG_LEVEL"])
    hops = app.config["PROXY_HOPS"]
    if hops:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=hops, x_proto=hops, x_host=hops)

    site = Site(
        store=Store(app.config["DATABASE"]),
        sessions=SessionStore(app.config["SESSION_DATABASE"]),
        limiter=LoginLimiter(),
        upload_dir=Path(app.config["UPLOAD_DIR"]),
    )
    app.extensions["cybersite"] = site
    app.session_interface = SqliteSessionInterface(site.sessions)

    app.jinja_loader = DictLoader(TEMPLATES)
    app.add_template_filter(markdown_filter, "markdown")
    app.add_template_filter(truncate_filter, "truncate")
    app.add_template_filter(date_filter, "date")
    app.jinja_env.globals.update(
        csrf_token=csrf_token,
        tag_list=tag_list,
        site_name=SITE_NAME,
        version=__version__,
    )
    app.context_processor(_template_context)
    app.teardown_appcontext(close_db)
    app.register_blueprint(bp)

    with app.app_context():
        seeded = site.store.init()
    site.sessions.init()
    if seeded:
        app.logger.warning(
            "Default user created: %s / %s  -- change it now with `flask passwd`",
            DEFAULT_USERNAME,
            DEFAULT_PASSWORD,
        )
    return app


################################################################################
# main
################################################################################
if __name__ == "__main__":
    app = create_app()
    app.run(port=app.config["PORT"], debug=not app.config["PRODUCTION"])
