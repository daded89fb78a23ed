"""Server-side sessions keyed by a signed ``sid`` cookie.

The cookie only carries a signed random id; session data lives in a store
(in-process for tests and demos, the ``sessions`` table in production).
"""

import logging
import secrets
import threading
from datetime import datetime, timedelta, timezone

from flask import session
from flask.json.tag import TaggedJSONSerializer
from flask.sessions import SessionInterface, SessionMixin
from itsdangerous import BadSignature, Signer
from werkzeug.datastructures import CallbackDict

from utils.db_conn import get_db_connection

logger = logging.getLogger(__name__)

PRUNE_INTERVAL = timedelta(minutes=15)


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ServerSideSession(CallbackDict, SessionMixin):
    def __init__(self, initial=None, sid=None, new=False):
        def on_update(self):
            self.modified = True

        super().__init__(initial, on_update)
        self.sid = sid
        self.new = new
        self.modified = False
        self.regenerate = False
        self.destroyed = False


class MemorySessionStore:
    def __init__(self):
        self._items = {}
        self._lock = threading.Lock()

    def get(self, sid, now):
        with self._lock:
            item = self._items.get(sid)
            if item is None:
                return None
            data, expires_at = item
            if expires_at <= now:
                self._items.pop(sid, None)
                return None
            return data

    def set(self, sid, data, expires_at):
        with self._lock:
            self._items[sid] = (data, expires_at)

    def destroy(self, sid):
        with self._lock:
            self._items.pop(sid, None)

    def touch(self, sid, expires_at):
        with self._lock:
            item = self._items.get(sid)
            if item is not None:
                self._items[sid] = (item[0], expires_at)

    def prune(self, now):
        with self._lock:
            expired = [sid for sid, (_, exp) in self._items.items() if exp <= now]
            for sid in expired:
                del self._items[sid]
            return len(expired)

    def __len__(self):
        return len(self._items)


class MySQLSessionStore:
    """Session rows in the ``sessions`` table (see models.SessionRecord)."""

    def __init__(self, connection_factory=get_db_connection):
        self._connection_factory = connection_factory

    def _write(self, sql, params):
        conn = self._connection_factory()
        with conn.cursor() as cursor:
            cursor.execute(sql, params)
            rowcount = cursor.rowcount
        conn.commit()
        return rowcount

    def get(self, sid, now):
        with self._connection_factory().cursor() as cursor:
            cursor.execute(
                "SELECT data FROM sessions WHERE sid = %s AND expires_at > %s",
                (sid, now),
            )
            row = cursor.fetchone()
        return row["data"] if row else None

    def set(self, sid, data, expires_at):
        self._write(
            """INSERT INTO sessions (sid, data, expires_at) VALUES (%s, %s, %s)
            ON DUPLICATE KEY UPDATE data = VALUES(data), expires_at = VALUES(expires_at)""",
            (sid, data, expires_at),
        )

    def destroy(self, sid):
        self._write("DELETE FROM sessions WHERE sid = %s", (sid,))

    def touch(self, sid, expires_at):
        self._write(
            "UPDATE sessions SET expires_at = %s WHERE sid = %s", (expires_at, sid)
        )

    def prune(self, now):
        return self._write("DELETE FROM sessions WHERE expires_at <= %s", (now,))


class ServerSideSessionInterface(SessionInterface):
    salt = "gradebook-session"
    serializer = TaggedJSONSerializer()

    def __init__(self, store, clock=_utcnow):
        self.store = store
        self._clock = clock
        self._last_prune = None

    def _signer(self, app):
        return Signer(app.secret_key, salt=self.salt, key_derivation="hmac")

    @staticmethod
    def _new_sid():
        return secrets.token_urlsafe(32)

    def _maybe_prune(self, now):
        if self._last_prune is not None and now - self._last_prune < PRUNE_INTERVAL:
            return
        self._last_prune = now
        removed = self.store.prune(now)
        if removed:
            logger.info(f"Pruned {removed} expired sessions")

    def open_session(self, app, request):
        now = self._clock()
        self._maybe_prune(now)
        cookie = request.cookies.get(self.get_cookie_name(app))
        if cookie:
            try:
                sid = self._signer(app).unsign(cookie).decode("ascii")
            except BadSignature:
                logger.warning("Rejected session cookie with a bad signature")
                sid = None
            if sid:
                raw = self.store.get(sid, now)
                if raw is not None:
                    return ServerSideSession(self.serializer.loads(raw), sid=sid)
        return ServerSideSession(sid=self._new_sid(), new=True)

    def save_session(self, app, session, response):
        name = self.get_cookie_name(app)
        domain = self.get_cookie_domain(app)
        path = self.get_cookie_path(app)
        secure = self.get_cookie_secure(app)
        samesite = self.get_cookie_samesite(app)
        httponly = self.get_cookie_httponly(app)

        if session.destroyed or not session:
            if not session.new:
                self.store.destroy(session.sid)
                response.delete_cookie(
                    name, domain=domain, path=path, secure=secure, samesite=samesite,
                    httponly=httponly,
                )
            return

        response.vary.add("Cookie")
        expires_at = self._clock() + app.permanent_session_lifetime

        if session.regenerate:
            self.store.destroy(session.sid)
            session.sid = self._new_sid()
            session.regenerate = False
            session.modified = True

        if session.new or session.modified:
            self.store.set(session.sid, self.serializer.dumps(dict(session)), expires_at)
        elif self.should_set_cookie(app, session):
            self.store.touch(session.sid, expires_at)
        else:
            return

        response.set_cookie(
            name,
            self._signer(app).sign(session.sid.encode("ascii")).decode("ascii"),
            expires=expires_at.replace(tzinfo=timezone.utc),
            httponly=httponly,
            domain=domain,
            path=path,
            secure=secure,
            samesite=samesite,
        )


def regenerate_session():
    """Drop the current session data and issue a fresh id on the next response."""
    session.clear()
    session.regenerate = True


def destroy_session():
    session.clear()
    session.destroyed = True
