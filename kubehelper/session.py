"""HTTP session tracking and the mapping from session IDs to users and roles."""

from __future__ import annotations

import json
import logging
import re
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from urllib.parse import unquote_plus

from .aesutil import AESError, decrypt_base64

MCP_ID_PARAM = "mcpId"
HEADER_MCP_SESSION_ID = "Mcp-Session-Id"
CONTEXT_KEY_MCP_SESSION = "mcp-session"
SESSION_ID_PREFIX = "mcp-session-"

DEFAULT_AES_KEY = "k8s-mcp-client"
DEFAULT_EXPIRE_TIME = timedelta(minutes=30)
DEFAULT_CLEANUP_INTERVAL = 60.0

log = logging.getLogger(__name__)

_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def generate_session_id() -> str:
    """Return a fresh session ID with the standard prefix."""
    return SESSION_ID_PREFIX + str(uuid.uuid4())


class SessionUserRegistry:
    """Thread-safe map from session ID to ``(user_id, role)``."""

    def __init__(self) -> None:
        self._entries: dict[str, tuple[str, str]] = {}
        self._lock = threading.RLock()

    def add(self, session_id: str, user_id: str, role: str) -> None:
        """Add or replace the user information of a session."""
        with self._lock:
            self._entries[session_id] = (user_id, role)

    def remove(self, session_id: str) -> None:
        with self._lock:
            self._entries.pop(session_id, None)

    def get(self, session_id: str) -> tuple[str, str]:
        """Return ``(user_id, role)``, or empty strings for an unknown session."""
        with self._lock:
            return self._entries.get(session_id, ("", ""))

    def update_role(self, session_id: str, user_id: str, role: str) -> None:
        """Record the user and role, unless the role is empty."""
        if role:
            self.add(session_id, user_id, role)

    def role_of(self, session_id: str) -> str:
        role = self.get(session_id)[1]
        log.info("[SESSION] role_of: sessionID=%s, role=%s", session_id, role)
        return role

    def user_of(self, session_id: str) -> str:
        user_id = self.get(session_id)[0]
        log.info("[SESSION] user_of: sessionID=%s, userID=%s", session_id, user_id)
        return user_id


@dataclass
class HTTPSession:
    """One client session with its sliding expiry."""

    id: str
    user_id: str
    created_at: datetime
    last_access: datetime
    expires_at: datetime
    data: dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or _now()) > self.expires_at

    @property
    def role(self) -> str:
        value = self.data.get("role")
        return value if isinstance(value, str) else ""


class HTTPSessionManager:
    """Creates, looks up and expires HTTP sessions."""

    def __init__(
        self,
        expire_time: timedelta | float = DEFAULT_EXPIRE_TIME,
        registry: SessionUserRegistry | None = None,
        on_expire: Callable[[str], None] | None = None,
        allow_multi_session: bool = False,
    ) -> None:
        if not isinstance(expire_time, timedelta):
            expire_time = timedelta(seconds=expire_time)
        self.expire_time = expire_time
        self.registry = registry if registry is not None else SessionUserRegistry()
        self.on_expire = on_expire
        self.allow_multi_session = allow_multi_session
        self._sessions: dict[str, HTTPSession] = {}
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._cleaner: threading.Thread | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def _forget(self, session_id: str) -> None:
        self.registry.remove(session_id)
        if self.on_expire is not None:
            self.on_expire(session_id)

    def create_session(self, user_id: str) -> HTTPSession:
        """Create a session, or reuse the user's existing one when single-session."""
        with self._lock:
            if not self.allow_multi_session and user_id:
                for existing in self._sessions.values():
                    if existing.user_id == user_id:
                        return existing
            now = _now()
            session = HTTPSession(
                id=generate_session_id(),
                user_id=user_id,
                created_at=now,
                last_access=now,
                expires_at=now + self.expire_time,
            )
            self._sessions[session.id] = session
            self.registry.add(session.id, user_id, session.role)
            return session

    def get_session(self, session_id: str) -> HTTPSession | None:
        """Return a live session and extend its expiry, or ``None``."""
        with self._lock:
            session = self._sessions.get(session_id)
            now = _now()
            if session is not None and not session.is_expired(now):
                session.last_access = now
                session.expires_at = now + self.expire_time
                return session
            if session is not None:
                del self._sessions[session_id]
        if session is not None:
            self._forget(session_id)
        return None

    def delete_session(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)
        self._forget(session_id)

    def add_session(self, session: HTTPSession) -> None:
        """Store a session under its own ID."""
        with self._lock:
            self._sessions[session.id] = session
        self.registry.add(session.id, session.user_id, session.role)

    def cleanup_expired(self) -> list[str]:
        """Drop every expired session and return the IDs removed."""
        now = _now()
        with self._lock:
            expired = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
            for sid in expired:
                del self._sessions[sid]
        for sid in expired:
            self._forget(sid)
        return expired

    def start_cleanup(self, interval: float = DEFAULT_CLEANUP_INTERVAL) -> None:
        """Run :meth:`cleanup_expired` every ``interval`` seconds in the background."""
        if self._cleaner is not None and self._cleaner.is_alive():
            return
        self._stop.clear()

        def run() -> None:
            while not self._stop.wait(interval):
                self.cleanup_expired()

        self._cleaner = threading.Thread(target=run, name="session-cleanup", daemon=True)
        self._cleaner.start()

    def stop_cleanup(self) -> None:
        self._stop.set()
        if self._cleaner is not None:
            self._cleaner.join()
            self._cleaner = None


@dataclass(frozen=True)
class SessionOutcome:
    """Result of resolving a request's session.

    ``issued_id`` is set when a new session was created and its ID must be
    returned to the client; ``expired`` means the request must be refused.
    """

    session: HTTPSession
    issued_id: str | None = None
    expired: bool = False


def _json_field(obj: dict, key: str) -> Any:
    if key in obj:
        return obj[key]
    for name, value in obj.items():
        if isinstance(name, str) and name.lower() == key:
            return value
    return None


def parse_user_id_and_role_from_sid(sid: str, aes_key: str = DEFAULT_AES_KEY) -> tuple[str, str]:
    """Decrypt an identity token into ``(name, role)``; empty strings if invalid."""
    try:
        plain = decrypt_base64(sid, aes_key)
        obj = json.loads(plain)
    except (AESError, ValueError):
        return "", ""
    if obj is None:
        return "", ""
    if not isinstance(obj, dict):
        return "", ""
    name = _json_field(obj, "name")
    role = _json_field(obj, "role")
    if not isinstance(name, (str, type(None))) or not isinstance(role, (str, type(None))):
        return "", ""
    return name or "", role or ""


def _query_unescape(value: str) -> str:
    if _BAD_ESCAPE.search(value):
        log.info("[SESSION_TRACE] invalid escape in mcpId: %r", value)
        return ""
    return unquote_plus(value)


def resolve_session(
    manager: HTTPSessionManager,
    session_header: str = "",
    mcp_id: str = "",
    aes_key: str = DEFAULT_AES_KEY,
) -> SessionOutcome:
    """Find or create the session for a request from its header and identity token."""
    user_id = role = ""
    if mcp_id:
        cleaned = _query_unescape(mcp_id.strip()).replace(" ", "+")
        user_id, role = parse_user_id_and_role_from_sid(cleaned, aes_key)
        log.info("[SESSION_TRACE] parsed mcpId: userId=%s, userRole=%s", user_id, role)

    session: HTTPSession | None = None
    if session_header:
        session = manager.get_session(session_header)
        if session is not None and role:
            if "role" not in session.data or session.data["role"] == "":
                session.data["role"] = role
                manager.registry.update_role(session.id, session.user_id, role)

    issued: str | None = None
    if session is None and user_id:
        session = manager.create_session(user_id)
        session.data["role"] = role
        issued = session.id
        manager.registry.update_role(session.id, session.user_id, role)

    if session is None:
        session = manager.create_session("")
        issued = session.id

    return SessionOutcome(session=session, issued_id=issued, expired=session.is_expired())