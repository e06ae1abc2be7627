import json
import time
from datetime import timedelta
from urllib.parse import quote

import pytest

from kubehelper.aesutil import encrypt_base64
from kubehelper.session import (
    SESSION_ID_PREFIX,
    HTTPSession,
    HTTPSessionManager,
    SessionUserRegistry,
    generate_session_id,
    parse_user_id_and_role_from_sid,
    resolve_session,
)

KEY = "k8s-mcp-client"


def _token(name, role, key=KEY):
    return encrypt_base64(json.dumps({"name": name, "role": role}), key)


def _expire(session):
    session.expires_at = session.created_at - timedelta(seconds=5)


def test_generate_session_id_prefix_and_unique():
    first, second = generate_session_id(), generate_session_id()
    assert first.startswith(SESSION_ID_PREFIX)
    assert first.startswith("mcp-session-")
    assert first != second


@pytest.mark.parametrize("name,role", [("admin", "admin"), ("user", "user"), ("guest", "guest")])
def test_parse_round_trip(name, role):
    assert parse_user_id_and_role_from_sid(_token(name, role), KEY) == (name, role)


def test_parse_invalid_token():
    assert parse_user_id_and_role_from_sid("not base64!", KEY) == ("", "")


def test_parse_non_object_json():
    sid = encrypt_base64(json.dumps([1, 2]), KEY)
    assert parse_user_id_and_role_from_sid(sid, KEY) == ("", "")


def test_parse_wrong_key():
    assert parse_user_id_and_role_from_sid(_token("admin", "admin"), "other-key") == ("", "")


def test_registry_add_get_remove():
    registry = SessionUserRegistry()
    registry.add("s1", "alice", "admin")
    assert registry.get("s1") == ("alice", "admin")
    assert registry.role_of("s1") == "admin"
    assert registry.user_of("s1") == "alice"
    registry.remove("s1")
    assert registry.get("s1") == ("", "")


def test_registry_update_role_ignores_empty():
    registry = SessionUserRegistry()
    registry.add("s1", "alice", "user")
    registry.update_role("s1", "alice", "")
    assert registry.role_of("s1") == "user"
    registry.update_role("s1", "alice", "admin")
    assert registry.role_of("s1") == "admin"


def test_create_session_registers_user():
    manager = HTTPSessionManager()
    session = manager.create_session("alice")
    assert session.id in manager
    assert manager.registry.get(session.id) == ("alice", "")
    assert session.expires_at - session.created_at == timedelta(minutes=30)


def test_single_session_per_user_by_default():
    manager = HTTPSessionManager()
    assert manager.create_session("alice") is manager.create_session("alice")
    assert len(manager) == 1


def test_multi_session_allowed():
    manager = HTTPSessionManager(allow_multi_session=True)
    assert manager.create_session("alice").id != manager.create_session("alice").id
    assert len(manager) == 2


def test_anonymous_sessions_are_distinct():
    manager = HTTPSessionManager()
    first = manager.create_session("")
    second = manager.create_session("")
    assert len({first.id, second.id}) == 2
    assert len(manager) == 2
    assert first.id.startswith(SESSION_ID_PREFIX)
    assert manager.registry.get(second.id) == ("", "")


def test_get_session_extends_expiry():
    manager = HTTPSessionManager(expire_time=60)
    session = manager.create_session("alice")
    before = session.expires_at
    time.sleep(0.01)
    assert manager.get_session(session.id) is session
    assert session.expires_at > before
    assert session.last_access > session.created_at


def test_get_expired_session_is_removed():
    expired = []
    manager = HTTPSessionManager(on_expire=expired.append)
    session = manager.create_session("alice")
    _expire(session)
    assert manager.get_session(session.id) is None
    assert session.id not in manager
    assert manager.registry.get(session.id) == ("", "")
    assert expired == [session.id]


def test_get_unknown_session():
    calls = []
    manager = HTTPSessionManager(on_expire=calls.append)
    assert manager.get_session("missing") is None
    assert calls == []


def test_delete_session():
    calls = []
    manager = HTTPSessionManager(on_expire=calls.append)
    session = manager.create_session("alice")
    manager.delete_session(session.id)
    assert session.id not in manager
    assert manager.registry.get(session.id) == ("", "")
    assert calls == [session.id]


def test_add_session_uses_data_role():
    manager = HTTPSessionManager()
    session = manager.create_session("bob")
    stored = HTTPSession(
        id="custom-id",
        user_id="alice",
        created_at=session.created_at,
        last_access=session.created_at,
        expires_at=session.expires_at,
        data={"role": "guest"},
    )
    manager.add_session(stored)
    assert manager.get_session("custom-id") is stored
    assert manager.registry.get("custom-id") == ("alice", "guest")


def test_cleanup_expired_removes_only_expired():
    manager = HTTPSessionManager(allow_multi_session=True)
    old = manager.create_session("a")
    fresh = manager.create_session("b")
    _expire(old)
    assert manager.cleanup_expired() == [old.id]
    assert old.id not in manager
    assert fresh.id in manager


def test_background_cleanup():
    removed = []
    manager = HTTPSessionManager(on_expire=removed.append)
    session = manager.create_session("a")
    _expire(session)
    manager.start_cleanup(0.01)
    try:
        deadline = time.monotonic() + 2
        while session.id in manager and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        manager.stop_cleanup()
    assert session.id not in manager
    assert removed == [session.id]


def test_resolve_without_anything_creates_empty_session():
    manager = HTTPSessionManager()
    outcome = resolve_session(manager)
    assert outcome.session.user_id == ""
    assert outcome.issued_id == outcome.session.id
    assert outcome.expired is False


def test_resolve_with_mcp_id_creates_user_session():
    manager = HTTPSessionManager()
    outcome = resolve_session(manager, "", _token("user", "user"), KEY)
    assert outcome.session.user_id == "user"
    assert outcome.session.data["role"] == "user"
    assert outcome.issued_id == outcome.session.id
    assert manager.registry.get(outcome.session.id) == ("user", "user")


def test_resolve_with_percent_encoded_and_spaced_mcp_id():
    manager = HTTPSessionManager(allow_multi_session=True)
    token = _token("admin", "admin")
    encoded = resolve_session(manager, "", quote(token, safe=""), KEY)
    spaced = resolve_session(manager, "", " " + token.replace("+", " ") + " ", KEY)
    assert manager.registry.get(encoded.session.id) == ("admin", "admin")
    assert manager.registry.get(spaced.session.id) == ("admin", "admin")


def test_resolve_bad_escape_gives_anonymous_session():
    manager = HTTPSessionManager()
    outcome = resolve_session(manager, "", "%zz", KEY)
    assert outcome.session.user_id == ""
    assert outcome.issued_id == outcome.session.id


def test_resolve_existing_header_fills_missing_role():
    manager = HTTPSessionManager()
    existing = manager.create_session("guest")
    outcome = resolve_session(manager, existing.id, _token("guest", "guest"), KEY)
    assert outcome.session is existing
    assert outcome.issued_id is None
    assert existing.data["role"] == "guest"
    assert manager.registry.role_of(existing.id) == "guest"


def test_resolve_existing_role_not_overwritten():
    manager = HTTPSessionManager()
    existing = manager.create_session("alice")
    existing.data["role"] = "user"
    outcome = resolve_session(manager, existing.id, _token("alice", "admin"), KEY)
    assert outcome.session.data["role"] == "user"


def test_resolve_unknown_header_creates_new_session():
    manager = HTTPSessionManager()
    outcome = resolve_session(manager, "mcp-session-missing")
    assert outcome.session.id != "mcp-session-missing"
    assert outcome.issued_id == outcome.session.id


def test_resolve_reports_expired_session():
    manager = HTTPSessionManager(expire_time=timedelta(seconds=-1))
    outcome = resolve_session(manager)
    assert outcome.expired is True