from __future__ import annotations

from grove.shared.services.session_continuity import SessionContinuityMap


def test_bind_and_get(db):
    continuity = SessionContinuityMap(db)

    assert continuity.get("s1", "claude-code") is None
    binding = continuity.bind("s1", "claude-code", "tok-1")

    assert binding.provider_session_token == "tok-1"
    assert continuity.get("s1", "claude-code") == "tok-1"
    assert continuity.get("s1", "other") is None


def test_bindings_survive_a_new_instance(db):
    SessionContinuityMap(db).bind("s1", "claude-code", "tok-1")
    SessionContinuityMap(db).bind("s1", "claude-code", "tok-2")

    assert SessionContinuityMap(db).get("s1", "claude-code") == "tok-2"


def test_unbind_single_provider_and_all(db):
    continuity = SessionContinuityMap(db)
    continuity.bind("s1", "a", "ta")
    continuity.bind("s1", "b", "tb")
    continuity.bind("s2", "a", "other")

    continuity.unbind("s1", "a")
    assert continuity.get("s1", "a") is None
    assert continuity.get("s1", "b") == "tb"

    continuity.unbind("s1")
    assert continuity.get("s1", "b") is None
    assert SessionContinuityMap(db).get("s1", "b") is None
    assert continuity.get("s2", "a") == "other"


def test_invalidate_reloads_external_writes(db):
    reader = SessionContinuityMap(db)
    assert reader.get("s1", "a") is None

    SessionContinuityMap(db).bind("s1", "a", "written-elsewhere")
    assert reader.get("s1", "a") is None

    reader.invalidate()
    assert reader.get("s1", "a") == "written-elsewhere"
