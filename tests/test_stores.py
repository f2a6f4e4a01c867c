"""Per-user key scoping and the one-time migration of unscoped keys."""

from datetime import timedelta

from sqlmodel import Session

from conftest import test_engine
from exam_portal.models import StoredValue
from exam_portal.stores import (
    _SESSION_DATA,
    _SESSION_SEEN,
    COMPLETED_KEY,
    LAST_RESULT_KEY,
    RESULTS_KEY,
    MemoryStore,
    SessionStore,
    UserScopedStore,
    cache_result,
    cached_results,
    clear_in_progress,
    completed_exams,
    expire_idle_sessions,
    is_in_progress,
    mark_completed,
    mark_in_progress,
    migrate_legacy_keys,
)


def test_scoped_keys_do_not_leak_between_users(local_store):
    alice = UserScopedStore(local_store, "u1")
    bob = UserScopedStore(local_store, "u2")

    mark_completed(alice, "e1")
    cache_result(alice, "e1", {"examId": "e1", "percentage": 80})

    assert completed_exams(alice) == ["e1"]
    assert completed_exams(bob) == []
    assert cached_results(bob) == {}
    assert local_store.get("completedExams_u1") == ["e1"]


def test_mark_completed_is_idempotent(local_store):
    alice = UserScopedStore(local_store, "u1")

    mark_completed(alice, "e1")
    mark_completed(alice, "e1")

    assert completed_exams(alice) == ["e1"]


def test_anonymous_scope():
    store = MemoryStore()
    UserScopedStore(store, None).set("x", 1)

    assert store.get("x_anon") == 1


def test_in_progress_marker_round_trip():
    store = MemoryStore()

    mark_in_progress(store, "e1")
    assert is_in_progress(store, "e1")
    clear_in_progress(store, "e1")
    assert not is_in_progress(store, "e1")


def test_migration_moves_legacy_keys(local_store):
    session = MemoryStore()
    local_store.set(RESULTS_KEY, {"e1": {"examId": "e1"}})
    local_store.set(COMPLETED_KEY, ["e1"])
    session.set(LAST_RESULT_KEY, {"examId": "e1"})

    moved = migrate_legacy_keys("u1", local_store, session)

    assert moved == [RESULTS_KEY, COMPLETED_KEY, LAST_RESULT_KEY]
    assert local_store.get(RESULTS_KEY) is None
    assert local_store.get("examResults_u1") == {"e1": {"examId": "e1"}}
    assert completed_exams(UserScopedStore(local_store, "u1")) == ["e1"]
    assert session.get("lastExamResult_u1") == {"examId": "e1"}


def test_migration_keeps_existing_scoped_values(local_store):
    local_store.set(COMPLETED_KEY, ["old"])
    local_store.set("completedExams_u1", ["new"])

    moved = migrate_legacy_keys("u1", local_store, MemoryStore())

    assert moved == []
    assert local_store.get("completedExams_u1") == ["new"]


def test_legacy_value_is_read_until_migrated(local_store):
    local_store.set(COMPLETED_KEY, ["legacy"])

    assert completed_exams(UserScopedStore(local_store, "u1")) == ["legacy"]


def test_migration_never_raises():
    class Broken(MemoryStore):
        def get(self, key):
            raise RuntimeError("corrupt storage")

    assert migrate_legacy_keys("u1", Broken(), MemoryStore()) == []


def test_session_store_keeps_data_server_side():
    cookie = {}
    first = SessionStore(cookie)
    first.set("k", {"v": 1})

    again = SessionStore(cookie)

    assert set(cookie) == {"sid"}
    assert again.get("k") == {"v": 1}
    again.clear()
    assert SessionStore(cookie).get("k") is None


def test_persistent_store_overwrite_stamps_utc_time(local_store):
    local_store.set("k", {"v": 1})
    local_store.set("k", {"v": 2})

    assert local_store.get("k") == {"v": 2}
    with Session(test_engine) as session:
        row = session.get(StoredValue, "k")
        assert row.value == '{"v": 2}'
        assert row.updated_at is not None


def test_new_rows_are_stamped_with_aware_utc_time():
    row = StoredValue(key="k", value="1")

    assert row.updated_at.tzinfo is not None
    assert row.updated_at.utcoffset() == timedelta(0)


def test_idle_sessions_expire():
    idle_cookie, active_cookie = {}, {}
    SessionStore(idle_cookie, now=0).set("k", 1)
    SessionStore(active_cookie, now=0).set("k", 2)
    SessionStore(active_cookie, now=500)

    assert expire_idle_sessions(600, now=700) == 1

    assert idle_cookie["sid"] not in _SESSION_DATA
    assert SessionStore(idle_cookie, now=700).get("k") is None
    assert SessionStore(active_cookie, now=700).get("k") == 2


def test_cleared_session_is_forgotten():
    cookie = {}
    store = SessionStore(cookie, now=0)
    store.set("k", 1)

    store.clear()

    assert cookie["sid"] not in _SESSION_DATA
    assert cookie["sid"] not in _SESSION_SEEN
