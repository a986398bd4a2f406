import json
import threading
from pathlib import Path

import pytest

from conftest import sound_plan
from plan_forge.errors import ConcurrentSessionAccess, SessionNotFound, StaleSessionError
from plan_forge.models import GuardrailLimits, HistoryEntry, MandatoryInputFlag, SessionStatus, ViabilityResult
from plan_forge.state_store import FileSessionStore, InMemorySessionStore, SessionStore, require_session


@pytest.fixture(params=["file", "memory"])
def any_store(request: pytest.FixtureRequest, tmp_path: Path) -> SessionStore:
    if request.param == "file":
        return FileSessionStore(tmp_path / "state")
    return InMemorySessionStore()


def test_create_assigns_deduplicated_slugs(any_store: SessionStore) -> None:
    first = any_store.create("Add a greeting endpoint!", GuardrailLimits())
    second = any_store.create("add a greeting endpoint", GuardrailLimits())
    third = any_store.create("Add   greeting endpoint", GuardrailLimits())
    assert first.id == "add-a-greeting-endpoint"
    assert second.id == "add-a-greeting-endpoint-a"
    assert third.id == "add-greeting-endpoint"
    assert any_store.list_ids() == sorted([first.id, second.id, third.id])


def test_long_task_slug_truncates_on_word_boundary(any_store: SessionStore) -> None:
    session = any_store.create("Implement pagination for the orders listing API", GuardrailLimits())
    assert session.id == "implement-pagination-for-the"
    assert len(session.id) <= 30


def test_save_round_trips_history(any_store: SessionStore) -> None:
    session = any_store.create("persist me", GuardrailLimits(max_iterations=3))
    session.status = SessionStatus.VALIDATING
    session.history.append(HistoryEntry(iteration=1, plan=sound_plan(), viability_result=ViabilityResult()))
    any_store.save(session)

    loaded = require_session(any_store, session.id)
    assert loaded.status == SessionStatus.VALIDATING
    assert loaded.limits.max_iterations == 3
    assert loaded.history[0].plan == sound_plan()
    assert loaded.revision == 1


def test_save_is_compare_and_swap(any_store: SessionStore) -> None:
    created = any_store.create("race", GuardrailLimits())
    left = require_session(any_store, created.id)
    right = require_session(any_store, created.id)

    left.status = SessionStatus.GENERATING
    any_store.save(left)

    right.status = SessionStatus.CANCELLED
    with pytest.raises(StaleSessionError) as excinfo:
        any_store.save(right)
    assert excinfo.value.expected == 0
    assert excinfo.value.actual == 1
    assert require_session(any_store, created.id).status == SessionStatus.GENERATING


def test_missing_sessions(any_store: SessionStore) -> None:
    assert any_store.load("nope") is None
    with pytest.raises(SessionNotFound):
        require_session(any_store, "nope")


def test_lock_rejects_second_holder(any_store: SessionStore) -> None:
    session = any_store.create("locked", GuardrailLimits())
    with any_store.lock(session.id):
        with pytest.raises(ConcurrentSessionAccess):
            with any_store.lock(session.id):
                pass
    with any_store.lock(session.id):
        pass


def test_lock_rejects_other_thread(any_store: SessionStore) -> None:
    session = any_store.create("threaded", GuardrailLimits())
    errors: list[BaseException] = []

    def contender() -> None:
        try:
            with any_store.lock(session.id):
                pass
        except ConcurrentSessionAccess as exc:
            errors.append(exc)

    with any_store.lock(session.id):
        worker = threading.Thread(target=contender)
        worker.start()
        worker.join()
    assert len(errors) == 1


def test_file_store_layout_and_corruption(tmp_path: Path) -> None:
    store = FileSessionStore(tmp_path)
    session = store.create("layout", GuardrailLimits())
    path = tmp_path / "sessions" / "layout.json"
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["status"] == "created"
    assert payload["history"] == []

    path.write_text("", encoding="utf-8")
    with pytest.raises(ValueError, match="empty"):
        store.load(session.id)

    path.write_text('{"id": "layout"}', encoding="utf-8")
    with pytest.raises(ValueError, match="failed validation"):
        store.load(session.id)


def test_file_store_rejects_path_like_ids(tmp_path: Path) -> None:
    store = FileSessionStore(tmp_path)
    with pytest.raises(ValueError):
        store.load("../escape")


def test_memory_store_drops_released_leases() -> None:
    store = InMemorySessionStore()
    session = store.create("short lived", GuardrailLimits())
    with store.lock(session.id):
        with pytest.raises(ConcurrentSessionAccess):
            with store.lock(session.id):
                pass
    with store.lock("never-created"):
        pass
    assert store._leases == {}


def test_session_round_trips_input_flags(any_store: SessionStore) -> None:
    session = any_store.create("flags", GuardrailLimits())
    session.pending_flags = (MandatoryInputFlag.SENSITIVE_FILES,)
    session.approved_flags = (MandatoryInputFlag.LOW_SCORE,)
    any_store.save(session)
    loaded = require_session(any_store, session.id)
    assert loaded.pending_flags == (MandatoryInputFlag.SENSITIVE_FILES,)
    assert loaded.approved_flags == (MandatoryInputFlag.LOW_SCORE,)
