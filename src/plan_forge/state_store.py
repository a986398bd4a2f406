from __future__ import annotations

import fcntl
import logging
import os
import tempfile
import threading
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from .errors import ConcurrentSessionAccess, SessionNotFound, StaleSessionError
from .models import GuardrailLimits, Session
from .utils import dedupe_slug, slugify_name

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    """Persistence boundary for sessions. Stores never decide transitions."""

    def load(self, session_id: str) -> Session | None: ...

    def save(self, session: Session) -> Session: ...

    def create(self, task: str, limits: GuardrailLimits) -> Session: ...

    def list_ids(self) -> list[str]: ...

    def lock(self, session_id: str) -> AbstractContextManager[None]: ...


def require_session(store: SessionStore, session_id: str) -> Session:
    session = store.load(session_id)
    if session is None:
        raise SessionNotFound(session_id)
    return session


def _touch(session: Session) -> None:
    session.updated_at = datetime.now(UTC).isoformat()


# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"
_LEASE_SUFFIX = ".lease"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    The lock lives on a sidecar file so the data file can be swapped in
    with ``os.replace`` without disturbing the lock handle.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write to a temp file in the same directory, then ``os.replace`` it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_json(path: Path, label: str) -> str:
    """Read a JSON file, raising a clear error if it is missing, empty or not UTF-8."""
    if not path.is_file():
        raise FileNotFoundError(f"{label} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{label} at {path} is empty")
    return text


# ---------------------------------------------------------------------------
# FileSessionStore
# ---------------------------------------------------------------------------


class FileSessionStore:
    """One JSON document per session under ``<root>/sessions``.

    Writes are atomic and serialized per session with ``fcntl`` sidecar
    locks. ``save`` is a compare-and-swap on ``Session.revision`` so two
    processes that loaded the same revision cannot both commit. ``lock``
    hands out a non-blocking lease that spans a whole orchestration run.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.sessions_dir = self.root / "sessions"
        self.sessions_dir.mkdir(parents=True, exist_ok=True)

    def session_path(self, session_id: str) -> Path:
        if not session_id or "/" in session_id or session_id.startswith("."):
            raise ValueError(f"invalid session id: {session_id!r}")
        return self.sessions_dir / f"{session_id}.json"

    def _read(self, path: Path, session_id: str) -> Session:
        text = _safe_read_json(path, f"session {session_id}")
        try:
            return Session.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"session {session_id} at {path} failed validation: {exc}") from exc

    def load(self, session_id: str) -> Session | None:
        path = self.session_path(session_id)
        if not path.is_file():
            return None
        with _locked_file(path):
            return self._read(path, session_id)

    def save(self, session: Session) -> Session:
        path = self.session_path(session.id)
        with _locked_file(path):
            if not path.is_file():
                raise SessionNotFound(session.id)
            stored = self._read(path, session.id)
            if stored.revision != session.revision:
                raise StaleSessionError(session.id, session.revision, stored.revision)
            session.revision += 1
            _touch(session)
            _atomic_write_text(path, session.model_dump_json(indent=2))
        logger.debug("saved session=%s revision=%d status=%s", session.id, session.revision, session.status.value)
        return session

    def create(self, task: str, limits: GuardrailLimits) -> Session:
        with _locked_file(self.sessions_dir / "index"):
            session_id = dedupe_slug(slugify_name(task), set(self.list_ids()))
            session = Session(id=session_id, task=task, limits=limits)
            _atomic_write_text(self.session_path(session_id), session.model_dump_json(indent=2))
        logger.info("created session=%s", session_id)
        return session

    def list_ids(self) -> list[str]:
        return sorted(path.stem for path in self.sessions_dir.glob("*.json") if not path.name.startswith("."))

    @contextmanager
    def lock(self, session_id: str) -> Iterator[None]:
        lease_path = self.session_path(session_id).with_name(f"{session_id}.json{_LEASE_SUFFIX}")
        with lease_path.open("a+", encoding="utf-8") as handle:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as exc:
                raise ConcurrentSessionAccess(session_id) from exc
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


# ---------------------------------------------------------------------------
# InMemorySessionStore
# ---------------------------------------------------------------------------


class InMemorySessionStore:
    """Process-local store with the same compare-and-swap and lease semantics."""

    def __init__(self) -> None:
        self._records: dict[str, str] = {}
        self._guard = threading.Lock()
        self._leases: dict[str, threading.Lock] = {}

    def load(self, session_id: str) -> Session | None:
        with self._guard:
            text = self._records.get(session_id)
        return Session.model_validate_json(text) if text is not None else None

    def save(self, session: Session) -> Session:
        with self._guard:
            text = self._records.get(session.id)
            if text is None:
                raise SessionNotFound(session.id)
            stored_revision = Session.model_validate_json(text).revision
            if stored_revision != session.revision:
                raise StaleSessionError(session.id, session.revision, stored_revision)
            session.revision += 1
            _touch(session)
            self._records[session.id] = session.model_dump_json()
        return session

    def create(self, task: str, limits: GuardrailLimits) -> Session:
        with self._guard:
            session_id = dedupe_slug(slugify_name(task), set(self._records))
            session = Session(id=session_id, task=task, limits=limits)
            self._records[session_id] = session.model_dump_json()
        logger.info("created session=%s", session_id)
        return session

    def list_ids(self) -> list[str]:
        with self._guard:
            return sorted(self._records)

    @contextmanager
    def lock(self, session_id: str) -> Iterator[None]:
        with self._guard:
            lease = self._leases.setdefault(session_id, threading.Lock())
            if not lease.acquire(blocking=False):
                raise ConcurrentSessionAccess(session_id)
        try:
            yield
        finally:
            with self._guard:
                lease.release()
                del self._leases[session_id]
