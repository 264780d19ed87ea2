from __future__ import annotations

import fcntl
import logging
import os
import re
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, TypeVar

from pydantic import BaseModel, ValidationError

from .errors import ConsistencyViolation, StoreUnavailable
from .models import BatchRuns, Look, LookViewStates

logger = logging.getLogger(__name__)

T = TypeVar("T")
DocT = TypeVar("DocT", bound=BaseModel)

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"
_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,128}$")


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    The lock lives in a ``.lock`` sidecar so the data file can be replaced
    with ``os.replace`` while the lock handle stays open.
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
    """Write *content* to *path* via a temp file and ``os.replace``."""
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


def _read_model(path: Path, model: type[DocT], label: str) -> DocT:
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{label} at {path} is empty")
    try:
        return model.model_validate_json(text)
    except ValidationError as exc:
        raise ValueError(f"{label} at {path} failed validation: {exc}") from exc


def validate_record_id(value: str, label: str) -> str:
    """Return *value* if it is usable as a file name component.

    Raises:
        ValueError: If the identifier is empty or has unsafe characters.
    """
    if not _SAFE_ID_RE.match(value or ""):
        raise ValueError(f"{label} must match {_SAFE_ID_RE.pattern}, got: {value!r}")
    return value


# ---------------------------------------------------------------------------
# Consistency checks
# ---------------------------------------------------------------------------


def _check_look_states(doc: LookViewStates, path: Path) -> None:
    seen: set[tuple[str, str, str]] = set()
    for state in doc.states:
        key = (state.look_id, state.view, state.stage.value)
        if state.look_id != doc.look_id:
            logger.critical("View state for look %s stored under look %s (%s)", state.look_id, doc.look_id, path)
            raise ConsistencyViolation(f"view state for {state.look_id} stored in document for {doc.look_id}")
        if key in seen:
            logger.critical("Duplicate view state %s in %s", key, path)
            raise ConsistencyViolation(f"more than one view state for {key}")
        seen.add(key)


def _check_batch_runs(doc: BatchRuns, path: Path) -> None:
    seen: set[str] = set()
    for run in doc.runs:
        if run.batch_id != doc.batch_id:
            logger.critical("Run %s of batch %s stored under batch %s (%s)", run.run_id, run.batch_id, doc.batch_id, path)
            raise ConsistencyViolation(f"run {run.run_id} stored in document for batch {doc.batch_id}")
        if run.run_id in seen:
            logger.critical("Duplicate run id %s in %s", run.run_id, path)
            raise ConsistencyViolation(f"more than one run with id {run.run_id}")
        seen.add(run.run_id)


# ---------------------------------------------------------------------------
# LookflowStateStore
# ---------------------------------------------------------------------------


class LookflowStateStore:
    """Filesystem record store for looks, view states and runs.

    View states are kept in one JSON document per look and runs in one
    document per batch. Every write is a locked read-modify-write of a single
    document, so conditional updates never race and readers always see a whole
    per-look (or per-batch) snapshot.
    """

    def __init__(
        self,
        root: Path,
        *,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.05,
    ) -> None:
        if retry_attempts < 1:
            raise ValueError(f"retry_attempts must be >= 1, got: {retry_attempts}")
        self.root = root
        self.retry_attempts = retry_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self.looks_dir = self.root / "looks"
        self.view_states_dir = self.root / "view_states"
        self.runs_dir = self.root / "runs"
        self.ensure_structure()

    def ensure_structure(self) -> None:
        """Create all required directories if they do not exist."""
        for directory in (self.root, self.looks_dir, self.view_states_dir, self.runs_dir):
            directory.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Retry boundary
    # ------------------------------------------------------------------

    def _with_retries(self, operation: str, func: Callable[[], T]) -> T:
        """Run *func*, retrying transient ``OSError`` failures a bounded number of times.

        Domain errors (``ValueError``, ``LookflowError``) propagate on the first
        occurrence.

        Raises:
            StoreUnavailable: If every attempt failed with ``OSError``.
        """
        last_error: OSError | None = None
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return func()
            except OSError as exc:
                last_error = exc
                logger.warning(
                    "Store operation %s failed (attempt %d/%d): %s",
                    operation,
                    attempt,
                    self.retry_attempts,
                    exc,
                )
                if attempt < self.retry_attempts:
                    time.sleep(self.retry_backoff_seconds * attempt)
        raise StoreUnavailable(f"{operation} failed after {self.retry_attempts} attempts: {last_error}") from last_error

    # ------------------------------------------------------------------
    # Looks
    # ------------------------------------------------------------------

    def _look_path(self, look_id: str) -> Path:
        return self.looks_dir / f"{validate_record_id(look_id, 'look_id')}.json"

    def write_look(self, look: Look) -> Path:
        """Persist a look record (registered by the upstream project flow)."""
        path = self._look_path(look.look_id)
        self._with_retries(f"write_look({look.look_id})", lambda: _atomic_write_text(path, look.model_dump_json(indent=2)))
        return path

    def read_look(self, look_id: str) -> Look:
        """Read a look by id.

        Raises:
            KeyError: If the look is not registered.
            ValueError: If the file is corrupt or fails validation.
        """
        path = self._look_path(look_id)
        if not path.is_file():
            raise KeyError(f"look not found: {look_id}")
        return self._with_retries(f"read_look({look_id})", lambda: _read_model(path, Look, "look"))

    def list_looks(self, project_id: str | None = None) -> list[Look]:
        """Return registered looks sorted by id, optionally scoped to one project."""
        looks = [self.read_look(path.stem) for path in sorted(self.looks_dir.glob("*.json"))]
        if project_id is None:
            return looks
        return [look for look in looks if look.project_id == project_id]

    # ------------------------------------------------------------------
    # View states (locked - one document per look)
    # ------------------------------------------------------------------

    def _look_states_path(self, look_id: str) -> Path:
        return self.view_states_dir / f"{validate_record_id(look_id, 'look_id')}.json"

    def _load_look_states(self, look_id: str, path: Path) -> LookViewStates:
        if not path.is_file():
            return LookViewStates(look_id=look_id)
        doc = _read_model(path, LookViewStates, f"view states for look {look_id}")
        _check_look_states(doc, path)
        return doc

    def read_look_states(self, look_id: str) -> LookViewStates:
        """Return the current view-state document of a look.

        A look with no stored states yields an empty document.

        Raises:
            ConsistencyViolation: If the stored document has duplicate triples.
        """
        path = self._look_states_path(look_id)

        def _read() -> LookViewStates:
            with _locked_file(path):
                return self._load_look_states(look_id, path)

        return self._with_retries(f"read_look_states({look_id})", _read)

    def update_look_states(self, look_id: str, mutate: Callable[[LookViewStates], T]) -> tuple[LookViewStates, T]:
        """Apply *mutate* to a look's states under an exclusive lock.

        *mutate* edits the document in place and returns a result. If it raises,
        nothing is written. A mutation that leaves the document unchanged writes
        nothing and keeps the revision. Otherwise the revision is incremented and
        the whole document is written atomically.

        Returns:
            The written document and the value returned by *mutate*.
        """
        path = self._look_states_path(look_id)

        def _update() -> tuple[LookViewStates, T]:
            with _locked_file(path):
                doc = self._load_look_states(look_id, path)
                before = doc.model_dump_json()
                result = mutate(doc)
                if doc.model_dump_json() == before:
                    return doc, result
                doc.revision += 1
                _check_look_states(doc, path)
                _atomic_write_text(path, doc.model_dump_json(indent=2))
                return doc, result

        return self._with_retries(f"update_look_states({look_id})", _update)

    def list_look_state_ids(self) -> list[str]:
        """Return ids of every look that has a view-state document."""
        return sorted(p.stem for p in self.view_states_dir.glob("*.json"))

    # ------------------------------------------------------------------
    # Runs (locked - one document per batch)
    # ------------------------------------------------------------------

    def _batch_path(self, batch_id: str) -> Path:
        return self.runs_dir / f"{validate_record_id(batch_id, 'batch_id')}.json"

    def _load_batch(self, batch_id: str, path: Path) -> BatchRuns:
        if not path.is_file():
            return BatchRuns(batch_id=batch_id)
        doc = _read_model(path, BatchRuns, f"runs for batch {batch_id}")
        _check_batch_runs(doc, path)
        return doc

    def read_batch_runs(self, batch_id: str) -> BatchRuns:
        path = self._batch_path(batch_id)

        def _read() -> BatchRuns:
            with _locked_file(path):
                return self._load_batch(batch_id, path)

        return self._with_retries(f"read_batch_runs({batch_id})", _read)

    def update_batch_runs(self, batch_id: str, mutate: Callable[[BatchRuns], T]) -> tuple[BatchRuns, T]:
        """Locked read-modify-write of a batch's runs; same contract as ``update_look_states``."""
        path = self._batch_path(batch_id)

        def _update() -> tuple[BatchRuns, T]:
            with _locked_file(path):
                doc = self._load_batch(batch_id, path)
                before = doc.model_dump_json()
                result = mutate(doc)
                if doc.model_dump_json() == before:
                    return doc, result
                doc.revision += 1
                _check_batch_runs(doc, path)
                _atomic_write_text(path, doc.model_dump_json(indent=2))
                return doc, result

        return self._with_retries(f"update_batch_runs({batch_id})", _update)

    def list_batches(self) -> list[str]:
        """Return a sorted list of batch ids that have runs."""
        return sorted(p.stem for p in self.runs_dir.glob("*.json"))

    def locate_run(self, run_id: str) -> str:
        """Return the batch id holding *run_id*.

        Raises:
            KeyError: If no batch holds the run.
            ConsistencyViolation: If more than one batch holds the run.
        """
        owners = [
            batch_id
            for batch_id in self.list_batches()
            if any(run.run_id == run_id for run in self.read_batch_runs(batch_id).runs)
        ]
        if not owners:
            raise KeyError(f"run not found: {run_id}")
        if len(owners) > 1:
            logger.critical("Run %s present in several batches: %s", run_id, owners)
            raise ConsistencyViolation(f"run {run_id} present in batches {owners}")
        return owners[0]
