from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, Protocol

from .errors import WorkerFailure
from .models import ApplyRequestType, ApplySettings, Look, QueueItem, QueueItemStatus
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

ACTIVE_ITEM_STATUSES = frozenset({QueueItemStatus.QUEUED, QueueItemStatus.PROCESSING})
FINISHED_ITEM_STATUSES = frozenset({QueueItemStatus.COMPLETED, QueueItemStatus.FAILED})


class ApplyExecutor(Protocol):
    """External apply call. Returns the job id it started."""

    def __call__(self, item: QueueItem, settings: ApplySettings) -> str: ...


class ClientApplyQueue:
    """In-memory apply queue that processes one item at a time.

    Requests are de-duplicated on (request type, look, view) while an equal
    request is still queued or processing. Promotion to ``processing`` happens
    under a lock, so two items are never processing together.

    With ``auto_process`` a single background worker drains the queue whenever
    an item is added or an item finishes, so callers only add requests.
    """

    def __init__(
        self,
        executor: ApplyExecutor,
        *,
        settings: ApplySettings | None = None,
        on_complete: Callable[[QueueItem], None] | None = None,
        auto_process: bool = False,
    ) -> None:
        self.executor = executor
        self.on_complete = on_complete
        self._settings = settings if settings is not None else ApplySettings()
        self._items: list[QueueItem] = []
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._draining = False
        self._drainer: ThreadPoolExecutor | None = None
        if auto_process:
            self._drainer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="lookflow-apply")

    @classmethod
    def from_settings(
        cls,
        executor: ApplyExecutor,
        settings: RuntimeSettings,
        *,
        on_complete: Callable[[QueueItem], None] | None = None,
        auto_process: bool = False,
    ) -> "ClientApplyQueue":
        apply_settings = ApplySettings(attempts_per_view=settings.apply_attempts_per_view, model=settings.apply_model)
        return cls(executor, settings=apply_settings, on_complete=on_complete, auto_process=auto_process)

    @property
    def settings(self) -> ApplySettings:
        return self._settings

    def update_settings(self, **changes: object) -> ApplySettings:
        """Change the settings used by requests added from now on."""
        with self._lock:
            self._settings = ApplySettings.model_validate({**self._settings.model_dump(), **changes})
            return self._settings

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def items(self) -> list[QueueItem]:
        with self._lock:
            return [item.model_copy() for item in self._items]

    def _count(self, status: QueueItemStatus) -> int:
        with self._lock:
            return sum(1 for item in self._items if item.status == status)

    @property
    def pending_count(self) -> int:
        return self._count(QueueItemStatus.QUEUED)

    @property
    def processing_count(self) -> int:
        return self._count(QueueItemStatus.PROCESSING)

    @property
    def completed_count(self) -> int:
        return self._count(QueueItemStatus.COMPLETED)

    @property
    def failed_count(self) -> int:
        return self._count(QueueItemStatus.FAILED)

    @property
    def is_processing(self) -> bool:
        return self.processing_count > 0

    def counts(self) -> dict[str, int]:
        with self._lock:
            counts = {status.value: 0 for status in QueueItemStatus}
            for item in self._items:
                counts[item.status.value] += 1
        return counts

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def add_to_queue(
        self,
        request_type: ApplyRequestType | str,
        look_id: str,
        view: str | None = None,
        attempts: int | None = None,
        look_name: str = "",
    ) -> bool:
        """Queue an apply request.

        Returns:
            False without queueing when an equal request is already queued or processing.
        """
        request_type = ApplyRequestType(request_type)
        if attempts is not None and attempts < 1:
            raise ValueError(f"attempts must be >= 1, got: {attempts}")
        with self._lock:
            key = (request_type, look_id, view)
            if any(item.dedupe_key == key and item.status in ACTIVE_ITEM_STATUSES for item in self._items):
                logger.debug("Rejected duplicate apply request %s", key)
                return False
            self._items.append(
                QueueItem(
                    item_id=uuid.uuid4().hex,
                    request_type=request_type,
                    look_id=look_id,
                    look_name=look_name,
                    view=view,
                    attempts_requested=attempts if attempts is not None else self._settings.attempts_per_view,
                    settings=self._settings,
                )
            )
        self._kick()
        return True

    def add_bulk_to_queue(
        self,
        request_type: ApplyRequestType | str,
        looks: Iterable[Look],
        view: str | None = None,
        attempts: int | None = None,
    ) -> int:
        """Queue one request per look; returns how many were admitted."""
        return sum(
            1 for look in looks if self.add_to_queue(request_type, look.look_id, view, attempts, look_name=look.name)
        )

    def remove_from_queue(self, item_id: str) -> bool:
        """Remove a queued or finished item. Processing items are left alone."""
        with self._lock:
            for index, item in enumerate(self._items):
                if item.item_id != item_id:
                    continue
                if item.status == QueueItemStatus.PROCESSING:
                    logger.info("Refusing to remove processing item %s", item_id)
                    return False
                del self._items[index]
                self._idle.notify_all()
                return True
        return False

    def clear_queue(self) -> int:
        """Drop every item except the one processing; returns the number removed."""
        with self._lock:
            before = len(self._items)
            self._items = [item for item in self._items if item.status == QueueItemStatus.PROCESSING]
            self._idle.notify_all()
            return before - len(self._items)

    def clear_completed(self) -> int:
        with self._lock:
            before = len(self._items)
            self._items = [item for item in self._items if item.status not in FINISHED_ITEM_STATUSES]
            return before - len(self._items)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def _promote(self) -> QueueItem | None:
        with self._lock:
            if any(item.status == QueueItemStatus.PROCESSING for item in self._items):
                return None
            for item in self._items:
                if item.status == QueueItemStatus.QUEUED:
                    item.status = QueueItemStatus.PROCESSING
                    return item.model_copy()
        return None

    def _finish(self, item_id: str, *, job_id: str | None = None, error: str | None = None) -> QueueItem | None:
        with self._lock:
            for item in self._items:
                if item.item_id == item_id:
                    item.status = QueueItemStatus.FAILED if error is not None else QueueItemStatus.COMPLETED
                    item.job_id = job_id
                    item.error = error
                    self._idle.notify_all()
                    return item.model_copy()
        return None

    def process_next(self) -> QueueItem | None:
        """Promote the next queued item, run it, and record the outcome.

        Returns None when nothing was promoted, either because the queue is
        empty or because another item is already processing.
        """
        item = self._promote()
        if item is None:
            return None
        logger.info("Processing %s request for look %s (view %s)", item.request_type.value, item.look_id, item.view)
        try:
            job_id = self.executor(item, item.settings)
        except Exception as exc:  # noqa: BLE001
            failure = exc if isinstance(exc, WorkerFailure) else WorkerFailure(str(exc) or type(exc).__name__, target_id=item.item_id)
            logger.exception("Apply request %s failed", item.item_id)
            finished = self._finish(item.item_id, error=str(failure))
        else:
            finished = self._finish(item.item_id, job_id=job_id)

        result = finished if finished is not None else item
        if self.on_complete is not None:
            try:
                self.on_complete(result)
            except Exception:  # noqa: BLE001
                logger.exception("on_complete callback failed for item %s", item.item_id)
        self._kick()
        return result

    def process_all(self) -> list[QueueItem]:
        """Process queued items one after another until none is left."""
        processed: list[QueueItem] = []
        while (item := self.process_next()) is not None:
            processed.append(item)
        return processed

    # ------------------------------------------------------------------
    # Background processing
    # ------------------------------------------------------------------

    def _runnable(self) -> bool:
        """Caller holds the lock."""
        statuses = {item.status for item in self._items}
        return QueueItemStatus.QUEUED in statuses and QueueItemStatus.PROCESSING not in statuses

    def _kick(self) -> None:
        with self._lock:
            drainer = self._drainer
            if drainer is None or self._draining or not self._runnable():
                return
            self._draining = True
        try:
            drainer.submit(self._drain)
        except RuntimeError:
            logger.warning("Apply queue is closed; leaving queued items for process_next")
            with self._lock:
                self._draining = False
                self._idle.notify_all()

    def _drain(self) -> None:
        try:
            while True:
                while self.process_next() is not None:
                    pass
                with self._lock:
                    # An item processing elsewhere calls _kick when it finishes.
                    if not self._runnable():
                        self._draining = False
                        self._idle.notify_all()
                        return
        except Exception:
            logger.exception("Apply queue worker stopped")
            with self._lock:
                self._draining = False
                self._idle.notify_all()
            raise

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until nothing is queued, processing or being drained.

        Only meaningful with ``auto_process``; returns False on timeout.
        """
        with self._idle:
            return self._idle.wait_for(
                lambda: not self._draining and not any(item.status in ACTIVE_ITEM_STATUSES for item in self._items),
                timeout,
            )

    def close(self) -> None:
        """Stop the background worker after the item in hand finishes."""
        with self._lock:
            drainer, self._drainer = self._drainer, None
        if drainer is not None:
            drainer.shutdown(wait=True)
