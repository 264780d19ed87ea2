from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from typing import Callable, Iterable, Protocol

from .errors import PreconditionNotMet, WorkerFailure
from .models import RUN_STATUS_TRANSITIONS, BatchRuns, BatchStats, Run, RunConfig, RunStatus
from .notifications import ChangeBus, ChangeEvent, ChangeTopic
from .settings import RuntimeSettings
from .state_store import LookflowStateStore, validate_record_id

logger = logging.getLogger(__name__)

STALL_ERROR_MESSAGE = "Job stalled - no heartbeat"


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _transition(run: Run, new_status: RunStatus, now: datetime) -> None:
    allowed = RUN_STATUS_TRANSITIONS[run.status]
    if new_status not in allowed:
        raise PreconditionNotMet(
            f"Illegal run status transition for {run.run_id}: {run.status.value} -> {new_status.value}"
        )
    run.status = new_status
    run.updated_at = now


def _check_attempt(run: Run, attempt: int | None) -> None:
    if attempt is not None and run.attempt != attempt:
        raise PreconditionNotMet(f"result for attempt {attempt} of {run.run_id} arrived during attempt {run.attempt}")


def _admission_order(run: Run) -> datetime:
    # sorted() is stable, so runs created together keep their enqueue order.
    return run.created_at


class RunQueue:
    """Durable run queue with per-batch admission control and stall detection.

    Every command is one locked read-modify-write of the batch document, so
    the running count checked on admission is the count that gets written.
    """

    def __init__(
        self,
        store: LookflowStateStore,
        bus: ChangeBus | None = None,
        *,
        concurrency: int = 3,
        stall_threshold: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got: {concurrency}")
        self.store = store
        self.bus = bus if bus is not None else ChangeBus()
        self.default_concurrency = concurrency
        self.stall_threshold = stall_threshold
        self.clock = clock
        self._concurrency_overrides: dict[str, int] = {}
        # Run ids never move between batches.
        self._run_batches: dict[str, str] = {}

    @classmethod
    def from_settings(
        cls,
        store: LookflowStateStore,
        settings: RuntimeSettings,
        bus: ChangeBus | None = None,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> "RunQueue":
        return cls(
            store,
            bus,
            concurrency=settings.run_concurrency,
            stall_threshold=timedelta(seconds=settings.stall_threshold_seconds),
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def set_concurrency(self, batch_id: str, limit: int) -> None:
        if limit < 1:
            raise ValueError(f"concurrency for {batch_id} must be >= 1, got: {limit}")
        self._concurrency_overrides[batch_id] = limit

    def concurrency_for(self, batch_id: str) -> int:
        return self._concurrency_overrides.get(batch_id, self.default_concurrency)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _publish(self, doc: BatchRuns, changed: list[Run]) -> None:
        if changed:
            self.bus.publish(
                ChangeEvent(topic=ChangeTopic.RUN, scope_id=doc.batch_id, revision=doc.revision, runs=tuple(changed))
            )

    def _locate(self, run_id: str) -> str:
        batch_id = self._run_batches.get(run_id)
        if batch_id is None:
            batch_id = self.store.locate_run(run_id)
            self._run_batches[run_id] = batch_id
        return batch_id

    def _update(self, batch_id: str, mutate: Callable[[BatchRuns], list[Run]]) -> list[Run]:
        doc, changed = self.store.update_batch_runs(batch_id, mutate)
        for run in changed:
            self._run_batches[run.run_id] = batch_id
        self._publish(doc, changed)
        return changed

    def _update_run(self, run_id: str, mutate: Callable[[Run, datetime], None]) -> Run:
        batch_id = self._locate(run_id)

        def _mutate(doc: BatchRuns) -> list[Run]:
            run = next((r for r in doc.runs if r.run_id == run_id), None)
            if run is None:
                raise KeyError(f"run not found: {run_id}")
            mutate(run, self.clock())
            return [run.model_copy()]

        return self._update(batch_id, _mutate)[0]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_runs(self, batch_id: str) -> list[Run]:
        return sorted(self.store.read_batch_runs(batch_id).runs, key=_admission_order)

    def get_run(self, run_id: str) -> Run:
        batch_id = self._locate(run_id)
        return next(r for r in self.store.read_batch_runs(batch_id).runs if r.run_id == run_id)

    def get_eligible_runs_for_batch(self, batch_id: str) -> list[Run]:
        """Queued runs of a batch in the order they will be admitted."""
        return [run for run in self.list_runs(batch_id) if run.status == RunStatus.QUEUED]

    def running_count(self, batch_id: str) -> int:
        return sum(1 for run in self.store.read_batch_runs(batch_id).runs if run.status == RunStatus.RUNNING)

    def batch_stats(self, batch_id: str) -> BatchStats:
        counts = {status.value: 0 for status in RunStatus}
        for run in self.store.read_batch_runs(batch_id).runs:
            counts[run.status.value] += 1
        return BatchStats(batch_id=batch_id, **counts)

    def next_run_index(self, batch_id: str, look_id: str) -> int:
        indexes = [r.run_index for r in self.store.read_batch_runs(batch_id).runs if r.look_id == look_id]
        return max(indexes, default=0) + 1

    def _all_runs(self, look_ids: Iterable[str], brand_id: str | None) -> list[Run]:
        wanted = set(look_ids)
        return [
            run
            for batch_id in self.store.list_batches()
            for run in self.store.read_batch_runs(batch_id).runs
            if run.look_id in wanted and (brand_id is None or run.brand_id == brand_id)
        ]

    def completed_run_counts(self, look_ids: Iterable[str], *, brand_id: str | None = None) -> dict[str, int]:
        """Number of completed runs per look, across batches."""
        counts: dict[str, int] = {}
        for run in self._all_runs(look_ids, brand_id):
            if run.status == RunStatus.COMPLETE:
                counts[run.look_id] = counts.get(run.look_id, 0) + 1
        return counts

    def last_runs_by_look(self, look_ids: Iterable[str], *, brand_id: str | None = None) -> dict[str, Run]:
        """Most recently created run per look."""
        latest: dict[str, Run] = {}
        for run in self._all_runs(look_ids, brand_id):
            current = latest.get(run.look_id)
            if current is None or (run.created_at, run.run_index) > (current.created_at, current.run_index):
                latest[run.look_id] = run
        return latest

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def enqueue_runs(
        self,
        batch_id: str,
        look_ids: Iterable[str],
        config: RunConfig,
        *,
        runs_per_look: int = 1,
        brand_id: str | None = None,
    ) -> list[Run]:
        """Create queued runs, ``runs_per_look`` for each look.

        Run indexes continue from the highest index the look already has in the
        batch. Every run gets its own copy of *config*.
        """
        validate_record_id(batch_id, "batch_id")
        if runs_per_look < 1:
            raise ValueError(f"runs_per_look must be >= 1, got: {runs_per_look}")
        look_ids = list(dict.fromkeys(look_ids))
        snapshot = RunConfig.model_validate(config.model_dump(mode="json"))
        fingerprint = snapshot.fingerprint

        def _mutate(doc: BatchRuns) -> list[Run]:
            now = self.clock()
            created: list[Run] = []
            for look_id in look_ids:
                start = max((r.run_index for r in doc.runs if r.look_id == look_id), default=0) + 1
                for offset in range(runs_per_look):
                    run = Run(
                        run_id=uuid.uuid4().hex,
                        batch_id=batch_id,
                        look_id=look_id,
                        brand_id=brand_id if brand_id is not None else snapshot.brand_id,
                        run_index=start + offset,
                        config_snapshot=snapshot.model_copy(deep=True),
                        config_fingerprint=fingerprint,
                        created_at=now,
                        updated_at=now,
                    )
                    doc.runs.append(run)
                    created.append(run.model_copy())
            return created

        created = self._update(batch_id, _mutate)
        logger.info("Enqueued %d runs in batch %s (config %s)", len(created), batch_id, fingerprint[:12])
        return created

    def enqueue_run(self, batch_id: str, look_id: str, config: RunConfig, *, brand_id: str | None = None) -> Run:
        return self.enqueue_runs(batch_id, [look_id], config, brand_id=brand_id)[0]

    def cancel_queued_run(self, run_id: str) -> Run:
        """Cancel a run that has not been admitted yet.

        Raises:
            PreconditionNotMet: If the run is not ``queued``.
        """

        def _mutate(run: Run, now: datetime) -> None:
            if run.status != RunStatus.QUEUED:
                raise PreconditionNotMet(f"only queued runs can be cancelled; {run_id} is {run.status.value}")
            _transition(run, RunStatus.CANCELLED, now)
            run.completed_at = now

        run = self._update_run(run_id, _mutate)
        logger.info("Cancelled queued run %s", run_id)
        return run

    def admit_next(self, batch_id: str) -> Run | None:
        """Admit the oldest queued run if the batch is below its concurrency limit."""
        admitted = self.admit_available(batch_id, limit=1)
        return admitted[0] if admitted else None

    def admit_available(self, batch_id: str, *, limit: int | None = None) -> list[Run]:
        """Move queued runs to ``running`` until the batch reaches its concurrency limit.

        The running count is read and incremented inside one locked write.
        """
        capacity_limit = self.concurrency_for(batch_id)

        def _mutate(doc: BatchRuns) -> list[Run]:
            running = sum(1 for r in doc.runs if r.status == RunStatus.RUNNING)
            free = capacity_limit - running
            if limit is not None:
                free = min(free, limit)
            if free <= 0:
                return []
            now = self.clock()
            admitted: list[Run] = []
            for run in sorted((r for r in doc.runs if r.status == RunStatus.QUEUED), key=_admission_order)[:free]:
                _transition(run, RunStatus.RUNNING, now)
                run.started_at = now
                run.heartbeat_at = now
                run.completed_at = None
                run.error_message = None
                run.attempt += 1
                admitted.append(run.model_copy())
            return admitted

        admitted = self._update(batch_id, _mutate)
        for run in admitted:
            logger.info("Admitted run %s (look %s, index %d, attempt %d)", run.run_id, run.look_id, run.run_index, run.attempt)
        return admitted

    def heartbeat(self, run_ids: Iterable[str]) -> int:
        """Refresh ``heartbeat_at`` on the given runs that are still running.

        Returns:
            Number of runs refreshed.
        """
        by_batch: dict[str, set[str]] = {}
        for run_id in run_ids:
            by_batch.setdefault(self._locate(run_id), set()).add(run_id)
        refreshed = 0
        for batch_id, ids in by_batch.items():

            def _mutate(doc: BatchRuns, ids: set[str] = ids) -> list[Run]:
                now = self.clock()
                beat: list[Run] = []
                for run in doc.runs:
                    if run.run_id in ids and run.status == RunStatus.RUNNING:
                        run.heartbeat_at = now
                        beat.append(run.model_copy())
                return beat

            refreshed += len(self._update(batch_id, _mutate))
        return refreshed

    def complete_run(self, run_id: str, output_count: int, *, attempt: int | None = None) -> Run:
        """Record a worker's result.

        With *attempt*, the result only counts for that admission of the run.

        Raises:
            PreconditionNotMet: If the run is not ``running`` or is on another attempt.
        """

        def _mutate(run: Run, now: datetime) -> None:
            _check_attempt(run, attempt)
            _transition(run, RunStatus.COMPLETE, now)
            run.completed_at = now
            run.output_count = output_count

        run = self._update_run(run_id, _mutate)
        logger.info("Run %s complete with %d outputs", run_id, output_count)
        return run

    def fail_run(self, run_id: str, message: str, *, attempt: int | None = None) -> Run:
        def _mutate(run: Run, now: datetime) -> None:
            _check_attempt(run, attempt)
            _transition(run, RunStatus.FAILED, now)
            run.completed_at = now
            run.error_message = message

        run = self._update_run(run_id, _mutate)
        logger.warning("Run %s failed: %s", run_id, message)
        return run

    def detect_stalled(self, now: datetime | None = None) -> list[Run]:
        """Mark running runs whose last heartbeat is older than the stall threshold.

        Runs that never wrote a heartbeat are judged by ``started_at``. *now*
        is the monitor's own poll time.
        """
        poll_time = now if now is not None else self.clock()
        cutoff = poll_time - self.stall_threshold
        stalled: list[Run] = []
        for batch_id in self.store.list_batches():

            def _mutate(doc: BatchRuns) -> list[Run]:
                marked: list[Run] = []
                for run in doc.runs:
                    if run.status != RunStatus.RUNNING:
                        continue
                    last_seen = run.heartbeat_at or run.started_at
                    if last_seen is not None and last_seen >= cutoff:
                        continue
                    _transition(run, RunStatus.STALLED, poll_time)
                    run.error_message = STALL_ERROR_MESSAGE
                    marked.append(run.model_copy())
                return marked

            found = self._update(batch_id, _mutate)
            for run in found:
                logger.warning("Run %s in batch %s stalled (last heartbeat %s)", run.run_id, batch_id, run.heartbeat_at)
            stalled.extend(found)
        return stalled

    def requeue_stalled_run(self, run_id: str, *, max_attempts: int | None = None) -> Run:
        """Send a stalled run back to the queue with its original config snapshot.

        When *max_attempts* is given and the run has already been admitted that
        many times, it is failed instead.

        Raises:
            PreconditionNotMet: If the run is not ``stalled``.
        """

        def _mutate(run: Run, now: datetime) -> None:
            if run.status != RunStatus.STALLED:
                raise PreconditionNotMet(f"only stalled runs can be requeued; {run_id} is {run.status.value}")
            if max_attempts is not None and run.attempt >= max_attempts:
                _transition(run, RunStatus.FAILED, now)
                run.completed_at = now
                run.error_message = f"{STALL_ERROR_MESSAGE} (gave up after {run.attempt} attempts)"
                return
            _transition(run, RunStatus.QUEUED, now)
            run.started_at = None
            run.heartbeat_at = None
            run.completed_at = None
            run.error_message = None

        run = self._update_run(run_id, _mutate)
        logger.info("Stalled run %s -> %s", run_id, run.status.value)
        return run


class RunWorker(Protocol):
    """External generation worker. Returns the number of outputs produced."""

    def __call__(self, run: Run, heartbeat: Callable[[], None]) -> int: ...


class RunDispatcher:
    """Drives a ``RunQueue``: admits runs, executes them, refreshes heartbeats and watches for stalls.

    The dispatch loop and the stall monitor are independent threads. A worker
    error fails only its own run.
    """

    def __init__(
        self,
        queue: RunQueue,
        worker: RunWorker,
        *,
        batch_ids: Iterable[str] | None = None,
        max_workers: int | None = None,
        dispatch_interval: float = 5.0,
        heartbeat_interval: float = 30.0,
        monitor_interval: float = 60.0,
        max_attempts: int | None = 3,
        auto_requeue: bool = True,
    ) -> None:
        self.queue = queue
        self.worker = worker
        self.batch_ids = list(batch_ids) if batch_ids is not None else None
        self.dispatch_interval = dispatch_interval
        self.heartbeat_interval = heartbeat_interval
        self.monitor_interval = monitor_interval
        self.max_attempts = max_attempts
        self.auto_requeue = auto_requeue
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers if max_workers is not None else queue.default_concurrency,
            thread_name_prefix="lookflow-run",
        )
        # run id -> (attempt, future) of the admission being executed
        self._outstanding: dict[str, tuple[int, Future[None]]] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @classmethod
    def from_settings(cls, queue: RunQueue, worker: RunWorker, settings: RuntimeSettings, **kwargs) -> "RunDispatcher":  # noqa: ANN003
        return cls(
            queue,
            worker,
            dispatch_interval=settings.dispatch_interval_seconds,
            heartbeat_interval=settings.heartbeat_interval_seconds,
            monitor_interval=settings.monitor_interval_seconds,
            max_attempts=settings.max_run_attempts,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Single passes
    # ------------------------------------------------------------------

    def _batches(self) -> list[str]:
        return self.batch_ids if self.batch_ids is not None else self.queue.store.list_batches()

    def outstanding(self) -> list[str]:
        with self._lock:
            return list(self._outstanding)

    def dispatch_once(self) -> list[Run]:
        """Admit whatever each batch has room for and hand it to the executor."""
        submitted: list[Run] = []
        for batch_id in self._batches():
            for run in self.queue.admit_available(batch_id):
                with self._lock:
                    self._outstanding[run.run_id] = (run.attempt, self._executor.submit(self._execute, run))
                submitted.append(run)
        return submitted

    def heartbeat_once(self) -> int:
        run_ids = self.outstanding()
        if not run_ids:
            return 0
        return self.queue.heartbeat(run_ids)

    def monitor_once(self) -> list[Run]:
        """Run one stall-detection pass; stalled runs are requeued or failed when auto_requeue is on."""
        stalled = self.queue.detect_stalled()
        if not self.auto_requeue:
            return stalled
        return [self.queue.requeue_stalled_run(run.run_id, max_attempts=self.max_attempts) for run in stalled]

    def _is_current(self, run: Run) -> bool:
        with self._lock:
            entry = self._outstanding.get(run.run_id)
        return entry is not None and entry[0] == run.attempt

    def _execute(self, run: Run) -> None:
        def _beat() -> None:
            if self._is_current(run):
                self.queue.heartbeat([run.run_id])

        try:
            try:
                output_count = self.worker(run, _beat)
            except Exception as exc:  # noqa: BLE001
                failure = exc if isinstance(exc, WorkerFailure) else WorkerFailure(str(exc) or type(exc).__name__, target_id=run.run_id)
                logger.exception("Worker failed for run %s", run.run_id)
                self._record(lambda: self.queue.fail_run(run.run_id, str(failure), attempt=run.attempt))
                return
            self._record(lambda: self.queue.complete_run(run.run_id, output_count, attempt=run.attempt))
        finally:
            with self._lock:
                entry = self._outstanding.get(run.run_id)
                if entry is not None and entry[0] == run.attempt:
                    del self._outstanding[run.run_id]

    def _record(self, write: Callable[[], Run]) -> None:
        try:
            write()
        except PreconditionNotMet as exc:
            # The run was stalled or readmitted while this worker was still busy.
            logger.warning("Discarding late worker result: %s", exc)

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    def _loop(self, interval: float, step: Callable[[], object], name: str) -> None:
        while not self._stop.is_set():
            try:
                step()
            except Exception:  # noqa: BLE001
                logger.exception("%s pass failed", name)
            self._stop.wait(interval)

    def start(self) -> None:
        if self._threads:
            raise RuntimeError("dispatcher already started")
        self._stop.clear()
        for name, interval, step in (
            ("dispatch", self.dispatch_interval, self.dispatch_once),
            ("heartbeat", self.heartbeat_interval, self.heartbeat_once),
            ("stall-monitor", self.monitor_interval, self.monitor_once),
        ):
            thread = threading.Thread(target=self._loop, args=(interval, step, name), name=f"lookflow-{name}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info("Run dispatcher started")

    def stop(self, *, wait: bool = True) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join()
        self._threads.clear()
        self._executor.shutdown(wait=wait)
        logger.info("Run dispatcher stopped")

    def run_until_idle(self, *, poll_interval: float = 0.05, timeout: float | None = None) -> None:
        """Dispatch synchronously until no run is queued or outstanding.

        Raises:
            TimeoutError: If *timeout* seconds pass first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            self.dispatch_once()
            with self._lock:
                futures = [future for _, future in self._outstanding.values()]
            if futures:
                futures[0].result()
                continue
            if not any(self.queue.get_eligible_runs_for_batch(batch_id) for batch_id in self._batches()):
                return
            if deadline is not None and time.monotonic() > deadline:
                raise TimeoutError("run queue did not drain before timeout")
            self._stop.wait(poll_interval)
