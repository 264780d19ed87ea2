from __future__ import annotations

import threading
from datetime import timedelta

import pytest
from pydantic import ValidationError

from lookflow.errors import PreconditionNotMet, WorkerFailure
from lookflow.models import BatchRuns, Run, RunConfig, RunStatus
from lookflow.notifications import ChangeBus, ChangeEvent, ChangeTopic
from lookflow.run_queue import STALL_ERROR_MESSAGE, RunDispatcher, RunQueue
from lookflow.state_store import LookflowStateStore

CONFIG = RunConfig(model="google/gemini-3-pro-image-preview", poses_per_shot_type=2)


@pytest.fixture
def queue(store: LookflowStateStore, clock) -> RunQueue:
    return RunQueue(store, concurrency=3, stall_threshold=timedelta(minutes=5), clock=clock)


def test_five_runs_with_concurrency_three(queue: RunQueue) -> None:
    runs = queue.enqueue_runs("batch-1", [f"look-{n}" for n in range(1, 6)], CONFIG)
    assert len(runs) == 5

    admitted = queue.admit_available("batch-1")
    assert [run.look_id for run in admitted] == ["look-1", "look-2", "look-3"]
    stats = queue.batch_stats("batch-1")
    assert (stats.running, stats.queued) == (3, 2)
    assert queue.admit_next("batch-1") is None

    queue.complete_run(admitted[0].run_id, output_count=4)
    assert queue.admit_next("batch-1").look_id == "look-4"
    assert queue.admit_next("batch-1") is None
    assert queue.batch_stats("batch-1").running == 3


def test_admission_sets_timestamps_and_attempt(queue: RunQueue, clock) -> None:
    queue.enqueue_run("batch-1", "look-1", CONFIG)
    run = queue.admit_next("batch-1")
    assert run.status == RunStatus.RUNNING
    assert run.started_at == clock.now
    assert run.heartbeat_at == clock.now
    assert run.attempt == 1


def test_concurrent_admission_never_exceeds_limit(queue: RunQueue) -> None:
    queue.enqueue_runs("batch-1", ["look-1"], CONFIG, runs_per_look=10)
    barrier = threading.Barrier(8)
    admitted: list[Run] = []
    lock = threading.Lock()

    def _admit() -> None:
        barrier.wait()
        run = queue.admit_next("batch-1")
        if run is not None:
            with lock:
                admitted.append(run)

    threads = [threading.Thread(target=_admit) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(admitted) == 3
    assert queue.batch_stats("batch-1").running == 3


def test_concurrency_can_be_set_per_batch(queue: RunQueue) -> None:
    queue.set_concurrency("batch-2", 1)
    queue.enqueue_runs("batch-2", ["look-1", "look-2"], CONFIG)
    assert len(queue.admit_available("batch-2")) == 1
    with pytest.raises(ValueError):
        queue.set_concurrency("batch-2", 0)


def test_run_index_continues_per_look(queue: RunQueue) -> None:
    first = queue.enqueue_runs("batch-1", ["look-1", "look-2"], CONFIG, runs_per_look=2)
    assert [(run.look_id, run.run_index) for run in first] == [
        ("look-1", 1),
        ("look-1", 2),
        ("look-2", 1),
        ("look-2", 2),
    ]
    assert queue.enqueue_run("batch-1", "look-1", CONFIG).run_index == 3
    assert queue.next_run_index("batch-1", "look-1") == 4
    assert queue.next_run_index("batch-1", "look-9") == 1


def test_config_snapshot_is_fixed_at_enqueue(queue: RunQueue) -> None:
    run = queue.enqueue_run("batch-1", "look-1", CONFIG)
    queue.enqueue_run("batch-1", "look-2", RunConfig(model="another-model"))

    stored = queue.get_run(run.run_id)
    assert stored.config_snapshot == CONFIG
    assert stored.config_fingerprint == CONFIG.fingerprint
    with pytest.raises(ValidationError):
        stored.config_snapshot.model = "changed"


def test_heartbeat_only_touches_running_runs(queue: RunQueue, clock) -> None:
    running, queued = queue.enqueue_runs("batch-1", ["look-1", "look-2"], CONFIG)
    queue.set_concurrency("batch-1", 1)
    queue.admit_next("batch-1")
    clock.advance(60)

    assert queue.heartbeat([running.run_id, queued.run_id]) == 1
    assert queue.get_run(running.run_id).heartbeat_at == clock.now
    assert queue.get_run(queued.run_id).heartbeat_at is None


def test_silent_run_is_marked_stalled(queue: RunQueue, clock) -> None:
    fresh, silent = queue.enqueue_runs("batch-1", ["look-1", "look-2"], CONFIG)
    queue.admit_available("batch-1")

    clock.advance(240)
    queue.heartbeat([fresh.run_id])
    assert queue.detect_stalled() == []

    clock.advance(120)
    stalled = queue.detect_stalled()
    assert [run.run_id for run in stalled] == [silent.run_id]
    assert stalled[0].status == RunStatus.STALLED
    assert stalled[0].error_message == STALL_ERROR_MESSAGE
    assert queue.get_run(fresh.run_id).status == RunStatus.RUNNING


def test_run_without_heartbeat_is_judged_by_start_time(
    queue: RunQueue, store: LookflowStateStore, clock
) -> None:
    run = queue.enqueue_run("batch-1", "look-1", CONFIG)
    queue.admit_next("batch-1")

    def _drop_heartbeat(doc: BatchRuns) -> None:
        doc.runs[0].heartbeat_at = None

    store.update_batch_runs("batch-1", _drop_heartbeat)
    assert queue.detect_stalled(clock.now + timedelta(minutes=4)) == []
    assert [r.run_id for r in queue.detect_stalled(clock.now + timedelta(minutes=6))] == [run.run_id]


def test_stalled_run_goes_back_through_queue(queue: RunQueue, clock) -> None:
    run = queue.enqueue_run("batch-1", "look-1", CONFIG)
    queue.admit_next("batch-1")
    clock.advance(400)
    queue.detect_stalled()

    assert queue.admit_next("batch-1") is None
    with pytest.raises(PreconditionNotMet):
        queue.complete_run(run.run_id, output_count=1)

    requeued = queue.requeue_stalled_run(run.run_id)
    assert requeued.status == RunStatus.QUEUED
    assert requeued.started_at is None
    assert requeued.heartbeat_at is None
    assert requeued.error_message is None
    assert requeued.config_snapshot == CONFIG
    assert requeued.run_index == run.run_index

    readmitted = queue.admit_next("batch-1")
    assert readmitted.run_id == run.run_id
    assert readmitted.attempt == 2


def test_requeue_fails_run_once_attempts_are_spent(queue: RunQueue, clock) -> None:
    run = queue.enqueue_run("batch-1", "look-1", CONFIG)
    for _ in range(2):
        queue.admit_next("batch-1")
        clock.advance(400)
        queue.detect_stalled()
        latest = queue.requeue_stalled_run(run.run_id, max_attempts=2)

    assert latest.status == RunStatus.FAILED
    assert latest.attempt == 2
    assert "gave up" in latest.error_message


def test_requeue_requires_stalled(queue: RunQueue) -> None:
    run = queue.enqueue_run("batch-1", "look-1", CONFIG)
    with pytest.raises(PreconditionNotMet):
        queue.requeue_stalled_run(run.run_id)


def test_cancel_only_while_queued(queue: RunQueue) -> None:
    first, second = queue.enqueue_runs("batch-1", ["look-1", "look-2"], CONFIG)
    queue.set_concurrency("batch-1", 1)
    queue.admit_next("batch-1")

    with pytest.raises(PreconditionNotMet):
        queue.cancel_queued_run(first.run_id)
    cancelled = queue.cancel_queued_run(second.run_id)
    assert cancelled.status == RunStatus.CANCELLED
    assert queue.get_eligible_runs_for_batch("batch-1") == []
    with pytest.raises(PreconditionNotMet):
        queue.cancel_queued_run(second.run_id)


def test_unknown_run_raises_key_error(queue: RunQueue) -> None:
    with pytest.raises(KeyError):
        queue.complete_run("missing", output_count=0)


def test_eligible_runs_follow_admission_order(queue: RunQueue, clock) -> None:
    queue.enqueue_run("batch-1", "look-b", CONFIG)
    clock.advance(1)
    queue.enqueue_run("batch-1", "look-a", CONFIG)
    assert [run.look_id for run in queue.get_eligible_runs_for_batch("batch-1")] == ["look-b", "look-a"]


def test_completed_counts_and_last_runs(queue: RunQueue, clock) -> None:
    runs = queue.enqueue_runs("batch-1", ["look-1", "look-2"], CONFIG, brand_id="brand-x")
    for run in queue.admit_available("batch-1"):
        queue.complete_run(run.run_id, output_count=3)
    clock.advance(10)
    later = queue.enqueue_run("batch-2", "look-1", CONFIG)

    assert queue.completed_run_counts(["look-1", "look-2", "look-3"]) == {"look-1": 1, "look-2": 1}
    latest = queue.last_runs_by_look(["look-1", "look-2"])
    assert latest["look-1"].run_id == later.run_id
    assert latest["look-2"].run_id == runs[1].run_id
    assert queue.completed_run_counts(["look-1"], brand_id="brand-y") == {}


def test_run_events_are_published(store: LookflowStateStore, clock) -> None:
    bus = ChangeBus()
    events: list[ChangeEvent] = []
    bus.subscribe(events.append, topic=ChangeTopic.RUN)
    queue = RunQueue(store, bus, clock=clock)

    queue.enqueue_run("batch-1", "look-1", CONFIG)
    queue.admit_next("batch-1")

    assert [event.runs[0].status for event in events] == [RunStatus.QUEUED, RunStatus.RUNNING]
    assert events[1].revision > events[0].revision


def test_dispatcher_drains_batch_and_isolates_failures(queue: RunQueue) -> None:
    queue.enqueue_runs("batch-1", [f"look-{n}" for n in range(1, 6)], CONFIG)
    peak = {"now": 0, "max": 0}
    lock = threading.Lock()

    def _worker(run: Run, heartbeat) -> int:
        with lock:
            peak["now"] += 1
            peak["max"] = max(peak["max"], peak["now"])
        try:
            heartbeat()
            if run.look_id == "look-2":
                raise WorkerFailure("upstream model error", target_id=run.run_id)
            return run.config_snapshot.poses_per_shot_type
        finally:
            with lock:
                peak["now"] -= 1

    dispatcher = RunDispatcher(queue, _worker, batch_ids=["batch-1"], max_attempts=3)
    try:
        dispatcher.run_until_idle(timeout=10)
    finally:
        dispatcher.stop()

    runs = {run.look_id: run for run in queue.list_runs("batch-1")}
    assert runs["look-2"].status == RunStatus.FAILED
    assert runs["look-2"].error_message == "upstream model error"
    assert all(runs[look].status == RunStatus.COMPLETE for look in ("look-1", "look-3", "look-4", "look-5"))
    assert runs["look-1"].output_count == 2
    assert peak["max"] <= 3


def test_dispatcher_monitor_pass_requeues_stalled_runs(queue: RunQueue, clock) -> None:
    run = queue.enqueue_run("batch-1", "look-1", CONFIG)
    queue.admit_next("batch-1")
    clock.advance(600)

    dispatcher = RunDispatcher(queue, lambda run, heartbeat: 0, batch_ids=["batch-1"], max_attempts=3)
    try:
        handled = dispatcher.monitor_once()
    finally:
        dispatcher.stop()

    assert [r.run_id for r in handled] == [run.run_id]
    assert queue.get_run(run.run_id).status == RunStatus.QUEUED


def test_result_for_another_attempt_is_rejected(queue: RunQueue, clock) -> None:
    run = queue.enqueue_run("batch-1", "look-1", CONFIG)
    queue.admit_next("batch-1")
    clock.advance(400)
    queue.detect_stalled()
    queue.requeue_stalled_run(run.run_id)
    queue.admit_next("batch-1")

    with pytest.raises(PreconditionNotMet, match="attempt 1"):
        queue.complete_run(run.run_id, output_count=1, attempt=1)
    with pytest.raises(PreconditionNotMet):
        queue.fail_run(run.run_id, "late failure", attempt=1)
    assert queue.get_run(run.run_id).status == RunStatus.RUNNING
    assert queue.complete_run(run.run_id, output_count=2, attempt=2).status == RunStatus.COMPLETE


def test_late_result_from_stalled_attempt_leaves_retry_running(
    queue: RunQueue, clock, monkeypatch: pytest.MonkeyPatch
) -> None:
    run = queue.enqueue_run("batch-1", "look-1", CONFIG)
    started = {1: threading.Event(), 2: threading.Event()}
    release = {1: threading.Event(), 2: threading.Event()}
    reported = threading.Event()
    original_complete = queue.complete_run

    def _complete(run_id: str, output_count: int, *, attempt: int | None = None) -> Run:
        try:
            return original_complete(run_id, output_count, attempt=attempt)
        finally:
            reported.set()

    monkeypatch.setattr(queue, "complete_run", _complete)

    def _worker(admitted: Run, heartbeat) -> int:
        started[admitted.attempt].set()
        release[admitted.attempt].wait(timeout=5)
        return 10 * admitted.attempt

    dispatcher = RunDispatcher(queue, _worker, batch_ids=["batch-1"], max_workers=2, max_attempts=3)
    try:
        dispatcher.dispatch_once()
        assert started[1].wait(timeout=5)
        clock.advance(600)
        assert [r.status for r in dispatcher.monitor_once()] == [RunStatus.QUEUED]
        assert [r.attempt for r in dispatcher.dispatch_once()] == [2]
        assert started[2].wait(timeout=5)

        release[1].set()
        assert reported.wait(timeout=5)
        reported.clear()
        current = queue.get_run(run.run_id)
        assert current.status == RunStatus.RUNNING
        assert current.attempt == 2
        assert dispatcher.outstanding() == [run.run_id]
        clock.advance(30)
        assert dispatcher.heartbeat_once() == 1

        release[2].set()
        assert reported.wait(timeout=5)
    finally:
        release[1].set()
        release[2].set()
        dispatcher.stop()

    finished = queue.get_run(run.run_id)
    assert finished.status == RunStatus.COMPLETE
    assert finished.output_count == 20
    assert dispatcher.outstanding() == []


def test_idle_passes_do_not_rewrite_batches(queue: RunQueue, store: LookflowStateStore, clock) -> None:
    running, queued = queue.enqueue_runs("batch-1", ["look-1", "look-2"], CONFIG)
    queue.set_concurrency("batch-1", 1)
    queue.admit_next("batch-1")
    revision = store.read_batch_runs("batch-1").revision
    clock.advance(60)

    assert queue.detect_stalled() == []
    assert queue.heartbeat([queued.run_id]) == 0
    assert queue.admit_next("batch-1") is None
    assert store.read_batch_runs("batch-1").revision == revision


def test_known_runs_are_not_searched_for_again(
    queue: RunQueue, store: LookflowStateStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    run = queue.enqueue_run("batch-1", "look-1", CONFIG)
    queue.enqueue_run("batch-2", "look-2", CONFIG)

    def _scan(run_id: str) -> str:
        raise AssertionError(f"scanned batches for {run_id}")

    monkeypatch.setattr(store, "locate_run", _scan)
    queue.admit_next("batch-1")
    assert queue.heartbeat([run.run_id]) == 1
    assert queue.complete_run(run.run_id, output_count=1).status == RunStatus.COMPLETE
