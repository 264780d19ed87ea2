from __future__ import annotations

import json
from pathlib import Path
from typing import Iterator

import pytest

from lookflow.__main__ import main
from lookflow.models import (
    STAGE_ORDER,
    ApplyRequestType,
    ApplySettings,
    FilterMode,
    Look,
    QueueItem,
    QueueItemStatus,
    RunConfig,
    RunStatus,
    Stage,
    StageStatus,
    ViewStateStatus,
)
from lookflow.service import WorkflowService
from lookflow.settings import RuntimeSettings
from lookflow.state_store import LookflowStateStore

COMPLETED = ViewStateStatus.COMPLETED


@pytest.fixture
def service(store: LookflowStateStore, clock) -> Iterator[WorkflowService]:
    def _executor(item: QueueItem, settings: ApplySettings) -> str:
        return f"job-{item.look_id}"

    workflow = WorkflowService(store, settings=RuntimeSettings(run_concurrency=2), apply_executor=_executor, clock=clock)
    yield workflow
    workflow.close()


def test_summary_follows_view_state_commands(service: WorkflowService) -> None:
    service.register_look(Look(look_id="look-1", name="Wool Coat"))
    assert service.get_look_summary("look-1").overall_progress == 0

    service.update_view_state("look-1", "front", Stage.UPLOAD, COMPLETED)
    service.update_view_state("look-1", "back", Stage.UPLOAD, COMPLETED)
    summary = service.get_look_summary("look-1")

    assert summary.look_name == "Wool Coat"
    assert summary.by_stage[Stage.UPLOAD].status == StageStatus.COMPLETE
    assert summary.overall_progress == 14
    assert service.get_look_summary("look-1", refresh=True) == summary


def test_filtered_looks_for_a_project(service: WorkflowService) -> None:
    for look_id, name in (("look-1", "Coat"), ("look-2", "Skirt"), ("look-3", "Scarf")):
        service.register_look(Look(look_id=look_id, name=name, project_id="spring"))
    service.register_look(Look(look_id="look-9", name="Other", project_id="autumn"))
    service.update_view_state("look-1", "front", Stage.UPLOAD, COMPLETED)
    service.update_view_state("look-3", "side", Stage.UPLOAD, COMPLETED)

    needs_action = service.get_filtered_looks(Stage.UPLOAD, FilterMode.NEEDS_ACTION, project_id="spring")
    assert [look.look_id for look in needs_action] == ["look-2"]
    shown = service.get_filtered_looks(Stage.CROP, FilterMode.ALL, project_id="spring")
    assert [look.look_id for look in shown] == ["look-1", "look-2", "look-3"]


def test_enqueue_uses_default_config_snapshot(service: WorkflowService) -> None:
    runs = service.enqueue_runs("batch-1", ["look-1", "look-2", "look-3"], runs_per_look=1)
    assert all(run.config_snapshot == RunConfig(model="google/gemini-3-pro-image-preview") for run in runs)
    assert len(service.runs.admit_available("batch-1")) == 2
    assert [run.look_id for run in service.get_eligible_runs_for_batch("batch-1")] == ["look-3"]
    assert service.cancel_queued_run(runs[2].run_id).status == RunStatus.CANCELLED


def test_apply_queue_processes_added_requests(service: WorkflowService) -> None:
    service.register_look(Look(look_id="look-1", name="Coat"))
    assert service.add_to_queue("run", "look-1", "front") is True
    assert service.add_bulk_to_queue("run", [Look(look_id="look-2", name="Skirt")], "front") == 1

    assert service.wait_for_apply_queue(timeout=5) is True
    items = service.apply_queue.items()
    assert [item.status for item in items] == [QueueItemStatus.COMPLETED, QueueItemStatus.COMPLETED]
    assert [item.job_id for item in items] == ["job-look-1", "job-look-2"]
    assert items[0].look_name == "Coat"
    assert service.clear_queue() == 2


def test_process_queue_command_without_background_worker(store: LookflowStateStore) -> None:
    workflow = WorkflowService(
        store, apply_executor=lambda item, settings: f"job-{item.look_id}", auto_process_apply=False
    )
    try:
        workflow.add_to_queue("run", "look-1", "front")
        assert workflow.add_to_queue("run", "look-1", "front") is False
        workflow.add_to_queue("add_more", "look-1", "front")
        assert workflow.apply_queue.pending_count == 2

        processed = workflow.process_queue()
    finally:
        workflow.close()

    assert [item.request_type for item in processed] == [ApplyRequestType.RUN, ApplyRequestType.ADD_MORE]
    assert all(item.status == QueueItemStatus.COMPLETED for item in processed)


def test_summary_of_look_written_elsewhere_counts_every_view(store: LookflowStateStore, clock) -> None:
    writer = WorkflowService(store, clock=clock)
    reader = WorkflowService(store, clock=clock)
    try:
        writer.update_view_state("look-1", "front", Stage.UPLOAD, COMPLETED)
        writer.update_view_state("look-1", "back", Stage.UPLOAD, COMPLETED)
        reader.update_view_state("look-1", "front", Stage.CROP, COMPLETED)

        summary = reader.get_look_summary("look-1")
        assert summary.by_stage[Stage.UPLOAD].total_views == 2
        assert summary.overall_progress == 21
        assert reader.get_look_summary("look-1", refresh=True) == summary
    finally:
        writer.close()
        reader.close()


def test_apply_queue_requires_executor(store: LookflowStateStore) -> None:
    workflow = WorkflowService(store)
    with pytest.raises(RuntimeError):
        workflow.add_to_queue("run", "look-1", "front")


@pytest.fixture
def cli_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    root = tmp_path / "state"
    monkeypatch.setenv("LOOKFLOW_STATE_STORE_ROOT", str(root))
    return root


def test_cli_enqueue_and_stats(cli_root: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["enqueue", "batch-1", "look-1", "look-2", "--runs-per-look", "2", "--model", "custom/model"]) == 0
    lines = capsys.readouterr().out.strip().splitlines()
    assert len(lines) == 4
    assert lines[0].endswith("look-1 #1")

    assert main(["stats", "batch-1"]) == 0
    stats = json.loads(capsys.readouterr().out)
    assert stats["queued"] == 4
    assert stats["total"] == 4


def test_cli_summary_and_sign_off(cli_root: Path, capsys: pytest.CaptureFixture[str]) -> None:
    store = LookflowStateStore(cli_root)
    workflow = WorkflowService(store)
    for stage in STAGE_ORDER:
        workflow.update_view_state("look-1", "front", stage, COMPLETED)
    workflow.close()

    assert main(["sign-off-look", "look-1", "--actor", "lead@example.com"]) == 0
    assert f"signed_off={len(STAGE_ORDER)}" in capsys.readouterr().out

    assert main(["summary", "look-1"]) == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["is_fully_signed"] is True
    assert summary["overall_progress"] == 100

    assert main(["unlock", "look-1", "front", "review"]) == 0
    assert "front/review=completed" in capsys.readouterr().out


def test_cli_reports_failed_precondition(cli_root: Path) -> None:
    assert main(["sign-off-look", "look-1"]) == 1
    assert main(["requeue", "missing-run"]) == 1


def test_cli_monitor_once(cli_root: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["monitor", "--once"]) == 0
    assert capsys.readouterr().out == ""
