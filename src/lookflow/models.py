from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .canonical import canonical_sha256


class Stage(str, Enum):
    """Pipeline phases in workflow order."""

    UPLOAD = "upload"
    CROP = "crop"
    MATCH = "match"
    GENERATE = "generate"
    REVIEW = "review"
    AI_APPLY = "ai_apply"
    HANDOFF = "handoff"


STAGE_ORDER: tuple[Stage, ...] = tuple(Stage)

STAGE_LABELS: dict[Stage, str] = {
    Stage.UPLOAD: "Looks Upload",
    Stage.CROP: "Head Crop",
    Stage.MATCH: "Face Match",
    Stage.GENERATE: "Generate",
    Stage.REVIEW: "Review",
    Stage.AI_APPLY: "AI Apply",
    Stage.HANDOFF: "Send to Job Board",
}


class ViewStateStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SIGNED_OFF = "signed_off"
    FAILED = "failed"


DONE_STATUSES: frozenset[ViewStateStatus] = frozenset({ViewStateStatus.COMPLETED, ViewStateStatus.SIGNED_OFF})


class StageStatus(str, Enum):
    NOT_STARTED = "not_started"
    PARTIAL = "partial"
    COMPLETE = "complete"
    SIGNED_OFF = "signed_off"


class FilterMode(str, Enum):
    NEEDS_ACTION = "needs_action"
    ALL = "all"


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"
    STALLED = "stalled"


RUN_STATUS_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.QUEUED: frozenset({RunStatus.RUNNING, RunStatus.CANCELLED}),
    RunStatus.RUNNING: frozenset({RunStatus.COMPLETE, RunStatus.FAILED, RunStatus.STALLED}),
    RunStatus.STALLED: frozenset({RunStatus.QUEUED, RunStatus.FAILED}),
    RunStatus.COMPLETE: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}


class QueueItemStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ApplyRequestType(str, Enum):
    RUN = "run"
    ADD_MORE = "add_more"
    RETRY_FAILED = "retry_failed"


class Look(BaseModel):
    """A unit of production work. Owned by the upstream project flow."""

    look_id: str
    name: str = ""
    project_id: str | None = None


class ViewState(BaseModel):
    """Completion record for one (look, view, stage) triple."""

    look_id: str
    view: str
    stage: Stage
    status: ViewStateStatus = ViewStateStatus.NOT_STARTED
    completed_at: datetime | None = None
    completed_by: str | None = None
    completion_source: str | None = None
    created_at: datetime
    updated_at: datetime
    revision: int = 0

    @property
    def key(self) -> tuple[str, str, Stage]:
        return (self.look_id, self.view, self.stage)

    @property
    def is_done(self) -> bool:
        return self.status in DONE_STATUSES


class LookViewStates(BaseModel):
    """Persisted document holding every ViewState of one look.

    One document per look keeps each look's snapshot consistent for readers.
    """

    look_id: str
    revision: int = 0
    states: list[ViewState] = Field(default_factory=list)


class StageSummary(BaseModel):
    total_views: int
    completed_views: int
    needs_action: int
    status: StageStatus


class LookSummary(BaseModel):
    look_id: str
    look_name: str = ""
    by_stage: dict[Stage, StageSummary]
    overall_progress: int
    is_fully_signed: bool
    revision: int = 0


class RunConfig(BaseModel):
    """Settings captured when a run is enqueued; never mutated afterwards."""

    model_config = ConfigDict(frozen=True)

    model: str
    poses_per_shot_type: int = 2
    attempts_per_pose: int = 1
    brand_id: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)

    @property
    def fingerprint(self) -> str:
        return canonical_sha256(self)


class Run(BaseModel):
    run_id: str
    batch_id: str
    look_id: str
    brand_id: str | None = None
    run_index: int
    status: RunStatus = RunStatus.QUEUED
    config_snapshot: RunConfig
    config_fingerprint: str = ""
    output_count: int = 0
    attempt: int = 0
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    heartbeat_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class BatchRuns(BaseModel):
    """Persisted document holding every run of one batch."""

    batch_id: str
    revision: int = 0
    runs: list[Run] = Field(default_factory=list)


class BatchStats(BaseModel):
    batch_id: str
    queued: int = 0
    running: int = 0
    complete: int = 0
    failed: int = 0
    cancelled: int = 0
    stalled: int = 0

    @property
    def total(self) -> int:
        return self.queued + self.running + self.complete + self.failed + self.cancelled + self.stalled


class ApplySettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    attempts_per_view: int = 4
    strictness: str = "high"
    model: str = "google/gemini-2.5-flash-image-preview"


class QueueItem(BaseModel):
    item_id: str
    request_type: ApplyRequestType
    look_id: str
    look_name: str = ""
    view: str | None = None
    status: QueueItemStatus = QueueItemStatus.QUEUED
    attempts_requested: int
    settings: ApplySettings
    job_id: str | None = None
    error: str | None = None

    @property
    def dedupe_key(self) -> tuple[ApplyRequestType, str, str | None]:
        return (self.request_type, self.look_id, self.view)
