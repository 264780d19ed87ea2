from importlib.metadata import version

from .apply_queue import ClientApplyQueue
from .canonical import canonical_sha256, to_canonical_json
from .errors import ConsistencyViolation, LookflowError, PreconditionNotMet, StoreUnavailable, WorkerFailure
from .filtering import filter_looks_by_stage, get_display_looks
from .models import (
    STAGE_ORDER,
    ApplyRequestType,
    ApplySettings,
    BatchStats,
    FilterMode,
    Look,
    LookSummary,
    QueueItem,
    QueueItemStatus,
    Run,
    RunConfig,
    RunStatus,
    Stage,
    StageStatus,
    StageSummary,
    ViewState,
    ViewStateStatus,
)
from .notifications import ChangeBus, ChangeEvent, ChangeTopic
from .policy import REQUIRED_CROP_VIEWS, needs_action_for_stage
from .run_queue import RunDispatcher, RunQueue
from .service import WorkflowService
from .settings import RuntimeSettings
from .state_store import LookflowStateStore
from .summary import LookSummaryAggregator, build_look_summary
from .view_states import LookData, ViewStateService


def get_version() -> str:
    try:
        return version(__name__)
    except Exception:
        return "0.0.0"


__all__ = [
    "ApplyRequestType",
    "ApplySettings",
    "BatchStats",
    "ChangeBus",
    "ChangeEvent",
    "ChangeTopic",
    "ClientApplyQueue",
    "ConsistencyViolation",
    "FilterMode",
    "Look",
    "LookData",
    "LookSummary",
    "LookSummaryAggregator",
    "LookflowError",
    "LookflowStateStore",
    "PreconditionNotMet",
    "QueueItem",
    "QueueItemStatus",
    "REQUIRED_CROP_VIEWS",
    "Run",
    "RunConfig",
    "RunDispatcher",
    "RunQueue",
    "RunStatus",
    "RuntimeSettings",
    "STAGE_ORDER",
    "Stage",
    "StageStatus",
    "StageSummary",
    "StoreUnavailable",
    "ViewState",
    "ViewStateService",
    "ViewStateStatus",
    "WorkerFailure",
    "WorkflowService",
    "build_look_summary",
    "canonical_sha256",
    "filter_looks_by_stage",
    "get_display_looks",
    "get_version",
    "needs_action_for_stage",
    "to_canonical_json",
]
