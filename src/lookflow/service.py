from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable

from .apply_queue import ApplyExecutor, ClientApplyQueue
from .filtering import get_display_looks
from .models import (
    ApplyRequestType,
    FilterMode,
    Look,
    LookSummary,
    LookViewStates,
    QueueItem,
    Run,
    RunConfig,
    Stage,
    ViewState,
    ViewStateStatus,
)
from .notifications import ChangeBus, ChangeTopic
from .run_queue import RunQueue
from .settings import RuntimeSettings
from .state_store import LookflowStateStore
from .summary import LookSummaryAggregator
from .view_states import LookData, ViewStateService, _utc_now

logger = logging.getLogger(__name__)


class WorkflowService:
    """Query and command surface used by the surrounding application.

    View-state writes reach the summary aggregator through the change bus, so
    summaries served here are always folded from events carrying the written
    records and their revisions.
    """

    def __init__(
        self,
        store: LookflowStateStore,
        *,
        settings: RuntimeSettings | None = None,
        bus: ChangeBus | None = None,
        apply_executor: ApplyExecutor | None = None,
        on_apply_complete: Callable[[QueueItem], None] | None = None,
        auto_process_apply: bool = True,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.settings = (settings if settings is not None else RuntimeSettings()).normalized()
        self.store = store
        self.bus = bus if bus is not None else ChangeBus()
        self.view_states = ViewStateService(store, self.bus, clock=clock)
        self.runs = RunQueue.from_settings(store, self.settings, self.bus, clock=clock)
        self.aggregator = LookSummaryAggregator(loader=self._load_look)
        self._unsubscribe = self.bus.subscribe(self.aggregator.apply, topic=ChangeTopic.VIEW_STATE)
        self.apply_queue: ClientApplyQueue | None = None
        if apply_executor is not None:
            self.apply_queue = ClientApplyQueue.from_settings(
                apply_executor, self.settings, on_complete=on_apply_complete, auto_process=auto_process_apply
            )

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, *, repo_root: Path | None = None, **kwargs) -> "WorkflowService":  # noqa: ANN003
        settings = settings.normalized()
        root = settings.state_store_path(repo_root if repo_root is not None else Path.cwd())
        store = LookflowStateStore(root, retry_attempts=settings.store_retry_attempts)
        return cls(store, settings=settings, **kwargs)

    def close(self) -> None:
        self._unsubscribe()
        if self.apply_queue is not None:
            self.apply_queue.close()

    # ------------------------------------------------------------------
    # Looks
    # ------------------------------------------------------------------

    def register_look(self, look: Look) -> Look:
        self.store.write_look(look)
        logger.debug("Registered look %s", look.look_id)
        self.aggregator.set_look_name(look.look_id, look.name)
        return look

    def _look_name(self, look_id: str) -> str:
        try:
            return self.store.read_look(look_id).name
        except KeyError:
            return ""

    def _load_look(self, look_id: str) -> LookViewStates:
        self.aggregator.set_look_name(look_id, self._look_name(look_id))
        return self.store.read_look_states(look_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_look_states(self, look_id: str) -> list[ViewState]:
        return self.view_states.get_look_states(look_id)

    def get_look_summary(self, look_id: str, *, refresh: bool = False) -> LookSummary:
        """Summary of one look; loaded from the store the first time it is asked for."""
        summary = None if refresh else self.aggregator.summary(look_id)
        if summary is None:
            summary = self.aggregator.load(self._load_look(look_id))
        return summary

    def get_filtered_looks(
        self,
        stage: Stage,
        mode: FilterMode = FilterMode.NEEDS_ACTION,
        *,
        project_id: str | None = None,
        looks: Iterable[Look] | None = None,
    ) -> list[Look]:
        """Looks to display for *stage*: needs-action first, then completed when *mode* is ``all``."""
        candidates = list(looks) if looks is not None else self.store.list_looks(project_id)
        states_by_look = {look.look_id: self.store.read_look_states(look.look_id).states for look in candidates}
        return get_display_looks(candidates, states_by_look, Stage(stage), FilterMode(mode))

    def get_eligible_runs_for_batch(self, batch_id: str) -> list[Run]:
        return self.runs.get_eligible_runs_for_batch(batch_id)

    # ------------------------------------------------------------------
    # View-state commands
    # ------------------------------------------------------------------

    def update_view_state(
        self,
        look_id: str,
        view: str,
        stage: Stage,
        status: ViewStateStatus,
        *,
        source: str = "user",
        actor: str | None = None,
    ) -> ViewState:
        return self.view_states.update_view_state(look_id, view, stage, status, source=source, actor=actor)

    def sign_off_view(self, look_id: str, view: str, stage: Stage, *, actor: str | None = None) -> ViewState:
        return self.view_states.sign_off_view(look_id, view, stage, actor=actor)

    def sign_off_look(self, look_id: str, *, actor: str | None = None) -> list[ViewState]:
        return self.view_states.sign_off_look(look_id, actor=actor)

    def unlock_view(
        self,
        look_id: str,
        view: str,
        stage: Stage,
        *,
        reset_downstream: bool = False,
        actor: str | None = None,
    ) -> ViewState:
        return self.view_states.unlock_view(look_id, view, stage, reset_downstream=reset_downstream, actor=actor)

    def sync_look(self, look: LookData, *, views: list[str] | None = None) -> list[ViewState]:
        return self.view_states.sync_inferred_states(look, views=views)

    # ------------------------------------------------------------------
    # Run commands
    # ------------------------------------------------------------------

    def default_run_config(self, **overrides: object) -> RunConfig:
        """Freeze the current defaults into a config for new runs."""
        return RunConfig.model_validate({"model": self.settings.default_model, **overrides})

    def enqueue_runs(
        self,
        batch_id: str,
        look_ids: Iterable[str],
        *,
        config: RunConfig | None = None,
        runs_per_look: int = 1,
        brand_id: str | None = None,
    ) -> list[Run]:
        config = config if config is not None else self.default_run_config()
        return self.runs.enqueue_runs(batch_id, look_ids, config, runs_per_look=runs_per_look, brand_id=brand_id)

    def enqueue_run(self, batch_id: str, look_id: str, *, config: RunConfig | None = None) -> Run:
        return self.enqueue_runs(batch_id, [look_id], config=config)[0]

    def cancel_queued_run(self, run_id: str) -> Run:
        return self.runs.cancel_queued_run(run_id)

    def requeue_stalled_run(self, run_id: str, *, max_attempts: int | None = None) -> Run:
        return self.runs.requeue_stalled_run(run_id, max_attempts=max_attempts)

    # ------------------------------------------------------------------
    # Client apply queue commands
    # ------------------------------------------------------------------

    def _require_apply_queue(self) -> ClientApplyQueue:
        if self.apply_queue is None:
            raise RuntimeError("no apply executor configured for this service")
        return self.apply_queue

    def add_to_queue(
        self,
        request_type: ApplyRequestType | str,
        look_id: str,
        view: str | None = None,
        attempts: int | None = None,
    ) -> bool:
        return self._require_apply_queue().add_to_queue(request_type, look_id, view, attempts, look_name=self._look_name(look_id))

    def add_bulk_to_queue(
        self,
        request_type: ApplyRequestType | str,
        looks: Iterable[Look],
        view: str | None = None,
        attempts: int | None = None,
    ) -> int:
        return self._require_apply_queue().add_bulk_to_queue(request_type, looks, view, attempts)

    def remove_from_queue(self, item_id: str) -> bool:
        return self._require_apply_queue().remove_from_queue(item_id)

    def clear_queue(self) -> int:
        return self._require_apply_queue().clear_queue()

    def process_queue(self) -> list[QueueItem]:
        """Process queued apply requests in the calling thread until none is left."""
        return self._require_apply_queue().process_all()

    def wait_for_apply_queue(self, timeout: float | None = None) -> bool:
        return self._require_apply_queue().wait_idle(timeout)
