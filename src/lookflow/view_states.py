from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Callable

from .errors import PreconditionNotMet
from .models import STAGE_ORDER, LookViewStates, Stage, ViewState, ViewStateStatus
from .notifications import ChangeBus, ChangeEvent, ChangeTopic
from .policy import downstream_stages, known_views, matching_views
from .state_store import LookflowStateStore

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _find(doc: LookViewStates, view: str, stage: Stage) -> ViewState | None:
    for state in doc.states:
        if state.view == view and state.stage == stage:
            return state
    return None


@dataclass
class SourceImage:
    view: str
    source_url: str | None = None
    head_cropped_url: str | None = None
    head_crop_x: float | None = None
    digital_talent_id: str | None = None


@dataclass
class GeneratedOutput:
    view: str
    status: str
    is_selected: bool = False


@dataclass
class LookData:
    """Upstream pipeline records used to infer initial view states."""

    look_id: str
    source_images: list[SourceImage] = field(default_factory=list)
    outputs: list[GeneratedOutput] = field(default_factory=list)
    ai_apply_outputs: list[GeneratedOutput] = field(default_factory=list)


def _status_from_outputs(outputs: list[GeneratedOutput], *, selection_completes: bool) -> ViewStateStatus:
    if not outputs:
        return ViewStateStatus.NOT_STARTED
    statuses = {output.status for output in outputs}
    if statuses & {"generating", "pending"}:
        return ViewStateStatus.IN_PROGRESS
    if "failed" in statuses and "completed" not in statuses:
        return ViewStateStatus.FAILED
    if selection_completes and any(output.is_selected for output in outputs):
        return ViewStateStatus.COMPLETED
    if "completed" in statuses:
        return ViewStateStatus.COMPLETED
    return ViewStateStatus.IN_PROGRESS


def infer_view_status(stage: Stage, look: LookData, view: str) -> ViewStateStatus:
    """Derive a stage status for *view* from upstream pipeline records."""
    aliases = matching_views(view)
    source = next((img for img in look.source_images if img.view in aliases), None)

    if stage == Stage.UPLOAD:
        return ViewStateStatus.COMPLETED if source is not None and source.source_url else ViewStateStatus.NOT_STARTED
    if stage == Stage.CROP:
        cropped = source is not None and (source.head_crop_x is not None or bool(source.head_cropped_url))
        return ViewStateStatus.COMPLETED if cropped else ViewStateStatus.NOT_STARTED
    if stage == Stage.MATCH:
        if source is None or not source.head_cropped_url:
            return ViewStateStatus.NOT_STARTED
        return ViewStateStatus.COMPLETED if source.digital_talent_id else ViewStateStatus.NOT_STARTED
    if stage == Stage.GENERATE:
        return _status_from_outputs([o for o in look.outputs if o.view in aliases], selection_completes=False)
    if stage == Stage.REVIEW:
        selected = any(o.view in aliases and o.is_selected for o in look.outputs)
        return ViewStateStatus.COMPLETED if selected else ViewStateStatus.NOT_STARTED
    if stage == Stage.AI_APPLY:
        return _status_from_outputs([o for o in look.ai_apply_outputs if o.view in aliases], selection_completes=True)
    return ViewStateStatus.NOT_STARTED


class ViewStateService:
    """Guarded transitions over the per-look view-state documents.

    ``signed_off`` is only produced by ``sign_off_view``/``sign_off_look`` and
    only cleared by ``unlock_view``. Any other status may replace any other,
    so a completed view can be failed or reopened directly.
    """

    def __init__(
        self,
        store: LookflowStateStore,
        bus: ChangeBus | None = None,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.store = store
        self.bus = bus if bus is not None else ChangeBus()
        self.clock = clock

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_look_states(self, look_id: str) -> list[ViewState]:
        return list(self.store.read_look_states(look_id).states)

    def get_view_status(self, look_id: str, view: str, stage: Stage) -> ViewStateStatus:
        state = _find(self.store.read_look_states(look_id), view, Stage(stage))
        return state.status if state is not None else ViewStateStatus.NOT_STARTED

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _write(
        self,
        doc: LookViewStates,
        view: str,
        stage: Stage,
        status: ViewStateStatus,
        *,
        source: str,
        actor: str | None,
        now: datetime,
    ) -> ViewState:
        """Upsert one triple inside an open document. The caller holds the lock."""
        revision = doc.revision + 1
        existing = _find(doc, view, stage)
        if existing is None:
            existing = ViewState(look_id=doc.look_id, view=view, stage=stage, created_at=now, updated_at=now)
            doc.states.append(existing)
        existing.status = status
        existing.updated_at = now
        existing.completion_source = source
        existing.revision = revision
        if status in (ViewStateStatus.COMPLETED, ViewStateStatus.SIGNED_OFF):
            if existing.completed_at is None or status == ViewStateStatus.COMPLETED:
                existing.completed_at = now
            existing.completed_by = actor
        else:
            existing.completed_at = None
            existing.completed_by = None
        return existing.model_copy()

    def _publish(self, doc: LookViewStates, changed: list[ViewState]) -> None:
        if not changed:
            return
        self.bus.publish(
            ChangeEvent(
                topic=ChangeTopic.VIEW_STATE,
                scope_id=doc.look_id,
                revision=doc.revision,
                view_states=tuple(changed),
            )
        )

    # ------------------------------------------------------------------
    # Commands
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
        """Set the status of one triple.

        Raises:
            PreconditionNotMet: If *status* is ``signed_off`` or the stored
                record is ``signed_off``.
        """
        stage = Stage(stage)
        status = ViewStateStatus(status)
        if status == ViewStateStatus.SIGNED_OFF:
            raise PreconditionNotMet("signed_off can only be set through sign_off_view or sign_off_look")

        def _mutate(doc: LookViewStates) -> list[ViewState]:
            current = _find(doc, view, stage)
            if current is not None and current.status == ViewStateStatus.SIGNED_OFF:
                raise PreconditionNotMet(f"{look_id}/{view}/{stage.value} is signed off; unlock it first")
            return [self._write(doc, view, stage, status, source=source, actor=actor, now=self.clock())]

        doc, changed = self.store.update_look_states(look_id, _mutate)
        logger.info("View %s/%s/%s -> %s (source=%s)", look_id, view, stage.value, status.value, source)
        self._publish(doc, changed)
        return changed[0]

    def sign_off_view(self, look_id: str, view: str, stage: Stage, *, actor: str | None = None) -> ViewState:
        """Move one triple from ``completed`` to ``signed_off``.

        Raises:
            PreconditionNotMet: If the triple is not currently ``completed``.
        """
        stage = Stage(stage)

        def _mutate(doc: LookViewStates) -> list[ViewState]:
            current = _find(doc, view, stage)
            if current is None or current.status != ViewStateStatus.COMPLETED:
                found = current.status.value if current is not None else ViewStateStatus.NOT_STARTED.value
                raise PreconditionNotMet(f"cannot sign off {look_id}/{view}/{stage.value}: status is {found}")
            return [
                self._write(doc, view, stage, ViewStateStatus.SIGNED_OFF, source="sign_off", actor=actor, now=self.clock())
            ]

        doc, changed = self.store.update_look_states(look_id, _mutate)
        logger.info("Signed off %s/%s/%s", look_id, view, stage.value)
        self._publish(doc, changed)
        return changed[0]

    def unlock_view(
        self,
        look_id: str,
        view: str,
        stage: Stage,
        *,
        reset_downstream: bool = False,
        actor: str | None = None,
    ) -> ViewState:
        """Move one triple from ``signed_off`` back to ``completed``.

        Unlocking an already ``completed`` triple is a no-op. With
        ``reset_downstream`` the same view is reset to ``not_started`` on every
        later stage in the same write; signed-off downstream records are reset
        too.

        Raises:
            PreconditionNotMet: If the triple is neither signed off nor completed.
        """
        stage = Stage(stage)

        def _mutate(doc: LookViewStates) -> list[ViewState]:
            current = _find(doc, view, stage)
            if current is None or current.status not in (ViewStateStatus.SIGNED_OFF, ViewStateStatus.COMPLETED):
                found = current.status.value if current is not None else ViewStateStatus.NOT_STARTED.value
                raise PreconditionNotMet(f"cannot unlock {look_id}/{view}/{stage.value}: status is {found}")
            now = self.clock()
            changed: list[ViewState] = []
            if current.status == ViewStateStatus.SIGNED_OFF:
                changed.append(
                    self._write(doc, view, stage, ViewStateStatus.COMPLETED, source="unlock", actor=actor, now=now)
                )
            if reset_downstream:
                for later in downstream_stages(stage):
                    later_state = _find(doc, view, later)
                    if later_state is None or later_state.status == ViewStateStatus.NOT_STARTED:
                        continue
                    changed.append(
                        self._write(doc, view, later, ViewStateStatus.NOT_STARTED, source="system", actor=None, now=now)
                    )
            return changed

        doc, changed = self.store.update_look_states(look_id, _mutate)
        if changed:
            logger.info("Unlocked %s/%s/%s (%d records changed)", look_id, view, stage.value, len(changed))
        self._publish(doc, changed)
        return next(s for s in doc.states if s.view == view and s.stage == stage).model_copy()

    def sign_off_look(self, look_id: str, *, actor: str | None = None) -> list[ViewState]:
        """Sign off every view of a look on every stage in one write.

        Every known view must be ``completed`` (or already ``signed_off``) on
        every stage, otherwise nothing changes.

        Raises:
            PreconditionNotMet: If the look has no views or any triple is unfinished.
        """

        def _mutate(doc: LookViewStates) -> list[ViewState]:
            views = known_views(doc.states)
            if not views:
                raise PreconditionNotMet(f"look {look_id} has no view states to sign off")
            blocking: list[str] = []
            for view in views:
                for stage in STAGE_ORDER:
                    state = _find(doc, view, stage)
                    if state is None or state.status not in (ViewStateStatus.COMPLETED, ViewStateStatus.SIGNED_OFF):
                        blocking.append(f"{view}/{stage.value}")
            if blocking:
                raise PreconditionNotMet(f"look {look_id} is not complete: {', '.join(blocking)}")
            now = self.clock()
            return [
                self._write(doc, state.view, state.stage, ViewStateStatus.SIGNED_OFF, source="sign_off", actor=actor, now=now)
                for state in list(doc.states)
                if state.status == ViewStateStatus.COMPLETED
            ]

        doc, changed = self.store.update_look_states(look_id, _mutate)
        logger.info("Signed off look %s (%d records)", look_id, len(changed))
        self._publish(doc, changed)
        return changed

    def sync_inferred_states(self, look: LookData, *, views: list[str] | None = None) -> list[ViewState]:
        """Insert inferred states for triples that have no record yet.

        Existing records are never overwritten. Views default to the views of
        the look's source images.

        Returns:
            The newly inserted records.
        """
        if views is None:
            views = list(dict.fromkeys(img.view for img in look.source_images))
        inferred: dict[tuple[str, Stage], ViewStateStatus] = {
            (view, stage): infer_view_status(stage, look, view) for view in views for stage in STAGE_ORDER
        }

        def _mutate(doc: LookViewStates) -> list[ViewState]:
            now = self.clock()
            return [
                self._write(doc, view, stage, status, source="system_sync", actor=None, now=now)
                for (view, stage), status in inferred.items()
                if _find(doc, view, stage) is None
            ]

        doc, inserted = self.store.update_look_states(look.look_id, _mutate)
        if inserted:
            logger.info("Synced %d inferred view states for look %s", len(inserted), look.look_id)
        self._publish(doc, inserted)
        return inserted
