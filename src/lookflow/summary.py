from __future__ import annotations

import logging
import threading
from typing import Callable, Iterable

from .models import (
    DONE_STATUSES,
    STAGE_ORDER,
    LookSummary,
    LookViewStates,
    Stage,
    StageStatus,
    StageSummary,
    ViewState,
    ViewStateStatus,
)
from .notifications import ChangeEvent, ChangeTopic
from .policy import known_views

logger = logging.getLogger(__name__)


def build_stage_summary(states: Iterable[ViewState], stage: Stage, views: list[str]) -> StageSummary:
    """Summarize one stage of one look over *views*."""
    by_view = {state.view: state.status for state in states if state.stage == stage}
    total = len(views)
    completed = sum(1 for view in views if by_view.get(view) in DONE_STATUSES)
    signed = sum(1 for view in views if by_view.get(view) == ViewStateStatus.SIGNED_OFF)

    if completed == 0:
        status = StageStatus.NOT_STARTED
    elif signed == total:
        status = StageStatus.SIGNED_OFF
    elif completed == total:
        status = StageStatus.COMPLETE
    else:
        status = StageStatus.PARTIAL
    return StageSummary(total_views=total, completed_views=completed, needs_action=total - completed, status=status)


def build_look_summary(
    look_id: str,
    states: Iterable[ViewState],
    *,
    look_name: str = "",
    revision: int = 0,
) -> LookSummary:
    """Fold a look's view states into per-stage and overall progress.

    Runs in O(views of the look); it never touches other looks.
    """
    states = list(states)
    views = known_views(states)
    by_stage = {stage: build_stage_summary(states, stage, views) for stage in STAGE_ORDER}

    slots = len(views) * len(STAGE_ORDER)
    done = sum(summary.completed_views for summary in by_stage.values())
    # Half-up: 12.5 -> 13.
    overall = int(done * 100 / slots + 0.5) if slots else 0
    fully_signed = bool(views) and all(summary.status == StageStatus.SIGNED_OFF for summary in by_stage.values())
    return LookSummary(
        look_id=look_id,
        look_name=look_name,
        by_stage=by_stage,
        overall_progress=max(0, min(100, overall)),
        is_fully_signed=fully_signed,
        revision=revision,
    )


class LookSummaryAggregator:
    """Keeps a summary per look up to date from view-state change events.

    Each event carries the changed states; a state is applied only when its
    revision is newer than the one held for the same (view, stage), so
    repeated or reordered deliveries converge on the latest write.

    An event only carries the records it changed, so a look is folded from
    events only after its full document has been loaded. With a *loader* the
    first event for an untracked look loads the document; without one such
    events are ignored until ``load`` is called.
    """

    def __init__(self, loader: Callable[[str], LookViewStates] | None = None) -> None:
        self._loader = loader
        self._lock = threading.Lock()
        self._states: dict[str, dict[tuple[str, Stage], ViewState]] = {}
        self._names: dict[str, str] = {}
        self._revisions: dict[str, int] = {}
        self._summaries: dict[str, LookSummary] = {}

    def set_look_name(self, look_id: str, name: str) -> None:
        with self._lock:
            self._names[look_id] = name
            if look_id in self._summaries:
                self._recompute(look_id)

    def tracks(self, look_id: str) -> bool:
        with self._lock:
            return look_id in self._states

    def load(self, doc: LookViewStates) -> LookSummary:
        """Merge a freshly read document into what is held for a look.

        Records already held at a newer revision are kept, so an event folded
        while the document was being read is not lost.
        """
        with self._lock:
            self._merge(doc.look_id, doc.states)
            if doc.revision > self._revisions.get(doc.look_id, -1):
                self._revisions[doc.look_id] = doc.revision
            return self._recompute(doc.look_id)

    def _merge(self, look_id: str, states: Iterable[ViewState]) -> bool:
        held = self._states.setdefault(look_id, {})
        changed = False
        for state in states:
            key = (state.view, state.stage)
            current = held.get(key)
            if current is not None and current.revision >= state.revision:
                continue
            held[key] = state
            changed = True
        return changed

    def apply(self, event: ChangeEvent) -> LookSummary | None:
        """Apply a view-state event; returns the new summary, or None if nothing changed."""
        if event.topic != ChangeTopic.VIEW_STATE:
            return None
        loaded = False
        if not self.tracks(event.scope_id):
            if self._loader is None:
                logger.debug("Ignored event for untracked look %s", event.scope_id)
                return None
            self.load(self._loader(event.scope_id))
            loaded = True
        with self._lock:
            changed = self._merge(event.scope_id, event.view_states)
            if event.revision > self._revisions.get(event.scope_id, -1):
                self._revisions[event.scope_id] = event.revision
            if not changed and not loaded:
                logger.debug("Ignored stale event for look %s at revision %d", event.scope_id, event.revision)
                return None
            return self._recompute(event.scope_id)

    def _recompute(self, look_id: str) -> LookSummary:
        summary = build_look_summary(
            look_id,
            self._states.get(look_id, {}).values(),
            look_name=self._names.get(look_id, ""),
            revision=self._revisions.get(look_id, 0),
        )
        self._summaries[look_id] = summary
        return summary

    def summary(self, look_id: str) -> LookSummary | None:
        with self._lock:
            return self._summaries.get(look_id)

    def summaries(self) -> dict[str, LookSummary]:
        with self._lock:
            return dict(self._summaries)

    def states(self, look_id: str) -> list[ViewState]:
        with self._lock:
            return list(self._states.get(look_id, {}).values())

    def stage_totals(self, stage: Stage) -> dict[str, int]:
        """Needs-action, total and complete view counts for *stage* across tracked looks."""
        needs_action = total = complete = 0
        with self._lock:
            for summary in self._summaries.values():
                stage_summary = summary.by_stage[stage]
                total += stage_summary.total_views
                complete += stage_summary.completed_views
                needs_action += stage_summary.needs_action
        return {"needs_action": needs_action, "total": total, "complete": complete}
