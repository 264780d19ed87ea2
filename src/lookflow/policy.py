"""Completion rules: when does a look still need action on a stage."""

from __future__ import annotations

from typing import Iterable

from .models import DONE_STATUSES, STAGE_ORDER, Stage, ViewState, ViewStateStatus

# Only front-equivalent and back views are cropped. Looks holding nothing but
# side/detail views have nothing to crop.
REQUIRED_CROP_VIEWS: frozenset[str] = frozenset({"front", "full_front", "back"})

DEFAULT_VIEWS: tuple[str, ...] = ("front", "back", "side", "detail")

# Legacy 3-view names and the newer 4-view names refer to the same source shots.
VIEW_ALIASES: dict[str, tuple[str, ...]] = {
    "full_front": ("full_front", "front"),
    "cropped_front": ("cropped_front", "side"),
    "front": ("front", "full_front"),
    "back": ("back",),
    "side": ("side", "cropped_front"),
    "detail": ("detail",),
}


def matching_views(view: str) -> tuple[str, ...]:
    return VIEW_ALIASES.get(view, (view,))


def known_views(states: Iterable[ViewState]) -> list[str]:
    """Distinct views across all stages, in first-seen order."""
    seen: dict[str, None] = {}
    for state in states:
        seen.setdefault(state.view, None)
    return list(seen)


def relevant_views(views: Iterable[str], stage: Stage) -> list[str]:
    if stage == Stage.CROP:
        return [view for view in views if view in REQUIRED_CROP_VIEWS]
    return list(views)


def view_needs_action(status: ViewStateStatus | None) -> bool:
    return status is None or status not in DONE_STATUSES


def needs_action_for_stage(states: Iterable[ViewState], stage: Stage) -> bool:
    """Return True if the look is not yet complete on *stage*.

    A look with no known views needs action. Otherwise every relevant view
    must have a completed or signed-off record for the stage.
    """
    states = list(states)
    views = known_views(states)
    if not views:
        return True
    by_view = {state.view: state.status for state in states if state.stage == stage}
    return any(view_needs_action(by_view.get(view)) for view in relevant_views(views, stage))


def downstream_stages(stage: Stage) -> list[Stage]:
    """Stages after *stage* in pipeline order."""
    index = STAGE_ORDER.index(Stage(stage))
    return list(STAGE_ORDER[index + 1 :])


def is_gate_stage(stage: Stage) -> bool:
    """The review stage is where looks are signed off before hand-off."""
    return stage == Stage.REVIEW
