from __future__ import annotations

from typing import Mapping, Protocol, Sequence, TypeVar

from .models import FilterMode, Stage, ViewState
from .policy import needs_action_for_stage


class HasLookId(Protocol):
    @property
    def look_id(self) -> str: ...


LookT = TypeVar("LookT", bound=HasLookId)


def filter_looks_by_stage(
    looks: Sequence[LookT],
    states_by_look: Mapping[str, Sequence[ViewState]],
    stage: Stage,
) -> tuple[list[LookT], list[LookT]]:
    """Split *looks* into (needs_action, completed), keeping input order in each part."""
    needs_action: list[LookT] = []
    completed: list[LookT] = []
    for look in looks:
        if needs_action_for_stage(states_by_look.get(look.look_id, ()), stage):
            needs_action.append(look)
        else:
            completed.append(look)
    return needs_action, completed


def get_display_looks(
    looks: Sequence[LookT],
    states_by_look: Mapping[str, Sequence[ViewState]],
    stage: Stage,
    mode: FilterMode,
) -> list[LookT]:
    needs_action, completed = filter_looks_by_stage(looks, states_by_look, stage)
    if FilterMode(mode) == FilterMode.NEEDS_ACTION:
        return needs_action
    return needs_action + completed
