from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from lookflow.models import Stage, ViewState, ViewStateStatus
from lookflow.state_store import LookflowStateStore


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start if start is not None else datetime(2025, 1, 6, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path: Path) -> LookflowStateStore:
    return LookflowStateStore(tmp_path / "state_store", retry_backoff_seconds=0.0)


def make_state(
    view: str,
    stage: Stage,
    status: ViewStateStatus,
    *,
    look_id: str = "look-1",
    revision: int = 1,
) -> ViewState:
    now = datetime(2025, 1, 6, 9, 0, tzinfo=UTC)
    return ViewState(
        look_id=look_id,
        view=view,
        stage=stage,
        status=status,
        created_at=now,
        updated_at=now,
        revision=revision,
    )
