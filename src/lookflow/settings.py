from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_store_root: str = "state_store"
    run_concurrency: int = 3
    stall_threshold_seconds: int = 300
    heartbeat_interval_seconds: int = 30
    monitor_interval_seconds: int = 60
    dispatch_interval_seconds: int = 5
    store_retry_attempts: int = 3
    max_run_attempts: int = 3
    default_model: str = "google/gemini-3-pro-image-preview"
    apply_attempts_per_view: int = 4
    apply_model: str = "google/gemini-2.5-flash-image-preview"

    @classmethod
    def from_env(cls, *, env_file: Path | None = None) -> "RuntimeSettings":
        """Build settings from ``LOOKFLOW_*`` variables.

        A ``.env`` file (``env_file`` or ``./.env``) is loaded first without
        overriding variables already present in the environment.
        """
        dotenv_path = env_file if env_file is not None else Path.cwd() / ".env"
        if dotenv_path.is_file():
            load_dotenv(dotenv_path, override=False)
        return cls(
            state_store_root=os.getenv("LOOKFLOW_STATE_STORE_ROOT", "state_store"),
            run_concurrency=_get_env_int("LOOKFLOW_RUN_CONCURRENCY", default=3, minimum=1, maximum=64),
            stall_threshold_seconds=_get_env_int("LOOKFLOW_STALL_THRESHOLD_SECONDS", default=300, minimum=10),
            heartbeat_interval_seconds=_get_env_int("LOOKFLOW_HEARTBEAT_INTERVAL_SECONDS", default=30, minimum=1),
            monitor_interval_seconds=_get_env_int("LOOKFLOW_MONITOR_INTERVAL_SECONDS", default=60, minimum=1),
            dispatch_interval_seconds=_get_env_int("LOOKFLOW_DISPATCH_INTERVAL_SECONDS", default=5, minimum=1),
            store_retry_attempts=_get_env_int("LOOKFLOW_STORE_RETRY_ATTEMPTS", default=3, minimum=1, maximum=20),
            max_run_attempts=_get_env_int("LOOKFLOW_MAX_RUN_ATTEMPTS", default=3, minimum=1, maximum=100),
            default_model=os.getenv("LOOKFLOW_DEFAULT_MODEL", "google/gemini-3-pro-image-preview"),
            apply_attempts_per_view=_get_env_int("LOOKFLOW_APPLY_ATTEMPTS_PER_VIEW", default=4, minimum=1, maximum=50),
            apply_model=os.getenv("LOOKFLOW_APPLY_MODEL", "google/gemini-2.5-flash-image-preview"),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        if not self.state_store_root.strip():
            raise ValueError("LOOKFLOW_STATE_STORE_ROOT must be non-empty")
        default_model = self.default_model.strip()
        if not default_model:
            raise ValueError("LOOKFLOW_DEFAULT_MODEL must be non-empty")
        apply_model = self.apply_model.strip()
        if not apply_model:
            raise ValueError("LOOKFLOW_APPLY_MODEL must be non-empty")

        # A heartbeat slower than the stall threshold would stall every healthy run.
        if self.heartbeat_interval_seconds >= self.stall_threshold_seconds:
            raise ValueError(
                "LOOKFLOW_HEARTBEAT_INTERVAL_SECONDS must be < LOOKFLOW_STALL_THRESHOLD_SECONDS, got: "
                f"{self.heartbeat_interval_seconds} >= {self.stall_threshold_seconds}"
            )
        return RuntimeSettings(
            state_store_root=self.state_store_root,
            run_concurrency=self.run_concurrency,
            stall_threshold_seconds=self.stall_threshold_seconds,
            heartbeat_interval_seconds=self.heartbeat_interval_seconds,
            monitor_interval_seconds=self.monitor_interval_seconds,
            dispatch_interval_seconds=self.dispatch_interval_seconds,
            store_retry_attempts=self.store_retry_attempts,
            max_run_attempts=self.max_run_attempts,
            default_model=default_model,
            apply_attempts_per_view=self.apply_attempts_per_view,
            apply_model=apply_model,
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
