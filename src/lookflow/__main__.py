"""Entry point for `python -m lookflow` and the `lookflow` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
import os
import time
from pathlib import Path

from lookflow.errors import LookflowError
from lookflow.models import FilterMode, Stage
from lookflow.service import WorkflowService
from lookflow.settings import RuntimeSettings

LOG_LEVEL_CHOICES = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inspect and drive look workflow state and run queues")
    parser.add_argument(
        "--state-store-root",
        type=Path,
        default=None,
        help="Directory holding the state store (default: LOOKFLOW_STATE_STORE_ROOT or ./state_store)",
    )
    parser.add_argument("--log-level", default="INFO", choices=LOG_LEVEL_CHOICES, help="Logging verbosity")
    sub = parser.add_subparsers(dest="command", required=True)

    summary = sub.add_parser("summary", help="Print the stage summary of a look")
    summary.add_argument("look_id")

    looks = sub.add_parser("looks", help="List looks for a stage, needs-action first")
    looks.add_argument("--stage", required=True, choices=[stage.value for stage in Stage])
    looks.add_argument("--mode", default=FilterMode.NEEDS_ACTION.value, choices=[mode.value for mode in FilterMode])
    looks.add_argument("--project-id", default=None)

    sign_off = sub.add_parser("sign-off-look", help="Sign off every view of a look on every stage")
    sign_off.add_argument("look_id")
    sign_off.add_argument("--actor", default=None)

    unlock = sub.add_parser("unlock", help="Unlock a signed-off view")
    unlock.add_argument("look_id")
    unlock.add_argument("view")
    unlock.add_argument("stage", choices=[stage.value for stage in Stage])
    unlock.add_argument("--reset-downstream", action="store_true", help="Reset the view on every later stage")
    unlock.add_argument("--actor", default=None)

    enqueue = sub.add_parser("enqueue", help="Queue generation runs for looks in a batch")
    enqueue.add_argument("batch_id")
    enqueue.add_argument("look_ids", nargs="+")
    enqueue.add_argument("--runs-per-look", type=int, default=1)
    enqueue.add_argument("--model", default=None, help="Override the default generation model")
    enqueue.add_argument("--brand-id", default=None)

    requeue = sub.add_parser("requeue", help="Requeue a stalled run")
    requeue.add_argument("run_id")
    requeue.add_argument("--max-attempts", type=int, default=None)

    cancel = sub.add_parser("cancel", help="Cancel a queued run")
    cancel.add_argument("run_id")

    stats = sub.add_parser("stats", help="Print run counts per status for a batch")
    stats.add_argument("batch_id")

    monitor = sub.add_parser("monitor", help="Detect stalled runs and requeue them")
    monitor.add_argument("--once", action="store_true", help="Run a single pass and exit")
    monitor.add_argument("--no-requeue", action="store_true", help="Only mark runs as stalled")
    return parser


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _monitor_pass(service: WorkflowService, *, requeue: bool) -> int:
    stalled = service.runs.detect_stalled()
    for run in stalled:
        if requeue:
            run = service.requeue_stalled_run(run.run_id, max_attempts=service.settings.max_run_attempts)
        print(f"{run.run_id} {run.status.value}")
    return len(stalled)


def run_command(service: WorkflowService, args: argparse.Namespace) -> int:
    command = args.command
    if command == "summary":
        _print_json(service.get_look_summary(args.look_id).model_dump(mode="json"))
    elif command == "looks":
        for look in service.get_filtered_looks(Stage(args.stage), FilterMode(args.mode), project_id=args.project_id):
            print(f"{look.look_id}\t{look.name}")
    elif command == "sign-off-look":
        signed = service.sign_off_look(args.look_id, actor=args.actor)
        print(f"signed_off={len(signed)}")
    elif command == "unlock":
        state = service.unlock_view(
            args.look_id, args.view, Stage(args.stage), reset_downstream=args.reset_downstream, actor=args.actor
        )
        print(f"{state.view}/{state.stage.value}={state.status.value}")
    elif command == "enqueue":
        overrides = {"brand_id": args.brand_id}
        if args.model is not None:
            overrides["model"] = args.model
        runs = service.enqueue_runs(
            args.batch_id,
            args.look_ids,
            config=service.default_run_config(**overrides),
            runs_per_look=args.runs_per_look,
            brand_id=args.brand_id,
        )
        for run in runs:
            print(f"{run.run_id} {run.look_id} #{run.run_index}")
    elif command == "requeue":
        run = service.requeue_stalled_run(args.run_id, max_attempts=args.max_attempts)
        print(f"{run.run_id} {run.status.value}")
    elif command == "cancel":
        run = service.cancel_queued_run(args.run_id)
        print(f"{run.run_id} {run.status.value}")
    elif command == "stats":
        stats = service.runs.batch_stats(args.batch_id)
        _print_json({**stats.model_dump(mode="json"), "total": stats.total})
    elif command == "monitor":
        requeue = not args.no_requeue
        if args.once:
            _monitor_pass(service, requeue=requeue)
            return 0
        while True:
            _monitor_pass(service, requeue=requeue)
            time.sleep(service.settings.monitor_interval_seconds)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.state_store_root is not None:
        os.environ["LOOKFLOW_STATE_STORE_ROOT"] = str(args.state_store_root.resolve())

    try:
        settings = RuntimeSettings.from_env()
        service = WorkflowService.from_settings(settings)
    except (OSError, ValueError) as exc:
        logging.error("Unable to load settings: %s", exc)
        return 1

    try:
        return run_command(service, args)
    except KeyboardInterrupt:
        return 0
    except (LookflowError, KeyError, ValueError) as exc:
        logging.error("%s failed: %s", args.command, exc)
        return 1
    finally:
        service.close()


if __name__ == "__main__":
    raise SystemExit(main())
