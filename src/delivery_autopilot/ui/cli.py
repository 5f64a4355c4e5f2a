"""Command-line interface router for delivery-autopilot."""

from __future__ import annotations

import argparse
import json
import shlex
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

from delivery_autopilot.config import (
    ConfigLoadError,
    ConfigValidationError,
    RuntimeSettings,
    dump_effective_config,
    load_config,
)
from delivery_autopilot.control_plane.driver import (
    CampaignAlreadyRunningError,
    CampaignDriver,
    CampaignStatus,
    ModelRoute,
)
from delivery_autopilot.control_plane.increment import CommandDeliveryIncrement
from delivery_autopilot.control_plane.instructions import derive_goal
from delivery_autopilot.control_plane.signals import BlockingSignalCollector
from delivery_autopilot.control_plane.stale_state import sweep_stale_states
from delivery_autopilot.control_plane.telemetry import CampaignTelemetry
from delivery_autopilot.locking.project_index import ProjectIndex, ProjectNotFoundError
from delivery_autopilot.locking.workspace_lock import (
    FileWorkspaceLock,
    LockContentionError,
    ThreadWorkspaceLock,
    WorkspaceLock,
)
from delivery_autopilot.observability import (
    LoggingConfig,
    correlation_scope,
    setup_structured_logging,
    shutdown_logging,
)
from delivery_autopilot.pipeline.checkpoint import CheckpointStore
from delivery_autopilot.pipeline.stages import (
    STAGE_ORDER,
    StageLedgerStore,
    can_enter,
    parse_stage,
    stage_rank,
)
from delivery_autopilot.providers.availability import ModelAvailabilityCache
from delivery_autopilot.providers.diagnostics import ProviderIssueClassifier
from delivery_autopilot.ui.render import CLIRenderer, create_renderer


_PROJECT_STATUS_BY_RESULT: Final[dict[CampaignStatus, str]] = {
    CampaignStatus.SUCCEEDED: "completed",
    CampaignStatus.STOPPED: "stopped",
    CampaignStatus.CRASHED: "crashed",
}
_CRASHED_PROJECT_STATUS: Final[str] = _PROJECT_STATUS_BY_RESULT[CampaignStatus.CRASHED]


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="autopilot",
        description=(
            "delivery-autopilot — drive a project through the delivery pipeline.\n\n"
            "Common workflows:\n"
            "  autopilot projects add demo\n"
            "  autopilot campaign run demo --command './deliver.sh'\n"
            "  autopilot campaign status demo\n"
            "  autopilot sweep\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to autopilot TOML config (default: ./autopilot.toml if present).",
    )
    common.add_argument(
        "--workspace-root",
        default=None,
        help="Override paths.workspace_root.",
    )
    common.add_argument("--json", action="store_true", default=False, help="Emit JSON output.")
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # campaign ------------------------------------------------------------
    campaign_parser = subparsers.add_parser("campaign", help="Run or inspect campaigns")
    campaign_sub = campaign_parser.add_subparsers(dest="campaign_command", required=True)

    run_parser = campaign_sub.add_parser(
        "run",
        parents=[common],
        help="Run a campaign until the target stage passes or the policy stops it",
    )
    run_parser.add_argument("project", help="Project name in the workspace index.")
    run_parser.add_argument(
        "--command",
        dest="increment_command",
        required=True,
        help="Delivery increment command line, run once per cycle.",
    )
    run_parser.add_argument("--timeout-seconds", type=float, default=None)
    run_parser.add_argument("--goal", default="", help="Product objective anchoring instructions.")
    run_parser.add_argument("--instructions", default="", help="Base instructions per cycle.")
    run_parser.add_argument("--max-cycles", type=int, default=None)
    run_parser.add_argument("--min-runtime-minutes", type=int, default=None)
    run_parser.add_argument("--sleep-seconds", type=int, default=None)
    run_parser.add_argument("--stall-cycles", type=int, default=None)
    run_parser.add_argument("--target-stage", default=None)
    run_parser.add_argument(
        "--no-autonomous",
        dest="autonomous",
        action="store_const",
        const=False,
        default=None,
        help="Record recovery tiers without applying recovery instructions.",
    )
    run_parser.add_argument(
        "--register",
        action="store_true",
        default=False,
        help="Register the project in the workspace index when missing.",
    )
    run_parser.set_defaults(handler=_cmd_campaign_run)

    status_parser = campaign_sub.add_parser(
        "status", parents=[common], help="Show the persisted campaign state"
    )
    status_parser.add_argument("project")
    status_parser.add_argument("--journal", type=int, default=0, help="Show last N journal events.")
    status_parser.set_defaults(handler=_cmd_campaign_status)

    # stage ---------------------------------------------------------------
    stage_parser = subparsers.add_parser("stage", help="Inspect the stage ledger")
    stage_sub = stage_parser.add_subparsers(dest="stage_command", required=True)
    stage_show = stage_sub.add_parser("show", parents=[common], help="Show stage states")
    stage_show.add_argument("project")
    stage_show.set_defaults(handler=_cmd_stage_show)
    stage_check = stage_sub.add_parser(
        "check", parents=[common], help="Check whether a stage may be entered"
    )
    stage_check.add_argument("project")
    stage_check.add_argument("stage")
    stage_check.set_defaults(handler=_cmd_stage_check)

    # checkpoint ----------------------------------------------------------
    checkpoint_parser = subparsers.add_parser("checkpoint", help="Inspect resume checkpoints")
    checkpoint_sub = checkpoint_parser.add_subparsers(dest="checkpoint_command", required=True)
    checkpoint_show = checkpoint_sub.add_parser("show", parents=[common])
    checkpoint_show.add_argument("project")
    checkpoint_show.set_defaults(handler=_cmd_checkpoint_show)
    checkpoint_resume = checkpoint_sub.add_parser(
        "resume", parents=[common], help="Resolve the resume step (clears stale checkpoints)"
    )
    checkpoint_resume.add_argument("project")
    checkpoint_resume.set_defaults(handler=_cmd_checkpoint_resume)

    # signals -------------------------------------------------------------
    signals_parser = subparsers.add_parser(
        "signals", parents=[common], help="Show blocking signals for a project"
    )
    signals_parser.add_argument("project")
    signals_parser.set_defaults(handler=_cmd_signals)

    # providers -----------------------------------------------------------
    providers_parser = subparsers.add_parser("providers", help="Provider availability and issues")
    providers_sub = providers_parser.add_subparsers(dest="providers_command", required=True)
    availability_parser = providers_sub.add_parser("availability", parents=[common])
    availability_parser.add_argument("--provider", default=None)
    availability_parser.add_argument(
        "--sweep", action="store_true", default=False, help="Drop expired entries first."
    )
    availability_parser.set_defaults(handler=_cmd_providers_availability)
    issue_parser = providers_sub.add_parser(
        "issue", parents=[common], help="Classify recent provider call outcomes"
    )
    issue_parser.add_argument("project")
    issue_parser.set_defaults(handler=_cmd_providers_issue)

    # projects ------------------------------------------------------------
    projects_parser = subparsers.add_parser("projects", help="Workspace project index")
    projects_sub = projects_parser.add_subparsers(dest="projects_command", required=True)
    projects_list = projects_sub.add_parser("list", parents=[common])
    projects_list.set_defaults(handler=_cmd_projects_list)
    projects_add = projects_sub.add_parser("add", parents=[common])
    projects_add.add_argument("name")
    projects_add.add_argument("--domain", default="software")
    projects_add.set_defaults(handler=_cmd_projects_add)

    # sweep ---------------------------------------------------------------
    sweep_parser = subparsers.add_parser(
        "sweep", parents=[common], help="Clear campaign states orphaned by dead processes"
    )
    sweep_parser.set_defaults(handler=_cmd_sweep)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config", parents=[common], help="Show effective configuration"
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    except (LockContentionError, CampaignAlreadyRunningError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 3
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_campaign_run(args: argparse.Namespace) -> int:
    overrides: dict[str, object] = {
        "campaign.max_cycles": args.max_cycles,
        "campaign.min_runtime_minutes": args.min_runtime_minutes,
        "campaign.sleep_seconds": args.sleep_seconds,
        "campaign.stall_cycles": args.stall_cycles,
        "campaign.target_stage": args.target_stage,
        "campaign.autonomous": args.autonomous,
    }
    settings = _load_settings(args, overrides)
    command = shlex.split(args.increment_command)
    if not command:
        raise CLIError("--command must not be empty", exit_code=2)

    lock = _build_lock(settings)
    index = ProjectIndex(settings.workspace_root, lock=lock)
    if args.register:
        index.register_project(args.project)
    project_root = _require_project(index, args.project)

    started = datetime.now(tz=UTC)
    run_id = f"{index.project_root(args.project).name}-{started.strftime('%Y%m%dT%H%M%SZ')}"
    handle = setup_structured_logging(
        LoggingConfig(
            run_id=run_id,
            base_log_dir=settings.log_dir,
            level=settings.log_level,
            log_format=settings.log_format,
            log_to_stderr=settings.log_to_stderr,
            redact_secrets=settings.redact_secrets,
        )
    )
    try:
        with correlation_scope(run_id=run_id, campaign_id=run_id, project=args.project):
            sweep_stale_states(settings.workspace_root, lock=lock)
            availability = ModelAvailabilityCache(settings.workspace_root, lock=lock)
            availability.sweep_expired()
            index.update_status(args.project, "in-progress")
            driver = CampaignDriver(
                project=args.project,
                project_root=project_root,
                workspace_root=settings.workspace_root,
                increment=CommandDeliveryIncrement(command, timeout_seconds=args.timeout_seconds),
                policy=settings.policy,
                goal=derive_goal(args.goal or args.instructions),
                base_instructions=args.instructions,
                route=ModelRoute(provider=settings.provider, models=settings.models),
                unavailable_fallback_ms=settings.unavailable_fallback_ms,
                classifier=ProviderIssueClassifier(window_minutes=settings.signal_window_minutes),
                availability=availability,
                lock=lock,
            )
            try:
                result = driver.run()
            except CampaignAlreadyRunningError:
                raise
            except Exception:
                index.update_status(args.project, _CRASHED_PROJECT_STATUS)
                raise
            index.update_status(args.project, _PROJECT_STATUS_BY_RESULT[result.status])
    finally:
        shutdown_logging(handle)

    if args.json:
        _emit_json({"command": "campaign.run", "project": args.project, **result.to_dict()})
    else:
        renderer = _get_renderer(args)
        renderer.status("Status", result.status.value)
        renderer.kv("Cycles", result.cycles)
        renderer.kv("Stage rank", f"{result.stage_rank}/{len(STAGE_ORDER)}")
        renderer.kv("Recovery tier", result.recovery_tier.value)
        renderer.kv("Phase", result.phase)
        renderer.kv("Log", handle.log_path)
    return 0 if result.status is CampaignStatus.SUCCEEDED else 1


def _cmd_campaign_status(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    project_root = _require_project(_index(settings), args.project)
    telemetry = CampaignTelemetry()
    state = telemetry.read_state(project_root)
    journal = telemetry.read_journal(project_root, limit=args.journal) if args.journal > 0 else []

    if args.json:
        _emit_json(
            {
                "command": "campaign.status",
                "project": args.project,
                "state": state.to_dict() if state is not None else None,
                "journal": journal,
            }
        )
        return 0

    renderer = _get_renderer(args)
    if state is None:
        renderer.text(f"No campaign state for {args.project}")
        return 0
    renderer.kv("Project", args.project)
    renderer.kv("Running", state.running)
    renderer.kv("Phase", state.phase)
    renderer.kv("Cycle", state.cycle)
    renderer.kv("Elapsed minutes", state.elapsed_minutes)
    renderer.kv("Target", f"{state.target_stage} (passed={state.target_passed})")
    renderer.kv("Stall count", state.stall_count)
    renderer.kv("Failure streak", state.failure_streak)
    renderer.kv("Recovery tier", state.recovery_tier)
    if state.model:
        renderer.kv("Model", state.model)
    if state.last_error:
        renderer.kv("Last error", state.last_error)
    if journal:
        renderer.section("Journal:")
        renderer.items(
            [f"{item.get('at')} {item.get('event')} {item.get('details')}" for item in journal]
        )
    return 0


def _cmd_stage_show(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    project_root = _require_project(_index(settings), args.project)
    ledger = StageLedgerStore().load(project_root)
    if args.json:
        _emit_json(
            {
                "command": "stage.show",
                "project": args.project,
                "rank": stage_rank(ledger),
                "ledger": ledger.to_dict(),
            }
        )
        return 0
    renderer = _get_renderer(args)
    for stage in STAGE_ORDER:
        renderer.status(stage.value, ledger.state_of(stage).value)
    renderer.kv("Rank", f"{stage_rank(ledger)}/{len(STAGE_ORDER)}")
    return 0


def _cmd_stage_check(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    stage = parse_stage(args.stage)
    if stage is None:
        known = ", ".join(item.value for item in STAGE_ORDER)
        raise CLIError(f"unknown stage {args.stage!r}; expected one of: {known}", exit_code=2)
    project_root = _require_project(_index(settings), args.project)
    decision = can_enter(StageLedgerStore().load(project_root), stage)
    if args.json:
        _emit_json(
            {
                "command": "stage.check",
                "project": args.project,
                "stage": stage.value,
                "ok": decision.ok,
                "reason": decision.reason,
                "blocking_stage": (
                    decision.blocking_stage.value if decision.blocking_stage else None
                ),
            }
        )
    else:
        renderer = _get_renderer(args)
        renderer.text(f"{stage.value}: ok" if decision.ok else f"{stage.value}: {decision.reason}")
    return 0 if decision.ok else 1


def _cmd_checkpoint_show(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    project_root = _require_project(_index(settings), args.project)
    checkpoint = CheckpointStore().load(project_root)
    if args.json:
        _emit_json(
            {
                "command": "checkpoint.show",
                "project": args.project,
                "checkpoint": checkpoint.to_dict() if checkpoint is not None else None,
            }
        )
        return 0
    renderer = _get_renderer(args)
    if checkpoint is None:
        renderer.text(f"No checkpoint for {args.project}")
        return 0
    renderer.kv("Requirement", checkpoint.requirement_id)
    renderer.kv("Last completed", checkpoint.last_completed.value)
    renderer.kv("Updated", checkpoint.updated_at or "(unknown)")
    return 0


def _cmd_checkpoint_resume(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    project_root = _require_project(_index(settings), args.project)
    step = CheckpointStore().choose_resume_step(project_root)
    if args.json:
        _emit_json(
            {
                "command": "checkpoint.resume",
                "project": args.project,
                "resume_step": step.value if step is not None else None,
            }
        )
        return 0
    _get_renderer(args).kv("Resume step", step.value if step is not None else "(fresh start)")
    return 0


def _cmd_signals(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    project_root = _require_project(_index(settings), args.project)
    signals = BlockingSignalCollector().collect(project_root)
    if args.json:
        _emit_json({"command": "signals", "project": args.project, **signals.to_dict()})
        return 0
    renderer = _get_renderer(args)
    renderer.kv("Blocking", signals.blocking)
    renderer.kv("Lifecycle failures", signals.lifecycle_fail_count)
    if signals.blockers:
        renderer.section("Blockers:")
        renderer.items(list(signals.blockers))
    return 0


def _cmd_providers_availability(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    provider = args.provider or settings.provider
    cache = ModelAvailabilityCache(settings.workspace_root, lock=_build_lock(settings))
    removed = cache.sweep_expired() if args.sweep else 0
    unavailable = cache.list_unavailable(provider)
    next_ms = cache.next_availability_ms(provider)
    if args.json:
        _emit_json(
            {
                "command": "providers.availability",
                "provider": provider,
                "unavailable": unavailable,
                "next_availability_ms": next_ms,
                "swept": removed,
            }
        )
        return 0
    renderer = _get_renderer(args)
    renderer.kv("Provider", provider)
    if args.sweep:
        renderer.kv("Expired entries removed", removed)
    if not unavailable:
        renderer.text("All models available")
        return 0
    renderer.section("Unavailable models:")
    renderer.items(unavailable)
    if next_ms is not None:
        renderer.kv("Next availability", datetime.fromtimestamp(next_ms / 1000, tz=UTC).isoformat())
    return 0


def _cmd_providers_issue(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    project_root = _require_project(_index(settings), args.project)
    classifier = ProviderIssueClassifier(window_minutes=settings.signal_window_minutes)
    issue = classifier.classify(project_root)
    hint = classifier.quota_reset_hint(project_root)
    if args.json:
        _emit_json(
            {
                "command": "providers.issue",
                "project": args.project,
                "issue": issue.value,
                "reset_hint": hint,
            }
        )
        return 0
    renderer = _get_renderer(args)
    renderer.kv("Issue", issue.value)
    if hint:
        renderer.kv("Reset hint", hint)
    return 0


def _cmd_projects_list(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    projects = _index(settings).list_projects()
    if args.json:
        _emit_json({"command": "projects.list", "projects": [item.to_dict() for item in projects]})
        return 0
    renderer = _get_renderer(args)
    if not projects:
        renderer.text(f"No projects in {settings.workspace_root}")
        return 0
    for item in projects:
        renderer.kv(item.name, item.status)
    return 0


def _cmd_projects_add(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    try:
        metadata = _index(settings).register_project(args.name, domain=args.domain)
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=2) from exc
    if args.json:
        _emit_json({"command": "projects.add", "project": metadata})
        return 0
    renderer = _get_renderer(args)
    renderer.kv("Registered", metadata.get("name"))
    renderer.kv("Status", metadata.get("status"))
    return 0


def _cmd_sweep(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    sanitized = sweep_stale_states(settings.workspace_root, lock=_build_lock(settings))
    if args.json:
        _emit_json({"command": "sweep", "sanitized": sanitized})
        return 0
    renderer = _get_renderer(args)
    if not sanitized:
        renderer.text("No stale campaign states")
        return 0
    renderer.section("Sanitized:")
    renderer.items(sanitized)
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    if args.json:
        _emit_json({"command": "config", "config": json.loads(dump_effective_config(config))})
        return 0
    _get_renderer(args).text(dump_effective_config(config))
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=bool(getattr(args, "no_color", False)))


def _load_effective_config(
    args: argparse.Namespace, overrides: Mapping[str, object] | None = None
) -> dict[str, object]:
    cli_overrides = dict(overrides or {})
    workspace_root = getattr(args, "workspace_root", None)
    if workspace_root:
        resolved = Path(workspace_root).expanduser().resolve()
        cli_overrides["paths.workspace_root"] = resolved.as_posix()
    try:
        return load_config(getattr(args, "config_path", None), cli_overrides=cli_overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _load_settings(
    args: argparse.Namespace, overrides: Mapping[str, object] | None = None
) -> RuntimeSettings:
    return RuntimeSettings.from_config(_load_effective_config(args, overrides))


def _build_lock(settings: RuntimeSettings) -> WorkspaceLock:
    if settings.lock_backend == "thread":
        return ThreadWorkspaceLock(wait_budget_seconds=settings.lock_wait_budget_seconds)
    return FileWorkspaceLock(
        stale_after_seconds=settings.lock_stale_after_seconds,
        retry_interval_seconds=settings.lock_retry_interval_seconds,
        wait_budget_seconds=settings.lock_wait_budget_seconds,
    )


def _index(settings: RuntimeSettings) -> ProjectIndex:
    return ProjectIndex(settings.workspace_root, lock=_build_lock(settings))


def _require_project(index: ProjectIndex, name: str) -> Path:
    try:
        return index.require_project(name)
    except ProjectNotFoundError as exc:
        raise CLIError(
            f"project {name!r} is not registered in {index.index_path}", exit_code=2
        ) from exc
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=2) from exc


__all__ = ["CLIError", "build_parser", "run_cli"]
