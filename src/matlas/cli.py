"""matlas-apply command line.

Offline front end for the reconciliation engine: validates manifests,
plans them against a current-state snapshot and reports drift.

Usage:
    matlas-apply validate manifests/             # Validate manifests
    matlas-apply plan manifests/ -c state.yaml   # Staged plan against a snapshot
    matlas-apply drift manifests/ -c state.yaml  # Drift report
    matlas-apply fingerprint cluster.yaml        # Content fingerprints
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, NoReturn

import click

from .config import ReconciliationConfig
from .diff import DiffOptions
from .discovery import SnapshotStateDiscovery
from .errors import ManifestLoadError, ManifestValidationError, PlanningError
from .fingerprint import compute_fingerprint
from .manifest_loader import load_manifests, load_state_snapshot
from .models import ProjectState
from .plan import Plan, build_plan
from .reconcile import DriftDetectionResult, ReconciliationManager

DEFAULT_PROJECT_ID = "default"

# LogRecord attributes that are not user supplied ``extra`` fields
_RESERVED_LOG_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(json_output: bool = False, verbose: bool = False) -> None:
    """Configure logging on stderr; JSON lines for machines, text for humans."""
    handler = logging.StreamHandler(sys.stderr)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


def _fail(message: str) -> NoReturn:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _load_desired(files: tuple[str, ...]) -> ProjectState:
    try:
        return ProjectState.from_manifests(load_manifests(files))
    except (ManifestValidationError, ManifestLoadError) as e:
        _fail(str(e))


def _load_current(snapshot: str | None) -> ProjectState:
    if snapshot is None:
        return ProjectState()
    try:
        return load_state_snapshot(snapshot)
    except ManifestLoadError as e:
        _fail(str(e))


def _project_id(desired: ProjectState, override: str | None) -> str:
    if override:
        return override
    if desired.project is not None:
        return desired.project.spec.name
    return DEFAULT_PROJECT_ID


def plan_report(plan: Plan) -> dict[str, Any]:
    """Plan view safe to print: field changes on secrets are masked."""
    return {
        "id": plan.id,
        "projectId": plan.project_id,
        "maxStage": plan.max_stage,
        "summary": plan.summary.to_dict(),
        "operations": [
            {
                "id": op.id,
                "type": op.type.value,
                "resourceKind": op.resource_kind.value,
                "resourceName": op.resource_name,
                "stage": op.stage,
                "dependsOn": list(op.depends_on),
                "impact": op.impact.to_dict(),
                "fieldChanges": [fc.redacted().to_dict() for fc in op.field_changes],
            }
            for op in plan.operations
        ],
    }


def _echo_plan(plan: Plan) -> None:
    summary = plan.summary
    click.echo(f"Plan {plan.id} for project {plan.project_id}")
    for stage in range(plan.max_stage + 1):
        operations = plan.operations_in_stage(stage)
        if not operations:
            continue
        click.echo(f"\nStage {stage}:")
        for op in operations:
            click.echo(
                f"  {op.type.value:<8} {op.resource_kind.value}/{op.resource_name}"
                f"  [risk: {op.impact.risk_level.value}]"
            )
            for change in op.field_changes:
                fc = change.redacted()
                click.echo(
                    f"      {fc.change_type.value:<6} {fc.path}: "
                    f"{json.dumps(fc.old_value, default=str)} -> {json.dumps(fc.new_value, default=str)}"
                )
    click.echo(
        f"\n{summary.total_operations} operations, highest risk {summary.highest_risk.value}, "
        f"{summary.destructive_count} destructive"
    )
    if summary.requires_approval:
        click.echo("Approval required before apply.")


def _echo_drift(result: DriftDetectionResult) -> None:
    click.echo(
        f"Project {result.project_id}: {result.drifted_resources}/{result.total_resources} "
        f"resources drifted ({result.drift_percentage:.1f}%)"
    )
    for drift in result.drifts:
        click.echo(
            f"  {drift.resource_kind.value}/{drift.resource_name}: {drift.drift_type.value} "
            f"(severity {drift.severity.value}, complexity {drift.complexity.value}"
            f"{', auto-fix' if drift.auto_fix else ''})"
        )
        for difference in drift.to_dict()["differences"]:
            click.echo(
                f"      {difference['path']}: {json.dumps(difference['actualValue'], default=str)}"
                f" -> {json.dumps(difference['desiredValue'], default=str)}"
            )
    for rec in result.recommendations:
        click.echo(f"  -> {rec.resource_id}: {rec.action.value} - {rec.description}")


# =============================================================================
# Commands
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="matlas-apply")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
def cli(json_logs: bool, verbose: bool) -> None:
    """matlas-apply: declarative reconciliation for Atlas projects.

    \b
    Quick Start:
        matlas-apply validate manifests/
        matlas-apply plan manifests/ --current state.yaml
    """
    setup_logging(json_output=json_logs, verbose=verbose)


@cli.command()
@click.argument("files", nargs=-1, required=True)
def validate(files: tuple[str, ...]) -> None:
    """Load and validate manifests."""
    try:
        manifests = load_manifests(files)
    except (ManifestValidationError, ManifestLoadError) as e:
        _fail(str(e))
    click.echo(f"OK: {len(manifests)} manifests valid")


@cli.command()
@click.argument("files", nargs=-1, required=True)
@click.option("--current", "-c", "snapshot", help="Current-state snapshot (YAML/JSON)")
@click.option("--project-id", "-p", help="Project id (default: Project manifest name)")
@click.option("--preserve-existing", is_flag=True, help="Never delete unmanaged resources")
@click.option("--json", "as_json", is_flag=True, help="Print the plan as JSON")
def plan(
    files: tuple[str, ...],
    snapshot: str | None,
    project_id: str | None,
    preserve_existing: bool,
    as_json: bool,
) -> None:
    """Diff manifests against the current state and print the staged plan."""
    desired = _load_desired(files)
    current = _load_current(snapshot)
    try:
        staged, _ = build_plan(
            desired,
            current,
            _project_id(desired, project_id),
            DiffOptions(preserve_existing=preserve_existing),
        )
    except PlanningError as e:
        _fail(str(e))

    if as_json:
        click.echo(json.dumps(plan_report(staged), indent=2, default=str))
    else:
        _echo_plan(staged)


@cli.command()
@click.argument("files", nargs=-1, required=True)
@click.option("--current", "-c", "snapshot", required=True, help="Current-state snapshot (YAML/JSON)")
@click.option("--project-id", "-p", help="Project id (default: Project manifest name)")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
def drift(files: tuple[str, ...], snapshot: str, project_id: str | None, as_json: bool) -> None:
    """Report drift between manifests and the current state."""
    desired = _load_desired(files)
    current = _load_current(snapshot)
    project = _project_id(desired, project_id)

    manager = ReconciliationManager(
        SnapshotStateDiscovery({project: current}),
        ReconciliationConfig.from_env(),
    )
    result = asyncio.run(manager.detect_drift(project, desired))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        _echo_drift(result)


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
def fingerprint(file: str) -> None:
    """Print the content fingerprint of each manifest in FILE."""
    try:
        manifests = load_manifests([Path(file)])
    except (ManifestValidationError, ManifestLoadError) as e:
        _fail(str(e))
    for manifest in manifests:
        click.echo(f"{manifest.kind.value}/{manifest.name} {compute_fingerprint(manifest, manifest.kind)}")


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
