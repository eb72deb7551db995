"""Shared formatting utilities for tool responses and CLI output.

Markdown renderings of the engine's result models. JSON output is the
models' own ``model_dump(by_alias=True, mode="json")``.

None of these functions ever receive secret values: results carry names,
scopes and hash prefixes only.
"""

from typing import Any

from .engine import SyncEvent, SyncResult, SyncStatusReport, ValidationReport
from .engine.models import EnvironmentsResult

# =============================================================================
# Markdown Formatting Utilities
# =============================================================================


def format_sync_result_markdown(result: SyncResult) -> str:
    """Format a distribution result as markdown.

    Args:
        result: Result of a distribution run

    Returns:
        Markdown summary with counts, environments, errors and conflicts
    """
    title = "# Secret Distribution"
    if result.dry_run:
        title += " (dry run)"

    lines = [
        title,
        "",
        f"- **Written**: {result.synced_count}",
        f"- **Skipped**: {result.skipped_count}",
        f"- **Failed**: {result.failed_count}",
        f"- **Duration**: {result.duration_ms}ms",
        f"- **Correlation ID**: `{result.correlation_id}`",
    ]

    if result.environments:
        lines.append("")
        lines.append("## Environments")
        for env in result.environments:
            line = f"- **{env.environment_name.value}**: {env.outcome.value} ({env.status.value})"
            if env.secrets_written:
                line += f", secrets: {', '.join(env.secrets_written)}"
            lines.append(line)

    if result.skipped:
        lines.append("")
        lines.append("## Skipped")
        lines.extend(f"- {name}" for name in result.skipped)

    if result.conflicts:
        lines.append("")
        lines.append("## Conflicts")
        lines.append("Overwritten with a different value than last distributed:")
        lines.extend(f"- {name}" for name in result.conflicts)

    if result.errors:
        lines.append("")
        lines.append("## Errors")
        for error in result.errors:
            target = error.secret_name or error.environment or "-"
            if error.scope:
                target += f" -> {error.scope}"
            lines.append(f"- **{target}** [{error.code}]: {error.error}")

    return "\n".join(lines)


def format_environments_markdown(result: EnvironmentsResult) -> str:
    lines = ["# Environments", ""]
    if result.created:
        lines.append(f"- **Created**: {', '.join(result.created)}")
    if result.updated:
        lines.append(f"- **Updated**: {', '.join(result.updated)}")
    for error in result.errors:
        target = error.environment or "-"
        if error.secret_name:
            target += f"/{error.secret_name}"
        lines.append(f"- **{target}** [{error.code}]: {error.error}")
    return "\n".join(lines)


def format_status_markdown(report: SyncStatusReport) -> str:
    """Format the sync status of a project as markdown."""
    last_sync = report.last_sync_at.isoformat() if report.last_sync_at else "never"
    quota = ", ".join(
        f"{name}={'unknown' if value is None else value}"
        for name, value in report.quota_remaining.items()
    )
    return "\n".join(
        [
            f"# Sync Status: {report.status}",
            "",
            f"- **Last sync**: {last_sync}",
            f"- **Next scheduled sync**: {report.next_scheduled_sync_at.isoformat()}",
            f"- **Pending**: {report.pending_count}",
            f"- **Errors**: {report.error_count}",
            f"- **Conflicts**: {report.conflict_count}",
            f"- **Quota remaining**: {quota}",
        ]
    )


def format_validation_markdown(report: ValidationReport) -> str:
    """Format a validation report as markdown.

    Args:
        report: Missing/conflict report

    Returns:
        Markdown with summary, missing secrets, conflicts and remediation steps
    """
    summary = report.summary
    lines = [
        f"# Validation: {'valid' if report.valid else 'issues found'}",
        "",
        f"- **Secrets checked**: {summary.total_secrets}",
        f"- **Valid**: {summary.valid_count}",
        f"- **Missing**: {summary.missing_count}",
        f"- **Conflicts**: {summary.conflict_count}",
    ]

    if report.missing:
        lines.append("")
        lines.append("## Missing")
        lines.extend(f"- {m.secret_name} in `{m.scope}`" for m in report.missing)

    if report.conflicts:
        lines.append("")
        lines.append("## Conflicts")
        for conflict in report.conflicts:
            hashes = ", ".join(
                f"{scope}={prefix}" for scope, prefix in conflict.value_hashes.items()
            )
            lines.append(f"- {conflict.secret_name}: {hashes}")

    lines.append("")
    lines.append("## Remediation")
    lines.extend(f"{i}. {step}" for i, step in enumerate(report.remediation_steps, 1))
    return "\n".join(lines)


def format_events_markdown(events: list[SyncEvent]) -> str:
    if not events:
        return "No sync events recorded"

    lines = [f"## Sync Events ({len(events)})", ""]
    for event in events:
        line = (
            f"- `{event.created_at.isoformat()}` **{event.operation.value}** "
            f"{event.status.value} ({event.success_count} ok, {event.failure_count} failed) "
            f"by {event.actor_id}"
        )
        if event.secret_name:
            line += f", secret {event.secret_name}"
        lines.append(line)
    return "\n".join(lines)


# =============================================================================
# JSON Formatting Utilities
# =============================================================================


def to_json(model: Any) -> dict[str, Any]:  # noqa: ANN401
    """camelCase JSON-compatible dict of a result model."""
    data: dict[str, Any] = model.model_dump(by_alias=True, mode="json")
    return data


__all__ = [
    "format_environments_markdown",
    "format_events_markdown",
    "format_status_markdown",
    "format_sync_result_markdown",
    "format_validation_markdown",
    "to_json",
]
