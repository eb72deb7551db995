"""Operator command line for secret distribution.

Usage:
    secrets-sync distribute --owner acme --repo api --env-file .env
    secrets-sync distribute --only actions,environments --dry-run
    secrets-sync validate DATABASE_URL_PROD API_KEY
    secrets-sync status
    secrets-sync events --limit 20
    secrets-sync serve --port 8080
    secrets-sync mcp

Exit codes:
    0  success
    1  fatal error (missing credentials or owner/repo, exhausted quota,
       unreadable secret source, invalid arguments)
    2  partial failure (some writes failed, or --validate found issues)
"""

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence
from typing import Any

from .engine import (
    DotenvSecretSource,
    SyncConfig,
    SyncConfigLoader,
    SyncError,
    build_engine,
    parse_targets,
)
from .formatting import (
    format_events_markdown,
    format_status_markdown,
    format_sync_result_markdown,
    format_validation_markdown,
    to_json,
)
from .server import configure_logging, redactor

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL = 2
CLI_ACTOR = "cli"


# =============================================================================
# Argument parsing
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="secrets-sync",
        description="Distribute repository secrets and provision deployment environments",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", help="Config file (default: SECRETS_SYNC_CONFIG)")
    parser.add_argument("--owner", help="Repository owner (default: GITHUB_OWNER)")
    parser.add_argument("--repo", help="Repository name (default: GITHUB_REPO)")
    parser.add_argument("--project-id", help="owner/repo, instead of --owner and --repo")
    parser.add_argument(
        "--format", choices=["markdown", "json"], default="markdown", help="Output format"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at INFO level")

    subparsers = parser.add_subparsers(dest="command", required=True, help="Command to run")

    # Distribute
    dist = subparsers.add_parser("distribute", help="Distribute secrets from a dotenv file")
    dist.add_argument("--env-file", help="Dotenv file with the secret values (default: .env)")
    dist.add_argument("--dry-run", action="store_true", help="Inspect and seal, write nothing")
    dist.add_argument("--force", action="store_true", help="Overwrite diverged values")
    dist.add_argument(
        "--exclude",
        action="append",
        default=[],
        metavar="PATTERN",
        help="Extra exclusion regex (repeatable)",
    )
    dist.add_argument(
        "--only",
        metavar="TARGETS",
        help="Comma list of actions,codespaces,dependabot,environments",
    )
    dist.add_argument(
        "--no-env-map",
        action="store_true",
        help="Treat _DEV/_STAGING/_PROD names as ordinary global secrets",
    )
    dist.add_argument("--concurrency", type=int, help="Parallel writes (default: 10)")
    dist.add_argument("--timeout", type=float, help="Deadline for all writes, in seconds")
    dist.add_argument(
        "--validate", action="store_true", help="Validate the distributed names afterwards"
    )

    # Validate
    val = subparsers.add_parser("validate", help="Report missing and conflicting secrets")
    val.add_argument("names", nargs="*", help="Required secret names")
    val.add_argument("--env-file", help="Take the required names from a dotenv file")

    # Status
    subparsers.add_parser("status", help="Show sync status and remaining quota")

    # Events
    events = subparsers.add_parser("events", help="List recent audit events")
    events.add_argument("--limit", type=int, default=20, help="Number of events")
    events.add_argument("--export", metavar="FILE", help="Write events to a JSON file instead")

    # Servers
    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, help="Port (default: 8080)")
    subparsers.add_parser("mcp", help="Run the MCP server on stdio")

    return parser


def load_config(args: argparse.Namespace) -> SyncConfig:
    """Load the config file and apply command line overrides.

    Raises:
        ValueError: If the config file or --project-id is invalid
    """
    config = SyncConfigLoader(args.config).load_config()

    github: dict[str, Any] = {}
    if args.project_id:
        owner, sep, repo = args.project_id.partition("/")
        if not sep or not owner or not repo or "/" in repo:
            raise ValueError(f"--project-id must be owner/repo, got '{args.project_id}'")
        github.update(owner=owner, repo=repo)
    if args.owner:
        github["owner"] = args.owner
    if args.repo:
        github["repo"] = args.repo

    distribution: dict[str, Any] = {}
    if getattr(args, "concurrency", None):
        if args.concurrency < 1:
            raise ValueError("--concurrency must be at least 1")
        distribution["concurrency"] = args.concurrency

    return config.model_copy(
        update={
            "github": config.github.model_copy(update=github),
            "distribution": config.distribution.model_copy(update=distribution),
        }
    )


def _emit(args: argparse.Namespace, model: Any, markdown: str) -> None:  # noqa: ANN401
    if args.format == "json":
        print(json.dumps(to_json(model), indent=2))
    else:
        print(markdown)


# =============================================================================
# Commands
# =============================================================================


async def run_distribute(args: argparse.Namespace, config: SyncConfig) -> int:
    source = DotenvSecretSource(args.env_file or config.source.env_file or ".env")
    secrets = await source.load()
    if not secrets:
        print(f"No secrets found in {source.description}", file=sys.stderr)
        return EXIT_OK

    scopes, include_environments = (
        parse_targets(args.only.split(",")) if args.only else (None, True)
    )

    engine = await build_engine(config, redactor=redactor, dry_run=args.dry_run)
    async with engine:
        result = await engine.distribute(
            secrets,
            target_scopes=scopes,
            include_environments=include_environments,
            force=args.force,
            map_environments=not args.no_env_map,
            exclusions=args.exclude,
            timeout=args.timeout,
            actor_id=CLI_ACTOR,
        )
        _emit(args, result, format_sync_result_markdown(result))
        exit_code = EXIT_PARTIAL if result.failed_count else EXIT_OK

        if args.validate and not args.dry_run:
            names = sorted(set(secrets) - set(result.skipped))
            report = await engine.validate(names, scopes, actor_id=CLI_ACTOR)
            _emit(args, report, format_validation_markdown(report))
            if not report.valid:
                exit_code = EXIT_PARTIAL

    return exit_code


async def run_validate(args: argparse.Namespace, config: SyncConfig) -> int:
    names = list(args.names)
    if args.env_file:
        names.extend(await DotenvSecretSource(args.env_file).list_names())
    if not names:
        raise ValueError("Pass secret names or --env-file")

    async with await build_engine(config, redactor=redactor) as engine:
        report = await engine.validate(sorted(set(names)), actor_id=CLI_ACTOR)

    _emit(args, report, format_validation_markdown(report))
    return EXIT_OK if report.valid else EXIT_PARTIAL


async def run_status(args: argparse.Namespace, config: SyncConfig) -> int:
    async with await build_engine(config, redactor=redactor) as engine:
        report = await engine.get_status()

    _emit(args, report, format_status_markdown(report))
    return EXIT_OK


async def run_events(args: argparse.Namespace, config: SyncConfig) -> int:
    async with await build_engine(config, redactor=redactor) as engine:
        if args.export:
            count = await engine.audit.export_to_file(
                args.export, engine.project_id, limit=args.limit
            )
            print(f"Exported {count} events to {args.export}")
            return EXIT_OK
        events = await engine.list_events(limit=args.limit)

    if args.format == "json":
        print(json.dumps([to_json(event) for event in events], indent=2))
    else:
        print(format_events_markdown(events))
    return EXIT_OK


def run_serve(args: argparse.Namespace, config: SyncConfig) -> int:
    import uvicorn

    from .api import create_app

    uvicorn.run(
        create_app(config),
        host=args.host or config.api.host,
        port=args.port or config.api.port,
        log_config=None,
    )
    return EXIT_OK


COMMANDS = {
    "distribute": run_distribute,
    "validate": run_validate,
    "status": run_status,
    "events": run_events,
}


# =============================================================================
# Entry point
# =============================================================================


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point of the ``secrets-sync`` console script."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "mcp":
        from .__main__ import main as mcp_main

        mcp_main()
        return EXIT_OK

    configure_logging("INFO" if args.verbose else "WARNING")

    try:
        config = load_config(args)
        if args.command == "serve":
            return run_serve(args, config)
        return asyncio.run(COMMANDS[args.command](args, config))
    except (SyncError, ValueError) as e:
        print(f"Error: {redactor.redact_text(str(e))}", file=sys.stderr)
        return EXIT_FATAL
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return EXIT_FATAL


if __name__ == "__main__":
    sys.exit(main())
