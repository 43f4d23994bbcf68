"""Command-line interface for rook."""

import asyncio
import json
import logging
import signal
from typing import Any, Optional

import click

from rook import __version__
from rook.actions import ActionRegistry, default_registry
from rook.aggregate import RunResult
from rook.builder import build_model
from rook.compiler import CompiledRun, PlanCompiler
from rook.config import MAX_PARALLEL, RookConfig, load_config
from rook.dispatcher import CancelToken, Dispatcher
from rook.exceptions import RookError, RunbookLoadError, ValidationError, ValidationIssue
from rook.logging import configure_logging, get_level_from_name, get_level_from_verbosity, get_logger
from rook.progress import Reporter, create_reporter
from rook.transport import Transport, create_transport

logger = get_logger("rook.cli")

LOG_LEVELS = ["trace", "debug", "info", "warning", "error"]


def setup_logging(log_level: Optional[str], verbose: int, log_file: Optional[str], output_format: str) -> None:
    """Configure logging from CLI options."""
    if log_level:
        level = get_level_from_name(log_level)
    else:
        level = get_level_from_verbosity(verbose)

    # JSON output goes to stderr as well; keep log records out of it
    console_level = logging.CRITICAL if output_format == "json" else level

    configure_logging(
        level=console_level,
        log_file=log_file,
        file_level=level if log_file else None,
    )


def echo_issues(issues: list[ValidationIssue]) -> None:
    for issue in issues:
        click.echo(issue.format_text(), err=True)


def resolve(path: Optional[str], registry: ActionRegistry) -> list[CompiledRun]:
    """Build and compile a runbook, reporting every issue found.

    Raises:
        click.ClickException: If the runbook cannot be loaded or has errors
    """
    try:
        model = build_model(path, registry=registry)
        return PlanCompiler(model, registry).compile_all()
    except RunbookLoadError as e:
        raise click.ClickException(e.format_text())
    except ValidationError as e:
        echo_issues(e.issues)
        raise click.ClickException(f"{len(e.errors)} validation error(s) found")


async def execute_runs(
    runs: list[CompiledRun],
    config: RookConfig,
    reporter: Reporter,
    transport: Transport | None = None,
    registry: ActionRegistry | None = None,
) -> list[RunResult]:
    """Dispatch runs in order, stopping after the first unsuccessful one.

    SIGINT cancels the dispatch in progress: in-flight hosts are told to
    stop and unfinished actions are reported as cancelled.
    """
    transport = transport or create_transport(config)
    dispatcher = Dispatcher(transport, config, registry)
    cancel = CancelToken()
    loop = asyncio.get_running_loop()

    handler_installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.cancel)
        handler_installed = True
    except (NotImplementedError, RuntimeError, ValueError):
        logger.debug("SIGINT handler not available, Ctrl-C will abort")

    results: list[RunResult] = []
    try:
        for compiled in runs:
            reporter.on_run_start(compiled.name, list(compiled.plans))
            result = await dispatcher.dispatch(compiled.plans, cancel, reporter.on_event, compiled.name)
            reporter.on_run_complete(result)
            results.append(result)
            if not result.success:
                logger.info("Run failed, not starting later runs", run=compiled.name)
                break
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)
        await transport.close_all()
    return results


# Main CLI group
@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version and exit")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """rook - resolve runbooks and execute them on many hosts over SSH."""
    if version:
        click.echo(f"rook {__version__}")
        ctx.exit(0)
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command("run")
@click.argument("path", required=False)
@click.option("--parallel", "-p", type=int, default=None,
              help="Number of hosts executed concurrently (default: 10)")
@click.option("--timeout", "-t", type=float, default=None,
              help="Seconds a host may take for its whole plan")
@click.option("--action-timeout", type=float, default=None,
              help="Seconds a single action may take")
@click.option("--continue-on-error", is_flag=True, default=None,
              help="Keep running a host's plan after a failed action")
@click.option("--format", "-f", "output_format", type=click.Choice(["text", "rich", "json"]),
              default="text", help="Progress output format")
@click.option("--config", "config_path", type=click.Path(), default=None,
              help="Config file (default: ~/.rook/config.yml)")
@click.option("--log-file", type=click.Path(), default=None,
              help="Write logs to file (in addition to console)")
@click.option("--log-level", type=click.Choice(LOG_LEVELS), default=None,
              help="Set log level explicitly (overrides -v)")
@click.option("-v", "--verbose", count=True,
              help="Increase verbosity: -v=info, -vv=debug, -vvv=trace")
def run_runbook(
    path: Optional[str],
    parallel: Optional[int],
    timeout: Optional[float],
    action_timeout: Optional[float],
    continue_on_error: Optional[bool],
    output_format: str,
    config_path: Optional[str],
    log_file: Optional[str],
    log_level: Optional[str],
    verbose: int,
) -> None:
    """Execute a runbook (default: ./main.tr).

    The runbook is fully resolved and validated before any host is
    contacted. Runs execute in order; a failed run stops the rest.

    \b
    Examples:
        rook run
        rook run deploy.tr -p 50 --timeout 600
        rook run site --continue-on-error --format json
    """
    setup_logging(log_level, verbose, log_file, output_format)

    if parallel is not None and not 1 <= parallel <= MAX_PARALLEL:
        raise click.ClickException(f"--parallel must be between 1 and {MAX_PARALLEL} (requested: {parallel})")

    try:
        config = load_config(config_path).with_overrides(
            parallel=parallel,
            host_timeout=timeout,
            action_timeout=action_timeout,
            continue_on_error=continue_on_error,
        ).validate()
    except (ValueError, FileNotFoundError) as e:
        raise click.ClickException(str(e))

    registry = default_registry()
    runs = resolve(path, registry)
    reporter = create_reporter(output_format)

    try:
        results = asyncio.run(execute_runs(runs, config, reporter, create_transport(config), registry))
    except RookError as e:
        raise click.ClickException(e.format_text())

    failed = [result for result in results if not result.success]
    if failed:
        if output_format == "json":
            raise SystemExit(1)
        result = failed[0]
        if result.cancelled:
            raise click.ClickException(f"Run '{result.name}' was cancelled")
        raise click.ClickException(f"Run '{result.name}' failed on {len(result.failed_hosts)} host(s)")


@cli.command("check")
@click.argument("path", required=False)
@click.option("--format", "-f", "output_format", type=click.Choice(["text", "json"]),
              default="text", help="Output format")
@click.option("--log-level", type=click.Choice(LOG_LEVELS), default=None,
              help="Set log level explicitly (overrides -v)")
@click.option("-v", "--verbose", count=True,
              help="Increase verbosity: -v=info, -vv=debug, -vvv=trace")
def check_runbook(path: Optional[str], output_format: str, log_level: Optional[str], verbose: int) -> None:
    """Validate a runbook without contacting any host.

    Builds the model and compiles every run, then prints all errors found
    (with host, action and field) together with warnings.
    """
    setup_logging(log_level, verbose, None, output_format)
    registry = default_registry()

    if output_format == "json":
        _check_json(path, registry)
        return

    runs = resolve(path, registry)
    warnings = [issue for run in runs for issue in run.warnings]
    echo_issues(warnings)
    hosts = sum(len(run.plans) for run in runs)
    click.echo(f"OK: {len(runs)} run(s), {hosts} host plan(s)")


def _check_json(path: Optional[str], registry: ActionRegistry) -> None:
    output: dict[str, Any] = {"valid": True, "issues": [], "runs": []}
    try:
        model = build_model(path, registry=registry)
        runs = PlanCompiler(model, registry).compile_all()
    except RunbookLoadError as e:
        output["valid"] = False
        output["issues"].append(ValidationIssue(e.message, kind="load", path=e.context.get("path")).to_dict())
    except ValidationError as e:
        output["valid"] = False
        output["issues"] = [issue.to_dict() for issue in e.issues]
    else:
        output["issues"] = [issue.to_dict() for run in runs for issue in run.warnings]
        output["runs"] = [
            {
                "name": run.name,
                "hosts": {host: len(plan) for host, plan in run.plans.items()},
            }
            for run in runs
        ]

    click.echo(json.dumps(output, indent=2))
    if not output["valid"]:
        raise SystemExit(1)


@cli.command("action")
@click.argument("name", required=False)
@click.option("--format", "-f", "output_format", type=click.Choice(["text", "json"]),
              default="text", help="Output format")
def show_action(name: Optional[str], output_format: str) -> None:
    """List available actions, or show one action's parameters."""
    registry = default_registry()

    if name is None:
        definitions = registry.definitions()
        if output_format == "json":
            click.echo(json.dumps([d.to_dict() for d in definitions], indent=2))
        else:
            width = max(len(d.name) for d in definitions)
            for definition in definitions:
                click.echo(f"{definition.name:<{width}}  {definition.description}")
        return

    definition = registry.get(name)
    if definition is None:
        raise click.ClickException(f"Unknown action: {name} (available: {', '.join(registry.names())})")
    if output_format == "json":
        click.echo(json.dumps(definition.to_dict(), indent=2))
    else:
        click.echo(definition.format_text())


def main() -> None:
    """Package entry point for the rook command-line interface."""
    cli()


if __name__ == "__main__":
    cli()
