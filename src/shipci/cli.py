# cli.py
from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import Dict, Optional, Tuple

import click

from shipci.artifacts import InMemoryRegistry
from shipci.context import EVENT_KINDS, RunContext
from shipci.errors import ConfigurationError
from shipci.gate import DryRunTarget, EnvironmentGate, KubectlTarget
from shipci.git_facts.git import context_from_git
from shipci.ledger import open_ledger
from shipci.loader import load_pipeline
from shipci.locks import LocalLocks, RedisLocks
from shipci.model import CANCELLED, FAILURE
from shipci.runner import StepRunner
from shipci.scheduler import CancelToken, Scheduler, compile
from shipci.settings import Settings
from shipci.ui.console import Console, get_console, set_console

DEFAULT_PIPELINE_FILES = ("shipci.yml", "shipci.yaml", "shipci_workflow.py")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_CANCELLED = 130


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Discover pipeline file from argument or default.

    Raises:
        SystemExit: If the pipeline cannot be found or several defaults exist
    """
    console = get_console()

    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Create a pipeline file or specify a different path:\n  shipci run --pipeline shipci.yml",
            )
            sys.exit(EXIT_CONFIG)
        return path

    found = [Path(name) for name in DEFAULT_PIPELINE_FILES if Path(name).exists()]
    if not found:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=["Looked for:", *(f"  {name}" for name in DEFAULT_PIPELINE_FILES)],
            suggestion="Create shipci.yml, or specify a pipeline explicitly:\n  shipci run --pipeline ci.yml",
        )
        sys.exit(EXIT_CONFIG)
    if len(found) > 1:
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[f"  {p}" for p in found],
            suggestion="Specify a pipeline explicitly:\n  shipci run --pipeline shipci.yml",
        )
        sys.exit(EXIT_CONFIG)
    return found[0]


def parse_inputs(values: Tuple[str, ...]) -> Dict[str, str]:
    inputs: Dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got {item!r}", param_hint="--input")
        inputs[key.strip()] = value
    return inputs


def build_context(event: str, ref: Optional[str], sha: Optional[str], base_ref: Optional[str], inputs) -> RunContext:
    """Context from explicit options, falling back to the local git checkout."""
    console = get_console()
    try:
        return context_from_git(event, ref=ref, sha=sha, inputs=inputs, base_branch=base_ref)
    except subprocess.CalledProcessError:
        console.print_error(
            "Could not read git state",
            "No --ref/--sha given and the current directory is not a git checkout.",
            suggestion="Pass the trigger explicitly:\n  shipci run --event push --ref develop --sha <commit>",
        )
        sys.exit(EXIT_CONFIG)
    except FileNotFoundError:
        console.print_error(
            "Git command not found",
            "Could not find git command.",
            suggestion="Install Git or pass --ref and --sha explicitly.",
        )
        sys.exit(EXIT_CONFIG)


def context_options(f):
    f = click.option("--input", "inputs", multiple=True, help="Dispatch input as key=value (repeatable)")(f)
    f = click.option("--base-ref", default=None, help="Target branch of a pull_request event")(f)
    f = click.option("--sha", default=None, help="Commit SHA (defaults to HEAD)")(f)
    f = click.option("--ref", default=None, help="Git ref or branch (defaults to the current branch)")(f)
    f = click.option(
        "--event", type=click.Choice(EVENT_KINDS), default="push", show_default=True, help="Triggering event"
    )(f)
    f = click.option("--pipeline", default=None, help="Pipeline file (defaults to shipci.yml if present)")(f)
    return f


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """shipci: pipeline runner with gated, ordered environment promotion."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@context_options
@click.pass_context
def plan(ctx, pipeline, event, ref, sha, base_ref, inputs):
    """Compile a pipeline and print the job instances it would run."""
    console = get_console()
    path = discover_pipeline(pipeline)
    try:
        context = build_context(event, ref, sha, base_ref, parse_inputs(inputs))
        compiled = compile(load_pipeline(path), context)
    except ConfigurationError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(EXIT_CONFIG)

    console.print_run_started(
        repository=context.repository or Path(".").resolve().name,
        pipeline=f"{compiled.pipeline.name} ({path.name})",
        context=f"{compiled.context.event} {compiled.context.ref} @ {compiled.context.short_sha}",
        instance_count=len(compiled.instances),
    )
    console.print_plan(compiled.describe())


@cli.command()
@context_options
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option("--fail-fast/--no-fail-fast", default=False, help="Cancel the run after the first failure")
@click.option("--report", "report_path", default=None, type=click.Path(dir_okay=False), help="Write the JSON run report here")
@click.option("--ledger", default=None, help="Promotion ledger URL (SQLAlchemy URL or 'memory')")
@click.option("--dry-run-deploy", is_flag=True, default=False, help="Record deployments instead of calling kubectl")
@click.option("--workdir", default=".", type=click.Path(file_okay=False), help="Workspace root for steps")
@click.pass_context
def run(ctx, pipeline, event, ref, sha, base_ref, inputs, workers, fail_fast, report_path, ledger, dry_run_deploy, workdir):
    """Run a pipeline."""
    console = get_console()
    path = discover_pipeline(pipeline)

    try:
        settings = Settings.from_env()
        context = build_context(event, ref, sha, base_ref, parse_inputs(inputs))
        compiled = compile(load_pipeline(path), context)
    except ConfigurationError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(EXIT_CONFIG)

    if settings.redis_url:
        locks = RedisLocks.from_url(settings.redis_url, ttl=settings.lock_seconds)
    else:
        locks = LocalLocks()
    target = DryRunTarget() if dry_run_deploy else KubectlTarget(settings.kubectl, workdir)
    gate = EnvironmentGate(
        target,
        open_ledger(ledger or settings.ledger_url),
        locks=locks,
        rollout_timeout=settings.rollout_timeout,
        poll_interval=settings.poll_interval,
    )
    runner = StepRunner(
        workdir,
        registry=InMemoryRegistry(),
        registry_host=settings.registry,
        default_timeout=settings.step_timeout,
    )

    console.print_run_started(
        repository=context.repository or Path(workdir).resolve().name,
        pipeline=f"{compiled.pipeline.name} ({path.name})",
        context=f"{compiled.context.event} {compiled.context.ref} @ {compiled.context.short_sha}",
        instance_count=len(compiled.instances),
    )

    cancel = CancelToken()
    try:
        report = Scheduler(
            compiled,
            runner=runner,
            gate=gate,
            max_workers=workers or settings.max_workers,
            fail_fast=fail_fast,
            cancel=cancel,
        ).run()
    except KeyboardInterrupt:
        console.print_cancelled("interrupted by user")
        sys.exit(EXIT_CANCELLED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILURE)

    console.print_results(report)
    if report_path:
        Path(report_path).write_text(report.to_json())
        console.print_info(f"Report written to {report_path}")

    if report.status == CANCELLED:
        console.print_cancelled(report.cancel_reason or "cancelled")
        sys.exit(EXIT_CANCELLED)
    if report.status == FAILURE:
        sys.exit(EXIT_FAILURE)


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
@click.option("--dry-run-deploy", is_flag=True, default=False, help="Record deployments instead of calling kubectl")
@click.pass_context
def serve(ctx, host, port, dry_run_deploy):
    """Start the control-plane HTTP API."""
    import uvicorn

    from shipci.server.app import create_app, create_dry_run_app

    console = get_console()
    try:
        app = create_dry_run_app() if dry_run_deploy else create_app()
    except ConfigurationError as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(EXIT_CONFIG)

    console.print_server_started(host, port)
    try:
        uvicorn.run(app, host=host, port=port)
    except KeyboardInterrupt:
        console.print_info("\nServer stopped by user")


if __name__ == "__main__":
    cli()
