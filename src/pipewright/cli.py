# cli.py
from __future__ import annotations

import logging
import sys
import threading
from pathlib import Path

import click

from . import settings
from .conditions import evaluate
from .dag import build_dag, topo_levels
from .deploy import ApplyStatus, deploy as deploy_targets, load_inventory, load_playbook
from .errors import ParseError, PipewrightError
from .loader import load
from .model import RunResult, TriggerContext
from .retry import RetryPolicy
from .scheduler import run as run_pipeline
from .secret_store import SecretStore
from .ui.console import Console, get_console, set_console

DEFAULT_PIPELINES = ("pipewright.yml", "pipewright.yaml", "pipewright_workflow.py")


def find_pipeline_files() -> list[Path]:
    """
    Find candidate pipeline files in the current directory.

    Returns:
        The first default file that exists, otherwise every *_workflow.py
    """
    current_dir = Path(".")
    for name in DEFAULT_PIPELINES:
        candidate = current_dir / name
        if candidate.exists():
            return [candidate]
    return sorted(current_dir.glob("*_workflow.py"))


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Resolve the pipeline file from the argument or by discovery.

    Raises:
        SystemExit: If no pipeline (or more than one candidate) is found
    """
    console = get_console()

    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Create a pipeline file or specify a different path:\n  pipewright run ci.yml",
            )
            sys.exit(1)
        return path

    files = find_pipeline_files()

    if len(files) == 0:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=["Looked for:", *(f"  {n}" for n in DEFAULT_PIPELINES), "  *_workflow.py"],
            suggestion="Create pipewright.yml or specify a pipeline explicitly:\n  pipewright run ci.yml",
        )
        sys.exit(1)

    if len(files) > 1:
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[f"  {f}" for f in files],
            suggestion=f"Specify a pipeline explicitly:\n  pipewright run {files[0]}",
        )
        sys.exit(1)

    return files[0]


def _load_or_exit(path: Path, debug: bool):
    console = get_console()
    try:
        return load(path)
    except ParseError as e:
        console.print_error("Invalid pipeline", f"Could not load {path}", details=str(e).splitlines())
        sys.exit(1)
    except Exception as e:
        console.print_error("Failed to load pipeline", f"Could not load {path}", details=[str(e)])
        if debug:
            console.print_exception(e)
        sys.exit(1)


def _context(branch, event, sha, upstream_conclusion, upstream_workflow, default_branch) -> TriggerContext:
    return TriggerContext.from_git(
        branch=branch,
        event=event,
        sha=sha,
        upstream_conclusion=upstream_conclusion,
        upstream_workflow=upstream_workflow,
        default_branch=default_branch,
    )


def _secrets(secrets_file: str | None) -> SecretStore:
    store = SecretStore.from_env()
    if secrets_file:
        store = store.merged(SecretStore.from_file(secrets_file))
    return store


def context_options(fn):
    fn = click.option("--default-branch", default=settings.DEFAULT_BRANCH, show_default=True, help="Default branch name")(fn)
    fn = click.option("--upstream-workflow", default=None, help="Upstream workflow name (workflow_run events)")(fn)
    fn = click.option("--upstream-conclusion", default=None, help="Upstream workflow conclusion (workflow_run events)")(fn)
    fn = click.option("--sha", default=None, help="Commit SHA (defaults to git HEAD)")(fn)
    fn = click.option("--event", default="push", show_default=True, help="Trigger event (push, pull_request, workflow_run, ...)")(fn)
    fn = click.option("--branch", default=None, help="Branch name (defaults to the current git branch)")(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (stack traces, step output, debug logs)",
)
@click.pass_context
def cli(ctx, debug):
    """pipewright: declarative pipelines and idempotent deployments."""
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("pipeline", required=False)
@click.pass_context
def validate(ctx, pipeline):
    """Load and validate a pipeline, then print its stages."""
    console = get_console()
    path = discover_pipeline(pipeline)
    spec = _load_or_exit(path, ctx.obj.get("debug", False))
    adj, indeg = build_dag(spec.jobs)
    console.print_info(f"{path}: pipeline '{spec.name}' is valid ({len(spec.jobs)} job(s))")
    console.print_stages(topo_levels(adj, indeg))


@cli.command()
@click.argument("pipeline", required=False)
@context_options
@click.pass_context
def plan(ctx, pipeline, branch, event, sha, upstream_conclusion, upstream_workflow, default_branch):
    """Show what a run would do for a trigger context, without executing anything."""
    console = get_console()
    path = discover_pipeline(pipeline)
    spec = _load_or_exit(path, ctx.obj.get("debug", False))
    trigger_ctx = _context(branch, event, sha, upstream_conclusion, upstream_workflow, default_branch)

    adj, indeg = build_dag(spec.jobs)
    console.print_stages(topo_levels(adj, indeg))

    if not spec.trigger.matches(trigger_ctx):
        console.print_info(f"Trigger does not match {trigger_ctx.event} on '{trigger_ctx.branch}': every job would be skipped")
        return

    for job in spec.jobs:
        if job.condition is None:
            console.print_plan_job(job.name, "runs when its dependencies succeed")
        elif evaluate(job.condition, trigger_ctx):
            console.print_plan_job(job.name, f"condition true: {job.condition}")
        else:
            console.print_plan_job(job.name, f"skipped, condition false: {job.condition}")


@cli.command()
@click.argument("pipeline", required=False)
@context_options
@click.option("--workers", default=None, type=int, help="Number of parallel jobs")
@click.option("--workdir", default=".", show_default=True, type=click.Path(file_okay=False), help="Workspace the steps run in")
@click.option("--secrets-file", default=None, type=click.Path(dir_okay=False), help="YAML or KEY=VALUE secrets file")
@click.option("--retries", default=0, show_default=True, type=click.IntRange(min=0), help="Retry a failing step this many times")
@click.pass_context
def run(ctx, pipeline, branch, event, sha, upstream_conclusion, upstream_workflow, default_branch,
        workers, workdir, secrets_file, retries):
    """Run a pipeline."""
    console = get_console()
    path = discover_pipeline(pipeline)
    spec = _load_or_exit(path, ctx.obj.get("debug", False))

    try:
        secrets = _secrets(secrets_file)
    except (OSError, ParseError) as e:
        console.print_error("Could not read secrets", str(e))
        sys.exit(1)

    trigger_ctx = _context(branch, event, sha, upstream_conclusion, upstream_workflow, default_branch)
    console.print_run_started(
        pipeline=spec.name,
        source=str(path),
        job_count=len(spec.jobs),
        branch=trigger_ctx.branch,
        event=trigger_ctx.event,
    )

    cancel = threading.Event()
    outcome: dict = {}

    def _target() -> None:
        try:
            outcome["result"] = run_pipeline(
                spec,
                trigger_ctx,
                max_workers=workers,
                secrets=secrets,
                cancel_event=cancel,
                workdir=workdir,
                retry=RetryPolicy(attempts=retries + 1),
            )
        except Exception as e:
            outcome["error"] = e

    worker = threading.Thread(target=_target, name="scheduler", daemon=True)
    worker.start()
    interrupted = False
    while worker.is_alive():
        try:
            worker.join(timeout=0.2)
        except KeyboardInterrupt:
            if not interrupted:
                console.print_info("\nInterrupted by user, cancelling run...")
                cancel.set()
                interrupted = True

    if "error" in outcome:
        console.print_exception(outcome["error"])
        sys.exit(1)

    result: RunResult = outcome["result"]
    console.print_results(result)

    if interrupted:
        sys.exit(130)
    sys.exit(result.exit_code)


@cli.command()
@click.argument("inventory", type=click.Path(exists=True, dir_okay=False))
@click.argument("playbook", type=click.Path(exists=True, dir_okay=False))
@click.option("--limit", default=None, help="Comma-separated groups/hosts to restrict the run to")
@click.option("--check", "check_mode", is_flag=True, default=False, help="Report what would change without applying")
@click.option("--workers", default=None, type=int, help="Number of hosts applied in parallel")
@click.option("--secrets-file", default=None, type=click.Path(dir_okay=False), help="YAML or KEY=VALUE secrets file")
@click.option("--retries", default=0, show_default=True, type=click.IntRange(min=0), help="Retry a failing assertion this many times")
@click.pass_context
def deploy(ctx, inventory, playbook, limit, check_mode, workers, secrets_file, retries):
    """Apply a playbook of resource assertions to inventory hosts."""
    console = get_console()
    try:
        inv = load_inventory(inventory)
        book = load_playbook(playbook)
        secrets = _secrets(secrets_file)
        results = deploy_targets(
            inv,
            book,
            limit=limit,
            max_workers=workers,
            check_mode=check_mode,
            retry=RetryPolicy(attempts=retries + 1),
            secrets=secrets,
        )
    except ParseError as e:
        console.print_error("Invalid deployment definition", str(e).splitlines()[0], details=str(e).splitlines()[1:])
        sys.exit(1)
    except (PipewrightError, OSError) as e:
        console.print_exception(e)
        sys.exit(1)

    if not results:
        console.print_info("No hosts matched.")
        return

    console.print_apply_results(results)
    if any(r.status is not ApplyStatus.OK for r in results):
        sys.exit(1)


@cli.command()
@click.option("--host", default=settings.API_HOST, show_default=True)
@click.option("--port", default=settings.API_PORT, show_default=True, type=int)
@click.option("--workdir", default=".", show_default=True, type=click.Path(file_okay=False), help="Workspace runs execute in")
def serve(host, port, workdir):
    """Start the control-plane API."""
    import uvicorn

    from .server.app import create_app

    uvicorn.run(create_app(workdir), host=host, port=port)


if __name__ == "__main__":
    cli()
