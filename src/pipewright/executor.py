# executor.py
from __future__ import annotations

import logging
import subprocess
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Mapping, Optional

from . import settings
from .actions import ActionContext, get_action
from .conditions import evaluate
from .errors import MissingSecret, PipewrightError, StepFailure
from .model import Job, JobResult, JobState, Step, StepResult, TriggerContext
from .publisher import Registry
from .retry import NO_RETRY, RetryPolicy
from .secret_store import EMPTY, SecretStore
from .tools import tail
from .ui.console import get_console

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def _run_shell(job: Job, step: Step, env: Dict[str, str], cwd: Path, secrets: SecretStore) -> StepResult:
    proc = subprocess.run(
        step.run,
        shell=True,
        cwd=str(cwd),
        env=env,
        text=True,
        capture_output=True,
    )
    output = tail((proc.stdout or "") + (proc.stderr or ""), settings.OUTPUT_TAIL)
    return StepResult(
        name=step.name,
        state=JobState.SUCCEEDED if proc.returncode == step.expect else JobState.FAILED,
        exit_code=proc.returncode,
        output=secrets.redact(output),
    )


def _run_action(
    job: Job,
    step: Step,
    env: Dict[str, str],
    cwd: Path,
    workdir: Path,
    context: TriggerContext,
    secrets: SecretStore,
    registry: Optional[Registry],
) -> StepResult:
    action = get_action(step.uses)
    ctx = ActionContext(
        job=job.name,
        step=step.name,
        params=secrets.resolve(step.params),
        env=env,
        cwd=cwd,
        workdir=workdir,
        context=context,
        registry=registry,
    )
    out = action(ctx)
    if out.skipped:
        state = JobState.SKIPPED
    else:
        state = JobState.SUCCEEDED if out.exit_code == step.expect else JobState.FAILED
    return StepResult(
        name=step.name,
        state=state,
        exit_code=out.exit_code,
        output=secrets.redact(out.output),
        inputs=secrets.redact(step.params),
    )


def _run_step(
    job: Job,
    step: Step,
    job_env: Dict[str, str],
    workdir: Path,
    context: TriggerContext,
    secrets: SecretStore,
    registry: Optional[Registry],
) -> StepResult:
    started = time.monotonic()
    try:
        cwd = (workdir / (step.cwd or ".")).resolve()
        if not cwd.exists():
            raise FileNotFoundError(f"[{job.name}] step '{step.name}' cwd not found: {cwd}")

        env = dict(job_env)
        env.update(secrets.resolve(step.env))

        if step.run is not None:
            result = _run_shell(job, step, env, cwd, secrets)
        else:
            result = _run_action(job, step, env, cwd, workdir, context, secrets, registry)
    except (PipewrightError, OSError, ValueError, KeyError) as e:
        logger.debug("step %s/%s raised %r", job.name, step.name, e)
        result = StepResult(
            name=step.name,
            state=JobState.FAILED,
            exit_code=getattr(e, "exit_code", None),
            error=secrets.redact(str(e)),
            inputs=secrets.redact(step.params),
        )
    result.duration = time.monotonic() - started
    return result


def job_environment(
    job: Job,
    env: Mapping[str, str],
    context: TriggerContext,
    secrets: SecretStore,
) -> Dict[str, str]:
    """Base env + trigger context variables + job env (secret references resolved)."""
    merged = dict(env)
    merged.update(context.as_env())
    merged.update(secrets.resolve(job.env))
    return merged


def execute(
    job: Job,
    env: Mapping[str, str],
    *,
    context: TriggerContext = TriggerContext(),
    secrets: SecretStore = EMPTY,
    workdir: str | Path = ".",
    retry: RetryPolicy = NO_RETRY,
    registry: Optional[Registry] = None,
    cancel_event: Optional[threading.Event] = None,
) -> JobResult:
    """
    Run the steps of `job` strictly in order and return its JobResult.

    The first step whose exit code differs from its `expect` fails the job;
    the remaining steps are recorded as skipped and never run. Secrets only
    enter the subprocess environment / action inputs; everything recorded
    in the result is redacted.
    """
    console = get_console()
    workdir_p = Path(workdir).resolve()
    result = JobResult(job=job.name, state=JobState.RUNNING, started_at=_now())

    try:
        job_env = job_environment(job, env, context, secrets)
    except MissingSecret as e:
        result.state = JobState.FAILED
        result.reason = str(e)
        result.steps = [StepResult(name=s.name, state=JobState.SKIPPED) for s in job.steps]
        result.finished_at = _now()
        console.print_failure(job.name, str(e), is_job=True)
        return result

    failure: Optional[str] = None
    cancelled = False

    for step in job.steps:
        if failure is not None or cancelled:
            result.steps.append(StepResult(name=step.name, state=JobState.SKIPPED))
            continue

        if cancel_event is not None and cancel_event.is_set():
            cancelled = True
            result.steps.append(StepResult(name=step.name, state=JobState.SKIPPED))
            continue

        if not evaluate(step.condition, context):
            result.steps.append(StepResult(name=step.name, state=JobState.SKIPPED, error="condition false"))
            console.print_step(job.name, f"{step.name} (skipped: condition false)")
            continue

        console.print_step(job.name, step.name)
        step_result = retry.call(
            lambda: _run_step(job, step, job_env, workdir_p, context, secrets, registry),
            lambda r: r.state is not JobState.FAILED,
        )
        result.steps.append(step_result)
        console.print_step_output(job.name, step_result.output)

        if step_result.state is JobState.FAILED:
            err = StepFailure(
                job=job.name,
                step=step.name,
                cmd=secrets.redact(step.display),
                exit_code=step_result.exit_code if step_result.exit_code is not None else -1,
                expected=step.expect,
            )
            failure = step_result.error or str(err)
            console.print_failure(step.name, failure, exit_code=step_result.exit_code)

    if failure is not None:
        result.state = JobState.FAILED
        result.reason = failure
    elif cancelled:
        result.state = JobState.SKIPPED
        result.reason = "cancelled"
    else:
        result.state = JobState.SUCCEEDED

    result.finished_at = _now()
    logger.debug("job %s finished: %s", job.name, result.state.value)
    return result
