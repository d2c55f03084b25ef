# scheduler.py
"""
Job scheduler.

Jobs whose dependencies have all succeeded are submitted to a bounded
thread pool; the loop blocks on the next finished future (no polling) and
then releases the dependents of that job. A job that fails or is skipped
skips every transitive dependent, so no job ever starts while one of its
dependencies is not `succeeded`.
"""
from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

from . import settings
from .conditions import evaluate
from .dag import build_dag, dependents, topo_levels
from .executor import execute
from .model import Job, JobResult, JobState, PipelineSpec, RunResult, TriggerContext
from .publisher import Registry
from .retry import NO_RETRY, RetryPolicy
from .secret_store import EMPTY, SecretStore
from .ui.console import get_console

logger = logging.getLogger(__name__)

Executor = Callable[..., JobResult]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class _Run:
    """
    Mutable state of one scheduler run. Only the scheduling thread touches
    it, except that a worker marks its own job running when it picks it up.
    """

    def __init__(self, spec: PipelineSpec):
        self.spec = spec
        self.by_name: Dict[str, Job] = {j.name: j for j in spec.jobs}
        self.adj, self.indeg = build_dag(spec.jobs)
        topo_levels(self.adj, self.indeg)  # raises on cycles
        self.remaining = dict(self.indeg)
        self.results: Dict[str, JobResult] = {j.name: JobResult(job=j.name) for j in spec.jobs}

    def pending(self) -> List[str]:
        return [n for n, r in self.results.items() if r.state is JobState.PENDING]

    def skip(self, name: str, reason: str) -> None:
        r = self.results[name]
        if r.state.terminal:
            return
        r.state = JobState.SKIPPED
        r.reason = reason
        r.finished_at = _now()
        get_console().print_job_skipped(name, reason)

    def cascade_skip(self, name: str) -> None:
        """Skip every transitive dependent of `name` that has not started."""
        for dep in sorted(dependents(self.adj, name)):
            if self.results[dep].state is JobState.PENDING:
                self.skip(dep, f"dependency '{name}' {self.results[name].state.value}")

    def release(self, name: str) -> List[str]:
        """Mark `name` succeeded for its dependents; return newly ready jobs."""
        ready = []
        for child in sorted(self.adj[name]):
            self.remaining[child] -= 1
            if self.remaining[child] == 0 and self.results[child].state is JobState.PENDING:
                ready.append(child)
        return ready


def run(
    spec: PipelineSpec,
    trigger_context: TriggerContext,
    *,
    max_workers: Optional[int] = None,
    secrets: SecretStore = EMPTY,
    cancel_event: Optional[threading.Event] = None,
    workdir: str | Path = ".",
    retry: RetryPolicy = NO_RETRY,
    registry: Optional[Registry] = None,
    base_env: Optional[Mapping[str, str]] = None,
    executor: Executor = execute,
) -> RunResult:
    """
    Run every job of `spec` and return once all of them are terminal.

    Failures are never retried at job level and never raised: every job's
    terminal state is in the returned RunResult.
    """
    console = get_console()
    state = _Run(spec)
    cancel_event = cancel_event or threading.Event()

    if not spec.trigger.matches(trigger_context):
        logger.info("trigger of %r does not match %s/%s", spec.name, trigger_context.event, trigger_context.branch)
        for name in state.results:
            state.skip(name, "trigger not matched")
        return RunResult(pipeline=spec.name, jobs=state.results, trigger_matched=False)

    # secrets reach steps only through explicit references
    env = {
        k: v for k, v in (os.environ if base_env is None else base_env).items()
        if not k.startswith(settings.SECRET_ENV_PREFIX)
    }
    env.update(spec.env)

    if max_workers is None:
        max_workers = settings.default_workers()

    ready: List[str] = sorted(n for n, d in state.indeg.items() if d == 0)
    in_flight: Dict[Future, str] = {}

    def _launch(job: Job, *args, **kwargs) -> JobResult:
        # worker thread: a queued job stays pending until a worker is free
        r = state.results[job.name]
        r.state = JobState.RUNNING
        r.started_at = _now()
        console.print_job_start(job.name)
        return executor(job, *args, **kwargs)

    def _start(name: str, pool: ThreadPoolExecutor) -> None:
        job = state.by_name[name]
        if not evaluate(job.condition, trigger_context):
            state.skip(name, f"condition false: {job.condition}")
            state.cascade_skip(name)
            return
        fut = pool.submit(
            _launch,
            job,
            env,
            context=trigger_context,
            secrets=secrets,
            workdir=workdir,
            retry=retry,
            registry=registry,
            cancel_event=cancel_event,
        )
        in_flight[fut] = name

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        while ready or in_flight:
            if cancel_event.is_set():
                ready.clear()
            while ready:
                _start(ready.pop(0), pool)

            if not in_flight:
                break

            done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
            for fut in done:
                name = in_flight.pop(fut)
                try:
                    jr = fut.result()
                except Exception as e:  # executor bug or unexpected error: keep it visible
                    logger.exception("job %s crashed", name)
                    jr = state.results[name]
                    jr.state = JobState.FAILED
                    jr.reason = f"{type(e).__name__}: {e}"
                    jr.finished_at = _now()

                if jr.started_at is None:
                    jr.started_at = state.results[name].started_at
                state.results[name] = jr

                if jr.state is JobState.SUCCEEDED:
                    console.print_success(name)
                    ready.extend(state.release(name))
                else:
                    if jr.state is JobState.FAILED:
                        console.print_failure(name, jr.reason or "failed", is_job=True)
                    else:
                        console.print_job_skipped(name, jr.reason or "skipped")
                    state.cascade_skip(name)

    cancelled = cancel_event.is_set()
    for name in state.pending():
        state.skip(name, "cancelled" if cancelled else "not scheduled")

    return RunResult(pipeline=spec.name, jobs=state.results, cancelled=cancelled)
