from .dsl import job, sh, uses, matrix, wf, on, pipeline, JobBuilder, build
from .loader import load
from .model import Job, JobResult, JobState, PipelineSpec, RunResult, Step, Trigger, TriggerContext
from .scheduler import run

__all__ = [
    "job", "sh", "uses", "matrix", "wf", "on", "pipeline", "JobBuilder", "build",
    "load", "run",
    "Job", "JobResult", "JobState", "PipelineSpec", "RunResult", "Step", "Trigger", "TriggerContext",
]
