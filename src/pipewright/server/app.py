from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .. import scheduler, settings
from ..errors import ParseError
from ..loader import load
from ..model import PipelineSpec, RunResult, TriggerContext
from ..secret_store import SecretStore

logger = logging.getLogger(__name__)

# -------------------- Schemas --------------------

class ContextIn(BaseModel):
    branch: str = ""
    event: str = "push"
    sha: str = ""
    default_branch: str = settings.DEFAULT_BRANCH
    upstream_conclusion: Optional[str] = None
    upstream_workflow: Optional[str] = None
    repository: str = ""


class CreateRunRequest(BaseModel):
    pipeline: Dict[str, Any]
    context: ContextIn = Field(default_factory=ContextIn)
    secrets: Dict[str, str] = Field(default_factory=dict)
    max_workers: Optional[int] = Field(None, ge=1)


class CreateRunResponse(BaseModel):
    run_id: str
    status: str


class RunResponse(BaseModel):
    run_id: str
    pipeline: str
    status: str  # queued|running|ok|failed|cancelled|error
    created_at: datetime
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None


# -------------------- Registry --------------------

def now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RunRecord:
    run_id: str
    spec: PipelineSpec
    context: TriggerContext
    secrets: SecretStore
    max_workers: Optional[int]
    status: str = "queued"
    created_at: datetime = field(default_factory=now_utc)
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    result: Optional[RunResult] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)

    def to_response(self) -> RunResponse:
        return RunResponse(
            run_id=self.run_id,
            pipeline=self.spec.name,
            status=self.status,
            created_at=self.created_at,
            finished_at=self.finished_at,
            error=self.error,
            result=self.result.to_dict() if self.result is not None else None,
        )


class RunRegistry:
    """In-process run records; they live as long as the server process."""

    def __init__(self, workdir: str | Path = "."):
        self.workdir = Path(workdir)
        self._runs: Dict[str, RunRecord] = {}
        self._lock = threading.Lock()

    def get(self, run_id: str) -> RunRecord:
        with self._lock:
            rec = self._runs.get(run_id)
        if rec is None:
            raise HTTPException(status_code=404, detail="Run not found")
        return rec

    def all(self) -> List[RunRecord]:
        with self._lock:
            return list(self._runs.values())

    def submit(self, rec: RunRecord) -> threading.Thread:
        with self._lock:
            self._runs[rec.run_id] = rec
        t = threading.Thread(target=self._execute, args=(rec,), name=f"run-{rec.run_id[:8]}", daemon=True)
        t.start()
        return t

    def _execute(self, rec: RunRecord) -> None:
        rec.status = "running"
        try:
            result = scheduler.run(
                rec.spec,
                rec.context,
                max_workers=rec.max_workers,
                secrets=rec.secrets,
                cancel_event=rec.cancel_event,
                workdir=self.workdir,
            )
        except Exception as e:
            logger.exception("run %s crashed", rec.run_id)
            rec.status = "error"
            rec.error = rec.secrets.redact(f"{type(e).__name__}: {e}")
        else:
            rec.result = result
            if result.cancelled:
                rec.status = "cancelled"
            else:
                rec.status = "failed" if result.exit_code else "ok"
        rec.finished_at = now_utc()


# -------------------- App --------------------

def create_app(workdir: str | Path = ".") -> FastAPI:
    app = FastAPI(title="pipewright control plane")
    registry = RunRegistry(workdir)
    app.state.registry = registry

    @app.post("/runs", response_model=CreateRunResponse)
    def create_run(req: CreateRunRequest):
        try:
            spec = load(req.pipeline)
        except ParseError as e:
            raise HTTPException(status_code=422, detail=str(e))

        rec = RunRecord(
            run_id=str(uuid.uuid4()),
            spec=spec,
            context=TriggerContext(**req.context.model_dump()),
            secrets=SecretStore(req.secrets),
            max_workers=req.max_workers,
        )
        registry.submit(rec)
        return CreateRunResponse(run_id=rec.run_id, status=rec.status)

    @app.get("/runs", response_model=List[RunResponse])
    def list_runs():
        return [r.to_response() for r in registry.all()]

    @app.get("/runs/{run_id}", response_model=RunResponse)
    def get_run(run_id: str):
        return registry.get(run_id).to_response()

    @app.post("/runs/{run_id}/cancel", response_model=RunResponse)
    def cancel_run(run_id: str):
        rec = registry.get(run_id)
        if rec.finished_at is not None:
            raise HTTPException(status_code=409, detail=f"Run already {rec.status}")
        rec.cancel_event.set()
        return rec.to_response()

    return app


app = create_app()
