# actions/docker.py
from __future__ import annotations

import subprocess
from typing import Any, Dict, List

from .. import settings
from ..errors import PublishFailure, StepFailure
from ..publisher import Credentials, DockerRegistry, ImageArtifact, PublishState, publish
from ..tools import check_tool_available, tail
from . import ActionContext, ActionOutput, register


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.replace("\n", ",").split(",") if v.strip()]
    return [str(v) for v in value]


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "yes", "on", "1"):
        return True
    if text in ("false", "no", "off", "0", ""):
        return False
    raise ValueError(f"expected a boolean, got {value!r}")


def _artifact(params: Dict[str, Any]) -> ImageArtifact:
    image = params.get("image")
    if not image:
        raise ValueError("docker action requires an 'image' input")
    return ImageArtifact(
        repository=str(image),
        tags=tuple(_as_list(params.get("tags")) or ["latest"]),
        context=str(params.get("context", ".")),
        dockerfile=params.get("dockerfile"),
        build_args={k: str(v) for k, v in (params.get("build_args") or {}).items()},
    )


def _credentials(params: Dict[str, Any]) -> Credentials | None:
    username, password = params.get("username"), params.get("password")
    if not username and not password:
        return None
    if not (username and password):
        raise ValueError("docker login needs both 'username' and 'password'")
    return Credentials(username=str(username), password=str(password), server=params.get("registry"))


# ---------------------------------------------------------------------
# docker/run: run a command inside a container, workspace mounted
# ---------------------------------------------------------------------

@register("docker/run")
def docker_run(ctx: ActionContext) -> ActionOutput:
    check_tool_available(settings.DOCKER)

    image = ctx.params.get("image")
    command = ctx.params.get("run")
    if not image or not command:
        raise ValueError("docker/run requires 'image' and 'run' inputs")

    container_workdir = "/workspace"
    cmd = [settings.DOCKER, "run", "--rm"]

    # Volume mount: workspace -> /workspace
    cmd.extend(["-v", f"{ctx.workdir.resolve()}:{container_workdir}"])
    for vol in _as_list(ctx.params.get("volumes")):
        cmd.extend(["-v", vol])

    rel = ctx.cwd.resolve().relative_to(ctx.workdir.resolve()) if ctx.cwd.resolve() != ctx.workdir.resolve() else None
    cmd.extend(["-w", f"{container_workdir}/{rel}" if rel else container_workdir])

    # Only declared variables enter the container, never the host environment.
    env = dict(ctx.context.as_env())
    env.update({k: str(v) for k, v in (ctx.params.get("env") or {}).items()})
    for key, value in env.items():
        cmd.extend(["-e", f"{key}={value}"])

    if ctx.params.get("user"):
        cmd.extend(["--user", str(ctx.params["user"])])

    cmd.append(str(image))
    cmd.extend(["sh", "-c", str(command)])

    proc = subprocess.run(cmd, shell=False, text=True, capture_output=True)
    return ActionOutput(
        exit_code=proc.returncode,
        output=tail((proc.stdout or "") + (proc.stderr or ""), settings.OUTPUT_TAIL),
    )


# ---------------------------------------------------------------------
# docker/build: build (and tag) an image without pushing
# ---------------------------------------------------------------------

@register("docker/build")
def docker_build(ctx: ActionContext) -> ActionOutput:
    registry = ctx.registry or DockerRegistry()
    artifact = _artifact(ctx.params)
    try:
        log = registry.build(artifact, workdir=str(ctx.cwd))
    except PublishFailure as e:
        raise StepFailure(job=ctx.job, step=ctx.step, cmd=f"docker build {artifact}", exit_code=e.exit_code or 1) from e
    return ActionOutput(output=tail(log, settings.OUTPUT_TAIL), details={"built": artifact.refs})


# ---------------------------------------------------------------------
# docker/publish: build + conditional push
# ---------------------------------------------------------------------

@register("docker/publish")
def docker_publish(ctx: ActionContext) -> ActionOutput:
    registry = ctx.registry or DockerRegistry()
    artifact = _artifact(ctx.params)

    result = publish(
        artifact,
        ctx.params.get("if"),
        ctx.context,
        registry,
        credentials=_credentials(ctx.params),
        workdir=str(ctx.cwd),
        build=_as_bool(ctx.params.get("build"), default=True),
    )

    if result.state is PublishState.FAILED:
        raise PublishFailure(artifact=result.artifact, message=result.error or "unknown error")

    if result.state is PublishState.SKIPPED:
        return ActionOutput(
            output=f"publish skipped: condition {ctx.params.get('if')!r} is false\n",
            skipped=True,
        )

    return ActionOutput(
        output=tail(result.log, settings.OUTPUT_TAIL) + f"pushed: {', '.join(result.pushed)}\n",
        details={"pushed": result.pushed},
    )
