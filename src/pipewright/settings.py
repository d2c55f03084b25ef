from __future__ import annotations
import os

_workers = os.environ.get("PIPEWRIGHT_WORKERS")
WORKERS = int(_workers) if _workers else None

DEFAULT_BRANCH = os.environ.get("PIPEWRIGHT_DEFAULT_BRANCH", "main")
DOCKER = os.environ.get("PIPEWRIGHT_DOCKER", "docker")

SSH_OPTIONS = os.environ.get("PIPEWRIGHT_SSH_OPTIONS", "-o BatchMode=yes -o StrictHostKeyChecking=accept-new")
CONNECT_TIMEOUT = int(os.environ.get("PIPEWRIGHT_CONNECT_TIMEOUT", "10"))

SECRET_ENV_PREFIX = os.environ.get("PIPEWRIGHT_SECRET_PREFIX", "PIPEWRIGHT_SECRET_")
OUTPUT_TAIL = int(os.environ.get("PIPEWRIGHT_OUTPUT_TAIL", "4000"))

API_HOST = os.environ.get("PIPEWRIGHT_API_HOST", "127.0.0.1")
API_PORT = int(os.environ.get("PIPEWRIGHT_API_PORT", "8000"))


def default_workers() -> int:
    if WORKERS:
        return max(1, WORKERS)
    c = os.cpu_count() or 2
    return max(1, c - 1)
