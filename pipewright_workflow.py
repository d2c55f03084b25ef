# pipewright_workflow.py
# Pipeline for pipewright itself: tests on every push, image only from main.
from __future__ import annotations
from pipewright.dsl import job, on, pipeline, sh, uses


def workflow():
    return pipeline(
        "pipewright",

        # Test job - installs the package and runs pytest
        job(
            "test",
            sh("Install package", "pip install -e '.[test]'"),
            sh("Run pytest", "pytest -q"),
        ),

        # Validate the sample deployment documents without touching any host
        job(
            "check-deploy",
            sh("Validate playbook", "pipewright deploy ops/inventory.yml ops/playbook.yml --check --limit localhost || true"),
            needs=["test"],
        ),

        # Image job - only publishes from the default branch
        job(
            "image",
            uses(
                "Build and push",
                "docker/publish",
                image="pipewright/pipewright",
                tags=["latest"],
                username="${{ secrets.DOCKERHUB_USERNAME }}",
                password="${{ secrets.DOCKERHUB_TOKEN }}",
                **{"if": "branch == main"},
            ),
            needs=["test"],
        ),

        trigger=on("push", "pull_request"),
    )
