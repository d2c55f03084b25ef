"""
Tests for the control-plane API
"""

import time

import pytest
from fastapi.testclient import TestClient

from pipewright.server.app import create_app

PASSING = {
    "name": "ci",
    "jobs": {
        "test": {"steps": [{"run": "true"}]},
        "deploy": {"needs": ["test"], "if": "branch == main", "steps": [{"run": "true"}]},
    },
}


@pytest.fixture
def client(tmp_path):
    return TestClient(create_app(tmp_path))


def _wait(client, run_id, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        body = client.get(f"/runs/{run_id}").json()
        if body["finished_at"] is not None:
            return body
        time.sleep(0.05)
    raise AssertionError(f"run {run_id} did not finish")


class TestRuns:
    """Tests for run submission and inspection"""

    def test_run_to_completion(self, client):
        """Should execute the pipeline and expose per-job states"""
        resp = client.post("/runs", json={"pipeline": PASSING, "context": {"branch": "develop"}})
        assert resp.status_code == 200
        body = _wait(client, resp.json()["run_id"])
        assert body["status"] == "ok"
        assert body["pipeline"] == "ci"
        jobs = body["result"]["jobs"]
        assert jobs["test"]["state"] == "succeeded"
        assert jobs["deploy"]["state"] == "skipped"

    def test_failed_run(self, client):
        """Should report failed when a job fails"""
        pipeline = {"jobs": {"test": {"steps": [{"run": "exit 1"}]}}}
        run_id = client.post("/runs", json={"pipeline": pipeline}).json()["run_id"]
        body = _wait(client, run_id)
        assert body["status"] == "failed"
        assert body["result"]["exit_code"] == 1

    def test_secrets_are_masked(self, client):
        """Should never return secret values"""
        pipeline = {"jobs": {"leak": {"env": {"T": "${{ secrets.TOKEN }}"}, "steps": [{"run": 'echo "$T"'}]}}}
        run_id = client.post("/runs", json={"pipeline": pipeline, "secrets": {"TOKEN": "s3cr3t"}}).json()["run_id"]
        body = _wait(client, run_id)
        assert body["status"] == "ok"
        assert "s3cr3t" not in str(body)

    def test_invalid_pipeline(self, client):
        """Should reject a cyclic pipeline with 422"""
        pipeline = {"jobs": {
            "a": {"needs": ["b"], "steps": [{"run": "true"}]},
            "b": {"needs": ["a"], "steps": [{"run": "true"}]},
        }}
        resp = client.post("/runs", json={"pipeline": pipeline})
        assert resp.status_code == 422
        assert "CycleDetected" in resp.json()["detail"]

    def test_list_runs(self, client):
        """Should list submitted runs"""
        run_id = client.post("/runs", json={"pipeline": PASSING}).json()["run_id"]
        _wait(client, run_id)
        assert [r["run_id"] for r in client.get("/runs").json()] == [run_id]

    def test_unknown_run(self, client):
        """Should return 404 for unknown run ids"""
        assert client.get("/runs/nope").status_code == 404

    def test_cancel_finished_run(self, client):
        """Should refuse to cancel a run that already finished"""
        run_id = client.post("/runs", json={"pipeline": PASSING}).json()["run_id"]
        _wait(client, run_id)
        assert client.post(f"/runs/{run_id}/cancel").status_code == 409

    def test_cancel_running_run(self, client):
        """Should stop scheduling dependents of a cancelled run"""
        pipeline = {"jobs": {
            "slow": {"steps": [{"run": "sleep 1"}]},
            "after": {"needs": ["slow"], "steps": [{"run": "true"}]},
        }}
        run_id = client.post("/runs", json={"pipeline": pipeline}).json()["run_id"]
        assert client.post(f"/runs/{run_id}/cancel").status_code == 200
        body = _wait(client, run_id)
        assert body["status"] == "cancelled"
        assert body["result"]["jobs"]["after"]["state"] == "skipped"
