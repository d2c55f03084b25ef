"""
Unit tests for the remote deployment applier
"""

import logging
import subprocess
from dataclasses import dataclass
from typing import ClassVar

import pytest

from pipewright.deploy import (
    ApplyStatus,
    AssertionStatus,
    CommandResult,
    Connection,
    ContainerRunning,
    DeploymentTarget,
    Host,
    LocalConnection,
    PackageInstalled,
    ResourceAssertion,
    SSHConnection,
    apply,
    deploy,
    load_inventory,
    load_playbook,
    plan_targets,
)
from pipewright.deploy import connection as connection_module
from pipewright.deploy.assertions import CommandFailed
from pipewright.errors import ConnectivityError, MissingSecret, ParseError
from pipewright.retry import RetryPolicy
from pipewright.secret_store import SecretStore


class FakeConnection(Connection):
    """In-memory host: a set of satisfied facts plus a reachability switch"""

    def __init__(self, host="web-1", reachable=True):
        self.host = host
        self.become = False
        self.reachable = reachable
        self.facts = set()
        self.commands = []

    def run(self, command):
        self.commands.append(command)
        if not self.reachable:
            return CommandResult(255, "", "ssh: connect to host web-1 port 22: Connection refused")
        return CommandResult(0)


class ScriptedConnection(Connection):
    """Answers commands by substring; anything unscripted succeeds"""

    def __init__(self, host="web-1", become=False, script=None):
        self.host = host
        self.become = become
        self.script = script or {}
        self.commands = []

    def run(self, command):
        self.commands.append(command)
        for needle, result in self.script.items():
            if needle in command:
                return result
        return CommandResult(0)


@dataclass
class Fact(ResourceAssertion):
    kind: ClassVar[str] = "fact"
    name: str
    broken: bool = False
    stubborn: bool = False

    def describe(self):
        return f"fact {self.name}"

    def check(self, conn):
        return self.name in conn.facts

    def apply(self, conn):
        if self.broken:
            raise CommandFailed(command=f"set {self.name}", exit_code=2, stderr="permission denied")
        if not self.stubborn:
            conn.facts.add(self.name)


def _target(*assertions):
    return DeploymentTarget(host=Host("web-1"), assertions=list(assertions))


class TestApply:
    """Tests for apply()"""

    def test_apply_in_order(self):
        """Should apply every unsatisfied assertion"""
        conn = FakeConnection()
        result = apply(_target(Fact("engine"), Fact("network"), Fact("app")), connection=conn)
        assert result.status is ApplyStatus.OK
        assert [r.status for r in result.results] == [AssertionStatus.CHANGED] * 3
        assert result.changed == 3
        assert conn.facts == {"engine", "network", "app"}

    def test_second_run_changes_nothing(self):
        """Should be idempotent: re-applying converged state is a no-op"""
        conn = FakeConnection()
        target = _target(Fact("engine"), Fact("app"))
        apply(target, connection=conn)
        again = apply(target, connection=conn)
        assert again.status is ApplyStatus.OK
        assert again.changed == 0
        assert again.ok_count == 2

    def test_failure_stops_without_rollback(self):
        """Should report failed_at and leave earlier changes in place"""
        conn = FakeConnection()
        result = apply(_target(Fact("engine"), Fact("network", broken=True), Fact("app")), connection=conn)
        assert result.status is ApplyStatus.FAILED
        assert result.failed_at == 1
        assert [r.status for r in result.results] == [
            AssertionStatus.CHANGED, AssertionStatus.FAILED, AssertionStatus.NOT_RUN,
        ]
        assert conn.facts == {"engine"}
        assert "assertion #1 (fact network)" in result.error
        assert "permission denied" in result.error

    def test_unconverged_assertion_fails(self):
        """Should fail when the corrective action does not satisfy the check"""
        result = apply(_target(Fact("engine", stubborn=True)), connection=FakeConnection())
        assert result.status is ApplyStatus.FAILED
        assert "still does not hold" in result.results[0].error

    def test_unreachable_host(self):
        """Should report unreachable and run nothing"""
        conn = FakeConnection(reachable=False)
        result = apply(_target(Fact("engine"), Fact("app")), connection=conn)
        assert result.status is ApplyStatus.UNREACHABLE
        assert [r.status for r in result.results] == [AssertionStatus.NOT_RUN] * 2
        assert conn.commands == ["true"]
        assert "unreachable" in result.error

    def test_check_mode(self):
        """Should report would-change without applying"""
        conn = FakeConnection()
        conn.facts.add("engine")
        result = apply(_target(Fact("engine"), Fact("app")), connection=conn, check_mode=True)
        assert [r.status for r in result.results] == [AssertionStatus.OK, AssertionStatus.WOULD_CHANGE]
        assert conn.facts == {"engine"}

    def test_retry(self):
        """Should retry a failing assertion when a retry policy allows it"""
        @dataclass
        class Flaky(Fact):
            attempts: int = 0

            def apply(self, conn):
                self.attempts += 1
                if self.attempts == 1:
                    raise CommandFailed(command="apt-get", exit_code=100, stderr="lock held")
                conn.facts.add(self.name)

        result = apply(_target(Flaky("engine")), connection=FakeConnection(), retry=RetryPolicy(attempts=2))
        assert result.status is ApplyStatus.OK

    def test_error_is_redacted(self):
        """Should mask secrets in recorded errors"""
        @dataclass
        class Leaky(Fact):
            def apply(self, conn):
                raise CommandFailed(command="login", exit_code=1, stderr="bad password hunter2")

        result = apply(_target(Leaky("x")), connection=FakeConnection(), secrets=SecretStore({"PW": "hunter2"}))
        assert "hunter2" not in result.results[0].error

    def test_debug_log_is_redacted(self, monkeypatch, caplog):
        """Should mask secret env values in logged remote commands"""
        monkeypatch.setattr(
            connection_module.subprocess, "run",
            lambda args, **kw: subprocess.CompletedProcess(args, 0, stdout="", stderr=""),
        )
        caplog.set_level(logging.DEBUG, logger="pipewright.deploy.connection")
        container = ContainerRunning(name="app", image="acme/app:1.0", env={"DB_PASSWORD": "hunter2-topsecret"})
        apply(_target(container), connection=LocalConnection(),
              secrets=SecretStore({"DB_PASSWORD": "hunter2-topsecret"}))
        assert "docker run -d" in caplog.text
        assert "hunter2-topsecret" not in caplog.text


class TestResourceAssertions:
    """Tests for the built-in assertions against scripted hosts"""

    def test_container_matching_hash_is_satisfied(self):
        """Should treat a running container with the same config label as converged"""
        c = ContainerRunning(name="app", image="acme/app:1.0", env={"A": "1"})
        conn = ScriptedConnection(script={"inspect": CommandResult(0, f"true|{c.config_hash()}\n")})
        assert c.check(conn) is True

    def test_container_config_change_needs_recreate(self):
        """Should not be satisfied when the desired config changed"""
        old = ContainerRunning(name="app", image="acme/app:1.0")
        new = ContainerRunning(name="app", image="acme/app:1.1")
        assert old.config_hash() != new.config_hash()
        conn = ScriptedConnection(script={"inspect": CommandResult(0, f"true|{old.config_hash()}\n")})
        assert new.check(conn) is False

    def test_container_apply_recreates(self):
        """Should remove the old container, run the new one and join extra networks"""
        c = ContainerRunning(name="app", image="acme/app:1.1", networks=["front", "back"], ports=["80:8000"], pull=True)
        conn = ScriptedConnection(script={"inspect": CommandResult(0, "true|stale\n")})
        c.apply(conn)
        cmds = conn.commands
        assert any(cmd.startswith("docker rm -f app") for cmd in cmds)
        assert any(cmd.startswith("docker pull acme/app:1.1") for cmd in cmds)
        run_cmd = next(cmd for cmd in cmds if cmd.startswith("docker run -d"))
        assert f"pipewright.config={c.config_hash()}" in run_cmd
        assert "--network front" in run_cmd and "-p 80:8000" in run_cmd
        assert cmds[-1] == "docker network connect back app"

    def test_privileged_commands_use_sudo(self):
        """Should wrap corrective actions in sudo when become is set"""
        conn = ScriptedConnection(become=True)
        PackageInstalled(name="docker.io").apply(conn)
        assert conn.commands[0].startswith("sudo -n sh -c ")
        assert "apt-get install -y -qq docker.io" in conn.commands[0]

    def test_failed_command_raises(self):
        """Should raise CommandFailed with the last stderr line"""
        conn = ScriptedConnection(script={"apt-get": CommandResult(100, "", "E: Unable to locate package nope\n")})
        with pytest.raises(CommandFailed) as exc:
            PackageInstalled(name="nope").apply(conn)
        assert "Unable to locate package" in str(exc.value)


class TestConnections:
    """Tests for SSH and local connections"""

    def test_ssh_argv(self):
        """Should build a non-interactive ssh command line"""
        conn = SSHConnection("203.0.113.10", user="deploy", key_path="/keys/id", port=2222,
                             options="-o BatchMode=yes", connect_timeout=5)
        assert conn.argv("uptime") == [
            "ssh", "-o", "BatchMode=yes", "-o", "ConnectTimeout=5", "-p", "2222",
            "-i", "/keys/id", "deploy@203.0.113.10", "--", "uptime",
        ]

    def test_ssh_connection_failure(self, monkeypatch):
        """Should raise ConnectivityError when ssh itself fails"""
        monkeypatch.setattr(
            connection_module.subprocess, "run",
            lambda args, **kw: subprocess.CompletedProcess(args, 255, stdout="", stderr="Connection timed out\n"),
        )
        with pytest.raises(ConnectivityError) as exc:
            SSHConnection("203.0.113.10").run("true")
        assert exc.value.host == "203.0.113.10"

    def test_local_connection(self):
        """Should run commands through the local shell"""
        res = LocalConnection().run("echo hi && exit 4")
        assert res.exit_code == 4
        assert res.stdout == "hi\n"


INVENTORY = {
    "groups": {
        "web": {
            "vars": {"user": "deploy", "become": True},
            "hosts": ["10.0.0.1", {"host": "10.0.0.2", "port": 2222, "user": "root"}],
        },
        "local": {"hosts": ["localhost"]},
    }
}

PLAYBOOK = {
    "roles": {
        "engine": [{"package": {"name": "docker.io"}}, {"service": {"name": "docker", "enabled": True}}],
        "app": [
            {"network": {"name": "app-net"}},
            {"container": {
                "name": "app",
                "image": "acme/app:1.0",
                "networks": ["app-net"],
                "env": {"DB_PASSWORD": "${{ secrets.DB_PASSWORD }}", "WORKERS": 4},
            }},
        ],
    },
    "plays": [
        {"hosts": "web", "roles": ["engine", "app"]},
        {"hosts": "10.0.0.2", "roles": ["app"]},
    ],
}


class TestInventoryAndPlaybook:
    """Tests for inventory / playbook documents"""

    def test_inventory_hosts(self):
        """Should merge group vars into hosts"""
        inv = load_inventory(INVENTORY)
        first, second = inv.hosts("web")
        assert (first.name, first.user, first.port, first.become) == ("10.0.0.1", "deploy", 22, True)
        assert (second.user, second.port) == ("root", 2222)
        assert isinstance(first.connect(), SSHConnection)
        assert isinstance(inv.hosts("localhost")[0].connect(), LocalConnection)
        assert len(inv.hosts("all")) == 3

    def test_unknown_host_pattern(self):
        """Should reject a pattern that names nothing"""
        with pytest.raises(ParseError):
            load_inventory(INVENTORY).hosts("db")

    def test_inventory_from_yaml(self, tmp_path):
        """Should read an inventory file"""
        path = tmp_path / "inventory.yml"
        path.write_text("groups:\n  web:\n    hosts: [\"10.0.0.1\"]\n")
        assert [h.name for h in load_inventory(path).hosts("web")] == ["10.0.0.1"]

    def test_playbook_resolves_secrets(self):
        """Should resolve secrets into assertion parameters"""
        book = load_playbook(PLAYBOOK)
        assertions = book.assertions_for(book.plays[0], SecretStore({"DB_PASSWORD": "pw"}))
        assert [a.kind for a in assertions] == ["package", "service", "network", "container"]
        assert assertions[-1].env == {"DB_PASSWORD": "pw", "WORKERS": "4"}

    def test_playbook_missing_secret(self):
        """Should raise MissingSecret when building assertions without the secret"""
        book = load_playbook(PLAYBOOK)
        with pytest.raises(MissingSecret):
            book.assertions_for(book.plays[0])

    @pytest.mark.parametrize("doc", [
        {"roles": {}, "plays": [{"hosts": "web", "roles": ["app"]}]},
        {"roles": {"app": [{"teleport": {"name": "x"}}]}, "plays": [{"hosts": "web", "roles": ["app"]}]},
        {"roles": {"app": [{"container": {"image": "x"}}]}, "plays": [{"hosts": "web", "roles": ["app"]}]},
        {"roles": {"app": [{"network": {"name": "n"}, "volume": {"name": "v"}}]}, "plays": [{"hosts": "web", "roles": ["app"]}]},
    ])
    def test_invalid_playbook(self, doc):
        """Should reject unknown roles, kinds and parameters"""
        with pytest.raises(ParseError):
            load_playbook(doc)

    def test_plan_targets_concatenates_plays(self):
        """Should give a host in several plays the assertions of all of them, in order"""
        targets = plan_targets(load_inventory(INVENTORY), load_playbook(PLAYBOOK),
                               secrets=SecretStore({"DB_PASSWORD": "pw"}))
        by_host = {t.host.name: [a.kind for a in t.assertions] for t in targets}
        assert by_host["10.0.0.1"] == ["package", "service", "network", "container"]
        assert by_host["10.0.0.2"] == ["package", "service", "network", "container", "network", "container"]

    def test_plan_targets_limit(self):
        """Should restrict targets to the limit pattern"""
        targets = plan_targets(load_inventory(INVENTORY), load_playbook(PLAYBOOK), limit="10.0.0.1",
                               secrets=SecretStore({"DB_PASSWORD": "pw"}))
        assert [t.host.name for t in targets] == ["10.0.0.1"]


class TestDeploy:
    """Tests for deploy() across hosts"""

    def test_hosts_are_independent(self):
        """Should apply reachable hosts even when another is unreachable"""
        app = ContainerRunning(name="app", image="acme/app:1.0", networks=["app-net"],
                               env={"DB_PASSWORD": "pw", "WORKERS": "4"})
        healthy = ScriptedConnection("10.0.0.1", script={"inspect": CommandResult(0, f"true|{app.config_hash()}\n")})
        conns = {"10.0.0.1": healthy, "10.0.0.2": FakeConnection("10.0.0.2", reachable=False)}
        results = deploy(
            load_inventory(INVENTORY),
            load_playbook(PLAYBOOK),
            secrets=SecretStore({"DB_PASSWORD": "pw"}),
            connect=lambda host: conns[host.name],
        )
        status = {r.host: r.status for r in results}
        assert status == {"10.0.0.1": ApplyStatus.OK, "10.0.0.2": ApplyStatus.UNREACHABLE}

    def test_connect_error(self):
        """Should report a host whose connection cannot be opened as unreachable"""
        def connect(host):
            raise ConnectivityError(host=host.name, message="no route to host")

        results = deploy(load_inventory(INVENTORY), load_playbook(PLAYBOOK), limit="10.0.0.1",
                         secrets=SecretStore({"DB_PASSWORD": "pw"}), connect=connect)
        assert [r.status for r in results] == [ApplyStatus.UNREACHABLE]
        assert "no route to host" in results[0].error
