# deploy/applier.py
"""
Remote deployment applier.

For every target the assertions are applied in declared order, since later
ones ("container running") depend on earlier ones ("engine installed",
"network exists"). The first failure stops the target; nothing already
applied is rolled back.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from .. import settings
from ..errors import ApplyFailure, ConnectivityError, PipewrightError, ToolUnavailable
from ..retry import NO_RETRY, RetryPolicy
from ..secret_store import EMPTY, SecretStore
from ..ui.console import get_console
from .assertions import ResourceAssertion
from .connection import Connection
from .inventory import Host, Inventory, Playbook

logger = logging.getLogger(__name__)


class AssertionStatus(str, Enum):
    OK = "ok"
    CHANGED = "changed"
    WOULD_CHANGE = "would-change"
    FAILED = "failed"
    NOT_RUN = "not-run"


class ApplyStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    UNREACHABLE = "unreachable"


@dataclass
class AssertionResult:
    index: int
    description: str
    status: AssertionStatus
    error: Optional[str] = None
    unreachable: bool = False


@dataclass
class DeploymentTarget:
    host: Host
    assertions: List[ResourceAssertion] = field(default_factory=list)


@dataclass
class ApplyResult:
    host: str
    status: ApplyStatus
    results: List[AssertionResult] = field(default_factory=list)
    failed_at: Optional[int] = None
    error: Optional[str] = None

    @property
    def changed(self) -> int:
        return sum(1 for r in self.results if r.status in (AssertionStatus.CHANGED, AssertionStatus.WOULD_CHANGE))

    @property
    def ok_count(self) -> int:
        return sum(1 for r in self.results if r.status is AssertionStatus.OK)

    def to_dict(self) -> dict:
        return {
            "host": self.host,
            "status": self.status.value,
            "changed": self.changed,
            "failed_at": self.failed_at,
            "error": self.error,
            "results": [
                {"index": r.index, "description": r.description, "status": r.status.value, "error": r.error}
                for r in self.results
            ],
        }


def _apply_one(
    assertion: ResourceAssertion,
    conn: Connection,
    check_mode: bool,
) -> AssertionStatus:
    if assertion.check(conn):
        return AssertionStatus.OK
    if check_mode:
        return AssertionStatus.WOULD_CHANGE
    assertion.apply(conn)
    if not assertion.check(conn):
        raise PipewrightError("corrective action ran but the assertion still does not hold")
    return AssertionStatus.CHANGED


def apply(
    target: DeploymentTarget,
    assertions: Optional[Sequence[ResourceAssertion]] = None,
    connection: Optional[Connection] = None,
    *,
    check_mode: bool = False,
    retry: RetryPolicy = NO_RETRY,
    secrets: SecretStore = EMPTY,
) -> ApplyResult:
    """
    Apply `assertions` (default: the target's own) to one host.

    Unreachable hosts yield status=unreachable; the first assertion that
    cannot be satisfied yields status=failed with `failed_at` set and the
    remaining assertions reported as not-run.
    """
    console = get_console()
    items = list(target.assertions if assertions is None else assertions)
    host = target.host.name
    result = ApplyResult(host=host, status=ApplyStatus.OK)

    console.print_target_started(host, len(items))
    try:
        conn = connection or target.host.connect()
        conn.redact = secrets.redact
        conn.ping()
    except (ConnectivityError, ToolUnavailable) as e:
        logger.warning("%s", e)
        result.status = ApplyStatus.UNREACHABLE
        result.error = str(e)
        result.results = [AssertionResult(i, a.describe(), AssertionStatus.NOT_RUN) for i, a in enumerate(items)]
        console.print_failure(host, str(e), is_job=True)
        return result

    for index, assertion in enumerate(items):
        description = assertion.describe()
        if result.failed_at is not None:
            result.results.append(AssertionResult(index, description, AssertionStatus.NOT_RUN))
            continue

        def attempt() -> AssertionResult:
            try:
                return AssertionResult(index, description, _apply_one(assertion, conn, check_mode))
            except ConnectivityError as e:
                return AssertionResult(index, description, AssertionStatus.FAILED, str(e), unreachable=True)
            except PipewrightError as e:
                return AssertionResult(index, description, AssertionStatus.FAILED, secrets.redact(str(e)))

        outcome = retry.call(attempt, lambda r: r.status is not AssertionStatus.FAILED)
        result.results.append(outcome)
        console.print_assertion(host, description, outcome.status.value)

        if outcome.status is AssertionStatus.FAILED:
            failure = ApplyFailure(host=host, index=index, assertion=description, message=outcome.error or "")
            result.status = ApplyStatus.UNREACHABLE if outcome.unreachable else ApplyStatus.FAILED
            result.failed_at = index
            result.error = str(failure)
            console.print_failure(host, str(failure), is_job=True)

    return result


def plan_targets(
    inventory: Inventory,
    playbook: Playbook,
    *,
    limit: Optional[str] = None,
    secrets: SecretStore = EMPTY,
) -> List[DeploymentTarget]:
    """
    One DeploymentTarget per host; a host in several plays gets the
    assertions of those plays concatenated in play order.
    """
    allowed = None
    if limit:
        allowed = set()
        for pattern in (p.strip() for p in limit.split(",") if p.strip()):
            allowed.update(h.name for h in inventory.hosts(pattern))

    targets: Dict[str, DeploymentTarget] = {}
    for play in playbook.plays:
        assertions = playbook.assertions_for(play, secrets)
        for host in inventory.hosts(play.hosts):
            if allowed is not None and host.name not in allowed:
                continue
            targets.setdefault(host.name, DeploymentTarget(host=host)).assertions.extend(assertions)
    return list(targets.values())


def deploy(
    inventory: Inventory,
    playbook: Playbook,
    *,
    limit: Optional[str] = None,
    max_workers: Optional[int] = None,
    check_mode: bool = False,
    retry: RetryPolicy = NO_RETRY,
    secrets: SecretStore = EMPTY,
    connect: Callable[[Host], Connection] = lambda host: host.connect(),
) -> List[ApplyResult]:
    """
    Apply the playbook to every selected host. Hosts run in parallel;
    each host's assertions run sequentially on that host only.
    """
    targets = plan_targets(inventory, playbook, limit=limit, secrets=secrets)
    if not targets:
        return []

    workers = max_workers or settings.default_workers()

    def _run(target: DeploymentTarget) -> ApplyResult:
        try:
            conn = connect(target.host)
        except (ConnectivityError, ToolUnavailable) as e:
            return ApplyResult(host=target.host.name, status=ApplyStatus.UNREACHABLE, error=str(e))
        return apply(target, connection=conn, check_mode=check_mode, retry=retry, secrets=secrets)

    with ThreadPoolExecutor(max_workers=min(workers, len(targets))) as pool:
        return list(pool.map(_run, targets))
