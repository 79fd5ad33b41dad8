import sys
from threading import Event, Lock

import pytest

# Ensure project root is importable (so `import wrc` works without installing the package)
import os as _os
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from wrc.controller import ControlPlane  # noqa: E402
from wrc.db import Database  # noqa: E402
from wrc.models import (  # noqa: E402
    InstanceStatus,
    Probe,
    RolloutPhase,
    RolloutPolicy,
    Selector,
    Template,
    WorkloadSpec,
)


class FakeClock:
    """Manually advanced clock so backoff and windows are deterministic."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRuntime:
    """In-memory InstanceRuntime with failure injection.

    - fail_creates / fail_terminates: number of upcoming calls that raise
    - create_gate: when set to an Event, create() blocks on it after recording the call
    - probes: per-instance probe override (default_probe otherwise)
    """

    def __init__(self):
        self.lock = Lock()
        self.instances: dict[str, dict] = {}
        self.create_calls: list[str] = []
        self.terminate_calls: list[str] = []
        self.fail_creates = 0
        self.fail_terminates = 0
        self.create_gate: Event | None = None
        self.create_started = Event()
        self.probes: dict[str, Probe] = {}
        self.default_probe = Probe.READY
        self.peak = 0

    def create(self, instance_id, template, labels):
        with self.lock:
            self.create_calls.append(instance_id)
            if self.fail_creates > 0:
                self.fail_creates -= 1
                raise RuntimeError("image pull failed")
        self.create_started.set()
        if self.create_gate is not None:
            self.create_gate.wait(10)
        with self.lock:
            if instance_id not in self.instances:
                self.instances[instance_id] = {"template": template, "labels": dict(labels)}
            self.peak = max(self.peak, len(self.instances))
            return f"ref-{instance_id}"

    def terminate(self, instance_id):
        with self.lock:
            self.terminate_calls.append(instance_id)
            if self.fail_terminates > 0:
                self.fail_terminates -= 1
                raise RuntimeError("daemon busy")
            self.instances.pop(instance_id, None)

    def probe(self, instance_id):
        with self.lock:
            if instance_id not in self.instances:
                return Probe.UNKNOWN
            return self.probes.get(instance_id, self.default_probe)


def build_spec(
    name="web",
    replicas=3,
    image="nginx:1",
    max_surge=1,
    max_unavailable=0,
    labels=None,
    min_replicas=0,
    max_replicas=None,
):
    labels = labels or {"app": name}
    return WorkloadSpec(
        name=name,
        replicas=replicas,
        template=Template(spec={"image": image, "port": 8000}, labels=dict(labels)),
        selector=Selector(match_labels=dict(labels)),
        policy=RolloutPolicy(max_surge=max_surge, max_unavailable=max_unavailable),
        min_replicas=min_replicas,
        max_replicas=max_replicas,
    )


def mark_started_ready(plane, name):
    """Report every Starting instance of ``name`` as ready. Returns the events produced."""
    starting = [r for r in plane.list_instances(name) if r.status == InstanceStatus.STARTING]
    events = [plane.monitor.observe(r.id, Probe.READY) for r in starting]
    return [e for e in events if e is not None]


def settle(plane, name, rounds=50, after_sync=None):
    """Run passes (marking new instances ready) until nothing changes anymore."""
    for _ in range(rounds):
        result = plane.sync(name)
        if after_sync is not None:
            after_sync()
        events = mark_started_ready(plane, name)
        spec = plane.store.find(name)
        idle = spec is None or spec.rollout.phase == RolloutPhase.IDLE
        if result.converged and not events and idle:
            return result
    raise AssertionError(f"workload {name} did not settle in {rounds} rounds")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db(tmp_path):
    d = Database(str(tmp_path / "wrc-test.db"))
    d.init_db()
    return d


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def plane(runtime, db, clock):
    p = ControlPlane(runtime, db=db, clock=clock, runtime_timeout_s=5.0)
    yield p
    if runtime.create_gate is not None:
        runtime.create_gate.set()
    p.close()


@pytest.fixture(autouse=True)
def no_email(monkeypatch):
    """Alerts must never try to reach an SMTP server from tests."""
    monkeypatch.setattr("wrc.alerts.send_email", lambda subject, body: False)
