import threading
import time

import pytest

from conftest import build_spec
from wrc.controller import ControlLoop
from wrc.errors import ValidationError
from wrc.models import RolloutPhase


@pytest.fixture
def make_loop(plane):
    loops = []

    def _make(**kw):
        loop = ControlLoop(plane, **kw)
        loops.append(loop)
        return loop

    yield _make
    for loop in loops:
        loop.stop()


def test_triggers_coalesce_while_a_pass_is_running(plane, make_loop, monkeypatch):
    gate = threading.Event()
    started = threading.Event()
    calls = []

    def fake_sync(name):
        calls.append(name)
        started.set()
        gate.wait(5)

    monkeypatch.setattr(plane, "sync", fake_sync)
    loop = make_loop(interval_s=60, workers=2)
    loop.start(timer=False)

    loop.trigger("web")
    assert started.wait(5)
    for _ in range(5):
        loop.trigger("web")
    gate.set()

    assert loop.wait_idle(5)
    # Five triggers during the pass collapse into one follow-up pass.
    assert calls == ["web", "web"]
    assert loop.passes == 2


def test_different_workloads_run_concurrently(plane, make_loop, monkeypatch):
    barrier = threading.Barrier(2, timeout=5)
    monkeypatch.setattr(plane, "sync", lambda name: barrier.wait())
    loop = make_loop(interval_s=60, workers=2)
    loop.start(timer=False)

    loop.trigger("a")
    loop.trigger("b")
    assert loop.wait_idle(10)
    assert loop.passes == 2
    assert not [e for e in plane.events() if e["level"] == "ERROR"]


def test_triggers_are_ignored_until_started(plane, make_loop, monkeypatch):
    calls = []
    monkeypatch.setattr(plane, "sync", calls.append)
    loop = make_loop(interval_s=60)

    loop.trigger("web")
    assert calls == []

    loop.start(timer=False)
    plane.apply_workload(build_spec(replicas=1))
    assert loop.wait_idle(5)
    assert "web" in calls


def test_failing_pass_is_logged_and_loop_keeps_going(plane, make_loop, monkeypatch):
    def boom(name):
        raise RuntimeError("kaput")

    monkeypatch.setattr(plane, "sync", boom)
    loop = make_loop(interval_s=60)
    loop.start(timer=False)
    loop.trigger("web")
    assert loop.wait_idle(5)
    assert any("kaput" in e["message"] for e in plane.events(workload="web"))

    loop.trigger("web")
    assert loop.wait_idle(5)
    assert loop.passes == 2


def test_timer_loop_converges_a_workload(plane, make_loop, runtime):
    loop = make_loop(interval_s=0.05, workers=2)
    loop.start()
    plane.apply_workload(build_spec(replicas=2))

    deadline = time.time() + 10
    while time.time() < deadline:
        if plane.get_workload_status("web").ready == 2:
            break
        time.sleep(0.05)
    status = plane.get_workload_status("web")
    assert status.ready == 2
    assert status.available == 2
    assert len(runtime.instances) == 2


def test_apply_is_idempotent(plane):
    first = plane.apply_workload(build_spec(replicas=2))
    again = plane.apply_workload(build_spec(replicas=2))
    assert again.version == first.version
    assert len(plane.revision_history("web")) == 1


def test_apply_while_deleting_is_rejected(plane):
    plane.apply_workload(build_spec(replicas=1))
    plane.delete_workload("web")
    with pytest.raises(ValidationError):
        plane.apply_workload(build_spec(replicas=1))


def test_replica_change_does_not_start_a_rollout(plane):
    plane.apply_workload(build_spec(replicas=1))
    spec = plane.apply_workload(build_spec(replicas=4))
    assert spec.replicas == 4
    assert spec.rollout.phase == RolloutPhase.IDLE


def test_known_workloads_include_orphan_owners(plane):
    plane.apply_workload(build_spec(name="api", replicas=0, labels={"app": "api"}))
    plane.registry.add_pending("x1", "ghost", "rev", {})
    assert plane.known_workloads() == ["api", "ghost"]
