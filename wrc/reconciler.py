from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Iterable, Sequence

from . import alerts
from .db import Database
from .errors import NotFoundError, TransientRuntimeError
from .health import HealthMonitor
from .instance_runtime import RuntimeCaller
from .models import (
    LIVE_STATUSES,
    InstanceRecord,
    InstanceStatus,
    Template,
    WorkloadSpec,
    instance_labels,
)
from .registry import InstanceRegistry
from .runtime import RuntimeState, backoff_delay
from .settings import settings
from .store import WorkloadStore


def _termination_rank(rec: InstanceRecord) -> tuple[int, float, str]:
    if rec.status == InstanceStatus.FAILED:
        rank = 0
    elif rec.status in (InstanceStatus.PENDING, InstanceStatus.STARTING):
        rank = 1
    elif not rec.ready:
        rank = 2
    else:
        rank = 3
    return rank, rec.created_at, rec.id


def select_for_termination(instances: Iterable[InstanceRecord], count: int) -> list[InstanceRecord]:
    """Pick at most ``count`` instances to terminate.

    Failed first, then Pending/Starting, then alive-but-not-ready, then
    Ready; ties by (created_at, id). The same input always yields the same
    choice.
    """
    if count <= 0:
        return []
    return sorted(instances, key=_termination_rank)[:count]


@dataclass(frozen=True)
class Plan:
    workload: str
    revision: str | None
    create: int = 0
    retry: tuple[str, ...] = ()
    terminate: tuple[str, ...] = ()
    reterminate: tuple[str, ...] = ()

    @property
    def empty(self) -> bool:
        return not (self.create or self.retry or self.terminate or self.reterminate)


def _due(rec: InstanceRecord, now: float, base_s: float, cap_s: float) -> bool:
    return now >= rec.updated_at + backoff_delay(rec.attempts, base_s, cap_s)


def plan_actions(
    name: str,
    spec: WorkloadSpec | None,
    instances: Sequence[InstanceRecord],
    now: float,
    backoff_base_s: float | None = None,
    backoff_cap_s: float | None = None,
    max_create_retries: int | None = None,
    stale_after_s: float | None = None,
    failed_grace_s: float | None = None,
) -> Plan:
    """Diff desired vs. observed state for one workload. Pure.

    Current-revision instances are topped up or trimmed to the desired
    count; superseded revisions are only ever trimmed. Failed creates are
    retried with backoff until they exhaust their retries; after that they
    stay Failed, flagged for an operator, and still hold their replica slot.
    A missing or deleted workload only gets terminations.
    """
    base_s = settings.backoff_base_s if backoff_base_s is None else backoff_base_s
    cap_s = settings.backoff_cap_s if backoff_cap_s is None else backoff_cap_s
    max_retries = max(1, max_create_retries or settings.max_create_retries)
    stale_s = settings.runtime_timeout_s * 2 if stale_after_s is None else stale_after_s
    grace_s = settings.failed_grace_s if failed_grace_s is None else failed_grace_s

    owned = sorted((r for r in instances if r.owner == name), key=lambda r: (r.created_at, r.id))
    live = [r for r in owned if r.status in LIVE_STATUSES]
    reterminate = tuple(
        r.id
        for r in owned
        if r.status == InstanceStatus.TERMINATING
        and (
            (r.failed_op == "terminate" and _due(r, now, base_s, cap_s))
            or (r.failed_op is None and now - r.updated_at >= stale_s)
        )
    )

    if spec is None or spec.deleted:
        return Plan(workload=name, revision=None, terminate=tuple(r.id for r in live), reterminate=reterminate)

    cur_hash = spec.template_hash
    members = [r for r in live if spec.claims(r)]
    strays = [r for r in live if not spec.claims(r)]

    # Liveness failures that did not recover within the grace period. Creates
    # out of retries are not reaped: they keep their slot and their alert.
    reaped = [
        r
        for r in members
        if r.status == InstanceStatus.FAILED and r.failed_op is None and now - r.updated_at >= grace_s
    ]
    cur = [r for r in members if r.revision == cur_hash and r not in reaped]
    old = [r for r in members if r.revision != cur_hash and r not in reaped]

    rollout = spec.rollout
    if rollout.progressing and rollout.to_hash == cur_hash:
        desired_cur = min(rollout.current_desired, spec.replicas)
        desired_old = rollout.old_desired
    else:
        desired_cur = spec.replicas
        desired_old = 0

    surplus = len(cur) - desired_cur
    term_cur = select_for_termination(cur, surplus)
    term_old = select_for_termination(old, len(old) - desired_old)
    create = max(0, -surplus)

    doomed = {r.id for r in term_cur}
    retry = tuple(
        r.id
        for r in cur
        if r.id not in doomed
        and (
            (
                r.status == InstanceStatus.FAILED
                and r.failed_op == "create"
                and r.attempts < max_retries
                and _due(r, now, base_s, cap_s)
            )
            or (r.status == InstanceStatus.PENDING and now - r.updated_at >= stale_s)
        )
    )

    terminate = tuple(r.id for r in (*strays, *reaped, *term_cur, *term_old))
    return Plan(
        workload=name,
        revision=cur_hash,
        create=create,
        retry=retry,
        terminate=terminate,
        reterminate=reterminate,
    )


@dataclass
class ReconcileResult:
    workload: str
    created: list[str] = field(default_factory=list)
    retried: list[str] = field(default_factory=list)
    terminated: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    escalated: list[str] = field(default_factory=list)
    purged: bool = False

    @property
    def converged(self) -> bool:
        """True when the pass found nothing to do."""
        return not (self.created or self.retried or self.terminated or self.failed)


class Reconciler:
    """Drives one workload at a time toward its desired state.

    Level-triggered: every pass re-derives the full diff from the store and
    the registry. Decisions are taken and reserved in the registry under the
    workload lock; runtime calls run after the lock is released.
    """

    def __init__(
        self,
        store: WorkloadStore,
        registry: InstanceRegistry,
        caller: RuntimeCaller,
        db: Database,
        state: RuntimeState | None = None,
        monitor: HealthMonitor | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.registry = registry
        self.caller = caller
        self.db = db
        self.state = state or RuntimeState()
        self.monitor = monitor
        self.clock = clock

    def _publish(self, before: InstanceRecord | None, after: InstanceRecord | None) -> None:
        if self.monitor is not None and before is not None:
            self.monitor.publish(before, after)

    def _move(self, instance_id: str, status: InstanceStatus, expected: Iterable[InstanceStatus], **fields) -> InstanceRecord | None:
        before = self.registry.get(instance_id)
        if before is None:
            return None
        try:
            after = self.registry.transition(instance_id, status, expected=expected, **fields)
        except NotFoundError:
            # Garbage-collected meanwhile.
            return None
        self._publish(before, after)
        return after

    def reconcile(self, name: str) -> ReconcileResult:
        result = ReconcileResult(workload=name)
        with self.state.workload_locks.hold(name):
            spec = self.store.find(name)
            self.registry.collect_garbage(name)
            observed = list(self.registry.iter_instances(name))
            plan = plan_actions(name, spec, observed, self.clock())
            if plan.empty:
                return self._maybe_purge(spec, result)

            doomed: list[str] = []
            for iid in plan.terminate:
                after = self._move(
                    iid,
                    InstanceStatus.TERMINATING,
                    expected=LIVE_STATUSES,
                    attempts=0,
                    failed_op=None,
                )
                if after is not None:
                    doomed.append(iid)
            doomed.extend(plan.reterminate)

            to_create: list[str] = []
            template: Template | None = None
            labels: dict[str, str] = {}
            if spec is not None and not spec.deleted:
                template = spec.template
                labels = instance_labels(spec)
                for _ in range(plan.create):
                    iid = uuid.uuid4().hex[:12]
                    self.registry.add_pending(iid, name, spec.template_hash, labels)
                    to_create.append(iid)
                    result.created.append(iid)
                for iid in plan.retry:
                    after = self._move(
                        iid, InstanceStatus.PENDING, expected={InstanceStatus.FAILED, InstanceStatus.PENDING}
                    )
                    if after is not None:
                        to_create.append(iid)
                        result.retried.append(iid)

        if plan.create:
            self.db.log_event("INFO", f"Creating {plan.create} instance(s)", workload=name, revision=plan.revision)
        if plan.terminate:
            self.db.log_event(
                "INFO", f"Terminating {len(plan.terminate)} instance(s)", workload=name, revision=plan.revision
            )

        # Runtime calls happen outside the workload lock; results land in the registry.
        for iid in doomed:
            if self._terminate(iid, result):
                result.terminated.append(iid)
        if template is not None:
            for iid in to_create:
                self._create(iid, template, labels, result)
        return self._maybe_purge(spec, result)

    def _maybe_purge(self, spec: WorkloadSpec | None, result: ReconcileResult) -> ReconcileResult:
        if spec is None or not spec.deleted:
            return result
        self.registry.collect_garbage(spec.name)
        if self.registry.count(spec.name) == 0:
            self.store.purge(spec.name)
            self.db.log_event("INFO", "Workload deleted", workload=spec.name)
            result.purged = True
        return result

    def _create(self, iid: str, template: Template, labels: dict[str, str], result: ReconcileResult) -> None:
        try:
            ref = self.caller.create(iid, template, labels)
        except TransientRuntimeError as e:
            rec = self.registry.get(iid)
            attempts = (rec.attempts if rec else 0) + 1
            after = self._move(
                iid,
                InstanceStatus.FAILED,
                expected={InstanceStatus.PENDING},
                reason=str(e),
                attempts=attempts,
                failed_op="create",
            )
            result.failed[iid] = str(e)
            if after is None:
                # Terminated while the create was in flight; the create may still have happened.
                self._abandon(iid)
                return
            self.db.log_event(
                "WARN", f"Create of {iid} failed (attempt {attempts}): {e}", workload=after.owner, revision=after.revision
            )
            if attempts >= max(1, settings.max_create_retries):
                self.registry.transition(iid, alert=True)
                result.escalated.append(iid)
                msg = f"Instance {iid} failed to start after {attempts} attempts: {e}"
                self.db.log_event("ERROR", msg, workload=after.owner, revision=after.revision)
                alerts.workload_alert(after.owner, msg)
            return

        after = self._move(
            iid,
            InstanceStatus.STARTING,
            expected={InstanceStatus.PENDING},
            runtime_ref=ref,
            reason=None,
            failed_op=None,
        )
        if after is None:
            self._abandon(iid)
            return
        owner = self.store.find(after.owner)
        if owner is None or owner.deleted:
            # The owner went away while the create was in flight.
            self._move(iid, InstanceStatus.TERMINATING, expected=LIVE_STATUSES, reason="owner deleted")
            self._abandon(iid)

    def _abandon(self, iid: str) -> None:
        """Terminate an instance whose record already moved on (or is gone)."""
        rec = self.registry.get(iid)
        if rec is not None and rec.status == InstanceStatus.TERMINATING:
            self._terminate(iid, ReconcileResult(workload=rec.owner))
            return
        try:
            self.caller.terminate(iid)
        except TransientRuntimeError as e:
            self.db.log_event("ERROR", f"Could not terminate orphaned instance {iid}: {e}")

    def _terminate(self, iid: str, result: ReconcileResult) -> bool:
        try:
            self.caller.terminate(iid)
        except TransientRuntimeError as e:
            rec = self.registry.get(iid)
            if rec is not None:
                self.registry.transition(
                    iid,
                    expected={InstanceStatus.TERMINATING},
                    reason=str(e),
                    attempts=rec.attempts + 1,
                    failed_op="terminate",
                )
                self.db.log_event(
                    "WARN", f"Terminate of {iid} failed: {e}", workload=rec.owner, revision=rec.revision
                )
            result.failed[iid] = str(e)
            return False
        after = self._move(iid, InstanceStatus.TERMINATED, expected={InstanceStatus.TERMINATING}, failed_op=None)
        return after is not None
