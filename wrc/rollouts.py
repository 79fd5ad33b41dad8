from __future__ import annotations

import time
from dataclasses import dataclass, replace
from typing import Callable

from . import alerts
from .db import Database
from .errors import ConvergenceStall, NotFoundError, ValidationError
from .models import (
    LIVE_STATUSES,
    InstanceRecord,
    RevisionEntry,
    RolloutOutcome,
    RolloutPhase,
    RolloutState,
    Selector,
    WorkloadSpec,
)
from .registry import InstanceRegistry
from .runtime import RuntimeState
from .settings import settings
from .store import WorkloadStore


@dataclass(frozen=True)
class FleetCounts:
    """Live / available instance counts of one workload, split by revision."""

    live_cur: int
    available_cur: int
    live_old: int
    available_old: int

    @classmethod
    def observe(cls, spec: WorkloadSpec, instances: list[InstanceRecord]) -> "FleetCounts":
        cur_hash = spec.template_hash
        live = [r for r in instances if r.status in LIVE_STATUSES and spec.claims(r)]
        cur = [r for r in live if r.revision == cur_hash]
        old = [r for r in live if r.revision != cur_hash]
        return cls(
            live_cur=len(cur),
            available_cur=sum(1 for r in cur if r.available),
            live_old=len(old),
            available_old=sum(1 for r in old if r.available),
        )


def next_step(spec: WorkloadSpec, counts: FleetCounts, now: float) -> RolloutState:
    """Compute the next desired-state edit of a progressing rollout. Pure.

    Old instances are scaled down only as far as keeping
    ``target - max_unavailable`` available allows (unavailable old ones go
    first); the current revision is scaled up to at most
    ``target + max_surge`` live instances in total.
    """
    ro = spec.rollout
    target = spec.replicas
    p = spec.policy

    if counts.live_old == 0 and counts.available_cur == target and counts.live_cur == target:
        phase = RolloutPhase.ROLLED_BACK if ro.rollback else RolloutPhase.SUCCEEDED
        return RolloutState(
            phase=phase,
            from_hashes=ro.from_hashes,
            to_hash=ro.to_hash,
            current_desired=target,
            old_desired=0,
            last_progress_at=now,
            rollback=ro.rollback,
        )

    # Wait until the previous edit has been carried out.
    if counts.live_cur != min(ro.current_desired, target) or counts.live_old > ro.old_desired:
        return ro

    old_desired = min(ro.old_desired, counts.live_old)
    min_available = max(0, target - p.max_unavailable)
    unavailable_old = counts.live_old - counts.available_old
    available = counts.available_cur + counts.available_old
    scale_down = unavailable_old + max(0, available - min_available)
    old_desired = max(0, old_desired - scale_down)

    max_total = target + p.max_surge
    current_desired = max(min(ro.current_desired, target), min(target, max_total - counts.live_old))

    if (old_desired, current_desired) == (ro.old_desired, ro.current_desired):
        return ro
    return RolloutState(
        phase=RolloutPhase.PROGRESSING,
        from_hashes=ro.from_hashes,
        to_hash=ro.to_hash,
        current_desired=current_desired,
        old_desired=old_desired,
        last_progress_at=now,
        rollback=ro.rollback,
    )


class RolloutController:
    """Moves a workload from one template revision to another.

    Idle -> Progressing -> {Succeeded, RolledBack} -> Idle.

    The controller never talks to the runtime: each step is an edit of the
    per-revision desired counts stored on the workload, which the
    Reconciler then carries out. A step only proceeds once the previous one
    converged.
    """

    def __init__(
        self,
        store: WorkloadStore,
        registry: InstanceRegistry,
        db: Database,
        state: RuntimeState | None = None,
        stall_s: float | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.registry = registry
        self.db = db
        self.state = state or RuntimeState()
        self.stall_s = stall_s if stall_s is not None else settings.rollout_stall_s
        self.clock = clock

    def begin(self, spec: WorkloadSpec, previous_hash: str, rollback: bool = False) -> WorkloadSpec:
        """Start (or restart) a rollout toward ``spec``'s template.

        Returns the spec with its rollout state filled in; the caller writes it.
        """
        from_hashes = tuple(sorted((set(spec.rollout.from_hashes) | {previous_hash}) - {spec.template_hash}))
        draft = spec.with_changes(
            rollout=RolloutState(phase=RolloutPhase.PROGRESSING, from_hashes=from_hashes, to_hash=spec.template_hash)
        )
        counts = FleetCounts.observe(draft, list(self.registry.iter_instances(spec.name)))
        state = RolloutState(
            phase=RolloutPhase.PROGRESSING,
            from_hashes=from_hashes,
            to_hash=spec.template_hash,
            current_desired=min(spec.replicas, counts.live_cur),
            old_desired=counts.live_old,
            last_progress_at=self.clock(),
            rollback=rollback,
        )
        self.db.log_event(
            "INFO",
            f"{'Rollback' if rollback else 'Rollout'} started: {previous_hash} -> {spec.template_hash}",
            workload=spec.name,
            revision=spec.template_hash,
        )
        return spec.with_changes(rollout=state)

    def cancel(self, spec: WorkloadSpec) -> WorkloadSpec:
        if spec.rollout.phase == RolloutPhase.IDLE:
            return spec
        self.db.log_event("WARN", "Rollout cancelled", workload=spec.name, revision=spec.template_hash)
        return spec.with_changes(rollout=RolloutState())

    def step(self, name: str) -> RolloutState:
        """Advance the rollout of ``name`` by at most one edit."""
        with self.state.workload_locks.hold(name):
            spec = self.store.find(name)
            if spec is None or spec.deleted:
                return RolloutState()
            ro = spec.rollout
            if ro.phase in (RolloutPhase.SUCCEEDED, RolloutPhase.ROLLED_BACK):
                self.store.update(name, self._to_idle)
                return RolloutState()
            if not ro.progressing:
                return ro

            now = self.clock()
            counts = FleetCounts.observe(spec, list(self.registry.iter_instances(name)))
            new = next_step(spec, counts, now)
            if new == ro:
                self._check_stall(spec, now)
                return ro

            written = self.store.update(name, lambda cur: self._apply(cur, ro, new))
            if written.rollout != new:
                return written.rollout
            if new.phase != RolloutPhase.PROGRESSING:
                self._finish(spec, new)
            return new

    def _apply(self, cur: WorkloadSpec, seen: RolloutState, new: RolloutState) -> WorkloadSpec | None:
        # Someone else moved the rollout (new template, deletion): drop this edit.
        if cur.rollout.to_hash != seen.to_hash or not cur.rollout.progressing:
            return None
        return cur.with_changes(rollout=new)

    @staticmethod
    def _to_idle(cur: WorkloadSpec) -> WorkloadSpec | None:
        if cur.rollout.phase not in (RolloutPhase.SUCCEEDED, RolloutPhase.ROLLED_BACK):
            return None
        return cur.with_changes(rollout=RolloutState(phase=RolloutPhase.IDLE, to_hash=cur.rollout.to_hash))

    def _finish(self, spec: WorkloadSpec, new: RolloutState) -> None:
        entries = [e for e in self.store.history(spec.name) if e.template_hash == new.to_hash]
        if entries:
            self.store.set_outcome(spec.name, entries[-1].number, RolloutOutcome.SUCCEEDED)
        verb = "Rollback" if new.rollback else "Rollout"
        self.db.log_event("INFO", f"{verb} completed.", workload=spec.name, revision=new.to_hash)

    def _check_stall(self, spec: WorkloadSpec, now: float) -> None:
        ro = spec.rollout
        idle_s = now - ro.last_progress_at
        if ro.stalled or idle_s < self.stall_s:
            return
        stall = ConvergenceStall(spec.name, idle_s)
        self.db.log_event("ERROR", str(stall), workload=spec.name, revision=ro.to_hash)
        alerts.workload_alert(spec.name, str(stall))

        def mark(cur: WorkloadSpec) -> WorkloadSpec | None:
            if cur.rollout.to_hash != ro.to_hash or not cur.rollout.progressing:
                return None
            return cur.with_changes(rollout=replace(cur.rollout, stalled=True))

        self.store.update(spec.name, mark)

    def rollback_target(self, name: str, revision: int | None = None) -> tuple[WorkloadSpec, RevisionEntry]:
        """Spec re-targeted to a prior revision (the previous distinct one by default).

        Returns the new spec and the history entry it restores.
        """
        spec = self.store.get(name)
        history = self.store.history(name)
        if revision is None:
            prior = [e for e in history if e.template_hash != spec.template_hash]
            if not prior:
                raise NotFoundError(f"Workload '{name}' has no prior revision to roll back to")
            entry = prior[-1]
        else:
            entry = self.store.revision(name, revision)
        if entry.template_hash == spec.template_hash:
            raise ValidationError(f"Revision {entry.number} is already the current template")
        selector = spec.selector
        if not selector.matches(entry.template.labels):
            # Fall back to the revision's own labels, the default selector of an apply.
            selector = Selector(match_labels=dict(entry.template.labels))
        return spec.with_changes(template=entry.template, selector=selector), entry
