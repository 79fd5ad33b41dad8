"""Workload Reconciliation Controller (WRC).

Single-node control plane that keeps fleets of instances at their declared
state:
 - reconciliation of desired vs. observed instances (auto-healing)
 - scaling, directly or through a metric-driven policy
 - rolling updates bounded by max-surge / max-unavailable, with rollback
 - health tracking of every instance through probe observations

Desired state lives in a versioned WorkloadStore, observed state in the
InstanceRegistry; the Reconciler is the only component talking to the runtime.
"""
