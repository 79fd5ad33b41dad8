from __future__ import annotations

import json
import sqlite3
from typing import Callable

from .db import Database, utc_now
from .errors import ConflictError, NotFoundError, ValidationError
from .models import (
    RevisionEntry,
    RolloutOutcome,
    RolloutPolicy,
    RolloutState,
    Selector,
    Template,
    WorkloadSpec,
)
from .settings import settings


def _row_to_spec(row: sqlite3.Row) -> WorkloadSpec:
    return WorkloadSpec(
        name=row["name"],
        replicas=row["replicas"],
        template=Template.from_dict(json.loads(row["template"])),
        selector=Selector.from_dict(json.loads(row["selector"])),
        policy=RolloutPolicy(max_surge=row["max_surge"], max_unavailable=row["max_unavailable"]),
        min_replicas=row["min_replicas"],
        max_replicas=row["max_replicas"],
        version=row["version"],
        deleted=bool(row["deleted"]),
        rollout=RolloutState.from_dict(json.loads(row["rollout"])),
    )


def _row_to_revision(row: sqlite3.Row) -> RevisionEntry:
    return RevisionEntry(
        workload=row["workload"],
        number=row["number"],
        template_hash=row["template_hash"],
        template=Template.from_dict(json.loads(row["template"])),
        outcome=RolloutOutcome(row["outcome"]),
        created_at=row["created_at"],
    )


class WorkloadStore:
    """Versioned record of every WorkloadSpec plus its RevisionHistory.

    Every write is a compare-and-swap on ``version``: a write carrying a
    version that no longer matches the stored one raises ConflictError.
    """

    def __init__(self, db: Database, history_limit: int | None = None):
        self.db = db
        self.history_limit = max(1, history_limit or settings.revision_history_limit)
        self._listeners: list[Callable[[str], None]] = []

    def subscribe(self, callback: Callable[[str], None]) -> None:
        self._listeners.append(callback)

    def _notify(self, name: str) -> None:
        for cb in list(self._listeners):
            cb(name)

    # -- reads -------------------------------------------------------------

    def find(self, name: str) -> WorkloadSpec | None:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM workloads WHERE name=?", (name,)).fetchone()
            return _row_to_spec(row) if row else None

    def get(self, name: str) -> WorkloadSpec:
        spec = self.find(name)
        if spec is None or spec.deleted:
            raise NotFoundError(f"Unknown workload '{name}'")
        return spec

    def list(self, include_deleted: bool = True) -> list[WorkloadSpec]:
        with self.db.connect() as conn:
            rows = conn.execute("SELECT * FROM workloads ORDER BY name").fetchall()
        specs = [_row_to_spec(r) for r in rows]
        return specs if include_deleted else [s for s in specs if not s.deleted]

    def history(self, name: str) -> list[RevisionEntry]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM revisions WHERE workload=? ORDER BY number", (name,)
            ).fetchall()
            return [_row_to_revision(r) for r in rows]

    def revision(self, name: str, number: int) -> RevisionEntry:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM revisions WHERE workload=? AND number=?", (name, number)
            ).fetchone()
        if not row:
            raise NotFoundError(f"Workload '{name}' has no revision {number}")
        return _row_to_revision(row)

    # -- writes ------------------------------------------------------------

    def create(self, spec: WorkloadSpec) -> WorkloadSpec:
        spec.validate()
        now = utc_now()
        try:
            with self.db.connect() as conn:
                conn.execute(
                    """
                    INSERT INTO workloads (name, replicas, template, template_hash, selector, max_surge, max_unavailable,
                                           min_replicas, max_replicas, rollout, deleted, version, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, 1, ?, ?)
                    """,
                    (
                        spec.name,
                        spec.replicas,
                        json.dumps(spec.template.to_dict(), sort_keys=True),
                        spec.template_hash,
                        json.dumps(spec.selector.to_dict(), sort_keys=True),
                        spec.policy.max_surge,
                        spec.policy.max_unavailable,
                        spec.min_replicas,
                        spec.max_replicas,
                        json.dumps(spec.rollout.to_dict()),
                        now,
                        now,
                    ),
                )
                # The first revision is not a rollout; it is recorded as done.
                self._append_revision(conn, spec, RolloutOutcome.SUCCEEDED)
        except sqlite3.IntegrityError as e:
            # The primary key decides who wins a concurrent first write.
            existing = self.find(spec.name)
            if existing is not None and existing.deleted:
                raise ValidationError(f"Workload '{spec.name}' is still being deleted.") from e
            raise ConflictError(spec.name, spec.version, existing.version if existing else None) from e
        self._notify(spec.name)
        return spec.with_changes(version=1, deleted=False)

    def put(self, spec: WorkloadSpec) -> WorkloadSpec:
        """Compare-and-swap write. A template change appends a revision entry."""
        if not spec.deleted:
            spec.validate()
        with self.db.connect() as conn:
            row = conn.execute("SELECT template_hash, version FROM workloads WHERE name=?", (spec.name,)).fetchone()
            if row is None:
                raise NotFoundError(f"Unknown workload '{spec.name}'")
            cur = conn.execute(
                """
                UPDATE workloads SET
                  replicas=?, template=?, template_hash=?, selector=?, max_surge=?, max_unavailable=?,
                  min_replicas=?, max_replicas=?, rollout=?, deleted=?, version=version+1, updated_at=?
                WHERE name=? AND version=?
                """,
                (
                    spec.replicas,
                    json.dumps(spec.template.to_dict(), sort_keys=True),
                    spec.template_hash,
                    json.dumps(spec.selector.to_dict(), sort_keys=True),
                    spec.policy.max_surge,
                    spec.policy.max_unavailable,
                    spec.min_replicas,
                    spec.max_replicas,
                    json.dumps(spec.rollout.to_dict()),
                    1 if spec.deleted else 0,
                    utc_now(),
                    spec.name,
                    spec.version,
                ),
            )
            if cur.rowcount == 0:
                raise ConflictError(spec.name, spec.version, row["version"])
            if row["template_hash"] != spec.template_hash:
                conn.execute(
                    "UPDATE revisions SET outcome=? WHERE workload=? AND outcome=?",
                    (RolloutOutcome.ROLLED_BACK.value, spec.name, RolloutOutcome.IN_PROGRESS.value),
                )
                self._append_revision(conn, spec, RolloutOutcome.IN_PROGRESS)
        self._notify(spec.name)
        return spec.with_changes(version=spec.version + 1)

    def update(
        self,
        name: str,
        mutate: Callable[[WorkloadSpec], WorkloadSpec | None],
        retries: int | None = None,
        include_deleted: bool = False,
    ) -> WorkloadSpec:
        """Read-modify-write with re-read on ConflictError.

        ``mutate`` returns the new spec, or None to leave the record untouched.
        """
        attempts = max(1, retries if retries is not None else settings.conflict_retries)
        attempt = 0
        while True:
            attempt += 1
            current = self.find(name) if include_deleted else self.get(name)
            if current is None:
                raise NotFoundError(f"Unknown workload '{name}'")
            new = mutate(current)
            if new is None:
                return current
            try:
                return self.put(new)
            except ConflictError:
                if attempt >= attempts:
                    raise

    def set_outcome(self, name: str, number: int, outcome: RolloutOutcome) -> None:
        with self.db.connect() as conn:
            conn.execute(
                "UPDATE revisions SET outcome=? WHERE workload=? AND number=?", (outcome.value, name, number)
            )

    def purge(self, name: str) -> None:
        """Drop a tombstoned workload and its history for good."""
        with self.db.connect() as conn:
            conn.execute("DELETE FROM workloads WHERE name=? AND deleted=1", (name,))
            conn.execute("DELETE FROM revisions WHERE workload=?", (name,))

    def _append_revision(self, conn: sqlite3.Connection, spec: WorkloadSpec, outcome: RolloutOutcome) -> None:
        row = conn.execute("SELECT MAX(number) AS n FROM revisions WHERE workload=?", (spec.name,)).fetchone()
        number = (row["n"] or 0) + 1
        conn.execute(
            """
            INSERT INTO revisions (workload, number, template_hash, template, outcome, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                spec.name,
                number,
                spec.template_hash,
                json.dumps(spec.template.to_dict(), sort_keys=True),
                outcome.value,
                utc_now(),
            ),
        )
        conn.execute(
            "DELETE FROM revisions WHERE workload=? AND number<=?", (spec.name, number - self.history_limit)
        )
