"""SQLite-backed persistence for jobs, runs, usage counters and audit rows."""
from __future__ import annotations

import asyncio
import json
import re
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple

import aiosqlite

from .models import (
    ACTIVE_STATUSES,
    JobRecord,
    JobStatus,
    JobType,
    ProjectRecord,
    QuotaReservation,
    ReservationState,
    RunRecord,
    RunStatus,
    utcnow,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_projects_user ON projects (user_id);

CREATE TABLE IF NOT EXISTS user_plans (
    user_id TEXT PRIMARY KEY,
    plan_id TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS runs (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'IN_PROGRESS',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_runs_project ON runs (project_id);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    user_id TEXT,
    run_id TEXT,
    type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'PENDING',
    idempotency_key TEXT NOT NULL,
    payload TEXT NOT NULL DEFAULT '{}',
    result_summary TEXT,
    error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (project_id, type, idempotency_key)
);
CREATE INDEX IF NOT EXISTS ix_jobs_scope ON jobs (project_id, type, status, run_id);

CREATE TABLE IF NOT EXISTS usage (
    user_id TEXT NOT NULL,
    period_key TEXT NOT NULL,
    metric TEXT NOT NULL,
    used INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (user_id, period_key, metric)
);

CREATE TABLE IF NOT EXISTS quota_reservations (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    period_key TEXT NOT NULL,
    metric TEXT NOT NULL,
    amount INTEGER NOT NULL,
    state TEXT NOT NULL DEFAULT 'reserved',
    job_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS audit_log (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    project_id TEXT,
    job_id TEXT,
    action TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);
"""

# json_extract paths built from payload filters must stay plain dotted identifiers.
_FILTER_PATH_RE = re.compile(r"^[A-Za-z0-9_]+(\.[A-Za-z0-9_]+)*$")

_UNSET: Any = object()


def new_id() -> str:
    return uuid.uuid4().hex[:16]


class JobStore:
    """Async SQLite store for job admission and lifecycle tracking.

    The connection runs in autocommit mode.  Every statement is issued under
    ``_lock`` so a multi-statement unit opened with ``BEGIN IMMEDIATE`` in
    :meth:`transaction` never interleaves with another coroutine's statements
    on the shared connection.  Deduplication itself comes from the
    ``UNIQUE (project_id, type, idempotency_key)`` constraint.
    """

    def __init__(self, db_path: str = "stagegate.db") -> None:
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the connection and create tables if they don't exist."""
        if self._db is not None:
            return
        self._db = await aiosqlite.connect(self.db_path, isolation_level=None)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            await self.initialize()
        return self._db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a multi-statement unit atomically."""
        db = await self._conn()
        async with self._lock:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            await db.execute("COMMIT")

    async def _execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        db = await self._conn()
        async with self._lock:
            async with db.execute(sql, tuple(params)) as cur:
                return cur.rowcount

    async def _fetchone(self, sql: str, params: Iterable[Any] = ()) -> Optional[aiosqlite.Row]:
        db = await self._conn()
        async with self._lock:
            async with db.execute(sql, tuple(params)) as cur:
                return await cur.fetchone()

    async def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> List[aiosqlite.Row]:
        db = await self._conn()
        async with self._lock:
            async with db.execute(sql, tuple(params)) as cur:
                return list(await cur.fetchall())

    # ── Projects & plans ─────────────────────────────────────────────

    async def create_project(self, user_id: str, name: str = "", project_id: str | None = None) -> ProjectRecord:
        rec = ProjectRecord(id=project_id or new_id(), user_id=user_id, name=name)
        await self._execute(
            "INSERT INTO projects (id, user_id, name, created_at) VALUES (?,?,?,?)",
            (rec.id, rec.user_id, rec.name, rec.created_at),
        )
        return rec

    async def get_project(self, project_id: str) -> Optional[ProjectRecord]:
        row = await self._fetchone("SELECT * FROM projects WHERE id = ?", (project_id,))
        return ProjectRecord(**dict(row)) if row else None

    async def list_projects(self, user_id: str) -> List[ProjectRecord]:
        rows = await self._fetchall(
            "SELECT * FROM projects WHERE user_id = ? ORDER BY created_at DESC, rowid DESC",
            (user_id,),
        )
        return [ProjectRecord(**dict(r)) for r in rows]

    async def get_user_plan(self, user_id: str) -> Optional[str]:
        row = await self._fetchone("SELECT plan_id FROM user_plans WHERE user_id = ?", (user_id,))
        return row["plan_id"] if row else None

    async def set_user_plan(self, user_id: str, plan_id: str) -> None:
        await self._execute(
            "INSERT INTO user_plans (user_id, plan_id, updated_at) VALUES (?,?,?) "
            "ON CONFLICT (user_id) DO UPDATE SET plan_id = excluded.plan_id, updated_at = excluded.updated_at",
            (user_id, plan_id, utcnow()),
        )

    # ── Runs ─────────────────────────────────────────────────────────

    async def create_run(self, project_id: str) -> RunRecord:
        rec = RunRecord(id=new_id(), project_id=project_id)
        await self._execute(
            "INSERT INTO runs (id, project_id, status, created_at, updated_at) VALUES (?,?,?,?,?)",
            (rec.id, rec.project_id, rec.status.value, rec.created_at, rec.updated_at),
        )
        return rec

    async def get_run(self, run_id: str) -> Optional[RunRecord]:
        row = await self._fetchone("SELECT * FROM runs WHERE id = ?", (run_id,))
        return RunRecord(**dict(row)) if row else None

    async def list_runs(self, project_id: str, limit: int = 50) -> List[RunRecord]:
        rows = await self._fetchall(
            "SELECT * FROM runs WHERE project_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (project_id, limit),
        )
        return [RunRecord(**dict(r)) for r in rows]

    async def update_run_status(
        self, run_id: str, status: RunStatus, *, expected: RunStatus | None = None
    ) -> bool:
        """Set a run's status; with *expected*, only if it currently has that status."""
        sql = "UPDATE runs SET status = ?, updated_at = ? WHERE id = ?"
        params: list = [status.value, utcnow(), run_id]
        if expected is not None:
            sql += " AND status = ?"
            params.append(expected.value)
        return await self._execute(sql, params) == 1

    # ── Jobs ─────────────────────────────────────────────────────────

    async def insert_job(self, rec: JobRecord, *, active_ceiling: int | None = None) -> Optional[JobRecord]:
        """Insert *rec*.  Raises ``sqlite3.IntegrityError`` on a key conflict.

        With *active_ceiling*, the row is only written while the owning user
        has fewer than that many PENDING/RUNNING jobs; the count and the
        insert are one statement, so concurrent admissions cannot overshoot.
        Returns None when the ceiling refused the insert.
        """
        values = (
            rec.id,
            rec.project_id,
            rec.user_id,
            rec.run_id,
            rec.type.value,
            rec.status.value,
            rec.idempotency_key,
            json.dumps(rec.payload),
            rec.result_summary,
            rec.error,
            rec.created_at,
            rec.updated_at,
        )
        columns = (
            "INSERT INTO jobs (id, project_id, user_id, run_id, type, status, idempotency_key, "
            "payload, result_summary, error, created_at, updated_at) "
        )
        if active_ceiling is None:
            await self._execute(columns + "VALUES (?,?,?,?,?,?,?,?,?,?,?,?)", values)
            return rec
        async with self.transaction() as db:
            async with db.execute(
                columns + "SELECT ?,?,?,?,?,?,?,?,?,?,?,? WHERE ("
                "SELECT COUNT(*) FROM jobs "
                "WHERE project_id IN (SELECT id FROM projects WHERE user_id = "
                "(SELECT user_id FROM projects WHERE id = ?)) "
                "AND status IN (?, ?)) < ?",
                (*values, rec.project_id, *(s.value for s in ACTIVE_STATUSES), active_ceiling),
            ) as cur:
                inserted = cur.rowcount == 1
        return rec if inserted else None

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        row = await self._fetchone("SELECT * FROM jobs WHERE id = ?", (job_id,))
        return self._row_to_job(row) if row else None

    async def get_job_by_key(self, project_id: str, job_type: JobType, key: str) -> Optional[JobRecord]:
        row = await self._fetchone(
            "SELECT * FROM jobs WHERE project_id = ? AND type = ? AND idempotency_key = ?",
            (project_id, job_type.value, key),
        )
        return self._row_to_job(row) if row else None

    async def rekey_failed_job(self, job_id: str, old_key: str, new_key: str) -> bool:
        """Move a FAILED job off *old_key*.  False if it is no longer FAILED under that key."""
        rowcount = await self._execute(
            "UPDATE jobs SET idempotency_key = ?, updated_at = ? "
            "WHERE id = ? AND idempotency_key = ? AND status = ?",
            (new_key, utcnow(), job_id, old_key, JobStatus.FAILED.value),
        )
        return rowcount == 1

    async def count_active_jobs_for_user(self, user_id: str) -> int:
        """PENDING/RUNNING jobs across every project the user owns."""
        row = await self._fetchone(
            "SELECT COUNT(*) AS n FROM jobs "
            "WHERE project_id IN (SELECT id FROM projects WHERE user_id = ?) "
            "AND status IN (?, ?)",
            (user_id, *(s.value for s in ACTIVE_STATUSES)),
        )
        return int(row["n"])

    async def count_jobs_created_since(self, project_id: str, since_iso: str) -> int:
        row = await self._fetchone(
            "SELECT COUNT(*) AS n FROM jobs WHERE project_id = ? AND created_at >= ?",
            (project_id, since_iso),
        )
        return int(row["n"])

    async def latest_job(
        self,
        project_id: str,
        job_type: JobType,
        *,
        run_id: str | None = None,
        status: JobStatus | None = None,
        payload_filter: Dict[str, Any] | None = None,
        include_dry_runs: bool = True,
    ) -> Optional[JobRecord]:
        """Most recent job of *job_type*, scoped to *run_id* when given, else project-wide.

        *payload_filter* maps dotted payload paths (``"result.scriptId"``) to the
        value they must equal.  With *include_dry_runs* False, rows recorded by a
        dry run (``payload.dryRun``) are skipped.
        """
        sql = "SELECT * FROM jobs WHERE project_id = ? AND type = ?"
        params: list = [project_id, job_type.value]
        if run_id is not None:
            sql += " AND run_id = ?"
            params.append(run_id)
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        for path, value in (payload_filter or {}).items():
            if not _FILTER_PATH_RE.match(path):
                raise ValueError(f"Invalid payload filter path: {path!r}")
            sql += f" AND json_extract(payload, '$.{path}') = ?"
            params.append(value)
        if not include_dry_runs:
            sql += " AND IFNULL(json_extract(payload, '$.dryRun'), 0) = 0"
        sql += " ORDER BY created_at DESC, rowid DESC LIMIT 1"
        row = await self._fetchone(sql, params)
        return self._row_to_job(row) if row else None

    async def list_jobs(
        self,
        project_id: str,
        *,
        status: JobStatus | None = None,
        run_id: str | None = None,
        limit: int = 50,
    ) -> List[JobRecord]:
        """List a project's jobs, newest first."""
        sql = "SELECT * FROM jobs WHERE project_id = ?"
        params: list = [project_id]
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        if run_id is not None:
            sql += " AND run_id = ?"
            params.append(run_id)
        sql += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        rows = await self._fetchall(sql, params)
        return [self._row_to_job(r) for r in rows]

    async def transition_job(
        self,
        job_id: str,
        from_status: JobStatus,
        to_status: JobStatus,
        *,
        payload: Dict[str, Any] | None = None,
        result_summary: Any = _UNSET,
        error: Any = _UNSET,
    ) -> bool:
        """Conditionally move a job from *from_status* to *to_status*.

        Returns False when the row is not (or no longer) in *from_status*.
        """
        sets = ["status = ?", "updated_at = ?"]
        vals: list = [to_status.value, utcnow()]
        if payload is not None:
            sets.append("payload = ?")
            vals.append(json.dumps(payload))
        if result_summary is not _UNSET:
            sets.append("result_summary = ?")
            vals.append(result_summary)
        if error is not _UNSET:
            sets.append("error = ?")
            vals.append(error)
        vals.extend([job_id, from_status.value])
        rowcount = await self._execute(
            f"UPDATE jobs SET {', '.join(sets)} WHERE id = ? AND status = ?", vals
        )
        return rowcount == 1

    async def update_payload(self, job_id: str, payload: Dict[str, Any]) -> None:
        await self._execute(
            "UPDATE jobs SET payload = ?, updated_at = ? WHERE id = ?",
            (json.dumps(payload), utcnow(), job_id),
        )

    async def claim_next_job(
        self, now_ms: int, job_types: Iterable[JobType] | None = None
    ) -> Optional[JobRecord]:
        """Atomically move the oldest due PENDING job to RUNNING and return it."""
        sql = (
            "SELECT * FROM jobs WHERE status = ? AND "
            "(json_extract(payload, '$.nextRunAt') IS NULL OR json_extract(payload, '$.nextRunAt') <= ?)"
        )
        params: list = [JobStatus.PENDING.value, now_ms]
        types = [t.value for t in (job_types or [])]
        if types:
            sql += f" AND type IN ({', '.join('?' for _ in types)})"
            params.extend(types)
        sql += " ORDER BY created_at ASC, rowid ASC LIMIT 1"
        async with self.transaction() as db:
            async with db.execute(sql, params) as cur:
                row = await cur.fetchone()
            if row is None:
                return None
            job = self._row_to_job(row)
            now = utcnow()
            await db.execute(
                "UPDATE jobs SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (JobStatus.RUNNING.value, now, job.id, JobStatus.PENDING.value),
            )
        return job.model_copy(update={"status": JobStatus.RUNNING, "updated_at": now})

    # ── Usage & quota reservations ───────────────────────────────────

    async def get_usage(self, user_id: str, period_key: str, metric: str) -> int:
        row = await self._fetchone(
            "SELECT used FROM usage WHERE user_id = ? AND period_key = ? AND metric = ?",
            (user_id, period_key, metric),
        )
        return int(row["used"]) if row else 0

    async def try_reserve(
        self,
        reservation: QuotaReservation,
        limit: int,
    ) -> Tuple[bool, int]:
        """Increment usage only if the resulting total stays within *limit*.

        Returns ``(reserved, used)`` where *used* is the counter after the
        attempt.  On success the reservation row is recorded in the same
        transaction.
        """
        r = reservation
        async with self.transaction() as db:
            await db.execute(
                "INSERT OR IGNORE INTO usage (user_id, period_key, metric, used) VALUES (?,?,?,0)",
                (r.user_id, r.period_key, r.metric),
            )
            async with db.execute(
                "UPDATE usage SET used = used + ? "
                "WHERE user_id = ? AND period_key = ? AND metric = ? AND used + ? <= ?",
                (r.amount, r.user_id, r.period_key, r.metric, r.amount, limit),
            ) as cur:
                reserved = cur.rowcount == 1
            if reserved:
                now = utcnow()
                await db.execute(
                    "INSERT INTO quota_reservations (id, user_id, period_key, metric, amount, state, "
                    "job_id, created_at, updated_at) VALUES (?,?,?,?,?,?,?,?,?)",
                    (
                        r.id, r.user_id, r.period_key, r.metric, r.amount,
                        ReservationState.reserved.value, r.job_id, now, now,
                    ),
                )
            async with db.execute(
                "SELECT used FROM usage WHERE user_id = ? AND period_key = ? AND metric = ?",
                (r.user_id, r.period_key, r.metric),
            ) as cur:
                row = await cur.fetchone()
        return reserved, int(row["used"]) if row else 0

    async def settle_reservation(self, reservation_id: str, state: ReservationState) -> bool:
        """Move a reservation out of ``reserved`` exactly once.

        Settling as ``rolled_back`` also decrements the usage counter (never
        below zero).  Returns False if the reservation was already settled or
        does not exist.
        """
        async with self.transaction() as db:
            async with db.execute(
                "SELECT * FROM quota_reservations WHERE id = ? AND state = ?",
                (reservation_id, ReservationState.reserved.value),
            ) as cur:
                row = await cur.fetchone()
            if row is None:
                return False
            await db.execute(
                "UPDATE quota_reservations SET state = ?, updated_at = ? WHERE id = ? AND state = ?",
                (state.value, utcnow(), reservation_id, ReservationState.reserved.value),
            )
            if state is ReservationState.rolled_back:
                await db.execute(
                    "UPDATE usage SET used = MAX(used - ?, 0) "
                    "WHERE user_id = ? AND period_key = ? AND metric = ?",
                    (row["amount"], row["user_id"], row["period_key"], row["metric"]),
                )
        return True

    async def get_reservation(self, reservation_id: str) -> Optional[QuotaReservation]:
        row = await self._fetchone("SELECT * FROM quota_reservations WHERE id = ?", (reservation_id,))
        if row is None:
            return None
        d = dict(row)
        d.pop("created_at", None)
        d.pop("updated_at", None)
        return QuotaReservation(**d)

    async def attach_reservation(self, reservation_id: str, job_id: str) -> None:
        await self._execute(
            "UPDATE quota_reservations SET job_id = ?, updated_at = ? WHERE id = ?",
            (job_id, utcnow(), reservation_id),
        )

    # ── Audit ────────────────────────────────────────────────────────

    async def insert_audit(
        self,
        action: str,
        *,
        user_id: str | None = None,
        project_id: str | None = None,
        job_id: str | None = None,
        metadata: Dict[str, Any] | None = None,
    ) -> None:
        await self._execute(
            "INSERT INTO audit_log (id, user_id, project_id, job_id, action, metadata, created_at) "
            "VALUES (?,?,?,?,?,?,?)",
            (new_id(), user_id, project_id, job_id, action, json.dumps(metadata or {}), utcnow()),
        )

    async def list_audit(self, *, job_id: str | None = None, limit: int = 100) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM audit_log"
        params: list = []
        if job_id is not None:
            sql += " WHERE job_id = ?"
            params.append(job_id)
        sql += " ORDER BY created_at ASC, rowid ASC LIMIT ?"
        params.append(limit)
        rows = await self._fetchall(sql, params)
        out = []
        for r in rows:
            d = dict(r)
            d["metadata"] = json.loads(d.get("metadata") or "{}")
            out.append(d)
        return out

    # ── Helpers ───────────────────────────────────────────────────────

    async def ping(self) -> bool:
        row = await self._fetchone("SELECT 1 AS ok")
        return bool(row and row["ok"] == 1)

    @staticmethod
    def _row_to_job(row: aiosqlite.Row) -> JobRecord:
        d = dict(row)
        d["payload"] = json.loads(d.get("payload") or "{}")
        return JobRecord(**d)

