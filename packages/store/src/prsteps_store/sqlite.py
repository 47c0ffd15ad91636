"""SQLite backends: durable local store and job queue.

Why SQLite:
- Batteries included: ships with Python, no broker or server to run.
- Durable: queued jobs and persisted stage outputs survive a worker crash,
  which is what gives the queue its at-least-once delivery guarantee.
- Atomic claims: a single UPDATE inside a transaction hands each job to
  exactly one worker.

Schema:
  records: one row per record, keyed by (kind, id), body stored as JSON.
            Context packs are keyed by step id and guidance by target id so
            a rebuild replaces the previous row.
  indexes: one row per (repo, commit); INSERT OR IGNORE keeps the first.
  jobs   : the queue.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading

from prsteps_store.base import BaseJobQueue, BaseStore
from prsteps_store.models import (
    CodebaseSummary,
    ContextPack,
    Guidance,
    Job,
    PullRequest,
    PullRequestSnapshot,
    RepoContextIndex,
    ReviewSession,
    ReviewStep,
    utcnow,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS records (
    kind        TEXT NOT NULL,
    id          TEXT NOT NULL,
    parent_id   TEXT,
    sort_key    TEXT,
    body        TEXT NOT NULL,
    PRIMARY KEY (kind, id)
);
CREATE INDEX IF NOT EXISTS idx_records_parent ON records (kind, parent_id);

CREATE TABLE IF NOT EXISTS indexes (
    repo_id     TEXT NOT NULL,
    commit_sha  TEXT NOT NULL,
    body        TEXT NOT NULL,
    PRIMARY KEY (repo_id, commit_sha)
);

CREATE TABLE IF NOT EXISTS jobs (
    seq             INTEGER PRIMARY KEY AUTOINCREMENT,
    id              TEXT NOT NULL UNIQUE,
    type            TEXT NOT NULL,
    payload_json    TEXT NOT NULL DEFAULT '{}',
    idempotency_key TEXT NOT NULL,
    status          TEXT NOT NULL,
    attempts        INTEGER NOT NULL DEFAULT 0,
    last_error      TEXT,
    available_at    REAL NOT NULL DEFAULT 0,
    created_at      TEXT,
    updated_at      TEXT
);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs (status, available_at);
CREATE INDEX IF NOT EXISTS idx_jobs_key    ON jobs (idempotency_key);
"""


def _connect(db_path: str) -> sqlite3.Connection:
    # Worker threads share one connection; access is serialised by the
    # owning object's lock. Autocommit mode, with explicit BEGIN IMMEDIATE
    # where a read-then-write must be atomic.
    conn = sqlite3.connect(db_path, check_same_thread=False, timeout=30, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.executescript(_SCHEMA)
    conn.commit()
    return conn


class SQLiteStore(BaseStore):
    """Stores pipeline records in a local SQLite database file.

    The database path defaults to `.prsteps.db` in the current working
    directory. Configure via .prsteps.yml: `store_path: /path/to/prsteps.db`.
    """

    def __init__(self, db_path: str = ".prsteps.db"):
        self._conn = _connect(db_path)
        self._lock = threading.RLock()

    # ------------------------------------------------------------------ #
    # Generic record access                                                #
    # ------------------------------------------------------------------ #

    def _put(self, kind: str, key: str, body: dict, parent_id: str | None = None, sort_key: str = "") -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO records (kind, id, parent_id, sort_key, body) VALUES (?, ?, ?, ?, ?)",
                (kind, key, parent_id, sort_key, json.dumps(body)),
            )
            self._conn.commit()

    def _get(self, kind: str, key: str) -> dict | None:
        with self._lock:
            row = self._conn.execute("SELECT body FROM records WHERE kind=? AND id=?", (kind, key)).fetchone()
        return json.loads(row["body"]) if row else None

    def _children(self, kind: str, parent_id: str | None) -> list[dict]:
        with self._lock:
            if parent_id is None:
                rows = self._conn.execute("SELECT body FROM records WHERE kind=? ORDER BY sort_key", (kind,)).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT body FROM records WHERE kind=? AND parent_id=? ORDER BY sort_key",
                    (kind, parent_id),
                ).fetchall()
        return [json.loads(r["body"]) for r in rows]

    # ------------------------------------------------------------------ #
    # BaseStore                                                            #
    # ------------------------------------------------------------------ #

    def save_pull_request(self, pr: PullRequest) -> None:
        self._put("pull_request", pr.id, pr.to_dict(), parent_id=f"{pr.repo_id}#{pr.number}")

    def get_pull_request(self, pr_id: str) -> PullRequest | None:
        d = self._get("pull_request", pr_id)
        return PullRequest.from_dict(d) if d else None

    def find_pull_request(self, repo_id: str, number: int) -> PullRequest | None:
        found = self._children("pull_request", f"{repo_id}#{number}")
        return PullRequest.from_dict(found[0]) if found else None

    def save_session(self, session: ReviewSession) -> None:
        self._put(
            "session", session.id, session.to_dict(), parent_id=session.pull_request_id, sort_key=session.created_at
        )

    def get_session(self, session_id: str) -> ReviewSession | None:
        d = self._get("session", session_id)
        return ReviewSession.from_dict(d) if d else None

    def list_sessions(self, pull_request_id: str | None = None) -> list[ReviewSession]:
        return [ReviewSession.from_dict(d) for d in self._children("session", pull_request_id)]

    def save_snapshot(self, snapshot: PullRequestSnapshot) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR IGNORE INTO records (kind, id, parent_id, sort_key, body) VALUES (?, ?, ?, ?, ?)",
                ("snapshot", snapshot.id, None, snapshot.created_at, json.dumps(snapshot.to_dict())),
            )
            self._conn.commit()

    def get_snapshot(self, snapshot_id: str) -> PullRequestSnapshot | None:
        d = self._get("snapshot", snapshot_id)
        return PullRequestSnapshot.from_dict(d) if d else None

    def save_steps(self, steps: list[ReviewStep]) -> None:
        with self._lock:
            self._conn.executemany(
                "INSERT OR REPLACE INTO records (kind, id, parent_id, sort_key, body) VALUES (?, ?, ?, ?, ?)",
                [("step", s.id, s.session_id, f"{s.order_index:08d}", json.dumps(s.to_dict())) for s in steps],
            )
            self._conn.commit()

    def get_step(self, step_id: str) -> ReviewStep | None:
        d = self._get("step", step_id)
        return ReviewStep.from_dict(d) if d else None

    def list_steps(self, session_id: str) -> list[ReviewStep]:
        session = self.get_session(session_id)
        snapshot_id = session.snapshot_id if session else None
        steps = [ReviewStep.from_dict(d) for d in self._children("step", session_id)]
        return [s for s in steps if s.snapshot_id == snapshot_id]

    def save_context_pack(self, pack: ContextPack) -> None:
        self._put("context_pack", pack.step_id, pack.to_dict())

    def get_context_pack(self, step_id: str) -> ContextPack | None:
        d = self._get("context_pack", step_id)
        return ContextPack.from_dict(d) if d else None

    def save_guidance(self, guidance: Guidance) -> None:
        self._put("guidance", guidance.target_id, guidance.to_dict())

    def get_guidance(self, target_id: str) -> Guidance | None:
        d = self._get("guidance", target_id)
        return Guidance.from_dict(d) if d else None

    def get_repo_index(self, repo_id: str, commit_sha: str) -> RepoContextIndex | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT body FROM indexes WHERE repo_id=? AND commit_sha=?", (repo_id, commit_sha)
            ).fetchone()
        return RepoContextIndex.from_dict(json.loads(row["body"])) if row else None

    def save_repo_index(self, index: RepoContextIndex) -> RepoContextIndex:
        with self._lock:
            self._conn.execute(
                "INSERT OR IGNORE INTO indexes (repo_id, commit_sha, body) VALUES (?, ?, ?)",
                (index.repo_id, index.commit_sha, json.dumps(index.to_dict())),
            )
            self._conn.commit()
        return self.get_repo_index(index.repo_id, index.commit_sha) or index

    def save_codebase_summary(self, summary: CodebaseSummary) -> None:
        self._put("codebase_summary", f"{summary.repo_id}@{summary.commit_sha}", summary.to_dict())

    def get_codebase_summary(self, repo_id: str, commit_sha: str) -> CodebaseSummary | None:
        d = self._get("codebase_summary", f"{repo_id}@{commit_sha}")
        return CodebaseSummary.from_dict(d) if d else None

    def close(self) -> None:
        self._conn.close()


class SQLiteJobQueue(BaseJobQueue):
    """Durable job queue in the same SQLite file as the store (or a separate one)."""

    def __init__(self, db_path: str = ".prsteps.db"):
        self._conn = _connect(db_path)
        self._lock = threading.Lock()

    def add(self, job: Job, suppress_statuses: tuple[str, ...] = ()) -> tuple[Job, bool]:
        with self._lock:
            # BEGIN IMMEDIATE takes the write lock up front so the dedupe check
            # and the insert are atomic across processes sharing the file.
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                if suppress_statuses:
                    marks = ",".join("?" for _ in suppress_statuses)
                    row = self._conn.execute(
                        f"SELECT * FROM jobs WHERE idempotency_key=? AND status IN ({marks}) ORDER BY seq DESC LIMIT 1",
                        (job.idempotency_key, *suppress_statuses),
                    ).fetchone()
                    if row is not None:
                        self._conn.rollback()
                        return self._row_to_job(row), False
                self._conn.execute(
                    """
                    INSERT INTO jobs
                      (id, type, payload_json, idempotency_key, status, attempts,
                       last_error, available_at, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job.id,
                        job.type,
                        json.dumps(job.payload),
                        job.idempotency_key,
                        job.status,
                        job.attempts,
                        job.last_error,
                        job.available_at,
                        job.created_at,
                        job.updated_at,
                    ),
                )
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
        return job, True

    def claim(self, now: float) -> Job | None:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                row = self._conn.execute(
                    "SELECT * FROM jobs WHERE status='queued' AND available_at<=? ORDER BY seq LIMIT 1",
                    (now,),
                ).fetchone()
                if row is None:
                    self._conn.rollback()
                    return None
                self._conn.execute(
                    "UPDATE jobs SET status='active', attempts=attempts+1, updated_at=? WHERE id=?",
                    (utcnow(), row["id"]),
                )
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
        return self.get(row["id"])

    def complete(self, job_id: str) -> None:
        self._update(job_id, status="completed")

    def reschedule(self, job_id: str, error: str, available_at: float) -> None:
        self._update(job_id, status="queued", last_error=error, available_at=available_at)

    def fail(self, job_id: str, error: str) -> None:
        self._update(job_id, status="failed", last_error=error)

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def list_jobs(self, status: str | None = None) -> list[Job]:
        with self._lock:
            if status is not None:
                rows = self._conn.execute("SELECT * FROM jobs WHERE status=? ORDER BY seq", (status,)).fetchall()
            else:
                rows = self._conn.execute("SELECT * FROM jobs ORDER BY seq").fetchall()
        return [self._row_to_job(r) for r in rows]

    def has_newer(self, job: Job) -> bool:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT 1 FROM jobs
                WHERE idempotency_key=? AND status IN ('queued', 'active')
                  AND seq > (SELECT seq FROM jobs WHERE id=?)
                LIMIT 1
                """,
                (job.idempotency_key, job.id),
            ).fetchone()
        return row is not None

    def requeue_active(self) -> int:
        with self._lock:
            cur = self._conn.execute("UPDATE jobs SET status='queued', updated_at=? WHERE status='active'", (utcnow(),))
            self._conn.commit()
        if cur.rowcount:
            logger.warning("Requeued %d job(s) left active by a previous worker.", cur.rowcount)
        return cur.rowcount

    def next_available_at(self) -> float | None:
        with self._lock:
            row = self._conn.execute("SELECT MIN(available_at) AS t FROM jobs WHERE status='queued'").fetchone()
        return row["t"] if row and row["t"] is not None else None

    def counts(self) -> dict[str, int]:
        with self._lock:
            rows = self._conn.execute("SELECT status, COUNT(*) AS n FROM jobs GROUP BY status").fetchall()
        return {r["status"]: r["n"] for r in rows}

    def close(self) -> None:
        self._conn.close()

    def _update(self, job_id: str, **changes) -> None:
        changes["updated_at"] = utcnow()
        assignments = ", ".join(f"{name}=?" for name in changes)
        with self._lock:
            self._conn.execute(f"UPDATE jobs SET {assignments} WHERE id=?", (*changes.values(), job_id))
            self._conn.commit()

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> Job:
        return Job(
            id=row["id"],
            type=row["type"],
            payload=json.loads(row["payload_json"] or "{}"),
            idempotency_key=row["idempotency_key"],
            status=row["status"],
            attempts=row["attempts"],
            last_error=row["last_error"],
            available_at=row["available_at"],
            created_at=row["created_at"] or "",
            updated_at=row["updated_at"] or "",
        )

