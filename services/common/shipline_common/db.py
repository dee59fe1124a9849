import os, sqlite3, json, threading

from .state import (
    Artifact, PipelineRun, StageResult, TagRecord,
    ACTIVE_RUN_STATUSES, TERMINAL_RUN_STATUSES, CANCELLED, PENDING, RUNNING,
)
from .errors import RunAlreadyActive
from .utils import utc_now_iso

_lock = threading.Lock()

SCHEMA = """
CREATE TABLE IF NOT EXISTS runs (
  id TEXT PRIMARY KEY,
  source_ref TEXT NOT NULL,
  trigger_json TEXT NOT NULL,
  status TEXT NOT NULL,
  stages_json TEXT NOT NULL,
  error TEXT,
  cancel_requested INTEGER NOT NULL DEFAULT 0,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  finished_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_runs_source_ref ON runs(source_ref, created_at);
CREATE TABLE IF NOT EXISTS stage_results (
  seq INTEGER PRIMARY KEY AUTOINCREMENT,
  run_id TEXT NOT NULL REFERENCES runs(id),
  stage TEXT NOT NULL,
  attempt INTEGER NOT NULL,
  status TEXT NOT NULL,
  artifact_json TEXT,
  error TEXT,
  error_kind TEXT,
  started_at TEXT NOT NULL,
  finished_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_stage_results_run ON stage_results(run_id, seq);
CREATE TABLE IF NOT EXISTS tag_records (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  run_id TEXT NOT NULL REFERENCES runs(id),
  tag TEXT NOT NULL,
  image TEXT NOT NULL,
  config_revision TEXT NOT NULL,
  recorded_at TEXT NOT NULL,
  active INTEGER NOT NULL DEFAULT 0,
  converged_at TEXT
);
"""

_TERMINAL = tuple(sorted(TERMINAL_RUN_STATUSES))


def _connect(db_path: str):
    parent = os.path.dirname(db_path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=30, isolation_level=None, check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.executescript(SCHEMA)
    return conn


def _run_from_row(row) -> PipelineRun:
    return PipelineRun(
        id=row[0],
        source_ref=row[1],
        trigger=json.loads(row[2] or "{}"),
        status=row[3],
        stages=json.loads(row[4] or "{}"),
        error=row[5],
        cancel_requested=bool(row[6]),
        created_at=row[7],
        updated_at=row[8],
        finished_at=row[9],
    )


def _record_from_row(row) -> TagRecord:
    return TagRecord(
        id=row[0],
        run_id=row[1],
        tag=row[2],
        image=row[3],
        config_revision=row[4],
        recorded_at=row[5],
        active=bool(row[6]),
        converged_at=row[7],
    )


_RUN_COLS = "id,source_ref,trigger_json,status,stages_json,error,cancel_requested,created_at,updated_at,finished_at"
_TAG_COLS = "id,run_id,tag,image,config_revision,recorded_at,active,converged_at"


class RunStore:
    """sqlite-backed record of runs, stage results and tag records.

    One connection per call; writes go through the module lock, and the submit
    path additionally takes a ``BEGIN IMMEDIATE`` transaction so separate
    processes sharing the file agree on the one-active-run-per-revision rule.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        with _lock:
            _connect(db_path).close()

    def create_run_for_trigger(self, run: PipelineRun, rerun: bool = False):
        """Insert ``run`` unless the revision already has a run.

        Returns ``(run, created)``. An active run for the same revision raises
        RunAlreadyActive; a terminal one is returned as-is unless ``rerun``.
        """
        with _lock:
            conn = _connect(self.db_path)
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    f"SELECT {_RUN_COLS} FROM runs WHERE source_ref=? ORDER BY created_at DESC, rowid DESC LIMIT 1",
                    (run.source_ref,),
                ).fetchone()
                if row:
                    latest = _run_from_row(row)
                    if latest.status in ACTIVE_RUN_STATUSES:
                        conn.execute("ROLLBACK")
                        raise RunAlreadyActive(latest.id, latest.source_ref)
                    if not rerun:
                        conn.execute("ROLLBACK")
                        latest.results = self._results(conn, latest.id)
                        return latest, False
                now = utc_now_iso()
                run.created_at = run.created_at or now
                run.updated_at = now
                conn.execute(
                    f"INSERT INTO runs({_RUN_COLS}) VALUES(?,?,?,?,?,?,?,?,?,?)",
                    (run.id, run.source_ref, json.dumps(run.trigger, default=str), run.status,
                     json.dumps(run.stages), run.error, int(run.cancel_requested),
                     run.created_at, run.updated_at, run.finished_at),
                )
                conn.execute("COMMIT")
                return run, True
            finally:
                conn.close()

    def get_run(self, run_id: str) -> PipelineRun:
        with _lock:
            conn = _connect(self.db_path)
            try:
                row = conn.execute(f"SELECT {_RUN_COLS} FROM runs WHERE id=?", (run_id,)).fetchone()
                if not row:
                    raise KeyError(run_id)
                run = _run_from_row(row)
                run.results = self._results(conn, run_id)
                return run
            finally:
                conn.close()

    def list_runs(self, source_ref: str = None, limit: int = 50) -> list:
        q = f"SELECT {_RUN_COLS} FROM runs"
        args = []
        if source_ref:
            q += " WHERE source_ref=?"
            args.append(source_ref)
        q += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        args.append(limit)
        with _lock:
            conn = _connect(self.db_path)
            try:
                return [_run_from_row(r) for r in conn.execute(q, args).fetchall()]
            finally:
                conn.close()

    def start_run(self, run_id: str) -> bool:
        """Move a pending run to running; False if someone else got there first."""
        with _lock:
            conn = _connect(self.db_path)
            try:
                cur = conn.execute(
                    "UPDATE runs SET status=?, updated_at=? WHERE id=? AND status=?",
                    (RUNNING, utc_now_iso(), run_id, PENDING),
                )
                if cur.rowcount == 0 and not conn.execute("SELECT 1 FROM runs WHERE id=?", (run_id,)).fetchone():
                    raise KeyError(run_id)
                return cur.rowcount == 1
            finally:
                conn.close()

    def update_run(self, run_id: str, status: str = None, stages: dict = None, error: str = None,
                   finished_at: str = None):
        """Apply the given fields; a terminal run refuses every change."""
        sets, vals = ["updated_at=?"], [utc_now_iso()]
        if status is not None:
            sets.append("status=?"); vals.append(status)
        if stages is not None:
            sets.append("stages_json=?"); vals.append(json.dumps(stages))
        if error is not None:
            sets.append("error=?"); vals.append(error)
        if finished_at is not None:
            sets.append("finished_at=?"); vals.append(finished_at)
        with _lock:
            conn = _connect(self.db_path)
            try:
                cur = conn.execute(
                    f"UPDATE runs SET {','.join(sets)} WHERE id=? AND status NOT IN (?,?,?)",
                    (*vals, run_id, *_TERMINAL),
                )
                if cur.rowcount == 0:
                    self._raise_missing_or_terminal(conn, run_id)
            finally:
                conn.close()

    def append_result(self, run_id: str, result: StageResult) -> int:
        with _lock:
            conn = _connect(self.db_path)
            try:
                row = conn.execute("SELECT status FROM runs WHERE id=?", (run_id,)).fetchone()
                if not row:
                    raise KeyError(run_id)
                if row[0] in TERMINAL_RUN_STATUSES:
                    raise RuntimeError(f"run_terminal run_id={run_id}")
                cur = conn.execute(
                    "INSERT INTO stage_results(run_id,stage,attempt,status,artifact_json,error,error_kind,started_at,finished_at) "
                    "VALUES(?,?,?,?,?,?,?,?,?)",
                    (run_id, result.stage, result.attempt, result.status,
                     json.dumps(result.artifact.to_dict()) if result.artifact else None,
                     result.error, result.error_kind, result.started_at, result.finished_at),
                )
                result.seq = cur.lastrowid
                return result.seq
            finally:
                conn.close()

    def request_cancel(self, run_id: str) -> PipelineRun:
        """Flag a running run for cancellation; a pending one is cancelled outright.

        A pending run has no worker that would see the flag, so it is
        finalized here. The pending-to-running move in ``start_run`` and this
        one exclude each other.
        """
        with _lock:
            conn = _connect(self.db_path)
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute("SELECT status, stages_json FROM runs WHERE id=?", (run_id,)).fetchone()
                now = utc_now_iso()
                if row and row[0] == PENDING:
                    stages = {name: CANCELLED for name in json.loads(row[1])}
                    conn.execute(
                        "UPDATE runs SET status=?, stages_json=?, cancel_requested=1, updated_at=?, finished_at=? "
                        "WHERE id=?",
                        (CANCELLED, json.dumps(stages), now, now, run_id),
                    )
                elif row and row[0] not in TERMINAL_RUN_STATUSES:
                    conn.execute("UPDATE runs SET cancel_requested=1, updated_at=? WHERE id=?", (now, run_id))
                conn.execute("COMMIT")
            finally:
                conn.close()
        return self.get_run(run_id)

    def discard_pending(self, run_id: str) -> bool:
        """Delete a run that never started, e.g. because it could not be launched."""
        with _lock:
            conn = _connect(self.db_path)
            try:
                cur = conn.execute("DELETE FROM runs WHERE id=? AND status=?", (run_id, PENDING))
                return cur.rowcount == 1
            finally:
                conn.close()

    def cancel_requested(self, run_id: str) -> bool:
        with _lock:
            conn = _connect(self.db_path)
            try:
                row = conn.execute("SELECT cancel_requested FROM runs WHERE id=?", (run_id,)).fetchone()
            finally:
                conn.close()
        if not row:
            raise KeyError(run_id)
        return bool(row[0])

    def activate_tag_record(self, record: TagRecord) -> TagRecord:
        """Insert ``record`` as the only active one."""
        with _lock:
            conn = _connect(self.db_path)
            try:
                conn.execute("BEGIN IMMEDIATE")
                conn.execute("UPDATE tag_records SET active=0 WHERE active=1")
                cur = conn.execute(
                    "INSERT INTO tag_records(run_id,tag,image,config_revision,recorded_at,active,converged_at) "
                    "VALUES(?,?,?,?,?,1,NULL)",
                    (record.run_id, record.tag, record.image, record.config_revision, record.recorded_at),
                )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
            finally:
                conn.close()
        record.id = cur.lastrowid
        record.active = True
        return record

    def active_tag_record(self):
        with _lock:
            conn = _connect(self.db_path)
            try:
                row = conn.execute(f"SELECT {_TAG_COLS} FROM tag_records WHERE active=1").fetchone()
            finally:
                conn.close()
        return _record_from_row(row) if row else None

    def tag_records(self, run_id: str = None) -> list:
        q = f"SELECT {_TAG_COLS} FROM tag_records"
        args = ()
        if run_id:
            q += " WHERE run_id=?"
            args = (run_id,)
        with _lock:
            conn = _connect(self.db_path)
            try:
                rows = conn.execute(q + " ORDER BY id", args).fetchall()
            finally:
                conn.close()
        return [_record_from_row(r) for r in rows]

    def mark_converged(self, record_id: int, converged_at: str = None):
        with _lock:
            conn = _connect(self.db_path)
            try:
                conn.execute(
                    "UPDATE tag_records SET converged_at=? WHERE id=?",
                    (converged_at or utc_now_iso(), record_id),
                )
            finally:
                conn.close()

    @staticmethod
    def _results(conn, run_id: str) -> list:
        rows = conn.execute(
            "SELECT seq,stage,attempt,status,artifact_json,error,error_kind,started_at,finished_at "
            "FROM stage_results WHERE run_id=? ORDER BY seq",
            (run_id,),
        ).fetchall()
        return [
            StageResult(
                seq=r[0], stage=r[1], attempt=r[2], status=r[3],
                artifact=Artifact.from_dict(json.loads(r[4]) if r[4] else None),
                error=r[5], error_kind=r[6], started_at=r[7], finished_at=r[8],
            )
            for r in rows
        ]

    @staticmethod
    def _raise_missing_or_terminal(conn, run_id: str):
        row = conn.execute("SELECT status FROM runs WHERE id=?", (run_id,)).fetchone()
        if not row:
            raise KeyError(run_id)
        raise RuntimeError(f"run_terminal run_id={run_id} status={row[0]}")
