# app/maintenance/purge_db.py
import argparse
import datetime as dt
import logging
import pathlib
import sqlite3
import sys

ROOT = pathlib.Path(__file__).resolve().parents[3]  # repo root
DB_PATH = ROOT / "bgtranslate.sqlite"

TERMINAL = ("completed", "failed", "cancelled")

log = logging.getLogger("purge_db")
logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")


def connect(db_path: pathlib.Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    # Pragmas tuned for maintenance
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


def cutoff_iso(delta: dt.timedelta) -> str:
    return (dt.datetime.now(dt.timezone.utc) - delta).strftime("%Y-%m-%d %H:%M:%S")


def purge_jobs(conn: sqlite3.Connection, keep_days: int, batch_size: int) -> int:
    """
    Portable batched purge of finished jobs:
      1) SELECT ids of old completed/failed/cancelled jobs
      2) DELETE FROM translation_jobs WHERE id IN (…) in batches
    """
    cutoff = cutoff_iso(dt.timedelta(days=keep_days))
    total_deleted = 0

    placeholders = ",".join("?" for _ in TERMINAL)
    sel_sql = f"""
      SELECT id
      FROM translation_jobs
      WHERE status IN ({placeholders})
        AND COALESCE(completed_at, updated_at) < ?
    """

    ids = [row["id"] for row in conn.execute(sel_sql, (*TERMINAL, cutoff))]

    for i in range(0, len(ids), batch_size):
        batch_ids = ids[i:i + batch_size]
        marks = ",".join("?" for _ in batch_ids)
        cur = conn.execute(f"DELETE FROM translation_jobs WHERE id IN ({marks})", batch_ids)
        conn.commit()
        total_deleted += cur.rowcount or 0

    return total_deleted


def fail_abandoned_jobs(conn: sqlite3.Connection, hours: int) -> int:
    """
    Mark `processing` jobs that have not reported progress for `hours` as
    failed, so they stop being picked up by the resume sweep.
    """
    cutoff = cutoff_iso(dt.timedelta(hours=hours))
    now = cutoff_iso(dt.timedelta())
    cur = conn.execute(
        """
        UPDATE translation_jobs
        SET status = 'failed',
            error_message = ?,
            updated_at = ?
        WHERE status = 'processing' AND updated_at < ?
        """,
        (f"Abandoned: no progress for {hours}h", now, cutoff),
    )
    conn.commit()
    return cur.rowcount or 0


def maybe_prepare_indexes(conn: sqlite3.Connection):
    # Safe to re-run; speeds up selection
    conn.execute("CREATE INDEX IF NOT EXISTS idx_translation_jobs_status ON translation_jobs(status);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_translation_jobs_updated_at ON translation_jobs(updated_at);")
    conn.commit()


def maybe_vacuum(conn: sqlite3.Connection, vacuum: bool):
    if vacuum:
        conn.execute("PRAGMA optimize;")
        conn.execute("VACUUM;")
        conn.commit()


def main(argv=None):
    ap = argparse.ArgumentParser(description="Purge old translation jobs.")
    ap.add_argument("--db", type=pathlib.Path, default=DB_PATH, help=f"SQLite database (default: {DB_PATH}).")
    ap.add_argument("--keep-days", type=int, default=30, help="Keep finished jobs newer than N days (default: 30).")
    ap.add_argument("--batch", type=int, default=2000, help="Delete in batches of N (default: 2000).")
    ap.add_argument("--fail-abandoned-hours", type=int, default=None,
                    help="Also fail processing jobs idle for N hours.")
    ap.add_argument("--vacuum", action="store_true", help="Run VACUUM after purge.")
    args = ap.parse_args(argv)

    if not args.db.exists():
        log.error(f"Database not found at {args.db}")
        sys.exit(1)

    conn = connect(args.db)
    try:
        maybe_prepare_indexes(conn)
        failed_jobs = 0
        if args.fail_abandoned_hours is not None:
            failed_jobs = fail_abandoned_jobs(conn, args.fail_abandoned_hours)
            log.info(f"Failed abandoned jobs: {failed_jobs}")
        deleted_jobs = purge_jobs(conn, args.keep_days, args.batch)
        log.info(f"Deleted jobs: {deleted_jobs}")

        maybe_vacuum(conn, args.vacuum)
        log.info("Purge complete.")
        print(f"Deleted jobs: {deleted_jobs}")
        print(f"Failed abandoned jobs: {failed_jobs}")
    finally:
        conn.close()


if __name__ == "__main__":
    main()
