import argparse
import os
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

RETENTION_DAYS = 7


def resolve_db_path(override: Optional[str]) -> Path:
    if override:
        return Path(override).expanduser().resolve()
    return Path(os.getenv("DB_PATH", "./data/sparky.db")).expanduser().resolve()


def users_by_preference(conn: sqlite3.Connection) -> list[tuple[int, str]]:
    rows = conn.execute(
        "SELECT id, auto_clear_history FROM users WHERE auto_clear_history IN ('7days', 'all', 'session')"
    ).fetchall()
    return [(int(r[0]), str(r[1])) for r in rows]


def sweep_user(conn: sqlite3.Connection, user_id: int, preference: str, now: datetime, dry_run: bool) -> int:
    if preference == "7days":
        cutoff = (now - timedelta(days=RETENTION_DAYS)).isoformat(sep=" ")
        where, params = "user_id = ? AND created_at < ?", [user_id, cutoff]
    else:
        where, params = "user_id = ?", [user_id]
    if dry_run:
        return int(conn.execute(f"SELECT COUNT(*) FROM sparky_chat_history WHERE {where}", params).fetchone()[0])
    cur = conn.execute(f"DELETE FROM sparky_chat_history WHERE {where}", params)
    return cur.rowcount if cur.rowcount is not None else 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Apply every user's chat history retention preference."
    )
    parser.add_argument(
        "--db-path",
        default=None,
        help="Override SQLite DB path. Defaults to DB_PATH env or app default.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Count rows that would be deleted; do not delete.",
    )
    args = parser.parse_args(argv)

    db_path = resolve_db_path(args.db_path)
    if not db_path.exists():
        print(f"DB not found: {db_path}")
        return 1

    now = datetime.now(timezone.utc).replace(tzinfo=None)
    conn = sqlite3.connect(str(db_path))
    try:
        total = 0
        print(f"Target DB: {db_path}")
        for user_id, preference in users_by_preference(conn):
            count = sweep_user(conn, user_id, preference, now, args.dry_run)
            total += count
            if count:
                print(f"  user {user_id} ({preference}): {count}")
        if not args.dry_run:
            conn.commit()
        print(f"{'Would delete' if args.dry_run else 'Deleted'} rows: {total}")
    finally:
        conn.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
