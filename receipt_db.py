"""
SQLite ledger of downloaded receipts.

  How to use the database:
      - Every downloaded receipt is one row in `receipts`, keyed by file_path.
      - Receipts of a month:
        SELECT * FROM receipts WHERE month = '2025-12' ORDER BY travel_date;
      - direction is 'northbound' or 'southbound'; query_type is 'ticket' or 'booking'.
      - travel_time (HH:MM) and purpose are filled in by hand for the expense report.
"""

import csv
import io
import sqlite3
from pathlib import Path
from typing import Optional

from receipt_helper import (
    DIRECTION_LABELS,
    RECEIPT_FOLDER,
    format_date_for_thsr,
    month_folder,
    parse_receipt_file_name,
    travel_direction,
)


DB_NAME = "receipts.db"

CSV_HEADER = ["票號", "日期", "時間", "方向", "出發站", "目的站", "出差目的"]

COLUMNS = [
    "id",
    "travel_date",
    "travel_time",
    "month",
    "departure",
    "destination",
    "direction",
    "query_type",
    "ticket_id",
    "purpose",
    "file_name",
    "file_path",
    "created_at",
]

# Columns added after the first release; older ledgers get them on open.
ADDED_COLUMNS = {
    "travel_time": "TEXT DEFAULT ''",
    "purpose": "TEXT DEFAULT ''",
}


def db_path(root: Path) -> Path:
    return Path(root) / DB_NAME


def init_db(path: Path):
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS receipts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            travel_date TEXT,
            travel_time TEXT DEFAULT '',
            month TEXT,
            departure TEXT,
            destination TEXT,
            direction TEXT,
            query_type TEXT,
            ticket_id TEXT,
            purpose TEXT DEFAULT '',
            file_name TEXT,
            file_path TEXT UNIQUE,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    existing = {row[1] for row in cur.execute("PRAGMA table_info(receipts)")}
    for name, decl in ADDED_COLUMNS.items():
        if name not in existing:
            cur.execute(f"ALTER TABLE receipts ADD COLUMN {name} {decl}")
    conn.commit()
    conn.close()


def _fetch(path: Path, sql: str, args=()) -> list[dict]:
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    cur = conn.cursor()
    cur.execute(sql, args)
    rows = [dict(r) for r in cur.fetchall()]
    conn.close()
    return rows


def record_receipt(
    path: Path,
    travel_date: str,
    departure: str,
    destination: str,
    ticket_id: str,
    query_type: str,
    file_path: Path,
    travel_time: str = "",
    purpose: str = "",
) -> int:
    """
    Insert one receipt row and return its id. Downloading the same file again
    updates the row but keeps a time or purpose entered earlier unless new ones are given.
    """
    init_db(path)
    conn = sqlite3.connect(path)
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO receipts (
            travel_date, travel_time, month, departure, destination, direction,
            query_type, ticket_id, purpose, file_name, file_path
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(file_path) DO UPDATE SET
            travel_date = excluded.travel_date,
            travel_time = CASE WHEN excluded.travel_time != '' THEN excluded.travel_time ELSE receipts.travel_time END,
            month = excluded.month,
            departure = excluded.departure,
            destination = excluded.destination,
            direction = excluded.direction,
            query_type = excluded.query_type,
            ticket_id = excluded.ticket_id,
            purpose = CASE WHEN excluded.purpose != '' THEN excluded.purpose ELSE receipts.purpose END,
            file_name = excluded.file_name
        """,
        (
            travel_date,
            travel_time or "",
            month_folder(travel_date),
            departure,
            destination,
            travel_direction(departure, destination),
            query_type,
            ticket_id,
            purpose or "",
            Path(file_path).name,
            str(file_path),
        ),
    )
    cur.execute("SELECT id FROM receipts WHERE file_path = ?", (str(file_path),))
    row_id = cur.fetchone()[0]
    conn.commit()
    conn.close()
    return row_id


def get_receipt(path: Path, receipt_id: int) -> Optional[dict]:
    init_db(path)
    rows = _fetch(path, f"SELECT {', '.join(COLUMNS)} FROM receipts WHERE id = ?", (receipt_id,))
    return rows[0] if rows else None


def update_receipt(
    path: Path,
    receipt_id: int,
    travel_time: Optional[str] = None,
    purpose: Optional[str] = None,
) -> Optional[dict]:
    """Set travel time and/or purpose; None leaves a field alone. Returns the updated row."""
    init_db(path)
    sets = []
    args = []
    if travel_time is not None:
        sets.append("travel_time = ?")
        args.append(travel_time)
    if purpose is not None:
        sets.append("purpose = ?")
        args.append(purpose)
    if sets:
        conn = sqlite3.connect(path)
        cur = conn.cursor()
        cur.execute(f"UPDATE receipts SET {', '.join(sets)} WHERE id = ?", args + [receipt_id])
        conn.commit()
        conn.close()
    return get_receipt(path, receipt_id)


def delete_receipt(path: Path, receipt_id: int) -> Optional[dict]:
    """Remove a row and return it, or None if there was no such receipt."""
    row = get_receipt(path, receipt_id)
    if row is None:
        return None
    conn = sqlite3.connect(path)
    cur = conn.cursor()
    cur.execute("DELETE FROM receipts WHERE id = ?", (receipt_id,))
    conn.commit()
    conn.close()
    return row


def list_receipts(
    path: Path,
    month: Optional[str] = None,
    direction: Optional[str] = None,
    search: Optional[str] = None,
) -> list[dict]:
    init_db(path)
    clauses = []
    args = []
    if month:
        clauses.append("month = ?")
        args.append(month)
    if direction and direction != "all":
        clauses.append("direction = ?")
        args.append(direction)
    if search:
        # Plain case-insensitive substring match on ticket number or purpose.
        clauses.append("(instr(lower(ticket_id), lower(?)) > 0 OR instr(lower(purpose), lower(?)) > 0)")
        args.extend([search, search])

    sql = f"SELECT {', '.join(COLUMNS)} FROM receipts"
    if clauses:
        sql += " WHERE " + " AND ".join(clauses)
    sql += " ORDER BY travel_date, travel_time, id"
    return _fetch(path, sql, args)


def list_months(path: Path) -> list[str]:
    """Distinct travel months, newest first."""
    init_db(path)
    return [r["month"] for r in _fetch(path, "SELECT DISTINCT month FROM receipts ORDER BY month DESC")]


def export_csv(rows: list[dict]) -> str:
    """CSV for spreadsheet use; the BOM makes Excel read it as UTF-8."""
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for r in rows:
        writer.writerow(
            [
                r.get("ticket_id", ""),
                format_date_for_thsr(r.get("travel_date", "")),
                r.get("travel_time") or "",
                DIRECTION_LABELS.get(r.get("direction"), r.get("direction") or ""),
                r.get("departure", ""),
                r.get("destination", ""),
                r.get("purpose") or "",
            ]
        )
    return "\ufeff" + buf.getvalue()


def prune_missing(path: Path) -> int:
    """Drop rows whose PDF is no longer on disk; returns how many were dropped."""
    init_db(path)
    gone = [r["id"] for r in _fetch(path, "SELECT id, file_path FROM receipts") if not Path(r["file_path"]).is_file()]
    if gone:
        conn = sqlite3.connect(path)
        cur = conn.cursor()
        cur.executemany("DELETE FROM receipts WHERE id = ?", [(i,) for i in gone])
        conn.commit()
        conn.close()
    return len(gone)


def scan_downloads(root: Path, path: Optional[Path] = None, prune: bool = True) -> int:
    """
    Rebuild ledger rows from receipt PDFs already on disk.
    Files that don't follow the THSR_<date>_<from>-<to>_<id>.pdf pattern are skipped,
    and with prune=True rows whose PDF was deleted are dropped first.
    Returns the number of receipts recorded.
    """
    root = Path(root)
    path = path or db_path(root)
    if prune:
        removed = prune_missing(path)
        if removed:
            print(f"[INFO] Dropped {removed} receipt(s) whose PDF is gone")
    count = 0
    for pdf in sorted((root / RECEIPT_FOLDER).glob("*/*.pdf")):
        parts = parse_receipt_file_name(pdf.name)
        if not parts:
            print(f"[WARN] Skipping unrecognized file {pdf}")
            continue
        query_type = "ticket" if parts["ticket_id"].isdigit() else "booking"
        record_receipt(
            path,
            parts["date"],
            parts["departure"],
            parts["destination"],
            parts["ticket_id"],
            query_type,
            pdf,
        )
        count += 1
    return count
