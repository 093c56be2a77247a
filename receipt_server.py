import json
import os
import subprocess
import sys
from datetime import date, datetime
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

import receipt_db
from download_receipt import DOWNLOAD_ROOT, PROJECT_ROOT
from receipt_helper import DIRECTION_LABELS, clean_ticket_number, parse_ticket_text, parse_time

app = FastAPI(title="THSR Receipt Manager")

SCRIPT_PATH = PROJECT_ROOT / "download_receipt.py"
# The script itself waits up to ~100s (page, results, download); leave headroom.
SCRIPT_TIMEOUT = int(os.environ.get("THSR_SCRIPT_TIMEOUT", "180"))


def _check_time(value: Optional[str]) -> Optional[str]:
    if not value:
        return value
    parsed = parse_time(value)
    if not parsed:
        raise ValueError("travel_time must look like HH:MM")
    return parsed


class ReceiptOut(BaseModel):
    id: int
    travel_date: str
    travel_time: str
    month: str
    departure: str
    destination: str
    direction: str
    direction_label: str
    query_type: str
    ticket_id: str
    purpose: str
    file_name: str
    url: Optional[str]


class DownloadRequest(BaseModel):
    # "from" is a Python keyword; the JSON body still uses it.
    model_config = ConfigDict(populate_by_name=True)

    date: str = Field(pattern=r"^\d{4}-\d{2}-\d{2}$")
    from_station: str = Field(alias="from", min_length=1)
    to: str = Field(min_length=1)
    ticket: Optional[str] = None
    booking: Optional[str] = None
    travel_time: Optional[str] = None
    purpose: Optional[str] = None

    @field_validator("date")
    @classmethod
    def _real_date(cls, v: str) -> str:
        datetime.strptime(v, "%Y-%m-%d")
        return v

    @field_validator("travel_time")
    @classmethod
    def _valid_time(cls, v: Optional[str]) -> Optional[str]:
        return _check_time(v)

    @model_validator(mode="after")
    def _ticket_or_booking(self):
        if not self.booking:
            if not self.ticket:
                raise ValueError("ticket or booking is required")
            if not clean_ticket_number(self.ticket):
                raise ValueError("ticket number must contain digits")
        return self


class ReceiptUpdate(BaseModel):
    travel_time: Optional[str] = None
    purpose: Optional[str] = None

    @field_validator("travel_time")
    @classmethod
    def _valid_time(cls, v: Optional[str]) -> Optional[str]:
        return _check_time(v)


class TicketText(BaseModel):
    text: str


def download_url(file_path: str) -> Optional[str]:
    """Map a file under the downloads root to the /downloads/... URL that serves it."""
    try:
        rel = Path(file_path).resolve().relative_to(DOWNLOAD_ROOT.resolve())
    except ValueError:
        return None
    return "/downloads/" + rel.as_posix()


def to_receipt_out(row: dict) -> ReceiptOut:
    return ReceiptOut(
        id=row["id"],
        travel_date=row["travel_date"],
        travel_time=row["travel_time"] or "",
        month=row["month"],
        departure=row["departure"],
        destination=row["destination"],
        direction=row["direction"],
        direction_label=DIRECTION_LABELS.get(row["direction"], row["direction"]),
        query_type=row["query_type"],
        ticket_id=row["ticket_id"],
        purpose=row["purpose"] or "",
        file_name=row["file_name"],
        url=download_url(row["file_path"]),
    )


@app.on_event("startup")
def _startup():
    receipt_db.init_db(receipt_db.db_path(DOWNLOAD_ROOT))


@app.get("/health")
def health():
    return {"ok": True}


@app.api_route("/downloads/{file_path:path}", methods=["GET", "HEAD"])
def serve_download(file_path: str):
    # Only files inside the downloads root are served; anything else is a plain 404.
    root = DOWNLOAD_ROOT.resolve()
    target = (root / file_path).resolve()
    if not target.is_relative_to(root) or not target.is_file():
        return PlainTextResponse("Not Found", status_code=404)
    return FileResponse(target, media_type="application/pdf")


@app.get("/api/receipts", response_model=list[ReceiptOut])
def list_receipts(
    month: Optional[str] = Query(None, pattern=r"^\d{4}-\d{2}$"),
    direction: Optional[str] = Query(None, pattern=r"^(all|northbound|southbound)$"),
    search: Optional[str] = None,
):
    rows = receipt_db.list_receipts(
        receipt_db.db_path(DOWNLOAD_ROOT), month=month, direction=direction, search=search
    )
    return [to_receipt_out(r) for r in rows]


@app.patch("/api/receipts/{receipt_id}", response_model=ReceiptOut)
def update_receipt(receipt_id: int, update: ReceiptUpdate):
    row = receipt_db.update_receipt(
        receipt_db.db_path(DOWNLOAD_ROOT),
        receipt_id,
        travel_time=update.travel_time,
        purpose=update.purpose,
    )
    if row is None:
        raise HTTPException(status_code=404, detail="receipt not found")
    return to_receipt_out(row)


@app.delete("/api/receipts/{receipt_id}")
def delete_receipt(receipt_id: int):
    """Drop the ledger row and its PDF, so a later rescan doesn't bring it back."""
    row = receipt_db.delete_receipt(receipt_db.db_path(DOWNLOAD_ROOT), receipt_id)
    if row is None:
        raise HTTPException(status_code=404, detail="receipt not found")
    if download_url(row["file_path"]) is not None:
        Path(row["file_path"]).unlink(missing_ok=True)
    return {"deleted": receipt_id}


@app.get("/api/months")
def list_months():
    return receipt_db.list_months(receipt_db.db_path(DOWNLOAD_ROOT))


@app.get("/api/receipts/export")
def export_receipts(month: Optional[str] = Query(None, pattern=r"^\d{4}-\d{2}$")):
    rows = receipt_db.list_receipts(receipt_db.db_path(DOWNLOAD_ROOT), month=month)
    filename = f"THSR_tickets_{date.today().isoformat()}.csv"
    return Response(
        content=receipt_db.export_csv(rows),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/api/rescan")
def rescan():
    """Re-index receipt PDFs copied in by hand and forget ones deleted from disk."""
    path = receipt_db.db_path(DOWNLOAD_ROOT)
    removed = receipt_db.prune_missing(path)
    count = receipt_db.scan_downloads(DOWNLOAD_ROOT, path, prune=False)
    return {"recorded": count, "removed": removed}


@app.post("/api/parse-ticket")
def parse_ticket(body: TicketText):
    """Fill a download form from text copied off a ticket (number, date, time, stations)."""
    return parse_ticket_text(body.text)


@app.post("/api/download-receipt")
def download_receipt(req: DownloadRequest):
    cmd = [
        sys.executable,
        str(SCRIPT_PATH),
        f"--date={req.date}",
        f"--from={req.from_station}",
        f"--to={req.to}",
        "--json",
    ]
    if req.booking:
        cmd.append(f"--booking={req.booking}")
    else:
        cmd.append(f"--ticket={req.ticket}")
    if req.travel_time:
        cmd.append(f"--time={req.travel_time}")
    if req.purpose:
        cmd.append(f"--purpose={req.purpose}")

    env = dict(os.environ, THSR_DOWNLOAD_ROOT=str(DOWNLOAD_ROOT))
    print(f"[INFO] Running receipt download for {req.date} {req.from_station} → {req.to}")
    try:
        proc = subprocess.run(
            cmd, capture_output=True, text=True, timeout=SCRIPT_TIMEOUT, cwd=PROJECT_ROOT, env=env
        )
    except subprocess.TimeoutExpired:
        print(f"[ERROR] Download script did not finish within {SCRIPT_TIMEOUT}s")
        return JSONResponse(
            {"success": False, "error": f"Download timed out after {SCRIPT_TIMEOUT}s"}, status_code=504
        )

    lines = [line for line in proc.stdout.splitlines() if line.strip()]
    try:
        result = json.loads(lines[-1])
    except (IndexError, ValueError):
        result = {"success": False, "error": proc.stderr.strip() or "No output from download script"}

    if not result.get("success"):
        print(f"[ERROR] Receipt download failed: {result.get('error')}")
        return JSONResponse(result, status_code=502)

    result["url"] = download_url(result["filePath"])
    return result


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=int(os.environ.get("THSR_SERVER_PORT", "8000")))
