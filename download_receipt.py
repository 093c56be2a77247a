r"""
Downloads a Taiwan High Speed Rail (THSR) ride receipt from the carrier's portal
(https://ptis.thsrc.com.tw/ptis/) and files it under a year-month folder, so the
monthly expense report only needs the PDFs from one directory.

The program drives a Chrome session (using Selenium), fills in the receipt query
form (travel date, stations, ticket number or booking code), submits it, waits for
the download link on the results page, and saves the PDF as

   downloads/高鐵憑證/<YYYY-MM>/THSR_<date>_<from>-<to>_<ticket or booking>.pdf

Here how:
1.  python3 -m pip install -e .
2.  python3 download_receipt.py --date=2025-12-11 --from=左營 --to=台北 --ticket=1213113450036
    or with a booking code (PNR):
    python3 download_receipt.py --date=2025-12-11 --from=左營 --to=台北 --booking=ABC12345

Options:
    --headless=false    show the browser window (default: headless)
    --json              print a single JSON object instead of status lines (for the web app)
    --time=HH:MM        departure time, kept in the receipt ledger
    --purpose=<text>    business-trip purpose, kept in the receipt ledger

Exit code is 0 on success and 1 on missing parameters or any failure while
driving the portal.

Every download is also recorded in downloads/receipts.db (see receipt_db.py).
"""

import argparse
import json
import os
import re
import shutil
import sqlite3
import sys
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from selenium import webdriver
from selenium.common.exceptions import TimeoutException
from selenium.webdriver.common.by import By
from selenium.webdriver.support import expected_conditions as EC
from selenium.webdriver.support.ui import Select, WebDriverWait

from receipt_db import db_path, record_receipt
from receipt_helper import (
    clean_ticket_number,
    extract_page_error,
    month_folder,
    parse_time,
    receipt_path,
    station_code,
)


PROJECT_ROOT = Path(__file__).resolve().parent

THSR_RECEIPT_URL = os.environ.get("THSR_RECEIPT_URL", "https://ptis.thsrc.com.tw/ptis/")
DOWNLOAD_ROOT = Path(os.environ.get("THSR_DOWNLOAD_ROOT", str(PROJECT_ROOT / "downloads")))

# Seconds. Override with env THSR_PAGE_TIMEOUT / THSR_RESULT_TIMEOUT / THSR_DOWNLOAD_TIMEOUT.
PAGE_TIMEOUT = int(os.environ.get("THSR_PAGE_TIMEOUT", "30"))
RESULT_TIMEOUT = int(os.environ.get("THSR_RESULT_TIMEOUT", "30"))
DOWNLOAD_TIMEOUT = int(os.environ.get("THSR_DOWNLOAD_TIMEOUT", "30"))

# The portal wires up its form scripts after load; the query-type switch swaps inputs.
PAGE_SETTLE_SECONDS = 2
QUERY_TYPE_PAUSE = 0.5

USAGE = (
    "Usage: python3 download_receipt.py --date=YYYY-MM-DD --from=起站 --to=迄站 --ticket=票號\n"
    "   or: python3 download_receipt.py --date=YYYY-MM-DD --from=起站 --to=迄站 --booking=訂位代號"
)

# Status lines are suppressed in --json mode so stdout carries only the result.
JSON_OUTPUT = False


class ParameterError(ValueError):
    """Missing or malformed command-line parameters."""


class ReceiptDownloadError(RuntimeError):
    """The portal did not produce a receipt."""


@dataclass
class ReceiptQuery:
    date: str
    departure: str
    destination: str
    ticket: Optional[str] = None
    booking: Optional[str] = None
    headless: bool = True
    json_output: bool = False
    travel_time: str = ""
    purpose: str = ""

    @property
    def query_type(self) -> str:
        return "booking" if self.booking else "ticket"

    @property
    def ticket_id(self) -> str:
        if self.booking:
            return self.booking
        return clean_ticket_number(self.ticket or "")


@dataclass
class DownloadResult:
    file_path: Path
    file_name: str
    folder: str

    def as_json(self) -> dict:
        return {
            "success": True,
            "filePath": str(self.file_path),
            "fileName": self.file_name,
            "folder": self.folder,
        }


def log(message: str = ""):
    if not JSON_OUTPUT:
        print(message)


def log_error(message: str):
    if not JSON_OUTPUT:
        print(f"[ERROR] {message}", file=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Download a THSR ride receipt.",
        add_help=False,
        allow_abbrev=False,
        exit_on_error=False,
    )
    parser.add_argument("--date")
    parser.add_argument("--from", dest="departure")
    parser.add_argument("--to", dest="destination")
    parser.add_argument("--ticket")
    parser.add_argument("--booking")
    parser.add_argument("--headless", nargs="?", const="true", default="true")
    parser.add_argument("--json", dest="json_output", action="store_true")
    parser.add_argument("--time", dest="travel_time", default="")
    parser.add_argument("--purpose", default="")
    return parser


def parse_params(argv: list[str]) -> ReceiptQuery:
    """Turn command-line arguments into a ReceiptQuery; unknown options are ignored."""
    try:
        args, _unknown = build_parser().parse_known_args(argv)
    except argparse.ArgumentError as e:
        raise ParameterError(str(e)) from e

    if not args.date or not args.departure or not args.destination or not (args.ticket or args.booking):
        raise ParameterError("Missing required parameters")

    if not re.fullmatch(r"\d{4}-\d{2}-\d{2}", args.date):
        raise ParameterError(f"Invalid date '{args.date}', expected YYYY-MM-DD")
    try:
        datetime.strptime(args.date, "%Y-%m-%d")
    except ValueError as e:
        raise ParameterError(f"Invalid date '{args.date}': {e}") from e

    if not args.booking and not clean_ticket_number(args.ticket):
        raise ParameterError(f"Invalid ticket number '{args.ticket}'")

    travel_time = ""
    if args.travel_time:
        travel_time = parse_time(args.travel_time)
        if not travel_time:
            raise ParameterError(f"Invalid time '{args.travel_time}', expected HH:MM")

    return ReceiptQuery(
        date=args.date,
        departure=args.departure,
        destination=args.destination,
        ticket=args.ticket,
        booking=args.booking,
        headless=args.headless.lower() != "false",
        json_output=args.json_output,
        travel_time=travel_time,
        purpose=args.purpose,
    )


def setup_driver(headless: bool, download_dir: Path):
    options = webdriver.ChromeOptions()
    if headless:
        options.add_argument("--headless=new")
    else:
        options.add_argument("--start-maximized")
    options.add_argument("--window-size=1280,800")
    options.add_argument("--lang=zh-TW")
    options.add_experimental_option(
        "prefs",
        {
            "intl.accept_languages": "zh-TW",
            "download.default_directory": str(download_dir),
            "download.prompt_for_download": False,
            # Save receipt PDFs instead of opening them in Chrome's viewer
            "plugins.always_open_pdf_externally": True,
        },
    )

    driver = webdriver.Chrome(options=options)
    driver.set_page_load_timeout(PAGE_TIMEOUT)
    # Headless Chrome ignores the download prefs unless told through DevTools.
    driver.execute_cdp_cmd(
        "Page.setDownloadBehavior",
        {"behavior": "allow", "downloadPath": str(download_dir)},
    )
    return driver


def wait_for_page_load(driver, timeout: Optional[float] = None):
    WebDriverWait(driver, PAGE_TIMEOUT if timeout is None else timeout).until(
        lambda d: d.execute_script("return document.readyState") == "complete"
    )


def open_portal(driver):
    log("[INFO] Opening THSR portal...")
    driver.get(THSR_RECEIPT_URL)
    wait_for_page_load(driver)
    time.sleep(PAGE_SETTLE_SECONDS)


def fill_input(element, value: str):
    element.clear()
    element.send_keys(value)


def fill_query_form(driver, query: ReceiptQuery):
    """Fill date, stations and the ticket/booking field of the receipt query form."""
    log(f"[INFO] Date: {query.date}")
    # depDate is read-only behind a date picker, so set it through the DOM.
    driver.execute_script(
        """
        const input = document.getElementById('depDate');
        if (input) {
            input.value = arguments[0];
            input.dispatchEvent(new Event('change', { bubbles: true }));
        }
        """,
        query.date,
    )

    log(f"[INFO] Departure station: {query.departure}")
    Select(driver.find_element(By.ID, "depStation")).select_by_value(station_code(query.departure))

    log(f"[INFO] Arrival station: {query.destination}")
    Select(driver.find_element(By.ID, "arrStation")).select_by_value(station_code(query.destination))

    ticket_type = Select(driver.find_element(By.ID, "ticketType"))
    if query.booking:
        log("[INFO] Query type: booking code")
        ticket_type.select_by_value("pnrQuery")
        time.sleep(QUERY_TYPE_PAUSE)
        fill_input(driver.find_element(By.CSS_SELECTOR, 'input[name="pnr"]'), query.booking)
    else:
        log("[INFO] Query type: ticket number")
        ticket_type.select_by_value("tidQuery")
        time.sleep(QUERY_TYPE_PAUSE)
        log(f"[INFO] Ticket number: {query.ticket_id}")
        fill_input(driver.find_element(By.ID, "tix"), query.ticket_id)

    log("[INFO] Query form filled.")


def submit_query(driver):
    """Click 開始查詢 and return the download link of the results page."""
    log("[INFO] Submitting query...")
    driver.find_element(By.XPATH, "//button[contains(normalize-space(.), '開始查詢')]").click()

    log("[INFO] Waiting for results...")
    try:
        return WebDriverWait(driver, RESULT_TIMEOUT).until(
            EC.visibility_of_element_located((By.CSS_SELECTOR, "a.download_btn"))
        )
    except TimeoutException:
        message = extract_page_error(driver.page_source)
        detail = f": {message}" if message else ""
        raise ReceiptDownloadError(f"No download link after {RESULT_TIMEOUT}s{detail}") from None


def finished_download(directory: Path) -> Optional[Path]:
    """Return the downloaded file once Chrome has finished writing it, else None."""
    files = [p for p in Path(directory).iterdir() if p.is_file()]
    if not files or any(p.suffix in (".crdownload", ".tmp") for p in files):
        return None
    return max(files, key=lambda p: p.stat().st_mtime)


def wait_for_download(driver, directory: Path, timeout: Optional[float] = None) -> Path:
    timeout = DOWNLOAD_TIMEOUT if timeout is None else timeout
    try:
        return WebDriverWait(driver, timeout, poll_frequency=0.2).until(
            lambda d: finished_download(directory)
        )
    except TimeoutException:
        raise ReceiptDownloadError(f"Download was not triggered within {timeout}s") from None


def download_receipt(query: ReceiptQuery, root: Path = DOWNLOAD_ROOT, driver_factory=setup_driver) -> DownloadResult:
    """
    Run the whole portal sequence for one receipt and return where it was saved.
    The browser is always closed, whether the download succeeded or not.
    """
    target = receipt_path(root, query.date, query.departure, query.destination, query.ticket_id)
    staging = Path(tempfile.mkdtemp(prefix="thsr-receipt-"))

    driver = None
    try:
        driver = driver_factory(query.headless, staging)
        open_portal(driver)
        fill_query_form(driver, query)
        link = submit_query(driver)

        log("[INFO] Clicking download...")
        link.click()
        downloaded = wait_for_download(driver, staging)

        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(downloaded), str(target))
        log(f"[INFO] Saved receipt → {target}")
    finally:
        if driver is not None:
            driver.quit()
        shutil.rmtree(staging, ignore_errors=True)

    try:
        record_receipt(
            db_path(root),
            query.date,
            query.departure,
            query.destination,
            query.ticket_id,
            query.query_type,
            target,
            travel_time=query.travel_time,
            purpose=query.purpose,
        )
    except (sqlite3.Error, OSError) as e:
        log(f"[WARN] Receipt saved but not recorded in the ledger: {e}")

    return DownloadResult(file_path=target, file_name=target.name, folder=month_folder(query.date))


def print_banner(query: ReceiptQuery):
    log("=== THSR Receipt Download ===")
    log(f"Date:    {query.date}")
    log(f"Route:   {query.departure} → {query.destination}")
    if query.booking:
        log(f"Booking: {query.booking}")
    else:
        log(f"Ticket:  {query.ticket}")
    log(f"Mode:    {'headless' if query.headless else 'visible browser'}")
    log("=============================")
    log()


def emit_json(payload: dict):
    print(json.dumps(payload, ensure_ascii=False))


def wants_json(argv: list[str]) -> bool:
    """Read only the --json flag, so parameter errors can still be reported as JSON."""
    parser = argparse.ArgumentParser(add_help=False, allow_abbrev=False, exit_on_error=False)
    parser.add_argument("--json", dest="json_output", action="store_true")
    try:
        args, _unknown = parser.parse_known_args(argv)
    except argparse.ArgumentError:
        return False
    return args.json_output


def main(argv: Optional[list[str]] = None, driver_factory=setup_driver) -> int:
    global JSON_OUTPUT
    argv = sys.argv[1:] if argv is None else argv
    JSON_OUTPUT = wants_json(argv)

    try:
        query = parse_params(argv)
    except ParameterError as e:
        if JSON_OUTPUT:
            emit_json({"success": False, "error": str(e)})
        else:
            print(f"[ERROR] {e}", file=sys.stderr)
            print(USAGE, file=sys.stderr)
        return 1

    JSON_OUTPUT = query.json_output
    print_banner(query)

    try:
        result = download_receipt(query, DOWNLOAD_ROOT, driver_factory)
    except Exception as e:
        # Single top-level handler: chromedriver connection errors surface from urllib3, not Selenium.
        message = getattr(e, "msg", None) or str(e) or type(e).__name__
        if JSON_OUTPUT:
            emit_json({"success": False, "error": message})
        else:
            log_error(message)
        return 1

    log()
    log("[INFO] Done.")
    if JSON_OUTPUT:
        emit_json(result.as_json())
    return 0


if __name__ == "__main__":
    sys.exit(main())
