"""
Helpers for naming THSR receipts and filling the portal query form.

Everything here is pure: station codes and aliases, ticket cleanup, the year-month folder
layout, parsing of ticket text, and a small BeautifulSoup scan of portal pages
for error messages.
"""

import re
from pathlib import Path
from typing import Optional

from bs4 import BeautifulSoup


RECEIPT_FOLDER = "高鐵憑證"

# Option values of #depStation / #arrStation on the portal, north to south.
STATIONS = {
    "南港": "1",
    "台北": "2",
    "板橋": "3",
    "桃園": "4",
    "新竹": "5",
    "苗栗": "6",
    "台中": "7",
    "彰化": "8",
    "雲林": "9",
    "嘉義": "10",
    "台南": "11",
    "左營": "12",
}
DEFAULT_STATION_CODE = STATIONS["台北"]

STATION_LABELS = {
    "南港": "南港 (Nangang)",
    "台北": "台北 (Taipei)",
    "板橋": "板橋 (Banqiao)",
    "桃園": "桃園 (Taoyuan)",
    "新竹": "新竹 (Hsinchu)",
    "苗栗": "苗栗 (Miaoli)",
    "台中": "台中 (Taichung)",
    "彰化": "彰化 (Changhua)",
    "雲林": "雲林 (Yunlin)",
    "嘉義": "嘉義 (Chiayi)",
    "台南": "台南 (Tainan)",
    "左營": "左營 (Zuoying)",
}

DIRECTION_LABELS = {"northbound": "北上", "southbound": "南下"}

RECEIPT_NAME_RE = re.compile(
    r"^THSR_(?P<date>\d{4}-\d{2}-\d{2})_(?P<departure>[^_-]+)-(?P<destination>[^_]+)_(?P<ticket_id>[^_]+)\.pdf$"
)


def station_code(name: str) -> str:
    """Form value for a station name or alias; unknown names fall back to 台北."""
    return STATIONS.get(normalize_station(name), DEFAULT_STATION_CODE)


def station_label(name: str) -> str:
    return STATION_LABELS.get(name, name)


def clean_ticket_number(ticket: str) -> str:
    """Strip separators such as '-' or spaces, keeping only the digits."""
    return re.sub(r"\D", "", ticket)


def month_folder(date_text: str) -> str:
    """Return "2025-12" for "2025-12-11"."""
    year, month = date_text.split("-")[:2]
    return f"{year}-{month}"


def format_date_for_thsr(date_text: str) -> str:
    return date_text.replace("-", "/")


def ticket_identifier(ticket: Optional[str], booking: Optional[str]) -> str:
    """The booking code wins when both are given; tickets are reduced to digits."""
    if booking:
        return booking
    return clean_ticket_number(ticket or "")


def travel_direction(departure: str, destination: str) -> str:
    """
    Stations are numbered north to south, so a lower destination code means
    the ride heads north. Unknown stations are treated as 台北.
    """
    if int(station_code(destination)) < int(station_code(departure)):
        return "northbound"
    return "southbound"


def receipt_file_name(date_text: str, departure: str, destination: str, ticket_id: str) -> str:
    return f"THSR_{date_text}_{departure}-{destination}_{ticket_id}.pdf"


def receipt_dir(root: Path, date_text: str) -> Path:
    return Path(root) / RECEIPT_FOLDER / month_folder(date_text)


def receipt_path(root: Path, date_text: str, departure: str, destination: str, ticket_id: str) -> Path:
    """Final location of a receipt: <root>/高鐵憑證/<YYYY-MM>/THSR_...pdf"""
    return receipt_dir(root, date_text) / receipt_file_name(date_text, departure, destination, ticket_id)


def receipt_url_path(date_text: str, departure: str, destination: str, ticket_id: str) -> str:
    """URL path under which the web app serves the receipt."""
    file_name = receipt_file_name(date_text, departure, destination, ticket_id)
    return f"/downloads/{RECEIPT_FOLDER}/{month_folder(date_text)}/{file_name}"


def parse_receipt_file_name(file_name: str) -> Optional[dict]:
    """Split a receipt file name back into its parts, or None if it doesn't match."""
    m = RECEIPT_NAME_RE.match(file_name)
    return m.groupdict() if m else None


def extract_page_error(html: str) -> str:
    """Return the first visible error/alert message on a portal page, or ""."""
    soup = BeautifulSoup(html, "html.parser")

    candidates = soup.find_all(attrs={"role": "alert"})
    candidates += soup.find_all(class_=re.compile(r"(error|alert|warning)", re.I))
    candidates += soup.find_all(id=re.compile(r"(error|alert|msg)", re.I))

    for tag in candidates:
        style = (tag.get("style") or "").replace(" ", "").lower()
        if "display:none" in style:
            continue
        text = tag.get_text(" ", strip=True)
        if text:
            return re.sub(r"\s+", " ", text)
    return ""


# Spellings seen on printed tickets and in user input, mapped to the portal's names.
STATION_ALIASES = {
    "臺北": "台北",
    "臺中": "台中",
    "臺南": "台南",
    "高雄": "左營",
    "Nangang": "南港",
    "Taipei": "台北",
    "Banciao": "板橋",
    "Banqiao": "板橋",
    "Taoyuan": "桃園",
    "Hsinchu": "新竹",
    "Miaoli": "苗栗",
    "Taichung": "台中",
    "Changhua": "彰化",
    "Yunlin": "雲林",
    "Chiayi": "嘉義",
    "Tainan": "台南",
    "Zuoying": "左營",
    "Kaohsiung": "左營",
}

NORTHBOUND_KEYWORDS = ("北上", "往北", "北行")
SOUTHBOUND_KEYWORDS = ("南下", "往南", "南行")


def normalize_station(name: str) -> str:
    """
    Map '高鐵臺中站', 'Taichung' or '高雄' style names to the portal's station
    names. Unrecognized input is returned stripped but otherwise unchanged.
    """
    if not name:
        return name
    text = name.strip()
    if text in STATIONS:
        return text

    core = text
    if core.startswith("高鐵"):
        core = core[len("高鐵"):]
    if core.endswith("站"):
        core = core[:-1]
    if core in STATIONS:
        return core
    for alias, station in STATION_ALIASES.items():
        if core.lower() == alias.lower():
            return station

    for station in STATIONS:
        if station in text:
            return station
    for alias, station in STATION_ALIASES.items():
        if alias.lower() in text.lower():
            return station
    return text


def find_stations(text: str) -> list[str]:
    """Stations mentioned in text, in order of first appearance."""
    found = {}
    lowered = text.lower()
    for station in STATIONS:
        idx = text.find(station)
        if idx != -1:
            found[station] = idx
    for alias, station in STATION_ALIASES.items():
        idx = lowered.find(alias.lower())
        if idx != -1 and station not in found:
            found[station] = idx
    return sorted(found, key=found.get)


def parse_ticket_number(text: str) -> Optional[str]:
    """
    Find a 13-digit ticket number in free text: printed dashed form
    (12-1-31-1-345-0036), plain digits, or digits separated by spaces.
    """
    if not text:
        return None

    for m in re.finditer(r"\d+(?:-\d+)+", text):
        digits = m.group(0).replace("-", "")
        if len(digits) == 13:
            return digits

    m = re.search(r"\d{13}", text)
    if m:
        return m.group(0)

    for m in re.finditer(r"\d+(?:[ \t]+\d+)+", text):
        digits = re.sub(r"\s", "", m.group(0))
        if len(digits) == 13:
            return digits
    return None


def parse_direction(text: str) -> Optional[str]:
    """北上/南下 keywords win; otherwise compare the first and last station mentioned."""
    if not text:
        return None
    if any(k in text for k in NORTHBOUND_KEYWORDS):
        return "northbound"
    if any(k in text for k in SOUTHBOUND_KEYWORDS):
        return "southbound"

    stations = find_stations(text)
    if len(stations) < 2 or stations[0] == stations[-1]:
        return None
    return travel_direction(stations[0], stations[-1])


def parse_date(text: str) -> Optional[str]:
    """YYYY-MM-DD from ROC (民國113年3月15日, 113/03/15), 2024年3月15日, 2024/3/15 or 3/15/2024."""
    patterns = [
        (r"民國?(\d{2,3})年(\d{1,2})月(\d{1,2})日", "roc"),
        (r"\b(1\d{2})/(\d{1,2})/(\d{1,2})\b", "roc"),
        (r"(20\d{2})年(\d{1,2})月(\d{1,2})日", "ymd"),
        (r"(20\d{2})[/\-.](\d{1,2})[/\-.](\d{1,2})", "ymd"),
        (r"\b(\d{1,2})/(\d{1,2})/(20\d{2})\b", "mdy"),
    ]
    for pattern, kind in patterns:
        m = re.search(pattern, text)
        if not m:
            continue
        a, b, c = m.groups()
        if kind == "roc":
            year, month, day = int(a) + 1911, b, c
        elif kind == "ymd":
            year, month, day = a, b, c
        else:
            year, month, day = c, a, b
        return f"{year}-{int(month):02d}-{int(day):02d}"
    return None


def parse_time(text: str) -> Optional[str]:
    """HH:MM from '14時30分' or '14:30'; out-of-range times are skipped."""
    m = re.search(r"(\d{1,2})時(\d{1,2})分", text)
    if m:
        return f"{int(m.group(1)):02d}:{int(m.group(2)):02d}"
    for m in re.finditer(r"\b(\d{1,2}):(\d{2})\b", text):
        hours, minutes = int(m.group(1)), int(m.group(2))
        if hours <= 23 and minutes <= 59:
            return f"{hours:02d}:{minutes:02d}"
    return None


def parse_ticket_text(text: str) -> dict:
    """Pull ticket number, date, time, stations and direction out of ticket text."""
    stations = find_stations(text or "")
    return {
        "ticket_number": parse_ticket_number(text),
        "travel_date": parse_date(text or ""),
        "travel_time": parse_time(text or ""),
        "departure": stations[0] if stations else None,
        "destination": stations[-1] if len(stations) > 1 else None,
        "direction": parse_direction(text),
    }
