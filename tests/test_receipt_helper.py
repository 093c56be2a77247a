"""Tests for receipt naming and form-value helpers."""

from pathlib import Path

from receipt_helper import (
    DEFAULT_STATION_CODE,
    clean_ticket_number,
    extract_page_error,
    find_stations,
    format_date_for_thsr,
    month_folder,
    normalize_station,
    parse_date,
    parse_direction,
    parse_receipt_file_name,
    parse_ticket_number,
    parse_ticket_text,
    parse_time,
    receipt_file_name,
    receipt_path,
    receipt_url_path,
    station_code,
    station_label,
    ticket_identifier,
    travel_direction,
)


def test_station_code_known_stations() -> None:
    assert station_code("南港") == "1"
    assert station_code("台中") == "7"
    assert station_code("左營") == "12"


def test_unknown_station_falls_back_to_taipei() -> None:
    """Given a name the portal doesn't list, then the 台北 option is used."""
    assert DEFAULT_STATION_CODE == "2"
    assert station_code("花蓮") == "2"
    assert station_code("") == "2"


def test_station_label() -> None:
    assert station_label("板橋") == "板橋 (Banqiao)"
    assert station_label("高雄") == "高雄"


def test_clean_ticket_number_strips_separators() -> None:
    assert clean_ticket_number("1213-113450036") == "1213113450036"
    assert clean_ticket_number(" 12 13 11 ") == "121311"
    assert clean_ticket_number("ABC") == ""


def test_month_folder_and_portal_date() -> None:
    assert month_folder("2025-12-11") == "2025-12"
    assert format_date_for_thsr("2025-12-11") == "2025/12/11"


def test_ticket_identifier_prefers_booking() -> None:
    assert ticket_identifier("1213-113450036", None) == "1213113450036"
    assert ticket_identifier("1213-113450036", "ABC12345") == "ABC12345"


def test_receipt_path_layout() -> None:
    """Receipts land in downloads/高鐵憑證/<YYYY-MM>/ with a deterministic name."""
    path = receipt_path(Path("downloads"), "2025-12-11", "左營", "台北", "1213113450036")

    assert path == Path("downloads/高鐵憑證/2025-12/THSR_2025-12-11_左營-台北_1213113450036.pdf")
    assert receipt_url_path("2025-12-11", "左營", "台北", "1213113450036") == (
        "/downloads/高鐵憑證/2025-12/THSR_2025-12-11_左營-台北_1213113450036.pdf"
    )


def test_travel_direction() -> None:
    assert travel_direction("左營", "台北") == "northbound"
    assert travel_direction("台北", "台中") == "southbound"


def test_parse_receipt_file_name() -> None:
    name = receipt_file_name("2025-12-11", "左營", "台北", "ABC12345")

    assert parse_receipt_file_name(name) == {
        "date": "2025-12-11",
        "departure": "左營",
        "destination": "台北",
        "ticket_id": "ABC12345",
    }
    assert parse_receipt_file_name("notes.pdf") is None
    assert parse_receipt_file_name("THSR_2025-12-11_左營-台北_1.txt") is None


def test_extract_page_error_finds_visible_alert() -> None:
    html = """
    <html><body>
      <div class="alert alert-danger" style="display: none">hidden template</div>
      <div class="alert alert-danger">
        查無資料，請確認   票號
      </div>
    </body></html>
    """
    assert extract_page_error(html) == "查無資料，請確認 票號"


def test_extract_page_error_without_message() -> None:
    assert extract_page_error("<html><body><p>ok</p></body></html>") == ""


class TestNormalizeStation:
    """Tests for mapping ticket and user spellings onto portal station names."""

    def test_portal_names_pass_through(self) -> None:
        assert normalize_station("左營") == "左營"
        assert normalize_station(" 台北 ") == "台北"

    def test_prefix_suffix_and_aliases(self) -> None:
        assert normalize_station("高鐵臺中站") == "台中"
        assert normalize_station("臺南") == "台南"
        assert normalize_station("高雄") == "左營"
        assert normalize_station("taichung") == "台中"
        assert normalize_station("Banqiao Station") == "板橋"

    def test_unknown_name_is_kept(self) -> None:
        assert normalize_station("花蓮") == "花蓮"
        assert normalize_station("") == ""

    def test_station_code_uses_aliases(self) -> None:
        assert station_code("臺北") == "2"
        assert station_code("Kaohsiung") == "12"


class TestParseTicketText:
    """Tests for reading fields out of text copied from a ticket."""

    def test_ticket_number_forms(self) -> None:
        assert parse_ticket_number("票號 12-1-31-1-345-0036") == "1213113450036"
        assert parse_ticket_number("Ticket 1213113450036") == "1213113450036"
        assert parse_ticket_number("1213 1134 5003 6") == "1213113450036"
        assert parse_ticket_number("2025-12-11 only a date") is None
        assert parse_ticket_number("") is None

    def test_dates(self) -> None:
        assert parse_date("民國113年3月15日") == "2024-03-15"
        assert parse_date("乘車日期 113/03/15") == "2024-03-15"
        assert parse_date("2025年12月1日") == "2025-12-01"
        assert parse_date("2025/12/11 左營") == "2025-12-11"
        assert parse_date("12/11/2025") == "2025-12-11"
        assert parse_date("no date here") is None

    def test_times(self) -> None:
        assert parse_time("14時30分 發車") == "14:30"
        assert parse_time("dep 8:05") == "08:05"
        assert parse_time("25:99 then 07:45") == "07:45"
        assert parse_time("no time") is None

    def test_direction(self) -> None:
        """Given an explicit 北上/南下 keyword, then it wins over station order."""
        assert parse_direction("南下 台北 → 左營") == "southbound"
        assert parse_direction("左營 北上 台北") == "northbound"
        assert parse_direction("左營 → 台中") == "northbound"
        assert parse_direction("Taipei to Tainan") == "southbound"
        assert parse_direction("台北") is None

    def test_find_stations_in_order(self) -> None:
        assert find_stations("臺中 → 高鐵台北站") == ["台中", "台北"]

    def test_full_ticket(self) -> None:
        text = "台灣高鐵 票號 12-1-31-1-345-0036\n2025/12/11 14:30\n左營 → 台北"

        assert parse_ticket_text(text) == {
            "ticket_number": "1213113450036",
            "travel_date": "2025-12-11",
            "travel_time": "14:30",
            "departure": "左營",
            "destination": "台北",
            "direction": "northbound",
        }
