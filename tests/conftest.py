"""Shared fixtures: a stand-in for the Chrome driver used by download_receipt."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest
from selenium.common.exceptions import NoSuchElementException

import download_receipt


class FakeElement:
    def __init__(self, driver: "FakeDriver", locator: str) -> None:
        self.driver = driver
        self.locator = locator
        self.tag_name = "input"

    def clear(self) -> None:
        self.driver.filled[self.locator] = ""

    def send_keys(self, value: str) -> None:
        self.driver.filled[self.locator] = self.driver.filled.get(self.locator, "") + value

    def is_displayed(self) -> bool:
        return True

    def click(self) -> None:
        self.driver.clicked.append(self.locator)
        if self.locator == "a.download_btn" and self.driver.pdf is not None:
            (self.driver.download_dir / "receipt.pdf").write_bytes(self.driver.pdf)


class FakeDriver:
    """Records what the script does to the page instead of talking to Chrome."""

    def __init__(
        self,
        download_dir: Path,
        has_results: bool = True,
        pdf: bytes | None = b"%PDF-1.4 receipt",
        page_source: str = "<html><body></body></html>",
    ) -> None:
        self.download_dir = Path(download_dir)
        self.has_results = has_results
        self.pdf = pdf
        self.page_source = page_source
        self.visited: list[str] = []
        self.scripts: list[tuple] = []
        self.filled: dict[str, str] = {}
        self.clicked: list[str] = []
        self.quit_called = False

    def get(self, url: str) -> None:
        self.visited.append(url)

    def execute_script(self, script: str, *args):
        if "readyState" in script:
            return "complete"
        self.scripts.append((script, args))
        return None

    def find_element(self, by: str, value: str) -> FakeElement:
        if value == "a.download_btn" and not self.has_results:
            raise NoSuchElementException(value)
        return FakeElement(self, value)

    def quit(self) -> None:
        self.quit_called = True


@pytest.fixture(autouse=True)
def no_pauses(monkeypatch: pytest.MonkeyPatch) -> None:
    """Drop the fixed page pauses so tests run instantly."""
    monkeypatch.setattr(download_receipt, "PAGE_SETTLE_SECONDS", 0)
    monkeypatch.setattr(download_receipt, "QUERY_TYPE_PAUSE", 0)
    monkeypatch.setattr(download_receipt, "RESULT_TIMEOUT", 0.1)
    monkeypatch.setattr(download_receipt, "DOWNLOAD_TIMEOUT", 0.1)


@pytest.fixture
def fake_select(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    """Replace selenium's Select helper; the fake page has no <option> elements."""
    select = MagicMock()
    monkeypatch.setattr(download_receipt, "Select", select)
    return select


@pytest.fixture
def download_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    root = tmp_path / "downloads"
    monkeypatch.setattr(download_receipt, "DOWNLOAD_ROOT", root)
    return root
