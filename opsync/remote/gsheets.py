"""Google Sheets document for SheetOperationStore (``opsync[sheets]`` extra)."""

import logging
import re
import time
from typing import Callable, List, Optional, TypeVar

import gspread
from gspread.exceptions import APIError, WorksheetNotFound

from opsync.errors import AuthenticationError, RemoteUnavailableError

from .sheet_store import HEADERS

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RANGE_END_RE = re.compile(r"[A-Z]+(\d+)$")
_LAST_COLUMN = chr(ord("A") + len(HEADERS) - 1)


def _status_of(error: APIError) -> Optional[int]:
    response = getattr(error, "response", None)
    return getattr(response, "status_code", None)


class GoogleSheetDocument:
    """TabularDocument backed by one worksheet.

    Quota errors (HTTP 429) are retried with exponential backoff; other API
    failures surface as RemoteUnavailableError.
    """

    def __init__(self, worksheet, max_retries: int = 3, base_delay: float = 1.0, sleep=time.sleep):
        self.worksheet = worksheet
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep

    @classmethod
    def open(
        cls,
        credentials_file: str,
        spreadsheet_key: str,
        worksheet: str = "operations",
        **kwargs,
    ) -> "GoogleSheetDocument":
        client = gspread.service_account(filename=credentials_file)
        spreadsheet = client.open_by_key(spreadsheet_key)
        try:
            ws = spreadsheet.worksheet(worksheet)
        except WorksheetNotFound:
            logger.info(f"Creating worksheet {worksheet!r}")
            ws = spreadsheet.add_worksheet(title=worksheet, rows=1000, cols=len(HEADERS))
            ws.append_row(HEADERS, value_input_option="RAW")
        return cls(ws, **kwargs)

    def _with_retry(self, fn: Callable[[], T]) -> T:
        for attempt in range(self.max_retries):
            try:
                return fn()
            except APIError as e:
                status = _status_of(e)
                if status in (401, 403):
                    raise AuthenticationError(f"Sheets API rejected credentials: {e}") from e
                if status == 429 and attempt < self.max_retries - 1:
                    delay = self.base_delay * (2**attempt)
                    logger.warning(f"Sheets quota exceeded, retrying in {delay:.1f}s")
                    self._sleep(delay)
                    continue
                raise RemoteUnavailableError(f"Sheets API error: {e}") from e
        raise RemoteUnavailableError("Sheets API retries exhausted")

    def read_ids(self) -> List[str]:
        values = self._with_retry(lambda: self.worksheet.col_values(1))
        return values[1:]

    def read_rows(self, start: int, count: int) -> List[List[str]]:
        # Data row N lives on sheet row N + 1
        first = start + 1
        last = start + count
        return self._with_retry(
            lambda: self.worksheet.get(f"A{first}:{_LAST_COLUMN}{last}")
        )

    def append_rows(self, rows: List[List[str]]) -> int:
        response = self._with_retry(
            lambda: self.worksheet.append_rows(rows, value_input_option="RAW")
        )
        updated = (response or {}).get("updates", {}).get("updatedRange", "")
        match = _RANGE_END_RE.search(updated)
        if match:
            return int(match.group(1)) - 1
        return self.row_count()

    def row_count(self) -> int:
        return len(self.read_ids())
