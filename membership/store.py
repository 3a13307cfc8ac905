"""Record stores: where member rows come from and annotations go.

Both stores expose the same async surface used by the API and the
annotation queue. Blocking I/O (pandas file access, the Google API client)
runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from pathlib import Path
from typing import Any, List, Optional, Protocol, Sequence

import pandas as pd

from membership import config
from membership.annotations import AnnotationEdit
from membership.records import ANNOTATION_HEADER, MembershipRecord, clean_cell, merge_annotations, records_from_rows

logger = logging.getLogger(__name__)

Rows = List[List[str]]


class RecordStoreError(RuntimeError):
    """Raised when the backing spreadsheet cannot be read or written."""


class RecordStore(Protocol):
    async def fetch_all(self) -> List[MembershipRecord]: ...

    async def fetch_annotations(self) -> Rows: ...

    async def write_annotations_batch(self, edits: Sequence[AnnotationEdit]) -> None: ...

    def invalidate_annotations_cache(self) -> None: ...

    async def search_annotations(self, term: str) -> Rows: ...


def upsert_annotation_rows(rows: Sequence[Sequence[object]], edits: Sequence[AnnotationEdit]) -> Rows:
    """Replace or append one annotation row per edit, keyed by member id."""
    out: Rows = [list(ANNOTATION_HEADER)]
    index: dict[str, int] = {}
    for row in rows[1:]:
        cells = [clean_cell(c) for c in row] + [""] * (len(ANNOTATION_HEADER) - len(row))
        if not any(cells):
            continue
        if cells[0] and cells[0] in index:
            out[index[cells[0]]] = cells
            continue
        if cells[0]:
            index[cells[0]] = len(out)
        out.append(cells)
    for edit in edits:
        row = edit.to_row()
        if edit.member_id in index:
            out[index[edit.member_id]] = row
        else:
            index[edit.member_id] = len(out)
            out.append(row)
    return out


class SheetRecordStore:
    """Shared member/annotation logic over a row-oriented backend."""

    def __init__(self) -> None:
        self._annotations_cache: Optional[Rows] = None

    # Backends implement these three blocking calls.
    def _read_member_rows(self) -> Rows:
        raise NotImplementedError

    def _read_annotation_rows(self) -> Rows:
        raise NotImplementedError

    def _write_annotation_rows(self, rows: Rows) -> None:
        raise NotImplementedError

    async def fetch_all(self) -> List[MembershipRecord]:
        rows = await asyncio.to_thread(self._read_member_rows)
        records = records_from_rows(rows)
        try:
            annotations = await self.fetch_annotations()
        except RecordStoreError as exc:
            logger.warning("Annotation sheet unavailable, loading members without annotations: %s", exc)
            return records
        logger.info("Loaded %d members and %d annotation rows", len(records), max(len(annotations) - 1, 0))
        return merge_annotations(records, annotations)

    async def fetch_annotations(self) -> Rows:
        if self._annotations_cache is None:
            self._annotations_cache = await asyncio.to_thread(self._read_annotation_rows)
        return [list(r) for r in self._annotations_cache]

    def invalidate_annotations_cache(self) -> None:
        self._annotations_cache = None

    async def write_annotations_batch(self, edits: Sequence[AnnotationEdit]) -> None:
        if not edits:
            return
        await asyncio.to_thread(self._upsert_annotations, list(edits))

    def _upsert_annotations(self, edits: List[AnnotationEdit]) -> None:
        rows = self._read_annotation_rows()
        self._write_annotation_rows(upsert_annotation_rows(rows, edits))

    async def search_annotations(self, term: str) -> Rows:
        """Annotation rows (header first) whose id, email or text contains ``term``."""
        rows = await self.fetch_annotations()
        needle = term.strip().lower()
        if not rows:
            return [list(ANNOTATION_HEADER)]
        matches = [r for r in rows[1:] if needle and any(needle in str(c).lower() for c in r[:5])]
        return [rows[0]] + matches


# ---------------- Local workbook (CSV / XLSX) ----------------
def _is_excel(path: Path) -> bool:
    return path.suffix.lower() in {".xlsx", ".xlsm", ".xls"}


def _frame_to_rows(df: pd.DataFrame) -> Rows:
    return [[str(c) for c in df.columns]] + df.fillna("").astype(str).values.tolist()


class WorkbookRecordStore(SheetRecordStore):
    """Members and annotations kept in local CSV or Excel files.

    For Excel files the configured sheet names are used, so both tables may
    live in one workbook.
    """

    def __init__(
        self,
        members_path: Path | str = config.MEMBERS_PATH,
        annotations_path: Path | str = config.ANNOTATIONS_PATH,
        *,
        members_sheet: str = config.MEMBERS_SHEET,
        annotations_sheet: str = config.ANNOTATIONS_SHEET,
    ) -> None:
        super().__init__()
        self.members_path = Path(members_path)
        self.annotations_path = Path(annotations_path)
        self.members_sheet = members_sheet
        self.annotations_sheet = annotations_sheet
        self._lock = threading.Lock()

    def _read(self, path: Path, sheet: str) -> Rows:
        try:
            if _is_excel(path):
                df = pd.read_excel(path, sheet_name=sheet, dtype=str)
            else:
                df = pd.read_csv(path, dtype=str, keep_default_na=False)
        except (OSError, ValueError) as exc:
            raise RecordStoreError(f"Cannot read {path} ({sheet}): {exc}") from exc
        return _frame_to_rows(df)

    def _read_member_rows(self) -> Rows:
        if not self.members_path.exists():
            raise RecordStoreError(f"Member sheet not found: {self.members_path}")
        with self._lock:
            return self._read(self.members_path, self.members_sheet)

    def _read_annotation_rows(self) -> Rows:
        with self._lock:
            if not self.annotations_path.exists():
                return [list(ANNOTATION_HEADER)]
            if _is_excel(self.annotations_path):
                try:
                    return self._read(self.annotations_path, self.annotations_sheet)
                except RecordStoreError:
                    # Workbook exists but has no annotation sheet yet.
                    return [list(ANNOTATION_HEADER)]
            return self._read(self.annotations_path, self.annotations_sheet)

    def _write_annotation_rows(self, rows: Rows) -> None:
        df = pd.DataFrame(rows[1:], columns=rows[0])
        path = self.annotations_path
        with self._lock:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                if _is_excel(path):
                    mode = "a" if path.exists() else "w"
                    extra = {"if_sheet_exists": "replace"} if mode == "a" else {}
                    with pd.ExcelWriter(path, engine="openpyxl", mode=mode, **extra) as writer:
                        df.to_excel(writer, sheet_name=self.annotations_sheet, index=False)
                else:
                    df.to_csv(path, index=False)
            except (OSError, ValueError) as exc:
                raise RecordStoreError(f"Cannot write annotations to {path}: {exc}") from exc
        logger.info("Wrote %d annotation rows to %s", len(rows) - 1, path)


# ---------------- Google Sheets ----------------
class GoogleSheetsRecordStore(SheetRecordStore):
    """Members and annotations in a Google spreadsheet (Sheets API v4)."""

    MEMBER_RANGE = "A:S"
    ANNOTATION_RANGE = "A:H"

    def __init__(
        self,
        spreadsheet_id: str = config.SPREADSHEET_ID,
        *,
        members_sheet: str = config.MEMBERS_SHEET,
        annotations_sheet: str = config.ANNOTATIONS_SHEET,
        service: Any = None,
    ) -> None:
        super().__init__()
        if not spreadsheet_id:
            raise RecordStoreError("SPREADSHEET_ID is not configured")
        self.spreadsheet_id = spreadsheet_id
        self.members_sheet = members_sheet
        self.annotations_sheet = annotations_sheet
        self._service = service
        self._lock = threading.Lock()
        self._annotation_row_count = 0

    def _values(self) -> Any:
        if self._service is None:
            from google.oauth2.credentials import Credentials
            from googleapiclient.discovery import build

            creds = Credentials(
                token=None,
                refresh_token=config.GOOGLE_REFRESH_TOKEN,
                client_id=config.GOOGLE_CLIENT_ID,
                client_secret=config.GOOGLE_CLIENT_SECRET,
                token_uri=config.GOOGLE_TOKEN_URI,
            )
            self._service = build("sheets", "v4", credentials=creds, cache_discovery=False)
        return self._service.spreadsheets().values()

    def _get(self, sheet: str, cell_range: str) -> Rows:
        from googleapiclient.errors import HttpError

        with self._lock:
            try:
                result = self._values().get(spreadsheetId=self.spreadsheet_id, range=f"{sheet}!{cell_range}").execute()
            except HttpError as exc:
                raise RecordStoreError(f"Sheets read of {sheet} failed: {exc}") from exc
        return [[str(c) for c in row] for row in result.get("values", [])]

    def _read_member_rows(self) -> Rows:
        return self._get(self.members_sheet, self.MEMBER_RANGE)

    def _read_annotation_rows(self) -> Rows:
        try:
            rows = self._get(self.annotations_sheet, self.ANNOTATION_RANGE)
        except RecordStoreError:
            self._create_annotation_sheet()
            return [list(ANNOTATION_HEADER)]
        self._annotation_row_count = len(rows)
        return rows or [list(ANNOTATION_HEADER)]

    def _create_annotation_sheet(self) -> None:
        from googleapiclient.errors import HttpError

        logger.info("Creating annotation sheet %s", self.annotations_sheet)
        body = {"requests": [{"addSheet": {"properties": {"title": self.annotations_sheet}}}]}
        with self._lock:
            try:
                self._service_root().batchUpdate(spreadsheetId=self.spreadsheet_id, body=body).execute()
            except HttpError as exc:
                raise RecordStoreError(f"Cannot create sheet {self.annotations_sheet}: {exc}") from exc
        self._write_annotation_rows([list(ANNOTATION_HEADER)])

    def _service_root(self) -> Any:
        self._values()
        return self._service.spreadsheets()

    def _write_annotation_rows(self, rows: Rows) -> None:
        from googleapiclient.errors import HttpError

        # Blank out rows left over from a longer sheet (collapsed duplicates).
        blank = [""] * len(ANNOTATION_HEADER)
        values = rows + [list(blank) for _ in range(self._annotation_row_count - len(rows))]
        with self._lock:
            try:
                self._values().update(
                    spreadsheetId=self.spreadsheet_id,
                    range=f"{self.annotations_sheet}!{self.ANNOTATION_RANGE}",
                    valueInputOption="USER_ENTERED",
                    body={"values": values},
                ).execute()
            except HttpError as exc:
                raise RecordStoreError(f"Sheets write of {self.annotations_sheet} failed: {exc}") from exc
        self._annotation_row_count = len(rows)


def get_record_store() -> RecordStore:
    if config.SPREADSHEET_ID:
        return GoogleSheetsRecordStore(config.SPREADSHEET_ID)
    return WorkbookRecordStore()
