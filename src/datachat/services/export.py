"""Spreadsheet export sink with in-memory artifacts and a retention window."""

from __future__ import annotations

import asyncio
import io
import json
import re
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Sequence

from openpyxl import Workbook
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.styles import Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from datachat.core.session import utcnow
from datachat.log import get_logger
from datachat.services.documents import GroupCount, Movie

logger = get_logger(__name__)

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

_MOVIE_HEADERS = [
    "Title",
    "Year",
    "Genres",
    "Directors",
    "Cast",
    "Runtime (min)",
    "Rated",
    "IMDB Rating",
    "IMDB Votes",
    "Plot",
]
_INVALID_SHEET_CHARS = re.compile(r"[\[\]:*?/\\]")
_MAX_COLUMN_WIDTH = 60


@dataclass(frozen=True, slots=True)
class ExportArtifact:
    file_id: str
    file_name: str
    data: bytes
    created_at: datetime
    record_count: int
    description: str

    @property
    def media_type(self) -> str:
        return XLSX_MEDIA_TYPE


def _sheet_title(name: str, fallback: str) -> str:
    cleaned = _INVALID_SHEET_CHARS.sub("", name or "").strip()[:31]
    return cleaned or fallback


def _cell_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (dict, list, tuple)):
        value = json.dumps(value, ensure_ascii=False, default=str)
    if isinstance(value, str):
        return ILLEGAL_CHARACTERS_RE.sub("", value)
    if isinstance(value, (int, float, bool)):
        return value
    return str(value)


def _join(values: Sequence[str] | None, limit: int | None = None) -> str:
    if not values:
        return ""
    return ", ".join(values[:limit] if limit else values)


class ExportSink:
    """Turns tabular results into ``.xlsx`` artifacts addressable by an opaque id.

    Artifacts live in memory for ``retention``; :meth:`get` hides expired ones
    immediately and :meth:`sweep` frees them.
    """

    def __init__(self, retention: timedelta = timedelta(minutes=30), clock: Callable[[], datetime] = utcnow):
        self._retention = retention
        self._clock = clock
        self._artifacts: dict[str, ExportArtifact] = {}
        self._lock = threading.Lock()

    @property
    def retention(self) -> timedelta:
        return self._retention

    # ── exports ───────────────────────────────────────────────────

    async def export_table(
        self,
        columns: list[str],
        rows: list[dict[str, Any]],
        description: str,
        sheet_name: str = "Query Results",
        file_prefix: str = "Query_Export",
    ) -> ExportArtifact:
        """Export rows keyed by column name, in column order."""
        values = [[row.get(column) for column in columns] for row in rows]
        return await self._export(
            sheet_name=_sheet_title(sheet_name, "Query Results"),
            headers=columns,
            rows=values,
            description=description,
            file_prefix=file_prefix,
            fill="DDEBF7",
        )

    async def export_movies(self, movies: list[Movie], description: str) -> ExportArtifact:
        values = [
            [
                movie.title or "",
                movie.year_as_int or 0,
                _join(movie.genres),
                _join(movie.directors),
                _join(movie.cast, limit=5),
                movie.runtime_as_int or 0,
                movie.rated or "",
                (movie.imdb.rating_as_float if movie.imdb else None) or 0,
                (movie.imdb.votes_as_int if movie.imdb else None) or 0,
                movie.plot or "",
            ]
            for movie in movies
        ]
        return await self._export(
            sheet_name="Movies",
            headers=_MOVIE_HEADERS,
            rows=values,
            description=description,
            file_prefix="Movies_Export",
            fill="ADD8E6",
        )

    async def export_group_counts(
        self,
        counts: list[GroupCount],
        description: str,
        value_label: str = "Year",
        count_label: str = "Movie Count",
    ) -> ExportArtifact:
        return await self._export(
            sheet_name=_sheet_title(f"{count_label}s by {value_label}", "Counts"),
            headers=[value_label, count_label],
            rows=[[c.value, c.count] for c in counts],
            description=description,
            file_prefix="MovieCounts_Export",
            fill="90EE90",
            total_row=True,
        )

    async def _export(
        self,
        sheet_name: str,
        headers: list[str],
        rows: list[list[Any]],
        description: str,
        file_prefix: str,
        fill: str,
        total_row: bool = False,
    ) -> ExportArtifact:
        now = self._clock()
        data = await asyncio.to_thread(
            self._render, sheet_name, headers, rows, description, now, fill, total_row
        )
        artifact = ExportArtifact(
            file_id=uuid.uuid4().hex[:12],
            file_name=f"{file_prefix}_{now:%Y%m%d_%H%M%S}.xlsx",
            data=data,
            created_at=now,
            record_count=len(rows),
            description=description,
        )
        with self._lock:
            self._artifacts[artifact.file_id] = artifact
        logger.info(
            "export_created",
            file_id=artifact.file_id,
            file_name=artifact.file_name,
            records=artifact.record_count,
            size=len(data),
        )
        return artifact

    @staticmethod
    def _render(
        sheet_name: str,
        headers: list[str],
        rows: list[list[Any]],
        description: str,
        exported_at: datetime,
        fill: str,
        total_row: bool,
    ) -> bytes:
        workbook = Workbook()
        sheet = workbook.active
        sheet.title = sheet_name

        sheet.append([_cell_value(h) for h in headers])
        header_font = Font(bold=True)
        header_fill = PatternFill(start_color=fill, end_color=fill, fill_type="solid")
        header_border = Border(bottom=Side(style="thin"))
        for cell in sheet[1]:
            cell.font = header_font
            cell.fill = header_fill
            cell.border = header_border

        for row in rows:
            sheet.append([_cell_value(v) for v in row])

        if total_row:
            last = len(rows) + 1
            sheet.append(["Total", f"=SUM(B2:B{last})"])
            sheet.cell(row=last + 1, column=1).font = header_font

        for index, header in enumerate(headers, start=1):
            width = max([len(str(header))] + [len(str(r[index - 1] or "")) for r in rows[:200]])
            sheet.column_dimensions[get_column_letter(index)].width = min(width + 2, _MAX_COLUMN_WIDTH)

        info = workbook.create_sheet("Query Info")
        info.append(["Query:", _cell_value(description)])
        info.append(["Exported:", exported_at.strftime("%Y-%m-%d %H:%M:%S")])
        info.append(["Record Count:", len(rows)])
        for cell in info["A"]:
            cell.font = header_font
        info.column_dimensions["A"].width = 15
        info.column_dimensions["B"].width = _MAX_COLUMN_WIDTH

        buffer = io.BytesIO()
        workbook.save(buffer)
        return buffer.getvalue()

    # ── lookup and retention ──────────────────────────────────────

    def _expired(self, artifact: ExportArtifact, now: datetime) -> bool:
        return now - artifact.created_at > self._retention

    def get(self, file_id: str) -> ExportArtifact | None:
        """Return the artifact, or None if the id is unknown or past retention."""
        with self._lock:
            artifact = self._artifacts.get(file_id)
        if artifact is None or self._expired(artifact, self._clock()):
            return None
        return artifact

    def sweep(self) -> int:
        """Drop artifacts older than the retention window. Returns the count removed."""
        now = self._clock()
        with self._lock:
            expired = [fid for fid, a in self._artifacts.items() if self._expired(a, now)]
            for fid in expired:
                del self._artifacts[fid]
        if expired:
            logger.info("exports_swept", count=len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._artifacts)
