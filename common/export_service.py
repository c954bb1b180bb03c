"""
Export service for generating CSV and Excel exports of TAT report rows.

PRAGMATIC DESIGN: Direct export functions without complex abstractions.
Both writers consume a lazy row iterator, so a large export never holds the
full result set in memory at once.
"""

import logging
from collections.abc import Callable, Iterable, Iterator
from datetime import datetime
from io import BytesIO
from itertools import islice
from typing import Any

import pandas as pd
from openpyxl import Workbook
from openpyxl.utils import get_column_letter

from common.config import ExportConfig

logger = logging.getLogger(__name__)


def _chunks(rows: Iterable[dict[str, Any]], size: int) -> Iterator[list[dict[str, Any]]]:
    iterator = iter(rows)
    while True:
        chunk = list(islice(iterator, size))
        if not chunk:
            return
        yield chunk


class ExportService:
    """Service for exporting report rows to various formats.

    Rows are dicts keyed by the keys in ExportConfig.COLUMNS; headers come
    from the same list.
    """

    @staticmethod
    def column_keys() -> list[str]:
        return [key for key, _ in ExportConfig.COLUMNS]

    @staticmethod
    def column_headers() -> list[str]:
        return [header for _, header in ExportConfig.COLUMNS]

    @staticmethod
    def stream_csv(
        rows: Iterable[dict[str, Any]],
        progress_callback: Callable[[int], None] | None = None,
    ) -> Iterator[bytes]:
        """
        Render rows to CSV one chunk at a time.

        Args:
            rows: Lazy iterable of export rows
            progress_callback: Called with the running row count after each chunk

        Yields:
            CSV bytes; the first chunk carries the UTF-8 BOM and the header row

        OPTIMIZATION: Uses pandas per chunk of ExportConfig.EXPORT_BATCH_SIZE rows.
        """
        keys = ExportService.column_keys()
        headers = dict(ExportConfig.COLUMNS)
        written = 0
        first = True

        for chunk in _chunks(rows, ExportConfig.EXPORT_BATCH_SIZE):
            df = pd.DataFrame(chunk, columns=keys).rename(columns=headers)
            text = df.to_csv(index=False, header=first)
            yield text.encode(ExportConfig.CSV_ENCODING if first else 'utf-8')
            first = False

            written += len(chunk)
            if progress_callback:
                progress_callback(written)

        if first:
            # No rows: header only
            df = pd.DataFrame(columns=ExportService.column_headers())
            yield df.to_csv(index=False).encode(ExportConfig.CSV_ENCODING)

        logger.debug(f"CSV export rendered {written} rows")

    @staticmethod
    def export_to_excel(
        rows: Iterable[dict[str, Any]],
        progress_callback: Callable[[int], None] | None = None,
    ) -> bytes:
        """
        Write rows to an XLSX workbook.

        Uses an openpyxl write-only workbook so rows are flushed as they are
        appended rather than kept as cell objects.

        Returns:
            Excel file content as bytes
        """
        keys = ExportService.column_keys()
        headers = ExportService.column_headers()
        widths = [len(header) for header in headers]

        workbook = Workbook(write_only=True)
        worksheet = workbook.create_sheet(title=ExportConfig.EXCEL_SHEET_NAME)

        # Column widths must be set before the first row in write-only mode,
        # so they are sized from the headers.
        for idx, width in enumerate(widths, start=1):
            worksheet.column_dimensions[get_column_letter(idx)].width = min(max(width + 2, 12), 50)

        worksheet.append(headers)
        written = 0
        for row in rows:
            worksheet.append([row.get(key, '') for key in keys])
            written += 1
            if progress_callback and written % ExportConfig.EXPORT_BATCH_SIZE == 0:
                progress_callback(written)

        output = BytesIO()
        workbook.save(output)

        if progress_callback:
            progress_callback(written)
        logger.debug(f"Excel export rendered {written} rows")
        return output.getvalue()

    @staticmethod
    def generate_export_filename(format: str) -> str:
        """
        Generate filename for export with timestamp.

        Example: tat_report_20251111_143022.csv
        """
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        extension = "xlsx" if format == "xlsx" else "csv"
        return f"tat_report_{timestamp}.{extension}"

    @staticmethod
    def get_content_type(format: str) -> str:
        if format == "xlsx":
            return "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
        else:
            return "text/csv; charset=utf-8"
