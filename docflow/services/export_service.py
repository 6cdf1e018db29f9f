"""Excel workbook export of extraction results."""

import io
from typing import Any, Dict, List, Tuple

from openpyxl import Workbook
from openpyxl.styles import Font

from docflow.schemas.extraction import MergedExtractionResult

XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

INVOICE_SHEET = "Invoice"
LINE_ITEMS_SHEET = "Line Items"
UNCLAIMED_SHEET = "Unclaimed Documents"

LINE_ITEM_COLUMNS = [
    "line_id",
    "description",
    "invoice_amount",
    "match_status",
    "match_reason",
    "document_count",
    "document_numbers",
    "contains_handwriting",
]

UNCLAIMED_COLUMNS = ["source_page_index", "document_type", "content_summary", "reason_for_unclaimed"]


def _cell(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def _flatten(fields: Dict[str, Any], prefix: str = "") -> List[Tuple[str, Any]]:
    """Nested header objects become dotted keys, e.g. ``supplier.name``."""
    rows = []
    for key, value in fields.items():
        name = f"{prefix}{key}"
        if isinstance(value, dict):
            rows.extend(_flatten(value, f"{name}."))
        elif isinstance(value, list):
            rows.append((name, "; ".join(str(v) for v in value)))
        else:
            rows.append((name, _cell(value)))
    return rows


def _line_item_row(item) -> List[Any]:
    extra: Dict[str, Any] = item.model_extra or {}
    documents = item.associated_documents
    return [
        _cell(item.line_id),
        item.description or "",
        _cell(extra.get("invoice_amount")),
        item.match_status or "",
        item.match_reason or "",
        len(documents),
        "; ".join(str(doc["document_number"]) for doc in documents if doc.get("document_number")),
        any(bool(doc.get("contains_handwriting")) for doc in documents),
    ]


def _append_header_row(sheet, columns: List[str]) -> None:
    sheet.append(columns)
    for cell in sheet[1]:
        cell.font = Font(bold=True)
    sheet.freeze_panes = "A2"


def build_extraction_workbook(result: MergedExtractionResult) -> Tuple[bytes, int]:
    """Invoice header, line items and unclaimed documents on separate sheets.

    Returns:
        The ``.xlsx`` bytes and the number of line item rows
    """
    workbook = Workbook()

    invoice = workbook.active
    invoice.title = INVOICE_SHEET
    _append_header_row(invoice, ["field", "value"])
    for name, value in _flatten(result.header_fields):
        invoice.append([name, value])
    invoice.append([])
    invoice.append(["confidence", result.confidence])
    invoice.append(["chunk_count", result.chunk_count])
    invoice.append(["failed_chunk_count", result.failed_chunk_count])

    line_items = workbook.create_sheet(LINE_ITEMS_SHEET)
    _append_header_row(line_items, LINE_ITEM_COLUMNS)
    for item in result.line_items:
        line_items.append(_line_item_row(item))

    if result.unassigned_evidence:
        unclaimed = workbook.create_sheet(UNCLAIMED_SHEET)
        _append_header_row(unclaimed, UNCLAIMED_COLUMNS)
        for document in result.unassigned_evidence:
            unclaimed.append([_cell(document.get(column)) for column in UNCLAIMED_COLUMNS])

    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue(), len(result.line_items)
