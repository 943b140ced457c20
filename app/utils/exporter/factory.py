### app/utils/exporter/factory.py

from typing import Any, Dict, List

from app.utils.exporter.base import DataExportBase
from app.utils.exporter.csv_exporter import CSVExporter
from app.utils.exporter.excel_exporter import ExcelExporter


def get_exporter(format_type: str, data: List[Dict[str, Any]], title: str = "Report") -> DataExportBase:
    """Return the exporter for a format name ("excel" or "csv")"""
    format_type = format_type.lower()
    if format_type == "excel":
        return ExcelExporter(data, sheet_name=title)
    if format_type == "csv":
        return CSVExporter(data)
    raise ValueError(f"Unsupported export format: {format_type}")


