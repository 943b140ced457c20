### app/utils/exporter/excel_exporter.py

# Standard library imports
from io import BytesIO

# Third party imports
import pandas as pd

# Local imports
from app.utils.exporter.base import DataExportBase


class ExcelExporter(DataExportBase):
    """Export data to Excel file"""

    media_type = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
    extension = "xlsx"

    def __init__(self, data, sheet_name: str = "Report"):
        super().__init__(data)
        # Excel caps sheet names at 31 characters
        self.sheet_name = sheet_name[:31]

    def export(self) -> BytesIO:
        output = BytesIO()
        with pd.ExcelWriter(output, engine="openpyxl") as writer:
            self.df.to_excel(writer, index=False, sheet_name=self.sheet_name)
            ws = writer.book[self.sheet_name]
            ws.auto_filter.ref = ws.dimensions
            for column_cells in ws.columns:
                width = max(len(str(cell.value or "")) for cell in column_cells)
                ws.column_dimensions[column_cells[0].column_letter].width = min(width + 2, 60)
        output.seek(0)
        return output
