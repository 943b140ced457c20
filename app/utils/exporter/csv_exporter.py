### app/utils/exporter/csv_exporter.py

# Standard library imports
from io import BytesIO

# Local imports
from app.utils.exporter.base import DataExportBase


class CSVExporter(DataExportBase):
    """Export data to CSV file"""

    media_type = "text/csv"
    extension = "csv"

    def export(self) -> BytesIO:
        output = BytesIO(self.df.to_csv(index=False).encode("utf-8"))
        output.seek(0)
        return output
