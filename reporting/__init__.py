"""Reporting package — multi-format output and progress sinks."""

from .json_export import export_json
from .csv_export import export_csv
from .markdown_report import export_markdown
from .xlsx_export import export_xlsx
from .progress import ProgressSink, ConsoleProgress, LoggingProgress

__all__ = [
    "export_json",
    "export_csv",
    "export_markdown",
    "export_xlsx",
    "ProgressSink",
    "ConsoleProgress",
    "LoggingProgress",
]
