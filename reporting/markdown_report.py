"""
Markdown technical report — rendered from a Jinja2 template.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from ..engine.aggregator import RunReport

TEMPLATE_DIR = Path(__file__).parent / "templates"
TEMPLATE_NAME = "repair_report.md.j2"

_STATUS_ICONS = {
    "all_fixed": "✅",
    "all_proposed": "📝",
    "partial": "🟡",
    "all_broken": "🔴",
    "fatal": "❌",
}

# Per-table row cap in the Markdown body; the other formats carry everything
MAX_ROWS = 200


def export_markdown(report: RunReport, output_dir: Path) -> Path:
    """Generate the Markdown technical report for one run."""
    output_dir.mkdir(parents=True, exist_ok=True)
    filepath = output_dir / f"link_repair_report_{report.run_id}.md"

    with open(filepath, "w", encoding="utf-8") as fh:
        fh.write(render_markdown(report))

    return filepath


def render_markdown(report: RunReport) -> str:
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=select_autoescape([]),
        trim_blocks=True,
        lstrip_blocks=True,
    )
    env.filters["cell"] = _cell
    template = env.get_template(TEMPLATE_NAME)
    return template.render(
        report=report,
        stats=report.statistics,
        status_icon=_STATUS_ICONS.get(report.status.value, ""),
        generated_utc=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC"),
        fixed=report.tables.get("Fixed", []),
        broken=report.tables.get("Broken", []),
        errors=report.tables.get("Errors", []),
        max_rows=MAX_ROWS,
    )


def _cell(value) -> str:
    """Make a value safe inside a Markdown table cell."""
    if value is None:
        return ""
    return str(value).replace("|", "\\|").replace("\n", " ")
