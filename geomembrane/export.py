"""
Export - CSV rows, JSON report and console summary of a take-off.

The CSV is semicolon-delimited with a UTF-8 BOM so spreadsheet software
opens it with the right encoding and column split.
"""

import csv
import io
import json
import logging
import re
from datetime import datetime

from geomembrane.geometry import (
    DEFAULT_SLOPE_ENCODING,
    AggregateResult,
    aggregate,
    entry_area,
    slope_label,
)
from geomembrane.project import ProjectSnapshot, entry_to_dict, validate_project

logger = logging.getLogger(__name__)

CSV_DELIMITER = ";"
CSV_HEADERS = [
    "Group",
    "Entry",
    "Category",
    "Surface type",
    "2D area (m²)",
    "Slope",
    "Anchorage run (m)",
    "Developed width (m)",
    "Total (m²)",
]
NOT_APPLICABLE = "-"


def _num(value: float) -> str:
    return f"{value:g}"


def describe_entry(entry) -> str:
    """One-line measurement description, e.g. '10 m² (sloped 2:1)' or '5 m x 0.5 m'."""
    if entry.is_surface:
        if entry.is_sloped:
            slope = slope_label(entry.slope_magnitude, entry.slope_encoding or DEFAULT_SLOPE_ENCODING)
            return f"{_num(entry.projected_area)} m² (sloped {slope})"
        return f"{_num(entry.projected_area)} m² (flat)"
    return f"{_num(entry.run_length)} m x {_num(entry.developed_width)} m"


def export_rows(project: ProjectSnapshot) -> list[list[str]]:
    """One row per entry, in group then entry order, matching CSV_HEADERS."""
    rows = []
    for group, entry in project.iter_entries():
        if entry.is_surface:
            slope = NOT_APPLICABLE
            if entry.is_sloped:
                slope = slope_label(entry.slope_magnitude, entry.slope_encoding or DEFAULT_SLOPE_ENCODING)
            rows.append([
                group.name,
                entry.label,
                entry.category.value,
                entry.profile.value if entry.profile else NOT_APPLICABLE,
                _num(entry.projected_area),
                slope,
                NOT_APPLICABLE,
                NOT_APPLICABLE,
                f"{entry_area(entry):.2f}",
            ])
        else:
            rows.append([
                group.name,
                entry.label,
                entry.category.value,
                NOT_APPLICABLE,
                NOT_APPLICABLE,
                NOT_APPLICABLE,
                _num(entry.run_length),
                _num(entry.developed_width),
                f"{entry_area(entry):.2f}",
            ])
    return rows


def export_csv_text(project: ProjectSnapshot) -> str:
    """Full CSV document (BOM + header + rows) as a string."""
    buf = io.StringIO()
    buf.write("\ufeff")
    writer = csv.writer(buf, delimiter=CSV_DELIMITER, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    writer.writerows(export_rows(project))
    return buf.getvalue()


def export_csv(project: ProjectSnapshot, output_path: str) -> None:
    """Write the CSV export to a file."""
    with open(output_path, "w", encoding="utf-8", newline="") as f:
        f.write(export_csv_text(project))
    logger.info(f"CSV export saved to: {output_path}")


def csv_filename(project: ProjectSnapshot) -> str:
    stem = re.sub(r"\s+", "_", project.name.strip()) or "project"
    return f"takeoff_{stem}.csv"


def build_report(project: ProjectSnapshot, result: AggregateResult | None = None,
                 computed_at: datetime | None = None) -> dict:
    """
    Structured report of a take-off.

    Returns a dict with:
      - computed_at: ISO timestamp of this report
      - project: name, client and groups (entries carry their developed area)
      - results: aggregate totals and per-group subtotals
      - warnings: messages from validate_project
    """
    if result is None:
        result = aggregate(project.groups)
    stamp = (computed_at or datetime.now()).isoformat(timespec="seconds")

    groups = []
    for group in project.groups:
        entries = []
        for entry in group.entries:
            data = entry_to_dict(entry, include_attachments=False)
            data["developed_area"] = round(entry_area(entry), 4)
            entries.append(data)
        groups.append({"id": group.id, "name": group.name, "entries": entries})

    return {
        "computed_at": stamp,
        "project": {"name": project.name, "client": project.client, "groups": groups},
        "results": result.to_dict(),
        "warnings": validate_project(project),
    }


def export_json(project: ProjectSnapshot, output_path: str,
                result: AggregateResult | None = None) -> None:
    """Write the take-off report to a JSON file."""
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(build_report(project, result), f, indent=2, ensure_ascii=False)
    logger.info(f"JSON report saved to: {output_path}")


# ---------------------------------------------------------------------------
# Console summary
# ---------------------------------------------------------------------------

def print_summary(project: ProjectSnapshot, result: AggregateResult | None = None) -> None:
    """Pretty-print the take-off, group by group."""
    if result is None:
        result = aggregate(project.groups)

    print("=" * 72)
    print("  MEMBRANE QUANTITY TAKE-OFF")
    print(f"  Project : {project.name}")
    print(f"  Client  : {project.client}")
    print("=" * 72)

    for index, group in enumerate(project.groups, start=1):
        subtotal = result.for_group(group.id)
        print(f"\n  {'-' * 68}")
        print(f"  {index}. {group.name}")
        print(f"  {'-' * 68}")
        if not group.entries:
            print("    (no entries)")
        for entry in group.entries:
            kind = "SURFACE" if entry.is_surface else "ANCHORAGE"
            photos = f"  [{len(entry.attachments)} photo(s)]" if entry.attachments else ""
            print(f"    [{kind}] {entry.label}{photos}")
            print(f"      {describe_entry(entry)}  =  {entry_area(entry):,.2f} m²")
        if subtotal is not None:
            print(f"    Surfaces  : {subtotal.surface_subtotal:>12,.2f} m²")
            print(f"    Anchorage : {subtotal.anchorage_subtotal:>12,.2f} m²")
            print(f"    Subtotal  : {subtotal.group_total:>12,.2f} m²")

    print(f"\n{'=' * 72}")
    print(f"  TOTAL SURFACES   : {result.total_surface_area:>12,.2f} m²")
    print(f"  TOTAL ANCHORAGE  : {result.total_anchorage_area:>12,.2f} m²")
    print(f"  {'-' * 50}")
    print(f"  TOTAL MEMBRANE   : {result.grand_total:>12,.2f} m²")
    print("=" * 72)

    warnings = validate_project(project)
    if warnings:
        print("\n  Warnings:")
        for w in warnings:
            print(f"    ** {w}")
